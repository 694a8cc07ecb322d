from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


REDACT_KEYS = {
    "password",
    "secret",
    "token",
    "api_key",
    "authorization",
    "session",
    "credentials",
}


def redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if str(k).lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    return obj


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class MonitorError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


class RegistrationConflict(MonitorError):
    def __init__(self, user_message: str = "Resource id already registered; previous registration replaced.", **ctx: Any):
        super().__init__("registration_conflict", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class CloseFailure(MonitorError):
    def __init__(self, user_message: str = "External session failed to close.", **ctx: Any):
        super().__init__("close_failure", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class ParameterRejected(MonitorError):
    def __init__(self, user_message: str = "Runtime rejected a tuning parameter.", **ctx: Any):
        super().__init__("parameter_rejected", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class InitializationFailure(MonitorError):
    def __init__(self, user_message: str = "Service failed to initialize.", **ctx: Any):
        super().__init__("initialization_failure", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ConfigError(MonitorError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)
