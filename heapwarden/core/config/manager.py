from __future__ import annotations

import os
from typing import Optional

from pydantic import ValidationError

from heapwarden.core.config.io import (
    atomic_write_json,
    quarantine_corrupt,
    read_json_file,
    restore_last_known_good,
    snapshot_last_known_good,
)
from heapwarden.core.config.models import MonitorConfig
from heapwarden.core.config.paths import ConfigFsPaths
from heapwarden.core.errors import ConfigError


class ConfigManager:
    """
    Loads config/heapwarden.json:
    - missing file: defaults are written (unless read_only)
    - corrupt JSON: moved to backups/, last-known-good restored, else defaults
    - schema violations: ConfigError (the file is left untouched)
    A file that validates becomes the new last-known-good copy.
    """

    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger=None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.read_only = read_only
        self._cfg: Optional[MonitorConfig] = None

    def load_all(self) -> MonitorConfig:
        path = self.fs.monitor
        rr = read_json_file(path)
        data = rr.data
        if not rr.ok:
            if rr.error == "missing":
                self._warn(f"Missing config {os.path.basename(path)}; creating defaults.")
                data = {}
            else:
                moved = None if self.read_only else quarantine_corrupt(path, self.fs.backups_dir)
                data, recovered = ({}, False) if self.read_only else restore_last_known_good(path, self.fs.last_known_good_dir)
                self._warn(f"Corrupt config {os.path.basename(path)} ({rr.error}) -> moved={moved} recovered={recovered}")

        try:
            cfg = MonitorConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError("Invalid heapwarden configuration.", path=path, errors=e.errors(include_url=False)) from e

        if not self.read_only:
            if not rr.ok:
                atomic_write_json(path, cfg.model_dump(mode="json"))
            snapshot_last_known_good(path, self.fs.last_known_good_dir)
        self._cfg = cfg
        return cfg

    def get(self) -> MonitorConfig:
        if self._cfg is None:
            return self.load_all()
        return self._cfg

    def save(self, cfg: MonitorConfig) -> None:
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        atomic_write_json(self.fs.monitor, cfg.model_dump(mode="json"))
        snapshot_last_known_good(self.fs.monitor, self.fs.last_known_good_dir)
        self._cfg = cfg

    def _warn(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.warning(msg)
