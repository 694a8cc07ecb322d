from __future__ import annotations

import math
from typing import Optional

MB = 1024 * 1024
_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def format_bytes(n: Optional[float]) -> str:
    if n is None:
        return "n/a"
    n = float(n)
    if n <= 0:
        return "0 Bytes"
    i = max(0, min(len(_UNITS) - 1, int(math.floor(math.log(n, 1024)))))
    value = round(n / math.pow(1024, i), 2)
    return f"{value:g} {_UNITS[i]}"


def percent(part: Optional[float], whole: Optional[float]) -> Optional[float]:
    if part is None or not whole:
        return None
    return round(float(part) / float(whole) * 100.0, 2)
