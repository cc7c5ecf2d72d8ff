"""System uptime in whole seconds since the last boot."""

from __future__ import annotations

import math
import os
import re
import sys
import time
from pathlib import Path

_PROC_UPTIME = "/proc/uptime"

_FLOAT = re.compile(
    r"[+-]?(?:(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan)",
    re.IGNORECASE,
)


class UptimeError(Exception):
    """Raised when the system uptime cannot be determined."""


def uptime_from_file(path: str | os.PathLike[str]) -> int:
    """Read an uptime file such as /proc/uptime and return whole seconds since boot."""
    try:
        data = Path(path).read_text()
    except (OSError, UnicodeDecodeError) as exc:
        raise UptimeError(f"Not able to read {path}: {exc}") from exc

    field = data.split(" ")[0]
    if not _FLOAT.fullmatch(field):
        raise UptimeError(f"Not able to parse {path} to int64: invalid syntax {field!r}")
    value = float(field)
    if not math.isfinite(value):
        raise UptimeError(f"Not able to parse {path} to int64: value out of range {field!r}")
    return int(value)


def system_uptime() -> int:
    """Return the number of whole seconds since the last system boot."""
    platform = sys.platform
    if platform.startswith("linux"):
        return uptime_from_file(_PROC_UPTIME)
    if platform == "win32":
        # On Windows the monotonic clock counts from system start.
        return int(time.monotonic())
    raise UptimeError(f"Not implemented on {platform} platform")