"""Utility functions for hostvm-provisioner."""

from __future__ import annotations

import os
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from provisioner.constants import _LOG_VERBOSE, SIZE_RE, SIZE_UNITS, TRUTHY
from provisioner.exceptions import ProvisionerError


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"

    @property
    def colour(self) -> str:
        return _COLOURS[self]


_COLOURS = {
    LogLevel.INFO: "\033[0;34m",
    LogLevel.WARN: "\033[1;33m",
    LogLevel.ERROR: "\033[0;31m",
    LogLevel.SUCCESS: "\033[0;32m",
    LogLevel.DEBUG: "\033[0;90m",
}
_RESET = "\033[0m"


def log(level: Union[LogLevel, str], message: str) -> None:
    """Lightweight structured logging with a coloured level tag."""
    level = LogLevel(level)
    if level is LogLevel.DEBUG and not _LOG_VERBOSE:
        return
    print(f"{level.colour}[{level.value}]{_RESET} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_bool(name: str, raw: object) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in TRUTHY:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ProvisionerError(f"{name} must be a boolean (got '{raw}')")


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ProvisionerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ProvisionerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ProvisionerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_size_to_bytes(name: str, raw: object) -> int:
    """Parse '4096', '4G', '512MiB' and similar into bytes (binary units)."""
    text = str(raw).strip()
    match = SIZE_RE.match(text)
    if not match:
        raise ProvisionerError(
            f"Invalid {name} '{raw}'. Use bytes or a number with suffix K, M, G, T (e.g. '20G')"
        )
    value = int(match.group(1)) * SIZE_UNITS[match.group(2).upper()]
    if value <= 0:
        raise ProvisionerError(f"{name} must be greater than zero (got '{raw}')")
    return value


def format_size(num_bytes: int) -> str:
    value = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024:
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} TiB"


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


class ProgressPrinter:
    """Render a single rewritten terminal line for a blocking transfer."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._start = time.time()
        self._printed = False

    def __call__(self, downloaded: int, total: Optional[int]) -> None:
        elapsed = time.time() - self._start
        speed = downloaded / elapsed if elapsed > 0 else 0
        downloaded_mb = downloaded / (1024 * 1024)
        if total:
            total_mb = total / (1024 * 1024)
            pct = downloaded * 100 / total
            remaining = (total - downloaded) / speed if speed > 0 else 0
            eta_str = time.strftime("%M:%S", time.gmtime(remaining))
            bar_len = 30
            filled = int(bar_len * downloaded / total)
            bar = "#" * filled + "-" * (bar_len - filled)
            line = (
                f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                f"({speed / (1024 * 1024):.1f} MiB/s, ETA {eta_str})"
            )
        else:
            line = f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)"
        print(line, end="", flush=True)
        self._printed = True

    def finish(self) -> None:
        if self._printed:
            print(flush=True)  # newline after progress
            self._printed = False


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
