"""
Small helpers shared across luckystack: version strings, run metadata,
integer rounding and output quantisation.
"""

from __future__ import annotations

import math
import platform
from datetime import datetime, timezone

import numpy as np

__version__ = "0.3.0"
__version_info__ = {
    "major": 0,
    "minor": 3,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-18",
}


def get_version() -> str:
    return __version__


def get_version_banner() -> str:
    """One-line banner written at the start of a CLI run."""
    return f"luckystack v{__version__} | lucky imaging stacker"


def get_platform_info() -> str:
    """OS and interpreter, e.g. ``"Linux 6.8 / CPython 3.12.4"``."""
    return (
        f"{platform.system()} {platform.release()} / "
        f"{platform.python_implementation()} {platform.python_version()}"
    )


def get_timestamp_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer, halves away from zero.

    >>> round_half_up(2.5), round_half_up(3.5), round_half_up(-0.5)
    (3, 4, -1)
    """
    magnitude = int(math.floor(abs(value) + 0.5))
    return magnitude if value >= 0 else -magnitude


def quantize(data: np.ndarray, dtype: type = np.uint16) -> np.ndarray:
    """
    Scale a [0, 1] float image to the full range of an unsigned integer type.

    Values outside [0, 1] are clipped first and the result is rounded, not
    truncated, so 1.0 maps to the type's maximum.

    Parameters
    ----------
    data : np.ndarray
        Float image.
    dtype : type, default np.uint16
        Target unsigned integer type.
    """
    peak = np.iinfo(dtype).max
    return np.rint(np.clip(data, 0.0, 1.0) * peak).astype(dtype)


def to_uint8(data: np.ndarray) -> np.ndarray:
    return quantize(data, np.uint8)


def to_uint16(data: np.ndarray) -> np.ndarray:
    return quantize(data, np.uint16)


def format_duration(seconds: float) -> str:
    """
    ``"45.2s"``, ``"3m 07s"`` or ``"1h 02m 05s"``.

    >>> format_duration(187.4)
    '3m 07s'
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"
