"""Utility functions for logging, timing, and path operations."""

import logging
import re
import time
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

_CHANNEL_FRAME_SUFFIX: Final[re.Pattern[str]] = re.compile(r"_ch\d+_fr\d+$")


class Timer:
    """Simple context manager for timing operations."""

    def __init__(self, label: str = "Operation"):
        """Initialize timer with a label.

        Args:
            label: Description of what is being timed.
        """
        self.label = label
        self.start_time: float | None = None
        self.elapsed: float | None = None

    def __enter__(self):
        """Start timing."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Stop timing and log elapsed time."""
        if self.start_time is not None:
            self.elapsed = time.perf_counter() - self.start_time
            logger.debug("%s took %.3fs", self.label, self.elapsed)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: If True, set log level to DEBUG, otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def strip_channel_suffix(stem: str) -> str:
    """Remove a trailing ``_ch<N>_fr<M>`` tag from an audio file stem.

    Args:
        stem: File name without extension.

    Returns:
        Stem shared by every channel of the same recording.
    """
    return _CHANNEL_FRAME_SUFFIX.sub("", stem)


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to ensure.

    Returns:
        The path object (created if it didn't exist).
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def format_duration(seconds: float, precision: int = 1) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds.
        precision: Decimal places for seconds.

    Returns:
        Formatted string like "1h 23m 45.6s" or "45.6s".
    """
    if seconds < 60:
        return f"{seconds:.{precision}f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.{precision}f}s"
    hours = int(minutes // 60)
    mins = minutes % 60
    return f"{hours}h {mins}m {secs:.{precision}f}s"
