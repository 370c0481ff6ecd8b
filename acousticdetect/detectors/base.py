"""Base classes and data structures for acoustic event detectors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True, slots=True)
class EventWindow:
    """A detected event and its paired noise reference.

    All times are in seconds from the start of the file; intervals are half-open.

    Attributes:
        signal_time: Reference time of the event (peak or window centre).
        signal_start: Start of the signal window.
        signal_end: End of the signal window.
        noise_start: Start of the noise window.
        noise_end: End of the noise window.
    """

    signal_time: float
    signal_start: float
    signal_end: float
    noise_start: float
    noise_end: float

    @classmethod
    def from_samples(
        cls,
        sample_rate: float,
        *,
        signal_time: int,
        signal_start: int,
        length: int,
        noise_start: int | None = None,
    ) -> EventWindow:
        """Build a window from sample indices.

        Args:
            sample_rate: Sample rate in Hz.
            signal_time: Sample index of the event reference time.
            signal_start: First sample of the signal window.
            length: Window length in samples (signal and noise).
            noise_start: First sample of the noise window. Defaults to the window
                immediately preceding the signal.
        """
        if noise_start is None:
            noise_start = signal_start - length
        return cls(
            signal_time=signal_time / sample_rate,
            signal_start=signal_start / sample_rate,
            signal_end=(signal_start + length) / sample_rate,
            noise_start=noise_start / sample_rate,
            noise_end=(noise_start + length) / sample_rate,
        )

    def duration(self) -> float:
        """Return signal window duration in seconds."""
        return self.signal_end - self.signal_start

    def overlaps(self, other: EventWindow) -> bool:
        """Check whether two signal windows share any time."""
        return self.signal_start < other.signal_end and other.signal_start < self.signal_end

    def to_dict(self) -> dict[str, float]:
        """Convert to a plain dictionary."""
        return {
            "signal_time": self.signal_time,
            "signal_start": self.signal_start,
            "signal_end": self.signal_end,
            "noise_start": self.noise_start,
            "noise_end": self.noise_end,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventWindow:
        """Create a window from a dictionary produced by ``to_dict``."""
        return cls(
            signal_time=float(data["signal_time"]),
            signal_start=float(data["signal_start"]),
            signal_end=float(data["signal_end"]),
            noise_start=float(data["noise_start"]),
            noise_end=float(data["noise_end"]),
        )


class BaseDetector:
    """Abstract base class for acoustic event detectors.

    Detectors are pure functions of the sample buffer and their configuration:
    ``detect`` returns windows in time order and records run statistics (for
    example the threshold actually used) in ``stats``.
    """

    def __init__(self, sample_rate: int = 16000, **kwargs: Any):
        """Initialize detector.

        Args:
            sample_rate: Sample rate of the input audio in Hz.
            **kwargs: Detector-specific parameters.
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.sample_rate = sample_rate
        self.name = self.__class__.__name__.replace("Detector", "").lower()
        self.stats: dict[str, Any] = {}

    def detect(self, audio: np.ndarray) -> list[EventWindow]:
        """Detect events in audio.

        Args:
            audio: Mono audio signal at self.sample_rate.

        Returns:
            Event windows in non-decreasing time order.
        """
        raise NotImplementedError("Subclasses must implement detect()")

    def samples(self, seconds: float) -> int:
        """Convert a duration to a whole number of samples."""
        return int(round(seconds * self.sample_rate))

    def __repr__(self) -> str:
        """Return string representation."""
        return f"{self.__class__.__name__}(sr={self.sample_rate})"
