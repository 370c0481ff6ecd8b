"""Windows placed on a known, constant pulse schedule."""

import logging

import numpy as np

from acousticdetect.detectors.base import BaseDetector, EventWindow

logger = logging.getLogger(__name__)


class ConstantRateDetector(BaseDetector):
    """Detector for sources that fire at a fixed rate from a known first pulse.

    One window is produced per pulse ``first_pulse_s + k * pulse_interval_ms / 1000``
    while the pulse lies inside the recording. The signal window starts
    ``window_offset`` seconds before the pulse and the noise window precedes it.
    Windows reaching past either end of the file are clipped to it.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        window_duration: float = 1.0,
        first_pulse_s: float = 0.0,
        pulse_interval_ms: float = 1000.0,
        window_offset: float | None = None,
        **kwargs,
    ):
        """Initialize detector.

        Args:
            sample_rate: Sample rate in Hz.
            window_duration: Signal and noise window duration in seconds.
            first_pulse_s: Time of the first pulse in seconds.
            pulse_interval_ms: Interval between pulses in milliseconds.
            window_offset: Time between window start and pulse; None means 0.
            **kwargs: Additional parameters.
        """
        super().__init__(sample_rate, **kwargs)
        if window_duration <= 0:
            raise ValueError("window_duration must be positive")
        if pulse_interval_ms <= 0:
            raise ValueError("pulse_interval_ms must be positive")
        self.window_duration = float(window_duration)
        self.first_pulse_s = float(first_pulse_s)
        self.pulse_interval = float(pulse_interval_ms) / 1000.0
        self.window_offset = float(window_offset or 0.0)

    def detect(self, audio: np.ndarray) -> list[EventWindow]:
        duration = len(audio) / float(self.sample_rate)
        windows: list[EventWindow] = []
        if self.first_pulse_s >= duration:
            logger.debug(
                "First pulse at %.3fs lies beyond the recording (%.3fs)",
                self.first_pulse_s,
                duration,
            )
        k = 0
        while True:
            pulse = self.first_pulse_s + k * self.pulse_interval
            if pulse >= duration:
                break
            k += 1
            if pulse < 0.0:
                continue
            start = pulse - self.window_offset
            windows.append(
                EventWindow(
                    signal_time=pulse,
                    signal_start=max(start, 0.0),
                    signal_end=min(start + self.window_duration, duration),
                    noise_start=max(start - self.window_duration, 0.0),
                    noise_end=max(start, 0.0),
                )
            )
        self.stats = {"n_pulses": len(windows)}
        return windows
