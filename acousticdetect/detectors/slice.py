"""Fixed slicing of a recording into consecutive windows."""

import math

import numpy as np

from acousticdetect.detectors.base import BaseDetector, EventWindow

# Absorbs float error when the duration is an exact multiple of the window
_COUNT_TOLERANCE = 1e-9


class SliceDetector(BaseDetector):
    """Partition a recording into consecutive windows of fixed duration.

    Every complete window is reported; a trailing partial window is discarded.
    There is no noise reference, so the noise window collapses onto the signal start.
    """

    def __init__(self, sample_rate: int = 16000, window_duration: float = 1.0, **kwargs):
        """Initialize slicer.

        Args:
            sample_rate: Sample rate in Hz.
            window_duration: Window duration in seconds.
            **kwargs: Additional parameters.
        """
        super().__init__(sample_rate, **kwargs)
        if window_duration <= 0:
            raise ValueError("window_duration must be positive")
        self.window_duration = float(window_duration)

    def detect(self, audio: np.ndarray) -> list[EventWindow]:
        duration = len(audio) / float(self.sample_rate)
        n_windows = int(math.floor(duration / self.window_duration + _COUNT_TOLERANCE))
        self.stats = {"n_windows": n_windows}
        windows: list[EventWindow] = []
        for index in range(n_windows):
            start = index * self.window_duration
            end = (index + 1) * self.window_duration
            windows.append(
                EventWindow(
                    signal_time=(start + end) / 2.0,
                    signal_start=start,
                    signal_end=end,
                    noise_start=start,
                    noise_end=start,
                )
            )
        return windows
