"""Moving-average detector: band-limited RMS ratio between consecutive windows."""

import logging
import math

import numpy as np

from acousticdetect.detectors.base import BaseDetector, EventWindow
from acousticdetect.dsp import (
    MAX_BLOCK_BYTES,
    dc_at,
    local_dc_offset,
    moving_rms,
    windowed_band_rms,
)
from acousticdetect.thresholds import auto_ratio_threshold

logger = logging.getLogger(__name__)

# Smoothing kernel for peak search, as a fraction of the window length
PEAK_SMOOTHING_FRACTION = 1.0 / 30.0


def suppress_consecutive(indices: np.ndarray, scores: np.ndarray) -> list[int]:
    """Keep the best-scoring element of every run of consecutive indices.

    Args:
        indices: Sorted window indices.
        scores: Score per index (higher is better).

    Returns:
        Positions into ``indices`` that survive, in order.
    """
    kept: list[int] = []
    run_start = 0
    for position in range(1, len(indices) + 1):
        if position < len(indices) and indices[position] == indices[position - 1] + 1:
            continue
        run = np.asarray(scores[run_start:position])
        kept.append(run_start + int(np.argmax(run)))
        run_start = position
    return kept


class MovingAverageDetector(BaseDetector):
    """Detect windows whose RMS jumps relative to the preceding window.

    Each detection is aligned on the peak of the smoothed RMS envelope inside
    the window. When a window offset is set, the signal window is moved to start
    that long before the peak and the noise window is placed right before it.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        window_duration: float = 1.0,
        window_offset: float | None = None,
        threshold: float | None = None,
        cutoff_freqs: tuple[float, float] | None = None,
        max_block_bytes: int = MAX_BLOCK_BYTES,
        **kwargs,
    ):
        """Initialize detector.

        Args:
            sample_rate: Sample rate in Hz.
            window_duration: Window duration in seconds.
            window_offset: Time between window start and event peak; None keeps the
                original window position.
            threshold: RMS ratio threshold; None derives it from the data.
            cutoff_freqs: ``(low, high)`` band edges in Hz for the RMS.
            max_block_bytes: Memory budget for one block of windows.
            **kwargs: Additional parameters.
        """
        super().__init__(sample_rate, **kwargs)
        if window_duration <= 0:
            raise ValueError("window_duration must be positive")
        self.window_duration = float(window_duration)
        self.window_offset = window_offset
        self.threshold = threshold
        self.cutoff_freqs = cutoff_freqs
        self.max_block_bytes = max_block_bytes

    def detect(self, audio: np.ndarray) -> list[EventWindow]:
        data = np.asarray(audio, dtype=np.float64)
        window_length = self.samples(self.window_duration)
        if window_length < 1:
            raise ValueError("window_duration is shorter than one sample")

        rms = windowed_band_rms(
            data,
            self.sample_rate,
            window_length,
            self.cutoff_freqs,
            max_block_bytes=self.max_block_bytes,
        )
        self.stats = {"n_windows": int(rms.size), "threshold": self.threshold}
        if rms.size < 2:
            return []

        with np.errstate(divide="ignore", invalid="ignore"):
            ratios = rms[1:] / rms[:-1]
        ratios[~np.isfinite(ratios)] = 0.0

        threshold = self.threshold
        if threshold is None:
            threshold = auto_ratio_threshold(ratios)
        self.stats["threshold"] = float(threshold)

        detected = np.flatnonzero(ratios > threshold) + 1
        if detected.size == 0:
            return []

        peaks, peak_rms = self._locate_peaks(data, detected, window_length)
        kept = suppress_consecutive(detected, peak_rms)
        logger.debug(
            "%d window(s) above ratio %.3f, %d after duplicate removal",
            detected.size,
            threshold,
            len(kept),
        )

        offset = None if self.window_offset is None else self.samples(self.window_offset)
        windows: list[EventWindow] = []
        for position in kept:
            peak = int(peaks[position])
            start = int(detected[position]) * window_length
            if offset is not None:
                start = peak - offset
            if start - window_length < 0 or start + window_length > data.size:
                logger.debug(
                    "Dropping detection at %.3fs outside the recording", peak / self.sample_rate
                )
                continue
            windows.append(
                EventWindow.from_samples(
                    self.sample_rate, signal_time=peak, signal_start=start, length=window_length
                )
            )
        self.stats["n_detections"] = len(windows)
        return windows

    def _locate_peaks(
        self, data: np.ndarray, detected: np.ndarray, window_length: int
    ) -> tuple[np.ndarray, np.ndarray]:
        """Peak sample and maximum smoothed RMS per detected window.

        A transient shorter than the smoothing window leaves a flat envelope top, so the
        peak is the largest absolute sample within one smoothing length of the envelope
        maximum.
        """
        offsets, centres = local_dc_offset(data, self.sample_rate)
        starts = detected * window_length
        dc = dc_at(offsets, centres, starts + (window_length - 1) / 2.0)
        smoothing = int(math.ceil(window_length * PEAK_SMOOTHING_FRACTION))
        peaks = np.empty(detected.size, dtype=np.int64)
        peak_rms = np.empty(detected.size)
        for i, start in enumerate(starts):
            segment = data[start : start + window_length] - dc[i]
            envelope = moving_rms(segment, smoothing)
            index = int(np.argmax(envelope))
            low = max(0, index - smoothing)
            high = min(segment.size, index + smoothing + 1)
            peaks[i] = start + low + int(np.argmax(np.abs(segment[low:high])))
            peak_rms[i] = envelope[index]
        return peaks, peak_rms
