"""Neyman-Pearson detectors: energy detector and estimator-correlators."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from acousticdetect.covariance import CovarianceModel, DecorrelationModel, decorrelation_model
from acousticdetect.detectors.base import BaseDetector, EventWindow
from acousticdetect.dsp import (
    MAX_BLOCK_BYTES,
    band_degrees_of_freedom,
    band_filter,
    dc_at,
    frame_windows,
    local_dc_offset,
    moving_rms,
    resample_rows,
)
from acousticdetect.errors import ConfigurationInvalid
from acousticdetect.thresholds import (
    PerformanceModel,
    detection_thresholds,
    estimate_snr,
    noise_variance,
)

logger = logging.getLogger(__name__)

PEAK_SMOOTHING_FRACTION = 1.0 / 30.0


@dataclass(frozen=True)
class KernelDecisions:
    """Per-kernel results of a Neyman-Pearson run.

    Attributes:
        statistics: Test statistic of each kernel.
        thresholds: Decision threshold of each kernel.
        snr_db: Estimated SNR of each kernel in dB.
        detections: True where the kernel is reported as a detection.
        noise_var: Estimated noise variance of the recording.
    """

    statistics: np.ndarray
    thresholds: np.ndarray
    snr_db: np.ndarray
    detections: np.ndarray
    noise_var: float


def group_kernels(detections: np.ndarray, kernels_per_window: int) -> list[int]:
    """Anchor windows on detecting kernels.

    A window opens on the first detecting kernel and spans ``kernels_per_window``
    kernels; detecting kernels inside it are absorbed. The next window opens on
    the first detecting kernel at or after its end, so windows never overlap and
    every window holds at least one detecting kernel.

    Args:
        detections: Boolean decision per kernel.
        kernels_per_window: Window length in kernels.

    Returns:
        First kernel index of every window.
    """
    starts: list[int] = []
    window_end = -1
    for index in np.flatnonzero(detections):
        if index >= window_end:
            starts.append(int(index))
            window_end = int(index) + kernels_per_window
    return starts


def _noise_start(start: int, span: int, previous: list[tuple[int, int]]) -> int:
    """First kernel of a noise span free of earlier signal windows.

    The span right before the window is preferred; otherwise the nearest earlier
    gap long enough is used; otherwise the span right before the window.
    """
    candidate = start - span
    if not previous or previous[-1][1] <= candidate:
        return candidate
    bounds = [(0, 0), *previous]
    for (_, prev_end), (next_start, _) in zip(
        reversed(bounds[:-1]), reversed(bounds[1:]), strict=True
    ):
        if next_start - prev_end >= span:
            return next_start - span
    return candidate


class NeymanPearsonDetector(BaseDetector):
    """Detector operated at a target probability of false alarm.

    Every kernel is DC-corrected, resampled to the detection rate, trimmed and
    band-limited before its test statistic is formed:

    * ``ed``: sum of squared samples.
    * ``ecw``: eigen-weighted energy after decorrelation with the signal model.
    * ``ecc``: as ``ecw`` after whitening with the noise model.

    Kernels whose SNR is below ``min_snr_level`` are never reported.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        kernel_duration: float = 0.1,
        window_duration: float = 1.0,
        resample_rate: int | None = None,
        detector_type: str = "ed",
        window_offset: float | None = None,
        target_pfa: float = 1e-3,
        sensitivity: float = 1.0,
        min_snr_level: float = -10.0,
        cutoff_freqs: tuple[float, float] | None = None,
        signal_model: CovarianceModel | None = None,
        noise_model: CovarianceModel | None = None,
        max_block_bytes: int = MAX_BLOCK_BYTES,
        **kwargs,
    ):
        """Initialize detector.

        Args:
            sample_rate: Sample rate of the input audio in Hz.
            kernel_duration: Kernel duration in seconds.
            window_duration: Window duration in seconds, rounded up to whole kernels.
            resample_rate: Detection sample rate in Hz; None keeps ``sample_rate``.
            detector_type: ``"ed"``, ``"ecw"`` or ``"ecc"``.
            window_offset: Time between window start and event peak; None keeps
                the window anchored on its first kernel.
            target_pfa: Target probability of false alarm per kernel.
            sensitivity: Blend between the false-alarm (1) and detection (0)
                operating points.
            min_snr_level: Minimum kernel SNR in dB for a detection.
            cutoff_freqs: ``(low, high)`` band edges in Hz.
            signal_model: Signal covariance model (``ecw`` and ``ecc``).
            noise_model: Noise covariance model (``ecc``).
            max_block_bytes: Memory budget for one block of kernels.
            **kwargs: Additional parameters.

        Raises:
            ConfigurationInvalid: If a required covariance model is missing or does
                not match the kernel length.
        """
        super().__init__(sample_rate, **kwargs)
        if kernel_duration <= 0 or window_duration <= 0:
            raise ValueError("kernel_duration and window_duration must be positive")
        if detector_type not in ("ed", "ecw", "ecc"):
            raise ValueError(f"Unknown Neyman-Pearson detector type '{detector_type}'")
        self.detector_type = detector_type
        self.kernel_duration = float(kernel_duration)
        self.kernels_per_window = max(
            1, int(math.ceil(window_duration / kernel_duration - 1e-9))
        )
        self.detection_rate = int(resample_rate or sample_rate)
        self.kernel_length = self.samples(kernel_duration)
        self.detection_length = int(round(kernel_duration * self.detection_rate))
        if self.kernel_length < 1 or self.detection_length < 1:
            raise ValueError("kernel_duration is shorter than one sample")
        self.window_offset = window_offset
        self.target_pfa = float(target_pfa)
        self.sensitivity = float(sensitivity)
        self.min_snr_level = float(min_snr_level)
        self.cutoff_freqs = cutoff_freqs
        self.max_block_bytes = max_block_bytes
        self.decorrelation = self._decorrelation(signal_model, noise_model)
        self.performance = PerformanceModel(
            detector_type=detector_type,
            kernel_length=self.detection_length,
            band_dof=band_degrees_of_freedom(
                self.detection_length, self.detection_rate, cutoff_freqs
            ),
            eigenvalues=None if self.decorrelation is None else self.decorrelation.eigenvalues,
        )

    def _decorrelation(
        self, signal_model: CovarianceModel | None, noise_model: CovarianceModel | None
    ) -> DecorrelationModel | None:
        if self.detector_type == "ed":
            return None
        if signal_model is None:
            raise ConfigurationInvalid(f"'{self.detector_type}' needs a signal covariance model")
        if self.detector_type == "ecc" and noise_model is None:
            raise ConfigurationInvalid("'ecc' needs a noise covariance model")
        if signal_model.kernel_length != self.detection_length:
            raise ConfigurationInvalid(
                f"Covariance model kernel ({signal_model.kernel_length} samples) does not "
                f"match the detection kernel ({self.detection_length} samples)"
            )
        return decorrelation_model(
            signal_model, noise_model if self.detector_type == "ecc" else None
        )

    def _conditioned_blocks(self, data: np.ndarray) -> Iterator[tuple[int, np.ndarray]]:
        """Yield ``(first_kernel, kernels)`` blocks ready for the test statistic."""
        frames = frame_windows(data, self.kernel_length)
        n_kernels = frames.shape[0]
        offsets, centres = local_dc_offset(data, self.sample_rate)
        dc = dc_at(
            offsets,
            centres,
            np.arange(n_kernels) * self.kernel_length + (self.kernel_length - 1) / 2.0,
        )
        footprint = max(self.kernel_length, self.detection_length) * 32
        per_block = max(1, int(self.max_block_bytes // footprint))
        for first in range(0, n_kernels, per_block):
            last = min(first + per_block, n_kernels)
            block = frames[first:last] - dc[first:last, np.newaxis]
            block = resample_rows(block, self.sample_rate, self.detection_rate)
            block = block[:, : self.detection_length]
            yield first, band_filter(block, self.detection_rate, self.cutoff_freqs)

    def kernel_decisions(self, audio: np.ndarray) -> KernelDecisions:
        """Compute test statistics, thresholds and decisions for every kernel."""
        data = np.asarray(audio, dtype=np.float64)
        n_kernels = data.size // self.kernel_length
        powers = np.zeros(n_kernels)
        if n_kernels:
            for first, block in self._conditioned_blocks(data):
                powers[first : first + block.shape[0]] = np.mean(block * block, axis=1)

        noise_var = noise_variance(powers, self.performance.degrees_of_freedom)
        if n_kernels == 0 or noise_var <= 0.0:
            logger.debug("No usable noise estimate, no kernels can be tested")
            empty = np.zeros(n_kernels)
            return KernelDecisions(
                empty, empty.copy(), np.full(n_kernels, -np.inf), np.zeros(n_kernels, bool), 0.0
            )

        signal_vars, snr_db = estimate_snr(powers, noise_var)
        if self.decorrelation is None:
            statistics = powers * self.detection_length
        else:
            statistics = np.zeros(n_kernels)
            eigenvalues = self.decorrelation.eigenvalues
            for first, block in self._conditioned_blocks(data):
                last = first + block.shape[0]
                projected = block @ self.decorrelation.projection
                if self.decorrelation.whitened:
                    projected = projected / math.sqrt(noise_var)
                ratio = signal_vars[first:last, np.newaxis] / noise_var
                signal = eigenvalues[np.newaxis, :] * ratio
                weights = signal / (signal + 1.0)
                statistics[first:last] = np.sum(weights * projected * projected, axis=1)

        thresholds = detection_thresholds(
            self.performance, snr_db, noise_var, self.target_pfa, self.sensitivity
        )
        detections = (statistics > thresholds) & (snr_db >= self.min_snr_level)
        return KernelDecisions(statistics, thresholds, snr_db, detections, noise_var)

    def detect(self, audio: np.ndarray) -> list[EventWindow]:
        data = np.asarray(audio, dtype=np.float64)
        decisions = self.kernel_decisions(data)
        self.stats = {
            "noise_var": decisions.noise_var,
            "n_kernels": int(decisions.detections.size),
            "n_kernel_detections": int(np.sum(decisions.detections)),
        }
        starts = group_kernels(decisions.detections, self.kernels_per_window)
        span = self.kernels_per_window
        length = span * self.kernel_length
        offset = None if self.window_offset is None else self.samples(self.window_offset)

        previous: list[tuple[int, int]] = []
        candidates: list[tuple[EventWindow, float]] = []
        for start_kernel in starts:
            noise_kernel = _noise_start(start_kernel, span, previous)
            previous.append((start_kernel, start_kernel + span))
            start = start_kernel * self.kernel_length
            noise = noise_kernel * self.kernel_length
            peak = self._peak(data, start, length)
            if offset is not None:
                start = peak - offset
                if noise + length > start:
                    noise = start - length
            if noise < 0 or start < 0 or start + length > data.size:
                logger.debug(
                    "Dropping detection at %.3fs outside the recording", peak / self.sample_rate
                )
                continue
            score = float(np.max(decisions.statistics[start_kernel : start_kernel + span]))
            candidates.append(
                (
                    EventWindow.from_samples(
                        self.sample_rate,
                        signal_time=peak,
                        signal_start=start,
                        length=length,
                        noise_start=noise,
                    ),
                    score,
                )
            )

        windows: list[EventWindow] = []
        scores: list[float] = []
        for window, score in candidates:
            if windows and window.overlaps(windows[-1]):
                if score > scores[-1]:
                    windows[-1], scores[-1] = window, score
                continue
            windows.append(window)
            scores.append(score)
        self.stats["n_detections"] = len(windows)
        return windows

    def _peak(self, data: np.ndarray, start: int, length: int) -> int:
        """Sample of the event peak inside a window.

        The peak is midway between the absolute-amplitude peak and the smoothed-RMS
        peak, unless these lie more than one kernel apart, in which case the
        absolute-amplitude peak is used.
        """
        segment = data[start : start + length]
        segment = segment - np.mean(segment)
        abs_peak = int(np.argmax(np.abs(segment)))
        smoothing = int(math.ceil(segment.size * PEAK_SMOOTHING_FRACTION))
        rms_peak = int(np.argmax(moving_rms(segment, smoothing)))
        if abs(abs_peak - rms_peak) > self.kernel_length:
            return start + abs_peak
        return start + int(round((abs_peak + rms_peak) / 2.0))
