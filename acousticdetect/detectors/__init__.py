"""Acoustic event detection strategies."""

from acousticdetect.covariance import CovarianceModel
from acousticdetect.detectors.base import BaseDetector, EventWindow
from acousticdetect.detectors.constant_rate import ConstantRateDetector
from acousticdetect.detectors.mirror import mirror_windows
from acousticdetect.detectors.moving_average import MovingAverageDetector
from acousticdetect.detectors.neyman_pearson import KernelDecisions, NeymanPearsonDetector
from acousticdetect.detectors.slice import SliceDetector
from acousticdetect.settings import (
    ConstantRateConfig,
    DetectorConfig,
    MovingAverageConfig,
    NeymanPearsonConfig,
    SliceConfig,
)


def create_detector(
    config: DetectorConfig,
    sample_rate: int,
    *,
    signal_model: CovarianceModel | None = None,
    noise_model: CovarianceModel | None = None,
) -> BaseDetector:
    """Build the detector for a strategy configuration.

    Args:
        config: Strategy parameters (not a mirror).
        sample_rate: Sample rate of the audio the detector will see.
        signal_model: Signal covariance model for the estimator-correlators.
        noise_model: Noise covariance model for ``ecc``.

    Returns:
        Detector instance.

    Raises:
        ValueError: If the configuration has no detector (mirror or unresolved pulses).
    """
    if isinstance(config, SliceConfig):
        return SliceDetector(sample_rate, window_duration=config.window_duration)
    if isinstance(config, ConstantRateConfig):
        if not config.is_resolved:
            raise ValueError("Constant-rate configuration has no pulse schedule")
        return ConstantRateDetector(
            sample_rate,
            window_duration=config.window_duration,
            first_pulse_s=config.first_pulse_s,
            pulse_interval_ms=config.pulse_interval_ms,
            window_offset=config.window_offset,
        )
    if isinstance(config, MovingAverageConfig):
        return MovingAverageDetector(
            sample_rate,
            window_duration=config.window_duration,
            window_offset=config.window_offset,
            threshold=config.threshold,
            cutoff_freqs=config.cutoff_freqs,
        )
    if isinstance(config, NeymanPearsonConfig):
        return NeymanPearsonDetector(
            sample_rate,
            kernel_duration=config.kernel_duration,
            window_duration=config.window_duration,
            resample_rate=config.resample_rate,
            detector_type=config.detector_type,
            window_offset=config.window_offset,
            target_pfa=config.target_pfa,
            sensitivity=config.sensitivity,
            min_snr_level=config.min_snr_level,
            cutoff_freqs=config.cutoff_freqs,
            signal_model=signal_model,
            noise_model=noise_model,
        )
    raise ValueError(f"No detector for configuration {type(config).__name__}")


__all__ = [
    "BaseDetector",
    "EventWindow",
    "SliceDetector",
    "ConstantRateDetector",
    "MovingAverageDetector",
    "NeymanPearsonDetector",
    "KernelDecisions",
    "mirror_windows",
    "create_detector",
]
