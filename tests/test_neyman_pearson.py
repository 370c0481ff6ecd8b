"""Tests for the Neyman-Pearson energy detector and estimator-correlators."""

import numpy as np
import pytest
from scipy import signal

from acousticdetect.covariance import build_covariance_model
from acousticdetect.detectors import NeymanPearsonDetector
from acousticdetect.errors import ConfigurationInvalid

BURSTS = (30.25, 80.55)


def _noisy_bursts(sample_rate: int = 1000, duration: float = 120.0, seed: int = 21) -> np.ndarray:
    rng = np.random.default_rng(seed)
    audio = rng.normal(0.0, 0.1, int(duration * sample_rate))
    t = np.arange(int(0.1 * sample_rate)) / sample_rate
    for onset in BURSTS:
        first = int(round(onset * sample_rate))
        audio[first : first + t.size] += np.sin(2 * np.pi * 100.0 * t)
    return audio


def _energy_detector(**kwargs) -> NeymanPearsonDetector:
    params = {
        "kernel_duration": 0.1,
        "window_duration": 0.5,
        "target_pfa": 1e-6,
        "min_snr_level": 0.0,
    }
    params.update(kwargs)
    return NeymanPearsonDetector(1000, **params)


def test_energy_detector_meets_false_alarm_rate():
    """On white noise the fraction of detecting kernels matches the target."""
    rng = np.random.default_rng(8)
    audio = rng.normal(0.0, 0.5, 400 * 4000)
    detector = NeymanPearsonDetector(
        4000,
        kernel_duration=0.1,
        window_duration=0.1,
        resample_rate=4000,
        target_pfa=0.05,
        sensitivity=1.0,
        min_snr_level=-np.inf,
    )
    decisions = detector.kernel_decisions(audio)

    assert decisions.detections.size == 4000
    assert decisions.noise_var == pytest.approx(0.25, rel=0.02)
    assert np.mean(decisions.detections) == pytest.approx(0.05, abs=0.02)


def test_band_limited_energy_detector_meets_false_alarm_rate():
    """With a band filter the null law uses the degrees of freedom the band keeps."""
    rng = np.random.default_rng(17)
    audio = rng.normal(0.0, 1.0, 100_000 * 100)
    detector = NeymanPearsonDetector(
        10000,
        kernel_duration=0.01,
        window_duration=0.01,
        cutoff_freqs=(1000.0, 3000.0),
        target_pfa=0.05,
        sensitivity=1.0,
        min_snr_level=-np.inf,
    )
    decisions = detector.kernel_decisions(audio)

    assert detector.performance.degrees_of_freedom == 42
    assert decisions.detections.size == 100_000
    assert np.mean(decisions.detections) == pytest.approx(0.05, abs=0.0025)


def test_energy_detector_finds_bursts():
    """Each burst opens one window on its first detecting kernel."""
    detector = _energy_detector()
    windows = detector.detect(_noisy_bursts())

    assert [w.signal_start for w in windows] == pytest.approx([30.2, 80.5])
    for window, onset in zip(windows, BURSTS):
        assert onset <= window.signal_time < onset + 0.1
        assert window.duration() == pytest.approx(0.5)
        assert window.noise_end <= window.signal_start + 1e-9
        assert window.noise_end - window.noise_start == pytest.approx(0.5)
    assert detector.stats["n_detections"] == 2
    assert detector.stats["n_kernel_detections"] >= 4


def test_window_offset_moves_window_to_peak():
    """With an offset the window starts that long before the peak."""
    windows = _energy_detector(window_offset=0.1).detect(_noisy_bursts())

    assert len(windows) == 2
    for window in windows:
        assert window.signal_start == pytest.approx(window.signal_time - 0.1)
        assert window.noise_end <= window.signal_start + 1e-9


def test_minimum_snr_suppresses_detections():
    """Kernels below the SNR floor are never reported."""
    detector = _energy_detector(min_snr_level=40.0)
    assert detector.detect(_noisy_bursts()) == []
    assert detector.stats["n_kernel_detections"] == 0


def test_silent_input():
    """Silence gives no noise estimate and no detections."""
    detector = _energy_detector()
    assert detector.detect(np.zeros(10_000)) == []
    assert detector.stats["noise_var"] == 0.0
    assert detector.detect(np.zeros(50)) == []


def test_estimator_correlator_requires_model():
    """ECW and ECC cannot run without covariance models."""
    with pytest.raises(ConfigurationInvalid):
        _energy_detector(detector_type="ecw")
    with pytest.raises(ValueError):
        _energy_detector(detector_type="xyz")


def test_estimator_correlator_finds_bursts():
    """A tonal signal model detects both tonal bursts."""
    rng = np.random.default_rng(13)
    t = np.arange(20) / 1000.0
    phases = rng.uniform(0.0, 2 * np.pi, 200)
    corpus = np.sin(2 * np.pi * 100.0 * t[np.newaxis, :] + phases[:, np.newaxis])
    corpus += rng.normal(0.0, 0.1, corpus.shape)
    model = build_covariance_model(corpus, 1000, 1000, 20, "oas")

    detector = _energy_detector(
        kernel_duration=0.02, window_duration=0.1, detector_type="ecw", signal_model=model
    )
    windows = detector.detect(_noisy_bursts())

    assert windows
    for onset in BURSTS:
        assert any(w.signal_start <= onset + 0.05 < w.signal_end for w in windows)
    for window in windows:
        assert min(abs(window.signal_start - onset) for onset in BURSTS) < 0.2


def test_coloured_estimator_correlator_finds_bursts():
    """Whitening by a noise model keeps red noise quiet and finds every tone burst."""
    rng = np.random.default_rng(29)
    sample_rate = 4000
    t = np.arange(80) / sample_rate
    phases = rng.uniform(0.0, 2 * np.pi, 400)
    tones = np.sin(2 * np.pi * 500.0 * t[np.newaxis, :] + phases[:, np.newaxis])
    tones += rng.normal(0.0, 0.05, tones.shape)
    noise = signal.lfilter([1.0], [1.0, -0.8], rng.normal(0.0, 0.1, 1000 * 80))
    signal_model = build_covariance_model(tones, sample_rate, sample_rate, 80, "oas")
    noise_model = build_covariance_model(
        noise.reshape(1000, 80), sample_rate, sample_rate, 80, "oas"
    )

    audio = signal.lfilter([1.0], [1.0, -0.8], rng.normal(0.0, 0.1, 120 * sample_rate))
    burst = np.sin(2 * np.pi * 500.0 * np.arange(int(0.1 * sample_rate)) / sample_rate)
    for onset in (20.0, 50.0, 90.0):
        first = int(onset * sample_rate)
        audio[first : first + burst.size] += burst

    detector = NeymanPearsonDetector(
        sample_rate,
        kernel_duration=0.02,
        window_duration=0.1,
        detector_type="ecc",
        signal_model=signal_model,
        noise_model=noise_model,
        target_pfa=1e-6,
        min_snr_level=3.0,
    )
    windows = detector.detect(audio)

    assert detector.decorrelation.whitened
    assert [w.signal_start for w in windows] == pytest.approx([20.0, 50.0, 90.0])
