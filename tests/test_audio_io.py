"""Tests for audio loading, pulse tables and training corpora."""

from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from acousticdetect.audio_io import (
    SampleBuffer,
    audio_file_id,
    load_audio,
    load_training_corpus,
    read_pulse_table,
)
from acousticdetect.errors import ConfigurationInvalid, RuntimeDetectionFailure


def _write_tone(path: Path, sr: int = 1000, duration: float = 0.5, freq: float = 50.0) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    t = np.arange(int(sr * duration)) / sr
    sf.write(path, 0.5 * np.sin(2 * np.pi * freq * t), sr, subtype="DOUBLE")


def test_sample_buffer_is_mono_and_read_only():
    """Buffers reject multi-channel arrays and cannot be modified."""
    buffer = SampleBuffer(np.zeros(800), 8000, audio_file_id="rec")
    assert len(buffer) == 800
    assert buffer.duration == pytest.approx(0.1)
    with pytest.raises(ValueError):
        buffer.samples[0] = 1.0
    with pytest.raises(ValueError):
        SampleBuffer(np.zeros((10, 2)), 8000)


def test_audio_file_id_strips_channel_suffix():
    """Channel files of one recording share an id."""
    assert audio_file_id(Path("/data/rec_01_ch2_fr1.wav")) == "rec_01"
    assert audio_file_id(Path("plain.flac")) == "plain"


def test_load_audio_selects_channel(tmp_path: Path):
    """The 1-based channel is returned as a mono buffer."""
    sr = 8000
    data = np.column_stack([np.zeros(sr), np.linspace(-0.5, 0.5, sr)])
    path = tmp_path / "stereo_ch1_fr1.wav"
    sf.write(path, data, sr, subtype="DOUBLE")

    buffer = load_audio(path, channel=2)
    assert buffer.sample_rate == sr
    assert buffer.audio_file_id == "stereo"
    assert buffer.channel == 2
    assert np.allclose(buffer.samples, data[:, 1])


def test_load_audio_resamples(tmp_path: Path):
    """Audio can be decoded at another rate."""
    path = tmp_path / "tone.wav"
    _write_tone(path, sr=8000, duration=1.0)
    buffer = load_audio(path, resample_rate=4000)
    assert buffer.sample_rate == 4000
    assert len(buffer) == 4000


def test_load_audio_errors(tmp_path: Path):
    """Corrupt files and missing channels raise RuntimeDetectionFailure."""
    broken = tmp_path / "broken.wav"
    broken.write_bytes(b"this is not audio")
    with pytest.raises(RuntimeDetectionFailure):
        load_audio(broken)

    mono = tmp_path / "mono.wav"
    _write_tone(mono)
    with pytest.raises(RuntimeDetectionFailure):
        load_audio(mono, channel=3)


def test_read_pulse_table_tolerates_messy_input(tmp_path: Path):
    """Reordered headers, duplicates and malformed lines are handled."""
    path = tmp_path / "pulses.csv"
    path.write_text(
        "\n".join(
            [
                "PulseInterval_ms,AudioName,FirstPulse_s",
                "1000,rec_a.wav,0.5",
                "1000,rec_a.wav,0.5",
                "2000,rec_b.wav",
                "abc,rec_c.wav,1.0",
                "500,rec_d.flac,2.25",
            ]
        ),
        encoding="utf-8",
    )
    table = read_pulse_table(path)
    assert table == {"rec_a": (0.5, 1000.0), "rec_d": (2.25, 500.0)}


def test_read_pulse_table_requires_columns(tmp_path: Path):
    """A table without the pulse interval column is rejected."""
    path = tmp_path / "pulses.csv"
    path.write_text("audioname,firstpulse_s\nrec.wav,0.5\n", encoding="utf-8")
    with pytest.raises(ConfigurationInvalid):
        read_pulse_table(path)


def test_load_training_corpus_signal_and_noise(tmp_path: Path):
    """Signal and noise sub-folders become observation matrices."""
    for name in ("a", "b", "c"):
        _write_tone(tmp_path / "signal" / f"{name}.wav")
    for name in ("n1", "n2"):
        _write_tone(tmp_path / "noise" / f"{name}.wav", freq=120.0)

    single = load_training_corpus(tmp_path, kernel_duration=0.1, sample_rate=1000)
    assert single.signal.shape == (3, 100)
    assert single.noise is not None and single.noise.shape == (2, 100)

    multi = load_training_corpus(tmp_path, 0.1, 1000, read_mode="multi")
    assert multi.signal.shape == (15, 100)


def test_load_training_corpus_snr_filter(tmp_path: Path):
    """Only files tagged at or above the minimum SNR are used."""
    _write_tone(tmp_path / "call_SNR12.wav")
    _write_tone(tmp_path / "call_SNR-3.wav")
    _write_tone(tmp_path / "untagged.wav")
    corpus = load_training_corpus(tmp_path, 0.1, 1000, min_snr=0.0)
    assert corpus.signal.shape == (1, 100)
    assert corpus.noise is None


def test_load_training_corpus_errors(tmp_path: Path):
    """Missing or empty folders are configuration errors."""
    with pytest.raises(ConfigurationInvalid):
        load_training_corpus(tmp_path / "missing", 0.1, 1000)
    (tmp_path / "empty").mkdir()
    with pytest.raises(ConfigurationInvalid):
        load_training_corpus(tmp_path / "empty", 0.1, 1000)
