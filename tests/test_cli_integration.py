"""Integration tests for CLI (generate synthetic audio, run CLI, verify record sets)."""

import json
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf
from typer.testing import CliRunner

from acousticdetect.cli import app

runner = CliRunner()


@pytest.fixture
def test_audio_file(tmp_path: Path) -> Path:
    """Generate a synthetic recording (12 seconds).

    Creates: a white-noise bed + short 1 kHz tone pulses every 2 seconds from 1 s.
    """
    sample_rate = 8000
    duration = 12.0
    rng = np.random.default_rng(1)
    audio = rng.normal(0.0, 0.05, int(sample_rate * duration))

    pulse = 0.5 * np.sin(2 * np.pi * 1000.0 * np.arange(int(0.05 * sample_rate)) / sample_rate)
    for onset in np.arange(1.0, duration, 2.0):
        idx = int(onset * sample_rate)
        audio[idx : idx + pulse.size] += pulse

    output_file = tmp_path / "audio" / "site_a.wav"
    output_file.parent.mkdir()
    sf.write(output_file, audio, sample_rate)
    return output_file


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Slice detections for rx1 mirrored onto rx2."""
    path = tmp_path / "configs.json"
    path.write_text(
        json.dumps(
            [
                {
                    "receiver_name": "rx1",
                    "source_name": "boat",
                    "detector": "slice",
                    "parameters": {"window_duration": 3.0},
                },
                {"receiver_name": "rx2", "source_name": "boat", "mirror_receiver": "rx1"},
            ]
        ),
        encoding="utf-8",
    )
    return path


def test_cli_run_writes_record_set(test_audio_file: Path, config_file: Path, tmp_path: Path):
    """A run over a directory writes one record set per audio file."""
    records = tmp_path / "records"
    result = runner.invoke(
        app,
        [
            "run",
            str(test_audio_file.parent),
            "--config",
            str(config_file),
            "--records",
            str(records),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Processing complete" in result.output
    data = json.loads((records / "site_a.json").read_text(encoding="utf-8"))
    assert data["audio_file_id"] == "site_a"
    assert [record["receiver_name"] for record in data["records"]] == ["rx1", "rx2"]
    assert len(data["records"][0]["windows"]) == 4
    assert data["records"][1]["windows"] == data["records"][0]["windows"]
    assert data["records"][1]["is_mirror"] is True


def test_cli_missing_input(config_file: Path, tmp_path: Path):
    """A missing audio path is an error."""
    result = runner.invoke(
        app,
        [
            "run",
            str(tmp_path / "missing.wav"),
            "-c",
            str(config_file),
            "-r",
            str(tmp_path / "records"),
        ],
    )
    assert result.exit_code == 1


def test_cli_invalid_config_file(test_audio_file: Path, tmp_path: Path):
    """A configuration file that is not a list is an error."""
    config = tmp_path / "bad.json"
    config.write_text('{"receiver_name": "rx1"}', encoding="utf-8")
    result = runner.invoke(
        app, ["run", str(test_audio_file), "-c", str(config), "-r", str(tmp_path / "records")]
    )
    assert result.exit_code == 1


def test_cli_pulse_table(test_audio_file: Path, tmp_path: Path):
    """Unscheduled constant-rate configurations take their schedule from --pulse-table."""
    config = tmp_path / "pulses.json"
    config.write_text(
        json.dumps(
            [
                {
                    "receiver_name": "rx1",
                    "source_name": "pinger",
                    "detector": "constantrate",
                    "parameters": {"window_duration": 0.5, "window_offset": 0.1},
                }
            ]
        ),
        encoding="utf-8",
    )
    table = tmp_path / "pulses.csv"
    table.write_text(
        "AudioName,FirstPulse_s,PulseInterval_ms\nsite_a.wav,1.0,2000\n", encoding="utf-8"
    )
    records = tmp_path / "records"
    result = runner.invoke(
        app,
        [
            "run",
            str(test_audio_file),
            "-c",
            str(config),
            "-r",
            str(records),
            "--pulse-table",
            str(table),
            "--jobs",
            "2",
        ],
    )

    assert result.exit_code == 0, result.output
    data = json.loads((records / "site_a.json").read_text(encoding="utf-8"))
    windows = data["records"][0]["windows"]
    assert [w["signal_time"] for w in windows] == pytest.approx([1.0, 3.0, 5.0, 7.0, 9.0, 11.0])
    assert windows[0]["signal_start"] == pytest.approx(0.9)
    assert data["records"][0]["config"]["parameters"]["first_pulse_s"] == 1.0
