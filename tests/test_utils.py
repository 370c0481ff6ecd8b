"""Tests for utility helpers."""

from pathlib import Path

from acousticdetect.utils import Timer, ensure_dir, format_duration, strip_channel_suffix


def test_strip_channel_suffix():
    """Only a trailing channel/frame tag is removed."""
    assert strip_channel_suffix("site_a_ch3_fr12") == "site_a"
    assert strip_channel_suffix("site_ch3_fr1_b") == "site_ch3_fr1_b"
    assert strip_channel_suffix("plain") == "plain"


def test_format_duration():
    """Durations are shown in the largest sensible unit."""
    assert format_duration(45.62) == "45.6s"
    assert format_duration(125.0) == "2m 5.0s"
    assert format_duration(3 * 3600 + 65.0, precision=0) == "3h 1m 5s"


def test_timer_records_elapsed():
    """The timer stores the elapsed time on exit."""
    with Timer("sleep") as timer:
        pass
    assert timer.elapsed is not None
    assert timer.elapsed >= 0.0


def test_ensure_dir(tmp_path: Path):
    """Nested directories are created and returned."""
    target = tmp_path / "a" / "b"
    assert ensure_dir(target) == target
    assert target.is_dir()
    assert ensure_dir(target) == target
