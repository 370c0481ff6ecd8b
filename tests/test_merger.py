"""Tests for configuration planning and record merging."""

from acousticdetect.detectors import EventWindow
from acousticdetect.merger import RecordMerger
from acousticdetect.records import RecordSet
from acousticdetect.settings import DetectionConfig, MirrorConfig, SliceConfig


def _slice(receiver: str, source: str = "src", duration: float = 1.0) -> DetectionConfig:
    return DetectionConfig(receiver, source, detector=SliceConfig(duration))


def test_plan_defers_mirrors_and_drops_duplicates():
    """Mirrors run after detectors and repeated keys keep the first entry."""
    mirror = DetectionConfig("rx3", "src", detector=MirrorConfig("rx1"))
    first = _slice("rx1", duration=1.0)
    duplicate = _slice("rx1", duration=5.0)
    other = _slice("rx2")

    ordered, diagnostics = RecordMerger.plan([mirror, first, duplicate, other])

    assert ordered == [first, other, mirror]
    assert len(diagnostics) == 1
    assert diagnostics[0].code == "duplicate-key"
    assert diagnostics[0].receiver_name == "rx1"


def test_merge_adds_then_replaces_wholesale():
    """Merging a key twice keeps one record with the latest windows."""
    config = _slice("rx1")
    windows = [EventWindow(0.5, 0.0, 1.0, 0.0, 0.0), EventWindow(1.5, 1.0, 2.0, 1.0, 1.0)]
    empty = RecordSet("rec")

    added = RecordMerger.merge(
        empty, config.key, config, windows, audio_file_id="rec", channel=2, resample_rate=8000
    )
    record = added.get(("rx1", "src"))
    assert record.windows == tuple(windows)
    assert record.channel == 2
    assert record.resample_rate == 8000
    assert record.config == config
    assert not record.is_mirror
    assert record.updated
    assert len(empty) == 0

    replaced = RecordMerger.merge(
        added, config.key, config, windows[:1], audio_file_id="rec", channel=1, resample_rate=None
    )
    assert len(replaced) == 1
    assert replaced.get(("rx1", "src")).windows == (windows[0],)
    assert len(added.get(("rx1", "src")).windows) == 2


def test_merge_marks_mirror_records():
    """Records written for mirror configurations are flagged."""
    config = DetectionConfig("rx2", "src", detector=MirrorConfig("rx1"))
    merged = RecordMerger.merge(
        RecordSet("rec"),
        config.key,
        config,
        [],
        audio_file_id="rec",
        channel=1,
        resample_rate=None,
    )
    assert merged.get(("rx2", "src")).is_mirror
