"""Tests for record sets and the atomic record store."""

import gc
import json
import logging
import os
import threading
from pathlib import Path

import pytest

from acousticdetect.detectors import EventWindow
from acousticdetect.errors import PersistenceFailure
from acousticdetect.records import (
    RECORDSET_VERSION,
    AcousticRecord,
    RecordSet,
    RecordStore,
)
from acousticdetect.settings import DetectionConfig, MirrorConfig, SliceConfig


def _record(receiver: str, source: str = "src", n_windows: int = 1) -> AcousticRecord:
    windows = tuple(
        EventWindow(i + 0.5, float(i), i + 1.0, float(i), float(i)) for i in range(n_windows)
    )
    return AcousticRecord(
        receiver_name=receiver,
        source_name=source,
        config=DetectionConfig(receiver, source, detector=SliceConfig(1.0)),
        windows=windows,
        audio_file_id="rec",
        updated="2024-01-01T00:00:00+00:00",
    )


def test_with_record_adds_and_replaces():
    """Records are added in order and replaced in place; the original is untouched."""
    empty = RecordSet("rec")
    first = empty.with_record(_record("rx1"))
    second = first.with_record(_record("rx2"))
    replaced = second.with_record(_record("rx1", n_windows=3))

    assert len(empty) == 0
    assert len(first) == 1
    assert replaced.keys() == [("rx1", "src"), ("rx2", "src")]
    assert len(replaced.get(("rx1", "src")).windows) == 3
    assert len(second.get(("rx1", "src")).windows) == 1
    assert ("rx2", "src") in replaced
    assert ("rx3", "src") not in replaced
    assert replaced.get(("rx3", "src")) is None
    assert [record.receiver_name for record in replaced] == ["rx1", "rx2"]


def test_duplicate_keys_are_rejected():
    """A record set never holds two records for one key."""
    with pytest.raises(ValueError):
        RecordSet("rec", records=(_record("rx1"), _record("rx1")))


def test_store_round_trip(tmp_path: Path):
    """Saved record sets load back unchanged."""
    mirror = AcousticRecord(
        receiver_name="rx2",
        source_name="src",
        config=DetectionConfig("rx2", "src", detector=MirrorConfig("rx1")),
        windows=_record("rx1").windows,
        audio_file_id="rec",
        is_mirror=True,
    )
    record_set = RecordSet("rec", records=(_record("rx1", n_windows=2), mirror))
    store = RecordStore(tmp_path / "records")

    path = store.save(record_set)
    assert path == tmp_path / "records" / "rec.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["version"] == RECORDSET_VERSION
    assert data["audio_file_id"] == "rec"

    loaded = store.load("rec")
    assert loaded == record_set
    assert loaded.get(("rx2", "src")).is_mirror


def test_store_missing_file_is_empty(tmp_path: Path):
    """An audio file without stored records gets an empty set."""
    loaded = RecordStore(tmp_path).load("nothing")
    assert loaded.audio_file_id == "nothing"
    assert len(loaded) == 0


def test_store_corrupt_file(tmp_path: Path):
    """Unparseable record files raise PersistenceFailure."""
    store = RecordStore(tmp_path)
    store.path_for("rec").write_text("{not json", encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        store.load("rec")

    store.path_for("rec").write_text(json.dumps({"records": [{"foo": 1}]}), encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        store.load("rec")


def test_failed_save_keeps_previous_file(tmp_path: Path, monkeypatch):
    """A failing swap leaves the previous file and no temporary files behind."""
    store = RecordStore(tmp_path)
    store.save(RecordSet("rec", records=(_record("rx1"),)))
    before = store.path_for("rec").read_bytes()

    def failing_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("acousticdetect.records.os.replace", failing_replace)
    with pytest.raises(PersistenceFailure):
        store.save(RecordSet("rec", records=(_record("rx1"), _record("rx2"))))

    assert store.path_for("rec").read_bytes() == before
    assert [p.name for p in tmp_path.iterdir() if p.suffix == ".tmp"] == []


def test_version_mismatch_warns(tmp_path: Path, caplog):
    """Files from another format version still load, with a warning."""
    store = RecordStore(tmp_path)
    data = RecordSet("rec", records=(_record("rx1"),)).to_dict()
    data["version"] = "0.9"
    store.path_for("rec").write_text(json.dumps(data), encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="acousticdetect.records"):
        loaded = store.load("rec")

    assert len(loaded) == 1
    assert loaded.version == RECORDSET_VERSION
    assert "version 0.9" in caplog.text


def test_lock_is_shared_between_stores(tmp_path: Path):
    """Two stores on one directory serialize writers of the same audio file."""
    first = RecordStore(tmp_path)
    second = RecordStore(tmp_path)
    acquired = threading.Event()

    def contender():
        with second.lock("rec"):
            acquired.set()

    with first.lock("rec"):
        thread = threading.Thread(target=contender)
        thread.start()
        assert not acquired.wait(0.2)
        with second.lock("other"):
            pass
    thread.join(timeout=5)
    assert acquired.is_set()


def test_lock_registry_drops_released_locks(tmp_path: Path):
    """A file lock only stays registered while it is in use."""
    store = RecordStore(tmp_path)
    path = store.path_for("rec").resolve()

    with store.lock("rec"):
        assert path in RecordStore._locks
    gc.collect()

    assert path not in RecordStore._locks


@pytest.mark.skipif(os.name != "posix", reason="directory fsync is POSIX only")
def test_save_syncs_file_and_directory(tmp_path: Path, monkeypatch):
    """Both the temporary file and its directory are flushed to disk."""
    real_fsync = os.fsync
    synced = []

    def recording_fsync(fd):
        synced.append(fd)
        real_fsync(fd)

    monkeypatch.setattr("acousticdetect.records.os.fsync", recording_fsync)
    RecordStore(tmp_path / "records").save(RecordSet("rec", records=(_record("rx1"),)))

    assert len(synced) == 2
