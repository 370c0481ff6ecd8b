"""Per-audio-file record sets and their atomic on-disk store."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from acousticdetect import __version__
from acousticdetect.detectors.base import EventWindow
from acousticdetect.errors import ConfigurationInvalid, PersistenceFailure
from acousticdetect.settings import DetectionConfig
from acousticdetect.utils import ensure_dir

logger = logging.getLogger(__name__)

# Record set file format version
RECORDSET_VERSION = "1.0"

RecordKey = tuple[str, str]


@dataclass(frozen=True)
class AcousticRecord:
    """Detections of one ``(receiver, source)`` pair in one audio file."""

    receiver_name: str
    source_name: str
    config: DetectionConfig
    windows: tuple[EventWindow, ...] = ()
    audio_file_id: str = ""
    channel: int = 1
    resample_rate: int | None = None
    is_mirror: bool = False
    updated: str = ""

    @property
    def key(self) -> RecordKey:
        return (self.receiver_name, self.source_name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return {
            "receiver_name": self.receiver_name,
            "source_name": self.source_name,
            "config": self.config.to_dict(),
            "windows": [window.to_dict() for window in self.windows],
            "audio_file_id": self.audio_file_id,
            "channel": self.channel,
            "resample_rate": self.resample_rate,
            "is_mirror": self.is_mirror,
            "updated": self.updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AcousticRecord:
        """Create a record from a dictionary produced by ``to_dict``."""
        return cls(
            receiver_name=str(data["receiver_name"]),
            source_name=str(data["source_name"]),
            config=DetectionConfig.from_dict(data["config"]),
            windows=tuple(EventWindow.from_dict(item) for item in data.get("windows", [])),
            audio_file_id=str(data.get("audio_file_id", "")),
            channel=int(data.get("channel", 1)),
            resample_rate=data.get("resample_rate"),
            is_mirror=bool(data.get("is_mirror", False)),
            updated=str(data.get("updated", "")),
        )


@dataclass(frozen=True)
class RecordSet:
    """Ordered collection of records of one audio file, unique by key.

    Instances are never modified; ``with_record`` returns an updated copy.
    """

    audio_file_id: str
    records: tuple[AcousticRecord, ...] = ()
    version: str = RECORDSET_VERSION
    tool_version: str = __version__
    _index: dict[RecordKey, int] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        for position, record in enumerate(self.records):
            if record.key in self._index:
                raise ValueError(f"Duplicate record key {record.key} in {self.audio_file_id}")
            self._index[record.key] = position

    def get(self, key: RecordKey) -> AcousticRecord | None:
        position = self._index.get(key)
        return None if position is None else self.records[position]

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __iter__(self) -> Iterator[AcousticRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def keys(self) -> list[RecordKey]:
        return [record.key for record in self.records]

    def with_record(self, record: AcousticRecord) -> RecordSet:
        """Return a copy holding ``record``, replacing any record with the same key."""
        records = list(self.records)
        position = self._index.get(record.key)
        if position is None:
            records.append(record)
        else:
            records[position] = record
        return replace(self, records=tuple(records))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return {
            "version": self.version,
            "acousticdetect_version": self.tool_version,
            "audio_file_id": self.audio_file_id,
            "records": [record.to_dict() for record in self.records],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordSet:
        """Create a record set from a dictionary produced by ``to_dict``."""
        version = str(data.get("version", "0.0"))
        if version != RECORDSET_VERSION:
            logger.warning(
                "Record set version %s differs from current version %s",
                version,
                RECORDSET_VERSION,
            )
        return cls(
            audio_file_id=str(data.get("audio_file_id", "")),
            records=tuple(AcousticRecord.from_dict(item) for item in data.get("records", [])),
            version=RECORDSET_VERSION,
            tool_version=str(data.get("acousticdetect_version", __version__)),
        )


def timestamp() -> str:
    """Current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


class RecordStore:
    """One JSON record set per audio file inside a directory.

    Writes go to a temporary file in the same directory which is flushed, synced
    and then swapped in with ``os.replace``, so a reader sees either the previous
    or the new file. On POSIX the directory is synced after the swap.

    Per-file writer locks are shared across instances and dropped once no writer
    holds or waits on them.
    """

    _locks: weakref.WeakValueDictionary[Path, threading.Lock] = weakref.WeakValueDictionary()
    _registry_lock = threading.Lock()

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, audio_file_id: str) -> Path:
        return self.directory / f"{audio_file_id}.json"

    @contextmanager
    def lock(self, audio_file_id: str) -> Iterator[None]:
        """Hold the exclusive writer lock of one audio file."""
        path = self.path_for(audio_file_id).resolve()
        with self._registry_lock:
            file_lock = self._locks.get(path)
            if file_lock is None:
                file_lock = self._locks[path] = threading.Lock()
        with file_lock:
            yield

    def load(self, audio_file_id: str) -> RecordSet:
        """Load the record set of an audio file (empty when none is stored).

        Raises:
            PersistenceFailure: If the stored file cannot be read or parsed.
        """
        path = self.path_for(audio_file_id)
        if not path.exists():
            return RecordSet(audio_file_id=audio_file_id)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            record_set = RecordSet.from_dict(data)
        except OSError as exc:
            logger.error("Failed to read record set %s: %s", path, exc, exc_info=exc)
            raise PersistenceFailure(f"Failed to read record set: {exc}", path=path) from exc
        except (
            json.JSONDecodeError,
            ConfigurationInvalid,
            KeyError,
            TypeError,
            ValueError,
            AttributeError,
        ) as exc:
            logger.error("Invalid record set %s: %s", path, exc, exc_info=exc)
            raise PersistenceFailure(f"Invalid record set file: {exc}", path=path) from exc
        if record_set.audio_file_id != audio_file_id:
            logger.warning(
                "Record set %s belongs to '%s', expected '%s'",
                path,
                record_set.audio_file_id,
                audio_file_id,
            )
            record_set = replace(record_set, audio_file_id=audio_file_id)
        return record_set

    def save(self, record_set: RecordSet) -> Path:
        """Atomically write a record set.

        Raises:
            PersistenceFailure: If the file cannot be written; the previous file is
                left untouched.
        """
        path = self.path_for(record_set.audio_file_id)
        tmp_name: str | None = None
        try:
            ensure_dir(self.directory)
            payload = json.dumps(record_set.to_dict(), indent=2, ensure_ascii=False)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=self.directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
            if os.name == "posix":
                _fsync_directory(self.directory)
        except OSError as exc:
            logger.error("Failed to save record set to %s: %s", path, exc, exc_info=exc)
            raise PersistenceFailure(f"Failed to save record set: {exc}", path=path) from exc
        except (TypeError, ValueError) as exc:
            logger.error("Record set serialisation failed for %s: %s", path, exc, exc_info=exc)
            raise PersistenceFailure(
                f"Record set could not be serialised: {exc}", path=path
            ) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
        logger.debug("Record set saved to %s", path)
        return path


def _fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives power loss."""
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
