"""Consistency rules for merging detections into a record set."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from acousticdetect.detectors.base import EventWindow
from acousticdetect.errors import Diagnostic
from acousticdetect.records import AcousticRecord, RecordKey, RecordSet, timestamp
from acousticdetect.settings import DetectionConfig

logger = logging.getLogger(__name__)


class RecordMerger:
    """Ordering of a configuration batch and copy-on-write record updates."""

    @staticmethod
    def plan(
        configs: Sequence[DetectionConfig],
    ) -> tuple[list[DetectionConfig], list[Diagnostic]]:
        """Order a batch of configurations for one audio file.

        Later entries repeating a ``(receiver, source)`` key are dropped; mirror
        entries run after all other entries, each group keeping its order.

        Args:
            configs: Configurations in the order they were given.

        Returns:
            Tuple ``(ordered_configs, diagnostics)``.
        """
        seen: set[RecordKey] = set()
        detectors: list[DetectionConfig] = []
        mirrors: list[DetectionConfig] = []
        diagnostics: list[Diagnostic] = []
        for config in configs:
            if config.key in seen:
                logger.warning("Ignoring duplicate configuration for %s", config.label)
                diagnostics.append(
                    Diagnostic(
                        code="duplicate-key",
                        message=(
                            f"Configuration '{config.label}' repeats receiver "
                            f"'{config.receiver_name}' and source '{config.source_name}'; "
                            "the first entry is used."
                        ),
                        receiver_name=config.receiver_name,
                        source_name=config.source_name,
                    )
                )
                continue
            seen.add(config.key)
            (mirrors if config.is_mirror else detectors).append(config)
        return detectors + mirrors, diagnostics

    @staticmethod
    def merge(
        record_set: RecordSet,
        key: RecordKey,
        config: DetectionConfig,
        windows: Iterable[EventWindow],
        *,
        audio_file_id: str,
        channel: int,
        resample_rate: int | None,
    ) -> RecordSet:
        """Insert or wholesale replace the record of ``key``.

        Args:
            record_set: Current record set; it is not modified.
            key: ``(receiver_name, source_name)``.
            config: Configuration that produced the windows.
            windows: Detected windows in time order.
            audio_file_id: Identifier of the audio file.
            channel: Audio channel the windows refer to.
            resample_rate: Rate the audio was decoded at.

        Returns:
            New record set.
        """
        receiver_name, source_name = key
        record = AcousticRecord(
            receiver_name=receiver_name,
            source_name=source_name,
            config=config,
            windows=tuple(windows),
            audio_file_id=audio_file_id,
            channel=channel,
            resample_rate=resample_rate,
            is_mirror=config.is_mirror,
            updated=timestamp(),
        )
        action = "Replacing" if key in record_set else "Adding"
        logger.debug(
            "%s record %s/%s with %d window(s)",
            action,
            receiver_name,
            source_name,
            len(record.windows),
        )
        return record_set.with_record(record)
