"""Mirror detections of another receiver within the same record set."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from acousticdetect.detectors.base import EventWindow
from acousticdetect.errors import Diagnostic

if TYPE_CHECKING:
    from acousticdetect.records import RecordSet

logger = logging.getLogger(__name__)


def mirror_windows(
    record_set: RecordSet, mirror_receiver_name: str, source_name: str, receiver_name: str = ""
) -> tuple[list[EventWindow], list[Diagnostic]]:
    """Copy the windows of ``(mirror_receiver_name, source_name)`` verbatim.

    Records that are mirrors themselves are never used as a source.

    Args:
        record_set: Record set of the audio file being processed.
        mirror_receiver_name: Receiver whose detections are copied.
        source_name: Source shared by both records.
        receiver_name: Receiver that receives the copy, for diagnostics.

    Returns:
        Tuple ``(windows, diagnostics)``; windows are empty when the source record
        is missing.
    """
    record = record_set.get((mirror_receiver_name, source_name))
    if record is None or record.is_mirror:
        reason = "is missing" if record is None else "is itself a mirror"
        logger.warning(
            "Mirror source %s/%s %s in %s",
            mirror_receiver_name,
            source_name,
            reason,
            record_set.audio_file_id,
        )
        return [], [
            Diagnostic(
                code="mirror-source-missing",
                message=(
                    f"No detections of receiver '{mirror_receiver_name}' for source "
                    f"'{source_name}' to mirror ({reason})."
                ),
                receiver_name=receiver_name or None,
                source_name=source_name,
            )
        ]
    return list(record.windows), []
