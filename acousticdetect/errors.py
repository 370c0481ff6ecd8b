"""Error taxonomy and structured diagnostics for detection runs."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from acousticdetect.settings import ValidationIssue


class AcousticDetectError(Exception):
    """Base class for errors raised by the detection core.

    Attributes:
        context: Optional high-level context string describing the attempted action.
        hints: Suggested remediation steps.
    """

    def __init__(
        self,
        message: str,
        *,
        context: str | None = None,
        hints: Sequence[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.context = context
        self.hints = list(hints or [])


class ConfigurationInvalid(AcousticDetectError):
    """A detection configuration lacks required fields or has out-of-range values."""

    def __init__(
        self,
        message: str,
        *,
        issues: Sequence[ValidationIssue] | None = None,
        context: str | None = None,
        hints: Sequence[str] | None = None,
    ) -> None:
        super().__init__(message, context=context, hints=hints)
        self.issues = list(issues or [])


class RuntimeDetectionFailure(AcousticDetectError):
    """A detector could not produce output for a specific file/configuration pair."""

    def __init__(
        self,
        message: str,
        *,
        config_name: str | None = None,
        context: str | None = None,
        hints: Sequence[str] | None = None,
    ) -> None:
        super().__init__(message, context=context, hints=hints)
        self.config_name = config_name


class PersistenceFailure(AcousticDetectError):
    """A record set could not be read or durably written."""

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        context: str | None = None,
        hints: Sequence[str] | None = None,
    ) -> None:
        super().__init__(message, context=context, hints=hints)
        self.path = path


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Structured, non-fatal report about one configuration of a run."""

    code: str
    message: str
    receiver_name: str | None = None
    source_name: str | None = None
    severity: str = "warning"

    def to_dict(self) -> dict[str, Any]:
        """Return a plain dictionary representation."""
        return {
            "code": self.code,
            "message": self.message,
            "receiver_name": self.receiver_name,
            "source_name": self.source_name,
            "severity": self.severity,
        }
