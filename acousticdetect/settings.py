"""Detector configurations: one frozen variant per strategy plus per-entry identity."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, ClassVar, TypeAlias

from acousticdetect.errors import ConfigurationInvalid, Diagnostic

logger = logging.getLogger(__name__)

NEYMAN_PEARSON_KINDS: tuple[str, ...] = ("ed", "ecw", "ecc")
COVARIANCE_ESTIMATORS: tuple[str, ...] = (
    "sample",
    "oas",
    "rblw",
    "param1",
    "param2",
    "corr",
    "diag",
    "stock",
    "looc",
)


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """Represents a single validation issue for a detection configuration."""

    field: str
    message: str


def _label(field: str) -> str:
    return field.replace("_", " ").capitalize()


def _coerce_float(issues: list[ValidationIssue], field: str, value: Any) -> float | None:
    if value is None:
        issues.append(ValidationIssue(field, f"{_label(field)} must be set."))
        return None
    if isinstance(value, bool):
        issues.append(ValidationIssue(field, f"{_label(field)} must be numeric."))
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        issues.append(ValidationIssue(field, f"{_label(field)} must be numeric."))
        return None
    if math.isnan(number):
        issues.append(ValidationIssue(field, f"{_label(field)} must be numeric."))
        return None
    return number


def _check_positive(issues: list[ValidationIssue], field: str, value: Any) -> float | None:
    number = _coerce_float(issues, field, value)
    if number is not None and (number <= 0.0 or math.isinf(number)):
        issues.append(ValidationIssue(field, f"{_label(field)} must be greater than zero."))
        return None
    return number


def _check_offset(
    issues: list[ValidationIssue], offset: Any, window_duration: float | None
) -> None:
    if offset is None:
        return
    value = _coerce_float(issues, "window_offset", offset)
    if value is None:
        return
    if value < 0.0:
        issues.append(ValidationIssue("window_offset", "Window offset cannot be negative."))
    elif window_duration is not None and value > window_duration:
        issues.append(
            ValidationIssue("window_offset", "Window offset cannot exceed the window duration.")
        )


def _check_cutoffs(issues: list[ValidationIssue], cutoff_freqs: Any) -> None:
    if cutoff_freqs is None:
        return
    try:
        low, high = (float(value) for value in cutoff_freqs)
    except (TypeError, ValueError):
        issues.append(
            ValidationIssue("cutoff_freqs", "Cutoff frequencies must be a (low, high) pair.")
        )
        return
    if not 0.0 <= low < high:
        issues.append(
            ValidationIssue(
                "cutoff_freqs",
                "Cutoff frequencies must satisfy 0 <= low < high.",
            )
        )


def _as_cutoffs(value: Any) -> tuple[float, float] | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return (float(value[0]), float(value[1]))
    return value


class _ParameterMixin:
    """Serialization shared by the strategy variants."""

    __slots__ = ()

    kind: ClassVar[str]

    def to_dict(self) -> dict[str, Any]:
        """Serialize the strategy parameters to a plain dictionary."""
        result: dict[str, Any] = {}
        for key, value in asdict(self).items():  # type: ignore[call-overload]
            if value is None:
                continue
            result[key] = list(value) if isinstance(value, tuple) else value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Any:
        """Create the strategy parameters from a serialized dictionary."""
        if not isinstance(data, dict):
            raise ConfigurationInvalid(
                f"Parameters for '{cls.kind}' must be a dictionary.",
                issues=[ValidationIssue("parameters", "Parameters must be a dictionary.")],
            )
        known = {item.name for item in fields(cls)}  # type: ignore[arg-type]
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationInvalid(
                f"Unknown parameters for '{cls.kind}': {', '.join(unknown)}",
                issues=[
                    ValidationIssue(name, f"Unknown parameter for '{cls.kind}'.")
                    for name in unknown
                ],
            )
        kwargs = dict(data)
        if "cutoff_freqs" in kwargs:
            kwargs["cutoff_freqs"] = _as_cutoffs(kwargs["cutoff_freqs"])
        try:
            return cls(**kwargs)
        except TypeError as exc:
            raise ConfigurationInvalid(
                f"Incomplete parameters for '{cls.kind}': {exc}",
                issues=[ValidationIssue("parameters", str(exc))],
            ) from exc


@dataclass(frozen=True, slots=True)
class SliceConfig(_ParameterMixin):
    """Fixed, non-overlapping slicing of the whole file."""

    kind: ClassVar[str] = "slice"

    window_duration: float

    def validate(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        _check_positive(issues, "window_duration", self.window_duration)
        return issues


@dataclass(frozen=True, slots=True)
class ConstantRateConfig(_ParameterMixin):
    """Windows placed on a known pulse schedule.

    ``first_pulse_s`` and ``pulse_interval_ms`` are either given explicitly or
    resolved per audio file from ``pulse_table``.
    """

    kind: ClassVar[str] = "constantrate"

    window_duration: float
    window_offset: float | None = None
    first_pulse_s: float | None = None
    pulse_interval_ms: float | None = None
    pulse_table: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.first_pulse_s is not None and self.pulse_interval_ms is not None

    def resolved(self, first_pulse_s: float, pulse_interval_ms: float) -> ConstantRateConfig:
        """Return a copy with the pulse schedule filled in."""
        return replace(self, first_pulse_s=first_pulse_s, pulse_interval_ms=pulse_interval_ms)

    def validate(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        window = _check_positive(issues, "window_duration", self.window_duration)
        _check_offset(issues, self.window_offset, window)
        if self.is_resolved:
            first = _coerce_float(issues, "first_pulse_s", self.first_pulse_s)
            if first is not None and first < 0.0:
                issues.append(
                    ValidationIssue("first_pulse_s", "First pulse time cannot be negative.")
                )
            _check_positive(issues, "pulse_interval_ms", self.pulse_interval_ms)
        elif not self.pulse_table:
            issues.append(
                ValidationIssue(
                    "pulse_table",
                    "Either a pulse table or both first_pulse_s and pulse_interval_ms must be set.",
                )
            )
        return issues


@dataclass(frozen=True, slots=True)
class MovingAverageConfig(_ParameterMixin):
    """RMS ratio between consecutive windows against a fixed or automatic threshold."""

    kind: ClassVar[str] = "movingaverage"

    window_duration: float
    window_offset: float | None = None
    threshold: float | None = None
    cutoff_freqs: tuple[float, float] | None = None

    def validate(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        window = _check_positive(issues, "window_duration", self.window_duration)
        _check_offset(issues, self.window_offset, window)
        if self.threshold is not None:
            _check_positive(issues, "threshold", self.threshold)
        _check_cutoffs(issues, self.cutoff_freqs)
        return issues


@dataclass(frozen=True, slots=True)
class NeymanPearsonConfig(_ParameterMixin):
    """Energy detector or estimator-correlator operated at a target false-alarm rate."""

    kind: ClassVar[str] = "neymanpearson"

    kernel_duration: float
    window_duration: float
    resample_rate: int
    detector_type: str = "ed"
    window_offset: float | None = None
    target_pfa: float = 1e-3
    sensitivity: float = 1.0
    min_snr_level: float = -10.0
    cutoff_freqs: tuple[float, float] | None = None
    estimator: str = "oas"
    train_folder: str | None = None

    @property
    def kernels_per_window(self) -> int:
        return max(1, int(math.ceil(self.window_duration / self.kernel_duration - 1e-9)))

    def validate(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        kernel = _check_positive(issues, "kernel_duration", self.kernel_duration)
        window = _check_positive(issues, "window_duration", self.window_duration)
        if kernel is not None and window is not None and kernel > window:
            issues.append(
                ValidationIssue(
                    "kernel_duration", "Kernel duration cannot exceed the window duration."
                )
            )
        _check_offset(issues, self.window_offset, window)
        _check_positive(issues, "resample_rate", self.resample_rate)
        if self.detector_type not in NEYMAN_PEARSON_KINDS:
            issues.append(
                ValidationIssue("detector_type", "Detector type must be one of: ed, ecw, ecc.")
            )
        pfa = _coerce_float(issues, "target_pfa", self.target_pfa)
        if pfa is not None and not 0.0 < pfa < 1.0:
            issues.append(
                ValidationIssue("target_pfa", "Target false-alarm probability must be in (0, 1).")
            )
        sensitivity = _coerce_float(issues, "sensitivity", self.sensitivity)
        if sensitivity is not None and not 0.0 <= sensitivity <= 1.0:
            issues.append(ValidationIssue("sensitivity", "Sensitivity must be between 0 and 1."))
        _coerce_float(issues, "min_snr_level", self.min_snr_level)
        _check_cutoffs(issues, self.cutoff_freqs)
        if self.estimator not in COVARIANCE_ESTIMATORS:
            issues.append(
                ValidationIssue(
                    "estimator",
                    f"Estimator must be one of: {', '.join(COVARIANCE_ESTIMATORS)}.",
                )
            )
        if self.detector_type in ("ecw", "ecc") and not self.train_folder:
            issues.append(
                ValidationIssue(
                    "train_folder",
                    "A training folder is required by the estimator-correlator detectors.",
                )
            )
        return issues


@dataclass(frozen=True, slots=True)
class MirrorConfig(_ParameterMixin):
    """Copy of the detections of another receiver for the same source."""

    kind: ClassVar[str] = "mirror"

    mirror_receiver_name: str

    def validate(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        if not isinstance(self.mirror_receiver_name, str) or not self.mirror_receiver_name:
            issues.append(
                ValidationIssue("mirror_receiver_name", "Mirror receiver name must be set.")
            )
        return issues


DetectorConfig: TypeAlias = (
    SliceConfig | ConstantRateConfig | MovingAverageConfig | NeymanPearsonConfig | MirrorConfig
)

DETECTOR_CONFIGS: dict[str, type[Any]] = {
    cls.kind: cls
    for cls in (SliceConfig, ConstantRateConfig, MovingAverageConfig, NeymanPearsonConfig)
}


@dataclass(frozen=True, slots=True)
class DetectionConfig:
    """One entry of the per-file configuration list.

    Attributes:
        receiver_name: Receiver half of the record key.
        source_name: Source half of the record key.
        detector: Strategy variant, or None when the entry is incomplete.
        channel: 1-based audio channel the detections refer to.
        resample_rate: Rate the audio was decoded at, kept as provenance.
        name: Free label used in diagnostics.
    """

    receiver_name: str
    source_name: str
    detector: DetectorConfig | None = None
    channel: int = 1
    resample_rate: int | None = None
    name: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.receiver_name, self.source_name)

    @property
    def is_mirror(self) -> bool:
        return isinstance(self.detector, MirrorConfig)

    @property
    def label(self) -> str:
        return self.name or f"{self.receiver_name}/{self.source_name}"

    def validate(self) -> list[ValidationIssue]:
        """Return a list of validation issues for this entry."""
        issues: list[ValidationIssue] = []
        if not isinstance(self.receiver_name, str) or not self.receiver_name:
            issues.append(ValidationIssue("receiver_name", "Receiver name must be set."))
        if not isinstance(self.source_name, str) or not self.source_name:
            issues.append(ValidationIssue("source_name", "Source name must be set."))
        if isinstance(self.channel, bool) or not isinstance(self.channel, int) or self.channel < 1:
            issues.append(ValidationIssue("channel", "Channel must be a positive integer."))
        if self.resample_rate is not None:
            _check_positive(issues, "resample_rate", self.resample_rate)
        if self.detector is None:
            issues.append(
                ValidationIssue("detector", "Either a detector or a mirror receiver must be set.")
            )
        else:
            issues.extend(self.detector.validate())
            if self.is_mirror and self.detector.mirror_receiver_name == self.receiver_name:
                issues.append(
                    ValidationIssue(
                        "mirror_receiver_name", "A receiver cannot mirror its own detections."
                    )
                )
        return issues

    def to_dict(self) -> dict[str, Any]:
        """Serialize the entry to a plain dictionary."""
        result: dict[str, Any] = {
            "receiver_name": self.receiver_name,
            "source_name": self.source_name,
            "channel": self.channel,
        }
        if self.resample_rate is not None:
            result["resample_rate"] = self.resample_rate
        if self.name:
            result["name"] = self.name
        if isinstance(self.detector, MirrorConfig):
            result["mirror_receiver"] = self.detector.mirror_receiver_name
        elif self.detector is not None:
            result["detector"] = self.detector.kind
            result["parameters"] = self.detector.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionConfig:
        """Create an entry from a previously serialized dictionary.

        Raises:
            ConfigurationInvalid: If the dictionary cannot describe a single strategy.
        """
        if not isinstance(data, dict):
            raise TypeError("DetectionConfig.from_dict expects a dictionary.")
        tag = data.get("detector")
        mirror = data.get("mirror_receiver")
        if tag and mirror:
            raise ConfigurationInvalid(
                "A configuration cannot set both a detector and a mirror receiver.",
                issues=[
                    ValidationIssue(
                        "detector", "Detector and mirror receiver are mutually exclusive."
                    )
                ],
            )
        detector: DetectorConfig | None = None
        if mirror:
            detector = MirrorConfig(mirror_receiver_name=str(mirror))
        elif tag:
            variant = DETECTOR_CONFIGS.get(str(tag).strip().lower())
            if variant is None:
                raise ConfigurationInvalid(
                    f"Unknown detector '{tag}'.",
                    issues=[
                        ValidationIssue(
                            "detector",
                            f"Detector must be one of: {', '.join(DETECTOR_CONFIGS)}.",
                        )
                    ],
                )
            detector = variant.from_dict(data.get("parameters") or {})
        return cls(
            receiver_name=str(data.get("receiver_name") or ""),
            source_name=str(data.get("source_name") or ""),
            detector=detector,
            channel=data.get("channel", 1),
            resample_rate=data.get("resample_rate"),
            name=str(data.get("name") or ""),
        )


def load_configs(path: Path) -> tuple[list[DetectionConfig], list[Diagnostic]]:
    """Read a JSON list of configuration entries.

    Entries that cannot be parsed are skipped and reported as diagnostics.

    Args:
        path: JSON file holding a list of configuration dictionaries.

    Returns:
        Tuple ``(configs, diagnostics)``.

    Raises:
        ConfigurationInvalid: If the file cannot be read or is not a JSON list.
    """
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Failed to read configuration file %s: %s", path, exc, exc_info=exc)
        raise ConfigurationInvalid(
            f"Failed to read configuration file: {exc}", context=str(path)
        ) from exc
    if not isinstance(raw, list):
        raise ConfigurationInvalid(
            "Configuration file must hold a list of entries.", context=str(path)
        )

    configs: list[DetectionConfig] = []
    diagnostics: list[Diagnostic] = []
    for index, entry in enumerate(raw):
        try:
            configs.append(DetectionConfig.from_dict(entry))
        except (ConfigurationInvalid, TypeError) as exc:
            logger.warning("Skipping configuration entry %d in %s: %s", index, path, exc)
            receiver = entry.get("receiver_name") if isinstance(entry, dict) else None
            source = entry.get("source_name") if isinstance(entry, dict) else None
            diagnostics.append(
                Diagnostic(
                    code="config-invalid",
                    message=f"Entry {index}: {exc}",
                    receiver_name=receiver,
                    source_name=source,
                )
            )
    return configs, diagnostics
