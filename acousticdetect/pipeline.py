"""Detection engine: runs configurations per audio file and persists the records."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import numpy as np
from tqdm import tqdm

from acousticdetect.audio_io import (
    SampleBuffer,
    audio_file_id,
    load_audio,
    load_training_corpus,
    read_pulse_table,
)
from acousticdetect.covariance import CovarianceModel, TrainingCorpus, build_covariance_model
from acousticdetect.detectors import create_detector, mirror_windows
from acousticdetect.detectors.base import EventWindow
from acousticdetect.errors import (
    ConfigurationInvalid,
    Diagnostic,
    PersistenceFailure,
    RuntimeDetectionFailure,
)
from acousticdetect.merger import RecordMerger
from acousticdetect.records import RecordSet, RecordStore
from acousticdetect.settings import (
    ConstantRateConfig,
    DetectionConfig,
    MirrorConfig,
    MovingAverageConfig,
    NeymanPearsonConfig,
)
from acousticdetect.utils import Timer

logger = logging.getLogger(__name__)

CorpusLoader = Callable[[Path, float, int], TrainingCorpus]
ModelPair = tuple[CovarianceModel, CovarianceModel | None]


@dataclass
class FileResult:
    """Outcome of processing one audio file."""

    audio_file_id: str
    record_set: RecordSet | None = None
    updated: list[tuple[str, str]] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    error: PersistenceFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        """One-line human-readable summary."""
        if self.error is not None:
            return f"{self.audio_file_id}: FAILED ({self.error})"
        windows = 0
        if self.record_set is not None:
            windows = sum(
                len(record.windows)
                for record in self.record_set
                if record.key in self.updated
            )
        return (
            f"{self.audio_file_id}: {len(self.updated)} record(s) updated, "
            f"{windows} window(s), {len(self.diagnostics)} diagnostic(s)"
        )


class DetectionEngine:
    """Run detection configurations against audio files.

    Per file, configurations are ordered by ``RecordMerger.plan``, validated and
    run one after another with mirrors last; the updated record set is written
    once, under the file's lock, after every configuration has run. A failing
    configuration becomes a diagnostic and does not stop its siblings.
    """

    def __init__(
        self,
        store: RecordStore,
        pulse_table: dict[str, tuple[float, float]] | None = None,
        corpus_loader: CorpusLoader | None = None,
        max_workers: int = 1,
    ):
        """Initialize engine.

        Args:
            store: Record store the results are merged into.
            pulse_table: Pulse schedules by audio file id for constant-rate configs
                without their own table.
            corpus_loader: Callable ``(folder, kernel_duration, sample_rate)``
                returning a TrainingCorpus.
            max_workers: Number of files processed in parallel.
        """
        self.store = store
        self.pulse_table = pulse_table
        self.corpus_loader: CorpusLoader = corpus_loader or load_training_corpus
        self.max_workers = max(1, int(max_workers))
        self._models: dict[tuple[Any, ...], ModelPair] = {}
        self._pulse_tables: dict[str, dict[str, tuple[float, float]]] = {}
        self._cache_lock = threading.Lock()

    def covariance_models(self, config: NeymanPearsonConfig) -> ModelPair:
        """Signal and noise covariance models for an estimator-correlator config.

        Models are cached per training folder, estimator, kernel, rate and band.

        Raises:
            ConfigurationInvalid: If the corpus is missing or insufficient.
        """
        if not config.train_folder:
            raise ConfigurationInvalid("No training folder configured")
        cutoffs = None if config.cutoff_freqs is None else tuple(config.cutoff_freqs)
        key = (
            str(Path(config.train_folder).resolve()),
            config.detector_type == "ecc",
            config.estimator,
            config.kernel_duration,
            int(config.resample_rate),
            cutoffs,
        )
        with self._cache_lock:
            cached = self._models.get(key)
            if cached is not None:
                return cached
            rate = int(config.resample_rate)
            kernel_length = int(round(config.kernel_duration * rate))
            with Timer(f"Covariance models for {Path(config.train_folder).name}"):
                corpus = self.corpus_loader(Path(config.train_folder), config.kernel_duration, rate)
                signal_model = build_covariance_model(
                    corpus.signal,
                    corpus.sample_rate,
                    rate,
                    kernel_length,
                    config.estimator,
                    config.cutoff_freqs,
                )
                noise_model = None
                if config.detector_type == "ecc":
                    if corpus.noise is None or corpus.noise.size == 0:
                        raise ConfigurationInvalid(
                            f"Training folder {config.train_folder} holds no noise observations",
                            hints=["Place noise segments in a 'noise' sub-folder."],
                        )
                    noise_model = build_covariance_model(
                        corpus.noise,
                        corpus.sample_rate,
                        rate,
                        kernel_length,
                        config.estimator,
                        config.cutoff_freqs,
                    )
            self._models[key] = (signal_model, noise_model)
            return signal_model, noise_model

    def _pulse_schedule(self, config: ConstantRateConfig, file_id: str) -> ConstantRateConfig:
        if config.is_resolved:
            return config
        if config.pulse_table:
            with self._cache_lock:
                table = self._pulse_tables.get(config.pulse_table)
                if table is None:
                    table = read_pulse_table(Path(config.pulse_table))
                    self._pulse_tables[config.pulse_table] = table
        else:
            table = self.pulse_table or {}
        schedule = table.get(file_id)
        if schedule is None:
            raise RuntimeDetectionFailure(f"No pulse schedule for '{file_id}' in the pulse table")
        return config.resolved(*schedule)

    def _with_default_schedule(self, config: DetectionConfig, file_id: str) -> DetectionConfig:
        """Fill an unscheduled constant-rate config from the engine pulse table."""
        strategy = config.detector
        if (
            not isinstance(strategy, ConstantRateConfig)
            or strategy.is_resolved
            or strategy.pulse_table
            or self.pulse_table is None
        ):
            return config
        schedule = self.pulse_table.get(file_id)
        if schedule is None:
            return config
        return replace(config, detector=strategy.resolved(*schedule))

    def run_detector(
        self, config: DetectionConfig, buffer: SampleBuffer
    ) -> tuple[list[EventWindow], DetectionConfig]:
        """Run one non-mirror configuration.

        Returns:
            Tuple ``(windows, stored_config)``; the stored configuration carries the
            resolved pulse schedule or the automatic threshold actually used.
        """
        strategy = config.detector
        signal_model = noise_model = None
        if isinstance(strategy, ConstantRateConfig):
            strategy = self._pulse_schedule(strategy, buffer.audio_file_id)
        elif isinstance(strategy, NeymanPearsonConfig) and strategy.detector_type != "ed":
            signal_model, noise_model = self.covariance_models(strategy)
        if strategy is None:
            raise ConfigurationInvalid(f"Configuration '{config.label}' has no detector")

        detector = create_detector(
            strategy, buffer.sample_rate, signal_model=signal_model, noise_model=noise_model
        )
        with Timer(f"{detector.name} on {buffer.audio_file_id} ({config.label})"):
            windows = detector.detect(buffer.samples)
        if isinstance(strategy, MovingAverageConfig) and strategy.threshold is None:
            strategy = replace(strategy, threshold=detector.stats.get("threshold"))
        logger.info(
            "%s: %d window(s) for %s/%s",
            buffer.audio_file_id,
            len(windows),
            config.receiver_name,
            config.source_name,
        )
        return windows, replace(config, detector=strategy)

    def _process(
        self,
        file_id: str,
        configs: Sequence[DetectionConfig],
        buffer_for: Callable[[DetectionConfig], SampleBuffer],
    ) -> FileResult:
        result = FileResult(audio_file_id=file_id)
        ordered, result.diagnostics = RecordMerger.plan(configs)

        runnable: list[DetectionConfig] = []
        for config in ordered:
            config = self._with_default_schedule(config, file_id)
            issues = config.validate()
            if issues:
                message = "; ".join(f"{issue.field}: {issue.message}" for issue in issues)
                logger.warning("Skipping invalid configuration %s: %s", config.label, message)
                result.diagnostics.append(
                    Diagnostic(
                        code="config-invalid",
                        message=message,
                        receiver_name=config.receiver_name or None,
                        source_name=config.source_name or None,
                    )
                )
                continue
            runnable.append(config)

        with self.store.lock(file_id):
            record_set = self.store.load(file_id)
            for config in runnable:
                if isinstance(config.detector, MirrorConfig):
                    windows, mirror_diagnostics = mirror_windows(
                        record_set,
                        config.detector.mirror_receiver_name,
                        config.source_name,
                        config.receiver_name,
                    )
                    result.diagnostics.extend(mirror_diagnostics)
                    stored = config
                    channel, resample_rate = config.channel, config.resample_rate
                else:
                    try:
                        buffer = buffer_for(config)
                        windows, stored = self.run_detector(config, buffer)
                    except ConfigurationInvalid as exc:
                        result.diagnostics.append(self._failure("config-invalid", config, exc))
                        continue
                    except (RuntimeDetectionFailure, ValueError, np.linalg.LinAlgError) as exc:
                        result.diagnostics.append(self._failure("detection-failed", config, exc))
                        continue
                    channel = buffer.channel
                    resample_rate = config.resample_rate or buffer.sample_rate
                record_set = RecordMerger.merge(
                    record_set,
                    config.key,
                    stored,
                    windows,
                    audio_file_id=file_id,
                    channel=channel,
                    resample_rate=resample_rate,
                )
                result.updated.append(config.key)
            if result.updated:
                self.store.save(record_set)
        result.record_set = record_set
        return result

    @staticmethod
    def _failure(code: str, config: DetectionConfig, exc: Exception) -> Diagnostic:
        logger.warning("Configuration %s failed: %s", config.label, exc, exc_info=exc)
        return Diagnostic(
            code=code,
            message=str(exc),
            receiver_name=config.receiver_name,
            source_name=config.source_name,
            severity="error",
        )

    def process_file(self, buffer: SampleBuffer, configs: Sequence[DetectionConfig]) -> FileResult:
        """Run configurations against one decoded buffer and persist the records.

        Raises:
            PersistenceFailure: If the record set cannot be loaded or saved.
        """
        file_id = buffer.audio_file_id
        if not file_id:
            raise ValueError("SampleBuffer has no audio_file_id")
        return self._process(file_id, configs, lambda config: buffer)

    def process_path(self, path: Path, configs: Sequence[DetectionConfig]) -> FileResult:
        """Decode an audio file once per (channel, rate) and process it.

        Raises:
            PersistenceFailure: If the record set cannot be loaded or saved.
        """
        path = Path(path)
        buffers: dict[tuple[int, int | None], SampleBuffer] = {}

        def buffer_for(config: DetectionConfig) -> SampleBuffer:
            key = (config.channel, config.resample_rate)
            if key not in buffers:
                buffers[key] = load_audio(path, config.channel, config.resample_rate)
            return buffers[key]

        return self._process(audio_file_id(path), configs, buffer_for)

    def process_files(
        self,
        paths: Sequence[Path],
        configs: Sequence[DetectionConfig],
        show_progress: bool = True,
    ) -> list[FileResult]:
        """Process audio files in parallel.

        A PersistenceFailure is recorded in that file's result and does not stop
        the other files.

        Returns:
            One FileResult per path, in input order.
        """
        results: list[FileResult | None] = [None] * len(paths)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.process_path, path, configs): index
                for index, path in enumerate(paths)
            }
            for future in tqdm(
                as_completed(futures),
                total=len(futures),
                desc="Processing files",
                disable=not show_progress,
            ):
                index = futures[future]
                try:
                    results[index] = future.result()
                except PersistenceFailure as exc:
                    logger.error("Failed to persist records for %s: %s", paths[index], exc)
                    file_id = audio_file_id(paths[index])
                    results[index] = FileResult(audio_file_id=file_id, error=exc)
        return [result for result in results if result is not None]
