"""Audio input: decoded sample buffers, pulse tables, and training corpora."""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import soundfile as sf

from acousticdetect.covariance import TrainingCorpus
from acousticdetect.dsp import resample_rows
from acousticdetect.errors import ConfigurationInvalid, RuntimeDetectionFailure
from acousticdetect.utils import strip_channel_suffix

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS: tuple[str, ...] = (".wav", ".flac")
PULSE_TABLE_COLUMNS: tuple[str, ...] = ("audioname", "firstpulse_s", "pulseinterval_ms")
_SNR_TAG = re.compile(r"_SNR(-?\d+(?:\.\d+)?)$", re.IGNORECASE)


@dataclass(frozen=True)
class SampleBuffer:
    """Mono, sample-rate-tagged audio owned by the caller.

    Attributes:
        samples: 1D float64 samples.
        sample_rate: Sample rate in Hz.
        audio_file_id: Identity of the recording the samples come from.
    """

    samples: np.ndarray
    sample_rate: int
    audio_file_id: str = ""
    channel: int = field(default=1, compare=False)

    def __post_init__(self) -> None:
        data = np.asarray(self.samples, dtype=np.float64)
        if data.ndim != 1:
            raise ValueError("SampleBuffer expects a mono (1D) signal")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        data.flags.writeable = False
        object.__setattr__(self, "samples", data)

    def __len__(self) -> int:
        return int(self.samples.size)

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return self.samples.size / float(self.sample_rate)


def audio_file_id(path: Path) -> str:
    """Return the record-set identity of an audio file (stem without channel tag)."""
    return strip_channel_suffix(Path(path).stem)


def load_audio(path: Path, channel: int = 1, resample_rate: int | None = None) -> SampleBuffer:
    """Decode one channel of an audio file.

    Args:
        path: Audio file path.
        channel: 1-based channel to keep.
        resample_rate: Optional target sample rate in Hz.

    Returns:
        SampleBuffer holding the selected channel.

    Raises:
        RuntimeDetectionFailure: If the file cannot be decoded or lacks the channel.
    """
    path = Path(path)
    try:
        data, sample_rate = sf.read(str(path), dtype="float64", always_2d=True)
    except (RuntimeError, OSError) as exc:
        logger.error("Failed to decode audio %s: %s", path, exc, exc_info=exc)
        raise RuntimeDetectionFailure(
            f"Failed to decode audio file: {exc}",
            context=str(path),
            hints=["Check that the file is a readable WAV or FLAC file."],
        ) from exc

    if channel < 1 or channel > data.shape[1]:
        raise RuntimeDetectionFailure(
            f"Channel {channel} not available ({data.shape[1]} channel(s))",
            context=str(path),
        )
    samples = data[:, channel - 1]
    if resample_rate and int(resample_rate) != int(sample_rate):
        samples = resample_rows(samples, int(sample_rate), int(resample_rate))
        sample_rate = int(resample_rate)
    logger.debug(
        "Loaded %s (channel %d, %d samples at %d Hz)", path.name, channel, samples.size, sample_rate
    )
    return SampleBuffer(
        samples=samples,
        sample_rate=int(sample_rate),
        audio_file_id=audio_file_id(path),
        channel=channel,
    )


def read_pulse_table(path: Path) -> dict[str, tuple[float, float]]:
    """Read a pulse schedule table.

    The CSV file needs the columns ``audioname``, ``firstpulse_s`` and
    ``pulseinterval_ms`` (any order, any case). Audio names are matched without
    their extension. Repeated lines are ignored; malformed lines are skipped with
    a warning.

    Args:
        path: CSV file path.

    Returns:
        Mapping of audio file id to ``(first_pulse_s, pulse_interval_ms)``.

    Raises:
        ConfigurationInvalid: If the file cannot be read or misses a column.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8-sig", newline="") as f:
            rows = list(csv.reader(f))
    except OSError as exc:
        logger.error("Failed to read pulse table %s: %s", path, exc, exc_info=exc)
        raise ConfigurationInvalid(
            f"Failed to read pulse table: {exc}", context=str(path)
        ) from exc

    if not rows:
        raise ConfigurationInvalid("Pulse table is empty.", context=str(path))
    header = [name.strip().lower() for name in rows[0]]
    missing = [name for name in PULSE_TABLE_COLUMNS if name not in header]
    if missing:
        raise ConfigurationInvalid(
            f"Pulse table is missing column(s): {', '.join(missing)}",
            context=str(path),
        )
    positions = [header.index(name) for name in PULSE_TABLE_COLUMNS]

    table: dict[str, tuple[float, float]] = {}
    seen: set[tuple[str, ...]] = set()
    for line_number, row in enumerate(rows[1:], start=2):
        if not any(cell.strip() for cell in row):
            continue
        cells = tuple(cell.strip() for cell in row)
        if cells in seen:
            continue
        seen.add(cells)
        if len(cells) != len(header):
            logger.warning(
                "Pulse table %s line %d has %d field(s), expected %d; ignored",
                path.name,
                line_number,
                len(cells),
                len(header),
            )
            continue
        name, first, interval = (cells[i] for i in positions)
        try:
            schedule = (float(first), float(interval))
        except ValueError:
            logger.warning("Pulse table %s line %d is not numeric; ignored", path.name, line_number)
            continue
        key = Path(name).stem
        if key in table and table[key] != schedule:
            logger.warning(
                "Pulse table %s lists %s more than once; keeping the first entry", path.name, key
            )
            continue
        table[key] = schedule
    return table


def _observations(
    path: Path, kernel_length: int, sample_rate: int, read_mode: str
) -> np.ndarray:
    data, file_rate = sf.read(str(path), dtype="float64", always_2d=True)
    samples = resample_rows(data[:, 0], int(file_rate), sample_rate)
    n_rows = samples.size // kernel_length
    if n_rows == 0:
        logger.warning("Training file %s is shorter than one kernel; ignored", path.name)
        return np.empty((0, kernel_length))
    if read_mode == "single":
        n_rows = 1
    return samples[: n_rows * kernel_length].reshape(n_rows, kernel_length)


def _read_observation_folder(
    folder: Path,
    kernel_length: int,
    sample_rate: int,
    read_mode: str,
    min_snr: float | None,
    exclude: Path | None = None,
) -> np.ndarray:
    rows: list[np.ndarray] = []
    for path in sorted(folder.rglob("*")):
        if path.suffix.lower() not in AUDIO_EXTENSIONS:
            continue
        if exclude is not None and exclude in path.parents:
            continue
        if min_snr is not None:
            match = _SNR_TAG.search(path.stem)
            if match is None or float(match.group(1)) < min_snr:
                continue
        try:
            rows.append(_observations(path, kernel_length, sample_rate, read_mode))
        except (RuntimeError, OSError) as exc:
            logger.warning("Skipping unreadable training file %s: %s", path, exc)
    if not rows:
        return np.empty((0, kernel_length))
    return np.vstack(rows)


def load_training_corpus(
    folder: Path,
    kernel_duration: float,
    sample_rate: int,
    *,
    read_mode: str = "single",
    min_snr: float | None = None,
) -> TrainingCorpus:
    """Build a training corpus from a folder of labelled audio segments.

    Signal observations come from ``folder/signal`` and noise observations from
    ``folder/noise``. A folder without a ``signal`` sub-folder is read as signal only.
    Each file is resampled to ``sample_rate`` and cut into kernel-length rows.

    Args:
        folder: Training folder.
        kernel_duration: Observation length in seconds.
        sample_rate: Sample rate of the observations in Hz.
        read_mode: ``"single"`` keeps one observation per file, ``"multi"`` keeps
            every complete kernel.
        min_snr: If set, only files tagged ``<name>_SNR<value>`` with a value at or
            above this level are used.

    Returns:
        TrainingCorpus with the signal (and optional noise) observations.

    Raises:
        ConfigurationInvalid: If the folder is missing or holds no usable observation.
    """
    folder = Path(folder)
    if read_mode not in ("single", "multi"):
        raise ConfigurationInvalid(f"Unknown read mode '{read_mode}'.")
    if not folder.is_dir():
        raise ConfigurationInvalid(f"Training folder not found: {folder}", context=str(folder))
    kernel_length = int(round(kernel_duration * sample_rate))
    if kernel_length < 1:
        raise ConfigurationInvalid("Kernel duration is shorter than one sample.")

    signal_folder = folder / "signal"
    noise_folder = folder / "noise"
    if not signal_folder.is_dir():
        signal_folder = folder
    signal = _read_observation_folder(
        signal_folder, kernel_length, sample_rate, read_mode, min_snr, exclude=noise_folder
    )
    noise = None
    if noise_folder.is_dir():
        noise = _read_observation_folder(noise_folder, kernel_length, sample_rate, read_mode, None)
    if signal.shape[0] == 0:
        raise ConfigurationInvalid(
            f"No training observations found in {folder}",
            context=str(folder),
            hints=["Place labelled WAV/FLAC segments in a 'signal' sub-folder."],
        )
    logger.info(
        "Training corpus %s: %d signal and %d noise observation(s)",
        folder.name,
        signal.shape[0],
        0 if noise is None else noise.shape[0],
    )
    return TrainingCorpus(signal=signal, sample_rate=sample_rate, noise=noise)
