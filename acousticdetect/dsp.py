"""DSP utilities: local DC offsets, band-limited window RMS, moving RMS, resampling."""

from __future__ import annotations

from math import gcd
from typing import cast

import numpy as np
import numpy.typing as npt
from scipy import signal

# Duration of the blocks used to estimate the slow-moving DC offset
DC_BLOCK_DURATION = 10.0
# Upper bound on the memory used by one block of windows during spectral processing
MAX_BLOCK_BYTES = 50 * 1024 * 1024


def validate_cutoffs(
    cutoff_freqs: tuple[float, float] | None, sample_rate: float
) -> tuple[float, float] | None:
    """Check a two-sided cutoff pair against the Nyquist rate.

    Args:
        cutoff_freqs: ``(low, high)`` band edges in Hz, or None for full band.
        sample_rate: Sample rate in Hz.

    Returns:
        The cutoff pair with the high edge clamped to Nyquist, or None when the pair
        covers the full band.

    Raises:
        ValueError: If the sample rate is non-positive or the pair is not ordered
            within ``[0, Nyquist]``.
    """
    if sample_rate <= 0:
        raise ValueError("sample_rate must be positive")
    if cutoff_freqs is None:
        return None
    low, high = (float(value) for value in cutoff_freqs)
    if not np.isfinite(low) or not np.isfinite(high):
        raise ValueError("cutoff frequencies must be finite numbers")
    nyquist = sample_rate / 2.0
    high = min(high, nyquist)
    if not 0.0 <= low < high:
        raise ValueError(
            "Invalid cutoff configuration: ensure 0 <= low_freq < high_freq <= Nyquist"
        )
    if low == 0.0 and high == nyquist:
        return None
    return low, high


def local_dc_offset(
    samples: np.ndarray, sample_rate: float, duration: float = DC_BLOCK_DURATION
) -> tuple[np.ndarray, np.ndarray]:
    """Estimate the slow-moving DC offset of a signal.

    The signal is split into consecutive blocks of ``duration`` seconds (the last one
    may be shorter) and the mean of each block is returned together with the sample
    position of the block centre.

    Args:
        samples: Mono audio signal.
        sample_rate: Sample rate in Hz.
        duration: Block duration in seconds.

    Returns:
        Tuple ``(offsets, centres)``.
    """
    data = np.asarray(samples, dtype=np.float64)
    if data.size == 0:
        return np.zeros(0), np.zeros(0)
    block = max(1, int(round(duration * sample_rate)))
    starts = np.arange(0, data.size, block)
    counts = np.diff(np.append(starts, data.size))
    offsets = np.add.reduceat(data, starts) / counts
    centres = starts + (counts - 1) / 2.0
    return offsets, centres


def dc_at(offsets: np.ndarray, centres: np.ndarray, positions: npt.ArrayLike) -> np.ndarray:
    """Return the DC offset of the block whose centre is nearest to each position."""
    pos = np.asarray(positions, dtype=np.float64)
    if offsets.size == 0:
        return np.zeros(pos.shape)
    if offsets.size == 1:
        return np.full(pos.shape, offsets[0])
    right = np.clip(np.searchsorted(centres, pos), 1, centres.size - 1)
    left = right - 1
    use_right = (centres[right] - pos) < (pos - centres[left])
    return cast(np.ndarray, offsets[np.where(use_right, right, left)])


def frame_windows(samples: np.ndarray, window_length: int, start: int = 0) -> np.ndarray:
    """Return a ``(n_windows, window_length)`` view of consecutive windows.

    Args:
        samples: Mono audio signal.
        window_length: Window length in samples.
        start: First sample of the first window.

    Returns:
        2D view; the trailing partial window is discarded.
    """
    if window_length <= 0:
        raise ValueError("window_length must be positive")
    data = np.asarray(samples)[start:]
    n_windows = data.size // window_length
    if n_windows == 0:
        return np.empty((0, window_length), dtype=data.dtype)
    return data[: n_windows * window_length].reshape(n_windows, window_length)


def _band_mask(
    n_samples: int, sample_rate: float, cutoff_freqs: tuple[float, float] | None
) -> np.ndarray | None:
    cutoffs = validate_cutoffs(cutoff_freqs, sample_rate)
    if cutoffs is None:
        return None
    freqs = np.fft.rfftfreq(n_samples, d=1.0 / sample_rate)
    return (freqs >= cutoffs[0]) & (freqs <= cutoffs[1])


def band_degrees_of_freedom(
    n_samples: int, sample_rate: float, cutoff_freqs: tuple[float, float] | None = None
) -> int:
    """Count the real degrees of freedom a band mask keeps in an ``n_samples`` frame.

    Every kept rFFT bin carries two (real and imaginary part) except the DC bin and,
    for even lengths, the Nyquist bin, which carry one. The full band keeps all
    ``n_samples``.
    """
    if n_samples < 1:
        raise ValueError("n_samples must be positive")
    mask = _band_mask(n_samples, sample_rate, cutoff_freqs)
    if mask is None:
        return int(n_samples)
    weights = np.full(mask.size, 2)
    weights[0] = 1
    if n_samples % 2 == 0:
        weights[-1] = 1
    return int(np.sum(weights[mask]))


def band_rms(
    windows: np.ndarray, sample_rate: float, cutoff_freqs: tuple[float, float] | None = None
) -> np.ndarray:
    """Compute the band-limited RMS of each row.

    Out-of-band components are removed in the frequency domain, which is zero-phase,
    and the RMS is taken from the remaining spectrum through Parseval's relation.

    Args:
        windows: 2D array, one window per row.
        sample_rate: Sample rate in Hz.
        cutoff_freqs: ``(low, high)`` band edges in Hz, or None for full band.

    Returns:
        RMS value per row.
    """
    frames = np.atleast_2d(np.asarray(windows, dtype=np.float64))
    n_samples = frames.shape[1]
    if frames.shape[0] == 0 or n_samples == 0:
        return np.zeros(frames.shape[0])
    mask = _band_mask(n_samples, sample_rate, cutoff_freqs)
    if mask is None:
        return cast(np.ndarray, np.sqrt(np.mean(frames * frames, axis=1)))

    power = np.abs(np.fft.rfft(frames, axis=1)) ** 2
    weights = np.full(power.shape[1], 2.0)
    weights[0] = 1.0
    if n_samples % 2 == 0:
        weights[-1] = 1.0
    energy = np.sum(power * (weights * mask), axis=1) / n_samples
    return cast(np.ndarray, np.sqrt(energy / n_samples))


def band_filter(
    windows: np.ndarray, sample_rate: float, cutoff_freqs: tuple[float, float] | None
) -> np.ndarray:
    """Band-limit each row in the frequency domain (zero-phase, circular)."""
    frames = np.atleast_2d(np.asarray(windows, dtype=np.float64))
    n_samples = frames.shape[1]
    mask = _band_mask(n_samples, sample_rate, cutoff_freqs)
    if mask is None or frames.shape[0] == 0:
        return frames.copy()
    spectrum = np.fft.rfft(frames, axis=1) * mask
    return cast(np.ndarray, np.fft.irfft(spectrum, n=n_samples, axis=1))


def windowed_band_rms(
    samples: np.ndarray,
    sample_rate: float,
    window_length: int,
    cutoff_freqs: tuple[float, float] | None = None,
    *,
    max_block_bytes: int = MAX_BLOCK_BYTES,
) -> np.ndarray:
    """Band-limited RMS of consecutive windows after local DC removal.

    Windows are transformed in blocks so that peak memory stays bounded. Every window
    is processed independently, so the block size never changes the result.

    Args:
        samples: Mono audio signal.
        sample_rate: Sample rate in Hz.
        window_length: Window length in samples.
        cutoff_freqs: ``(low, high)`` band edges in Hz, or None for full band.
        max_block_bytes: Memory budget for one block of windows.

    Returns:
        RMS value per complete window.
    """
    frames = frame_windows(samples, window_length)
    n_windows = frames.shape[0]
    rms = np.zeros(n_windows)
    if n_windows == 0:
        return rms

    offsets, centres = local_dc_offset(samples, sample_rate)
    positions = np.arange(n_windows) * window_length + (window_length - 1) / 2.0
    dc = dc_at(offsets, centres, positions)

    # Complex spectrum dominates the footprint
    windows_per_block = max(1, int(max_block_bytes // (window_length * 16)))
    for first in range(0, n_windows, windows_per_block):
        last = min(first + windows_per_block, n_windows)
        block = frames[first:last] - dc[first:last, np.newaxis]
        rms[first:last] = band_rms(block, sample_rate, cutoff_freqs)
    return rms


def moving_rms(values: np.ndarray, length: int) -> np.ndarray:
    """Centred moving RMS with edge values repeated as padding.

    Args:
        values: 1D input signal.
        length: Window length in samples.

    Returns:
        Smoothed RMS envelope, same length as the input.
    """
    data = np.asarray(values, dtype=np.float64)
    length = max(1, int(length))
    if data.size == 0:
        return data.copy()
    pad_before = int(np.ceil((length - 1) / 2))
    pad_after = length - 1 - pad_before
    padded = np.concatenate(
        [np.full(pad_before, data[0]), data, np.full(pad_after, data[-1])]
    )
    cumulative = np.concatenate([[0.0], np.cumsum(padded * padded)])
    mean_square = (cumulative[length:] - cumulative[:-length]) / length
    return cast(np.ndarray, np.sqrt(np.maximum(mean_square, 0.0)))


def resample_rows(rows: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Polyphase resampling along the last axis.

    Args:
        rows: 1D signal or 2D array with one signal per row.
        from_rate: Current sample rate in Hz.
        to_rate: Target sample rate in Hz.

    Returns:
        Resampled array (unchanged input when the rates match).
    """
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError("sample rates must be positive")
    data = np.asarray(rows, dtype=np.float64)
    if int(from_rate) == int(to_rate):
        return data
    divisor = gcd(int(from_rate), int(to_rate))
    up = int(to_rate) // divisor
    down = int(from_rate) // divisor
    return cast(np.ndarray, signal.resample_poly(data, up, down, axis=-1))
