"""Decision thresholds: automatic RMS-ratio threshold and Neyman-Pearson calibration."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache

import numpy as np
from scipy import stats
from scipy.interpolate import PchipInterpolator

logger = logging.getLogger(__name__)

# Automatic RMS-ratio threshold
RATIO_BIN_WIDTH = 0.01
RATIO_RANGE = 10.0
MIN_PEAK_COUNT = 10
MAX_COARSENING_ATTEMPTS = 10
TAIL_FRACTION = 0.05
DEFAULT_RATIO_THRESHOLD = 2.0

# Neyman-Pearson calibration
SNR_GRID_DB = np.arange(-50.0, 51.0, 1.0)
PD_OPERATING_POINT = 0.99999


def _ratio_histogram(values: np.ndarray, group: int) -> tuple[np.ndarray, np.ndarray]:
    n_fine = int(round(RATIO_RANGE / RATIO_BIN_WIDTH))
    fine_edges = np.linspace(0.0, RATIO_RANGE, n_fine + 1)
    counts, _ = np.histogram(values, bins=fine_edges)
    if group == 1:
        return counts, fine_edges
    n_groups = int(math.ceil(n_fine / group))
    padded = np.zeros(n_groups * group, dtype=counts.dtype)
    padded[:n_fine] = counts
    edges = np.arange(n_groups + 1) * group * RATIO_BIN_WIDTH
    return padded.reshape(n_groups, group).sum(axis=1), edges


def auto_ratio_threshold(ratios: np.ndarray) -> float:
    """Derive an RMS-ratio threshold from the histogram of window-to-window ratios.

    The histogram uses 0.01-wide bins over ``[0, 10]``. While its peak holds fewer
    than ``MIN_PEAK_COUNT`` values, adjacent bins are merged in growing groups, up
    to ``MAX_COARSENING_ATTEMPTS`` times. Scanning back from the upper tail, the first
    bin whose count exceeds 5% of the peak marks the edge of the main lobe. The
    threshold sits twice the lobe width above the peak, and never above the midpoint
    between the peak and the last edge.

    Args:
        ratios: RMS ratios of consecutive windows; non-finite values are ignored.

    Returns:
        Ratio threshold, or ``DEFAULT_RATIO_THRESHOLD`` when the histogram is degenerate.
    """
    values = np.asarray(ratios, dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size == 0:
        logger.warning(
            "No RMS ratios available; using default threshold %.2f", DEFAULT_RATIO_THRESHOLD
        )
        return DEFAULT_RATIO_THRESHOLD

    counts, edges = _ratio_histogram(values, 1)
    attempt = 0
    while counts.max() < MIN_PEAK_COUNT and attempt < MAX_COARSENING_ATTEMPTS:
        attempt += 1
        counts, edges = _ratio_histogram(values, attempt + 1)
    if counts.max() < MIN_PEAK_COUNT:
        logger.warning(
            "Ratio histogram too sparse after %d coarsening attempt(s); "
            "using default threshold %.2f",
            attempt,
            DEFAULT_RATIO_THRESHOLD,
        )
        return DEFAULT_RATIO_THRESHOLD

    peak = int(np.argmax(counts))
    limit = math.ceil(TAIL_FRACTION * counts[peak])
    tail = int(np.flatnonzero(counts > limit)[-1])
    index = peak + 2 * (tail - peak + 1)
    index = min(index, (peak + edges.size - 1) // 2)
    threshold = float(edges[index])
    logger.debug(
        "Automatic ratio threshold %.3f (peak bin %d, tail bin %d, %d coarsening step(s))",
        threshold,
        peak,
        tail,
        attempt,
    )
    return threshold


class FittedChiSquare:
    """Distribution of a weighted sum of chi-square terms.

    ``Q = Σ w_k χ²_1(δ_k)`` (each weight repeated ``multiplicity`` times) is fitted
    by a scaled non-central chi-square that matches the first four cumulants
    (Liu, Tang and Zhang, 2009). The fit is exact for equal weights.
    """

    def __init__(
        self,
        weights: np.ndarray,
        *,
        multiplicity: int | np.ndarray = 1,
        noncentrality: float | np.ndarray = 0.0,
    ) -> None:
        w = np.atleast_1d(np.asarray(weights, dtype=np.float64))
        h = np.broadcast_to(np.asarray(multiplicity, dtype=np.float64), w.shape)
        delta = np.broadcast_to(np.asarray(noncentrality, dtype=np.float64), w.shape)
        c1, c2, c3, c4 = (float(np.sum(w**k * (h + k * delta))) for k in range(1, 5))
        if c2 <= 0.0:
            raise ValueError("weights must include a positive value")
        s1 = c3 / c2**1.5
        s2 = c4 / c2**2
        if s1 * s1 > s2:
            a = 1.0 / (s1 - math.sqrt(s1 * s1 - s2))
            nc = s1 * a**3 - a * a
            dof = a * a - 2.0 * nc
        else:
            a = 1.0 / s1
            nc = 0.0
            dof = 1.0 / (s1 * s1)
        self.dof = dof
        self.noncentrality = nc
        self._mean_q = c1
        self._std_q = math.sqrt(2.0 * c2)
        self._mean_x = dof + nc
        self._std_x = math.sqrt(2.0) * a
        self._dist = stats.ncx2(dof, nc) if nc > 0.0 else stats.chi2(dof)

    def _to_reference(self, t: np.ndarray | float) -> np.ndarray:
        return (np.asarray(t, dtype=np.float64) - self._mean_q) / self._std_q * self._std_x + (
            self._mean_x
        )

    def sf(self, t: np.ndarray | float) -> np.ndarray:
        """Right-tail probability ``P(Q > t)``."""
        return np.asarray(self._dist.sf(self._to_reference(t)))

    def pdf(self, t: np.ndarray | float) -> np.ndarray:
        """Probability density of ``Q``."""
        return np.asarray(self._dist.pdf(self._to_reference(t)) * self._std_x / self._std_q)

    def isf(self, probability: float) -> float:
        """Value of ``Q`` whose right-tail probability equals ``probability``."""
        reference = float(self._dist.isf(probability))
        return (reference - self._mean_x) / self._std_x * self._std_q + self._mean_q


@dataclass(frozen=True, eq=False)
class PerformanceModel:
    """Parameters of the Neyman-Pearson test-statistic distributions.

    Distributions are expressed for unit noise variance.

    Attributes:
        detector_type: ``"ed"``, ``"ecw"`` or ``"ecc"``.
        kernel_length: Samples per kernel.
        band_dof: Real degrees of freedom kept by the band filter per kernel, or None
            for the full band.
        eigenvalues: Normalized signal eigenvalues (estimator-correlators only).
    """

    detector_type: str
    kernel_length: int
    band_dof: int | None = None
    eigenvalues: np.ndarray | None = None

    @property
    def degrees_of_freedom(self) -> int:
        if self.band_dof is None:
            return self.kernel_length
        return max(1, int(self.band_dof))

    @property
    def bandwidth(self) -> float:
        """Fraction of the kernel degrees of freedom kept by the band filter."""
        return self.degrees_of_freedom / self.kernel_length

    @property
    def scales_with_noise(self) -> bool:
        """True when thresholds must be multiplied by the noise variance."""
        return self.detector_type in ("ed", "ecw")

    def distributions(self, snr_db: float) -> tuple[FittedChiSquare, FittedChiSquare]:
        """Return the ``(H0, H1)`` distributions of the test statistic at an SNR."""
        snr = 10.0 ** (snr_db / 10.0)
        if self.detector_type == "ed":
            dof = self.degrees_of_freedom
            return (
                FittedChiSquare(np.array([1.0 / self.bandwidth]), multiplicity=dof),
                FittedChiSquare(np.array([(1.0 + snr) / self.bandwidth]), multiplicity=dof),
            )
        if self.eigenvalues is None:
            raise ValueError(f"'{self.detector_type}' needs signal eigenvalues")
        signal = np.asarray(self.eigenvalues) * snr
        return FittedChiSquare(signal / (signal + 1.0)), FittedChiSquare(signal)


def noise_variance(powers: np.ndarray, dof: int) -> float:
    """Estimate the noise variance from per-kernel mean powers.

    Assumes most kernels hold noise only, so their scaled power follows a
    chi-square law with ``dof`` degrees of freedom; the median is matched.

    Args:
        powers: Mean squared amplitude of each kernel.
        dof: Effective degrees of freedom per kernel.

    Returns:
        Noise variance (0 for empty or silent input).
    """
    values = np.asarray(powers, dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return 0.0
    return float(np.median(values) * dof / stats.chi2.median(dof))


def estimate_snr(powers: np.ndarray, noise_var: float) -> tuple[np.ndarray, np.ndarray]:
    """Per-kernel signal variance and SNR in dB (``-inf`` when no signal power)."""
    signal_vars = np.maximum(np.asarray(powers, dtype=np.float64) - noise_var, 0.0)
    with np.errstate(divide="ignore"):
        snr_db = 10.0 * np.log10(signal_vars / noise_var)
    return signal_vars, snr_db


@lru_cache(maxsize=32)
def _threshold_table(
    model: PerformanceModel, target_pfa: float, sensitivity: float
) -> PchipInterpolator:
    table = np.empty(SNR_GRID_DB.size)
    for i, snr_db in enumerate(SNR_GRID_DB):
        null, alternative = model.distributions(float(snr_db))
        false_alarm = null.isf(target_pfa)
        detection = alternative.isf(PD_OPERATING_POINT)
        table[i] = max(sensitivity * false_alarm + (1.0 - sensitivity) * detection, false_alarm)
    return PchipInterpolator(SNR_GRID_DB, table, extrapolate=False)


def detection_thresholds(
    model: PerformanceModel,
    snr_db: np.ndarray,
    noise_var: float,
    target_pfa: float,
    sensitivity: float = 1.0,
) -> np.ndarray:
    """Per-kernel decision thresholds for a Neyman-Pearson detector.

    For every level of an SNR grid, the threshold is the false-alarm operating point
    at ``target_pfa`` blended with the detection operating point at
    ``PD_OPERATING_POINT`` by ``sensitivity``, and never below the former. Thresholds
    at each kernel's SNR are interpolated with PCHIP; SNRs off the grid are clipped.

    Args:
        model: Test-statistic distribution parameters.
        snr_db: Estimated SNR of each kernel in dB.
        noise_var: Estimated noise variance.
        target_pfa: Target probability of false alarm.
        sensitivity: 1 gives exactly ``target_pfa``; 0 gives the detection operating point.

    Returns:
        Threshold per kernel.
    """
    interpolator = _threshold_table(model, float(target_pfa), float(sensitivity))
    levels = np.nan_to_num(
        np.asarray(snr_db, dtype=np.float64),
        nan=SNR_GRID_DB[0],
        neginf=SNR_GRID_DB[0],
        posinf=SNR_GRID_DB[-1],
    )
    thresholds = interpolator(np.clip(levels, SNR_GRID_DB[0], SNR_GRID_DB[-1]))
    if model.scales_with_noise:
        thresholds = thresholds * noise_var
    return np.asarray(thresholds, dtype=np.float64)


def performance_curves(
    model: PerformanceModel, snr_db: float, thresholds: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Probability of false alarm and of detection over a threshold axis.

    Args:
        model: Test-statistic distribution parameters.
        snr_db: SNR in dB.
        thresholds: Thresholds for unit noise variance.

    Returns:
        Tuple ``(pfa, pd)``.
    """
    null, alternative = model.distributions(snr_db)
    return null.sf(thresholds), alternative.sf(thresholds)
