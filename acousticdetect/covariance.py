"""Shrinkage covariance estimators and eigen models for the estimator-correlator."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import cast

import numpy as np
from sklearn.covariance import ledoit_wolf, oas

from acousticdetect.dsp import band_filter, resample_rows
from acousticdetect.errors import ConfigurationInvalid, RuntimeDetectionFailure

logger = logging.getLogger(__name__)

MAX_KERNEL_LENGTH = 10_000
MIN_EIGENVALUE = 1e-10
# Mixing coefficients searched by the leave-one-out estimator
LOOC_GRID = np.linspace(0.0, 1.0, 21)


@dataclass(frozen=True)
class TrainingCorpus:
    """Labelled training observations, one per row.

    Attributes:
        signal: ``(n_observations, n_samples)`` signal observations.
        sample_rate: Sample rate of the observations in Hz.
        noise: Optional noise observations, required by the coloured-noise detector.
    """

    signal: np.ndarray
    sample_rate: int
    noise: np.ndarray | None = None


@dataclass(frozen=True)
class CovarianceModel:
    """Normalized covariance matrix and its eigen decomposition.

    The covariance is scaled so that its mean diagonal is 1. Eigenvalues are
    ascending and clipped at ``MIN_EIGENVALUE``. Arrays are read-only so one model
    can be shared by every kernel of a file.
    """

    covariance: np.ndarray
    eigenvalues: np.ndarray
    eigenvectors: np.ndarray
    estimator: str
    sample_rate: int
    n_observations: int

    @property
    def kernel_length(self) -> int:
        return int(self.covariance.shape[0])


@dataclass(frozen=True)
class DecorrelationModel:
    """Projection and eigenvalue weights used to form estimator-correlator statistics.

    Attributes:
        projection: ``(kernel_length, kernel_length)`` matrix; kernels are projected
            as ``projection.T @ x``.
        eigenvalues: Normalized signal eigenvalues in the projected space.
        whitened: True when the projection also whitens coloured noise, in which
            case projected noise has unit variance once divided by the noise variance.
    """

    projection: np.ndarray
    eigenvalues: np.ndarray
    whitened: bool = False


def _freeze(array: np.ndarray) -> np.ndarray:
    frozen = np.array(array, dtype=np.float64, copy=True)
    frozen.flags.writeable = False
    return frozen


def sample_covariance(x: np.ndarray) -> np.ndarray:
    """Maximum-likelihood covariance of centred rows."""
    centred = x - x.mean(axis=0)
    return cast(np.ndarray, centred.T @ centred / x.shape[0])


def _phi_matrix(centred: np.ndarray, sample: np.ndarray) -> np.ndarray:
    """Asymptotic variances of the sample covariance entries."""
    n = centred.shape[0]
    squared = centred * centred
    return cast(
        np.ndarray,
        squared.T @ squared / n - 2.0 * (centred.T @ centred) * sample / n + sample * sample,
    )


def _shrink(sample: np.ndarray, prior: np.ndarray, phi: float, rho: float, n: int) -> np.ndarray:
    gamma = float(np.sum((sample - prior) ** 2))
    if gamma <= 0.0:
        return sample
    shrinkage = max(0.0, min(1.0, (phi - rho) / gamma / n))
    logger.debug("Shrinkage intensity %.4f", shrinkage)
    return shrinkage * prior + (1.0 - shrinkage) * sample


def _oas(x: np.ndarray) -> np.ndarray:
    covariance, _ = oas(x)
    return cast(np.ndarray, covariance)


def _param1(x: np.ndarray) -> np.ndarray:
    covariance, _ = ledoit_wolf(x)
    return cast(np.ndarray, covariance)


def _rblw(x: np.ndarray) -> np.ndarray:
    """Rao-Blackwellized Ledoit-Wolf shrinkage towards a scaled identity."""
    n, p = x.shape
    sample = sample_covariance(x)
    trace = float(np.trace(sample))
    trace_sq = float(np.sum(sample * sample))
    denominator = (n + 2.0) * (trace_sq - trace * trace / p)
    if denominator <= 0.0:
        return sample
    shrinkage = min(1.0, (((n - 2.0) / n) * trace_sq + trace * trace) / denominator)
    return (1.0 - shrinkage) * sample + shrinkage * (trace / p) * np.eye(p)


def _param2(x: np.ndarray) -> np.ndarray:
    """Shrinkage towards a common variance and a common covariance."""
    n, p = x.shape
    centred = x - x.mean(axis=0)
    sample = centred.T @ centred / n
    mean_var = float(np.mean(np.diag(sample)))
    off_diagonal = ~np.eye(p, dtype=bool)
    mean_cov = float(np.mean(sample[off_diagonal])) if p > 1 else 0.0
    prior = np.full((p, p), mean_cov)
    np.fill_diagonal(prior, mean_var)
    phi = float(np.sum(_phi_matrix(centred, sample)))
    return _shrink(sample, prior, phi, 0.0, n)


def _diag(x: np.ndarray) -> np.ndarray:
    """Shrinkage towards the diagonal of the sample covariance."""
    n = x.shape[0]
    centred = x - x.mean(axis=0)
    sample = centred.T @ centred / n
    prior = np.diag(np.diag(sample))
    phi_mat = _phi_matrix(centred, sample)
    return _shrink(sample, prior, float(np.sum(phi_mat)), float(np.trace(phi_mat)), n)


def _corr(x: np.ndarray) -> np.ndarray:
    """Shrinkage towards the constant-correlation model."""
    n, p = x.shape
    centred = x - x.mean(axis=0)
    sample = centred.T @ centred / n
    variance = np.diag(sample)
    std = np.sqrt(variance)
    if np.any(std <= 0.0):
        raise RuntimeDetectionFailure("Constant-correlation target needs non-zero variances")
    outer = np.outer(std, std)
    mean_corr = (np.sum(sample / outer) - p) / (p * (p - 1)) if p > 1 else 0.0
    prior = mean_corr * outer
    np.fill_diagonal(prior, variance)

    phi_mat = _phi_matrix(centred, sample)
    cross = centred.T @ centred / n
    theta = (
        (centred**3).T @ centred / n
        - np.diag(cross)[:, np.newaxis] * sample
        - cross * variance[:, np.newaxis]
        + variance[:, np.newaxis] * sample
    )
    np.fill_diagonal(theta, 0.0)
    rho = float(np.trace(phi_mat)) + mean_corr * float(np.sum(np.outer(1.0 / std, std) * theta))
    return _shrink(sample, prior, float(np.sum(phi_mat)), rho, n)


def _stock(x: np.ndarray) -> np.ndarray:
    """Shrinkage towards a single-factor model driven by the mean across samples."""
    n = x.shape[0]
    centred = x - x.mean(axis=0)
    sample = centred.T @ centred / n
    factor = centred.mean(axis=1)
    factor_var = float(factor @ factor / n)
    if factor_var <= 0.0:
        return _diag(x)
    factor_cov = centred.T @ factor / n
    prior = np.outer(factor_cov, factor_cov) / factor_var
    np.fill_diagonal(prior, np.diag(sample))

    squared = centred * centred
    pi_hat = float(np.sum(squared.T @ squared) / n - np.sum(sample * sample))
    r_diag = float(np.sum(squared * squared) / n - np.sum(np.diag(sample) ** 2))
    z = centred * factor[:, np.newaxis]
    v1 = squared.T @ z / n - factor_cov[:, np.newaxis] * sample
    r_off1 = (
        float(np.sum(v1 * factor_cov[np.newaxis, :])) - float(np.sum(np.diag(v1) * factor_cov))
    ) / factor_var
    v3 = z.T @ z / n - factor_var * sample
    r_off3 = (
        float(np.sum(v3 * np.outer(factor_cov, factor_cov)))
        - float(np.sum(np.diag(v3) * factor_cov**2))
    ) / factor_var**2
    rho = r_diag + 2.0 * r_off1 - r_off3
    gamma = float(np.sum((sample - prior) ** 2))
    if gamma <= 0.0:
        return sample
    shrinkage = max(0.0, min(1.0, (pi_hat - rho) / gamma / n))
    return shrinkage * prior + (1.0 - shrinkage) * sample


def _looc(x: np.ndarray) -> np.ndarray:
    """Mix of sample covariance and its diagonal chosen by leave-one-out likelihood.

    Each observation is scored under the mixture fitted without it. The rank-one
    update of the sample covariance is handled with the matrix determinant lemma
    and Sherman-Morrison, so every mixing value costs a single factorization.
    """
    n, p = x.shape
    centred = x - x.mean(axis=0)
    sample = centred.T @ centred / n
    target = np.diag(np.diag(sample))
    best_alpha, best_score = 1.0, -np.inf
    for alpha in LOOC_GRID:
        base = (1.0 - alpha) * n / (n - 1.0) * sample + alpha * target
        try:
            chol = np.linalg.cholesky(base)
        except np.linalg.LinAlgError:
            continue
        logdet = 2.0 * float(np.sum(np.log(np.diag(chol))))
        solved = np.linalg.solve(chol, centred.T)
        quad = np.sum(solved * solved, axis=0)
        scale = (1.0 - alpha) / (n - 1.0)
        denominator = 1.0 - scale * quad
        if np.any(denominator <= 0.0):
            continue
        score = float(np.mean(-np.log(denominator) - quad / denominator)) - logdet
        if score > best_score:
            best_alpha, best_score = float(alpha), score
    logger.debug("Leave-one-out mixing coefficient %.2f", best_alpha)
    return (1.0 - best_alpha) * sample + best_alpha * target


ESTIMATORS: dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "sample": sample_covariance,
    "oas": _oas,
    "rblw": _rblw,
    "param1": _param1,
    "param2": _param2,
    "corr": _corr,
    "diag": _diag,
    "stock": _stock,
    "looc": _looc,
}


def estimate_covariance(observations: np.ndarray, estimator: str) -> np.ndarray:
    """Estimate a covariance matrix normalized to a mean diagonal of 1.

    Args:
        observations: ``(n_observations, n_samples)`` matrix.
        estimator: One of ``ESTIMATORS``.

    Returns:
        Symmetric ``(n_samples, n_samples)`` covariance.

    Raises:
        ValueError: If the estimator is unknown.
        RuntimeDetectionFailure: If the matrix is empty or degenerate.
    """
    try:
        method = ESTIMATORS[estimator]
    except KeyError as exc:
        raise ValueError(f"Unknown covariance estimator '{estimator}'") from exc
    x = np.asarray(observations, dtype=np.float64)
    if x.ndim != 2 or x.shape[0] < 2 or x.shape[1] == 0:
        raise RuntimeDetectionFailure("Covariance estimation needs at least two observations")
    covariance = method(x)
    covariance = (covariance + covariance.T) / 2.0
    scale = float(np.mean(np.diag(covariance)))
    if not np.isfinite(scale) or scale <= 0.0:
        raise RuntimeDetectionFailure(f"Degenerate covariance matrix from '{estimator}'")
    return covariance / scale


def eigen_decomposition(covariance: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Eigenvalues (ascending, clipped at ``MIN_EIGENVALUE``) and eigenvectors."""
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)
    return np.maximum(eigenvalues, MIN_EIGENVALUE), eigenvectors


def condition_observations(
    observations: np.ndarray,
    from_rate: int,
    to_rate: int,
    kernel_length: int,
    cutoff_freqs: tuple[float, float] | None = None,
) -> np.ndarray:
    """Resample, trim, band-limit and normalize training observations.

    Every row is scaled to unit standard deviation before and after filtering, so
    only the relative variance between samples shapes the covariance.

    Raises:
        ConfigurationInvalid: If the observations are shorter than one kernel.
    """
    rows = resample_rows(np.atleast_2d(observations), from_rate, to_rate)
    if rows.shape[1] < kernel_length:
        raise ConfigurationInvalid(
            f"Training observations hold {rows.shape[1]} samples, "
            f"fewer than the kernel length ({kernel_length})"
        )
    rows = rows[:, :kernel_length]
    rows = _unit_std(rows)
    rows = band_filter(rows, to_rate, cutoff_freqs)
    return _unit_std(rows)


def _unit_std(rows: np.ndarray) -> np.ndarray:
    std = rows.std(axis=1)
    keep = std > 0.0
    if not np.all(keep):
        logger.warning("Dropping %d silent training observation(s)", int(np.sum(~keep)))
    return cast(np.ndarray, rows[keep] / std[keep, np.newaxis])


def build_covariance_model(
    observations: np.ndarray,
    from_rate: int,
    to_rate: int,
    kernel_length: int,
    estimator: str,
    cutoff_freqs: tuple[float, float] | None = None,
) -> CovarianceModel:
    """Condition observations and derive an immutable covariance model.

    Args:
        observations: Raw training observations, one per row.
        from_rate: Sample rate of the observations in Hz.
        to_rate: Detection sample rate in Hz.
        kernel_length: Kernel length in samples at ``to_rate``.
        estimator: Covariance estimator name.
        cutoff_freqs: Optional band edges applied before estimation.

    Returns:
        CovarianceModel with eigen decomposition.

    Raises:
        ConfigurationInvalid: If the corpus is missing or too small for the kernel.
        RuntimeDetectionFailure: If the estimated matrix is degenerate.
    """
    if kernel_length > MAX_KERNEL_LENGTH:
        raise ConfigurationInvalid(
            f"Kernel length {kernel_length} exceeds the maximum of {MAX_KERNEL_LENGTH} samples",
            hints=["Reduce the kernel duration or the detection sample rate."],
        )
    if observations is None or np.asarray(observations).size == 0:
        raise ConfigurationInvalid("Training corpus holds no observations")
    rows = condition_observations(observations, from_rate, to_rate, kernel_length, cutoff_freqs)
    if rows.shape[0] < kernel_length:
        raise ConfigurationInvalid(
            f"Training corpus holds {rows.shape[0]} observation(s), "
            f"fewer than the kernel length ({kernel_length})",
            hints=["Add training segments or shorten the kernel duration."],
        )
    covariance = estimate_covariance(rows, estimator)
    try:
        eigenvalues, eigenvectors = eigen_decomposition(covariance)
    except np.linalg.LinAlgError as exc:
        raise RuntimeDetectionFailure(f"Eigen decomposition failed: {exc}") from exc
    logger.info(
        "Covariance model '%s' from %d observation(s), kernel of %d samples",
        estimator,
        rows.shape[0],
        kernel_length,
    )
    return CovarianceModel(
        covariance=_freeze(covariance),
        eigenvalues=_freeze(eigenvalues),
        eigenvectors=_freeze(eigenvectors),
        estimator=estimator,
        sample_rate=to_rate,
        n_observations=int(rows.shape[0]),
    )


def decorrelation_model(
    signal_model: CovarianceModel, noise_model: CovarianceModel | None = None
) -> DecorrelationModel:
    """Derive the projection used by the estimator-correlator.

    Without a noise model the signal eigenvectors decorrelate the kernel (white
    noise). With a noise model the kernel is first whitened by
    ``A = Vn diag(λn^-1/2)`` and then decorrelated by the eigenvectors of
    ``Aᵀ Cs A``.

    Args:
        signal_model: Covariance model of the signal corpus.
        noise_model: Covariance model of the noise corpus (coloured noise).

    Returns:
        DecorrelationModel with read-only arrays.
    """
    if noise_model is None:
        return DecorrelationModel(
            projection=signal_model.eigenvectors, eigenvalues=signal_model.eigenvalues
        )
    if noise_model.kernel_length != signal_model.kernel_length:
        raise ConfigurationInvalid("Signal and noise models have different kernel lengths")
    whitening = noise_model.eigenvectors / np.sqrt(noise_model.eigenvalues)
    transformed = whitening.T @ signal_model.covariance @ whitening
    transformed = (transformed + transformed.T) / 2.0
    eigenvalues, eigenvectors = eigen_decomposition(transformed)
    return DecorrelationModel(
        projection=_freeze(whitening @ eigenvectors),
        eigenvalues=_freeze(eigenvalues),
        whitened=True,
    )
