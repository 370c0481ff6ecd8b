"""Tests for covariance estimation and decorrelation models."""

import numpy as np
import pytest

from acousticdetect.covariance import (
    build_covariance_model,
    decorrelation_model,
    estimate_covariance,
)
from acousticdetect.errors import ConfigurationInvalid
from acousticdetect.settings import COVARIANCE_ESTIMATORS


def _correlated_rows(n_rows: int, n_cols: int, seed: int = 3) -> np.ndarray:
    rng = np.random.default_rng(seed)
    white = rng.normal(size=(n_rows, n_cols + 2))
    # Moving sum gives neighbouring samples a positive correlation
    return white[:, :-2] + white[:, 1:-1] + white[:, 2:]


@pytest.mark.parametrize("estimator", COVARIANCE_ESTIMATORS)
def test_estimators_are_symmetric_and_normalized(estimator):
    """Every estimator gives a symmetric, positive definite matrix with mean diagonal 1."""
    rows = _correlated_rows(200, 8)
    covariance = estimate_covariance(rows, estimator)

    assert covariance.shape == (8, 8)
    assert np.allclose(covariance, covariance.T)
    assert np.isclose(np.mean(np.diag(covariance)), 1.0)
    assert np.all(np.linalg.eigvalsh(covariance) > 0.0)


def test_shrinkage_moves_towards_target():
    """Shrinkage towards the diagonal lowers the off-diagonal terms."""
    rows = _correlated_rows(30, 12)
    sample = estimate_covariance(rows, "sample")
    shrunk = estimate_covariance(rows, "diag")
    off = ~np.eye(12, dtype=bool)
    assert np.sum(np.abs(shrunk[off])) <= np.sum(np.abs(sample[off])) + 1e-12


def test_unknown_estimator():
    """An unknown estimator name is rejected."""
    with pytest.raises(ValueError):
        estimate_covariance(np.ones((5, 3)), "magic")


def test_build_covariance_model_is_immutable():
    """Models are normalized, sorted and read-only."""
    model = build_covariance_model(_correlated_rows(60, 20), 1000, 1000, 20, "oas")

    assert model.kernel_length == 20
    assert model.n_observations == 60
    assert np.isclose(np.mean(np.diag(model.covariance)), 1.0)
    assert np.all(np.diff(model.eigenvalues) >= 0.0)
    assert np.all(model.eigenvalues >= 1e-10)
    assert not model.covariance.flags.writeable
    assert not model.eigenvectors.flags.writeable


def test_build_covariance_model_rejects_small_corpus():
    """The corpus needs at least one row per kernel sample."""
    with pytest.raises(ConfigurationInvalid):
        build_covariance_model(_correlated_rows(5, 20), 1000, 1000, 20, "oas")
    with pytest.raises(ConfigurationInvalid):
        build_covariance_model(np.empty((0, 20)), 1000, 1000, 20, "oas")
    with pytest.raises(ConfigurationInvalid):
        build_covariance_model(_correlated_rows(60, 10), 1000, 1000, 20, "oas")
    with pytest.raises(ConfigurationInvalid):
        build_covariance_model(np.ones((2, 20_000)), 1000, 1000, 20_000, "sample")


def test_decorrelation_white_noise_uses_signal_eigenvectors():
    """Without a noise model the signal eigenvectors are the projection."""
    model = build_covariance_model(_correlated_rows(60, 10), 1000, 1000, 10, "oas")
    decorrelation = decorrelation_model(model)
    assert not decorrelation.whitened
    assert np.array_equal(decorrelation.projection, model.eigenvectors)
    assert np.array_equal(decorrelation.eigenvalues, model.eigenvalues)


def test_decorrelation_coloured_noise_whitens():
    """The coloured-noise projection turns the noise covariance into the identity."""
    signal_model = build_covariance_model(_correlated_rows(80, 10, seed=1), 1000, 1000, 10, "oas")
    noise_model = build_covariance_model(
        _correlated_rows(80, 10, seed=2), 1000, 1000, 10, "sample"
    )
    decorrelation = decorrelation_model(signal_model, noise_model)

    projection = decorrelation.projection
    assert decorrelation.whitened
    assert np.allclose(projection.T @ noise_model.covariance @ projection, np.eye(10), atol=1e-6)
    assert np.all(decorrelation.eigenvalues > 0.0)
