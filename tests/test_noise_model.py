from __future__ import annotations

import jax.numpy as jnp
import pytest

from maxmix_jit.core.errors import InvalidCovariance
from maxmix_jit.slam.noise import NoiseModel, sqrt_information_from_covariance


def test_diagonal_whitens_by_inverse_sigmas():
    nm = NoiseModel.diagonal([0.1, 0.5, 2.0])
    r = jnp.array([0.1, 1.0, 4.0])
    assert jnp.allclose(nm.whiten(r), jnp.array([1.0, 2.0, 2.0]), atol=1e-5)
    assert float(nm.mahalanobis(r)) == pytest.approx(9.0, rel=1e-5)
    assert nm.dim() == 3


def test_isotropic_and_unit():
    iso = NoiseModel.isotropic(6, 0.1)
    assert jnp.allclose(iso.sqrt_information, 10.0 * jnp.eye(6))

    unit = NoiseModel.unit(3)
    r = jnp.array([1.0, -2.0, 3.0])
    assert jnp.allclose(unit.whiten(r), r)


def test_from_covariance_is_square_root_information():
    cov = jnp.array(
        [
            [0.5, 0.1, 0.0],
            [0.1, 0.3, 0.05],
            [0.0, 0.05, 0.2],
        ]
    )
    nm = NoiseModel.from_covariance(cov)

    assert nm.sigmas is None
    assert jnp.allclose(nm.information() @ cov, jnp.eye(3), atol=1e-4)
    assert jnp.allclose(nm.covariance(), cov, atol=1e-4)
    R = nm.sqrt_information
    assert jnp.allclose(R, jnp.triu(R))


def test_diagonal_covariance_from_sigmas():
    nm = NoiseModel.diagonal([0.1, 0.2])
    assert jnp.allclose(nm.covariance(), jnp.diag(jnp.array([0.01, 0.04])))


@pytest.mark.parametrize(
    "cov",
    [
        jnp.ones((2, 3)),
        jnp.array([[1.0, 0.5], [0.0, 1.0]]),
        jnp.array([[1.0, 2.0], [2.0, 1.0]]),
        jnp.array([[float("inf"), 0.0], [0.0, 1.0]]),
    ],
)
def test_invalid_covariance(cov):
    with pytest.raises(InvalidCovariance):
        sqrt_information_from_covariance(cov)


@pytest.mark.parametrize("sigmas", [[0.1, 0.0], [-1.0], [float("nan"), 1.0]])
def test_invalid_sigmas(sigmas):
    with pytest.raises(InvalidCovariance):
        NoiseModel.diagonal(sigmas)


def test_whiten_jacobians():
    nm = NoiseModel.diagonal([0.5, 0.25])
    H1 = jnp.eye(2)
    H2 = jnp.ones((2, 3))
    A1, A2 = nm.whiten_jacobians([H1, H2])
    assert jnp.allclose(A1, jnp.diag(jnp.array([2.0, 4.0])))
    assert jnp.allclose(A2, jnp.array([[2.0, 2.0, 2.0], [4.0, 4.0, 4.0]]))


def test_equals():
    a = NoiseModel.isotropic(3, 0.1)
    assert a.equals(NoiseModel.diagonal([0.1, 0.1, 0.1]))
    assert not a.equals(NoiseModel.isotropic(3, 0.2))
    assert not a.equals(NoiseModel.isotropic(6, 0.1))
    assert "diagonal sigmas" in a.format()
