# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Gaussian noise models.

A :class:`NoiseModel` stores the square-root information matrix ``R``
(upper triangular, ``RᵀR = Σ⁻¹``) of a zero-mean Gaussian and uses it to
whiten residuals and Jacobians, so that

    ‖whiten(r)‖² = rᵀ Σ⁻¹ r

Noise models are immutable values. Small ones (3×3, 6×6) are owned by the
factor that uses them; sharing one instance between factors is safe for
the same reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import jax.numpy as jnp

from maxmix_jit.core.errors import InvalidCovariance


def _check_sigmas(sigmas: jnp.ndarray) -> None:
    if not bool(jnp.all(jnp.isfinite(sigmas))):
        raise InvalidCovariance(f"sigmas must be finite, got {sigmas}")
    if not bool(jnp.all(sigmas > 0.0)):
        raise InvalidCovariance(f"sigmas must be positive, got {sigmas}")


def sqrt_information_from_covariance(covariance) -> jnp.ndarray:
    """
    Upper-triangular R with RᵀR = covariance⁻¹.

    Raises InvalidCovariance unless ``covariance`` is a finite, symmetric,
    positive-definite square matrix.
    """
    cov = jnp.asarray(covariance, dtype=jnp.float32)
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        raise InvalidCovariance(f"covariance must be square, got shape {cov.shape}")
    if not bool(jnp.all(jnp.isfinite(cov))):
        raise InvalidCovariance("covariance must be finite")
    scale = jnp.maximum(jnp.max(jnp.abs(cov)), 1.0)
    if not bool(jnp.allclose(cov, cov.T, atol=1e-6 * scale)):
        raise InvalidCovariance("covariance must be symmetric")

    # cholesky returns NaNs instead of raising on non-PD input
    info = jnp.linalg.inv(cov)
    info = 0.5 * (info + info.T)
    L = jnp.linalg.cholesky(info)
    if not bool(jnp.all(jnp.isfinite(L))) or not bool(jnp.all(jnp.diag(L) > 0.0)):
        raise InvalidCovariance("covariance must be positive-definite")
    return L.T


@dataclass(frozen=True, eq=False)
class NoiseModel:
    """
    Immutable Gaussian noise model.

    sqrt_information: (d, d) upper-triangular R, RᵀR = Σ⁻¹
    sigmas:           (d,) standard deviations for diagonal models, else None
    """
    sqrt_information: jnp.ndarray
    sigmas: Optional[jnp.ndarray] = None

    @classmethod
    def diagonal(cls, sigmas: Sequence[float]) -> "NoiseModel":
        s = jnp.asarray(sigmas, dtype=jnp.float32).reshape(-1)
        _check_sigmas(s)
        return cls(sqrt_information=jnp.diag(1.0 / s), sigmas=s)

    @classmethod
    def isotropic(cls, dim: int, sigma: float) -> "NoiseModel":
        return cls.diagonal(jnp.full((dim,), sigma, dtype=jnp.float32))

    @classmethod
    def unit(cls, dim: int) -> "NoiseModel":
        return cls.isotropic(dim, 1.0)

    @classmethod
    def from_covariance(cls, covariance) -> "NoiseModel":
        return cls(sqrt_information=sqrt_information_from_covariance(covariance))

    def dim(self) -> int:
        return int(self.sqrt_information.shape[0])

    def information(self) -> jnp.ndarray:
        R = self.sqrt_information
        return R.T @ R

    def covariance(self) -> jnp.ndarray:
        if self.sigmas is not None:
            return jnp.diag(self.sigmas * self.sigmas)
        return jnp.linalg.inv(self.information())

    def whiten(self, r: jnp.ndarray) -> jnp.ndarray:
        return self.sqrt_information @ r

    def whiten_jacobians(self, Hs: Sequence[jnp.ndarray]) -> list:
        return [self.sqrt_information @ H for H in Hs]

    def mahalanobis(self, r: jnp.ndarray) -> jnp.ndarray:
        """Squared Mahalanobis distance rᵀ Σ⁻¹ r."""
        wr = self.whiten(r)
        return jnp.dot(wr, wr)

    def equals(self, other: "NoiseModel", tol: float = 1e-9) -> bool:
        if not isinstance(other, NoiseModel) or other.dim() != self.dim():
            return False
        return bool(jnp.allclose(self.sqrt_information, other.sqrt_information, rtol=0.0, atol=tol))

    def format(self, s: str = "") -> str:
        if self.sigmas is not None:
            return f"{s}diagonal sigmas {jnp.asarray(self.sigmas)}"
        return f"{s}gaussian sqrt information\n{jnp.asarray(self.sqrt_information)}"
