# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Gaussian observation model of a single detection hypothesis.

A :class:`Detection` turns one bounding-box observation into a Gaussian
over the object's position in the sensor frame:

    mean        μ  = centre of the bounding box
    covariance  Σ  = diag(σ), σ the per-axis variances (or a full 3×3 SPD matrix)
    information Σ⁻¹, and its square root S with SᵀS = Σ⁻¹
    weight      w ≥ 0, the hypothesis' prior plausibility in its mixture

Everything is derived once at construction and cached; a ``Detection`` is
an immutable value and is never recomputed or mutated afterwards.

Max-mixture energy
------------------
For a point x in the sensor frame:

    energy(x) = 0.5 · (x − μ)ᵀ Σ⁻¹ (x − μ) + γ

where the offset γ = −log(w) + 0.5·log det(2πΣ) is the negative log of
the weighted Gaussian normaliser. With it, energies are negative
log-likelihoods up to a constant shared by all components, so components
with different covariances and weights can be compared directly; without
it, the tightest component would always win.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Union

import jax.numpy as jnp

from maxmix_jit.core.errors import InvalidCovariance, InvalidWeight
from maxmix_jit.core.math3d import pose_from_rt
from maxmix_jit.core.types import BoundingBox
from .noise import NoiseModel, sqrt_information_from_covariance

logger = logging.getLogger(__name__)

SigmaLike = Union[float, jnp.ndarray, tuple, list]


@dataclass
class DetectionConfig:
    default_sigma: float = 1e-2   # variance
    default_weight: float = 1.0
    extent_scale: float = 0.5   # std_i = extent_scale * dimension_i
    min_sigma: float = 1e-3   # floor on the extent std


def _check_weight(weight: float) -> float:
    w = float(weight)
    if not math.isfinite(w) or w < 0.0:
        raise InvalidWeight(f"mixture weight must be finite and >= 0, got {weight}")
    return w


def _sigma_vector(sigma: SigmaLike) -> jnp.ndarray:
    s = jnp.asarray(sigma, dtype=jnp.float32)
    if s.ndim == 0:
        s = jnp.full((3,), s)
    s = s.reshape(-1)
    if s.shape[0] != 3:
        raise InvalidCovariance(f"sigma must be a scalar or a 3-vector, got shape {s.shape}")
    if not bool(jnp.all(jnp.isfinite(s))) or not bool(jnp.all(s > 0.0)):
        raise InvalidCovariance(f"variances must be positive, got sigma={s}")
    return s


class Detection:
    """
    One candidate observation hypothesis.

    :param box: Source bounding box; its centre is the hypothesis mean.
    :param sigma: Covariance diagonal (variances), scalar (isotropic) or per-axis 3-vector.
    :param weight: Relative plausibility within the mixture, ``>= 0``.
    :raises InvalidCovariance: if any variance is not positive or not finite.
    :raises InvalidWeight: if ``weight`` is negative or not finite.
    """

    __slots__ = (
        "_box",
        "_mu",
        "_sigma_vec",
        "_sigma_mat",
        "_info",
        "_sqrt_info",
        "_diagonal",
        "_w",
        "_log_normalizer",
    )

    def __init__(
        self,
        box: BoundingBox,
        sigma: SigmaLike = DetectionConfig.default_sigma,
        weight: float = DetectionConfig.default_weight,
    ) -> None:
        # validate everything before touching self
        w = _check_weight(weight)
        variance = _sigma_vector(sigma)
        std = jnp.sqrt(variance)
        self._init(box, jnp.diag(variance), jnp.diag(1.0 / std), w, NoiseModel.diagonal(std))

    @classmethod
    def from_covariance(cls, box: BoundingBox, covariance, weight: float = 1.0) -> "Detection":
        """Build a detection with a full 3×3 symmetric positive-definite covariance."""
        w = _check_weight(weight)
        cov = jnp.asarray(covariance, dtype=jnp.float32)
        if cov.shape != (3, 3):
            raise InvalidCovariance(f"covariance must be 3x3, got shape {cov.shape}")
        sqrt_info = sqrt_information_from_covariance(cov)
        det = object.__new__(cls)
        det._init(box, cov, sqrt_info, w, None)
        return det

    @classmethod
    def from_extent(
        cls,
        box: BoundingBox,
        config: Optional[DetectionConfig] = None,
        weight: Optional[float] = None,
    ) -> "Detection":
        """Build a detection whose per-axis std scales with the box dimensions."""
        cfg = config or DetectionConfig()
        raw = cfg.extent_scale * box.extent
        std = jnp.maximum(raw, cfg.min_sigma)
        if bool(jnp.any(raw < cfg.min_sigma)):
            logger.debug("clamped extent std %s to min_sigma=%g", raw, cfg.min_sigma)
        return cls(box, std * std, cfg.default_weight if weight is None else weight)

    def _init(self, box, cov, sqrt_info, w, diagonal) -> None:
        if not bool(jnp.all(jnp.isfinite(cov))) or not bool(jnp.all(jnp.isfinite(sqrt_info))):
            raise InvalidCovariance(f"covariance must be finite, got diag {jnp.diag(cov)}")
        info = sqrt_info.T @ sqrt_info
        sign, logdet = jnp.linalg.slogdet(2.0 * jnp.pi * cov)
        if not float(sign) > 0.0:
            raise InvalidCovariance("covariance must be positive-definite")
        if not math.isfinite(float(logdet)):
            raise InvalidCovariance(f"log det(2πΣ) is not finite: {float(logdet)}")

        object.__setattr__(self, "_box", box)
        object.__setattr__(self, "_mu", box.center)
        object.__setattr__(self, "_sigma_vec", jnp.diag(cov))
        object.__setattr__(self, "_sigma_mat", cov)
        object.__setattr__(self, "_info", info)
        object.__setattr__(self, "_sqrt_info", sqrt_info)
        object.__setattr__(self, "_diagonal", diagonal)
        object.__setattr__(self, "_w", w)
        object.__setattr__(self, "_log_normalizer", 0.5 * float(logdet))

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    # --- Gaussian model ---

    @property
    def mean(self) -> jnp.ndarray:
        return self._mu

    @property
    def variance_vector(self) -> jnp.ndarray:
        return self._sigma_vec

    @property
    def variance_matrix(self) -> jnp.ndarray:
        return self._sigma_mat

    @property
    def information_matrix(self) -> jnp.ndarray:
        return self._info

    @property
    def sqrt_information_matrix(self) -> jnp.ndarray:
        return self._sqrt_info

    @property
    def diagonal(self) -> Optional[NoiseModel]:
        """Diagonal noise model, or None for full-covariance detections."""
        return self._diagonal

    @property
    def noise_model(self) -> NoiseModel:
        if self._diagonal is not None:
            return self._diagonal
        return NoiseModel(sqrt_information=self._sqrt_info)

    @property
    def weight(self) -> float:
        return self._w

    @property
    def log_normalizer(self) -> float:
        """0.5 · log det(2πΣ)."""
        return self._log_normalizer

    @property
    def bounding_box(self) -> BoundingBox:
        return self._box

    # --- Log-likelihood ---

    def gamma(self) -> float:
        """Normalisation offset −log(w) + 0.5·log det(2πΣ); +inf for w == 0."""
        if self._w == 0.0:
            return math.inf
        return -math.log(self._w) + self._log_normalizer

    def error(self, x: jnp.ndarray, gamma: float) -> jnp.ndarray:
        """Max-mixture energy 0.5 (x − μ)ᵀ Σ⁻¹ (x − μ) + gamma."""
        e = self._sqrt_info @ (jnp.asarray(x) - self._mu)
        return 0.5 * jnp.dot(e, e) + gamma

    # --- State ---

    def get_pose3(self) -> jnp.ndarray:
        """The mean as a pose with identity rotation."""
        return pose_from_rt(self._mu, jnp.zeros(3, dtype=self._mu.dtype))

    # --- Testable ---

    def equals(self, other: "Detection", tol: float = 1e-9) -> bool:
        if not isinstance(other, Detection):
            return False
        return (
            abs(self._w - other._w) <= tol
            and bool(jnp.allclose(self._mu, other._mu, rtol=0.0, atol=tol))
            and bool(jnp.allclose(self._sigma_mat, other._sigma_mat, rtol=0.0, atol=tol))
        )

    def format(self, s: str = "") -> str:
        return (
            f"{s}Detection(mu={jnp.asarray(self._mu)}, "
            f"var={jnp.asarray(self._sigma_vec)}, w={self._w})"
        )

    def __repr__(self) -> str:
        return self.format()
