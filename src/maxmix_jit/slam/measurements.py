# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Residual models (measurement functions) for MaxMix-JIT.

Each function here implements a residual

      r(x; params) ∈ ℝᵏ

over a stacked vector ``x`` of variable values, written in JAX so it can
be JIT-compiled and differentiated. The factor classes in
:mod:`maxmix_jit.slam.factors` evaluate their residuals through these
functions and supply analytic Jacobians of their own; the test suite
checks those Jacobians against ``jax.jacfwd`` of the functions below.

1. Max-mixture detection residuals
----------------------------------
    • `relative_detection_point`:
          x = [robot_pose(6), detection_pose(6)]
          p = R_rᵀ (t_d − t_r)
      The detected object's position expressed in the robot frame.

    • `detection_energies`:
          energy_i = 0.5 ‖S_i (p − z_i)‖² + γ_i      for every hypothesis i

    • `max_mixture_residual`:
          r = S_k (p − z_k),  k = argmin_i energy_i

2. Motion-model residuals
-------------------------
    • `constant_velocity_residual`:
          x = [pose_a(6), pose_b(6)]
          r = local(pose_a, pose_b)          (zero when pose_a == pose_b)

    • `stable_pose_residual`:
          x = [previous(6), velocity(6), next(6)]
          r = local(previous ∘ velocity, next)

3. Priors
---------
    • `prior_residual`:   r = x − target      (point prior)
    • `pose_prior_residual`: r = local(target, pose)

Weighting
---------
Residuals accept an optional ``"weight"`` entry in ``params`` applied by
``_apply_weight`` (scalar information weight or per-component sqrt-info
vector); factor classes leave it out and whiten with their noise model.
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp

from maxmix_jit.core.math3d import (
    compose_pose_se3,
    point_in_frame,
    relative_pose_se3,
)


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Scale ``residual`` by ``params[key]`` when present.

    A scalar is an information weight (the residual is multiplied by its
    square root); a vector is a per-component square-root information and
    multiplies element-wise.
    """
    w = params.get(key)
    if w is None:
        return residual
    w = jnp.asarray(w)
    return jnp.sqrt(w) * residual if w.ndim == 0 else w * residual


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Euclidean prior on a block of any size:

        residual = x − params["target"]
    """
    return _apply_weight(x - params["target"], params)


def pose_prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    SE(3) prior in the tangent space of the target:
        residual = local(target, pose)
    """
    r = relative_pose_se3(params["target"], x[:6])
    return _apply_weight(r, params)


def relative_detection_point(x: jnp.ndarray) -> jnp.ndarray:
    """
    Detection position in the robot frame.

    x: stacked [robot_pose(6), detection_pose(6)]
    Returns R_rᵀ (t_d − t_r), the translation of T_r⁻¹ T_d.
    """
    robot = x[:6]
    detection = x[6:12]
    return point_in_frame(robot, detection[:3])


def detection_energies(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Max-mixture energy of every hypothesis.

    params:
      - "zs":                (n, 3) hypothesis means
      - "sqrt_informations": (n, 3, 3) square-root information matrices
      - "gammas":            (n,) normalisation offsets

    Returns (n,) energies 0.5 ‖S_i (p − z_i)‖² + γ_i.
    """
    p = relative_detection_point(x)
    d = p[None, :] - params["zs"]
    e = jnp.einsum("nij,nj->ni", params["sqrt_informations"], d)
    return 0.5 * jnp.sum(e * e, axis=1) + params["gammas"]


def max_mixture_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Whitened residual of the minimum-energy hypothesis.

    Ties resolve to the lowest index (``jnp.argmin`` semantics).
    """
    k = jnp.argmin(detection_energies(x, params))
    p = relative_detection_point(x)
    r = params["sqrt_informations"][k] @ (p - params["zs"][k])
    return _apply_weight(r, params)


def constant_velocity_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Between-factor against the identity:

        x = [pose_a(6), pose_b(6)]
        residual = local(pose_a, pose_b)
    """
    assert x.shape[0] == 12, "constant_velocity_residual expects two 6D poses stacked."
    r = relative_pose_se3(x[:6], x[6:12])
    return _apply_weight(r, params)


def stable_pose_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Motion-model consistency:

        x = [previous(6), velocity(6), next(6)]
        residual = local(previous ∘ velocity, next)
    """
    assert x.shape[0] == 18, "stable_pose_residual expects three 6D poses stacked."
    predicted = compose_pose_se3(x[:6], x[6:12])
    r = relative_pose_se3(predicted, x[12:18])
    return _apply_weight(r, params)
