# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
SE3 and SO3 manifold operations for MaxMix-JIT.

This module implements the small amount of 3D Lie-group mathematics the
factors need, both for evaluating residuals and for writing their
Jacobians by hand:

    • SO(3) exponential & logarithm maps
    • SE(3) composition and relative poses
    • The local chart (retraction) used by the solver
    • Right Jacobian inverse of SO(3) and the inverse adjoint of SE(3)

Pose convention
---------------
Poses are 6-vectors ``[tx, ty, tz, wx, wy, wz]``: a translation followed by
an axis-angle rotation vector.

Tangent convention
------------------
Perturbations ``delta = [dv, dw]`` are applied on the right and decoupled:

    retract((R, t), delta) = (R · Exp(dw), t + R · dv)

Every analytic Jacobian in ``slam.factors`` is expressed with respect to
this chart, and ``optimization.solvers`` updates poses through it.

All functions are written in JAX and are JIT- and autodiff-friendly, with
small-angle fallbacks near the identity rotation.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_SMALL_ANGLE = 1e-5


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """(translation, rotation vector) of a pose 6-vector."""
    v = jnp.asarray(v)
    return v[:3], v[3:6]


def pose_from_rt(t: jnp.ndarray, w: jnp.ndarray) -> jnp.ndarray:
    """Inverse of :func:`pose_vec_to_rt`."""
    return jnp.concatenate([jnp.asarray(t), jnp.asarray(w)])


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """Skew matrix with hat(v) @ u == cross(v, u)."""
    zero = jnp.zeros_like(v[0])
    return jnp.stack(
        [
            jnp.stack([zero, -v[2], v[1]]),
            jnp.stack([v[2], zero, -v[0]]),
            jnp.stack([-v[1], v[0], zero]),
        ]
    )


def vee(M: jnp.ndarray) -> jnp.ndarray:
    """
    Axial vector of the skew part of M, so vee(hat(v)) == v.

    Taking the skew part first makes it usable on any 3×3 matrix close to
    a skew one (e.g. ``R - I`` for a small rotation).
    """
    A = 0.5 * (M - M.T)
    return jnp.stack([A[2, 1], A[0, 2], A[1, 0]])


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Rotation matrix of the rotation vector ``w`` (Rodrigues).

    Below ``_SMALL_ANGLE`` the first-order form I + hat(w) is used.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3)

    def small_angle() -> jnp.ndarray:
        return I + hat(w)

    def normal_angle() -> jnp.ndarray:
        K = hat(w / theta)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < _SMALL_ANGLE, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Rotation vector of ``R``, the inverse of :func:`so3_exp` for angles
    below π.

    The cosine is clipped to [-1, 1] so slightly non-orthogonal inputs do
    not produce NaNs.
    """
    R = jnp.asarray(R)
    cos_theta = jnp.clip(0.5 * (jnp.trace(R) - 1.0), -1.0, 1.0)
    theta = jnp.arccos(cos_theta)

    def small_angle() -> jnp.ndarray:
        return vee(R)

    def normal_angle() -> jnp.ndarray:
        return (theta / jnp.sin(theta)) * vee(R)

    return jax.lax.cond(theta < _SMALL_ANGLE, small_angle, normal_angle)


def so3_right_jacobian_inverse(w: jnp.ndarray) -> jnp.ndarray:
    """
    Inverse right Jacobian of SO(3), Jr^{-1}(w).

    Maps a right perturbation of ``Exp(w)`` to the induced change of ``w``:

        Log(Exp(w) · Exp(dw)) ≈ w + Jr^{-1}(w) · dw

    Closed form:

        Jr^{-1}(w) = I + 1/2 W + (1/θ² − (1 + cos θ) / (2 θ sin θ)) W²

    with W = hat(w), θ = |w|; falls back to I + W/2 near zero.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3)
    W = hat(w)

    def small_angle() -> jnp.ndarray:
        return I + 0.5 * W

    def normal_angle() -> jnp.ndarray:
        c = 1.0 / (theta * theta) - (1.0 + jnp.cos(theta)) / (2.0 * theta * jnp.sin(theta))
        return I + 0.5 * W + c * (W @ W)

    return jax.lax.cond(theta < _SMALL_ANGLE, small_angle, normal_angle)


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Pose vector of a ∘ b: (R_a R_b, R_a t_b + t_a)."""
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)
    Ra = so3_exp(wa)
    return pose_from_rt(Ra @ tb + ta, so3_log(Ra @ so3_exp(wb)))


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Pose vector of a⁻¹ ∘ b:

        t = R_aᵀ (t_b − t_a)
        w = Log(R_aᵀ R_b)

    This is also the local coordinate of b in the chart of
    :func:`se3_retract` centred at a.
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)
    Ra_T = so3_exp(wa).T
    return pose_from_rt(Ra_T @ (tb - ta), so3_log(Ra_T @ so3_exp(wb)))


def point_in_frame(pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Express a world point in the frame of ``pose``: R^T (p - t)."""
    t, w = pose_vec_to_rt(pose)
    R = so3_exp(w)
    return R.T @ (jnp.asarray(point) - t)


def se3_retract(pose: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Right, decoupled SE(3) retraction:

        pose, delta: R^6, [tx, ty, tz, wx, wy, wz] / [dv, dw]

        R_new = R · Exp(dw)
        t_new = t + R · dv
    """
    t, w = pose_vec_to_rt(pose)
    dv, dw = pose_vec_to_rt(delta)

    R = so3_exp(w)
    R_new = R @ so3_exp(dw)
    t_new = t + R @ dv
    return pose_from_rt(t_new, so3_log(R_new))


def se3_adjoint_inverse(pose: jnp.ndarray) -> jnp.ndarray:
    """
    6×6 map from a perturbation of A to the perturbation of A ∘ B, for B = pose.

    With the chart of :func:`se3_retract`, perturbing A by [dv, dw] moves
    C = A ∘ B by

        dv_C = R_B^T (dv - hat(t_B) dw)
        dw_C = R_B^T dw
    """
    t, w = pose_vec_to_rt(pose)
    Rt = so3_exp(w).T
    top = jnp.concatenate([Rt, -Rt @ hat(t)], axis=1)
    bottom = jnp.concatenate([jnp.zeros((3, 3)), Rt], axis=1)
    return jnp.concatenate([top, bottom], axis=0)


def se3_identity() -> jnp.ndarray:
    """Identity pose vector."""
    return jnp.zeros(6, dtype=jnp.float32)
