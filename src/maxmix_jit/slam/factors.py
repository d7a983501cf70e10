# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Factors for object-level SLAM with ambiguous detections.

DetectionFactor
    Max-mixture constraint between a detection variable and a robot pose.
    It holds a fixed set of competing :class:`Detection` hypotheses and,
    on every evaluation, picks the one with minimum energy (maximum
    likelihood) and linearizes around it alone (Olson & Agarwal, 2013).
    The winner is recomputed on every call and never cached, since it
    can change from one iteration to the next as the estimates move.

ConstantVelocityFactor
    Between-factor against the identity: consecutive poses should not
    move much relative to each other.

StablePoseFactor
    Three-way consistency between a previous pose, a velocity variable
    and the next pose: next ≈ previous ∘ velocity.

PriorFactor
    SE(3) prior on a single pose.

PointPriorFactor
    Position prior on a point variable or a pose translation.

All Jacobians are analytic and expressed in the tangent chart of
:func:`maxmix_jit.core.math3d.se3_retract`, with tangent ordering
``[dv, dw]``.

Comparison coordinate
---------------------
For robot pose T_r = (R_r, t_r) and detection pose T_d = (R_d, t_d) the
detection factor compares hypotheses against

    p = translation(T_r⁻¹ T_d) = R_rᵀ (t_d − t_r)

and, under the chart above,

    ∂p/∂δ_r = [ −I, hat(p) ]          ∂p/∂δ_d = [ R_rᵀ R_d, 0 ]
"""

from __future__ import annotations

import abc
import copy
import enum
import logging
from typing import List, Optional, Sequence, Tuple

import jax.numpy as jnp

from maxmix_jit.core.errors import DegenerateMixture
from maxmix_jit.core.factor_graph import JacobianFactor, NonlinearFactor
from maxmix_jit.core.math3d import (
    compose_pose_se3,
    hat,
    pose_from_rt,
    pose_vec_to_rt,
    se3_adjoint_inverse,
    se3_identity,
    so3_exp,
    so3_right_jacobian_inverse,
)
from maxmix_jit.core.types import Key, KeyFormatter, default_key_formatter
from maxmix_jit.core.values import Values
from .detection import Detection
from .manifold import get_manifold_for_var_type
from .measurements import (
    constant_velocity_residual,
    detection_energies,
    pose_prior_residual,
    prior_residual,
    relative_detection_point,
    stable_pose_residual,
)
from .noise import NoiseModel

logger = logging.getLogger(__name__)

_I3 = jnp.eye(3)
_Z3 = jnp.zeros((3, 3))


class CouplingMode(enum.Enum):
    TIGHTLY_COUPLED = "tightly_coupled"
    LOOSELY_COUPLED = "loosely_coupled"


def between_jacobians(a: jnp.ndarray, b: jnp.ndarray, r: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Jacobians of r = local(a, b) = [R_aᵀ(t_b − t_a), log(R_aᵀ R_b)].

        H_a = [[ −I, hat(x) ], [ 0, −Jr⁻¹(φ) R_abᵀ ]]
        H_b = [[ R_ab, 0 ],    [ 0,  Jr⁻¹(φ)      ]]

    with x = r[:3], φ = r[3:], R_ab = R_aᵀ R_b.
    """
    _, wa = pose_vec_to_rt(a)
    _, wb = pose_vec_to_rt(b)
    R_ab = so3_exp(wa).T @ so3_exp(wb)
    x = r[:3]
    J_inv = so3_right_jacobian_inverse(r[3:6])

    H_a = jnp.block([[-_I3, hat(x)], [_Z3, -J_inv @ R_ab.T]])
    H_b = jnp.block([[R_ab, _Z3], [_Z3, J_inv]])
    return H_a, H_b


class DetectionFactor(NonlinearFactor):
    """
    Max-mixture multi-hypothesis factor on ``(detection_key, robot_pose_key)``.

    Per-hypothesis arrays (means, square-root informations, normalisation
    offsets, noise models) are computed once here and stay parallel to
    ``detections``; the factor is immutable afterwards.

    Under ``TIGHTLY_COUPLED`` both variables receive Jacobian blocks. Under
    ``LOOSELY_COUPLED`` the detection variable is treated as fixed and its
    block is exactly zero.

    The detection variable may be a pose (``"pose_se3"``-like types) or a
    Euclidean point (``"point3"``); in the latter case its block is 3×3.

    :raises DegenerateMixture: if ``detections`` is empty.
    """

    def __init__(
        self,
        detections: Sequence[Detection],
        detection_key: Key,
        robot_pose_key: Key,
        mode: CouplingMode = CouplingMode.TIGHTLY_COUPLED,
    ) -> None:
        detections = tuple(detections)
        if not detections:
            raise DegenerateMixture("DetectionFactor needs at least one detection")
        super().__init__((detection_key, robot_pose_key))

        self._detections = detections
        self._diagonals = tuple(d.noise_model for d in detections)
        self._zs = jnp.stack([d.mean for d in detections])
        self._sqrt_infos = jnp.stack([d.sqrt_information_matrix for d in detections])
        self._gammas = jnp.asarray([d.gamma() for d in detections], dtype=jnp.float32)
        self._mode = CouplingMode(mode)
        self._params = {
            "zs": self._zs,
            "sqrt_informations": self._sqrt_infos,
            "gammas": self._gammas,
        }

    # --- Accessors ---

    @property
    def detection_key(self) -> Key:
        return self.keys[0]

    @property
    def robot_pose_key(self) -> Key:
        return self.keys[1]

    @property
    def detections(self) -> Tuple[Detection, ...]:
        return self._detections

    @property
    def diagonals(self) -> Tuple[NoiseModel, ...]:
        return self._diagonals

    @property
    def zs(self) -> jnp.ndarray:
        return self._zs

    @property
    def gammas(self) -> jnp.ndarray:
        return self._gammas

    @property
    def sqrt_informations(self) -> jnp.ndarray:
        return self._sqrt_infos

    @property
    def params(self) -> dict:
        """Residual parameters for :mod:`maxmix_jit.slam.measurements`."""
        return dict(self._params)

    @property
    def mode(self) -> CouplingMode:
        return self._mode

    def dim(self) -> int:
        return 3

    # --- Utilities ---

    def get_detection_value(self, values) -> jnp.ndarray:
        """Current detection estimate as a pose vector."""
        var = values.variable(self.detection_key)
        if get_manifold_for_var_type(var.type) == "se3":
            return jnp.asarray(var.value)
        return pose_from_rt(jnp.asarray(var.value)[:3], jnp.zeros(3))

    def get_robot_pose_value(self, values) -> jnp.ndarray:
        return jnp.asarray(values.at(self.robot_pose_key))

    def _stack(self, values) -> jnp.ndarray:
        return jnp.concatenate(
            [self.get_robot_pose_value(values), self.get_detection_value(values)]
        )

    def measurement(self, values) -> jnp.ndarray:
        """The comparison point R_rᵀ (t_d − t_r) at the current estimates."""
        return relative_detection_point(self._stack(values))

    def energies(self, values) -> jnp.ndarray:
        """Energy of every hypothesis at the current estimates."""
        return detection_energies(self._stack(values), self._params)

    # --- Max-mixture ---

    def get_detection_index_and_error(self, pose_or_values) -> Tuple[int, float]:
        """
        Winning hypothesis and its energy.

        Accepts either a :class:`~maxmix_jit.core.values.Values` holding both
        keys, or the relative pose T_r⁻¹ T_d as a 6-vector. Ties go to the
        lowest index.
        """
        if isinstance(pose_or_values, Values):
            stacked = self._stack(pose_or_values)
        else:
            pose = jnp.asarray(pose_or_values).reshape(6)
            stacked = jnp.concatenate([se3_identity().astype(pose.dtype), pose])
        energies = detection_energies(stacked, self._params)
        index = int(jnp.argmin(energies))
        return index, float(energies[index])

    # --- Standard interface ---

    def error(self, values) -> float:
        """
        Winning energy 0.5 ‖S_k (p − z_k)‖² + γ_k.

        This is the factor's term of the solver objective Σ 0.5 ‖r‖²,
        carrying the winner's normalisation offset on top.
        """
        _, energy = self.get_detection_index_and_error(values)
        return energy

    def linearize(self, values) -> JacobianFactor:
        robot = self.get_robot_pose_value(values)
        detection = self.get_detection_value(values)
        stacked = jnp.concatenate([robot, detection])

        energies = detection_energies(stacked, self._params)
        k = int(jnp.argmin(energies))

        p = relative_detection_point(stacked)
        S = self._sqrt_infos[k]
        r = S @ (p - self._zs[k])

        R_r = so3_exp(robot[3:6])
        A_r = S @ jnp.concatenate([-_I3, hat(p)], axis=1)

        point_valued = get_manifold_for_var_type(
            values.variable(self.detection_key).type
        ) != "se3"
        if point_valued:
            A_d = S @ R_r.T
        else:
            R_d = so3_exp(detection[3:6])
            A_d = S @ jnp.concatenate([R_r.T @ R_d, _Z3], axis=1)
        if self._mode is CouplingMode.LOOSELY_COUPLED:
            A_d = jnp.zeros_like(A_d)

        logger.debug(
            "DetectionFactor(%s,%s): hypothesis %d of %d, energy %.6g",
            default_key_formatter(self.detection_key),
            default_key_formatter(self.robot_pose_key),
            k,
            len(self._detections),
            float(energies[k]),
        )
        return JacobianFactor(
            keys=self.keys,
            blocks={self.detection_key: A_d, self.robot_pose_key: A_r},
            residual=r,
        )

    def clone(self) -> "DetectionFactor":
        # detections are immutable and can be shared
        return DetectionFactor(
            self._detections, self.detection_key, self.robot_pose_key, self._mode
        )

    # --- Testable ---

    def equals(self, other: NonlinearFactor, tol: float = 1e-9) -> bool:
        if not isinstance(other, DetectionFactor):
            return False
        return (
            self.keys == other.keys
            and self._mode is other._mode
            and len(self._detections) == len(other._detections)
            and all(a.equals(b, tol) for a, b in zip(self._detections, other._detections))
        )

    def format(self, s: str = "", key_formatter: KeyFormatter = default_key_formatter) -> str:
        lines = [
            f"{s}DetectionFactor({key_formatter(self.detection_key)},"
            f"{key_formatter(self.robot_pose_key)}) mode={self._mode.name}"
        ]
        for i, (d, g) in enumerate(zip(self._detections, self._gammas)):
            lines.append(d.format(f"  [{i}] ") + f" gamma={float(g):.6g}")
        return "\n".join(lines)


class NoiseModelFactor(NonlinearFactor):
    """
    Fixed-residual factor over pose or point variables, whitened by a noise model.

    Subclasses implement :meth:`evaluate_error`, returning the unwhitened
    residual and, on request, one Jacobian per key. The objective term is
    0.5 ‖whiten(r)‖².
    """

    def __init__(self, keys: Tuple[Key, ...], noise_model: Optional[NoiseModel] = None) -> None:
        super().__init__(keys)
        if noise_model is None:
            noise_model = NoiseModel.unit(self.dim())
        if noise_model.dim() != self.dim():
            raise ValueError(
                f"{type(self).__name__} needs a {self.dim()}-dim noise model, "
                f"got {noise_model.dim()}"
            )
        self._noise_model = noise_model

    @property
    def noise_model(self) -> NoiseModel:
        return self._noise_model

    def dim(self) -> int:
        return 6

    @abc.abstractmethod
    def evaluate_error(
        self, *poses: jnp.ndarray, jacobians: bool = False
    ) -> Tuple[jnp.ndarray, Optional[List[jnp.ndarray]]]:
        ...

    def _poses(self, values) -> List[jnp.ndarray]:
        return [jnp.asarray(values.at(k)) for k in self.keys]

    def unwhitened_error(self, values) -> jnp.ndarray:
        r, _ = self.evaluate_error(*self._poses(values))
        return r

    def whitened_error(self, values) -> jnp.ndarray:
        return self._noise_model.whiten(self.unwhitened_error(values))

    def error(self, values) -> float:
        return 0.5 * float(self._noise_model.mahalanobis(self.unwhitened_error(values)))

    def linearize(self, values) -> JacobianFactor:
        r, Hs = self.evaluate_error(*self._poses(values), jacobians=True)
        A = self._noise_model.whiten_jacobians(Hs)
        return JacobianFactor(
            keys=self.keys,
            blocks=dict(zip(self.keys, A)),
            residual=self._noise_model.whiten(r),
        )

    def clone(self) -> "NoiseModelFactor":
        return copy.copy(self)

    def equals(self, other: NonlinearFactor, tol: float = 1e-9) -> bool:
        return (
            type(other) is type(self)
            and self.keys == other.keys
            and self._noise_model.equals(other._noise_model, tol)
        )

    def format(self, s: str = "", key_formatter: KeyFormatter = default_key_formatter) -> str:
        return (
            super().format(s, key_formatter)
            + "\n"
            + self._noise_model.format("  noise model: ")
        )


class ConstantVelocityFactor(NoiseModelFactor):
    """
    Soft constraint that two consecutive poses coincide:

        r = local(pose_1, pose_2)

    It stands in for an unmodelled constant-velocity assumption by
    penalising any relative motion between the two poses.
    """

    def __init__(self, key1: Key, key2: Key, noise_model: Optional[NoiseModel] = None) -> None:
        super().__init__((key1, key2), noise_model)

    @property
    def key1(self) -> Key:
        return self.keys[0]

    @property
    def key2(self) -> Key:
        return self.keys[1]

    def evaluate_error(self, pose1, pose2, jacobians: bool = False):
        r = constant_velocity_residual(jnp.concatenate([pose1, pose2]), {})
        if not jacobians:
            return r, None
        H1, H2 = between_jacobians(pose1, pose2, r)
        return r, [H1, H2]


class StablePoseFactor(NoiseModelFactor):
    """
    Consistency between a previous pose, a velocity and the next pose:

        r = local(previous ∘ velocity, next)

    The velocity is a variable in its own right, so the solver can move it
    to reconcile the motion model with the estimated trajectory.
    """

    def __init__(
        self,
        previous_pose_key: Key,
        velocity_key: Key,
        next_pose_key: Key,
        noise_model: Optional[NoiseModel] = None,
    ) -> None:
        super().__init__((previous_pose_key, velocity_key, next_pose_key), noise_model)

    @property
    def previous_pose_key(self) -> Key:
        return self.keys[0]

    @property
    def velocity_key(self) -> Key:
        return self.keys[1]

    @property
    def next_pose_key(self) -> Key:
        return self.keys[2]

    def evaluate_error(self, previous_pose, velocity, next_pose, jacobians: bool = False):
        r = stable_pose_residual(jnp.concatenate([previous_pose, velocity, next_pose]), {})
        if not jacobians:
            return r, None
        # chain rule through C = previous ∘ velocity
        predicted = compose_pose_se3(previous_pose, velocity)
        H_c, H_next = between_jacobians(predicted, next_pose, r)
        H_previous = H_c @ se3_adjoint_inverse(velocity)
        return r, [H_previous, H_c, H_next]


class PriorFactor(NoiseModelFactor):
    """SE(3) prior: r = local(prior, pose)."""

    def __init__(self, key: Key, prior: jnp.ndarray, noise_model: Optional[NoiseModel] = None) -> None:
        super().__init__((key,), noise_model)
        self._prior = jnp.asarray(prior, dtype=jnp.float32).reshape(6)

    @property
    def prior(self) -> jnp.ndarray:
        return self._prior

    def evaluate_error(self, pose, jacobians: bool = False):
        r = pose_prior_residual(pose, {"target": self._prior})
        if not jacobians:
            return r, None
        _, H = between_jacobians(self._prior, pose, r)
        return r, [H]

    def equals(self, other: NonlinearFactor, tol: float = 1e-9) -> bool:
        return super().equals(other, tol) and bool(
            jnp.allclose(self._prior, other._prior, rtol=0.0, atol=tol)
        )


class PointPriorFactor(NoiseModelFactor):
    """
    Position prior on a point or on the translation of a pose:

        r = t − prior

    Anchors an object estimate when no detection pins it down.
    """

    def __init__(self, key: Key, prior: jnp.ndarray, noise_model: Optional[NoiseModel] = None) -> None:
        super().__init__((key,), noise_model)
        self._prior = jnp.asarray(prior, dtype=jnp.float32).reshape(3)

    @property
    def prior(self) -> jnp.ndarray:
        return self._prior

    def dim(self) -> int:
        return 3

    def evaluate_error(self, value, jacobians: bool = False):
        r = prior_residual(value[:3], {"target": self._prior})
        if not jacobians:
            return r, None
        if value.shape[0] == 3:
            return r, [_I3]
        # the pose chart moves t by R dv
        R = so3_exp(value[3:6])
        return r, [jnp.concatenate([R, _Z3], axis=1)]

    def equals(self, other: NonlinearFactor, tol: float = 1e-9) -> bool:
        return super().equals(other, tol) and bool(
            jnp.allclose(self._prior, other._prior, rtol=0.0, atol=tol)
        )
