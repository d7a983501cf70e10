from __future__ import annotations

import logging

import jax.numpy as jnp

from maxmix_jit.core.factor_graph import FactorGraph
from maxmix_jit.core.math3d import compose_pose_se3, point_in_frame
from maxmix_jit.core.types import BoundingBox, symbol, symbol_index
from maxmix_jit.core.values import Values
from maxmix_jit.optimization.solvers import GNConfig, gauss_newton_manifold
from maxmix_jit.slam.detection import Detection, DetectionConfig
from maxmix_jit.slam.factors import (
    CouplingMode,
    DetectionFactor,
    PriorFactor,
    StablePoseFactor,
)
from maxmix_jit.slam.noise import NoiseModel


def setup_ambiguous_world(mode: CouplingMode = CouplingMode.TIGHTLY_COUPLED):
    """
    Build a tiny object-SLAM problem:

      - 3 SE(3) robot poses moving +1m in x with a small yaw per step,
        tied together by one shared velocity variable (StablePoseFactor).

      - 1 object, observed from every pose. Each observation carries two
        hypotheses: the true object position and a phantom 1.5m to the
        side (e.g. a mirrored detection). The phantom is less confident.

    Factors:
      - prior on pose0 (identity)
      - StablePose(pose_i, vel, pose_{i+1}) for i = 0, 1
      - DetectionFactor(object, pose_i) for i = 0, 1, 2
    """
    graph = FactorGraph()
    values = Values()

    v_true = jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.05])
    obj_true = jnp.array([4.0, 1.0, 0.0])
    phantom_offset = jnp.array([0.0, -1.5, 0.0])

    poses = [jnp.zeros(6)]
    for _ in range(2):
        poses.append(compose_pose_se3(poses[-1], v_true))

    pose_keys = [symbol("x", i) for i in range(3)]
    vel_key = symbol("v", 0)
    obj_key = symbol("o", 0)

    graph.add(PriorFactor(pose_keys[0], jnp.zeros(6), NoiseModel.isotropic(6, 1e-2)))
    motion_noise = NoiseModel.diagonal([0.05, 0.05, 0.05, 0.02, 0.02, 0.02])
    for i in range(2):
        graph.add(StablePoseFactor(pose_keys[i], vel_key, pose_keys[i + 1], motion_noise))

    cfg = DetectionConfig(extent_scale=0.25)
    for key, pose in zip(pose_keys, poses):
        # object in the robot frame
        from_robot = point_in_frame(pose, obj_true)
        phantom = point_in_frame(pose, obj_true + phantom_offset)
        detections = [
            Detection.from_extent(
                BoundingBox(position=tuple(float(c) for c in from_robot), dimensions=(0.4, 0.4, 0.8)),
                cfg,
                weight=1.0,
            ),
            Detection.from_extent(
                BoundingBox(position=tuple(float(c) for c in phantom), dimensions=(0.4, 0.4, 0.8)),
                cfg,
                weight=0.3,
            ),
        ]
        graph.add(DetectionFactor(detections, obj_key, key, mode))

    # Initial guesses are intentionally noisy; the object starts between
    # the two hypotheses, slightly closer to the phantom.
    for i, key in enumerate(pose_keys):
        values.insert(key, poses[i] + jnp.array([0.1, -0.05, 0.0, 0.0, 0.0, 0.02]) * i)
    values.insert(vel_key, jnp.array([0.8, 0.0, 0.0, 0.0, 0.0, 0.0]), var_type="velocity_se3")
    values.insert(obj_key, obj_true + 0.45 * phantom_offset, var_type="point3")

    return graph, values, pose_keys, vel_key, obj_key


def print_state(graph, values, pose_keys, vel_key, obj_key, label: str):
    print(f"\n=== {label} ===")
    for key in pose_keys:
        tx, ty, tz, wx, wy, wz = [float(x) for x in values.at(key)]
        print(
            f"pose {symbol_index(key)}: t=({tx:.3f}, {ty:.3f}, {tz:.3f}), "
            f"w=({wx:.3f}, {wy:.3f}, {wz:.3f})"
        )
    v = [float(x) for x in values.at(vel_key)]
    print(f"velocity: t=({v[0]:.3f}, {v[1]:.3f}, {v[2]:.3f}), yaw={v[5]:.3f}")
    o = [float(x) for x in values.at(obj_key)]
    print(f"object: ({o[0]:.3f}, {o[1]:.3f}, {o[2]:.3f})")

    for factor in graph:
        if isinstance(factor, DetectionFactor):
            k, energy = factor.get_detection_index_and_error(values)
            print(f"  {factor.format().splitlines()[0]}: hypothesis {k}, energy {energy:.3f}")
    print(f"total error: {graph.error(values):.4f}")


def main():
    logging.basicConfig(level=logging.INFO)

    for mode in (CouplingMode.TIGHTLY_COUPLED, CouplingMode.LOOSELY_COUPLED):
        graph, values, pose_keys, vel_key, obj_key = setup_ambiguous_world(mode)

        print_state(graph, values, pose_keys, vel_key, obj_key, label=f"INITIAL STATE ({mode.name})")

        result = gauss_newton_manifold(graph, values, GNConfig(max_iters=30))

        print_state(
            graph, result.values, pose_keys, vel_key, obj_key,
            label=f"OPTIMIZED STATE ({mode.name}, {result.iterations} iters)",
        )


if __name__ == "__main__":
    main()
