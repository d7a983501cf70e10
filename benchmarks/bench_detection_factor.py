# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.

import time
import jax
import jax.numpy as jnp

from maxmix_jit.core.factor_graph import FactorGraph
from maxmix_jit.core.types import BoundingBox, symbol
from maxmix_jit.core.values import Values
from maxmix_jit.optimization.solvers import gauss_newton_manifold, GNConfig
from maxmix_jit.slam.detection import Detection
from maxmix_jit.slam.factors import DetectionFactor, PriorFactor
from maxmix_jit.slam.measurements import detection_energies
from maxmix_jit.slam.noise import NoiseModel


def build_detection_factor(num_hypotheses: int = 16):
    """
    One DetectionFactor with hypotheses spread on a circle of radius 3m
    around the robot, alternating confidence.
    """
    detections = []
    for i in range(num_hypotheses):
        angle = 2.0 * jnp.pi * i / num_hypotheses
        center = (3.0 * float(jnp.cos(angle)), 3.0 * float(jnp.sin(angle)), 0.0)
        detections.append(
            Detection(BoundingBox(position=center), 0.2, weight=1.0 + (i % 2))
        )
    return DetectionFactor(detections, symbol("d", 0), symbol("x", 0))


def run_factor_benchmark(num_hypotheses: int = 16, num_evals: int = 200):
    print("=== DetectionFactor evaluation benchmark ===")
    print(f"num_hypotheses = {num_hypotheses}, num_evals = {num_evals}")

    factor = build_detection_factor(num_hypotheses)
    values = Values()
    values.insert(symbol("x", 0), jnp.zeros(6))
    values.insert(symbol("d", 0), jnp.array([2.5, 0.5, 0.0]), var_type="point3")

    # Warmup
    factor.linearize(values)

    t0 = time.time()
    for _ in range(num_evals):
        factor.error(values)
    t1 = time.time()
    for _ in range(num_evals):
        factor.linearize(values)
    t2 = time.time()

    print(f"error():     {(t1 - t0) / num_evals * 1e6:.1f} us/call")
    print(f"linearize(): {(t2 - t1) / num_evals * 1e6:.1f} us/call")

    # Batched energies, JIT-compiled
    params = factor.params
    energies_fn = jax.jit(jax.vmap(lambda x: detection_energies(x, params)))
    xs = jnp.concatenate(
        [
            jnp.zeros((num_evals, 6)),
            jnp.tile(jnp.array([2.5, 0.5, 0.0, 0.0, 0.0, 0.0]), (num_evals, 1)),
        ],
        axis=1,
    )
    energies_fn(xs).block_until_ready()

    t0 = time.time()
    energies_fn(xs).block_until_ready()
    t1 = time.time()
    print(f"vmap(detection_energies) over {num_evals} states: {(t1 - t0) * 1000:.3f} ms")


def run_solver_benchmark(num_objects: int = 20, max_iters: int = 10):
    print("=== Gauss-Newton with DetectionFactors ===")
    print(f"num_objects = {num_objects}, max_iters = {max_iters}")

    graph = FactorGraph()
    values = Values()
    robot = symbol("x", 0)
    graph.add(PriorFactor(robot, jnp.zeros(6), NoiseModel.isotropic(6, 1e-2)))
    values.insert(robot, jnp.zeros(6))

    for j in range(num_objects):
        key = symbol("o", j)
        true = (1.0 + 0.5 * j, (-1.0) ** j, 0.0)
        ghost = (true[0], true[1] + 2.0, 0.0)
        graph.add(
            DetectionFactor(
                [
                    Detection(BoundingBox(position=true), 0.1),
                    Detection(BoundingBox(position=ghost), 0.1, weight=0.5),
                ],
                key,
                robot,
            )
        )
        values.insert(key, jnp.array([true[0] + 0.2, true[1] + 0.3, 0.1]), var_type="point3")

    cfg = GNConfig(max_iters=max_iters, damping=1e-3, max_step_norm=1.0)

    t0 = time.time()
    result = gauss_newton_manifold(graph, values, cfg)
    t1 = time.time()

    print(f"Elapsed time: {(t1 - t0) * 1000:.3f} ms ({result.iterations} iterations)")
    print(f"error: {result.initial_error:.4f} -> {result.final_error:.4f}")


if __name__ == "__main__":
    run_factor_benchmark(num_hypotheses=16, num_evals=200)
    run_solver_benchmark(num_objects=20, max_iters=10)
