# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Manifold metadata for SE(3) and Euclidean variables.

The solver works in a local tangent space while the state lives on a
manifold: SE(3) for poses, ℝⁿ for points. This module maps variable type
tags to their manifold and applies the matching update rule:

    • ``TYPE_TO_MANIFOLD``           (str → {"se3", "euclidean"})
    • ``get_manifold_for_var_type``
    • ``tangent_dim``                (size of the local update)
    • ``retract_value``              (value ⊕ δ, per manifold)

Extending to a new manifold means adding an entry to ``TYPE_TO_MANIFOLD``
and a branch to ``retract_value`` / ``tangent_dim``.
"""

from __future__ import annotations

from typing import Dict

import jax.numpy as jnp

from maxmix_jit.core.math3d import se3_retract
from maxmix_jit.core.types import Variable

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_se3": "se3",
    "detection_se3": "se3",
    "velocity_se3": "se3",
    "point3": "euclidean",
    "landmark3d": "euclidean",
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def tangent_dim(var: Variable) -> int:
    if get_manifold_for_var_type(var.type) == "se3":
        return 6
    return int(jnp.asarray(var.value).shape[0])


def retract_value(var_type: str, value: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Apply a tangent-space update to a value of the given type."""
    if get_manifold_for_var_type(var_type) == "se3":
        return se3_retract(value, delta)
    return jnp.asarray(value) + delta
