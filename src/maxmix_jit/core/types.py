# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Core typed data structures for MaxMix-JIT.

Classes
-------
Variable
    A node of the factor graph: an id, a type tag selecting its manifold
    (``"pose_se3"``, ``"point3"``, ...) and its current value, a 1-D JAX
    array.

BoundingBox
    The detection record a :class:`~maxmix_jit.slam.detection.Detection` is
    built from. It mirrors the fields of a 3D bounding-box message (header,
    pose, dimensions, score, label); only the centre and, optionally, the
    dimensions take part in the math.

Keys
----
Keys are opaque hashables. For readable graphs, :func:`symbol` packs a
character and an index into a single integer the same way GTSAM symbols
do (``symbol("x", 3)`` prints as ``x3``).
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Hashable

import jax.numpy as jnp

Key = Hashable
KeyFormatter = Callable[[Key], str]

_CHR_BITS = 8
_INDEX_BITS = 64 - _CHR_BITS
_INDEX_MASK = (1 << _INDEX_BITS) - 1


def symbol(c: str, index: int) -> int:
    """Pack a character and an index into one integer key."""
    if len(c) != 1:
        raise ValueError(f"symbol character must be a single char, got {c!r}")
    if index < 0 or index > _INDEX_MASK:
        raise ValueError(f"symbol index out of range: {index}")
    return (ord(c) << _INDEX_BITS) | index


def symbol_chr(key: int) -> str:
    return chr((key >> _INDEX_BITS) & 0xFF)


def symbol_index(key: int) -> int:
    return key & _INDEX_MASK


def default_key_formatter(key: Key) -> str:
    """Format symbol keys as ``x3``; anything else goes through ``str``."""
    if isinstance(key, int) and key >= 0 and key >> _INDEX_BITS:
        c = symbol_chr(key)
        if c.isprintable():
            return f"{c}{symbol_index(key)}"
    return str(key)


@dataclass
class Variable:
    """Generic optimization variable node in the factor graph."""
    id: Key
    type: str          # e.g. "pose_se3", "point3"
    value: jnp.ndarray


@dataclass(frozen=True)
class BoundingBox:
    """
    3D bounding-box observation.

    position:    centre of the box in the sensor frame, R^3
    orientation: quaternion [x, y, z, w]
    dimensions:  box extent along its own axes, R^3
    value:       detector confidence
    label:       detector class id
    """
    position: Any
    orientation: Any = (0.0, 0.0, 0.0, 1.0)
    dimensions: Any = (0.0, 0.0, 0.0)
    frame_id: str = ""
    stamp: float = 0.0
    value: float = 0.0
    label: int = 0

    @property
    def center(self) -> jnp.ndarray:
        return jnp.asarray(self.position, dtype=jnp.float32).reshape(3)

    @property
    def extent(self) -> jnp.ndarray:
        return jnp.asarray(self.dimensions, dtype=jnp.float32).reshape(3)
