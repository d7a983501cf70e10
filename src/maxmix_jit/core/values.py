# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Variable value container.

``Values`` maps opaque keys to :class:`~maxmix_jit.core.types.Variable`
records. Factors only read from it: every ``error`` / ``linearize`` call
looks its keys up here and raises :class:`UnknownKey` if one is missing.
The solver owns the container and produces updated copies with
:meth:`Values.retract`.
"""

from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional

import jax.numpy as jnp

from maxmix_jit.slam.manifold import retract_value
from .errors import UnknownKey
from .types import Key, KeyFormatter, Variable, default_key_formatter


class Values:
    """Mapping key -> Variable with manifold-aware updates."""

    def __init__(self, variables: Optional[Mapping[Key, Variable]] = None) -> None:
        self._variables: Dict[Key, Variable] = dict(variables or {})

    def insert(self, key: Key, value, var_type: str = "pose_se3") -> None:
        if key in self._variables:
            raise ValueError(f"key {default_key_formatter(key)} already present")
        self._variables[key] = Variable(id=key, type=var_type, value=jnp.asarray(value))

    def update(self, key: Key, value) -> None:
        var = self.variable(key)
        self._variables[key] = Variable(id=key, type=var.type, value=jnp.asarray(value))

    def variable(self, key: Key) -> Variable:
        try:
            return self._variables[key]
        except KeyError:
            raise UnknownKey(key) from None

    def at(self, key: Key) -> jnp.ndarray:
        return self.variable(key).value

    def exists(self, key: Key) -> bool:
        return key in self._variables

    def keys(self):
        return self._variables.keys()

    def items(self):
        return self._variables.items()

    def __contains__(self, key: Key) -> bool:
        return key in self._variables

    def __len__(self) -> int:
        return len(self._variables)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._variables)

    def copy(self) -> "Values":
        return Values(self._variables)

    def retract(self, deltas: Mapping[Key, jnp.ndarray]) -> "Values":
        """
        Return a new container with ``value ⊕ delta`` applied per key.

        Keys missing from ``deltas`` are carried over unchanged.
        """
        out: Dict[Key, Variable] = {}
        for key, var in self._variables.items():
            delta = deltas.get(key)
            if delta is None:
                out[key] = var
            else:
                out[key] = Variable(
                    id=key,
                    type=var.type,
                    value=retract_value(var.type, var.value, delta),
                )
        return Values(out)

    def format(self, s: str = "", key_formatter: KeyFormatter = default_key_formatter) -> str:
        lines = [f"{s}Values with {len(self)} values:"]
        for key, var in self._variables.items():
            lines.append(f"  {key_formatter(key)} ({var.type}): {jnp.asarray(var.value)}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.format()
