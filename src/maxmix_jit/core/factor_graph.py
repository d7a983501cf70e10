# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Factor interface, linear factors and the factor graph container.

The solver sees every factor through one capability interface,
:class:`NonlinearFactor`:

    error(values)      -> scalar contribution to the objective
    linearize(values)  -> JacobianFactor around the current estimate
    clone()            -> independent copy
    equals(other, tol) -> structural / numerical comparison
    print(s, key_formatter)

Concrete variants live in :mod:`maxmix_jit.slam.factors` (max-mixture
detection factor, constant-velocity factor, stable-pose factor). The
solver iterates over a :class:`FactorGraph` without knowing which variant
it is looking at.

Linear factors
--------------
A :class:`JacobianFactor` is the local model

    r(x ⊕ δ) ≈ r + Σ_k A_k δ_k

with whitened residual ``r`` and one Jacobian block ``A_k`` per key,
expressed in the tangent chart of :func:`maxmix_jit.core.math3d.se3_retract`.
Its contribution to the linearised objective is ``0.5 ‖Σ_k A_k δ_k + r‖²``.

Notes
-----
All factors are immutable after construction and ``error`` / ``linearize``
are pure functions of the factor and the values passed in, so a solver may
evaluate different factors concurrently.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

import jax.numpy as jnp

from maxmix_jit.slam.manifold import tangent_dim
from .types import Key, KeyFormatter, default_key_formatter


@dataclass(frozen=True, eq=False)
class JacobianFactor:
    """
    Whitened linear factor handed to the solver.

    keys:     ordered keys of the variables involved
    blocks:   key -> (m, d_k) Jacobian block
    residual: (m,) whitened residual at the linearisation point
    """
    keys: Tuple[Key, ...]
    blocks: Dict[Key, jnp.ndarray]
    residual: jnp.ndarray

    def jacobian(self, key: Key) -> jnp.ndarray:
        return self.blocks[key]

    def rows(self) -> int:
        return int(self.residual.shape[0])

    def error(self, deltas: Optional[Mapping[Key, jnp.ndarray]] = None) -> jnp.ndarray:
        """0.5 ‖Σ_k A_k δ_k + r‖² (δ = 0 for keys missing from ``deltas``)."""
        e = self.residual
        if deltas:
            for key in self.keys:
                if key in deltas:
                    e = e + self.blocks[key] @ deltas[key]
        return 0.5 * jnp.dot(e, e)


class NonlinearFactor(abc.ABC):
    """Abstract factor over a fixed, ordered set of keys."""

    def __init__(self, keys: Tuple[Key, ...]) -> None:
        self._keys = tuple(keys)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    def size(self) -> int:
        return len(self._keys)

    @abc.abstractmethod
    def dim(self) -> int:
        """Number of residual rows."""

    @abc.abstractmethod
    def error(self, values) -> float:
        ...

    @abc.abstractmethod
    def linearize(self, values) -> JacobianFactor:
        ...

    @abc.abstractmethod
    def clone(self) -> "NonlinearFactor":
        ...

    @abc.abstractmethod
    def equals(self, other: "NonlinearFactor", tol: float = 1e-9) -> bool:
        ...

    def format(self, s: str = "", key_formatter: KeyFormatter = default_key_formatter) -> str:
        keys = ",".join(key_formatter(k) for k in self._keys)
        return f"{s}{type(self).__name__}({keys})"

    def print(self, s: str = "", key_formatter: KeyFormatter = default_key_formatter) -> None:
        print(self.format(s, key_formatter))

    def __repr__(self) -> str:
        return self.format()


@dataclass
class FactorGraph:
    """
    Ordered collection of nonlinear factors.

    The graph owns no variable values; those live in a
    :class:`~maxmix_jit.core.values.Values` the caller passes in.
    """
    factors: List[NonlinearFactor] = field(default_factory=list)

    def add(self, factor: NonlinearFactor) -> None:
        self.factors.append(factor)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[NonlinearFactor]:
        return iter(self.factors)

    def __getitem__(self, i: int) -> NonlinearFactor:
        return self.factors[i]

    def keys(self) -> List[Key]:
        """Keys touched by any factor, in first-seen order."""
        seen: Dict[Key, None] = {}
        for f in self.factors:
            for k in f.keys:
                seen.setdefault(k, None)
        return list(seen)

    def error(self, values) -> float:
        return float(sum(float(f.error(values)) for f in self.factors))

    def linearize(self, values) -> List[JacobianFactor]:
        return [f.linearize(values) for f in self.factors]

    # --- State indexing ---

    def build_state_index(self, values) -> Dict[Key, Tuple[int, int]]:
        """
        Returns a mapping: key -> (start_index, dim) into the flat tangent
        vector, over the keys this graph touches, in first-seen order.
        """
        index: Dict[Key, Tuple[int, int]] = {}
        offset = 0
        for key in self.keys():
            dim = tangent_dim(values.variable(key))
            index[key] = (offset, dim)
            offset += dim
        return index

    def format(self, s: str = "", key_formatter: KeyFormatter = default_key_formatter) -> str:
        lines = [f"{s}size: {len(self.factors)}"]
        for i, f in enumerate(self.factors):
            lines.append(f.format(f"Factor {i}: ", key_formatter))
        return "\n".join(lines)

    def print(self, s: str = "", key_formatter: KeyFormatter = default_key_formatter) -> None:
        print(self.format(s, key_formatter))
