# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
Exception types raised by MaxMix-JIT.

Every error here marks a malformed factor or a stale key rather than a
transient condition: they are raised at construction or evaluation time
and propagate straight to the caller. Each one also derives from the
builtin exception the rest of the code base would have raised
(``ValueError`` / ``KeyError``), so existing ``except`` clauses still
catch them.
"""

from __future__ import annotations

from typing import Optional

from .types import Key, KeyFormatter, default_key_formatter


class MaxMixtureError(Exception):
    """Base class for all MaxMix-JIT errors."""


class InvalidCovariance(MaxMixtureError, ValueError):
    """A covariance is not symmetric positive-definite (or a sigma is <= 0)."""


class InvalidWeight(MaxMixtureError, ValueError):
    """A mixture weight is negative or not finite."""


class DegenerateMixture(MaxMixtureError, ValueError):
    """A mixture factor was built without any hypothesis to select from."""


class UnknownKey(MaxMixtureError, KeyError):
    """A value container was asked for a key it does not hold."""

    def __init__(self, key: Key, key_formatter: Optional[KeyFormatter] = None) -> None:
        self.key = key
        fmt = key_formatter or default_key_formatter
        super().__init__(f"no value for key {fmt(key)}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]
