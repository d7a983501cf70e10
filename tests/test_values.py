from __future__ import annotations

import jax.numpy as jnp
import pytest

from maxmix_jit.core.errors import MaxMixtureError, UnknownKey
from maxmix_jit.core.types import default_key_formatter, symbol, symbol_chr, symbol_index
from maxmix_jit.core.values import Values


def test_symbol_packs_char_and_index():
    key = symbol("x", 42)
    assert symbol_chr(key) == "x"
    assert symbol_index(key) == 42
    assert default_key_formatter(key) == "x42"
    assert default_key_formatter(7) == "7"
    assert symbol("x", 1) != symbol("d", 1)


def test_negative_int_key_formats_as_plain_int():
    assert default_key_formatter(-5) == "-5"
    assert default_key_formatter(-symbol("x", 3)) == str(-symbol("x", 3))


def test_symbol_rejects_bad_input():
    with pytest.raises(ValueError):
        symbol("xy", 0)
    with pytest.raises(ValueError):
        symbol("x", -1)


def test_insert_and_lookup():
    values = Values()
    values.insert(symbol("x", 0), jnp.zeros(6))
    values.insert(symbol("l", 0), [1.0, 2.0, 3.0], var_type="point3")

    assert len(values) == 2
    assert symbol("x", 0) in values
    assert values.exists(symbol("l", 0))
    assert values.variable(symbol("l", 0)).type == "point3"
    assert jnp.allclose(values.at(symbol("l", 0)), jnp.array([1.0, 2.0, 3.0]))
    assert list(values) == [symbol("x", 0), symbol("l", 0)]


def test_duplicate_insert_raises():
    values = Values()
    values.insert(0, jnp.zeros(6))
    with pytest.raises(ValueError):
        values.insert(0, jnp.ones(6))


def test_missing_key_raises_unknown_key():
    values = Values()
    with pytest.raises(UnknownKey) as excinfo:
        values.at(symbol("d", 0))
    assert excinfo.value.key == symbol("d", 0)
    assert "d0" in str(excinfo.value)
    assert isinstance(excinfo.value, KeyError)
    assert isinstance(excinfo.value, MaxMixtureError)


def test_update_keeps_type():
    values = Values()
    values.insert(0, jnp.zeros(3), var_type="point3")
    values.update(0, jnp.ones(3))
    assert values.variable(0).type == "point3"
    assert jnp.allclose(values.at(0), jnp.ones(3))
    with pytest.raises(UnknownKey):
        values.update(1, jnp.ones(3))


def test_retract_uses_each_manifold():
    """
    Poses move through the SE(3) chart, points by addition; keys without a
    delta are carried over.
    """
    values = Values()
    values.insert("pose", jnp.array([0.0, 0.0, 0.0, 0.0, 0.0, jnp.pi / 2]))
    values.insert("point", jnp.array([1.0, 1.0, 1.0]), var_type="point3")
    values.insert("fixed", jnp.array([5.0, 0.0, 0.0, 0.0, 0.0, 0.0]))

    out = values.retract(
        {
            "pose": jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0]),
            "point": jnp.array([0.5, -1.0, 0.0]),
        }
    )

    # body-frame x of a 90° yaw is world y
    assert jnp.allclose(out.at("pose")[:3], jnp.array([0.0, 1.0, 0.0]), atol=1e-5)
    assert jnp.allclose(out.at("point"), jnp.array([1.5, 0.0, 1.0]))
    assert jnp.allclose(out.at("fixed"), values.at("fixed"))
    # input untouched
    assert jnp.allclose(values.at("point"), jnp.array([1.0, 1.0, 1.0]))


def test_copy_is_independent():
    values = Values()
    values.insert(0, jnp.zeros(6))
    other = values.copy()
    other.insert(1, jnp.zeros(6))
    assert 1 not in values
    assert len(other) == 2


def test_format_lists_keys():
    values = Values()
    values.insert(symbol("x", 1), jnp.zeros(6))
    text = values.format("estimate: ")
    assert text.startswith("estimate: Values with 1 values:")
    assert "x1 (pose_se3)" in text
