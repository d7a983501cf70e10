from __future__ import annotations

import jax
import jax.numpy as jnp
import pytest

from maxmix_jit.core.errors import DegenerateMixture, UnknownKey
from maxmix_jit.core.math3d import so3_exp
from maxmix_jit.core.types import BoundingBox, symbol
from maxmix_jit.core.values import Values
from maxmix_jit.slam.detection import Detection
from maxmix_jit.slam.factors import CouplingMode, DetectionFactor

D = symbol("d", 0)
X = symbol("x", 0)


def _det(x, y=0.0, z=0.0, sigma=0.1, weight=1.0):
    return Detection(BoundingBox(position=(x, y, z)), sigma, weight)


def _values(robot=None, detection=None, detection_type="pose_se3"):
    values = Values()
    values.insert(X, jnp.zeros(6) if robot is None else jnp.asarray(robot))
    if detection is not None:
        values.insert(D, jnp.asarray(detection), var_type=detection_type)
    return values


def _at(x, y=0.0, z=0.0):
    """Values with the robot at the origin and the detection at (x, y, z)."""
    return _values(detection=jnp.array([x, y, z, 0.0, 0.0, 0.0]))


def test_empty_detection_list_raises():
    with pytest.raises(DegenerateMixture):
        DetectionFactor([], D, X)


def test_single_detection_reduces_to_gaussian_factor():
    """
    One detection at (1, 0, 0), sigma 0.1, weight 1, estimate at (1, 0, 0):
    the error is just the normalisation constant and the residual is zero.
    """
    det = _det(1.0)
    factor = DetectionFactor([det], D, X)
    values = _at(1.0)

    assert factor.error(values) == pytest.approx(det.gamma(), abs=1e-5)
    lin = factor.linearize(values)
    assert jnp.allclose(lin.residual, jnp.zeros(3), atol=1e-6)
    assert lin.keys == (D, X)


def test_two_far_apart_hypotheses_pick_nearest():
    """
    Detections at (0,0,0) and (10,0,0); estimate at (9,0,0) selects index 1
    and the residual is (-1,0,0) whitened by variance 0.25.
    """
    factor = DetectionFactor([_det(0.0, sigma=0.25), _det(10.0, sigma=0.25)], D, X)
    values = _at(9.0)

    index, energy = factor.get_detection_index_and_error(values)
    assert index == 1
    assert energy == pytest.approx(float(factor.detections[1].error(jnp.array([9.0, 0.0, 0.0]), factor.gammas[1])), rel=1e-5)

    lin = factor.linearize(values)
    assert jnp.allclose(lin.residual, jnp.array([-2.0, 0.0, 0.0]), atol=1e-5)


def test_weight_breaks_equal_distance_tie():
    """
    Both hypotheses are 1m from the estimate; the one with 100x the weight
    wins regardless of its position in the list.
    """
    heavy_second = DetectionFactor([_det(0.0, weight=1.0), _det(2.0, weight=100.0)], D, X)
    heavy_first = DetectionFactor([_det(0.0, weight=100.0), _det(2.0, weight=1.0)], D, X)
    values = _at(1.0)

    assert heavy_second.get_detection_index_and_error(values)[0] == 1
    assert heavy_first.get_detection_index_and_error(values)[0] == 0


def test_normalisation_lets_broad_hypothesis_win_far_from_tight_one():
    """
    Same mean, different covariance. Near the mean the tight component
    wins; 1m away the broad one does, because the energies are proper
    negative log-likelihoods rather than raw Mahalanobis distances.
    """
    factor = DetectionFactor([_det(0.0, sigma=0.1), _det(0.0, sigma=1.0)], D, X)

    assert factor.get_detection_index_and_error(_at(0.0))[0] == 0
    assert factor.get_detection_index_and_error(_at(1.0))[0] == 1


def test_identical_detections_tie_to_lowest_index():
    factor = DetectionFactor([_det(5.0), _det(1.0), _det(1.0), _det(1.0)], D, X)
    index, _ = factor.get_detection_index_and_error(_at(1.3))
    assert index == 1


def test_zero_weight_hypothesis_never_wins():
    factor = DetectionFactor([_det(0.0, weight=0.0), _det(3.0, weight=1.0)], D, X)
    assert factor.get_detection_index_and_error(_at(0.0))[0] == 1


def test_brute_force_minimum_over_random_estimates():
    """
    The reported error is the minimum of every detection's energy at the
    comparison point R_rᵀ (t_d − t_r), for random estimates.
    """
    dets = [
        _det(1.0, 0.0, 0.0, sigma=0.2),
        _det(0.0, 2.0, 0.0, sigma=(0.5, 0.1, 0.3), weight=3.0),
        _det(-1.0, -1.0, 1.0, sigma=1.0, weight=0.5),
        _det(2.0, 2.0, -1.0, sigma=0.05, weight=10.0),
    ]
    factor = DetectionFactor(dets, D, X)

    key = jax.random.PRNGKey(0)
    for _ in range(10):
        key, k1, k2 = jax.random.split(key, 3)
        robot = jax.random.uniform(k1, (6,), minval=-1.5, maxval=1.5)
        detection = jax.random.uniform(k2, (6,), minval=-2.0, maxval=2.0)
        values = _values(robot, detection)

        x = so3_exp(robot[3:]).T @ (detection[:3] - robot[:3])
        energies = [float(d.error(x, d.gamma())) for d in dets]
        expected_index = min(range(len(dets)), key=lambda i: energies[i])

        index, energy = factor.get_detection_index_and_error(values)
        assert 0 <= index < len(dets)
        assert index == expected_index
        assert energy == pytest.approx(energies[expected_index], rel=1e-4, abs=1e-4)
        assert factor.error(values) == pytest.approx(energy)


def test_relative_pose_overload_matches_values_overload():
    factor = DetectionFactor([_det(1.0), _det(0.0, 1.0)], D, X)
    robot = jnp.array([0.5, -0.3, 0.1, 0.0, 0.0, 0.4])
    detection = jnp.array([1.0, 0.8, 0.0, 0.1, 0.0, 0.0])
    values = _values(robot, detection)

    relative = jnp.concatenate([factor.measurement(values), jnp.zeros(3)])
    i_rel, e_rel = factor.get_detection_index_and_error(relative)
    i_val, e_val = factor.get_detection_index_and_error(values)
    assert i_rel == i_val
    assert e_rel == pytest.approx(e_val, rel=1e-5, abs=1e-5)


def test_error_index_and_linearize_agree():
    """
    error(), get_detection_index_and_error() and linearize() report the
    same winner for the same estimates.
    """
    dets = [_det(0.0, sigma=0.3), _det(2.0, sigma=0.3), _det(4.0, sigma=0.3)]
    factor = DetectionFactor(dets, D, X)

    for x in [0.2, 1.2, 2.9, 3.5]:
        values = _at(x)
        index, energy = factor.get_detection_index_and_error(values)
        assert factor.error(values) == pytest.approx(energy)

        lin = factor.linearize(values)
        S = factor.sqrt_informations[index]
        expected_r = S @ (jnp.array([x, 0.0, 0.0]) - factor.zs[index])
        assert jnp.allclose(lin.residual, expected_r, atol=1e-5)
        # 0.5 |r|^2 + gamma reproduces the reported energy
        assert float(lin.error()) + float(factor.gammas[index]) == pytest.approx(energy, rel=1e-5, abs=1e-5)


def test_winner_follows_the_estimate():
    """Nothing is cached: moving the estimate moves the winner."""
    factor = DetectionFactor([_det(0.0), _det(3.0)], D, X)
    assert factor.get_detection_index_and_error(_at(0.4))[0] == 0
    assert factor.get_detection_index_and_error(_at(2.6))[0] == 1
    assert factor.get_detection_index_and_error(_at(0.4))[0] == 0


def test_error_and_linearize_are_pure():
    factor = DetectionFactor([_det(0.0), _det(3.0, sigma=0.4)], D, X)
    values = _values(
        jnp.array([0.1, 0.2, 0.0, 0.0, 0.1, 0.2]),
        jnp.array([2.0, 0.5, 0.1, 0.3, 0.0, 0.0]),
    )

    assert factor.error(values) == factor.error(values)
    a = factor.linearize(values)
    b = factor.linearize(values)
    assert jnp.array_equal(a.residual, b.residual)
    for k in a.keys:
        assert jnp.array_equal(a.blocks[k], b.blocks[k])


def test_loosely_coupled_detection_block_is_zero():
    dets = [_det(1.0, 0.5, 0.0, sigma=0.2), _det(-1.0, sigma=0.3)]
    tight = DetectionFactor(dets, D, X, CouplingMode.TIGHTLY_COUPLED)
    loose = DetectionFactor(dets, D, X, CouplingMode.LOOSELY_COUPLED)

    key = jax.random.PRNGKey(7)
    for _ in range(5):
        key, k1, k2 = jax.random.split(key, 3)
        values = _values(
            jax.random.uniform(k1, (6,), minval=-1.0, maxval=1.0),
            jax.random.uniform(k2, (6,), minval=-1.0, maxval=1.0),
        )
        lt = tight.linearize(values)
        ll = loose.linearize(values)

        assert jnp.all(ll.blocks[D] == 0.0)
        assert jnp.any(lt.blocks[D] != 0.0)
        # the robot side and the residual do not depend on the mode
        assert jnp.allclose(lt.blocks[X], ll.blocks[X])
        assert jnp.allclose(lt.residual, ll.residual)
        assert tight.error(values) == pytest.approx(loose.error(values))


def test_point_valued_detection_variable():
    factor = DetectionFactor([_det(1.0, 1.0, 0.0, sigma=0.25)], D, X)
    values = _values(
        jnp.array([0.0, 0.0, 0.0, 0.0, 0.0, 0.3]),
        jnp.array([1.0, 1.0, 0.0]),
        detection_type="point3",
    )
    lin = factor.linearize(values)
    R_r = so3_exp(jnp.array([0.0, 0.0, 0.3]))
    assert lin.blocks[D].shape == (3, 3)
    assert jnp.allclose(lin.blocks[D], 2.0 * R_r.T, atol=1e-5)
    assert lin.blocks[X].shape == (3, 6)


def test_missing_key_raises_unknown_key():
    factor = DetectionFactor([_det(1.0)], D, X)
    values = _values()  # robot only

    with pytest.raises(UnknownKey) as excinfo:
        factor.error(values)
    assert excinfo.value.key == D
    assert "d0" in str(excinfo.value)

    with pytest.raises(KeyError):
        factor.linearize(values)


def test_clone_and_equals():
    dets = [_det(1.0), _det(2.0, sigma=0.3, weight=2.0)]
    factor = DetectionFactor(dets, D, X)
    clone = factor.clone()

    assert clone is not factor
    assert clone.equals(factor)
    assert factor.equals(clone)

    assert not factor.equals(DetectionFactor(dets, D, X, CouplingMode.LOOSELY_COUPLED))
    assert not factor.equals(DetectionFactor(dets, D, symbol("x", 1)))
    assert not factor.equals(DetectionFactor(dets[:1], D, X))

    shifted = DetectionFactor([_det(1.001), dets[1]], D, X)
    assert not factor.equals(shifted)
    assert factor.equals(shifted, tol=1e-2)


def test_clone_evaluates_identically():
    factor = DetectionFactor([_det(1.0), _det(2.0)], D, X)
    values = _at(1.7)
    assert factor.clone().error(values) == factor.error(values)


def test_print_uses_key_formatter(capsys):
    factor = DetectionFactor([_det(1.0), _det(2.0)], D, X, CouplingMode.LOOSELY_COUPLED)
    factor.print("mixture: ")
    out = capsys.readouterr().out
    assert out.startswith("mixture: DetectionFactor(d0,x0)")
    assert "LOOSELY_COUPLED" in out
    assert "[1]" in out

    factor.print(key_formatter=lambda k: "K")
    assert "DetectionFactor(K,K)" in capsys.readouterr().out


def test_per_detection_arrays_are_parallel():
    dets = [_det(1.0), _det(2.0, sigma=(0.1, 0.2, 0.3)), _det(3.0, weight=5.0)]
    factor = DetectionFactor(dets, D, X)
    n = len(dets)
    assert factor.dim() == 3
    assert factor.zs.shape == (n, 3)
    assert factor.sqrt_informations.shape == (n, 3, 3)
    assert factor.gammas.shape == (n,)
    assert len(factor.diagonals) == n
    for i, d in enumerate(dets):
        assert jnp.allclose(factor.zs[i], d.mean)
        assert float(factor.gammas[i]) == pytest.approx(d.gamma(), rel=1e-6)
