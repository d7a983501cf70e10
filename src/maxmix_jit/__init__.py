# Copyright (c) 2025.
# This file is part of MaxMix-JIT, released under the MIT License.
"""
MaxMix-JIT: max-mixture data association factors for pose-graph SLAM.

The package is organised like a small factor-graph engine:

    core/          SE(3) math, keys and variables, value container,
                   the factor interface and the linear factor type.
    slam/          noise models, the Gaussian ``Detection`` model and the
                   factors built on it (max-mixture detection factor,
                   constant-velocity factor, stable-pose factor).
    optimization/  a reference manifold Gauss–Newton solver that consumes
                   linearized factors.
"""

from maxmix_jit.core.errors import (
    MaxMixtureError,
    InvalidCovariance,
    InvalidWeight,
    DegenerateMixture,
    UnknownKey,
)
from maxmix_jit.core.types import BoundingBox, symbol, default_key_formatter
from maxmix_jit.core.values import Values
from maxmix_jit.core.factor_graph import FactorGraph, JacobianFactor, NonlinearFactor
from maxmix_jit.slam.noise import NoiseModel
from maxmix_jit.slam.detection import Detection, DetectionConfig
from maxmix_jit.slam.factors import (
    CouplingMode,
    DetectionFactor,
    ConstantVelocityFactor,
    StablePoseFactor,
    PointPriorFactor,
    PriorFactor,
)

__all__ = [
    "MaxMixtureError",
    "InvalidCovariance",
    "InvalidWeight",
    "DegenerateMixture",
    "UnknownKey",
    "BoundingBox",
    "symbol",
    "default_key_formatter",
    "Values",
    "FactorGraph",
    "JacobianFactor",
    "NonlinearFactor",
    "NoiseModel",
    "Detection",
    "DetectionConfig",
    "CouplingMode",
    "DetectionFactor",
    "ConstantVelocityFactor",
    "StablePoseFactor",
    "PointPriorFactor",
    "PriorFactor",
]

__version__ = "0.1.0"
