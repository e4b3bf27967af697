"""
Pose fusion for atlas.

This module implements the weighted pose-averaging kernel (weighted vector
mean and eigenvector quaternion mean), the pass-through variant, the
observation weighting policy and the per-cycle fusion driver.
"""

from .filters import FilterOutput, FusionFilter, PassThroughFilter, WeightedMean, create_filter
from .weighting import WeightingPolicy, decay_factor, sigma_to_weight
from .cycle import (
    EntityFusion,
    FusedPose,
    FusionCycle,
    FusionState,
    Observation,
    SensorStats,
    StaticTransform,
)

__all__ = [
    "FilterOutput",
    "FusionFilter",
    "PassThroughFilter",
    "WeightedMean",
    "create_filter",
    "WeightingPolicy",
    "decay_factor",
    "sigma_to_weight",
    "EntityFusion",
    "FusedPose",
    "FusionCycle",
    "FusionState",
    "Observation",
    "SensorStats",
    "StaticTransform",
]
