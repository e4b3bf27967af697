"""
Atlas Fusion: Multi-Sensor Pose Fusion for Cooperative Sensing

A scientific Python package that fuses redundant, noisy pose observations
from multiple sensors into a single best-estimate pose per tracked entity
per update cycle.

This package implements:
- Weighted position averaging and eigenvector quaternion averaging
  (correct under the q / -q sign ambiguity)
- Pass-through accumulation for single-sensor entities
- Observation weighting by sensor uncertainty (1/σ²) and age decay
- A per-entity fusion cycle with smoothing and sign continuity
- YAML configuration of entities, sensors, markers and options
- Simulation, debug graph dumps and plotting of the fused output
"""

from .config import Config, ConfigWarning
from .fusion import (
    FusedPose,
    FusionCycle,
    Observation,
    PassThroughFilter,
    WeightedMean,
    WeightingPolicy,
)
from .geometry import Transform
from .node import FusionNode

__version__ = "1.0.0"
__author__ = "Atlas Fusion Team"

__all__ = [
    "Config",
    "ConfigWarning",
    "FusedPose",
    "FusionCycle",
    "FusionNode",
    "Observation",
    "PassThroughFilter",
    "Transform",
    "WeightedMean",
    "WeightingPolicy",
]
