"""
Observation weighting: sensor trust and observation age.

Each observation contributes to its entity's accumulator with a scalar
weight built from two factors:

    w = w_sigma(σ) · d(age)

Sensor trust (inverse variance):
    w_sigma(σ) = 1 / σ²

    σ is the per-sensor uncertainty from the configuration. A sensor with
    half the σ counts four times as much.

Age decay (τ = decay duration):
    LINEAR:       d(age) = max(0, 1 - age/τ)
    EXPONENTIAL:  d(age) = exp(-k·age/τ)  for age < τ, else 0

    Both are 1 at age <= 0, monotonically non-increasing, and exactly zero
    for age >= τ, so observations older than the decay duration never
    contribute.
"""

import numpy as np
from dataclasses import dataclass

from ..config.model import DecayModel

# Rate of the exponential model: d(τ⁻) = exp(-4) ≈ 0.018
EXP_DECAY_RATE = 4.0


def sigma_to_weight(sigma: float) -> float:
    """
    Convert a sensor uncertainty into its base weight 1/σ².

    Raises:
        ValueError: If sigma is not a positive finite number
    """
    if not np.isfinite(sigma) or sigma <= 0:
        raise ValueError(f"Sensor sigma must be positive and finite, got {sigma}")
    return 1.0 / (sigma * sigma)


def decay_factor(age: float, decay_duration: float,
                 model: DecayModel = DecayModel.LINEAR) -> float:
    """
    Age decay factor in [0, 1].

    Args:
        age: Observation age in seconds (negative ages are clamped to 0)
        decay_duration: Age at which the factor reaches zero
        model: Decay curve

    Raises:
        ValueError: If decay_duration is not positive
    """
    if not np.isfinite(decay_duration) or decay_duration <= 0:
        raise ValueError(f"Decay duration must be positive, got {decay_duration}")
    if not np.isfinite(age):
        return 0.0

    age = max(0.0, age)
    if age >= decay_duration:
        return 0.0

    if model is DecayModel.EXPONENTIAL:
        return float(np.exp(-EXP_DECAY_RATE * age / decay_duration))
    return 1.0 - age / decay_duration


@dataclass(frozen=True)
class WeightingPolicy:
    """
    Combined sensor-trust and age-decay weighting.

    Attributes:
        decay_duration: Age in seconds at which observations stop counting
        model: Decay curve
    """
    decay_duration: float = 0.25
    model: DecayModel = DecayModel.LINEAR

    def __post_init__(self):
        if not np.isfinite(self.decay_duration) or self.decay_duration <= 0:
            raise ValueError(f"Decay duration must be positive, got {self.decay_duration}")

    def weight(self, sigma: float, age: float) -> float:
        """Weight of an observation from a sensor with uncertainty sigma."""
        return sigma_to_weight(sigma) * decay_factor(age, self.decay_duration, self.model)
