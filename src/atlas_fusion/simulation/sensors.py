"""
Simulated pose sensors producing observations for a FusionCycle.

Measurement model:
    T_obs = T_true ⊕ (n_p, n_θ)

    where:
    - T_true: true pose of the observed frame in the sensor's reporting frame
    - n_p ~ N(0, σ_p²I): position noise (meters)
    - n_θ ~ N(0, σ_θ²I): rotation-vector noise (radians)

Failure Modes:
    - Dropout: no observation for a step with probability dropout_prob
    - Latency: observations are stamped `latency` seconds in the past
    - Sign flips: the reported quaternion is negated with probability
      sign_flip_prob (same rotation, opposite sign, as real trackers do)

Frames:
    - MarkerBased sensors report sensor_T_marker for a randomly visible
      marker (or sensor_T_entity if the entity has no markers)
    - NonMarkerBased sensors report their own world_T_sensor
"""

import numpy as np
from scipy.spatial.transform import Rotation
from typing import Dict, List, Optional

from ..config import Config, Entity, Sensor, SensorType
from ..fusion.cycle import Observation
from ..geometry import Transform


class SimulatedSensor:
    """
    Noisy, dropping, delayed pose source bound to one configured sensor.

    Attributes:
        sensor: Configured sensor this simulation stands in for
        entity: Entity the sensor observes
        noise_std: Position noise standard deviation (meters)
        angle_noise_std: Rotation noise standard deviation (radians)
        dropout_prob: Probability of missing a step [0.0, 1.0]
        latency: Observation age at delivery (seconds)
        sign_flip_prob: Probability of negating the reported quaternion
    """

    def __init__(self, sensor: Sensor, entity: Entity,
                 noise_std: Optional[float] = None,
                 angle_noise_deg: float = 1.0,
                 dropout_prob: float = 0.05,
                 latency: float = 0.0,
                 sign_flip_prob: float = 0.5,
                 rng: Optional[np.random.Generator] = None):
        """
        Args:
            sensor: Configured sensor
            entity: Entity owning the sensor
            noise_std: Position noise; defaults to a fraction of the sensor's sigma
            angle_noise_deg: Rotation noise standard deviation in degrees
            dropout_prob: Probability of measurement dropout per step
            latency: Delivery delay in seconds
            sign_flip_prob: Probability of reporting -q instead of q
            rng: Random generator (seeded for reproducible runs)
        """
        if not 0 <= dropout_prob <= 1:
            raise ValueError("Dropout probability must be between 0 and 1")
        if not 0 <= sign_flip_prob <= 1:
            raise ValueError("Sign flip probability must be between 0 and 1")
        if latency < 0:
            raise ValueError("Latency must be non-negative")

        self.sensor = sensor
        self.entity = entity
        self.noise_std = noise_std if noise_std is not None else 0.01 * sensor.sigma
        if self.noise_std < 0:
            raise ValueError("Noise standard deviation must be non-negative")
        self.angle_noise_std = np.radians(angle_noise_deg)
        self.dropout_prob = dropout_prob
        self.latency = latency
        self.sign_flip_prob = sign_flip_prob
        self.rng = rng if rng is not None else np.random.default_rng()

        self.measurement_count = 0
        self.dropout_count = 0

    def _true_observation(self, world_T_entity: Transform):
        """Noise-free reported pose and the marker id it refers to."""
        if self.sensor.type is SensorType.NON_MARKER_BASED:
            return world_T_entity * self.sensor.transform, None

        sensor_T_entity = self.sensor.transform.inverse() * world_T_entity
        if not self.entity.markers:
            return sensor_T_entity, None

        marker = self.entity.markers[self.rng.integers(len(self.entity.markers))]
        return sensor_T_entity * marker.transform, marker.id

    def get_observation(self, world_T_entity: Transform, t: float) -> Optional[Observation]:
        """
        Observe the entity's true pose at time t.

        Returns:
            Observation, or None if a dropout occurs
        """
        if self.rng.random() < self.dropout_prob:
            self.dropout_count += 1
            return None

        truth, marker_id = self._true_observation(world_T_entity)

        position = truth.origin + self.rng.normal(0.0, self.noise_std, 3)
        rotation_noise = Rotation.from_rotvec(self.rng.normal(0.0, self.angle_noise_std, 3))
        orientation = (Rotation.from_quat(truth.rotation) * rotation_noise).as_quat()
        if self.rng.random() < self.sign_flip_prob:
            orientation = -orientation

        self.measurement_count += 1
        return Observation(
            sensor=self.sensor.name,
            stamp=t - self.latency,
            position=position,
            orientation=orientation,
            target=marker_id,
        )


def build_simulated_sensors(config: Config, rng: Optional[np.random.Generator] = None,
                            **kwargs) -> Dict[str, List[SimulatedSensor]]:
    """
    One SimulatedSensor per configured sensor, grouped by entity name.

    Extra keyword arguments are passed to every SimulatedSensor.
    """
    rng = rng if rng is not None else np.random.default_rng()
    sensors = {}
    for entity in config.entities:
        sensors[entity.name] = [SimulatedSensor(s, entity, rng=rng, **kwargs) for s in entity.sensors]
    return sensors
