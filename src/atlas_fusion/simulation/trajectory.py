"""
Ground-truth pose trajectories for simulated fusion runs.

The position follows the figure-8 with elevation changes:

    x(t) = R sin(ωt)
    y(t) = (R/2) sin(2ωt)
    z(t) = (H/2)(1 + cos(2ωt))

with ω = 2π/T. The orientation is a pure yaw following the horizontal
direction of travel:

    ψ(t) = atan2(ẏ, ẋ),  ẋ = Rω cos(ωt),  ẏ = Rω cos(2ωt)
"""

import numpy as np
from scipy.spatial.transform import Rotation
from dataclasses import dataclass

from ..geometry import Transform


@dataclass
class TrajectoryParameters:
    """Shape of the simulated figure-8."""

    radius: float = 2.0           # Half-width of the figure-8 [m]
    height: float = 0.5           # Peak-to-peak elevation [m]
    period: float = 20.0          # Time for one full loop [s]

    def __post_init__(self):
        for name in ("radius", "period"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Trajectory {name} must be positive, got {getattr(self, name)}")
        if self.height < 0:
            raise ValueError(f"Trajectory height must be non-negative, got {self.height}")


class PoseTrajectory:
    """
    Smooth, periodic ground-truth pose of a simulated entity.

    Attributes:
        params (TrajectoryParameters): Trajectory shape
    """

    def __init__(self, params: TrajectoryParameters = None):
        self.params = params or TrajectoryParameters()
        self.omega = 2.0 * np.pi / self.params.period

    def _phase(self, t: float):
        phase = self.omega * t
        return phase, 2.0 * phase

    def get_position(self, t: float) -> np.ndarray:
        """3D position [x, y, z] in meters at time t."""
        radius, height = self.params.radius, self.params.height
        phase, double_phase = self._phase(t)
        return np.array([
            radius * np.sin(phase),
            0.5 * radius * np.sin(double_phase),
            0.5 * height * (1.0 + np.cos(double_phase)),
        ])

    def get_yaw(self, t: float) -> float:
        """Heading along the horizontal direction of travel [rad]."""
        phase, double_phase = self._phase(t)
        speed = self.params.radius * self.omega
        return float(np.arctan2(speed * np.cos(double_phase), speed * np.cos(phase)))

    def get_orientation(self, t: float) -> np.ndarray:
        """Unit quaternion [x, y, z, w] at time t."""
        return Rotation.from_euler("z", self.get_yaw(t)).as_quat()

    def get_pose(self, t: float) -> Transform:
        """world_T_entity at time t."""
        return Transform(self.get_orientation(t), self.get_position(t))
