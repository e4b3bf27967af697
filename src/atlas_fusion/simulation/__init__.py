"""
Simulation components for atlas fusion.

Synthetic ground-truth trajectories and noisy pose sensors used by the demo
and the integration tests in place of a real transport layer.
"""

from .trajectory import PoseTrajectory, TrajectoryParameters
from .sensors import SimulatedSensor, build_simulated_sensors

__all__ = [
    "PoseTrajectory",
    "TrajectoryParameters",
    "SimulatedSensor",
    "build_simulated_sensors",
]
