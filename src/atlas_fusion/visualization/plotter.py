"""
Plotting of fused pose streams.

Keeps a bounded trail of published poses per entity and renders:
    - 3D trajectories of the fused positions (optionally with ground truth)
    - The per-cycle confidence (accumulated weight) of each entity
"""

import numpy as np
import matplotlib.pyplot as plt
from mpl_toolkits.mplot3d import Axes3D  # noqa: F401  (registers the 3d projection)
from typing import Dict, Iterable, Optional
from collections import deque
import logging

from ..fusion.cycle import FusedPose

logger = logging.getLogger(__name__)


class FusionPlotter:
    """
    Trajectory and confidence plots for fused entity poses.

    Parameters:
        trail_length (int): Maximum number of poses kept per entity. Default: 1000

    Attributes:
        position_history (Dict[str, deque]): Fused positions per entity
        ground_truth_history (Dict[str, deque]): True positions per entity
        confidence_history (Dict[str, deque]): Confidence per entity
        timestamp_history (Dict[str, deque]): Cycle stamps per entity
    """

    def __init__(self, trail_length: int = 1000):
        if trail_length <= 0:
            raise ValueError("Trail length must be positive")

        self.trail_length = trail_length
        self.position_history: Dict[str, deque] = {}
        self.ground_truth_history: Dict[str, deque] = {}
        self.confidence_history: Dict[str, deque] = {}
        self.timestamp_history: Dict[str, deque] = {}

    def _trail(self, history: Dict[str, deque], entity: str) -> deque:
        if entity not in history:
            history[entity] = deque(maxlen=self.trail_length)
        return history[entity]

    def update(self, pose: FusedPose, ground_truth: Optional[np.ndarray] = None) -> None:
        """Record one published pose (and optionally the true position)."""
        self._trail(self.position_history, pose.entity).append(pose.position.copy())
        self._trail(self.confidence_history, pose.entity).append(pose.confidence)
        self._trail(self.timestamp_history, pose.entity).append(pose.stamp)
        if ground_truth is not None:
            self._trail(self.ground_truth_history, pose.entity).append(np.asarray(ground_truth, dtype=float))

    def update_all(self, poses: Iterable[FusedPose]) -> None:
        """Publisher-compatible bulk update."""
        for pose in poses:
            self.update(pose)

    def rmse(self, entity: str) -> float:
        """Position RMSE against recorded ground truth (aligned from the end)."""
        estimates = np.array(self.position_history.get(entity, ()))
        truth = np.array(self.ground_truth_history.get(entity, ()))
        n = min(len(estimates), len(truth))
        if n == 0:
            return float('nan')
        errors = np.linalg.norm(estimates[-n:] - truth[-n:], axis=1)
        return float(np.sqrt(np.mean(errors ** 2)))

    def plot_trajectories(self, ax=None):
        """Plot fused (solid) and true (dashed) trajectories in 3D."""
        if ax is None:
            fig = plt.figure(figsize=(8, 6))
            ax = fig.add_subplot(111, projection='3d')

        for entity, trail in self.position_history.items():
            if not trail:
                continue
            positions = np.array(trail)
            line, = ax.plot(positions[:, 0], positions[:, 1], positions[:, 2],
                            linewidth=2, label=f'{entity} (fused)')
            truth = self.ground_truth_history.get(entity)
            if truth:
                truth = np.array(truth)
                ax.plot(truth[:, 0], truth[:, 1], truth[:, 2], '--',
                        color=line.get_color(), alpha=0.6, label=f'{entity} (truth)')

        ax.set_xlabel('X (m)')
        ax.set_ylabel('Y (m)')
        ax.set_zlabel('Z (m)')
        ax.set_title('Fused Entity Trajectories')
        if self.position_history:
            ax.legend()
        return ax

    def plot_confidence(self, ax=None):
        """Plot the accumulated weight behind each published pose."""
        if ax is None:
            fig = plt.figure(figsize=(8, 3))
            ax = fig.add_subplot(111)

        for entity, trail in self.confidence_history.items():
            ax.plot(list(self.timestamp_history[entity]), list(trail), linewidth=1.5, label=entity)

        ax.set_xlabel('Time (s)')
        ax.set_ylabel('Total weight')
        ax.set_title('Fusion Confidence')
        ax.grid(True)
        if self.confidence_history:
            ax.legend()
        return ax

    def save(self, filename: str) -> None:
        """Write both panels to an image file."""
        fig = plt.figure(figsize=(10, 10))
        self.plot_trajectories(fig.add_subplot(211, projection='3d'))
        self.plot_confidence(fig.add_subplot(212))
        fig.tight_layout()
        fig.savefig(filename)
        plt.close(fig)
        logger.info(f"Fusion plot saved to {filename}")
