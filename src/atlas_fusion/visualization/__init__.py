"""
Visualization components for atlas fusion.

This module provides trajectory and confidence plots of the fused poses.
"""

from .plotter import FusionPlotter

__all__ = [
    "FusionPlotter",
]
