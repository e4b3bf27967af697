"""
Configuration loading for atlas fusion.

Parses the YAML description of entities, sensors, markers and global
options into immutable dataclasses.
"""

from .model import Entity, FilterConfig, Marker, Options, Sensor, SensorType
from .loader import Config, ConfigWarning, parse_transform

__all__ = [
    "Config",
    "ConfigWarning",
    "Entity",
    "FilterConfig",
    "Marker",
    "Options",
    "Sensor",
    "SensorType",
    "parse_transform",
]
