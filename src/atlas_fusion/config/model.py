"""
Static fusion topology: entities, their sensors and markers, global options.

Instances are created once by the configuration loader and never mutated
afterwards; only the per-entity accumulators change at runtime.
"""

from types import MappingProxyType
from typing import Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum

from ..geometry import Transform


class FilterKind(Enum):
    """Accumulator variants selectable per entity."""
    WEIGHTED_MEAN = "WeightedMean"
    PASS_THROUGH = "PassThrough"


class DecayModel(Enum):
    """Shape of the observation age decay curve."""
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class EmptyCyclePolicy(Enum):
    """
    What an entity publishes for a channel that received no observation.

    HOLD_LAST: repeat the previously published value (zero/identity if
        nothing was published yet).
    RESET_DEFAULT: publish the zero vector / identity rotation and restart
        smoothing from scratch on the next observation.

    In both cases the published weights are zero, so consumers can tell a
    held or reset pose from a measured one.
    """
    HOLD_LAST = "hold_last"
    RESET_DEFAULT = "reset_default"


class SensorType(Enum):
    """
    How a sensor relates to the entity it observes.

    MARKER_BASED: mounted in the world, observes markers attached to the
        entity; the mounting transform is world_T_sensor.
    NON_MARKER_BASED: mounted on the entity and reports its own pose in the
        world; the mounting transform is entity_T_sensor.
    """
    MARKER_BASED = "MarkerBased"
    NON_MARKER_BASED = "NonMarkerBased"


# Name lookups built once from the enums
SENSOR_TYPES = MappingProxyType({t.value: t for t in SensorType})
FILTER_KINDS = MappingProxyType({k.value: k for k in FilterKind})
DECAY_MODELS = MappingProxyType({m.value: m for m in DecayModel})
EMPTY_CYCLE_POLICIES = MappingProxyType({p.value: p for p in EmptyCyclePolicy})


@dataclass(frozen=True)
class Sensor:
    """
    A pose source feeding one entity.

    Attributes:
        name: Unique sensor name
        topic: Source topic the transport delivers observations on
        type: Mounting/observation model
        sigma: Uncertainty; weight is 1/sigma²
        target: Frame the sensor reports on
        transform: Static mounting transform
    """
    name: str = "undefined"
    topic: str = "undefined"
    type: SensorType = SensorType.MARKER_BASED
    sigma: float = 1.0
    target: str = "undefined"
    transform: Transform = field(default_factory=Transform.identity)


@dataclass(frozen=True)
class Marker:
    """Fiducial marker with its pose in the owning entity's frame."""
    id: int = -1
    transform: Transform = field(default_factory=Transform.identity)


@dataclass(frozen=True)
class FilterConfig:
    """
    Per-entity filter selection and smoothing.

    Attributes:
        alpha: Exponential smoothing coefficient in (0, 1]; 1 disables
            smoothing, small values smooth slowly
        kind: Accumulator variant
    """
    alpha: float = 0.1
    kind: FilterKind = FilterKind.WEIGHTED_MEAN


@dataclass(frozen=True)
class Entity:
    """Tracked body with its sensors and markers."""
    name: str = "undefined"
    filter_config: FilterConfig = field(default_factory=FilterConfig)
    sensors: Tuple[Sensor, ...] = ()
    markers: Tuple[Marker, ...] = ()

    def marker(self, marker_id: int) -> Optional[Marker]:
        for marker in self.markers:
            if marker.id == marker_id:
                return marker
        return None


@dataclass(frozen=True)
class Options:
    """
    Global run parameters.

    Attributes:
        loop_rate: Fusion cycles per second
        decay_duration: Observation age (s) at which its weight reaches zero
        decay_model: Shape of the age decay
        empty_cycle_policy: What to publish when a cycle saw no observations
        dbg_graph_filename: Debug graph dump target ("" disables)
        dbg_graph_interval: Seconds between debug graph dumps (<= 0 disables)
        publish_markers: Publish marker poses derived from fused entity poses
        publish_world_sensors: Publish world-mounted sensor transforms
        publish_entity_sensors: Publish entity-mounted sensor transforms
        publish_pose_topics: Publish fused entity poses
    """
    loop_rate: float = 60.0
    decay_duration: float = 0.25
    decay_model: DecayModel = DecayModel.LINEAR
    empty_cycle_policy: EmptyCyclePolicy = EmptyCyclePolicy.HOLD_LAST
    dbg_graph_filename: str = ""
    dbg_graph_interval: float = 0.0
    publish_markers: bool = True
    publish_world_sensors: bool = True
    publish_entity_sensors: bool = True
    publish_pose_topics: bool = True
