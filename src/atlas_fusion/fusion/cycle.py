"""
Fusion cycle: routes observations into per-entity accumulators and turns
them into one published pose per entity per loop tick.

Per-entity state machine:

    IDLE ──first observation──▶ ACCUMULATING ──tick──▶ EXTRACTING
      ▲                                                    │
      └──────────────── clear() ◀──────────────────────────┘

Observation path (any thread):
    1. Route by sensor name to its entity.
    2. Weight = 1/σ² · decay(now - stamp); stale observations (weight 0)
       are not forwarded.
    3. Map the observed pose into the entity pose through the static
       mounting transforms:
         MarkerBased:     world_T_entity = world_T_sensor · sensor_T_marker · (entity_T_marker)⁻¹
         NonMarkerBased:  world_T_entity = world_T_sensor · (entity_T_sensor)⁻¹
    4. Feed position and orientation into the entity's accumulator.

Extraction path (loop thread, once per tick):
    1. Read the accumulator.
    2. WeightedMean entities are smoothed against the previously published
       pose: p = α·p_raw + (1-α)·p_prev, q = nlerp(q_prev, q_raw, α).
       PassThrough entities publish the raw last sample.
    3. Align the quaternion sign with the previously published orientation.
    4. Apply the empty cycle policy to channels that received nothing.
    5. Clear the accumulator.

Extraction and clearing happen atomically under the entity's lock. An
observation delivered while an extraction is running waits for the lock and
is accumulated into the next cycle; it is never dropped or half-read.
"""

import numpy as np
import threading
import time
from types import MappingProxyType
from typing import Callable, Dict, List, NamedTuple, Optional, Union
from dataclasses import dataclass, field
from enum import Enum
import logging

from ..geometry import (
    Transform,
    align_sign,
    identity_quaternion,
    nlerp,
    zero_vector,
)
from ..config.loader import Config
from ..config.model import EmptyCyclePolicy, Entity, FilterKind, Sensor, SensorType
from ..debug.graph import GraphDumper
from .filters import FusionFilter, create_filter
from .weighting import WeightingPolicy, sigma_to_weight

# Configure logging for cycle diagnostics
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class FusionState(Enum):
    """Per-entity cycle state."""
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    EXTRACTING = "extracting"


@dataclass(frozen=True)
class Observation:
    """
    Timestamped pose sample delivered by the transport layer.

    Attributes:
        sensor: Name of the reporting sensor
        stamp: Capture time in seconds (same clock as the fusion cycle)
        position: Observed position [x, y, z], or None
        orientation: Observed orientation [x, y, z, w], or None
        target: Marker id for marker-based sensors; None or the entity
            name if the sensor observed the entity directly
    """
    sensor: str
    stamp: float
    position: Optional[np.ndarray] = None
    orientation: Optional[np.ndarray] = None
    target: Optional[Union[int, str]] = None


@dataclass
class FusedPose:
    """
    Pose published for one entity at a cycle boundary.

    vec3_weight and quat_weight are the accumulated weights behind the
    published values; they are zero for held or reset channels and act as
    the confidence signal for consumers.
    """
    entity: str
    stamp: float
    position: np.ndarray
    orientation: np.ndarray
    vec3_weight: float = 0.0
    quat_weight: float = 0.0
    sample_count: int = 0
    held: bool = False
    markers: Dict[int, Transform] = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        return min(self.vec3_weight, self.quat_weight)

    @property
    def is_stale(self) -> bool:
        """True if no observation contributed to this pose."""
        return self.sample_count == 0

    def as_transform(self) -> Transform:
        return Transform(self.orientation, self.position)


@dataclass
class SensorStats:
    """Lifetime counters for one sensor."""
    accepted: int = 0
    rejected: int = 0
    stale: int = 0
    last_weight: float = 0.0


class StaticTransform(NamedTuple):
    """Static frame relation for publication (parent_T_child)."""
    parent: str
    child: str
    transform: Transform


class EntityFusion:
    """
    Accumulation and extraction for a single entity.

    Owns the entity's accumulator, its lock, and the state carried across
    cycles (previously published pose, smoothing bases).
    """

    def __init__(self, entity: Entity,
                 policy: EmptyCyclePolicy = EmptyCyclePolicy.HOLD_LAST):
        self.entity = entity
        self.name = entity.name
        self.alpha = entity.filter_config.alpha
        self.kind = entity.filter_config.kind
        self.policy = policy
        self.filter: FusionFilter = create_filter(self.kind)

        self._lock = threading.Lock()
        self._state = FusionState.IDLE
        self._previous: Optional[FusedPose] = None
        self._position_base: Optional[np.ndarray] = None
        self._orientation_base: Optional[np.ndarray] = None

        self.accepted_count = 0
        self.cycle_count = 0

    @property
    def state(self) -> FusionState:
        return self._state

    @property
    def previous(self) -> Optional[FusedPose]:
        """Most recently published pose."""
        with self._lock:
            return self._previous

    def add(self, position: Optional[np.ndarray], orientation: Optional[np.ndarray],
            weight: float) -> bool:
        """
        Feed one observation into the current cycle.

        Returns:
            True if the accumulator accepted every supplied part
        """
        with self._lock:
            if self._state is FusionState.IDLE:
                self._state = FusionState.ACCUMULATING
            accepted = self.filter.accumulate(position, orientation, weight)
            if accepted:
                self.accepted_count += 1
            return accepted

    def extract(self, stamp: float) -> FusedPose:
        """Close the current cycle and return the pose to publish."""
        with self._lock:
            self._state = FusionState.EXTRACTING
            try:
                pose = self._build_pose(stamp)
                self._previous = pose
                self.cycle_count += 1
                return pose
            finally:
                self.filter.clear()
                self._state = FusionState.IDLE

    def reset(self) -> None:
        """Forget all history and the current cycle's samples."""
        with self._lock:
            self.filter.clear()
            self._state = FusionState.IDLE
            self._previous = None
            self._position_base = None
            self._orientation_base = None

    def _build_pose(self, stamp: float) -> FusedPose:
        output = self.filter.extract()
        smooth = self.kind is FilterKind.WEIGHTED_MEAN
        hold = self.policy is EmptyCyclePolicy.HOLD_LAST
        held = False

        if output.vec3_weight > 0.0:
            position = output.position
            if smooth and self._position_base is not None:
                position = self.alpha * position + (1.0 - self.alpha) * self._position_base
            self._position_base = position.copy()
        elif hold and self._position_base is not None:
            position = self._position_base.copy()
            held = True
        else:
            position = zero_vector()
            if not hold:
                self._position_base = None

        if output.quat_weight > 0.0:
            orientation = output.orientation
            if smooth and self._orientation_base is not None:
                orientation = nlerp(self._orientation_base, orientation, self.alpha)
            self._orientation_base = orientation.copy()
        elif hold and self._orientation_base is not None:
            orientation = self._orientation_base.copy()
            held = True
        else:
            orientation = identity_quaternion()
            if not hold:
                self._orientation_base = None

        # Sign continuity with what consumers saw last cycle
        if self._previous is not None:
            orientation = align_sign(orientation, self._previous.orientation)
            if self._orientation_base is not None:
                self._orientation_base = align_sign(self._orientation_base, orientation)

        if output.is_empty:
            logger.debug(f"Entity '{self.name}': no observations this cycle "
                         f"({self.policy.value})")

        return FusedPose(
            entity=self.name,
            stamp=stamp,
            position=position,
            orientation=orientation,
            vec3_weight=output.vec3_weight,
            quat_weight=output.quat_weight,
            sample_count=output.sample_count,
            held=held,
        )


@dataclass(frozen=True)
class _Route:
    sensor: Sensor
    entity: Entity
    fusion: EntityFusion
    base_weight: float


Publisher = Callable[[List[FusedPose]], None]


class FusionCycle:
    """
    Fusion of all configured entities.

    Usage:
        cycle = FusionCycle(config)
        cycle.add_publisher(lambda poses: ...)

        # from transport callbacks (any thread)
        cycle.submit(Observation("cam0", stamp, position, orientation, target=3))

        # from the fixed-rate loop
        poses = cycle.tick()
    """

    def __init__(self, config: Config, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.options = config.options
        self.weighting = WeightingPolicy(self.options.decay_duration, self.options.decay_model)
        self._clock = clock

        fusions: Dict[str, EntityFusion] = {}
        routes: Dict[str, _Route] = {}
        topics: Dict[str, str] = {}
        for entity in config.entities:
            fusion = EntityFusion(entity, self.options.empty_cycle_policy)
            fusions[entity.name] = fusion
            for sensor in entity.sensors:
                routes[sensor.name] = _Route(sensor, entity, fusion, sigma_to_weight(sensor.sigma))
                topics[sensor.topic] = sensor.name

        self._fusions = MappingProxyType(fusions)
        self._routes = MappingProxyType(routes)
        self._topics = MappingProxyType(topics)

        self._stats_lock = threading.Lock()
        self._sensor_stats = {name: SensorStats() for name in routes}
        self.unrouted_count = 0
        self.cycle_count = 0

        self._publishers: List[Publisher] = []
        self.graph_dumper = GraphDumper(self.options.dbg_graph_filename,
                                        self.options.dbg_graph_interval)

        logger.info(f"Fusion cycle initialized with {len(fusions)} entities, "
                    f"{len(routes)} sensors")

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    @property
    def entities(self) -> List[EntityFusion]:
        return list(self._fusions.values())

    def entity(self, name: str) -> EntityFusion:
        try:
            return self._fusions[name]
        except KeyError:
            raise KeyError(f"Unknown entity '{name}'") from None

    def sensor_for_topic(self, topic: str) -> Optional[str]:
        return self._topics.get(topic)

    def base_weight(self, sensor_name: str) -> float:
        return self._routes[sensor_name].base_weight

    def stats(self) -> Dict[str, SensorStats]:
        """Copy of the per-sensor counters."""
        with self._stats_lock:
            return {name: SensorStats(**vars(s)) for name, s in self._sensor_stats.items()}

    def static_transforms(self) -> List[StaticTransform]:
        """
        Mounting transforms to publish, filtered by the publish options.

        World-mounted (marker-based) sensors are published as world_T_sensor,
        entity-mounted sensors as entity_T_sensor.
        """
        transforms = []
        for route in self._routes.values():
            sensor = route.sensor
            if sensor.type is SensorType.MARKER_BASED:
                if self.options.publish_world_sensors:
                    transforms.append(StaticTransform("world", sensor.name, sensor.transform))
            elif self.options.publish_entity_sensors:
                transforms.append(StaticTransform(route.entity.name, sensor.name, sensor.transform))
        return transforms

    # ------------------------------------------------------------------
    # Observation path
    # ------------------------------------------------------------------

    def submit(self, observation: Observation, now: Optional[float] = None) -> bool:
        """
        Weight an observation and add it to its entity's current cycle.

        Args:
            observation: Sample from the transport layer
            now: Current time (defaults to the cycle clock)

        Returns:
            True if the observation was accumulated; False if it was
            unrouted, stale, or rejected
        """
        route = self._routes.get(observation.sensor)
        if route is None:
            with self._stats_lock:
                self.unrouted_count += 1
            logger.warning(f"Observation from unknown sensor '{observation.sensor}' dropped")
            return False

        if observation.position is None and observation.orientation is None:
            self._count(observation.sensor, "rejected")
            logger.warning(f"Empty observation from sensor '{observation.sensor}' dropped")
            return False

        now = self._clock() if now is None else now
        weight = self.weighting.weight(route.sensor.sigma, now - observation.stamp)
        if weight <= 0.0:
            self._count(observation.sensor, "stale")
            logger.debug(f"Stale observation from '{observation.sensor}' "
                         f"(age {now - observation.stamp:.3f}s) dropped")
            return False

        try:
            pose = self._entity_pose(route, observation)
        except ValueError as e:
            self._count(observation.sensor, "rejected")
            logger.warning(f"Rejected observation from '{observation.sensor}': {e}")
            return False
        if pose is None:
            self._count(observation.sensor, "rejected")
            return False

        position = pose.origin if observation.position is not None else None
        orientation = pose.rotation if observation.orientation is not None else None
        accepted = route.fusion.add(position, orientation, weight)

        with self._stats_lock:
            stats = self._sensor_stats[observation.sensor]
            if accepted:
                stats.accepted += 1
                stats.last_weight = weight
            else:
                stats.rejected += 1
        return accepted

    def _count(self, sensor_name: str, counter: str) -> None:
        with self._stats_lock:
            stats = self._sensor_stats[sensor_name]
            setattr(stats, counter, getattr(stats, counter) + 1)

    def _entity_pose(self, route: _Route, observation: Observation) -> Optional[Transform]:
        """
        Map an observed pose into world_T_entity.

        Missing parts of a partial observation are taken as identity
        rotation / zero translation before mapping; only the parts that
        were observed are forwarded.

        Raises:
            ValueError: If the observation contains non-finite values
        """
        observed = Transform(
            observation.orientation if observation.orientation is not None else identity_quaternion(),
            observation.position if observation.position is not None else zero_vector(),
        )
        sensor = route.sensor

        if sensor.type is SensorType.NON_MARKER_BASED:
            return observed * sensor.transform.inverse()

        pose = sensor.transform * observed
        if observation.target is None or observation.target == route.entity.name:
            return pose

        try:
            marker_id = int(observation.target)
        except (TypeError, ValueError):
            logger.warning(f"Sensor '{sensor.name}' reported invalid marker id {observation.target!r}")
            return None

        marker = route.entity.marker(marker_id)
        if marker is None:
            logger.warning(f"Marker {marker_id} is not attached to entity '{route.entity.name}'")
            return None
        return pose * marker.transform.inverse()

    # ------------------------------------------------------------------
    # Extraction path
    # ------------------------------------------------------------------

    def add_publisher(self, publisher: Publisher) -> None:
        """Register a callable receiving the fused poses of every tick."""
        self._publishers.append(publisher)

    def tick(self, now: Optional[float] = None) -> List[FusedPose]:
        """
        Cycle boundary: extract, publish and clear every entity.

        Returns:
            Fused poses in configuration order
        """
        now = self._clock() if now is None else now

        poses = []
        for fusion in self._fusions.values():
            pose = fusion.extract(now)
            if self.options.publish_markers:
                entity_pose = pose.as_transform()
                pose.markers = {m.id: entity_pose * m.transform for m in fusion.entity.markers}
            poses.append(pose)

        self.cycle_count += 1
        logger.debug(f"Cycle {self.cycle_count}: "
                     + ", ".join(f"{p.entity}(n={p.sample_count}, w={p.confidence:.3f})" for p in poses))

        if self.options.publish_pose_topics:
            for publisher in self._publishers:
                publisher(poses)

        self.graph_dumper.maybe_dump(now, self)
        return poses
