"""
YAML configuration loader.

Document layout:

    entities:
      - entity: robot
        filterAlpha: 0.1
        filter: WeightedMean          # or PassThrough
        sensors:
          - sensor: cam0
            topic: /cam0/markers
            type: MarkerBased         # or NonMarkerBased
            sigma: 1.0
            target: robot
            transform: {rot: [roll, pitch, yaw], origin: [x, y, z]}
        markers:
          - marker: 3
            transform: {rot: [x, y, z, w], origin: [x, y, z]}
    options:
      loopRate: 60
      decayDuration: 0.25
      ...

Malformed input never aborts loading. Every problem is reported through a
ConfigWarning (and the log) and the documented default is used instead:
identity rotation, zero origin, MarkerBased sensors, sigma 1.0, alpha 0.1.
"""

import numpy as np
import yaml
from typing import Any, Dict, List, Optional
import warnings
import logging

from ..geometry import Transform
from .model import (
    DECAY_MODELS,
    EMPTY_CYCLE_POLICIES,
    FILTER_KINDS,
    SENSOR_TYPES,
    EmptyCyclePolicy,
    Entity,
    FilterConfig,
    FilterKind,
    Marker,
    Options,
    Sensor,
    SensorType,
)

logger = logging.getLogger(__name__)

# Short spellings accepted for the empty cycle policy
_POLICY_ALIASES = {"hold": EmptyCyclePolicy.HOLD_LAST, "reset": EmptyCyclePolicy.RESET_DEFAULT}


class ConfigWarning(UserWarning):
    """Non-fatal configuration problem; a default value was substituted."""


def _warn(message: str) -> None:
    logger.warning(f"Config: {message}")
    warnings.warn(f"Config: {message}", ConfigWarning, stacklevel=3)


def _sequence(node: Any) -> List[Any]:
    """YAML value as a list; missing or scalar values become empty."""
    if node is None:
        return []
    if isinstance(node, (list, tuple)):
        return list(node)
    return [node]


def _value(node: Dict[str, Any], key: str, default: Any, cast=None) -> Any:
    """
    Read node[key] converted with cast, falling back to default.

    Missing keys silently use the default; unconvertible values warn.
    """
    if not isinstance(node, dict) or node.get(key) is None:
        return default
    raw = node[key]
    cast = cast or type(default)
    try:
        if cast is bool and not isinstance(raw, bool):
            raise ValueError(raw)
        return cast(raw)
    except (TypeError, ValueError):
        _warn(f"'{key}' has invalid value {raw!r}. Default is {default!r}")
        return default


def parse_transform(node: Optional[Dict[str, Any]]) -> Transform:
    """
    Parse a {rot, origin} mapping into a Transform.

    'rot' accepts 4 elements (quaternion x, y, z, w) or 3 elements
    (roll, pitch, yaw in degrees). 'origin' accepts 3 elements.
    """
    if not node:
        return Transform.identity()
    if not isinstance(node, dict):
        _warn(f"'transform' must be a mapping, got {node!r}. Default is identity")
        return Transform.identity()

    rot = _sequence(node.get("rot"))
    origin = _sequence(node.get("origin"))

    try:
        rot_values = [float(v) for v in rot]
        origin_values = [float(v) for v in origin]
    except (TypeError, ValueError):
        _warn(f"'transform' has non-numeric entries: {node!r}. Default is identity")
        return Transform.identity()

    if len(origin_values) != 3:
        if origin_values:
            _warn(f"'origin' is expected to have 3 elements, got {len(origin_values)}. Default is {{0,0,0}}")
        origin_values = [0.0, 0.0, 0.0]
    elif not np.all(np.isfinite(origin_values)):
        _warn(f"'origin' contains non-finite values: {origin_values}. Default is {{0,0,0}}")
        origin_values = [0.0, 0.0, 0.0]

    if rot_values and not np.all(np.isfinite(rot_values)):
        _warn(f"'rot' contains non-finite values: {rot_values}. Default is {{0,0,0,1}}")
        return Transform(origin=origin_values)
    if len(rot_values) == 4:
        quat = np.array(rot_values)
        if not np.all(np.isfinite(quat)) or np.linalg.norm(quat) < 1e-12:
            _warn(f"'rot' is not a valid quaternion: {rot_values}. Default is {{0,0,0,1}}")
            return Transform(origin=origin_values)
        return Transform(quat, origin_values)
    if len(rot_values) == 3:
        return Transform.from_rpy_degrees(*rot_values, origin=origin_values)
    if rot_values:
        _warn(f"'rot' is expected to have either 3 elements (RPY) or 4 elements "
              f"(quaternion), got {len(rot_values)}. Default is {{0,0,0,1}}")
    return Transform(origin=origin_values)


def _parse_sensor(node: Dict[str, Any]) -> Sensor:
    type_name = _value(node, "type", SensorType.MARKER_BASED.value, str)
    sensor_type = SENSOR_TYPES.get(type_name)
    if sensor_type is None:
        _warn(f"Unknown sensor type '{type_name}'. Default is MarkerBased")
        sensor_type = SensorType.MARKER_BASED

    sigma = _value(node, "sigma", 1.0, float)
    if not np.isfinite(sigma) or sigma <= 0:
        _warn(f"'sigma' must be positive, got {sigma}. Default is 1.0")
        sigma = 1.0

    return Sensor(
        name=_value(node, "sensor", "undefined", str),
        topic=_value(node, "topic", "undefined", str),
        type=sensor_type,
        sigma=sigma,
        target=_value(node, "target", "undefined", str),
        transform=parse_transform(node.get("transform")),
    )


def _marker_id(raw: Any) -> int:
    """Integral marker id; 3.7 or True are rejected rather than truncated."""
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        raise ValueError(raw)
    return int(raw)


def _parse_marker(node: Dict[str, Any]) -> Marker:
    return Marker(
        id=_value(node, "marker", -1, _marker_id),
        transform=parse_transform(node.get("transform")),
    )


def _parse_entity(node: Dict[str, Any]) -> Entity:
    alpha = _value(node, "filterAlpha", 0.1, float)
    if not (0.0 < alpha <= 1.0):
        _warn(f"'filterAlpha' must be in (0, 1], got {alpha}. Default is 0.1")
        alpha = 0.1

    kind_name = _value(node, "filter", FilterKind.WEIGHTED_MEAN.value, str)
    kind = FILTER_KINDS.get(kind_name)
    if kind is None:
        _warn(f"Unknown filter '{kind_name}'. Default is WeightedMean")
        kind = FilterKind.WEIGHTED_MEAN

    sensors = tuple(_parse_sensor(s) for s in _sequence(node.get("sensors")) if isinstance(s, dict))
    markers = tuple(_parse_marker(m) for m in _sequence(node.get("markers")) if isinstance(m, dict))

    return Entity(
        name=_value(node, "entity", "undefined", str),
        filter_config=FilterConfig(alpha=alpha, kind=kind),
        sensors=sensors,
        markers=markers,
    )


def _parse_options(node: Optional[Dict[str, Any]]) -> Options:
    defaults = Options()
    if not isinstance(node, dict):
        return defaults

    loop_rate = _value(node, "loopRate", defaults.loop_rate, float)
    if not np.isfinite(loop_rate) or loop_rate <= 0:
        _warn(f"'loopRate' must be positive, got {loop_rate}. Default is {defaults.loop_rate}")
        loop_rate = defaults.loop_rate

    decay_duration = _value(node, "decayDuration", defaults.decay_duration, float)
    if not np.isfinite(decay_duration) or decay_duration <= 0:
        _warn(f"'decayDuration' must be positive, got {decay_duration}. "
              f"Default is {defaults.decay_duration}")
        decay_duration = defaults.decay_duration

    model_name = _value(node, "decayModel", defaults.decay_model.value, str)
    decay_model = DECAY_MODELS.get(model_name.lower())
    if decay_model is None:
        _warn(f"Unknown decay model '{model_name}'. Default is {defaults.decay_model.value}")
        decay_model = defaults.decay_model

    policy_name = _value(node, "emptyCyclePolicy", "hold", str)
    policy = _POLICY_ALIASES.get(policy_name.lower()) or EMPTY_CYCLE_POLICIES.get(policy_name)
    if policy is None:
        _warn(f"Unknown empty cycle policy '{policy_name}'. Default is hold")
        policy = defaults.empty_cycle_policy

    return Options(
        loop_rate=loop_rate,
        decay_duration=decay_duration,
        decay_model=decay_model,
        empty_cycle_policy=policy,
        dbg_graph_filename=_value(node, "dbgDumpGraphFilename", "", str),
        dbg_graph_interval=_value(node, "dbgDumpGraphInterval", 0.0, float),
        publish_markers=_value(node, "publishMarkers", True, bool),
        publish_world_sensors=_value(node, "publishWorldSensors", True, bool),
        publish_entity_sensors=_value(node, "publishEntitySensors", True, bool),
        publish_pose_topics=_value(node, "publishPoseTopics", True, bool),
    )


class Config:
    """
    Parsed fusion configuration.

    Usage:
        config = Config.from_file("atlas.yaml")
        for entity in config.entities:
            ...
        cycle = FusionCycle(config)
    """

    def __init__(self, entities: Optional[List[Entity]] = None,
                 options: Optional[Options] = None):
        self._entities = tuple(entities or ())
        self._options = options or Options()

    @classmethod
    def from_file(cls, filename: str) -> 'Config':
        with open(filename, encoding='utf-8') as f:
            return cls.from_string(f.read())

    @classmethod
    def from_string(cls, text: str) -> 'Config':
        try:
            root = yaml.safe_load(text)
        except yaml.YAMLError as e:
            _warn(f"Document is not valid YAML ({e})")
            root = None
        return cls.from_dict(root)

    @classmethod
    def from_dict(cls, root: Optional[Dict[str, Any]]) -> 'Config':
        if not root:
            _warn("Document is empty")
            return cls()
        if not isinstance(root, dict):
            _warn(f"Document root must be a mapping, got {type(root).__name__}")
            return cls()

        # quick sanity checks
        if "entities" not in root:
            _warn("Cannot find 'entities'")
        if "options" not in root:
            _warn("Cannot find 'options'")

        entities = [_parse_entity(e) for e in _sequence(root.get("entities")) if isinstance(e, dict)]

        names = [e.name for e in entities]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            _warn(f"Duplicate entity names {duplicates}; later entries shadow earlier ones")

        sensor_names = [s.name for e in entities for s in e.sensors]
        duplicates = sorted({n for n in sensor_names if sensor_names.count(n) > 1})
        if duplicates:
            _warn(f"Duplicate sensor names {duplicates}; later entries shadow earlier ones")

        return cls(entities, _parse_options(root.get("options")))

    @property
    def options(self) -> Options:
        return self._options

    @property
    def entities(self) -> tuple:
        return self._entities

    def entity(self, name: str) -> Optional[Entity]:
        for entity in self._entities:
            if entity.name == name:
                return entity
        return None

    def dump(self) -> str:
        """Human readable summary of the configuration."""
        opts = self._options
        lines = [
            "=== CONFIG ===",
            "Options:",
            f"  loopRate: {opts.loop_rate}",
            f"  decayDuration: {opts.decay_duration}",
            f"  decayModel: {opts.decay_model.value}",
            f"  emptyCyclePolicy: {opts.empty_cycle_policy.value}",
            f"  dbgGraphFilename: {opts.dbg_graph_filename}",
            f"  dbgGraphInterval: {opts.dbg_graph_interval}",
            f"  publishMarkers: {opts.publish_markers}",
            f"  publishWorldSensors: {opts.publish_world_sensors}",
            f"  publishEntitySensors: {opts.publish_entity_sensors}",
            f"  publishPoseTopics: {opts.publish_pose_topics}",
            "Entities:",
        ]
        for entity in self._entities:
            lines.append(f"  -{entity.name} ({entity.filter_config.kind.value}, "
                         f"alpha={entity.filter_config.alpha})")
            lines.append("    Sensors:")
            for sensor in entity.sensors:
                lines.append(f"      -{sensor.name} [{sensor.type.value}, sigma={sensor.sigma}]")
            lines.append("    Markers:")
            for marker in entity.markers:
                lines.append(f"      -ID:{marker.id}")
        lines.append("=== CONFIG END ===")

        text = "\n".join(lines)
        logger.debug(text)
        return text
