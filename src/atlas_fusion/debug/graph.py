"""
Periodic Graphviz dump of the fusion topology.

The dump shows which sensors feed which entities, each sensor's base weight
(1/σ²), its accepted/stale/rejected counters, and the confidence of the last
published pose. It is purely observational: nothing read here feeds back
into fusion.

Render with e.g. `dot -Tpng atlas.dot -o atlas.png`.
"""

import os
from typing import Optional
import logging

from ..config.model import SensorType

logger = logging.getLogger(__name__)


def _quote(name) -> str:
    return '"' + str(name).replace('"', '\\"') + '"'


class GraphDumper:
    """
    Writes the topology of a FusionCycle to a DOT file at a fixed interval.

    Disabled when filename is empty or interval <= 0.

    Attributes:
        filename: Output path
        interval: Minimum seconds between two dumps
        dump_count: Number of files written so far
    """

    def __init__(self, filename: str = "", interval: float = 0.0):
        self.filename = filename or ""
        self.interval = float(interval or 0.0)
        self.dump_count = 0
        self._last_dump: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return bool(self.filename) and self.interval > 0

    def maybe_dump(self, now: float, cycle) -> bool:
        """
        Dump if enabled and at least `interval` seconds passed since the last dump.

        Returns:
            True if a file was written
        """
        if not self.enabled:
            return False
        if self._last_dump is not None and now - self._last_dump < self.interval:
            return False

        self._last_dump = now
        try:
            self.write(self.filename, cycle)
        except OSError as e:
            logger.warning(f"Failed to write debug graph to {self.filename}: {e}")
            return False
        return True

    def write(self, filename: str, cycle) -> None:
        directory = os.path.dirname(filename)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(filename, 'w', encoding='utf-8') as f:
            f.write(self.render(cycle))
        self.dump_count += 1
        logger.debug(f"Debug graph written to {filename}")

    @staticmethod
    def render(cycle) -> str:
        """DOT document for the current state of a FusionCycle."""
        stats = cycle.stats()
        lines = [
            "digraph atlas {",
            "  rankdir=LR;",
            '  world [shape=doublecircle];',
        ]

        for fusion in cycle.entities:
            entity = fusion.entity
            previous = fusion.previous
            if previous is None:
                status = "no output"
            elif previous.held:
                status = "held"
            else:
                status = f"w={previous.confidence:.3f} n={previous.sample_count}"
            label = f"{entity.name}\\n{fusion.kind.value} a={fusion.alpha:g}\\n{status}"
            lines.append(f"  {_quote(entity.name)} [shape=box, label={_quote(label)}];")

            for marker in entity.markers:
                node = f"{entity.name}/marker{marker.id}"
                lines.append(f"  {_quote(node)} [shape=ellipse, label={_quote('marker ' + str(marker.id))}];")
                lines.append(f"  {_quote(entity.name)} -> {_quote(node)} [style=dotted];")

            for sensor in entity.sensors:
                s = stats.get(sensor.name)
                weight = cycle.base_weight(sensor.name)
                label = (f"{sensor.name}\\n{sensor.type.value} sigma={sensor.sigma:g}\\n"
                         f"ok={s.accepted} stale={s.stale} rej={s.rejected}")
                lines.append(f"  {_quote(sensor.name)} [shape=oval, label={_quote(label)}];")
                mount = entity.name if sensor.type is SensorType.NON_MARKER_BASED else "world"
                lines.append(f"  {_quote(mount)} -> {_quote(sensor.name)} [style=dashed];")
                lines.append(f"  {_quote(sensor.name)} -> {_quote(entity.name)} "
                             f"[label={_quote(f'w={weight:.3g} last={s.last_weight:.3g}')}];")

        lines.append("}")
        return "\n".join(lines) + "\n"
