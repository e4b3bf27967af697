#!/usr/bin/env python3
"""
Atlas pose fusion demo and runner.

Feeds simulated noisy, delayed, sign-flipping pose observations from
several sensors into the fusion cycle and reports the fused poses.

Run with:
    atlas-fusion --demo --duration 20 --no-real-time --plot fusion.png
    atlas-fusion --config atlas.yaml --duration 10
"""

import numpy as np
import argparse
import time
import logging

from .config import Config
from .fusion import FusionCycle
from .geometry import Transform
from .node import FusionNode
from .simulation import PoseTrajectory, TrajectoryParameters, build_simulated_sensors
from .visualization import FusionPlotter

logger = logging.getLogger(__name__)

DEMO_CONFIG = """
entities:
  - entity: robot
    filterAlpha: 0.3
    filter: WeightedMean
    sensors:
      - sensor: cam_left
        topic: /cam_left/markers
        type: MarkerBased
        sigma: 0.5
        target: robot
        transform: {rot: [0, 0, 45], origin: [-3.0, -3.0, 2.0]}
      - sensor: cam_right
        topic: /cam_right/markers
        type: MarkerBased
        sigma: 1.0
        target: robot
        transform: {rot: [0, 0, 135], origin: [3.0, -3.0, 2.0]}
      - sensor: tracker
        topic: /tracker/pose
        type: NonMarkerBased
        sigma: 2.0
        target: robot
        transform: {rot: [0, 0, 0, 1], origin: [0.0, 0.0, 0.3]}
    markers:
      - marker: 1
        transform: {rot: [0, 0, 0], origin: [0.2, 0.0, 0.1]}
      - marker: 2
        transform: {rot: [0, 0, 180], origin: [-0.2, 0.0, 0.1]}
  - entity: drone
    filter: PassThrough
    sensors:
      - sensor: drone_imu
        topic: /drone/pose
        type: NonMarkerBased
        sigma: 1.0
        target: drone
options:
  loopRate: 30
  decayDuration: 0.25
  decayModel: linear
  emptyCyclePolicy: hold
"""


class SimulationClock:
    """Wall clock, or a virtual clock advanced by sleep() for fast runs."""

    def __init__(self, real_time: bool = True):
        self.real_time = real_time
        self._start = time.monotonic()
        self._virtual = 0.0

    def now(self) -> float:
        if self.real_time:
            return time.monotonic() - self._start
        return self._virtual

    def sleep(self, seconds: float) -> None:
        if self.real_time:
            time.sleep(seconds)
        else:
            self._virtual += seconds


def run_simulation(config: Config, duration: float = 20.0, real_time: bool = True,
                   seed: int = None, plot_file: str = None, latency: float = 0.02) -> FusionPlotter:
    """Run the fusion loop against simulated sensors."""
    rng = np.random.default_rng(seed)
    clock = SimulationClock(real_time)

    cycle = FusionCycle(config, clock=clock.now)
    node = FusionNode(cycle, clock=clock.now, sleep=clock.sleep)
    sensors = build_simulated_sensors(config, rng=rng, latency=latency)

    # One trajectory per entity, phase shifted so entities don't overlap
    trajectories = {
        entity.name: (PoseTrajectory(TrajectoryParameters(radius=2.0 + i, period=20.0 + 5 * i)), i * 3.0)
        for i, entity in enumerate(config.entities)
    }

    def truth(entity_name: str, t: float) -> Transform:
        trajectory, offset = trajectories[entity_name]
        return trajectory.get_pose(t + offset)

    def inject(now: float) -> None:
        # Observations captured `latency` ago are delivered just before the tick
        for entity_name, entity_sensors in sensors.items():
            for sensor in entity_sensors:
                observation = sensor.get_observation(truth(entity_name, now - sensor.latency), now)
                if observation is not None:
                    cycle.submit(observation, now)

    plotter = FusionPlotter()

    def publish(poses) -> None:
        for pose in poses:
            plotter.update(pose, truth(pose.entity, pose.stamp).origin)
        if node.tick_count % max(1, int(node.loop_rate)) == 0:
            for pose in poses:
                logger.info(f"[{pose.stamp:6.2f}s] {pose.entity}: pos=[{pose.position[0]:.3f}, "
                            f"{pose.position[1]:.3f}, {pose.position[2]:.3f}] "
                            f"w={pose.confidence:.2f} n={pose.sample_count}"
                            + (" (held)" if pose.held else ""))

    cycle.add_publisher(publish)
    node.run(duration=duration, on_tick=inject)

    for entity in config.entities:
        logger.info(f"{entity.name}: position RMSE {plotter.rmse(entity.name):.4f} m "
                    f"over {len(plotter.position_history.get(entity.name, ()))} cycles")
    if plot_file:
        plotter.save(plot_file)
    return plotter


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Atlas multi-sensor pose fusion')
    parser.add_argument('--config', type=str, default=None,
                        help='YAML configuration file')
    parser.add_argument('--demo', action='store_true',
                        help='Use the built-in demo configuration')
    parser.add_argument('--duration', type=float, default=20.0,
                        help='Run duration in seconds (default: 20)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed for the simulated sensors')
    parser.add_argument('--no-real-time', action='store_true',
                        help='Run as fast as possible on a virtual clock')
    parser.add_argument('--plot', type=str, default=None,
                        help='Save trajectory/confidence plot to this file')
    parser.add_argument('--dump-config', action='store_true',
                        help='Print the parsed configuration and exit')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])

    args = parser.parse_args(argv)
    logging.getLogger().setLevel(args.log_level)

    if args.config:
        config = Config.from_file(args.config)
    elif args.demo:
        config = Config.from_string(DEMO_CONFIG)
    else:
        parser.error("either --config or --demo is required")

    if args.dump_config:
        print(config.dump())
        return 0

    run_simulation(
        config,
        duration=args.duration,
        real_time=not args.no_real_time,
        seed=args.seed,
        plot_file=args.plot,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
