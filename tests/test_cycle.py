import pytest
import numpy as np
import threading
import time
import sys
import os
from unittest.mock import Mock
from scipy.spatial.transform import Rotation

# Add the src directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from atlas_fusion.config import Config
from atlas_fusion.fusion import FusionCycle, FusionState, Observation
from atlas_fusion.geometry import quaternion_angle


IDENTITY = np.array([0.0, 0.0, 0.0, 1.0])


def rot_z(degrees):
    return Rotation.from_euler('z', degrees, degrees=True).as_quat()


def make_config(alpha=1.0, policy="hold", publish_markers=True, publish_entity_sensors=True):
    return Config.from_string(f"""
entities:
  - entity: robot
    filterAlpha: {alpha}
    sensors:
      - {{sensor: cam_a, topic: /cam_a/markers, type: MarkerBased, sigma: 1.0, target: robot}}
      - {{sensor: cam_b, topic: /cam_b/markers, type: MarkerBased, sigma: 2.0, target: robot}}
    markers:
      - marker: 7
        transform: {{origin: [0.5, 0, 0]}}
  - entity: tracked
    filter: PassThrough
    sensors:
      - sensor: tracker
        topic: /tracked/pose
        type: NonMarkerBased
        target: tracked
        transform: {{origin: [0, 0, 1]}}
options:
  loopRate: 10
  decayDuration: 1.0
  emptyCyclePolicy: {policy}
  publishMarkers: {str(publish_markers).lower()}
  publishEntitySensors: {str(publish_entity_sensors).lower()}
""")


def obs(sensor, position=None, orientation=None, stamp=0.0, target=None):
    return Observation(
        sensor=sensor,
        stamp=stamp,
        position=None if position is None else np.asarray(position, dtype=float),
        orientation=None if orientation is None else np.asarray(orientation, dtype=float),
        target=target,
    )


def by_entity(poses):
    return {pose.entity: pose for pose in poses}


@pytest.fixture
def cycle():
    return FusionCycle(make_config(), clock=lambda: 0.0)


class TestRouting:
    """Test observation routing and weighting"""

    def test_topology(self, cycle):
        assert [f.name for f in cycle.entities] == ["robot", "tracked"]
        assert cycle.sensor_for_topic("/cam_b/markers") == "cam_b"
        assert cycle.sensor_for_topic("/nowhere") is None
        assert cycle.base_weight("cam_b") == pytest.approx(0.25)
        with pytest.raises(KeyError):
            cycle.entity("ghost")

    def test_weighted_fusion_of_two_sensors(self, cycle):
        """Test sensors are combined with 1/σ² weights"""
        assert cycle.submit(obs("cam_a", [1.0, 0.0, 0.0], IDENTITY), now=0.0)
        assert cycle.submit(obs("cam_b", [0.0, 0.0, 0.0], IDENTITY), now=0.0)

        robot = by_entity(cycle.tick(now=0.0))["robot"]

        np.testing.assert_allclose(robot.position, [0.8, 0.0, 0.0])
        assert robot.vec3_weight == pytest.approx(1.25)
        assert robot.quat_weight == pytest.approx(1.25)
        assert robot.sample_count == 2
        assert not robot.is_stale

    def test_age_decays_weight(self, cycle):
        assert cycle.submit(obs("cam_a", [1.0, 0.0, 0.0], stamp=9.5), now=10.0)

        robot = by_entity(cycle.tick(now=10.0))["robot"]
        assert robot.vec3_weight == pytest.approx(0.5)
        assert cycle.stats()["cam_a"].last_weight == pytest.approx(0.5)

    def test_stale_observation_dropped(self, cycle):
        """Test observations older than the decay duration never contribute"""
        assert not cycle.submit(obs("cam_a", [1.0, 0.0, 0.0], stamp=0.0), now=1.0)
        assert not cycle.submit(obs("cam_a", [1.0, 0.0, 0.0], stamp=0.0), now=5.0)

        assert cycle.stats()["cam_a"].stale == 2
        robot = by_entity(cycle.tick(now=5.0))["robot"]
        assert robot.is_stale
        assert robot.vec3_weight == 0.0

    def test_unknown_sensor(self, cycle):
        assert not cycle.submit(obs("ghost", [1.0, 0.0, 0.0]), now=0.0)
        assert cycle.unrouted_count == 1

    def test_non_finite_observation_rejected(self, cycle):
        assert cycle.submit(obs("cam_a", [1.0, 0.0, 0.0]), now=0.0)
        assert not cycle.submit(obs("cam_a", [np.nan, 0.0, 0.0]), now=0.0)
        assert not cycle.submit(obs("cam_a", orientation=[0.0, 0.0, 0.0, 0.0]), now=0.0)

        assert cycle.stats()["cam_a"].rejected == 2
        assert cycle.stats()["cam_a"].accepted == 1
        robot = by_entity(cycle.tick(now=0.0))["robot"]
        np.testing.assert_allclose(robot.position, [1.0, 0.0, 0.0])

    def test_empty_observation_rejected(self, cycle):
        assert not cycle.submit(obs("cam_a"), now=0.0)
        assert cycle.stats()["cam_a"].rejected == 1

    def test_stats_are_copies(self, cycle):
        stats = cycle.stats()
        stats["cam_a"].accepted = 99
        assert cycle.stats()["cam_a"].accepted == 0


class TestMountingTransforms:
    """Test mapping of observations into entity poses"""

    def test_marker_observation(self, cycle):
        """Test the marker offset is removed from the observed pose"""
        assert cycle.submit(obs("cam_a", [2.0, 0.0, 0.0], IDENTITY, target=7), now=0.0)

        robot = by_entity(cycle.tick(now=0.0))["robot"]
        np.testing.assert_allclose(robot.position, [1.5, 0.0, 0.0])

    def test_marker_observation_with_rotation(self, cycle):
        """Test the marker offset is rotated with the observed marker"""
        assert cycle.submit(obs("cam_a", [2.0, 0.0, 0.0], rot_z(90), target="7"), now=0.0)

        robot = by_entity(cycle.tick(now=0.0))["robot"]
        np.testing.assert_allclose(robot.position, [2.0, -0.5, 0.0], atol=1e-12)
        assert quaternion_angle(robot.orientation, rot_z(90)) == pytest.approx(0.0, abs=1e-7)

    def test_unknown_marker_rejected(self, cycle):
        assert not cycle.submit(obs("cam_a", [2.0, 0.0, 0.0], IDENTITY, target=99), now=0.0)
        assert not cycle.submit(obs("cam_a", [2.0, 0.0, 0.0], IDENTITY, target="left"), now=0.0)
        assert cycle.stats()["cam_a"].rejected == 2

    @pytest.mark.parametrize("target", [7, "7"])
    def test_marker_id_spelling_independent_of_sensor_target(self, target):
        """Test int and string marker ids resolve the same marker whatever the sensor target"""
        config = Config.from_string("""
entities:
  - entity: robot
    sensors:
      - {sensor: cam, type: MarkerBased, target: "7"}
    markers:
      - marker: 7
        transform: {origin: [0.5, 0, 0]}
options: {decayDuration: 1.0}
""")
        cycle = FusionCycle(config, clock=lambda: 0.0)
        assert cycle.submit(obs("cam", [2.0, 0.0, 0.0], IDENTITY, target=target), now=0.0)

        robot = by_entity(cycle.tick(now=0.0))["robot"]
        np.testing.assert_allclose(robot.position, [1.5, 0.0, 0.0])

    def test_entity_name_target_is_direct(self, cycle):
        """Test observing the entity itself skips the marker offset"""
        assert cycle.submit(obs("cam_a", [2.0, 0.0, 0.0], IDENTITY, target="robot"), now=0.0)

        robot = by_entity(cycle.tick(now=0.0))["robot"]
        np.testing.assert_allclose(robot.position, [2.0, 0.0, 0.0])

    def test_sensor_mounted_on_entity(self, cycle):
        """Test the sensor offset is removed from a self-reported pose"""
        assert cycle.submit(obs("tracker", [0.0, 0.0, 3.0], IDENTITY), now=0.0)

        tracked = by_entity(cycle.tick(now=0.0))["tracked"]
        np.testing.assert_allclose(tracked.position, [0.0, 0.0, 2.0])

    def test_position_only_observation(self, cycle):
        """Test a partial observation feeds only its own channel"""
        assert cycle.submit(obs("cam_a", position=[1.0, 1.0, 1.0]), now=0.0)

        robot = by_entity(cycle.tick(now=0.0))["robot"]
        np.testing.assert_allclose(robot.position, [1.0, 1.0, 1.0])
        assert robot.vec3_weight == 1.0
        assert robot.quat_weight == 0.0
        np.testing.assert_allclose(robot.orientation, IDENTITY)


class TestExtraction:
    """Test smoothing, sign continuity and the empty cycle policies"""

    def test_position_smoothing(self):
        cycle = FusionCycle(make_config(alpha=0.5))
        cycle.submit(obs("cam_a", [0.0, 0.0, 0.0]), now=0.0)
        cycle.tick(now=0.0)
        cycle.submit(obs("cam_a", [2.0, 0.0, 0.0]), now=0.1)
        robot = by_entity(cycle.tick(now=0.1))["robot"]

        np.testing.assert_allclose(robot.position, [1.0, 0.0, 0.0])

    def test_first_cycle_is_not_smoothed(self):
        cycle = FusionCycle(make_config(alpha=0.1))
        cycle.submit(obs("cam_a", [4.0, 0.0, 0.0]), now=0.0)
        robot = by_entity(cycle.tick(now=0.0))["robot"]

        np.testing.assert_allclose(robot.position, [4.0, 0.0, 0.0])

    def test_orientation_smoothing(self):
        cycle = FusionCycle(make_config(alpha=0.5))
        cycle.submit(obs("cam_a", orientation=IDENTITY), now=0.0)
        cycle.tick(now=0.0)
        cycle.submit(obs("cam_a", orientation=rot_z(90)), now=0.1)
        robot = by_entity(cycle.tick(now=0.1))["robot"]

        assert quaternion_angle(robot.orientation, rot_z(45)) == pytest.approx(0.0, abs=1e-7)

    def test_pass_through_is_not_smoothed(self):
        cycle = FusionCycle(make_config(alpha=0.1))
        cycle.submit(obs("tracker", [0.0, 0.0, 1.0], IDENTITY), now=0.0)
        cycle.tick(now=0.0)
        cycle.submit(obs("tracker", [0.0, 0.0, 1.0], IDENTITY), now=0.1)
        cycle.submit(obs("tracker", [0.0, 0.0, 5.0], IDENTITY), now=0.1)
        tracked = by_entity(cycle.tick(now=0.1))["tracked"]

        np.testing.assert_allclose(tracked.position, [0.0, 0.0, 4.0])

    def test_sign_continuity_weighted_mean(self, cycle):
        """Test the published quaternion does not flip across w = 0"""
        cycle.submit(obs("cam_a", orientation=rot_z(179)), now=0.0)
        first = by_entity(cycle.tick(now=0.0))["robot"].orientation
        cycle.submit(obs("cam_a", orientation=rot_z(181)), now=0.1)
        second = by_entity(cycle.tick(now=0.1))["robot"].orientation

        assert np.dot(first, second) > 0.0
        assert quaternion_angle(first, second) == pytest.approx(np.radians(2.0))

    def test_sign_continuity_pass_through(self, cycle):
        q = np.array([0.0, 0.0, -0.6, -0.8])
        cycle.submit(obs("tracker", orientation=q), now=0.0)
        first = by_entity(cycle.tick(now=0.0))["tracked"].orientation
        cycle.submit(obs("tracker", orientation=-q), now=0.1)
        second = by_entity(cycle.tick(now=0.1))["tracked"].orientation

        np.testing.assert_allclose(first, q)
        np.testing.assert_allclose(second, q)

    def test_hold_last_on_empty_cycle(self, cycle):
        cycle.submit(obs("cam_a", [1.0, 2.0, 3.0], rot_z(30)), now=0.0)
        published = by_entity(cycle.tick(now=0.0))["robot"]
        held = by_entity(cycle.tick(now=0.1))["robot"]

        np.testing.assert_allclose(held.position, published.position)
        np.testing.assert_allclose(held.orientation, published.orientation)
        assert held.held
        assert held.is_stale
        assert held.vec3_weight == 0.0 and held.quat_weight == 0.0

    def test_hold_before_any_observation(self, cycle):
        robot = by_entity(cycle.tick(now=0.0))["robot"]

        np.testing.assert_array_equal(robot.position, [0.0, 0.0, 0.0])
        np.testing.assert_array_equal(robot.orientation, IDENTITY)
        assert not robot.held

    def test_hold_channels_independently(self, cycle):
        cycle.submit(obs("cam_a", [1.0, 0.0, 0.0], rot_z(30)), now=0.0)
        cycle.tick(now=0.0)
        cycle.submit(obs("cam_a", position=[3.0, 0.0, 0.0]), now=0.1)
        robot = by_entity(cycle.tick(now=0.1))["robot"]

        np.testing.assert_allclose(robot.position, [3.0, 0.0, 0.0])
        assert quaternion_angle(robot.orientation, rot_z(30)) == pytest.approx(0.0, abs=1e-7)
        assert robot.held

    def test_reset_default_on_empty_cycle(self):
        cycle = FusionCycle(make_config(alpha=0.5, policy="reset_default"))
        cycle.submit(obs("cam_a", [2.0, 0.0, 0.0], rot_z(30)), now=0.0)
        cycle.tick(now=0.0)

        robot = by_entity(cycle.tick(now=0.1))["robot"]
        np.testing.assert_array_equal(robot.position, [0.0, 0.0, 0.0])
        np.testing.assert_allclose(robot.orientation, IDENTITY)
        assert not robot.held

        # Smoothing restarts from the next measurement
        cycle.submit(obs("cam_a", [4.0, 0.0, 0.0]), now=0.2)
        robot = by_entity(cycle.tick(now=0.2))["robot"]
        np.testing.assert_allclose(robot.position, [4.0, 0.0, 0.0])

    def test_cycle_clears_accumulator(self, cycle):
        cycle.submit(obs("cam_a", [1.0, 0.0, 0.0]), now=0.0)
        cycle.tick(now=0.0)
        cycle.submit(obs("cam_a", [3.0, 0.0, 0.0]), now=0.1)
        robot = by_entity(cycle.tick(now=0.1))["robot"]

        np.testing.assert_allclose(robot.position, [3.0, 0.0, 0.0])
        assert robot.sample_count == 1

    def test_state_machine(self, cycle):
        robot = cycle.entity("robot")
        assert robot.state is FusionState.IDLE

        cycle.submit(obs("cam_a", [1.0, 0.0, 0.0]), now=0.0)
        assert robot.state is FusionState.ACCUMULATING

        cycle.tick(now=0.0)
        assert robot.state is FusionState.IDLE
        assert robot.cycle_count == 1
        assert robot.previous is not None

    def test_entity_reset(self, cycle):
        cycle.submit(obs("cam_a", [1.0, 0.0, 0.0]), now=0.0)
        cycle.tick(now=0.0)
        cycle.entity("robot").reset()

        assert cycle.entity("robot").previous is None
        robot = by_entity(cycle.tick(now=0.1))["robot"]
        np.testing.assert_array_equal(robot.position, [0.0, 0.0, 0.0])


class TestPublication:
    """Test publishers, marker poses and static transforms"""

    def test_publishers_receive_poses(self, cycle):
        publisher = Mock()
        cycle.add_publisher(publisher)
        poses = cycle.tick(now=0.0)

        publisher.assert_called_once_with(poses)
        assert cycle.cycle_count == 1

    def test_publish_pose_topics_disabled(self):
        config = Config.from_string("""
entities:
  - entity: box
options:
  publishPoseTopics: false
""")
        cycle = FusionCycle(config)
        publisher = Mock()
        cycle.add_publisher(publisher)
        poses = cycle.tick(now=0.0)

        publisher.assert_not_called()
        assert len(poses) == 1

    def test_marker_poses(self, cycle):
        cycle.submit(obs("cam_a", [1.0, 0.0, 0.0], rot_z(90)), now=0.0)
        robot = by_entity(cycle.tick(now=0.0))["robot"]

        marker = robot.markers[7]
        np.testing.assert_allclose(marker.origin, [1.0, 0.5, 0.0], atol=1e-12)

    def test_marker_poses_disabled(self):
        cycle = FusionCycle(make_config(publish_markers=False))
        robot = by_entity(cycle.tick(now=0.0))["robot"]
        assert robot.markers == {}

    def test_static_transforms(self, cycle):
        relations = {(t.parent, t.child) for t in cycle.static_transforms()}
        assert relations == {("world", "cam_a"), ("world", "cam_b"), ("tracked", "tracker")}

    def test_static_transforms_filtered(self):
        cycle = FusionCycle(make_config(publish_entity_sensors=False))
        children = [t.child for t in cycle.static_transforms()]
        assert "tracker" not in children
        assert "cam_a" in children


class TestConcurrency:
    """Test the lock discipline between submit() and tick()"""

    def test_concurrent_submissions_are_all_counted(self, cycle):
        def worker():
            for _ in range(250):
                cycle.submit(obs("cam_a", [1.0, 0.0, 0.0], IDENTITY), now=0.0)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        robot = by_entity(cycle.tick(now=0.0))["robot"]
        assert robot.sample_count == 1000
        assert robot.vec3_weight == pytest.approx(1000.0)
        assert cycle.stats()["cam_a"].accepted == 1000

    def test_observation_during_extraction_goes_to_next_cycle(self, cycle):
        fusion = cycle.entity("robot")
        extract = fusion.filter.extract
        started = threading.Event()
        release = threading.Event()

        def slow_extract():
            started.set()
            release.wait(2.0)
            return extract()

        fusion.filter.extract = slow_extract
        cycle.submit(obs("cam_a", [1.0, 0.0, 0.0]), now=0.0)

        results = {}
        ticker = threading.Thread(target=lambda: results.update(first=cycle.tick(now=0.0)))
        ticker.start()
        assert started.wait(2.0)

        submitter = threading.Thread(
            target=lambda: cycle.submit(obs("cam_a", [5.0, 0.0, 0.0]), now=0.0))
        submitter.start()
        time.sleep(0.05)
        release.set()
        ticker.join(2.0)
        submitter.join(2.0)
        del fusion.filter.extract

        first = by_entity(results["first"])["robot"]
        assert first.sample_count == 1
        np.testing.assert_allclose(first.position, [1.0, 0.0, 0.0])

        second = by_entity(cycle.tick(now=0.1))["robot"]
        assert second.sample_count == 1
        np.testing.assert_allclose(second.position, [5.0, 0.0, 0.0])
