"""
Rigid transforms and quaternion helpers for pose fusion.

All quaternions in this package are numpy arrays in [x, y, z, w] order,
the order used by scipy.spatial.transform.Rotation. Vectors are (3,)
float64 arrays.

Composition convention:
    (a * b).apply(p) == a.apply(b.apply(p))

so that a chain such as world_T_sensor * sensor_T_marker maps marker
coordinates into the world frame.
"""

import numpy as np
from scipy.spatial.transform import Rotation
from typing import Sequence, Union
from dataclasses import dataclass, field


ArrayLike = Union[np.ndarray, Sequence[float]]

IDENTITY_QUATERNION = np.array([0.0, 0.0, 0.0, 1.0])
ZERO_VECTOR = np.zeros(3)


def identity_quaternion() -> np.ndarray:
    """Fresh identity rotation [0, 0, 0, 1]."""
    return IDENTITY_QUATERNION.copy()


def zero_vector() -> np.ndarray:
    """Fresh zero vector."""
    return ZERO_VECTOR.copy()


def is_finite(values: ArrayLike) -> bool:
    """True if every component is finite (no NaN or Inf)."""
    return bool(np.all(np.isfinite(np.asarray(values, dtype=float))))


def as_vector(values: ArrayLike) -> np.ndarray:
    """
    Coerce input into a (3,) float array.

    Raises:
        ValueError: If the input does not have exactly three components
    """
    vector = np.asarray(values, dtype=float).reshape(-1)
    if vector.shape != (3,):
        raise ValueError(f"Vector must have 3 elements, got {vector.size}")
    return vector


def as_quaternion(values: ArrayLike) -> np.ndarray:
    """
    Coerce input into a (4,) float array without normalizing.

    Raises:
        ValueError: If the input does not have exactly four components
    """
    quat = np.asarray(values, dtype=float).reshape(-1)
    if quat.shape != (4,):
        raise ValueError(f"Quaternion must have 4 elements [x, y, z, w], got {quat.size}")
    return quat


def normalize_quaternion(values: ArrayLike) -> np.ndarray:
    """
    Return the unit quaternion pointing in the same direction.

    Raises:
        ValueError: If the quaternion is non-finite or has zero norm
    """
    quat = as_quaternion(values)
    if not is_finite(quat):
        raise ValueError("Quaternion contains NaN or infinite values")
    norm = np.linalg.norm(quat)
    if norm < 1e-12:
        raise ValueError("Cannot normalize a zero-norm quaternion")
    return quat / norm


def align_sign(quat: ArrayLike, reference: ArrayLike) -> np.ndarray:
    """
    Flip quat onto the hemisphere of reference.

    q and -q encode the same rotation; choosing the sign with a non-negative
    dot product keeps a published orientation stream continuous.
    """
    quat = as_quaternion(quat)
    if np.dot(quat, as_quaternion(reference)) < 0.0:
        return -quat
    return quat.copy()


def quaternion_angle(q1: ArrayLike, q2: ArrayLike) -> float:
    """
    Angular distance between two rotations in radians, in [0, pi].

    Computed as 2*acos(|q1 . q2|), so it is invariant to the sign of
    either quaternion.
    """
    q1 = normalize_quaternion(q1)
    q2 = normalize_quaternion(q2)
    dot = min(1.0, abs(float(np.dot(q1, q2))))
    return 2.0 * np.arccos(dot)


def nlerp(q_from: ArrayLike, q_to: ArrayLike, alpha: float) -> np.ndarray:
    """
    Normalized linear blend (1 - alpha) * q_from + alpha * q_to.

    q_to is sign-aligned with q_from first, otherwise the blend would pass
    through the long way around (or through zero for antipodal inputs).
    """
    q_from = normalize_quaternion(q_from)
    q_to = align_sign(normalize_quaternion(q_to), q_from)
    return normalize_quaternion((1.0 - alpha) * q_from + alpha * q_to)


@dataclass(frozen=True, eq=False)
class Transform:
    """
    Rigid body transform: a rotation followed by a translation.

    Used both for static mounting transforms (sensor in world, marker in
    entity) and for observed or fused poses.

    Attributes:
        rotation: Unit quaternion [x, y, z, w]
        origin: Translation [x, y, z]
    """
    rotation: np.ndarray = field(default_factory=identity_quaternion)
    origin: np.ndarray = field(default_factory=zero_vector)

    def __post_init__(self):
        object.__setattr__(self, "rotation", normalize_quaternion(self.rotation))
        origin = as_vector(self.origin)
        if not is_finite(origin):
            raise ValueError("Transform origin contains NaN or infinite values")
        object.__setattr__(self, "origin", origin)

    @classmethod
    def identity(cls) -> 'Transform':
        return cls()

    @classmethod
    def from_rpy_degrees(cls, roll: float, pitch: float, yaw: float,
                         origin: ArrayLike = (0.0, 0.0, 0.0)) -> 'Transform':
        """
        Build a transform from fixed-axis roll, pitch, yaw angles in degrees.

        Equivalent to R = Rz(yaw) * Ry(pitch) * Rx(roll).
        """
        rotation = Rotation.from_euler("xyz", [roll, pitch, yaw], degrees=True)
        return cls(rotation.as_quat(), origin)

    @property
    def _rotation(self) -> Rotation:
        return Rotation.from_quat(self.rotation)

    def inverse(self) -> 'Transform':
        inv_rot = self._rotation.inv()
        return Transform(inv_rot.as_quat(), -inv_rot.apply(self.origin))

    def apply(self, point: ArrayLike) -> np.ndarray:
        """Map a point from the child frame into the parent frame."""
        return self._rotation.apply(as_vector(point)) + self.origin

    def as_matrix(self) -> np.ndarray:
        """4x4 homogeneous matrix."""
        matrix = np.eye(4)
        matrix[:3, :3] = self._rotation.as_matrix()
        matrix[:3, 3] = self.origin
        return matrix

    def __mul__(self, other: 'Transform') -> 'Transform':
        if not isinstance(other, Transform):
            return NotImplemented
        rotation = self._rotation * other._rotation
        origin = self._rotation.apply(other.origin) + self.origin
        return Transform(rotation.as_quat(), origin)

    def is_close(self, other: 'Transform', atol: float = 1e-9) -> bool:
        """Compare two transforms, treating q and -q as equal."""
        same_origin = np.allclose(self.origin, other.origin, atol=atol)
        same_rotation = abs(abs(float(np.dot(self.rotation, other.rotation))) - 1.0) < atol
        return bool(same_origin and same_rotation)

    def __repr__(self) -> str:
        x, y, z, w = self.rotation
        return (f"Transform(rot=[{x:.4f}, {y:.4f}, {z:.4f}, {w:.4f}], "
                f"origin=[{self.origin[0]:.3f}, {self.origin[1]:.3f}, {self.origin[2]:.3f}])")
