"""
Geometry helpers for atlas fusion.

Quaternions use [x, y, z, w] order throughout; rotation algebra is
delegated to scipy.spatial.transform.Rotation.
"""

from .transforms import (
    IDENTITY_QUATERNION,
    ZERO_VECTOR,
    Transform,
    align_sign,
    as_quaternion,
    as_vector,
    identity_quaternion,
    is_finite,
    nlerp,
    normalize_quaternion,
    quaternion_angle,
    zero_vector,
)

__all__ = [
    "IDENTITY_QUATERNION",
    "ZERO_VECTOR",
    "Transform",
    "align_sign",
    "as_quaternion",
    "as_vector",
    "identity_quaternion",
    "is_finite",
    "nlerp",
    "normalize_quaternion",
    "quaternion_angle",
    "zero_vector",
]
