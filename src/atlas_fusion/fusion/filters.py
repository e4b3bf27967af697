"""
Per-cycle pose accumulators: weighted averaging and pass-through.

Every fused pose stream owns exactly one accumulator. During a fusion cycle
observations are fed in with a scalar weight; at the cycle boundary the
fused pose is extracted and the accumulator is cleared for the next cycle.

Mathematical Foundation:

Position (weighted arithmetic mean):
    p̂ = Σ(wᵢ·pᵢ) / Σwᵢ

Orientation (Markley et al., "Averaging Quaternions", JGCD 2007):
    M = Σ wᵢ·qᵢqᵢᵀ  (4x4, symmetric)
    q̂ = argmax_{|q|=1} qᵀ(M/Σwᵢ)q  = eigenvector of the largest eigenvalue

    The outer product qqᵀ equals (-q)(-q)ᵀ, so antipodal quaternions (which
    encode the same rotation) reinforce each other instead of cancelling as
    they would under naive component-wise averaging. q̂ minimises the
    weighted sum of squared chordal distances to the inputs.

Both running sums are O(1) in memory: a 3-vector plus a scalar weight and a
4x4 matrix plus a scalar weight, preallocated once and zeroed in place.

Quaternion component order is [x, y, z, w] throughout.
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import Optional
from dataclasses import dataclass
import logging

from ..config.model import FilterKind
from ..geometry import (
    as_quaternion,
    as_vector,
    identity_quaternion,
    is_finite,
    zero_vector,
)

# Configure logging for filter diagnostics
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Relative tolerance for treating eigenvalues as tied with the maximum
EIGEN_TIE_TOLERANCE = 1e-9


@dataclass
class FilterOutput:
    """
    Snapshot of an accumulator at the cycle boundary.

    Attributes:
        position: Fused (or pass-through) position [x, y, z]
        orientation: Fused (or pass-through) unit quaternion [x, y, z, w]
        vec3_weight: Total weight behind the position
        quat_weight: Total weight behind the orientation
        sample_count: Number of accepted, non-zero-weight samples
    """
    position: np.ndarray
    orientation: np.ndarray
    vec3_weight: float
    quat_weight: float
    sample_count: int

    @property
    def is_empty(self) -> bool:
        """True if nothing with positive weight was accumulated."""
        return self.vec3_weight <= 0.0 and self.quat_weight <= 0.0


def canonical_sign(quat: np.ndarray) -> np.ndarray:
    """
    Pick a deterministic sign for a quaternion.

    The scalar part is made non-negative; if it is zero the first non-zero
    vector component is made positive.
    """
    for component in (quat[3], quat[0], quat[1], quat[2]):
        if abs(component) > 1e-15:
            return quat if component > 0 else -quat
    return quat


class FusionFilter(ABC):
    """
    Common interface of the accumulator variants.

    The fusion cycle feeds every observation through add_vec3/add_quat
    regardless of the variant, then calls extract() and clear() once per
    cycle.

    Sample boundary:
        Samples with NaN/Inf components, non-finite or negative weights and
        zero-norm quaternions are rejected: the call returns False, the
        running sums are left untouched and rejected_count is incremented.
        A weight of exactly zero is accepted as a no-op.
        Wrongly sized arrays are a programming error and raise ValueError.
    """

    kind: FilterKind

    def __init__(self):
        self.rejected_count = 0
        self._vec3_count = 0
        self._quat_count = 0

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def add_vec3(self, vector, weight: float) -> bool:
        """
        Add a weighted position sample.

        Args:
            vector: Position [x, y, z]
            weight: Non-negative contribution weight

        Returns:
            True if the sample was accepted, False if rejected
        """
        vector = as_vector(vector)
        if not self._check_sample(vector, weight, "vector"):
            return False
        if weight == 0.0:
            return True

        self._accumulate_vec3(vector, float(weight))
        self._vec3_count += 1
        return True

    def add_quat(self, quaternion, weight: float) -> bool:
        """
        Add a weighted orientation sample.

        The quaternion is normalised before accumulation.

        Args:
            quaternion: Orientation [x, y, z, w]
            weight: Non-negative contribution weight

        Returns:
            True if the sample was accepted, False if rejected
        """
        quat = as_quaternion(quaternion)
        if not self._check_sample(quat, weight, "quaternion"):
            return False

        norm = np.linalg.norm(quat)
        if norm < 1e-12:
            self.rejected_count += 1
            logger.warning("Rejected zero-norm quaternion sample")
            return False
        if weight == 0.0:
            return True

        self._accumulate_quat(quat / norm, float(weight))
        self._quat_count += 1
        return True

    def accumulate(self, position, orientation, weight: float) -> bool:
        """
        Feed a full pose sample (either part may be None).

        Returns:
            True only if every supplied part was accepted
        """
        accepted = True
        if position is not None:
            accepted = self.add_vec3(position, weight) and accepted
        if orientation is not None:
            accepted = self.add_quat(orientation, weight) and accepted
        return accepted

    def _check_sample(self, values: np.ndarray, weight: float, label: str) -> bool:
        if not is_finite(values):
            self.rejected_count += 1
            logger.warning(f"Rejected non-finite {label} sample: {values}")
            return False
        if weight is None or not np.isfinite(weight) or weight < 0.0:
            self.rejected_count += 1
            logger.warning(f"Rejected {label} sample with invalid weight {weight}")
            return False
        return True

    # ------------------------------------------------------------------
    # Cycle protocol
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """
        Reset running sums and weights to the empty state.

        Safe to call at any time. rejected_count is a lifetime diagnostic
        and is not reset.
        """
        self._vec3_count = 0
        self._quat_count = 0
        self._clear_state()

    def reset(self) -> None:
        """Alias of clear() used by the fusion cycle."""
        self.clear()

    @property
    def sample_count(self) -> int:
        return max(self._vec3_count, self._quat_count)

    @property
    @abstractmethod
    def vec3_weight(self) -> float:
        """Weight behind the position output."""

    @property
    @abstractmethod
    def quat_weight(self) -> float:
        """Weight behind the orientation output."""

    @abstractmethod
    def extract(self) -> FilterOutput:
        """Read the accumulator without modifying it."""

    @abstractmethod
    def _accumulate_vec3(self, vector: np.ndarray, weight: float) -> None:
        pass

    @abstractmethod
    def _accumulate_quat(self, quat: np.ndarray, weight: float) -> None:
        pass

    @abstractmethod
    def _clear_state(self) -> None:
        pass


class WeightedMean(FusionFilter):
    """
    Weighted average of positions and orientations over one fusion cycle.

    Positions are averaged arithmetically. Orientations are averaged with the
    eigenvector method, which is invariant to the sign of each input
    quaternion and independent of the order in which samples arrive.

    Degenerate cases:
        - No positive vector weight: weighted_mean_vec3() returns [0, 0, 0]
        - No positive quaternion weight: weighted_mean_quat() returns identity
        - Tied largest eigenvalues (e.g. two orthogonal quaternions with
          equal weights): the tied eigenvector with the smallest index in
          ascending eigenvalue order is chosen, so the output is reproducible
    """

    kind = FilterKind.WEIGHTED_MEAN

    def __init__(self):
        super().__init__()
        self._vec_sum = np.zeros(3)
        self._vec_weight = 0.0
        self._quat_matrix = np.zeros((4, 4))
        self._quat_weight = 0.0

    def _accumulate_vec3(self, vector: np.ndarray, weight: float) -> None:
        self._vec_sum += weight * vector
        self._vec_weight += weight

    def _accumulate_quat(self, quat: np.ndarray, weight: float) -> None:
        # Symmetric by construction
        self._quat_matrix += weight * np.outer(quat, quat)
        self._quat_weight += weight

    def _clear_state(self) -> None:
        self._vec_sum.fill(0.0)
        self._vec_weight = 0.0
        self._quat_matrix.fill(0.0)
        self._quat_weight = 0.0

    @property
    def vec3_weight(self) -> float:
        return self._vec_weight

    @property
    def quat_weight(self) -> float:
        return self._quat_weight

    @property
    def accumulation_matrix(self) -> np.ndarray:
        """Copy of the running 4x4 outer-product sum."""
        return self._quat_matrix.copy()

    def weighted_mean_vec3(self) -> np.ndarray:
        """
        Weighted mean position Σ(wᵢ·pᵢ) / Σwᵢ.

        Returns:
            Mean position, or the zero vector if no weight was accumulated
        """
        if self._vec_weight <= 0.0:
            return zero_vector()
        return self._vec_sum / self._vec_weight

    def weighted_mean_quat(self) -> np.ndarray:
        """
        Weighted mean orientation (dominant eigenvector of M / Σwᵢ).

        The sign of the result is canonicalised (w >= 0); continuity with a
        previously published orientation is the caller's concern.

        Returns:
            Unit quaternion [x, y, z, w], or identity if no weight was
            accumulated
        """
        if self._quat_weight <= 0.0:
            return identity_quaternion()

        matrix = self._quat_matrix / self._quat_weight
        eigenvalues, eigenvectors = np.linalg.eigh(matrix)

        max_eigenvalue = eigenvalues[-1]
        tolerance = EIGEN_TIE_TOLERANCE * max(1.0, abs(max_eigenvalue))
        index = int(np.flatnonzero(eigenvalues >= max_eigenvalue - tolerance)[0])
        if index != len(eigenvalues) - 1:
            logger.debug(f"Tied dominant eigenvalue {max_eigenvalue:.6f}, using eigenvector {index}")

        quat = eigenvectors[:, index]
        quat = quat / np.linalg.norm(quat)
        return canonical_sign(quat)

    def extract(self) -> FilterOutput:
        return FilterOutput(
            position=self.weighted_mean_vec3(),
            orientation=self.weighted_mean_quat(),
            vec3_weight=self._vec_weight,
            quat_weight=self._quat_weight,
            sample_count=self.sample_count,
        )


class PassThroughFilter(FusionFilter):
    """
    Accumulator that skips statistical fusion.

    Intended for entities observed by a single trusted sensor. Each accepted
    sample overwrites the previous one in place, so state stays O(1) however
    many samples arrive. extract() surfaces the most recent accepted sample
    and the weight it carried; before any sample the zero vector and the
    identity rotation are reported with zero weight.
    """

    kind = FilterKind.PASS_THROUGH

    def __init__(self):
        super().__init__()
        self._last_vec = np.zeros(3)
        self._last_vec_weight = 0.0
        self._last_quat = identity_quaternion()
        self._last_quat_weight = 0.0

    def _accumulate_vec3(self, vector: np.ndarray, weight: float) -> None:
        self._last_vec[:] = vector
        self._last_vec_weight = weight

    def _accumulate_quat(self, quat: np.ndarray, weight: float) -> None:
        self._last_quat[:] = quat
        self._last_quat_weight = weight

    def _clear_state(self) -> None:
        self._last_vec.fill(0.0)
        self._last_vec_weight = 0.0
        self._last_quat[:] = identity_quaternion()
        self._last_quat_weight = 0.0

    @property
    def vec3_weight(self) -> float:
        return self._last_vec_weight

    @property
    def quat_weight(self) -> float:
        return self._last_quat_weight

    def last_vec3(self) -> np.ndarray:
        return self._last_vec.copy()

    def last_quat(self) -> np.ndarray:
        return self._last_quat.copy()

    def extract(self) -> FilterOutput:
        return FilterOutput(
            position=self.last_vec3(),
            orientation=self.last_quat(),
            vec3_weight=self._last_vec_weight,
            quat_weight=self._last_quat_weight,
            sample_count=self.sample_count,
        )


_FILTER_TYPES = {
    FilterKind.WEIGHTED_MEAN: WeightedMean,
    FilterKind.PASS_THROUGH: PassThroughFilter,
}


def create_filter(kind: Optional[FilterKind] = None) -> FusionFilter:
    """
    Instantiate the accumulator for a filter kind.

    Args:
        kind: Filter variant (defaults to WEIGHTED_MEAN)

    Raises:
        ValueError: If kind is not a FilterKind
    """
    kind = kind or FilterKind.WEIGHTED_MEAN
    try:
        return _FILTER_TYPES[kind]()
    except KeyError:
        raise ValueError(f"Unknown filter kind: {kind!r}") from None
