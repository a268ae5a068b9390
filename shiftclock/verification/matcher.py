"""Face descriptor distance matching.

Compares a live descriptor with an enrollment's reference descriptor by
Euclidean distance and converts the distance into a confidence score in
``[0, 1]``. A match is accepted when the confidence reaches a single
configured threshold.
"""

import numpy as np
from numpy.linalg import norm

from ..errors import DimensionMismatchError, ValidationError
from ..utils.logger import setup_logger

logger = setup_logger(__name__)


class DescriptorMatcher:
    """Distance-threshold matching between face descriptors.

    Confidence falls linearly from 1.0 at distance zero to 0.0 at
    ``distance_scale``.

    Args:
        min_confidence: Minimum confidence to accept a match.
        distance_scale: Distance at which confidence reaches zero.
        expected_dim: Required descriptor length, or None to accept any
            length as long as both sides agree.
    """

    def __init__(
        self,
        min_confidence: float = 0.5,
        distance_scale: float = 1.2,
        expected_dim: int | None = None,
    ) -> None:
        if distance_scale <= 0:
            raise ValueError("distance_scale must be positive")
        self.min_confidence = min_confidence
        self.distance_scale = distance_scale
        self.expected_dim = expected_dim

    def to_vector(self, descriptor: list[float] | np.ndarray) -> np.ndarray:
        """Validate and convert a descriptor to a 1-d float array.

        Raises:
            ValidationError: If the descriptor is empty, not 1-d or has
                non-finite values.
            DimensionMismatchError: If it differs from ``expected_dim``.
        """
        try:
            vector = np.asarray(descriptor, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ValidationError("Face descriptor must be numeric") from e
        if vector.ndim != 1 or vector.size == 0:
            raise ValidationError("Face descriptor must be a non-empty flat vector")
        if not np.all(np.isfinite(vector)):
            raise ValidationError("Face descriptor contains non-finite values")
        if self.expected_dim is not None and vector.size != self.expected_dim:
            raise DimensionMismatchError(
                f"Face descriptor has {vector.size} dimensions, expected {self.expected_dim}",
                details={"expected": self.expected_dim, "actual": int(vector.size)},
            )
        return vector

    @staticmethod
    def euclidean_distance(desc1: np.ndarray, desc2: np.ndarray) -> float:
        """Compute Euclidean distance between two descriptors.

        Raises:
            DimensionMismatchError: If the descriptors differ in length.
        """
        if desc1.shape != desc2.shape:
            raise DimensionMismatchError(
                f"Descriptor dimensions differ: {desc1.size} vs {desc2.size}",
                details={"live": int(desc1.size), "reference": int(desc2.size)},
            )
        return float(norm(desc1 - desc2))

    def confidence_from_distance(self, distance: float) -> float:
        """Map a distance to a confidence score in ``[0, 1]``."""
        return max(0.0, 1.0 - distance / self.distance_scale)

    def verify_match(
        self,
        live: list[float] | np.ndarray,
        reference: list[float] | np.ndarray,
    ) -> tuple[bool, float, float]:
        """Verify whether two descriptors belong to the same person.

        Args:
            live: Descriptor captured at the kiosk.
            reference: Descriptor stored at enrollment.

        Returns:
            Tuple of (is_match, distance, confidence).
        """
        distance = self.euclidean_distance(self.to_vector(live), self.to_vector(reference))
        confidence = self.confidence_from_distance(distance)
        return (confidence >= self.min_confidence, distance, confidence)
