"""Identity verification for kiosk punches.

Combines descriptor matching and PIN checking behind one verifier that
produces the evidence the punch ledger records.
"""

import numpy as np

from ..errors import InvalidCredentialError, NoReferenceDescriptorError, ValidationError
from ..models import Enrollment, VerificationMethod, VerificationResult
from ..utils.logger import setup_logger
from .matcher import DescriptorMatcher
from .pin import PinHasher

logger = setup_logger(__name__)

__all__ = ["DescriptorMatcher", "IdentityVerifier", "PinHasher"]


class IdentityVerifier:
    """Verify an agent by live face descriptor or fallback PIN.

    Has no side effects; persisting the outcome is the ledger's job.

    Args:
        matcher: Descriptor matcher holding the confidence threshold.
        pin_hasher: bcrypt PIN checker.
    """

    def __init__(self, matcher: DescriptorMatcher, pin_hasher: PinHasher) -> None:
        self.matcher = matcher
        self.pin_hasher = pin_hasher

    def verify(
        self,
        enrollment: Enrollment,
        descriptor: list[float] | np.ndarray | None = None,
        pin: str | None = None,
    ) -> VerificationResult:
        """Verify with exactly one of a descriptor or a PIN.

        Raises:
            ValidationError: If both or neither credential is supplied.
        """
        if (descriptor is None) == (pin is None):
            raise ValidationError("Provide exactly one of face descriptor or PIN")
        if descriptor is not None:
            return self.verify_face(enrollment, descriptor)
        return self.verify_pin(enrollment, pin)

    def verify_face(
        self,
        enrollment: Enrollment,
        descriptor: list[float] | np.ndarray,
    ) -> VerificationResult:
        """Compare a live descriptor with the enrollment's reference.

        A confidence below the threshold yields ``success=False`` with the
        score attached so the kiosk can decide to recapture or fall back.

        Raises:
            NoReferenceDescriptorError: If no reference was ever captured.
            DimensionMismatchError: If the descriptor lengths differ.
        """
        if enrollment.reference_descriptor is None:
            raise NoReferenceDescriptorError(
                "No reference face on file, use PIN instead",
                details={"enrollment_id": enrollment.id},
            )

        matched, distance, confidence = self.matcher.verify_match(
            descriptor, enrollment.reference_descriptor
        )
        logger.debug(
            "Face check enrollment_id=%d distance=%.3f confidence=%.3f matched=%s",
            enrollment.id,
            distance,
            confidence,
            matched,
        )
        return VerificationResult(
            method=VerificationMethod.FACE_VERIFIED,
            success=matched,
            confidence=confidence,
            distance=distance,
        )

    def verify_pin(self, enrollment: Enrollment, pin: str) -> VerificationResult:
        """Check the fallback PIN.

        Raises:
            InvalidCredentialError: If the PIN does not match.
        """
        if not self.pin_hasher.verify(pin, enrollment.pin_hash):
            logger.info("PIN rejected for enrollment_id=%d", enrollment.id)
            raise InvalidCredentialError("Invalid PIN", details={"enrollment_id": enrollment.id})
        return VerificationResult(method=VerificationMethod.PIN_FALLBACK, success=True)
