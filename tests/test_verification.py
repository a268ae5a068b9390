"""Tests for PIN hashing and the identity verifier."""

import numpy as np
import pytest

from shiftclock.errors import (
    InvalidCredentialError,
    NoReferenceDescriptorError,
    ValidationError,
    VerificationError,
)
from shiftclock.models import Enrollment, VerificationMethod
from shiftclock.verification import DescriptorMatcher, IdentityVerifier, PinHasher

REFERENCE = np.linspace(-0.1, 0.1, 128)


@pytest.fixture(scope="module")
def hasher() -> PinHasher:
    """Provide a fast PinHasher."""
    return PinHasher(rounds=4)


@pytest.fixture
def verifier(hasher: PinHasher) -> IdentityVerifier:
    return IdentityVerifier(DescriptorMatcher(expected_dim=128), hasher)


@pytest.fixture
def enrollment(hasher: PinHasher) -> Enrollment:
    return Enrollment(
        id=7,
        agent_id=3,
        pin_hash=hasher.hash("1234"),
        reference_descriptor=REFERENCE.tolist(),
    )


class TestPinHasher:
    """Tests for PinHasher."""

    def test_hash_and_verify(self, hasher: PinHasher) -> None:
        pin_hash = hasher.hash("4821")
        assert pin_hash != "4821"
        assert hasher.verify("4821", pin_hash)

    def test_wrong_pin(self, hasher: PinHasher) -> None:
        assert not hasher.verify("0000", hasher.hash("4821"))

    @pytest.mark.parametrize("pin", ["123", "1234567", "12a4", ""])
    def test_rejects_bad_format(self, hasher: PinHasher, pin: str) -> None:
        """Test PINs must be 4 to 6 digits."""
        with pytest.raises(ValidationError):
            hasher.hash(pin)

    def test_malformed_hash(self, hasher: PinHasher) -> None:
        """Test a corrupt stored hash verifies as False."""
        assert not hasher.verify("1234", "not-a-bcrypt-hash")

    def test_invalid_rounds(self) -> None:
        with pytest.raises(ValueError):
            PinHasher(rounds=2)


class TestIdentityVerifier:
    """Tests for IdentityVerifier."""

    def test_face_match(self, verifier: IdentityVerifier, enrollment: Enrollment) -> None:
        """Test a close descriptor verifies with high confidence."""
        result = verifier.verify(enrollment, descriptor=REFERENCE + 0.001)
        assert result.success
        assert result.method is VerificationMethod.FACE_VERIFIED
        assert result.confidence > 0.9

    def test_face_mismatch_returns_failure(
        self, verifier: IdentityVerifier, enrollment: Enrollment
    ) -> None:
        """Test a distant descriptor fails without raising."""
        result = verifier.verify(enrollment, descriptor=REFERENCE + 0.1)
        assert not result.success
        assert result.confidence < 0.5

    def test_no_reference_descriptor(self, verifier: IdentityVerifier, hasher: PinHasher) -> None:
        """Test face verification needs an enrolled reference."""
        bare = Enrollment(id=1, agent_id=1, pin_hash=hasher.hash("1234"))
        with pytest.raises(NoReferenceDescriptorError) as exc:
            verifier.verify(bare, descriptor=REFERENCE)
        assert exc.value.status_code == 401
        assert isinstance(exc.value, VerificationError)

    def test_pin_success(self, verifier: IdentityVerifier, enrollment: Enrollment) -> None:
        result = verifier.verify(enrollment, pin="1234")
        assert result.success
        assert result.method is VerificationMethod.PIN_FALLBACK
        assert result.confidence is None

    def test_pin_mismatch(self, verifier: IdentityVerifier, enrollment: Enrollment) -> None:
        with pytest.raises(InvalidCredentialError):
            verifier.verify(enrollment, pin="9999")

    def test_requires_exactly_one_credential(
        self, verifier: IdentityVerifier, enrollment: Enrollment
    ) -> None:
        with pytest.raises(ValidationError):
            verifier.verify(enrollment)
        with pytest.raises(ValidationError):
            verifier.verify(enrollment, descriptor=REFERENCE, pin="1234")
