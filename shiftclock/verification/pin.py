"""PIN hashing and verification with bcrypt."""

import re

import bcrypt

from ..errors import ValidationError
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

PIN_PATTERN = re.compile(r"^\d{4,6}$")


class PinHasher:
    """Hash and check fallback PINs.

    ``bcrypt.checkpw`` compares in constant time.

    Args:
        rounds: bcrypt cost factor (4-31).
    """

    MIN_ROUNDS = 4
    MAX_ROUNDS = 31

    def __init__(self, rounds: int = 10) -> None:
        if not (self.MIN_ROUNDS <= rounds <= self.MAX_ROUNDS):
            raise ValueError(
                f"Rounds must be between {self.MIN_ROUNDS} and {self.MAX_ROUNDS}, got {rounds}"
            )
        self.rounds = rounds

    def hash(self, pin: str) -> str:
        """Hash a PIN for storage.

        Args:
            pin: Plain PIN of 4 to 6 digits.

        Returns:
            bcrypt hash as a string.

        Raises:
            ValidationError: If the PIN is not 4 to 6 digits.
        """
        if not isinstance(pin, str) or not PIN_PATTERN.match(pin):
            raise ValidationError("PIN must be 4-6 digits")
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(pin.encode("utf-8"), salt).decode("utf-8")

    def verify(self, pin: str, pin_hash: str) -> bool:
        """Check a PIN against its stored hash.

        Returns:
            True if the PIN matches; False for a mismatch or a malformed hash.
        """
        if not pin or not pin_hash:
            return False
        try:
            return bcrypt.checkpw(pin.encode("utf-8"), pin_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored PIN hash is malformed")
            return False
