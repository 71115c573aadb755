from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from kitchguard.logging import get_logger
from kitchguard.service.errors import ValidationError

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128


@dataclass(frozen=True)
class PasswordViolation:
    rule: str
    message: str

    def as_dict(self) -> dict:
        return {"rule": self.rule, "message": self.message}


def check_password_strength(password: str) -> List[PasswordViolation]:
    """Return every policy rule the password fails; empty when it passes."""
    violations: List[PasswordViolation] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        violations.append(
            PasswordViolation(
                "min_length",
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
            )
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        violations.append(
            PasswordViolation(
                "max_length",
                f"Password must be at most {MAX_PASSWORD_LENGTH} characters long",
            )
        )
    if not any(c.isupper() for c in password):
        violations.append(
            PasswordViolation("uppercase", "Password must contain at least one uppercase letter")
        )
    if not any(c.islower() for c in password):
        violations.append(
            PasswordViolation("lowercase", "Password must contain at least one lowercase letter")
        )
    if not any(c.isdigit() for c in password):
        violations.append(
            PasswordViolation("digit", "Password must contain at least one number")
        )
    if not any(c in SPECIAL_CHARACTERS for c in password):
        violations.append(
            PasswordViolation("symbol", "Password must contain at least one special character")
        )
    return violations


def ensure_password_strength(password: str) -> None:
    violations = check_password_strength(password)
    if violations:
        raise ValidationError(
            "password does not meet the strength policy",
            detail={"violations": [v.as_dict() for v in violations]},
        )


def generate_secure_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def generate_temporary_password(length: int = 16) -> str:
    """Random password that always satisfies the strength policy."""
    length = max(length, MIN_PASSWORD_LENGTH)
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, SPECIAL_CHARACTERS]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class PasswordManager:
    """argon2id hashing with the policy check applied before every hash."""

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 64 * 1024) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        # Verified against on unknown identifiers so both paths cost one hash.
        self._dummy_hash = self._hasher.hash(generate_secure_token(16))

    def hash(self, password: str) -> str:
        ensure_password_strength(password)
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def burn(self, password: str) -> None:
        """Spend one verification on a throwaway hash."""
        self.verify(self._dummy_hash, password)
