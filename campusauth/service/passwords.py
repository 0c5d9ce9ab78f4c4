from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from campusauth.logging import get_logger
from campusauth.service.errors import ValidationFailure

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


def password_problems(password: str) -> List[str]:
    problems: List[str] = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password or ""):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password or ""):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password or ""):
        problems.append("Password must contain at least one number")
    return problems


def validate_password_strength(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationFailure(problems[0], detail={"problems": problems})


class CredentialHasher:
    """argon2id hashing with library defaults."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)
        # Compared against when no identity matched so both paths cost the same
        self._dummy_hash = self._hasher.hash("dummy-password-for-timing")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, credential_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(credential_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(self._dummy_hash, password)
