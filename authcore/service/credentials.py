from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

COMMON_PASSWORDS = (
    "password",
    "password123",
    "123456",
    "qwerty",
    "abc123",
    "admin",
    "admin123",
    "root",
    "user",
    "guest",
)

_COMMON_PATTERNS = [
    re.compile(r"123456"),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"qwerty", re.IGNORECASE),
    re.compile(r"abc123", re.IGNORECASE),
    re.compile(r"admin", re.IGNORECASE),
]
_REPEATED_CHARS = re.compile(r"(.)\1{2,}")


@dataclass
class PolicyResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class StrengthResult:
    score: int
    feedback: List[str] = field(default_factory=list)


class CredentialStore:
    """Salted, slow one-way hashing of passwords and other short secrets.

    Hashing uses argon2id with a configurable cost. ``verify`` never raises
    on a malformed digest; it simply returns False. The async variants push
    the CPU-bound work to a worker thread so request handlers keep serving
    I/O while a hash is computed.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_digest: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "CredentialStore":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, digest: Optional[str]) -> bool:
        if not digest or not isinstance(digest, str) or secret is None:
            return False
        try:
            return self._hasher.verify(digest, secret)
        except (InvalidHash, VerificationError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except (InvalidHash, ValueError):
            return False

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, secret: str, digest: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, secret, digest)

    async def burn_verification(self, secret: str) -> None:
        """Spend the same work as a real verify when no digest exists.

        Used for unknown accounts so response timing does not reveal
        whether an email is registered.
        """
        if self._dummy_digest is None:
            self._dummy_digest = await self.hash_async(secrets.token_hex(16))
        await self.verify_async(secret, self._dummy_digest)


def validate_password_policy(password: str) -> PolicyResult:
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be less than {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not re.search(r"[^a-zA-Z\d]", password):
        errors.append("Password must contain at least one special character")
    lowered = password.lower()
    if any(common in lowered for common in COMMON_PASSWORDS):
        errors.append("Password contains common patterns that are not allowed")
    return PolicyResult(is_valid=not errors, errors=errors)


def password_strength(password: str) -> StrengthResult:
    """Score a password from 0 (weak) to 6 (strong) with hints for improvement."""
    score = 0
    feedback: List[str] = []

    if len(password) >= 8:
        score += 1
    else:
        feedback.append("Password should be at least 8 characters long")
    if len(password) >= 12:
        score += 1
    elif len(password) >= 8:
        feedback.append("Consider using a longer password (12+ characters)")

    if re.search(r"[a-z]", password):
        score += 1
    else:
        feedback.append("Add lowercase letters")
    if re.search(r"[A-Z]", password):
        score += 1
    else:
        feedback.append("Add uppercase letters")
    if re.search(r"\d", password):
        score += 1
    else:
        feedback.append("Add numbers")
    if re.search(r"[^a-zA-Z\d]", password):
        score += 1
    else:
        feedback.append("Add special characters")

    if any(p.search(password) for p in _COMMON_PATTERNS):
        score -= 2
        feedback.append("Avoid common patterns and dictionary words")
    if _REPEATED_CHARS.search(password):
        score -= 1
        feedback.append("Avoid repetitive characters")

    return StrengthResult(score=max(0, min(6, score)), feedback=feedback)


def generate_secure_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)
