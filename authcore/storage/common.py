from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.models import (
    BackupCode,
    Role,
    SecurityEvent,
    Session,
    SmsCode,
    TokenPurpose,
    User,
    VerificationToken,
)

logger = get_logger(__name__)


class SecretCipher:
    """Symmetric encryption for two-factor secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("cipher key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if ciphertext is None:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            # Key rotated or row tampered with; treat as no secret enrolled
            logger.error("mfa_secret_decrypt_failed")
            return None


class AuthStore(Protocol):
    """Persistence contract used by the authentication services.

    Every method is synchronous; services call them through
    ``StoreGateway`` so that each call is bounded by a timeout. Methods
    documented as atomic must be a single indivisible step against
    concurrent callers.
    """

    # principals
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, user_id: str) -> None: ...

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str]
    ) -> None: ...

    def assign_role(self, user_id: str, role_name: str) -> None: ...

    # lockout (atomic)
    def register_failed_attempt(
        self, user_id: str, threshold: int, lock_until: datetime
    ) -> int: ...

    def record_successful_login(self, user_id: str, at: datetime) -> None: ...

    def set_lock(self, user_id: str, locked_until: Optional[datetime]) -> None: ...

    # roles
    def upsert_role(self, role: Role) -> Role: ...

    def get_role(self, name: str) -> Optional[Role]: ...

    def list_roles(self, names: Optional[Sequence[str]] = None) -> List[Role]: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def list_sessions_created_since(
        self, user_id: str, since: datetime
    ) -> List[Session]: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    # backup codes
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None: ...

    def consume_backup_code(
        self, user_id: str, matches: Callable[[str], bool], used_at: datetime
    ) -> bool: ...

    def count_unused_backup_codes(self, user_id: str) -> int: ...

    def delete_backup_codes(self, user_id: str) -> None: ...

    # sms codes
    def replace_sms_code(self, sms: SmsCode) -> None: ...

    def consume_sms_code(self, phone: str, code: str, now: datetime) -> bool: ...

    def delete_expired_sms_codes(self, now: datetime) -> int: ...

    # password reset / email verification tokens
    def save_verification_token(self, token: VerificationToken) -> None: ...

    def consume_verification_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[str]: ...

    # audit log (append-only)
    def append_security_event(self, event: SecurityEvent) -> None: ...

    def list_security_events(
        self,
        since: Optional[datetime] = None,
        *,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_token(token: str) -> str:
    """Digest used to persist opaque single-use tokens."""
    return hashlib.sha256(token.encode()).hexdigest()
