from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from authcore.clock import utc_now


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def escalates(self) -> bool:
        return self in (Severity.HIGH, Severity.CRITICAL)


class EventType(str, Enum):
    """Closed set of security event kinds written to the audit log."""

    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_LOCKED = "LOGIN_LOCKED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    TWO_FACTOR_BACKUP_USED = "TWO_FACTOR_BACKUP_USED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_REVOKED = "SESSION_REVOKED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool = False
    two_factor_enabled: bool = False
    # Plaintext only in memory; stores encrypt it at rest
    two_factor_secret: Optional[str] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Role:
    name: str
    description: str = ""
    permissions: List[str] = field(default_factory=list)


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    refresh_token: str
    created_at: datetime
    expires_at: datetime
    last_used_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class BackupCode:
    user_id: str
    code_hash: str
    id: str = field(default_factory=_new_id)
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SmsCode:
    phone: str
    code: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class VerificationToken:
    """Single-use password-reset or email-verification token, stored hashed."""

    token_hash: str
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SecurityEvent:
    type: EventType
    severity: Severity
    user_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utc_now)
