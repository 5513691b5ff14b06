from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, NoReturn, Optional

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.audit import ActivityAuditor, SecurityStatistics
from authcore.service.credentials import (
    CredentialStore,
    generate_secure_token,
    validate_password_policy,
)
from authcore.service.errors import (
    AccountLocked,
    AuthRequired,
    EmailNotVerified,
    InvalidCredentials,
    SessionInvalid,
    StateConflict,
    TransientError,
    TwoFactorInvalid,
    TwoFactorRequired,
    ValidationError,
)
from authcore.service.heuristics import SuspiciousActivityDetector
from authcore.service.lockout import LockoutGuard
from authcore.service.mfa import Enrollment, MfaService, TwoFactorStatus
from authcore.service.notifications import AccountMailer, redact_email
from authcore.service.permissions import (
    DEFAULT_USER_ROLE,
    PermissionResolver,
    Principal,
    from_claim,
)
from authcore.service.persistence import StoreGateway
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionInfo, SessionManager
from authcore.service.tokens import REFRESH_TOKEN_TYPE, TokenIssuer, TokenPair
from authcore.storage.common import hash_token, normalize_email
from authcore.storage.models import (
    EventType,
    SecurityEvent,
    Session,
    Severity,
    TokenPurpose,
    User,
    VerificationToken,
)

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Failed attempts at or above this are logged as medium severity
ELEVATED_FAILURE_COUNT = 3


@dataclass
class AuthContext:
    """Identity attached to an authenticated request."""

    user: User
    session_id: str
    principal: Principal
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.user.id


@dataclass
class LoginResult:
    user: User
    session: Session
    tokens: TokenPair
    principal: Principal
    second_factor: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user": {
                "id": self.user.id,
                "email": self.user.email,
                "name": self.user.name,
                "roles": list(self.principal.roles),
                "two_factor_enabled": self.user.two_factor_enabled,
            },
            "session_id": self.session.id,
            "permissions": self.principal.permissions.as_claim(),
            **self.tokens.as_dict(),
        }


class AuthService:
    """Login, registration and account-security flows.

    Composes the credential, token, session, lockout, MFA and audit
    services. Every authentication failure is written to the audit log
    before the corresponding error is raised.
    """

    def __init__(
        self,
        db: StoreGateway,
        *,
        credentials: CredentialStore,
        tokens: TokenIssuer,
        sessions: SessionManager,
        lockout: LockoutGuard,
        mfa: MfaService,
        auditor: ActivityAuditor,
        permissions: Optional[PermissionResolver] = None,
        detector: Optional[SuspiciousActivityDetector] = None,
        mailer: Optional[AccountMailer] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Clock = utc_now,
        require_verified_email: bool = True,
        password_reset_ttl: timedelta = timedelta(minutes=60),
        email_verification_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self.db = db
        self.credentials = credentials
        self.tokens = tokens
        self.sessions = sessions
        self.lockout = lockout
        self.mfa = mfa
        self.auditor = auditor
        self.permissions = permissions or PermissionResolver()
        self.detector = detector
        self.mailer = mailer
        self.rate_limiter = rate_limiter
        self._clock = clock
        self.require_verified_email = require_verified_email
        self.password_reset_ttl = password_reset_ttl
        self.email_verification_ttl = email_verification_ttl

    # helpers
    async def _get_user(self, user_id: str) -> User:
        user = await self.db.call("get_user", user_id)
        if user is None:
            raise AuthRequired("Authentication required")
        return user

    async def principal_for(self, user: User) -> Principal:
        roles = await self.db.call("list_roles", user.roles)
        return self.permissions.resolve(user.id, roles)

    async def _issue(self, user: User, session: Session) -> tuple[TokenPair, Principal]:
        principal = await self.principal_for(user)
        pair = self.tokens.mint_pair(
            user_id=user.id,
            email=user.email,
            roles=principal.roles,
            permissions=principal.permissions.as_claim(),
            session_id=session.id,
        )
        return pair, principal

    async def _fail(
        self,
        user: Optional[User],
        reason: str,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        count_attempt: bool = True,
    ) -> NoReturn:
        """Record a failed proof for ``user`` and raise the matching error.

        Counting failures may lock the account, in which case the lock is
        reported instead of the original reason.
        """
        user_id = user.id if user else None
        attempts = 0
        if user is not None and count_attempt:
            attempts = await self.lockout.record_failure(user.id)
            if self.lockout.crossed_threshold(attempts):
                minutes = int(self.lockout.lock_duration.total_seconds() // 60)
                await self.auditor.log(
                    EventType.LOGIN_LOCKED,
                    Severity.HIGH,
                    user_id=user_id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    metadata={"reason": reason, "lock_minutes": minutes},
                )
                raise AccountLocked(
                    "Account temporarily locked due to too many failed attempts"
                )
        severity = Severity.MEDIUM if attempts >= ELEVATED_FAILURE_COUNT else Severity.LOW
        await self.auditor.log(
            EventType.LOGIN_FAILED,
            severity,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata={"reason": reason},
        )
        if reason in ("two_factor_invalid", "two_factor_confirmation_failed"):
            raise TwoFactorInvalid("Invalid two-factor authentication code")
        raise InvalidCredentials("Invalid email or password")

    # login
    async def login(
        self,
        email: str,
        password: str,
        *,
        totp_code: Optional[str] = None,
        backup_code: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if not email or not password:
            raise ValidationError("Email and password are required")
        user = await self.db.call("get_user_by_email", normalize_email(email))
        if user is None:
            await self.credentials.burn_verification(password)
            logger.info("login_unknown_email", email=redact_email(normalize_email(email)))
            await self._fail(None, "unknown_email", ip_addr=ip_addr, user_agent=user_agent)

        if self.lockout.is_locked(user):
            await self.auditor.log(
                EventType.LOGIN_FAILED,
                Severity.MEDIUM,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                metadata={"reason": "account_locked"},
            )
            raise AccountLocked("Account is temporarily locked, please try again later")

        if not await self.credentials.verify_async(password, user.password_hash):
            await self._fail(user, "invalid_password", ip_addr=ip_addr, user_agent=user_agent)

        if self.require_verified_email and not user.email_verified:
            await self.auditor.log(
                EventType.LOGIN_FAILED,
                Severity.LOW,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                metadata={"reason": "email_not_verified"},
            )
            raise EmailNotVerified("Please verify your email address before logging in")

        second_factor = None
        if user.two_factor_enabled:
            second_factor = await self._require_second_factor(
                user, totp_code, backup_code, ip_addr=ip_addr, user_agent=user_agent
            )

        session = await self.sessions.create(user.id, ip_addr, user_agent)
        tokens, principal = await self._issue(user, session)
        await self.lockout.record_success(user.id)
        await self.auditor.log(
            EventType.LOGIN_SUCCESS,
            Severity.LOW,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata={"session_id": session.id, "second_factor": second_factor},
        )
        await self._check_suspicious(user, session, ip_addr, user_agent)
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(
            user=user,
            session=session,
            tokens=tokens,
            principal=principal,
            second_factor=second_factor,
        )

    async def _check_suspicious(
        self,
        user: User,
        session: Session,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        if self.detector is None:
            return
        try:
            report = await self.detector.check(
                user.id, ip_addr, user_agent, current_session_id=session.id
            )
            if report.suspicious:
                await self.auditor.log(
                    EventType.SUSPICIOUS_ACTIVITY,
                    Severity.HIGH,
                    user_id=user.id,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    metadata={"reason": report.reason, "session_id": session.id},
                )
        except TransientError as exc:
            # Heuristics are advisory; the login has already succeeded
            logger.warning("suspicious_check_skipped", user_id=user.id, error=exc.message)

    async def _second_factor_matches(
        self,
        user: User,
        totp_code: Optional[str],
        backup_code: Optional[str],
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> Optional[str]:
        if totp_code and self.mfa.verify_totp(user.two_factor_secret, totp_code):
            return "totp"
        if backup_code and await self.mfa.verify_backup_code(user.id, backup_code):
            remaining = await self.mfa.remaining_backup_codes(user.id)
            await self.auditor.log(
                EventType.TWO_FACTOR_BACKUP_USED,
                Severity.MEDIUM,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                metadata={"remaining": remaining},
            )
            return "backup_code"
        return None

    async def _require_second_factor(
        self,
        user: User,
        totp_code: Optional[str],
        backup_code: Optional[str],
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> str:
        if not totp_code and not backup_code:
            await self.auditor.log(
                EventType.LOGIN_FAILED,
                Severity.LOW,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                metadata={"reason": "two_factor_required"},
            )
            raise TwoFactorRequired("Two-factor authentication code required")
        method = await self._second_factor_matches(
            user, totp_code, backup_code, ip_addr=ip_addr, user_agent=user_agent
        )
        if method is None:
            await self._fail(user, "two_factor_invalid", ip_addr=ip_addr, user_agent=user_agent)
        return method

    async def verify_second_factor(
        self,
        user_id: str,
        totp_code: Optional[str] = None,
        backup_code: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Check a fresh second-factor proof for an already authenticated user.

        Returns the mechanism that validated, or None when the user has not
        enabled two-factor authentication.
        """
        user = await self._get_user(user_id)
        if not user.two_factor_enabled:
            return None
        return await self._require_second_factor(
            user, totp_code, backup_code, ip_addr=ip_addr, user_agent=user_agent
        )

    # registration
    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise ValidationError("A valid email address is required")
        policy = validate_password_policy(password or "")
        if not policy.is_valid:
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": policy.errors}
            )
        if await self.db.call("get_user_by_email", email) is not None:
            raise StateConflict("An account with this email already exists")

        password_hash = await self.credentials.hash_async(password)
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            name=name,
            phone=phone,
            created_at=self._clock(),
        )
        await self.db.call("create_user", user)
        await self.db.call("assign_role", user.id, DEFAULT_USER_ROLE)
        user = await self._get_user(user.id)
        await self.auditor.log(
            EventType.ACCOUNT_CREATED,
            Severity.LOW,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        logger.info("user_registered", user_id=user.id)
        if not user.email_verified:
            await self._send_verification(user)
        return user

    # tokens and sessions
    async def authenticate(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify(access_token)
        resolved = await self.sessions.validate_session(claims.get("sid", ""))
        if resolved is None:
            raise SessionInvalid("Session expired or revoked")
        session, user = resolved
        if session.user_id != claims.get("sub"):
            raise SessionInvalid("Session expired or revoked")
        if self.lockout.is_locked(user):
            raise AccountLocked("Account is temporarily locked, please try again later")
        principal = Principal(
            user_id=user.id,
            roles=tuple(claims.get("roles") or ()),
            permissions=from_claim(claims.get("permissions") or ()),
        )
        return AuthContext(user=user, session_id=session.id, principal=principal, claims=claims)

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Exchange a refresh token for a new pair backed by a new session.

        The old session is deleted first; if another request already
        rotated it the delete reports nothing removed and this call fails.
        """
        if not refresh_token:
            raise AuthRequired("Refresh token required")
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH_TOKEN_TYPE)
        session = await self.sessions.get_live(claims.get("sid", ""))
        if session is None or session.user_id != claims.get("sub"):
            raise SessionInvalid("Session expired or revoked")
        user = await self.db.call("get_user", session.user_id)
        if user is None:
            raise SessionInvalid("Session expired or revoked")
        if self.lockout.is_locked(user):
            raise AccountLocked("Account is temporarily locked, please try again later")
        if not await self.sessions.revoke(session.id):
            raise SessionInvalid("Session expired or revoked")

        rotated = await self.sessions.create(
            user.id, ip_addr or session.ip_addr, user_agent or session.user_agent
        )
        tokens, principal = await self._issue(user, rotated)
        await self.auditor.log(
            EventType.SESSION_CREATED,
            Severity.LOW,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata={"session_id": rotated.id, "rotated_from": session.id},
        )
        return LoginResult(user=user, session=rotated, tokens=tokens, principal=principal)

    async def logout(
        self,
        user_id: str,
        session_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await self.sessions.revoke(session_id)
        await self.auditor.log(
            EventType.SESSION_REVOKED,
            Severity.LOW,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata={"session_id": session_id, "scope": "current"},
        )

    async def logout_all(
        self,
        user_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        count = await self.sessions.revoke_all(user_id)
        await self.auditor.log(
            EventType.SESSION_REVOKED,
            Severity.MEDIUM,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata={"scope": "all", "count": count},
        )
        return count

    async def revoke_session(
        self,
        user_id: str,
        session_id: str,
        *,
        current_session_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if session_id == current_session_id:
            raise ValidationError("Cannot revoke the current session, use logout instead")
        session = await self.db.call("get_session", session_id)
        if session is None or session.user_id != user_id:
            raise ValidationError("Session not found", status_code=404, error_code="NOT_FOUND")
        await self.sessions.revoke(session_id)
        await self.auditor.log(
            EventType.SESSION_REVOKED,
            Severity.LOW,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata={"session_id": session_id, "scope": "single"},
        )

    async def list_sessions(
        self, user_id: str, *, current_session_id: Optional[str] = None
    ) -> List[SessionInfo]:
        return await self.sessions.list_for_user(user_id, current_session_id=current_session_id)

    async def login_history(self, user_id: str, *, limit: int = 10) -> List[SessionInfo]:
        return await self.sessions.login_history(user_id, limit=limit)

    async def sweep_expired(self) -> Dict[str, int]:
        return {
            "sessions": await self.sessions.cleanup_expired(),
            "sms_codes": await self.mfa.cleanup_expired_sms_codes(),
            "rate_limit_counters": self.rate_limiter.sweep() if self.rate_limiter else 0,
        }

    # passwords
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Change the password and end every other session; returns how many ended."""
        user = await self._get_user(user_id)
        policy = validate_password_policy(new_password or "")
        if not policy.is_valid:
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": policy.errors}
            )
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password")
        if not await self.credentials.verify_async(current_password or "", user.password_hash):
            await self.auditor.log(
                EventType.LOGIN_FAILED,
                Severity.MEDIUM,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                metadata={"reason": "password_change_rejected"},
            )
            raise InvalidCredentials("Current password is incorrect")

        await self.db.call(
            "update_password", user.id, await self.credentials.hash_async(new_password)
        )
        revoked = await self.sessions.revoke_all(user.id, except_session_id=current_session_id)
        await self.auditor.log(
            EventType.PASSWORD_CHANGED,
            Severity.HIGH,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            metadata={"sessions_revoked": revoked},
        )
        return revoked

    async def _issue_token(self, user: User, purpose: TokenPurpose, ttl: timedelta) -> str:
        token = generate_secure_token()
        now = self._clock()
        await self.db.call(
            "save_verification_token",
            VerificationToken(
                token_hash=hash_token(token),
                user_id=user.id,
                purpose=purpose,
                expires_at=now + ttl,
                created_at=now,
            ),
        )
        return token

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Start a reset; completes identically whether or not the account exists."""
        user = await self.db.call("get_user_by_email", normalize_email(email or ""))
        if user is None:
            logger.info("password_reset_unknown_email", email=redact_email(normalize_email(email or "")))
            return
        token = await self._issue_token(user, TokenPurpose.PASSWORD_RESET, self.password_reset_ttl)
        if self.mailer is not None:
            if not await self.mailer.send_password_reset(user.email, token):
                logger.error("password_reset_email_failed", user_id=user.id)
        await self.auditor.log(
            EventType.PASSWORD_RESET_REQUESTED,
            Severity.MEDIUM,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    async def complete_password_reset(
        self,
        token: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        policy = validate_password_policy(new_password or "")
        if not policy.is_valid:
            raise ValidationError(
                "Password does not meet requirements", detail={"errors": policy.errors}
            )
        user_id = None
        if token:
            user_id = await self.db.call(
                "consume_verification_token",
                hash_token(token),
                TokenPurpose.PASSWORD_RESET,
                self._clock(),
            )
        if user_id is None:
            logger.warning("password_reset_invalid_token")
            raise ValidationError("Invalid or expired reset token")

        await self.db.call(
            "update_password", user_id, await self.credentials.hash_async(new_password)
        )
        await self.lockout.unlock(user_id)
        await self.sessions.revoke_all(user_id)
        await self.auditor.log(
            EventType.PASSWORD_RESET_COMPLETED,
            Severity.MEDIUM,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    # email verification
    async def _send_verification(self, user: User) -> None:
        token = await self._issue_token(
            user, TokenPurpose.EMAIL_VERIFICATION, self.email_verification_ttl
        )
        if self.mailer is not None:
            if not await self.mailer.send_email_verification(user.email, token):
                logger.error("verification_email_failed", user_id=user.id)

    async def request_email_verification(self, email: str) -> None:
        user = await self.db.call("get_user_by_email", normalize_email(email or ""))
        if user is None or user.email_verified:
            return
        await self._send_verification(user)

    async def complete_email_verification(
        self,
        token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user_id = None
        if token:
            user_id = await self.db.call(
                "consume_verification_token",
                hash_token(token),
                TokenPurpose.EMAIL_VERIFICATION,
                self._clock(),
            )
        if user_id is None:
            logger.warning("email_verification_invalid_token")
            raise ValidationError("Invalid or expired verification token")
        await self.db.call("mark_email_verified", user_id)
        await self.auditor.log(
            EventType.EMAIL_VERIFIED,
            Severity.LOW,
            user_id=user_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    # two-factor enrollment
    async def begin_two_factor(self, user_id: str) -> Enrollment:
        user = await self._get_user(user_id)
        if user.two_factor_enabled:
            raise StateConflict("Two-factor authentication is already enabled")
        return self.mfa.generate_enrollment(user.email)

    async def confirm_two_factor(
        self,
        user_id: str,
        secret: str,
        code: str,
        backup_codes: Optional[List[str]] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        """Enable TOTP once ``code`` proves the secret; returns the backup codes stored."""
        user = await self._get_user(user_id)
        if backup_codes is not None:
            backup_codes = self.mfa.check_backup_codes(backup_codes)
        if not await self.mfa.enable(user.id, secret, code):
            await self._fail(
                user,
                "two_factor_confirmation_failed",
                ip_addr=ip_addr,
                user_agent=user_agent,
                count_attempt=False,
            )
        codes = backup_codes if backup_codes is not None else self.mfa.generate_backup_codes()
        await self.mfa.store_backup_codes(user.id, codes)
        await self.auditor.log(
            EventType.TWO_FACTOR_ENABLED,
            Severity.MEDIUM,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return codes

    async def disable_two_factor(
        self,
        user_id: str,
        password: str,
        *,
        totp_code: Optional[str] = None,
        backup_code: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user = await self._get_user(user_id)
        if not user.two_factor_enabled:
            raise StateConflict("Two-factor authentication is not enabled")
        if not await self.credentials.verify_async(password or "", user.password_hash):
            await self._fail(user, "invalid_password", ip_addr=ip_addr, user_agent=user_agent)
        await self._require_second_factor(
            user, totp_code, backup_code, ip_addr=ip_addr, user_agent=user_agent
        )
        await self.mfa.disable(user.id)
        await self.mfa.clear_backup_codes(user.id)
        await self.auditor.log(
            EventType.TWO_FACTOR_DISABLED,
            Severity.HIGH,
            user_id=user.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    async def regenerate_backup_codes(
        self,
        user_id: str,
        totp_code: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        user = await self._get_user(user_id)
        if not user.two_factor_enabled:
            raise StateConflict("Two-factor authentication is not enabled")
        if not self.mfa.verify_totp(user.two_factor_secret, totp_code):
            await self._fail(user, "two_factor_invalid", ip_addr=ip_addr, user_agent=user_agent)
        codes = self.mfa.generate_backup_codes()
        await self.mfa.store_backup_codes(user.id, codes)
        logger.info("backup_codes_regenerated", user_id=user.id, count=len(codes))
        return codes

    async def two_factor_status(self, user_id: str) -> TwoFactorStatus:
        return await self.mfa.status(user_id)

    async def send_sms_code(self, user_id: str) -> bool:
        user = await self._get_user(user_id)
        if not user.phone:
            raise ValidationError("No phone number on file")
        return await self.mfa.send_sms_code(user.phone)

    async def verify_sms_code(self, user_id: str, code: str) -> bool:
        user = await self._get_user(user_id)
        if not user.phone:
            return False
        return await self.mfa.verify_sms_code(user.phone, code)

    # audit views
    async def security_events(self, user_id: str, *, limit: int = 50) -> List[SecurityEvent]:
        return await self.auditor.user_events(user_id, limit=limit)

    async def security_statistics(self, window_days: int = 7) -> SecurityStatistics:
        return await self.auditor.statistics(window_days)
