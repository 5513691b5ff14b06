from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import secrets
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import quote, urlencode

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.credentials import CredentialStore
from authcore.service.errors import StateConflict, ValidationError
from authcore.service.notifications import LoggingSmsSender, SmsSender, redact_phone
from authcore.service.persistence import StoreGateway
from authcore.storage.models import BackupCode, SmsCode

logger = get_logger(__name__)

SMS_CODE_DIGITS = 6
BACKUP_CODE_BYTES = 4
BACKUP_CODE_RE = re.compile(r"[0-9A-F]{%d}" % (BACKUP_CODE_BYTES * 2))


@dataclass
class Enrollment:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class TwoFactorStatus:
    enabled: bool
    has_secret: bool
    backup_codes_remaining: int


def normalize_code(code: Optional[str]) -> str:
    return "".join((code or "").split()).replace("-", "")


class MfaService:
    """Second-factor proofs: TOTP, SMS one-time codes and backup codes.

    The three mechanisms are independent; callers decide which to try and
    in what order. Every ``verify`` returns False on malformed input rather
    than raising.
    """

    def __init__(
        self,
        db: StoreGateway,
        credentials: CredentialStore,
        *,
        sms_sender: Optional[SmsSender] = None,
        clock: Clock = utc_now,
        issuer: str = "Authcore",
        interval: int = 30,
        digits: int = 6,
        skew_steps: int = 1,
        sms_code_ttl: timedelta = timedelta(minutes=5),
        backup_code_count: int = 10,
    ) -> None:
        self.db = db
        self.credentials = credentials
        self.sms_sender: SmsSender = sms_sender or LoggingSmsSender()
        self._clock = clock
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.skew_steps = skew_steps
        self.sms_code_ttl = sms_code_ttl
        self.backup_code_count = backup_code_count

    # time-based codes
    def generate_secret(self) -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, label: str) -> str:
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{quote(self.issuer)}:{quote(label)}?{query}"

    def generate_enrollment(self, identity_label: str) -> Enrollment:
        secret = self.generate_secret()
        return Enrollment(
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, identity_label),
            backup_codes=self.generate_backup_codes(),
        )

    def totp_at(self, secret: str, at: datetime) -> str:
        """RFC 6238 code for the time step containing ``at``; empty if the secret is unusable."""
        cleaned = (secret or "").replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        if not key:
            return ""
        counter = int(at.timestamp()) // self.interval
        digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify_totp(self, secret: Optional[str], code: Optional[str]) -> bool:
        candidate = normalize_code(code)
        if not secret or len(candidate) != self.digits:
            return False
        if not (candidate.isascii() and candidate.isdigit()):
            return False
        now = self._clock()
        matched = False
        # Check every step in the window so timing does not depend on which matched
        for step in range(-self.skew_steps, self.skew_steps + 1):
            expected = self.totp_at(secret, now + timedelta(seconds=step * self.interval))
            if expected and hmac.compare_digest(expected, candidate):
                matched = True
        return matched

    async def verify_user_totp(self, user_id: str, code: Optional[str]) -> bool:
        user = await self.db.call("get_user", user_id)
        if not user or not user.two_factor_enabled or not user.two_factor_secret:
            return False
        return self.verify_totp(user.two_factor_secret, code)

    async def enable(self, user_id: str, secret: str, confirmation_code: str) -> bool:
        """Turn on TOTP only after the caller proves the secret works."""
        user = await self.db.call("get_user", user_id)
        if user is None:
            return False
        if user.two_factor_enabled:
            raise StateConflict("Two-factor authentication is already enabled")
        if not self.verify_totp(secret, confirmation_code):
            logger.info("two_factor_enable_rejected", user_id=user_id)
            return False
        await self.db.call("set_two_factor", user_id, enabled=True, secret=secret)
        logger.info("two_factor_enabled", user_id=user_id)
        return True

    async def disable(self, user_id: str) -> None:
        await self.db.call("set_two_factor", user_id, enabled=False, secret=None)
        logger.warning("two_factor_disabled", user_id=user_id)

    async def status(self, user_id: str) -> TwoFactorStatus:
        user = await self.db.call("get_user", user_id)
        remaining = await self.db.call("count_unused_backup_codes", user_id)
        return TwoFactorStatus(
            enabled=bool(user and user.two_factor_enabled),
            has_secret=bool(user and user.two_factor_secret),
            backup_codes_remaining=remaining,
        )

    # sms codes
    def generate_sms_code(self) -> str:
        return str(secrets.randbelow(10**SMS_CODE_DIGITS)).zfill(SMS_CODE_DIGITS)

    async def issue_sms_code(self, phone: str, code: str) -> SmsCode:
        now = self._clock()
        sms = SmsCode(phone=phone, code=code, expires_at=now + self.sms_code_ttl, created_at=now)
        await self.db.call("replace_sms_code", sms)
        return sms

    async def send_sms_code(self, phone: str) -> bool:
        code = self.generate_sms_code()
        await self.issue_sms_code(phone, code)
        minutes = int(self.sms_code_ttl.total_seconds() // 60)
        message = (
            f"Your verification code is: {code}. "
            f"This code will expire in {minutes} minutes."
        )
        sent = await self.sms_sender.send_sms(phone, message)
        if not sent:
            logger.error("sms_code_send_failed", phone=redact_phone(phone))
        return sent

    async def verify_sms_code(self, phone: str, code: Optional[str]) -> bool:
        candidate = normalize_code(code)
        if not phone or not candidate:
            return False
        return await self.db.call("consume_sms_code", phone, candidate, self._clock())

    async def cleanup_expired_sms_codes(self) -> int:
        removed = await self.db.call("delete_expired_sms_codes", self._clock())
        if removed:
            logger.info("expired_sms_codes_removed", count=removed)
        return removed

    # backup codes
    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        total = count if count is not None else self.backup_code_count
        return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(total)]

    def check_backup_codes(self, codes: List[str]) -> List[str]:
        """Normalize a client-held set of backup codes, rejecting anything we would not issue."""
        normalized = [normalize_code(c).upper() for c in codes]
        if (
            len(normalized) != self.backup_code_count
            or len(set(normalized)) != len(normalized)
            or not all(BACKUP_CODE_RE.fullmatch(c) for c in normalized)
        ):
            raise ValidationError(
                "Backup codes are malformed",
                detail={
                    "count": self.backup_code_count,
                    "length": BACKUP_CODE_BYTES * 2,
                },
            )
        return normalized

    async def store_backup_codes(self, user_id: str, codes: List[str]) -> None:
        """Persist one-way hashes of ``codes``, replacing any earlier set."""
        now = self._clock()
        hashes = await asyncio.to_thread(
            lambda: [self.credentials.hash(normalize_code(c).upper()) for c in codes]
        )
        rows = [BackupCode(user_id=user_id, code_hash=h, created_at=now) for h in hashes]
        await self.db.call("replace_backup_codes", user_id, rows)

    async def verify_backup_code(self, user_id: str, code: Optional[str]) -> bool:
        candidate = normalize_code(code).upper()
        if not candidate:
            return False
        consumed = await self.db.call(
            "consume_backup_code",
            user_id,
            lambda digest: self.credentials.verify(candidate, digest),
            self._clock(),
        )
        if consumed:
            logger.info("backup_code_consumed", user_id=user_id)
        return consumed

    async def remaining_backup_codes(self, user_id: str) -> int:
        return await self.db.call("count_unused_backup_codes", user_id)

    async def clear_backup_codes(self, user_id: str) -> None:
        await self.db.call("delete_backup_codes", user_id)
