from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.errors import InvalidConfiguration, TokenInvalid

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

ACCESS_TOKEN_TYPE = "at+jwt"
REFRESH_TOKEN_TYPE = "rt+jwt"


def parse_duration(value: str) -> timedelta:
    """Parse ``<integer><s|m|h|d>`` into a timedelta.

    >>> parse_duration("15m")
    datetime.timedelta(seconds=900)
    """
    match = _DURATION_RE.match((value or "").strip())
    if not match:
        raise InvalidConfiguration(f"Invalid duration format: {value!r}")
    amount, unit = match.groups()
    seconds = int(amount) * _UNIT_SECONDS[unit]
    if seconds <= 0:
        raise InvalidConfiguration(f"Duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> Dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
        }


class TokenIssuer:
    """Mints and verifies HS256-signed access and refresh tokens.

    Verification is a pure function of the token, the signing secret and
    the clock; it never consults storage. Whether the backing session is
    still alive is the session manager's concern.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Clock = utc_now,
    ) -> None:
        if not secret:
            raise InvalidConfiguration("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, *, clock: Clock = utc_now) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=parse_duration(settings.access_token_ttl),
            refresh_ttl=parse_duration(settings.refresh_token_ttl),
            clock=clock,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(
        self,
        claims: Dict[str, Any],
        ttl: timedelta,
        *,
        token_type: str = ACCESS_TOKEN_TYPE,
    ) -> str:
        expires_at = self._clock() + ttl
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": "HS256", "typ": token_type}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), default=str).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, expected_type: Optional[str] = ACCESS_TOKEN_TYPE) -> Dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalid("Malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            raise TokenInvalid("Malformed token") from None
        if not isinstance(header, dict):
            raise TokenInvalid("Malformed token")
        # Reject alg confusion ("none", RS256 with the HMAC key, ...)
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid("Unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected_sig, sig_b64.encode("utf-8", "replace")):
            raise TokenInvalid("Invalid token signature")
        if expected_type is not None and header.get("typ") != expected_type:
            raise TokenInvalid("Unexpected token type")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError:
            raise TokenInvalid("Malformed token") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("Malformed token")
        if payload.get("iss") != self.issuer:
            raise TokenInvalid("Token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid("Token audience mismatch")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise TokenInvalid("Token has no expiry")
        if exp <= self._clock().timestamp():
            raise TokenInvalid("Token expired")
        return payload

    def mint_pair(
        self,
        *,
        user_id: str,
        email: str,
        roles: Iterable[str],
        permissions: Iterable[str],
        session_id: str,
    ) -> TokenPair:
        now = self._clock()
        access = self.mint(
            {
                "sub": user_id,
                "email": email,
                "roles": list(roles),
                "permissions": sorted(permissions),
                "sid": session_id,
            },
            self.access_ttl,
            token_type=ACCESS_TOKEN_TYPE,
        )
        refresh = self.mint(
            {"sub": user_id, "sid": session_id},
            self.refresh_ttl,
            token_type=REFRESH_TOKEN_TYPE,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=(now + self.access_ttl).astimezone(timezone.utc),
            refresh_expires_at=(now + self.refresh_ttl).astimezone(timezone.utc),
        )
