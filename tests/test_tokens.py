"""Tests for token minting, verification and duration parsing."""

import base64
import json
from datetime import timedelta

import pytest

from authcore.service.errors import InvalidConfiguration, TokenInvalid
from authcore.service.tokens import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    TokenIssuer,
    parse_duration,
)

SECRET = "unit-test-signing-secret-0123456789abcdef"


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        SECRET,
        issuer="authcore-api",
        audience="authcore-client",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=30),
        clock=clock,
    )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _decode(segment: str) -> dict:
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("12h", timedelta(hours=12)),
            ("7d", timedelta(days=7)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "15", "m15", "1w", "-5m", "0s", "1.5h", "15 m"])
    def test_invalid(self, value):
        with pytest.raises(InvalidConfiguration):
            parse_duration(value)


class TestMintAndVerify:
    def test_access_token_round_trip(self, issuer):
        pair = issuer.mint_pair(
            user_id="u1",
            email="a@example.com",
            roles=["user"],
            permissions=["orders:read", "analytics:read"],
            session_id="s1",
        )
        claims = issuer.verify(pair.access_token)
        assert claims["sub"] == "u1"
        assert claims["email"] == "a@example.com"
        assert claims["roles"] == ["user"]
        assert claims["permissions"] == ["analytics:read", "orders:read"]
        assert claims["sid"] == "s1"
        assert claims["iss"] == "authcore-api"
        assert claims["aud"] == "authcore-client"

    def test_refresh_claims_are_minimal(self, issuer):
        pair = issuer.mint_pair(
            user_id="u1", email="a@example.com", roles=["user"], permissions=[], session_id="s1"
        )
        claims = issuer.verify(pair.refresh_token, expected_type=REFRESH_TOKEN_TYPE)
        assert set(claims) == {"sub", "sid", "iss", "aud", "exp"}

    def test_expires_after_ttl(self, issuer, clock):
        token = issuer.mint({"sub": "u1"}, timedelta(minutes=15))
        issuer.verify(token)
        clock.advance(minutes=14, seconds=59)
        issuer.verify(token)
        clock.advance(seconds=1)
        with pytest.raises(TokenInvalid, match="expired"):
            issuer.verify(token)

    def test_refresh_token_rejected_as_access(self, issuer):
        refresh = issuer.mint({"sub": "u1"}, timedelta(days=1), token_type=REFRESH_TOKEN_TYPE)
        with pytest.raises(TokenInvalid, match="type"):
            issuer.verify(refresh)

    def test_access_token_rejected_as_refresh(self, issuer):
        access = issuer.mint({"sub": "u1"}, timedelta(days=1), token_type=ACCESS_TOKEN_TYPE)
        with pytest.raises(TokenInvalid):
            issuer.verify(access, expected_type=REFRESH_TOKEN_TYPE)

    def test_tampered_payload_rejected(self, issuer):
        header, payload, sig = issuer.mint({"sub": "u1", "roles": ["user"]}, timedelta(hours=1)).split(".")
        claims = _decode(payload)
        claims["roles"] = ["admin"]
        with pytest.raises(TokenInvalid, match="signature"):
            issuer.verify(f"{header}.{_segment(claims)}.{sig}")

    def test_other_secret_rejected(self, issuer, clock):
        other = TokenIssuer(
            "a-completely-different-secret-value-000",
            issuer="authcore-api",
            audience="authcore-client",
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=1),
            clock=clock,
        )
        with pytest.raises(TokenInvalid):
            issuer.verify(other.mint({"sub": "u1"}, timedelta(minutes=5)))

    def test_alg_none_rejected(self, issuer):
        _, payload, _ = issuer.mint({"sub": "u1"}, timedelta(hours=1)).split(".")
        forged = f"{_segment({'alg': 'none', 'typ': ACCESS_TOKEN_TYPE})}.{payload}."
        with pytest.raises(TokenInvalid, match="algorithm"):
            issuer.verify(forged)

    def test_audience_mismatch(self, issuer, clock):
        foreign = TokenIssuer(
            SECRET,
            issuer="authcore-api",
            audience="someone-else",
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=1),
            clock=clock,
        )
        with pytest.raises(TokenInvalid, match="audience"):
            issuer.verify(foreign.mint({"sub": "u1"}, timedelta(minutes=5)))

    def test_issuer_mismatch(self, issuer, clock):
        foreign = TokenIssuer(
            SECRET,
            issuer="another-api",
            audience="authcore-client",
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=1),
            clock=clock,
        )
        with pytest.raises(TokenInvalid, match="issuer"):
            issuer.verify(foreign.mint({"sub": "u1"}, timedelta(minutes=5)))

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.###.$$$"])
    def test_malformed_rejected(self, issuer, token):
        with pytest.raises(TokenInvalid):
            issuer.verify(token)

    @pytest.mark.parametrize("sig", ["\u00e9\u00e9", "\u00ff" * 43, "\u2603"])
    def test_non_ascii_signature_rejected(self, issuer, sig):
        header, payload, _ = issuer.mint({"sub": "u1"}, timedelta(hours=1)).split(".")
        with pytest.raises(TokenInvalid, match="signature"):
            issuer.verify(f"{header}.{payload}.{sig}")

    def test_empty_secret_is_configuration_error(self, clock):
        with pytest.raises(InvalidConfiguration):
            TokenIssuer(
                "",
                issuer="i",
                audience="a",
                access_ttl=timedelta(minutes=1),
                refresh_ttl=timedelta(minutes=1),
                clock=clock,
            )

    def test_from_settings(self, settings, clock):
        issuer = TokenIssuer.from_settings(settings, clock=clock)
        assert issuer.access_ttl == timedelta(days=7)
        assert issuer.refresh_ttl == timedelta(days=30)

    def test_pair_expiry_times(self, issuer, clock):
        pair = issuer.mint_pair(
            user_id="u1", email="a@example.com", roles=[], permissions=[], session_id="s1"
        )
        assert pair.access_expires_at == clock() + timedelta(minutes=15)
        assert pair.refresh_expires_at == clock() + timedelta(days=30)
        assert pair.as_dict()["token_type"] == "bearer"
