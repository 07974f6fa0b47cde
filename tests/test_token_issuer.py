"""Unit tests for access/refresh token minting and verification."""

import base64
import hashlib
import hmac
import json
from datetime import timedelta

import pytest

from staffauth.config import Settings
from staffauth.service.tokens import TokenIssuer, permissions_for_role, user_id_from_claims
from staffauth.storage.models import PERMISSION_CLAIMS, Account, Role, utcnow


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def viewer_role():
    return Role(id="role-1", name="Viewer", can_view_employees=True)


@pytest.fixture
def staff_account():
    return Account(
        id="user-1",
        username="asmith",
        email="asmith@example.com",
        password_hash="x",
        role_id="role-1",
    )


def _segments(token):
    header, payload, sig = token.split(".")
    pad = lambda s: s + "=" * ((4 - len(s) % 4) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header))),
        json.loads(base64.urlsafe_b64decode(pad(payload))),
        sig,
    )


def _encode(obj):
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


class TestIssueAccessToken:
    def test_claims_carry_identity_and_role(self, issuer, staff_account, viewer_role, settings):
        token, expires_at = issuer.issue_access_token(staff_account, viewer_role)
        header, claims, _ = _segments(token)

        assert header == {"alg": "HS256", "typ": "JWT"}
        assert claims["sub"] == "user-1"
        assert claims["user_id"] == "user-1"
        assert claims["unique_name"] == "asmith"
        assert claims["email"] == "asmith@example.com"
        assert claims["role_id"] == "role-1"
        assert claims["role_name"] == "Viewer"
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["exp"] == int(expires_at.timestamp())

    def test_permission_claims_match_role_flags_exactly(self, issuer, staff_account, viewer_role):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        claims = issuer.validate_access_token(token)

        assert claims["permission"] == ["view_employees"]

    def test_role_without_flags_yields_empty_permission_list(self, issuer, staff_account):
        token, _ = issuer.issue_access_token(staff_account, Role(id="r", name="Nobody"))
        assert issuer.validate_access_token(token)["permission"] == []

    def test_every_flag_maps_to_its_claim(self, issuer, staff_account):
        role = Role(id="r", name="All", **{flag: True for flag, _ in PERMISSION_CLAIMS})
        token, _ = issuer.issue_access_token(staff_account, role)
        claims = issuer.validate_access_token(token)
        assert claims["permission"] == [claim for _, claim in PERMISSION_CLAIMS]

    def test_each_token_gets_a_fresh_jti(self, issuer, staff_account, viewer_role):
        first, _ = issuer.issue_access_token(staff_account, viewer_role)
        second, _ = issuer.issue_access_token(staff_account, viewer_role)
        assert _segments(first)[1]["jti"] != _segments(second)[1]["jti"]

    def test_expiry_follows_configured_ttl(self, staff_account, viewer_role, settings):
        now = utcnow().replace(microsecond=0)
        issuer = TokenIssuer(settings, clock=lambda: now)
        _, expires_at = issuer.issue_access_token(staff_account, viewer_role)
        assert expires_at == now + timedelta(minutes=settings.access_token_ttl_minutes)


class TestRefreshToken:
    def test_refresh_token_is_opaque_and_unique(self, issuer):
        first, _ = issuer.issue_refresh_token()
        second, _ = issuer.issue_refresh_token()
        assert first != second
        assert "." not in first
        # 32 random bytes, base64url without padding
        assert len(first) == 43

    def test_refresh_expiry_in_days(self, settings):
        now = utcnow()
        issuer = TokenIssuer(settings, clock=lambda: now)
        _, expires_at = issuer.issue_refresh_token()
        assert expires_at == now + timedelta(days=settings.refresh_token_ttl_days)


class TestValidateAccessToken:
    def test_round_trip(self, issuer, staff_account, viewer_role):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        claims = issuer.validate_access_token(token)
        assert user_id_from_claims(claims) == "user-1"

    def test_wrong_key_rejected(self, issuer, staff_account, viewer_role, settings):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        other = TokenIssuer(
            settings.model_copy(update={"jwt_secret": "another-secret-that-is-long-enough-1234"})
        )
        assert other.validate_access_token(token) is None

    def test_expired_token_rejected(self, staff_account, viewer_role, settings):
        issued_at = utcnow() - timedelta(minutes=settings.access_token_ttl_minutes + 1)
        token, _ = TokenIssuer(settings, clock=lambda: issued_at).issue_access_token(
            staff_account, viewer_role
        )
        assert TokenIssuer(settings).validate_access_token(token) is None

    def test_no_clock_skew_allowance(self, staff_account, viewer_role, settings):
        now = utcnow()
        token, expires_at = TokenIssuer(settings, clock=lambda: now).issue_access_token(
            staff_account, viewer_role
        )
        at_expiry = TokenIssuer(settings, clock=lambda: expires_at + timedelta(seconds=1))
        assert at_expiry.validate_access_token(token) is None

    def test_algorithm_swap_rejected(self, issuer, staff_account, viewer_role):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        _, payload, sig = token.split(".")
        forged = ".".join([_encode({"alg": "none", "typ": "JWT"}), payload, sig])
        assert issuer.validate_access_token(forged) is None

    def test_non_hs256_header_rejected_even_with_valid_signature(
        self, issuer, staff_account, viewer_role, settings
    ):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        _, payload, _ = token.split(".")
        header = _encode({"alg": "HS512", "typ": "JWT"})
        digest = hmac.new(
            settings.jwt_secret.encode(), f"{header}.{payload}".encode(), hashlib.sha256
        ).digest()
        signature = base64.urlsafe_b64encode(digest).decode().rstrip("=")

        assert issuer.validate_access_token(f"{header}.{payload}.{signature}") is None

    def test_tampered_payload_rejected(self, issuer, staff_account, viewer_role):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        header, claims, sig = _segments(token)
        claims["permission"] = ["admin_access"]
        forged = ".".join([_encode(header), _encode(claims), sig])
        assert issuer.validate_access_token(forged) is None

    def test_wrong_audience_rejected(self, issuer, staff_account, viewer_role, settings):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        other = TokenIssuer(settings.model_copy(update={"jwt_audience": "someone-else"}))
        assert other.validate_access_token(token) is None

    def test_wrong_issuer_rejected(self, issuer, staff_account, viewer_role, settings):
        token, _ = issuer.issue_access_token(staff_account, viewer_role)
        other = TokenIssuer(settings.model_copy(update={"jwt_issuer": "someone-else"}))
        assert other.validate_access_token(token) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**", None])
    def test_malformed_tokens_return_none(self, issuer, garbage):
        assert issuer.validate_access_token(garbage) is None

    def test_unencodable_segment_returns_none(self, issuer):
        header = _encode({"alg": "HS256", "typ": "JWT"})
        assert issuer.validate_access_token(f"{header}.\ud800.sig") is None
        assert issuer.validate_access_token(f"{header}.e30.\ud800") is None


def test_permissions_for_missing_role_is_empty():
    assert permissions_for_role(None) == []


def test_settings_require_long_secret():
    with pytest.raises(ValueError):
        Settings(jwt_secret="short")
