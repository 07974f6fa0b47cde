from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple

from staffauth.config import Settings
from staffauth.logging import get_logger
from staffauth.storage.models import Account, Role, utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 32


def permissions_for_role(role: Optional[Role]) -> List[str]:
    if role is None:
        return []
    return role.permissions()


def user_id_from_claims(claims: dict[str, Any]) -> Optional[str]:
    return claims.get("user_id") or claims.get("sub")


class TokenIssuer:
    """Mints and verifies HS256 access tokens and opaque refresh tokens.

    Verification is stateless: revocation is the token store's concern.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, account: Account, role: Role) -> Tuple[str, datetime]:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "sub": account.id,
            "unique_name": account.username,
            "email": account.email,
            "jti": str(uuid.uuid4()),
            "user_id": account.id,
            "role_id": role.id,
            "role_name": role.name,
            "permission": permissions_for_role(role),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def issue_refresh_token(self) -> Tuple[str, datetime]:
        expires_at = self._now() + timedelta(days=self.settings.refresh_token_ttl_days)
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES), expires_at

    def validate_access_token(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return the claims of a well-formed, correctly signed, unexpired token."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        try:
            expected_sig = self._sign(f"{header_b64}.{payload_b64}")
            if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
                return None
        except UnicodeError:
            logger.warning("jwt_signature_check_failed")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", 0))
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = self._now().timestamp()
        if exp_ts <= now_ts or nbf_ts > now_ts:
            return None
        return payload
