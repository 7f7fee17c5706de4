from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import timedelta
from typing import Any, Iterable, Optional

from authwarden.config import Settings
from authwarden.logging import get_logger
from authwarden.storage.models import Clock, utc_now

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenIssuer:
    """Signs and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``token_type`` claim, so one can never be replayed as the other.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        clock_skew_seconds: int = 30,
    ) -> None:
        self.settings = settings
        self._clock = clock or utc_now
        self._clock_skew_leeway = timedelta(seconds=clock_skew_seconds)
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._ttl = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }

    @staticmethod
    def random_opaque_token() -> str:
        """256 bits of randomness, hex encoded, for verification and reset links."""
        return secrets.token_hex(32)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _sign(self, claims: dict[str, Any], token_type: str) -> str:
        now = self._clock()
        payload = {
            **claims,
            "token_type": token_type,
            "jti": claims.get("jti") or str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl[token_type]).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input, token_type)}"

    def sign_access(self, claims: dict[str, Any]) -> str:
        return self._sign(claims, ACCESS)

    def sign_refresh(self, claims: dict[str, Any]) -> str:
        return self._sign(claims, REFRESH)

    def _decode(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._signature(signing_input, token_type), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def verify(self, token: str, token_type: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Return the claims of a valid token, or None.

        Without ``token_type`` both access and refresh tokens are accepted.
        """
        if not token or not isinstance(token, str):
            return None
        candidates: Iterable[str] = (token_type,) if token_type else (ACCESS, REFRESH)
        for candidate in candidates:
            if candidate not in self._secrets:
                raise ValueError(f"unknown token type: {candidate}")
            payload = self._decode(token, candidate)
            if payload is not None:
                return payload
        return None


__all__ = ["ACCESS", "REFRESH", "TokenIssuer"]
