from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from deepref_auth.logging import get_logger
from deepref_auth.service.errors import ExpiredTokenError, InvalidTokenError

logger = get_logger(__name__)


@dataclass
class AccessToken:
    token: str
    jti: str
    expires_at: datetime


class AccessTokenSigner:
    """HS256 JWT issuer/verifier for short-lived access tokens."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        ttl_minutes: int = 15,
        *,
        leeway_seconds: int = 120,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_minutes = ttl_minutes
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=leeway_seconds)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: dict[str, Any], *, now: Optional[datetime] = None) -> AccessToken:
        now = now or datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=self.ttl_minutes)
        jti = str(uuid.uuid4())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "token_type": "access",
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._signature(signing_input)}"
        return AccessToken(token=token, jti=jti, expires_at=expires_at)

    def verify(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("Invalid access token")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid access token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Invalid access token")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        # Bytes, so a non-ASCII signature segment is a mismatch rather than a TypeError
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise InvalidTokenError("Invalid access token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid access token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid access token")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("Invalid access token")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError("Invalid access token")
        if payload.get("token_type") != "access":
            raise InvalidTokenError("Invalid access token")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError("Invalid access token")
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise ExpiredTokenError("Access token has expired")
        return payload
