"""Stateless HS256 access tokens.

Access tokens carry ``sub`` (account id), ``role``, ``iat`` and ``exp`` plus the
issuer/audience pair. They are never persisted and cannot be revoked before
they expire; session revocation happens on the refresh token side.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Union

from tourpass.config import Settings
from tourpass.logging import get_logger
from tourpass.service.errors import ConfigurationError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenFailure(str, Enum):
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class AccessClaims:
    account_id: str
    role: str
    issued_at: int
    expires_at: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _timestamp(now: Optional[datetime]) -> int:
    return int((now or datetime.now(timezone.utc)).timestamp())


class AccessTokenCodec:
    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        ttl: timedelta = timedelta(hours=1),
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ConfigurationError("access token signing secret is not configured")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self.leeway_seconds = max(0, leeway_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessTokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, account_id: str, role: str, *, now: Optional[datetime] = None) -> str:
        issued_at = _timestamp(now)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account_id,
            "role": role,
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Union[AccessClaims, TokenFailure]:
        """Return the token's claims, or the reason it cannot be trusted.

        A token is only reported as ``EXPIRED`` once its signature and claims
        have been validated; anything forged or malformed is ``INVALID``.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return TokenFailure.INVALID

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return TokenFailure.INVALID
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            # Refuse "none" and asymmetric algorithms outright
            logger.warning("jwt_invalid_algorithm")
            return TokenFailure.INVALID

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return TokenFailure.INVALID

        try:
            payload: Any = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return TokenFailure.INVALID
        if not isinstance(payload, dict):
            return TokenFailure.INVALID
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return TokenFailure.INVALID
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return TokenFailure.INVALID

        subject = payload.get("sub")
        role = payload.get("role")
        if not isinstance(subject, str) or not subject or not isinstance(role, str):
            return TokenFailure.INVALID
        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return TokenFailure.INVALID

        if _timestamp(now) >= expires_at + self.leeway_seconds:
            return TokenFailure.EXPIRED
        return AccessClaims(
            account_id=subject, role=role, issued_at=issued_at, expires_at=expires_at
        )
