from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AudienceMismatchError,
    InvalidSignatureError,
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: str
    role: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str
    jti: str


class TokenCodec:
    """Issue and verify HS256 bearer tokens bound to a server-side session.

    Every token carries ``iss`` and ``aud`` and verification rejects tokens
    whose values differ, so a token minted for another service sharing the
    secret is never accepted here. The codec holds no state beyond its keys.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        *,
        leeway: timedelta = timedelta(seconds=0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret is required")
        if not issuer or not audience:
            raise ValueError("token issuer and audience are required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, claims: dict[str, Any], ttl: timedelta) -> str:
        """Sign ``claims`` (``sub``, ``sid``, ``role``) valid for ``ttl``."""
        if ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")
        now = self._clock()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise TokenMalformedError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError() from None

        # Reject anything but HS256 to block algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            raise TokenMalformedError() from None
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformedError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise TokenMalformedError() from None
        if not isinstance(payload, dict):
            raise TokenMalformedError()

        if payload.get("iss") != self.issuer:
            raise TokenInvalidError(reason="issuer_mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise AudienceMismatchError()

        try:
            exp = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
            iat = datetime.fromtimestamp(float(payload.get("iat", payload["exp"])), tz=timezone.utc)
            user_id = str(payload["sub"])
            session_id = str(payload["sid"])
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError() from None
        if exp <= self._clock() - self._leeway:
            raise TokenExpiredError()

        return TokenClaims(
            user_id=user_id,
            session_id=session_id,
            role=str(payload.get("role") or "user"),
            issued_at=iat,
            expires_at=exp,
            issuer=payload["iss"],
            audience=self.audience,
            jti=str(payload.get("jti") or ""),
        )
