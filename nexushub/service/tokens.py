from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from nexushub.config import Settings
from nexushub.logging import get_logger
from nexushub.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)

# Identity claims copied from the caller; everything else is set by the codec
IDENTITY_CLAIMS = ("sub", "email", "role")


class TokenErrorKind(str, Enum):
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass
class TokenCheck:
    """Outcome of verifying a token without raising.

    Exactly one of ``claims`` and ``error`` is set.
    """

    claims: Optional[dict[str, Any]] = None
    error: Optional[TokenErrorKind] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 JWT codec with independent access and refresh signing keys."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._ttl_seconds = {
            ACCESS: settings.access_token_ttl_minutes * 60,
            REFRESH: settings.refresh_token_ttl_minutes * 60,
        }

    @property
    def access_ttl_seconds(self) -> int:
        return self._ttl_seconds[ACCESS]

    @property
    def refresh_ttl_seconds(self) -> int:
        return self._ttl_seconds[REFRESH]

    def _sign(self, signing_input: str, kind: str) -> str:
        digest = hmac.new(
            self._secrets[kind], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, claims: Mapping[str, Any], kind: str, issued_at: Optional[float]) -> str:
        missing = [name for name in IDENTITY_CLAIMS if not claims.get(name)]
        if missing:
            raise ValueError(f"token claims missing: {', '.join(missing)}")
        iat = int(self._clock() if issued_at is None else issued_at)
        payload = {name: claims[name] for name in IDENTITY_CLAIMS}
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "token_type": kind,
                "iat": iat,
                "exp": iat + self._ttl_seconds[kind],
            }
        )
        if claims.get("jti"):
            payload["jti"] = claims["jti"]
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def sign_access(
        self, claims: Mapping[str, Any], *, issued_at: Optional[float] = None
    ) -> str:
        """Sign an access token carrying ``sub``, ``email`` and ``role``.

        Each access token gets its own ``jti`` so two tokens issued in the
        same second never collide.
        """
        payload = {name: claims.get(name) for name in IDENTITY_CLAIMS}
        payload["jti"] = str(uuid.uuid4())
        return self._encode(payload, ACCESS, issued_at)

    def sign_refresh(
        self, claims: Mapping[str, Any], jti: str, *, issued_at: Optional[float] = None
    ) -> str:
        """Sign a refresh token; ``jti`` ties it to its ledger row."""
        if not jti:
            raise ValueError("refresh tokens require a jti")
        return self._encode({**claims, "jti": jti}, REFRESH, issued_at)

    def check(self, token: str, kind: str) -> TokenCheck:
        """Verify ``token`` against the ``kind`` key and report the failure kind.

        Signature, structure, issuer, audience and token type failures are
        ``INVALID``. ``EXPIRED`` is reported only for an otherwise valid token.
        """
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")

        def invalid(reason: str) -> TokenCheck:
            return TokenCheck(error=TokenErrorKind.INVALID, reason=reason)

        if not token or not isinstance(token, str):
            return invalid("empty")
        parts = token.split(".")
        if len(parts) != 3:
            return invalid("malformed")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return invalid("header_decode_failed")
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict):
            return invalid("header_type")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return invalid("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return invalid("signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return invalid("payload_decode_failed")
        if not isinstance(payload, dict):
            return invalid("payload_type")
        if payload.get("iss") != self.settings.jwt_issuer:
            return invalid("issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return invalid("audience")
        if payload.get("token_type") != kind:
            return invalid("token_type")
        if any(not payload.get(name) for name in IDENTITY_CLAIMS):
            return invalid("claims")
        if kind == REFRESH and not payload.get("jti"):
            return invalid("jti")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return invalid("exp")
        if exp_ts <= self._clock() - self.settings.token_leeway_seconds:
            return TokenCheck(error=TokenErrorKind.EXPIRED, reason="expired")
        return TokenCheck(claims=payload)

    def verify(self, token: str, kind: str) -> dict[str, Any]:
        """Return verified claims or raise TokenExpiredError / TokenInvalidError."""
        result = self.check(token, kind)
        if result.error is TokenErrorKind.EXPIRED:
            raise TokenExpiredError(f"{kind} token has expired")
        if result.error is not None:
            raise TokenInvalidError(f"invalid {kind} token", detail={"reason": result.reason})
        return result.claims
