from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from warden.logging import get_logger
from warden.service.errors import AuthErrorKind
from warden.service.result import Err, Ok, Result

logger = get_logger(__name__)

ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "email", "role", "iat", "exp")


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    email: str
    role: str
    iat: int
    exp: int
    jti: str
    iss: str
    aud: str

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def extract_bearer(authorization: Optional[str]) -> Result[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return Err(AuthErrorKind.TOKEN_MISSING)
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return Err(AuthErrorKind.TOKEN_MALFORMED)
    return Ok(token.strip())


class TokenCodec:
    """Signs and verifies HS256 access tokens.

    The header algorithm is fixed; tokens announcing anything else are
    rejected before the signature is computed.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock or time.time

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, subject_id: str, email: str, role: str, ttl_seconds: int) -> str:
        issued_at = int(self._clock())
        claims = TokenClaims(
            sub=subject_id,
            email=email,
            role=role,
            iat=issued_at,
            exp=issued_at + max(1, int(ttl_seconds)),
            jti=str(uuid.uuid4()),
            iss=self.issuer,
            aud=self.audience,
        )
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: Optional[str]) -> Result[TokenClaims]:
        if not token:
            return Err(AuthErrorKind.TOKEN_MISSING)
        # Headers arrive latin-1 decoded; compare_digest rejects non-ASCII str
        if not token.isascii():
            logger.warning("jwt_non_ascii_rejected")
            return Err(AuthErrorKind.TOKEN_MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return Err(AuthErrorKind.TOKEN_MALFORMED)

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return Err(AuthErrorKind.TOKEN_MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=str(alg))
            return Err(AuthErrorKind.TOKEN_MALFORMED)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return Err(AuthErrorKind.TOKEN_MALFORMED, {"check": "signature"})

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            return Err(AuthErrorKind.TOKEN_MALFORMED)
        if not isinstance(payload, dict):
            return Err(AuthErrorKind.TOKEN_MALFORMED)

        missing = [name for name in _REQUIRED_CLAIMS if not payload.get(name)]
        if missing:
            return Err(AuthErrorKind.TOKEN_MALFORMED, {"missing_claims": missing})
        if payload.get("iss") != self.issuer:
            return Err(AuthErrorKind.TOKEN_MALFORMED, {"check": "issuer"})
        aud = payload.get("aud")
        valid_aud = aud == self.audience if isinstance(aud, str) else (
            isinstance(aud, list) and self.audience in aud
        )
        if not valid_aud:
            return Err(AuthErrorKind.TOKEN_MALFORMED, {"check": "audience"})

        try:
            iat = int(payload["iat"])
            exp = int(payload["exp"])
        except (TypeError, ValueError):
            return Err(AuthErrorKind.TOKEN_MALFORMED)
        if exp <= self._clock() - self.leeway_seconds:
            return Err(AuthErrorKind.TOKEN_EXPIRED)

        return Ok(
            TokenClaims(
                sub=str(payload["sub"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                iat=iat,
                exp=exp,
                jti=str(payload.get("jti") or ""),
                iss=self.issuer,
                aud=self.audience,
            )
        )

    def remaining_seconds(self, claims: TokenClaims) -> int:
        return max(0, int(claims.exp - self._clock()))
