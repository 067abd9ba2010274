"""Signed bearer tokens and one-time opaque tokens.

Bearer tokens are compact HS256 JWTs carrying the subject id, a class tag
(``typ``: access or refresh), issued-at and expiry. Verification classifies
every failure as malformed, expired, or wrong-class so callers can decide
whether a refresh is worth attempting.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from shelfkeeper.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Base class for bearer token verification failures."""


class MalformedTokenError(TokenError):
    """Token cannot be parsed or its signature does not verify."""


class ExpiredTokenError(TokenError):
    """Signature is valid but the expiry has passed."""


class WrongTokenClassError(TokenError):
    """Signature is valid but the token belongs to the other class."""


@dataclass(frozen=True)
class VerifiedToken:
    subject_id: str
    token_class: TokenClass
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class TokenCodec:
    """Issue and verify HS256 tokens with a process-wide signing key."""

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = timedelta(seconds=max(0, leeway_seconds))
        self._clock: Clock = clock or _utcnow

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, subject_id: str, token_class: TokenClass, ttl: timedelta) -> str:
        if ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "typ": TokenClass(token_class).value,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        header_enc = self._encode_segment(
            json.dumps(self._HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_pair(
        self, subject_id: str, *, access_ttl: timedelta, refresh_ttl: timedelta
    ) -> TokenPair:
        now = self._clock()
        return TokenPair(
            access_token=self.issue(subject_id, TokenClass.ACCESS, access_ttl),
            refresh_token=self.issue(subject_id, TokenClass.REFRESH, refresh_ttl),
            access_expires_at=now + access_ttl,
            refresh_expires_at=now + refresh_ttl,
        )

    def _decode(self, token: str) -> dict[str, Any]:
        """Check structure and signature; return the payload."""
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token must have three segments")
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise MalformedTokenError("token header is not valid JSON")
        # Only HS256 is accepted; anything else is an algorithm-confusion attempt
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise MalformedTokenError("unsupported token algorithm")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise MalformedTokenError("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise MalformedTokenError("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload must be an object")
        return payload

    def verify(self, token: str, expected_class: TokenClass) -> VerifiedToken:
        """Return the verified claims or raise a ``TokenError`` subclass.

        Signature and claims are checked before expiry, and expiry before
        class, so a forged token is always reported as malformed.
        """
        payload = self._decode(token)
        if payload.get("iss") != self.issuer:
            raise MalformedTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise MalformedTokenError("token audience mismatch")
        subject_id = payload.get("sub")
        if not isinstance(subject_id, str) or not subject_id:
            raise MalformedTokenError("token subject missing")
        try:
            exp = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
            iat = datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError):
            raise MalformedTokenError("token timestamps invalid")
        try:
            token_class = TokenClass(payload.get("typ"))
        except ValueError:
            raise MalformedTokenError("token class missing")

        if exp <= self._clock() - self.leeway:
            raise ExpiredTokenError("token expired")
        if token_class != TokenClass(expected_class):
            raise WrongTokenClassError(
                f"expected {TokenClass(expected_class).value} token, got {token_class.value}"
            )
        return VerifiedToken(
            subject_id=subject_id,
            token_class=token_class,
            issued_at=iat,
            expires_at=exp,
        )


class OneTimeTokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


ONE_TIME_TOKEN_TTLS = {
    OneTimeTokenPurpose.EMAIL_VERIFICATION: timedelta(hours=24),
    OneTimeTokenPurpose.PASSWORD_RESET: timedelta(hours=1),
}


def generate_one_time_token() -> str:
    """Return 256 bits from the OS CSPRNG as 64 hex characters."""
    return secrets.token_hex(32)


def expiry_for(
    purpose: OneTimeTokenPurpose,
    now: datetime,
    ttl: Optional[timedelta] = None,
) -> datetime:
    return now + (ttl or ONE_TIME_TOKEN_TTLS[purpose])
