"""JWT codec, validator and issuer for the access/refresh token pair.

Access and refresh tokens are signed with two independent HMAC keys. Each key
is wrapped in a ``SigningKey`` tagged with the token class it belongs to, so a
refresh key cannot be handed to code that mints access tokens by accident.

Tokens carry only ``sub`` (the user's email), ``iat`` and ``exp``. Decoding
verifies the signature but not the expiry: an expired, well-signed token still
decodes, and expiry is judged separately against the injected ``Clock``.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import jwt
from jwt.exceptions import PyJWTError

from recollector.core.clock import Clock, TimeUnit
from recollector.core.config import Settings

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base authentication error."""

    pass


class TokenMalformedError(AuthError):
    """Token signature does not verify or the token is structurally corrupt."""

    pass


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenStatus(str, Enum):
    """Outcome of checking a token against an expected subject."""

    VALID = "valid"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    SUBJECT_MISMATCH = "subject_mismatch"


@dataclass(frozen=True)
class SigningKey:
    """An HMAC secret bound to one class of token."""

    kind: TokenKind
    secret: str = field(repr=False)
    algorithm: str = "HS256"

    @classmethod
    def access_from_settings(cls, settings: Settings) -> "SigningKey":
        return cls(TokenKind.ACCESS, settings.jwt_secret_key, settings.jwt_algorithm)

    @classmethod
    def refresh_from_settings(cls, settings: Settings) -> "SigningKey":
        return cls(TokenKind.REFRESH, settings.jwt_refresh_secret_key, settings.jwt_algorithm)


@dataclass(frozen=True)
class TokenClaims:
    subject: str | None
    issued_at: datetime | None
    expires_at: datetime | None


@dataclass(frozen=True)
class TokenPair:
    """Access and refresh tokens issued together. Expiries are epoch seconds."""

    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int


def _to_epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def _from_epoch(payload: dict[str, Any], claim: str) -> datetime | None:
    value = payload.get(claim)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise TokenMalformedError(f"Claim '{claim}' is not a NumericDate")
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (OverflowError, OSError, ValueError) as e:
        raise TokenMalformedError(f"Claim '{claim}' is out of range") from e


def encode_token(subject: str, issued_at: datetime, expires_at: datetime, key: SigningKey) -> str:
    """Sign a token asserting ``subject``. Equal inputs give equal output."""
    payload = {
        "sub": subject,
        "iat": _to_epoch(issued_at),
        "exp": _to_epoch(expires_at),
    }
    token = jwt.encode(payload, key.secret, algorithm=key.algorithm)
    # PyJWT 2.x returns str; older type stubs may declare bytes
    return str(token)


def decode_token(token: str, key: SigningKey) -> TokenClaims:
    """Verify the signature of ``token`` and return its claims.

    Raises:
        TokenMalformedError: signature mismatch or structural corruption
    """
    if not token:
        raise TokenMalformedError("Empty token")
    try:
        payload = jwt.decode(
            token,
            key.secret,
            algorithms=[key.algorithm],
            options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
        )
    except PyJWTError as e:
        raise TokenMalformedError(f"Invalid token: {e}") from e

    subject = payload.get("sub")
    if subject is not None and not isinstance(subject, str):
        raise TokenMalformedError("Claim 'sub' is not a string")
    return TokenClaims(
        subject=subject,
        issued_at=_from_epoch(payload, "iat"),
        expires_at=_from_epoch(payload, "exp"),
    )


def is_expired(claims: TokenClaims, now: datetime) -> bool:
    """A token without an expiry is treated as expired."""
    if claims.expires_at is None:
        return True
    return claims.expires_at < now


def check_token(
    token: str | None, expected_subject: str | None, key: SigningKey, now: datetime
) -> TokenStatus:
    """Classify ``token`` for ``expected_subject``. Never raises."""
    if not token:
        return TokenStatus.MALFORMED
    try:
        claims = decode_token(token, key)
    except TokenMalformedError:
        return TokenStatus.MALFORMED
    if not expected_subject or claims.subject is None or claims.subject != expected_subject:
        return TokenStatus.SUBJECT_MISMATCH
    if is_expired(claims, now):
        return TokenStatus.EXPIRED
    return TokenStatus.VALID


def validate_token(
    token: str | None, expected_subject: str | None, key: SigningKey, clock: Clock
) -> bool:
    """True only for a well-signed, unexpired token asserting ``expected_subject``."""
    if not token or not expected_subject:
        return False
    status = check_token(token, expected_subject, key, clock.now())
    if status is not TokenStatus.VALID:
        logger.debug(f"{key.kind.value} token rejected: {status.value}")
        return False
    return True


class TokenIssuer:
    """Mints access/refresh token pairs from one clock reading."""

    def __init__(
        self,
        access_key: SigningKey,
        refresh_key: SigningKey,
        access_ttl_minutes: int,
        refresh_ttl_hours: int,
        clock: Clock | None = None,
    ):
        if access_key.kind is not TokenKind.ACCESS:
            raise ValueError("access_key must be an access signing key")
        if refresh_key.kind is not TokenKind.REFRESH:
            raise ValueError("refresh_key must be a refresh signing key")
        self.access_key = access_key
        self.refresh_key = refresh_key
        self.access_ttl_minutes = access_ttl_minutes
        self.refresh_ttl_hours = refresh_ttl_hours
        self.clock = clock or Clock()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock | None = None) -> "TokenIssuer":
        return cls(
            access_key=SigningKey.access_from_settings(settings),
            refresh_key=SigningKey.refresh_from_settings(settings),
            access_ttl_minutes=settings.jwt_access_token_expire_minutes,
            refresh_ttl_hours=settings.jwt_refresh_token_expire_hours,
            clock=clock,
        )

    def _access_token(self, subject: str, now: datetime) -> str:
        expires_at = self.clock.adjust(now, self.access_ttl_minutes, TimeUnit.MINUTES)
        return encode_token(subject, now, expires_at, self.access_key)

    def _refresh_token(self, subject: str, now: datetime) -> str:
        expires_at = self.clock.adjust(now, self.refresh_ttl_hours, TimeUnit.HOURS)
        return encode_token(subject, now, expires_at, self.refresh_key)

    def issue_access_token(self, subject: str) -> str:
        """Mint a single access token, used by refresh rotation."""
        return self._access_token(subject, self.clock.now())

    def issue_pair(self, subject: str) -> TokenPair:
        """Mint an access and a refresh token sharing one issued-at instant."""
        now = self.clock.now()
        access_token = self._access_token(subject, now)
        refresh_token = self._refresh_token(subject, now)

        # Read expiries back from the signed tokens so clients see exactly
        # what was encoded.
        access_claims = decode_token(access_token, self.access_key)
        refresh_claims = decode_token(refresh_token, self.refresh_key)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=_to_epoch(access_claims.expires_at),
            refresh_expires_at=_to_epoch(refresh_claims.expires_at),
        )

    def expiry_of(self, token: str, kind: TokenKind) -> datetime:
        """Expiry claimed by ``token``, or ``now + TTL`` of its class if undecodable."""
        key = self.access_key if kind is TokenKind.ACCESS else self.refresh_key
        try:
            claims = decode_token(token, key)
        except TokenMalformedError:
            claims = None
        if claims is not None and claims.expires_at is not None:
            return claims.expires_at
        now = self.clock.now()
        if kind is TokenKind.ACCESS:
            return self.clock.adjust(now, self.access_ttl_minutes, TimeUnit.MINUTES)
        return self.clock.adjust(now, self.refresh_ttl_hours, TimeUnit.HOURS)
