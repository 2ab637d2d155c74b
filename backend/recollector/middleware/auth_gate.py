"""Request authentication gate.

Resolves the ``Authorization: Bearer <token>`` header of every request into an
``AuthenticatedIdentity`` stored on ``request.state.identity``. The gate never
rejects a request itself: an absent, malformed, expired, forged or revoked
token simply leaves the request anonymous, and routes that need a caller
depend on ``require_identity``, which answers with a generic 401.

A token is accepted only when all of these hold:

1. it decodes under the access key,
2. its subject names an existing user,
3. it is unexpired and asserts that user's email,
4. no revocation row exists for (user, token).

Any error while consulting the revocation store counts as revoked.
"""

import logging
from dataclasses import dataclass, field
from uuid import UUID

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from recollector.core.clock import Clock
from recollector.models.user import User
from recollector.services.revocation import RevocationStore, RevocationStoreUnavailableError
from recollector.services.tokens import (
    SigningKey,
    TokenKind,
    TokenMalformedError,
    decode_token,
    validate_token,
)

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """The caller of the current request."""

    user_id: UUID
    email: str
    authorities: tuple[str, ...] = ()
    access_token: str = field(default="", repr=False)


def extract_bearer_token(authorization_header: str | None) -> str | None:
    """Return the token of a ``Bearer <token>`` header, else None."""
    if not authorization_header or not authorization_header.startswith(BEARER_PREFIX):
        return None
    token = authorization_header[len(BEARER_PREFIX) :].strip()
    return token or None


class AuthenticationGate:
    """Chains token validation with the revocation store."""

    def __init__(self, access_key: SigningKey, clock: Clock | None = None):
        if access_key.kind is not TokenKind.ACCESS:
            raise ValueError("AuthenticationGate requires the access signing key")
        self.access_key = access_key
        self.clock = clock or Clock()

    async def authenticate(
        self, authorization_header: str | None, session: AsyncSession
    ) -> AuthenticatedIdentity | None:
        """Return the identity asserted by the header, or None for anonymous."""
        if not authorization_header:
            return None

        token = extract_bearer_token(authorization_header)
        if token is None:
            logger.debug("Authorization header is not a bearer token")
            return None

        try:
            claims = decode_token(token, self.access_key)
        except TokenMalformedError as e:
            logger.warning(f"Rejected undecodable access token: {e}")
            return None

        if not claims.subject:
            logger.warning("Rejected access token without subject")
            return None

        try:
            result = await session.execute(select(User).where(User.email == claims.subject))
            user = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"User lookup failed during authentication: {e}")
            return None

        if user is None:
            logger.debug("Access token subject does not match any user")
            return None

        if not validate_token(token, user.email, self.access_key, self.clock):
            return None

        try:
            revoked = await RevocationStore(session, self.clock).is_revoked(user.id, token)
        except RevocationStoreUnavailableError as e:
            logger.error(f"Revocation check failed, rejecting token: {e}")
            return None

        if revoked:
            logger.info("Rejected revoked access token", extra={"user_id": str(user.id)})
            return None

        return AuthenticatedIdentity(user_id=user.id, email=user.email, access_token=token)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Attach the gate's verdict to ``request.state.identity``.

    Sessions come from ``request.app.state.session_factory`` so tests can
    point the gate at their own database.
    """

    def __init__(self, app, gate: AuthenticationGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.identity = None

        # CORS preflight requests never carry credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        authorization_header = request.headers.get("Authorization")
        if authorization_header:
            session_factory = request.app.state.session_factory
            try:
                async with session_factory() as session:
                    request.state.identity = await self.gate.authenticate(
                        authorization_header, session
                    )
            except Exception as e:
                logger.exception(
                    f"Authentication gate failed: {e}",
                    extra={"path": request.url.path, "method": request.method},
                )
                request.state.identity = None

        return await call_next(request)


def get_identity(request: Request) -> AuthenticatedIdentity | None:
    """Dependency returning the caller, or None when anonymous."""
    return getattr(request.state, "identity", None)


def require_identity(
    identity: AuthenticatedIdentity | None = Depends(get_identity),
) -> AuthenticatedIdentity:
    """Dependency rejecting anonymous calls with a generic 401."""
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
