"""Account and session service: registration, login and the revocation triggers.

Every path that ends a session (logout, refresh rotation, password change,
account deletion) records the tokens it retires in the revocation store.
Logout and the password/account flows treat revocation as best effort: a
store failure is logged and the operation still succeeds. The replay check
during refresh rotation is the exception and fails closed.
"""

import logging
import re
import uuid
from datetime import UTC, datetime
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recollector.core import settings
from recollector.core.clock import Clock, TimeUnit
from recollector.models.user import User
from recollector.services.revocation import RevocationStore, RevocationStoreUnavailableError
from recollector.services.tokens import (
    AuthError,
    TokenIssuer,
    TokenKind,
    TokenMalformedError,
    TokenPair,
    decode_token,
    validate_token,
)

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 16


class AuthenticationFailedError(AuthError):
    """The caller could not be authenticated."""

    pass


class InvalidCredentialsError(AuthenticationFailedError):
    """Invalid email or password."""

    pass


class AccountValidationError(AuthError):
    """Request values do not satisfy account rules."""

    pass


class PasswordReuseError(AccountValidationError):
    """The new password equals the current one."""

    pass


class EmailAlreadyRegisteredError(AuthError):
    """An account with this email already exists."""

    pass


class InvalidResetTokenError(AuthError):
    """Password reset token is unknown, mismatched or expired."""

    pass


class ResetThrottledError(AuthError):
    """A password reset token is still live for this account."""

    def __init__(self, minutes_remaining: int):
        super().__init__(
            f"Password reset already requested. Try again in {minutes_remaining} minute(s)"
        )
        self.minutes_remaining = minutes_remaining


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        ph.verify(password_hash, password)
        return True
    except (VerificationError, InvalidHashError):
        return False


def validate_email(email: str | None) -> None:
    if not email or not EMAIL_PATTERN.match(email):
        raise AccountValidationError("Email has invalid format")


def validate_password(password: str | None, password_confirm: str | None) -> None:
    if not password or not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        raise AccountValidationError(
            f"Password must be {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} characters long"
        )
    if password != password_confirm:
        raise AccountValidationError("Password and confirmation do not match")


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class AuthService:
    """Service for authentication operations."""

    def __init__(
        self,
        session: AsyncSession,
        issuer: TokenIssuer | None = None,
        clock: Clock | None = None,
    ):
        self.session = session
        self.clock = clock or (issuer.clock if issuer else Clock())
        self.issuer = issuer or TokenIssuer.from_settings(settings, self.clock)
        self.revocations = RevocationStore(session, self.clock)

    async def get_user_by_email(self, email: str) -> User | None:
        """Get user by email."""
        result = await self.session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> User | None:
        """Get user by ID."""
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def register(self, email: str, password: str, password_confirm: str) -> TokenPair:
        """Create an account and return its first token pair."""
        validate_email(email)
        validate_password(password, password_confirm)

        if await self.get_user_by_email(email) is not None:
            raise EmailAlreadyRegisteredError(f"User with email '{email}' already exists")

        user = User(email=email, password_hash=hash_password(password))
        user.last_login_at = self.clock.now()
        self.session.add(user)
        await self.session.commit()

        logger.info(f"Registered user: {email}")
        return self.issuer.issue_pair(user.email)

    async def authenticate(self, email: str, password: str) -> User:
        """Authenticate a user and return the user object.

        Raises InvalidCredentialsError for both "user not found" and
        "wrong password" to prevent user enumeration.
        """
        user = await self.get_user_by_email(email)

        if user is None:
            # Perform a dummy hash to prevent timing attacks
            verify_password(password, hash_password("dummy"))
            raise InvalidCredentialsError("Invalid email or password")

        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Invalid email or password")

        # Update last login time
        user.last_login_at = self.clock.now()
        await self.session.commit()

        return user

    async def login(self, email: str, password: str) -> TokenPair:
        user = await self.authenticate(email, password)
        logger.info(f"User logged in: {user.email}")
        return self.issuer.issue_pair(user.email)

    async def _revoke(self, user_id: UUID, token: str | None, kind: TokenKind) -> None:
        if not token:
            return
        expires_at = self.issuer.expiry_of(token, kind)
        await self.revocations.revoke(user_id, token, expires_at)

    async def _revoke_best_effort(
        self, user_id: UUID, email: str, access_token: str | None, refresh_token: str | None
    ) -> None:
        # A failed revoke rolls the session back and expires loaded users, so
        # only the plain id and email are read from here on.
        for token, kind in (
            (access_token, TokenKind.ACCESS),
            (refresh_token, TokenKind.REFRESH),
        ):
            try:
                await self._revoke(user_id, token, kind)
            except RevocationStoreUnavailableError as e:
                logger.error(
                    f"Failed to revoke {kind.value} token for {email}: {e}",
                    extra={"user_id": str(user_id), "email": email},
                )

    async def logout(self, user: User, access_token: str | None, refresh_token: str | None) -> None:
        """Revoke both tokens of a session. Store failures are logged, not raised."""
        user_id, email = user.id, user.email
        await self._revoke_best_effort(user_id, email, access_token, refresh_token)
        logger.info(f"User logged out: {email}", extra={"email": email})

    async def refresh(self, refresh_token: str, access_token: str | None = None) -> TokenPair:
        """Mint a new access token from a refresh token.

        The presented access token is revoked; the refresh token is handed
        back unchanged and stays usable until it expires or is revoked.

        Raises:
            AuthenticationFailedError: the refresh token is invalid, revoked,
                or its revocation status cannot be determined
        """
        refresh_key = self.issuer.refresh_key
        try:
            claims = decode_token(refresh_token, refresh_key)
        except TokenMalformedError as e:
            logger.warning(f"Refresh rejected: {e}")
            raise AuthenticationFailedError("Invalid refresh token") from e

        user = await self.get_user_by_email(claims.subject) if claims.subject else None
        if user is None or not validate_token(refresh_token, user.email, refresh_key, self.clock):
            logger.warning("Refresh rejected: token expired or subject unknown")
            raise AuthenticationFailedError("Invalid refresh token")
        user_id, email = user.id, user.email

        try:
            replayed = await self.revocations.is_revoked(user_id, refresh_token)
        except RevocationStoreUnavailableError as e:
            logger.error(f"Refresh rejected, revocation status unknown for {email}: {e}")
            raise AuthenticationFailedError("Invalid refresh token") from e

        if replayed:
            logger.warning(
                f"Revoked refresh token presented for {email}", extra={"email": email}
            )
            # Re-revoke the pair even though the refresh token is already
            # revoked; revoke is idempotent.
            await self._revoke_best_effort(user_id, email, access_token, refresh_token)
            raise AuthenticationFailedError("Refresh token revoked")

        new_access_token = self.issuer.issue_access_token(email)

        # Within the same second the new token is byte-identical to the
        # presented one and must stay usable.
        if access_token and access_token != new_access_token:
            try:
                await self._revoke(user_id, access_token, TokenKind.ACCESS)
            except RevocationStoreUnavailableError as e:
                logger.error(f"Failed to revoke previous access token for {email}: {e}")

        access_claims = decode_token(new_access_token, self.issuer.access_key)
        logger.info(f"Access token refreshed for {email}")
        return TokenPair(
            access_token=new_access_token,
            refresh_token=refresh_token,
            access_expires_at=int(access_claims.expires_at.timestamp()),
            refresh_expires_at=int(claims.expires_at.timestamp()),
        )

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        new_password_confirm: str,
        access_token: str | None = None,
        refresh_token: str | None = None,
    ) -> None:
        """Change a user's password and revoke the presented tokens."""
        validate_password(new_password, new_password_confirm)

        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")
        if verify_password(new_password, user.password_hash):
            raise PasswordReuseError("Password already in use. Create a brand new password")

        user_id, email = user.id, user.email
        user.password_hash = hash_password(new_password)
        await self.session.commit()

        await self._revoke_best_effort(user_id, email, access_token, refresh_token)
        logger.info(f"Password changed for user: {email}", extra={"email": email})

    async def forgot_password(self, email: str) -> str | None:
        """Issue a password reset token.

        Unknown emails are accepted silently and yield None.

        Raises:
            ResetThrottledError: a previously issued token is still live
        """
        validate_email(email)
        user = await self.get_user_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return None

        now = self.clock.now()
        live_until = _as_utc(user.reset_token_expires_at)
        if user.reset_token and live_until is not None and live_until > now:
            minutes_remaining = max(1, int((live_until - now).total_seconds() // 60))
            raise ResetThrottledError(minutes_remaining)

        user.reset_token = str(uuid.uuid4())
        user.reset_token_expires_at = self.clock.adjust(
            now, settings.password_reset_token_expire_minutes, TimeUnit.MINUTES
        )
        await self.session.commit()

        logger.info(f"Password reset token generated for {email}")
        return user.reset_token

    async def reset_password(
        self, email: str, reset_token: str, new_password: str, new_password_confirm: str
    ) -> None:
        """Set a new password using a reset token and clear the token."""
        validate_email(email)
        validate_password(new_password, new_password_confirm)

        user = await self.get_user_by_email(email)
        if user is None or not user.reset_token or user.reset_token != reset_token:
            raise InvalidResetTokenError("Invalid password reset token")
        expires_at = _as_utc(user.reset_token_expires_at)
        if expires_at is None or expires_at < self.clock.now():
            raise InvalidResetTokenError("Password reset token has expired")
        if verify_password(new_password, user.password_hash):
            raise PasswordReuseError("Password already in use. Create a brand new password")

        user.password_hash = hash_password(new_password)
        user.reset_token = None
        user.reset_token_expires_at = None
        await self.session.commit()

        logger.info(f"Password reset for user: {email}")

    async def delete_account(
        self,
        user: User,
        password: str,
        password_confirm: str,
        access_token: str | None = None,
        refresh_token: str | None = None,
    ) -> None:
        """Delete the account after re-checking its password."""
        if password != password_confirm:
            raise AccountValidationError("Password and confirmation do not match")
        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Password is incorrect")

        user_id, email = user.id, user.email
        await self._revoke_best_effort(user_id, email, access_token, refresh_token)

        # A failed revoke rolls back and expires the instance
        await self.session.refresh(user)
        await self.session.delete(user)
        await self.session.commit()
        logger.info(f"Account deleted: {email}", extra={"email": email})
