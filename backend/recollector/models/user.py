"""User model for password-based accounts."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recollector.models.base import BaseModel

if TYPE_CHECKING:
    from recollector.models.revoked_token import RevokedToken


class User(BaseModel):
    """An account holder.

    The email is the token subject: access and refresh tokens assert it,
    and the authentication gate resolves it back to a row on every request.
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    # Password reset (forgot-password flow)
    reset_token: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reset_token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Tracking
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    revoked_tokens: Mapped[list["RevokedToken"]] = relationship(
        "RevokedToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"
