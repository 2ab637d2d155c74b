"""Revoked JWT tokens, persisted so logout survives process restarts."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recollector.core.database import Base

if TYPE_CHECKING:
    from recollector.models.user import User

# Longest token string the table accepts
MAX_TOKEN_LENGTH = 1024


class RevokedToken(Base):
    """A still-unexpired token that must no longer be honored.

    Rows are inserted on logout, refresh rotation, password change and
    account deletion, are never updated, and are removed by the revocation
    sweeper once ``expires_at`` has passed.
    """

    __tablename__ = "revoked_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token: Mapped[str] = mapped_column(String(MAX_TOKEN_LENGTH), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    revoked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="revoked_tokens")

    def __repr__(self) -> str:
        return f"<RevokedToken user_id={self.user_id} expires_at={self.expires_at}>"
