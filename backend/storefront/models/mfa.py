"""Two-factor credential model: the TOTP state owned by one account."""

import enum
from datetime import datetime

from sqlalchemy import String, DateTime, Enum, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database import Base


class TwoFactorState(str, enum.Enum):
    DISABLED = "disabled"
    PENDING_SETUP = "pending_setup"
    ACTIVE = "active"


class TwoFactorCredential(Base):
    """Authenticator-app credential for a user.

    Kept apart from the ``users`` row so profile updates never rewrite it.
    Both secrets are stored AES-GCM encrypted (see services.encryption).
    """
    __tablename__ = "two_factor_credentials"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
    )
    state: Mapped[TwoFactorState] = mapped_column(
        Enum(TwoFactorState, native_enum=False, length=20),
        default=TwoFactorState.DISABLED, nullable=False,
    )
    pending_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    setup_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
    )

    user = relationship("User", back_populates="two_factor")

    @property
    def is_active(self) -> bool:
        return self.state == TwoFactorState.ACTIVE
