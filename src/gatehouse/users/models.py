"""SQLAlchemy model for users."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gatehouse.common.models import Base, TimestampMixin


class UserModel(Base, TimestampMixin):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        UniqueConstraint("tenant_id", "wallet_address", name="uq_user_tenant_wallet"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tenants.id"), nullable=False, index=True
    )
    # Nullable for wallet-only accounts.
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    # Empty for wallet-only accounts; password login is refused for them.
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(42), nullable=True, index=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    email_verification_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email_verification_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def snapshot(self) -> dict:
        """Serializable view stored in the session record and profile cache."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "walletAddress": self.wallet_address,
            "isVerified": self.is_verified,
            "tenantId": self.tenant_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
        }
