"""SQLAlchemy model for tenants."""

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gatehouse.common.models import Base, TimestampMixin

TENANT_ACTIVE = "active"
TENANT_SUSPENDED = "suspended"


class TenantModel(Base, TimestampMixin):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    domain: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TENANT_ACTIVE)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)

    @property
    def is_active(self) -> bool:
        return self.status == TENANT_ACTIVE
