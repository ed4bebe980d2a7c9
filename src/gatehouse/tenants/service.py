"""Tenant lookups. The core only reads tenants; it bootstraps the default one."""

import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.common.exceptions import InvalidTenantError
from gatehouse.tenants.models import TENANT_ACTIVE, TenantModel

SLUG_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


class TenantService:
    """Tenant resolution operations."""

    def __init__(self, default_slug: str = "default"):
        self.default_slug = default_slug

    async def create_tenant(
        self,
        session: AsyncSession,
        name: str,
        slug: str,
        domain: str | None = None,
        status: str = TENANT_ACTIVE,
        settings: dict | None = None,
    ) -> TenantModel:
        if not SLUG_PATTERN.match(slug):
            raise ValueError(f"Tenant slug must be URL-safe, got {slug!r}")
        tenant = TenantModel(
            name=name,
            slug=slug,
            domain=domain,
            status=status,
            settings=settings or {},
        )
        session.add(tenant)
        await session.flush()
        return tenant

    async def ensure_default(self, session: AsyncSession) -> TenantModel:
        """Return the default tenant, creating it on first start."""
        tenant = await self.get_by_slug(session, self.default_slug)
        if tenant is None:
            tenant = await self.create_tenant(
                session, name="Default", slug=self.default_slug
            )
        return tenant

    async def get_by_id(
        self, session: AsyncSession, tenant_id: int
    ) -> TenantModel | None:
        return await session.get(TenantModel, tenant_id)

    async def get_by_slug(
        self, session: AsyncSession, slug: str
    ) -> TenantModel | None:
        result = await session.execute(
            select(TenantModel).where(TenantModel.slug == slug)
        )
        return result.scalar_one_or_none()

    async def get_default(self, session: AsyncSession) -> TenantModel | None:
        return await self.get_by_slug(session, self.default_slug)

    async def resolve(
        self, session: AsyncSession, tenant_id: int | None
    ) -> TenantModel:
        """Load an active tenant by id, or the default tenant when id is None.

        Raises InvalidTenantError for unknown or suspended tenants.
        """
        if tenant_id is None:
            tenant = await self.get_default(session)
        else:
            tenant = await self.get_by_id(session, tenant_id)
        if tenant is None:
            raise InvalidTenantError("Tenant not found")
        if not tenant.is_active:
            raise InvalidTenantError("Tenant is not active")
        return tenant
