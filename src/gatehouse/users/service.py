"""User persistence: tenant-scoped lookups, creation and profile changes."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.common.exceptions import Conflict
from gatehouse.users.models import UserModel

EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PROFILE_FIELDS = ("name", "email")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def wallet_display_name(address: str) -> str:
    """Default name for accounts created by wallet sign-in."""
    return f"User {address.lower()[:8]}"


class UserService:
    """User CRUD scoped by tenant."""

    async def create_user(
        self,
        session: AsyncSession,
        tenant_id: int,
        name: str,
        email: str | None = None,
        password_hash: str = "",
        wallet_address: str | None = None,
        is_verified: bool = False,
    ) -> UserModel:
        """Insert a user. Raises Conflict on duplicate email or wallet in the tenant."""
        if email is None and wallet_address is None:
            raise ValueError("Either email or wallet address is required")

        email = normalize_email(email) if email else None
        wallet_address = wallet_address.lower() if wallet_address else None

        if wallet_address and await self.find_by_wallet(session, wallet_address, tenant_id):
            raise Conflict()
        if email and await self.find_by_email(session, email, tenant_id):
            raise Conflict()

        user = UserModel(
            tenant_id=tenant_id,
            email=email,
            password_hash=password_hash,
            name=name,
            wallet_address=wallet_address,
            is_verified=is_verified,
        )
        if email and password_hash:
            user.email_verification_token = secrets.token_hex(32)
            user.email_verification_expires_at = (
                datetime.now(timezone.utc) + EMAIL_VERIFICATION_TTL
            )
        session.add(user)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise Conflict() from exc
        return user

    async def get_user(
        self, session: AsyncSession, user_id: int, tenant_id: int | None = None
    ) -> UserModel | None:
        query = select(UserModel).where(UserModel.id == user_id)
        if tenant_id is not None:
            query = query.where(UserModel.tenant_id == tenant_id)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def find_by_email(
        self, session: AsyncSession, email: str, tenant_id: int
    ) -> UserModel | None:
        result = await session.execute(
            select(UserModel).where(
                UserModel.email == normalize_email(email),
                UserModel.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_wallet(
        self, session: AsyncSession, wallet_address: str, tenant_id: int
    ) -> UserModel | None:
        result = await session.execute(
            select(UserModel).where(
                UserModel.wallet_address == wallet_address.lower(),
                UserModel.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create_wallet_user(
        self, session: AsyncSession, wallet_address: str, tenant_id: int
    ) -> tuple[UserModel, bool]:
        """Upsert on (tenant, lower(address)). Returns (user, is_new)."""
        user = await self.find_by_wallet(session, wallet_address, tenant_id)
        if user is not None:
            return user, False
        user = await self.create_user(
            session,
            tenant_id=tenant_id,
            name=wallet_display_name(wallet_address),
            wallet_address=wallet_address,
            is_verified=True,
        )
        return user, True

    async def record_login(self, session: AsyncSession, user: UserModel) -> UserModel:
        user.last_login_at = datetime.now(timezone.utc)
        await session.flush()
        return user

    async def verify_email(
        self, session: AsyncSession, token: str, tenant_id: int
    ) -> UserModel | None:
        """Mark the account verified if the token matches and has not expired."""
        result = await session.execute(
            select(UserModel).where(
                UserModel.email_verification_token == token,
                UserModel.tenant_id == tenant_id,
            )
        )
        user = result.scalar_one_or_none()
        if user is None or user.email_verification_expires_at is None:
            return None
        expires = user.email_verification_expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) >= expires:
            return None
        user.is_verified = True
        user.email_verification_token = None
        user.email_verification_expires_at = None
        await session.flush()
        return user

    async def update_profile(
        self, session: AsyncSession, user: UserModel, **updates: Any
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Apply name/email changes. Returns (old_values, new_values) of changed fields."""
        old_values: dict[str, Any] = {}
        new_values: dict[str, Any] = {}
        for field in PROFILE_FIELDS:
            value = updates.get(field)
            if value is None:
                continue
            if field == "email":
                value = normalize_email(value)
                if value != user.email and await self.find_by_email(session, value, user.tenant_id):
                    raise Conflict("User already exists with this email")
            if getattr(user, field) != value:
                old_values[field] = getattr(user, field)
                new_values[field] = value
                setattr(user, field, value)
        if new_values:
            try:
                await session.flush()
            except IntegrityError as exc:
                raise Conflict("User already exists with this email") from exc
        return old_values, new_values

    async def link_wallet(
        self, session: AsyncSession, user: UserModel, wallet_address: str
    ) -> tuple[str | None, str]:
        """Attach a wallet to an account. Returns (old_address, new_address)."""
        address = wallet_address.lower()
        existing = await self.find_by_wallet(session, address, user.tenant_id)
        if existing is not None and existing.id != user.id:
            raise Conflict("Wallet address already registered")
        old = user.wallet_address
        user.wallet_address = address
        try:
            await session.flush()
        except IntegrityError as exc:
            raise Conflict("Wallet address already registered") from exc
        return old, address
