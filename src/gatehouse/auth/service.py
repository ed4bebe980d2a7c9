"""Authentication orchestration.

Each public flow resolves the tenant, verifies credentials, opens a session,
mints a token and records what happened. Failures raise ``GatehouseError``
subclasses that the app renders as the error envelope.
"""

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.audit import actions
from gatehouse.audit.actions import HIGH, INFO, WARN
from gatehouse.audit.events import UserActivityEvent
from gatehouse.audit.pipeline import AuditPipeline
from gatehouse.auth.credentials import CredentialVerifier
from gatehouse.auth.nonces import Challenge, PendingChallenge
from gatehouse.auth.sessions import SessionManager
from gatehouse.auth.tokens import (
    AUTH_PASSWORD,
    AUTH_WALLET,
    TokenClaims,
    TokenService,
    TokenStatus,
)
from gatehouse.common.cache import profile_key
from gatehouse.common.database import DatabaseManager
from gatehouse.common.exceptions import (
    Forbidden,
    InvalidChallengeError,
    InvalidCredentials,
    InvalidSignatureError,
    InvalidTokenError,
    NotFound,
    ValidationFailed,
)
from gatehouse.common.logging import get_logger
from gatehouse.common.security import RequestContext
from gatehouse.common.stores import StoreGuard
from gatehouse.tenants.models import TenantModel
from gatehouse.tenants.service import TenantService
from gatehouse.users.models import UserModel
from gatehouse.users.service import UserService

logger = get_logger("auth")

T = TypeVar("T")

USERS_TABLE = "users"


def public_user(user: UserModel) -> dict[str, Any]:
    """The user shape returned by register/login/wallet responses."""
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "walletAddress": user.wallet_address,
        "isVerified": user.is_verified,
    }


@dataclass
class AuthResult:
    user: UserModel
    token: str
    session_id: str
    is_new: bool = False


class AuthService:
    """Coordinates credentials, tokens, sessions and auditing per request."""

    def __init__(
        self,
        db: DatabaseManager,
        tenants: TenantService,
        users: UserService,
        nonces,
        credentials: CredentialVerifier,
        tokens: TokenService,
        sessions: SessionManager,
        audit: AuditPipeline,
        redis=None,
        guard: Optional[StoreGuard] = None,
        profile_cache_ttl: int = 1800,
    ):
        self.db = db
        self.tenants = tenants
        self.users = users
        self.nonces = nonces
        self.credentials = credentials
        self.tokens = tokens
        self.sessions = sessions
        self.audit = audit
        self.redis = redis
        self.guard = guard or StoreGuard()
        self.profile_cache_ttl = profile_cache_ttl
        self._dummy_hash: Optional[str] = None

    # ── Helpers ──

    async def _with_db(
        self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        async def work():
            async with self.db.get_session() as session:
                return await fn(session)
        return await self.guard.run(operation, work())

    async def _resolve_tenant(self, ctx: RequestContext) -> TenantModel:
        tenant = await self._with_db(
            "tenant.resolve", lambda s: self.tenants.resolve(s, ctx.tenant_hint)
        )
        ctx.tenant_id = tenant.id
        return tenant

    def _record(
        self,
        ctx: RequestContext,
        action: str,
        user_id: Optional[int] = None,
        severity: str = INFO,
        details: Optional[dict[str, Any]] = None,
        wallet_address: Optional[str] = None,
        table_name: Optional[str] = None,
        record_id: Optional[int] = None,
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
    ) -> None:
        self.audit.record(UserActivityEvent(
            user_id=user_id if user_id is not None else (ctx.user_id or 0),
            tenant_id=ctx.audit_tenant_id or self.audit.default_tenant_id,
            action=action,
            details=details or {},
            wallet_address=wallet_address,
            table_name=table_name,
            record_id=record_id,
            old_values=old_values,
            new_values=new_values,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            session_id=ctx.session_id,
            severity=severity,
        ))

    async def _start_session(
        self, ctx: RequestContext, user: UserModel, auth_method: str
    ) -> tuple[str, str]:
        session_id = await self.sessions.open(user.id, user.tenant_id, user.snapshot())
        token = await self.tokens.mint(TokenClaims(
            user_id=user.id,
            tenant_id=user.tenant_id,
            auth_method=auth_method,
            session_id=session_id,
            email=user.email,
            wallet_address=user.wallet_address,
        ))
        ctx.user_id = user.id
        ctx.session_id = session_id
        return token, session_id

    async def _password_placeholder(self) -> str:
        # Unknown users still pay for one bcrypt check.
        if self._dummy_hash is None:
            self._dummy_hash = await self.credentials.hash_password("placeholder-password")
        return self._dummy_hash

    async def _drop_profile_cache(self, tenant_id: int, user_id: int) -> None:
        if self.redis is not None:
            await self.guard.run("profile.invalidate", self.redis.delete(profile_key(tenant_id, user_id)))

    # ── Password flows ──

    async def register(
        self,
        ctx: RequestContext,
        email: str,
        password: str,
        name: str,
    ) -> AuthResult:
        """Create a password account. Wallets attach only through link_wallet."""
        tenant = await self._resolve_tenant(ctx)
        password_hash = await self.credentials.hash_password(password)

        async def create(session: AsyncSession) -> UserModel:
            return await self.users.create_user(
                session,
                tenant_id=tenant.id,
                name=name,
                email=email,
                password_hash=password_hash,
            )

        user = await self._with_db("user.register", create)
        token, session_id = await self._start_session(ctx, user, AUTH_PASSWORD)
        self._record(
            ctx, actions.USER_REGISTERED,
            user_id=user.id,
            details={"method": "email", "email": user.email},
            wallet_address=user.wallet_address,
            table_name=USERS_TABLE,
            record_id=user.id,
            new_values=public_user(user),
        )
        logger.info("User registered", extra={"context": {"userId": user.id, "tenantId": tenant.id}})
        return AuthResult(user, token, session_id, is_new=True)

    async def login(self, ctx: RequestContext, email: str, password: str) -> AuthResult:
        tenant = await self._resolve_tenant(ctx)
        user = await self._with_db(
            "user.lookup", lambda s: self.users.find_by_email(s, email, tenant.id)
        )

        if user is None:
            await self.credentials.verify_password(password, await self._password_placeholder())
            ok = False
        else:
            ok = user.has_password and await self.credentials.verify_password(
                password, user.password_hash
            )

        if not ok:
            self._record(
                ctx, actions.FAILED_LOGIN,
                user_id=user.id if user is not None else 0,
                severity=HIGH,
                details={"email": email, "method": "email"},
            )
            raise InvalidCredentials()

        async def touch_login(session: AsyncSession) -> UserModel:
            fresh = await self.users.get_user(session, user.id, tenant.id)
            return await self.users.record_login(session, fresh)

        user = await self._with_db("user.login", touch_login)
        await self._drop_profile_cache(user.tenant_id, user.id)
        token, session_id = await self._start_session(ctx, user, AUTH_PASSWORD)
        self._record(ctx, actions.USER_LOGIN, user_id=user.id, details={"method": "email"})
        return AuthResult(user, token, session_id)

    async def verify_email(self, ctx: RequestContext, token: str) -> UserModel:
        tenant = await self._resolve_tenant(ctx)
        user = await self._with_db(
            "user.verify_email", lambda s: self.users.verify_email(s, token, tenant.id)
        )
        if user is None:
            raise ValidationFailed("Invalid or expired verification token")
        self._record(
            ctx, actions.EMAIL_VERIFIED,
            user_id=user.id,
            table_name=USERS_TABLE,
            record_id=user.id,
            old_values={"isVerified": False},
            new_values={"isVerified": True},
        )
        await self._drop_profile_cache(tenant.id, user.id)
        return user

    # ── Wallet flows ──

    async def issue_challenge(self, ctx: RequestContext, wallet_address: str) -> Challenge:
        tenant = await self._resolve_tenant(ctx)
        challenge = await self.guard.run(
            "nonce.issue", self.nonces.issue(wallet_address, tenant.id)
        )
        self._record(
            ctx, actions.WALLET_CHALLENGE_REQUEST,
            details={"walletAddress": wallet_address.lower()},
            wallet_address=wallet_address.lower(),
        )
        return challenge

    async def _check_challenge(
        self, ctx: RequestContext, tenant_id: int, wallet_address: str, signature: str
    ) -> PendingChallenge:
        """Verify the signature over the pending challenge, then consume it."""
        try:
            pending = await self.guard.run(
                "nonce.peek", self.nonces.peek(wallet_address, tenant_id)
            )
            await self.credentials.verify_wallet_signature(
                wallet_address,
                signature,
                pending.message(self.nonces.ttl_ms),
                pending.issued_at,
                self.nonces.ttl_ms,
            )
            # Only one of several concurrent verifies gets past this point.
            return await self.guard.run(
                "nonce.consume", self.nonces.consume(wallet_address, pending.nonce, tenant_id)
            )
        except (InvalidChallengeError, InvalidSignatureError) as exc:
            self._record(
                ctx, actions.WALLET_AUTH_FAILED,
                severity=WARN,
                details={"walletAddress": wallet_address.lower(), "reason": exc.code},
                wallet_address=wallet_address.lower(),
            )
            raise

    async def verify_wallet(
        self, ctx: RequestContext, wallet_address: str, signature: str
    ) -> AuthResult:
        tenant = await self._resolve_tenant(ctx)
        await self._check_challenge(ctx, tenant.id, wallet_address, signature)

        async def upsert(session: AsyncSession) -> tuple[UserModel, bool]:
            user, is_new = await self.users.get_or_create_wallet_user(
                session, wallet_address, tenant.id
            )
            await self.users.record_login(session, user)
            return user, is_new

        user, is_new = await self._with_db("user.wallet_upsert", upsert)
        await self._drop_profile_cache(user.tenant_id, user.id)
        token, session_id = await self._start_session(ctx, user, AUTH_WALLET)
        self._record(
            ctx, actions.WALLET_AUTH_SUCCESS,
            user_id=user.id,
            details={"method": "wallet", "isNewUser": is_new},
            wallet_address=user.wallet_address,
            table_name=USERS_TABLE if is_new else None,
            record_id=user.id if is_new else None,
            new_values=public_user(user) if is_new else None,
        )
        return AuthResult(user, token, session_id, is_new=is_new)

    async def wallet_auth(
        self, ctx: RequestContext, wallet_address: str, signature: Optional[str] = None
    ) -> Challenge | AuthResult:
        """Verify when a signature is present, otherwise issue a challenge."""
        if signature:
            return await self.verify_wallet(ctx, wallet_address, signature)
        return await self.issue_challenge(ctx, wallet_address)

    # ── Bearer flows ──

    async def authenticate(self, ctx: RequestContext, token: str) -> TokenClaims:
        """Verify the token against the explicit tenant, then refresh its session."""
        result = await self.tokens.verify(token, expected_tenant_id=ctx.tenant_hint)
        if result.status is TokenStatus.TENANT_MISMATCH:
            raise Forbidden()
        if not result.ok:
            logger.debug("Token rejected: %s", result.status.value)
            raise InvalidTokenError(reason=result.status.value)

        claims = result.claims
        await self._with_db("tenant.resolve", lambda s: self.tenants.resolve(s, claims.tenant_id))
        await self.sessions.touch(claims.session_id, claims.user_id, claims.tenant_id)

        ctx.token = token
        ctx.claims = claims
        ctx.tenant_id = claims.tenant_id
        ctx.user_id = claims.user_id
        ctx.session_id = claims.session_id
        return claims

    async def logout(self, ctx: RequestContext) -> None:
        claims: TokenClaims = ctx.claims
        await self.tokens.revoke(claims.user_id, ctx.token)
        await self.sessions.revoke(claims.user_id, claims.tenant_id, claims.session_id)
        self._record(ctx, actions.USER_LOGOUT, details={"method": "manual"})

    def introspect(self, ctx: RequestContext) -> dict[str, Any]:
        claims: TokenClaims = ctx.claims
        return {
            "id": claims.user_id,
            "email": claims.email,
            "walletAddress": claims.wallet_address,
            "tenantId": claims.tenant_id,
            "authMethod": claims.auth_method,
            "sessionId": claims.session_id,
            "expiresAt": claims.exp,
        }

    async def _load_user(self, ctx: RequestContext) -> UserModel:
        user = await self._with_db(
            "user.lookup", lambda s: self.users.get_user(s, ctx.user_id, ctx.tenant_id)
        )
        if user is None:
            raise NotFound("User not found")
        return user

    async def get_profile(self, ctx: RequestContext) -> dict[str, Any]:
        key = profile_key(ctx.tenant_id, ctx.user_id)
        if self.redis is not None:
            cached = await self.guard.run("profile.read", self.redis.get(key))
            if cached is not None:
                return json.loads(cached)
        profile = (await self._load_user(ctx)).snapshot()
        if self.redis is not None:
            await self.guard.run(
                "profile.write",
                self.redis.set(key, json.dumps(profile), ex=self.profile_cache_ttl),
            )
        return profile

    async def update_profile(
        self, ctx: RequestContext, name: Optional[str] = None, email: Optional[str] = None
    ) -> dict[str, Any]:
        async def apply(session: AsyncSession):
            user = await self.users.get_user(session, ctx.user_id, ctx.tenant_id)
            if user is None:
                raise NotFound("User not found")
            old, new = await self.users.update_profile(session, user, name=name, email=email)
            return user, old, new

        user, old, new = await self._with_db("user.update_profile", apply)
        if new:
            self._record(
                ctx, actions.PROFILE_UPDATED,
                details={"fields": sorted(new)},
                table_name=USERS_TABLE,
                record_id=user.id,
                old_values=old,
                new_values=new,
            )
            await self._drop_profile_cache(ctx.tenant_id, ctx.user_id)
        return user.snapshot()

    async def link_wallet(
        self, ctx: RequestContext, wallet_address: str, signature: str
    ) -> dict[str, Any]:
        """Attach a wallet proven by a signed pending challenge."""
        await self._check_challenge(ctx, ctx.tenant_id, wallet_address, signature)

        async def apply(session: AsyncSession):
            user = await self.users.get_user(session, ctx.user_id, ctx.tenant_id)
            if user is None:
                raise NotFound("User not found")
            old, new = await self.users.link_wallet(session, user, wallet_address)
            return user, old, new

        user, old, new = await self._with_db("user.link_wallet", apply)
        self._record(
            ctx, actions.WALLET_LINKED,
            details={"walletAddress": new},
            wallet_address=new,
            table_name=USERS_TABLE,
            record_id=user.id,
            old_values={"walletAddress": old},
            new_values={"walletAddress": new},
        )
        await self._drop_profile_cache(ctx.tenant_id, ctx.user_id)
        return user.snapshot()

    # ── Sessions and activity ──

    async def list_sessions(self, ctx: RequestContext) -> list[dict[str, Any]]:
        summaries = await self.sessions.list(ctx.user_id, ctx.tenant_id)
        return [s.to_dict() for s in summaries]

    async def revoke_session(self, ctx: RequestContext, session_id: str) -> None:
        removed = await self.sessions.revoke(ctx.user_id, ctx.tenant_id, session_id)
        if not removed:
            raise NotFound("Session not found")
        self._record(ctx, actions.SESSION_REVOKED, details={"revokedSessionId": session_id})

    async def revoke_other_sessions(self, ctx: RequestContext) -> int:
        count = await self.sessions.revoke_others(ctx.user_id, ctx.tenant_id, ctx.session_id)
        if count:
            self._record(ctx, actions.SESSION_REVOKED, details={"scope": "others", "count": count})
        return count

    async def activity(
        self, ctx: RequestContext, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        return await self.guard.run(
            "activity.read",
            self.audit.get_user_activity(ctx.user_id, ctx.tenant_id, limit=limit, offset=offset),
        )

    async def activity_stats(self, ctx: RequestContext, hours: int = 24) -> dict[str, Any]:
        stats = await self.guard.run(
            "activity.stats",
            self.audit.get_activity_stats(ctx.user_id, ctx.tenant_id, hours=hours),
        )
        return stats or {
            "hours": hours,
            "userActivityCount": 0,
            "tenantActivityCount": 0,
            "userActivities": [],
            "tenantActivities": [],
        }
