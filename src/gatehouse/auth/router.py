"""Auth API router. Mounted at /auth and /api/auth."""

from typing import Callable

from fastapi import APIRouter, Depends, Query, Request

from gatehouse.auth.nonces import Challenge
from gatehouse.auth.schemas import (
    ActivityResponse,
    ActivityStatsResponse,
    AuthResponse,
    ChallengeRequest,
    ChallengeResponse,
    LinkWalletRequest,
    LoginRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    RegisterRequest,
    RevokedResponse,
    SessionListResponse,
    TokenInfoResponse,
    UserOut,
    VerifyEmailRequest,
    WalletAuthRequest,
    WalletVerifyRequest,
)
from gatehouse.auth.service import AuthResult, public_user
from gatehouse.common.schemas import MessageResponse
from gatehouse.common.security import (
    RequestContext,
    extract_bearer,
    get_context,
    read_json_body,
    sanitize,
    tenant_hint,
)

router = APIRouter(tags=["auth"])


def _services(request: Request):
    from gatehouse.deps import get_services
    return get_services(request)


async def _prepare(request: Request) -> RequestContext:
    ctx = get_context(request)
    body = await read_json_body(request)
    ctx.body = sanitize(body) if body else None
    ctx.tenant_hint = tenant_hint(request, body)
    return ctx


def public(route_class: str) -> Callable:
    """Unauthenticated route: rate limited on the explicit tenant hint."""

    async def dependency(request: Request) -> RequestContext:
        ctx = await _prepare(request)
        ctx.rate_limit = await _services(request).limiter.hit(
            ctx.tenant_hint, ctx.ip_address or "unknown", route_class
        )
        return ctx

    return dependency


def authenticated(route_class: str = "api") -> Callable:
    """Bearer route: authenticate first, then rate limit on the token's tenant."""

    async def dependency(request: Request) -> RequestContext:
        ctx = await _prepare(request)
        services = _services(request)
        await services.auth.authenticate(ctx, extract_bearer(request))
        ctx.rate_limit = await services.limiter.hit(
            ctx.tenant_id, ctx.ip_address or "unknown", route_class
        )
        return ctx

    return dependency


def _auth_response(message: str, result: AuthResult) -> AuthResponse:
    return AuthResponse(
        message=message,
        user=UserOut(**public_user(result.user)),
        token=result.token,
        session_id=result.session_id,
    )


def _challenge_response(challenge: Challenge) -> ChallengeResponse:
    return ChallengeResponse(**challenge.to_dict())


# ── Password ──


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(
    body: RegisterRequest, request: Request, ctx: RequestContext = Depends(public("register"))
):
    result = await _services(request).auth.register(
        ctx,
        email=body.email,
        password=body.password,
        name=body.name,
    )
    return _auth_response("User registered successfully", result)


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest, request: Request, ctx: RequestContext = Depends(public("login"))
):
    result = await _services(request).auth.login(ctx, body.email, body.password)
    return _auth_response("Login successful", result)


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    body: VerifyEmailRequest, request: Request, ctx: RequestContext = Depends(public("verify_email"))
):
    await _services(request).auth.verify_email(ctx, body.token)
    return MessageResponse(message="Email verified successfully")


# ── Wallet ──


@router.post("/challenge", response_model=ChallengeResponse)
async def challenge(
    body: ChallengeRequest, request: Request, ctx: RequestContext = Depends(public("wallet"))
):
    issued = await _services(request).auth.issue_challenge(ctx, body.wallet_address)
    return _challenge_response(issued)


@router.post("/verify", response_model=AuthResponse)
async def verify_wallet(
    body: WalletVerifyRequest, request: Request, ctx: RequestContext = Depends(public("wallet"))
):
    result = await _services(request).auth.verify_wallet(
        ctx, body.wallet_address, body.signature
    )
    return _auth_response("Wallet authentication successful", result)


@router.post("/wallet-auth", response_model=AuthResponse | ChallengeResponse)
async def wallet_auth(
    body: WalletAuthRequest, request: Request, ctx: RequestContext = Depends(public("wallet"))
):
    outcome = await _services(request).auth.wallet_auth(
        ctx, body.wallet_address, body.signature
    )
    if isinstance(outcome, Challenge):
        return _challenge_response(outcome)
    return _auth_response("Wallet authentication successful", outcome)


# ── Bearer ──


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request, ctx: RequestContext = Depends(authenticated())):
    await _services(request).auth.logout(ctx)
    return MessageResponse(message="Logout successful")


@router.get("/verify", response_model=TokenInfoResponse)
async def verify_token(request: Request, ctx: RequestContext = Depends(authenticated())):
    return TokenInfoResponse(user=_services(request).auth.introspect(ctx))


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(request: Request, ctx: RequestContext = Depends(authenticated())):
    profile = await _services(request).auth.get_profile(ctx)
    return ProfileResponse(profile=profile)


@router.put("/profile", response_model=ProfileUpdateResponse)
async def update_profile(
    body: ProfileUpdateRequest, request: Request, ctx: RequestContext = Depends(authenticated())
):
    user = await _services(request).auth.update_profile(ctx, name=body.name, email=body.email)
    return ProfileUpdateResponse(message="Profile updated successfully", user=user)


@router.post("/link-wallet", response_model=ProfileUpdateResponse)
async def link_wallet(
    body: LinkWalletRequest, request: Request, ctx: RequestContext = Depends(authenticated())
):
    user = await _services(request).auth.link_wallet(ctx, body.wallet_address, body.signature)
    return ProfileUpdateResponse(message="Wallet linked successfully", user=user)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request, ctx: RequestContext = Depends(authenticated())):
    sessions = await _services(request).auth.list_sessions(ctx)
    return {"sessions": sessions}


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: str, request: Request, ctx: RequestContext = Depends(authenticated())
):
    await _services(request).auth.revoke_session(ctx, session_id)
    return MessageResponse(message="Session revoked")


@router.delete("/sessions", response_model=RevokedResponse)
async def revoke_other_sessions(request: Request, ctx: RequestContext = Depends(authenticated())):
    count = await _services(request).auth.revoke_other_sessions(ctx)
    return RevokedResponse(message="Other sessions revoked", revoked=count)


@router.get("/activity", response_model=ActivityResponse)
async def activity(
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: RequestContext = Depends(authenticated()),
):
    records = await _services(request).auth.activity(ctx, limit=limit, offset=offset)
    return ActivityResponse(activities=records, limit=limit, offset=offset)


@router.get("/activity/stats", response_model=ActivityStatsResponse)
async def activity_stats(
    request: Request,
    hours: int = Query(24, ge=1, le=24),
    ctx: RequestContext = Depends(authenticated()),
):
    stats = await _services(request).auth.activity_stats(ctx, hours=hours)
    return ActivityStatsResponse(stats=stats)
