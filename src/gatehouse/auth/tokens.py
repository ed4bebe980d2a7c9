"""Bearer tokens: HS256 JWTs with Redis revocation marks.

Verification returns a ``TokenVerification`` with an explicit status rather
than ``None``, so callers can tell a forged token from a revoked one in logs
while still answering every failure with the same 401.
"""

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import jwt

from gatehouse.common.cache import revocation_key
from gatehouse.common.stores import StoreGuard

ALGORITHM = "HS256"
MAX_TOKEN_BYTES = 4096
AUTH_PASSWORD = "password"
AUTH_WALLET = "wallet"
AUTH_METHODS = (AUTH_PASSWORD, AUTH_WALLET)

MARK_VALID = "valid"
MARK_BLACKLISTED = "blacklisted"


class TokenStatus(str, enum.Enum):
    VALID = "valid"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    TENANT_MISMATCH = "tenant_mismatch"
    REVOKED = "revoked"


@dataclass
class TokenClaims:
    user_id: int
    tenant_id: int
    auth_method: str
    session_id: str
    email: Optional[str] = None
    wallet_address: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "userId": self.user_id,
            "email": self.email,
            "tenantId": self.tenant_id,
            "authMethod": self.auth_method,
            "sessionId": self.session_id,
            "iat": self.iat,
            "exp": self.exp,
        }
        if self.wallet_address:
            payload["walletAddress"] = self.wallet_address
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        return cls(
            user_id=int(payload["userId"]),
            tenant_id=int(payload["tenantId"]),
            auth_method=payload["authMethod"],
            session_id=payload["sessionId"],
            email=payload.get("email"),
            wallet_address=payload.get("walletAddress"),
            iat=payload.get("iat"),
            exp=payload.get("exp"),
        )


@dataclass
class TokenVerification:
    status: TokenStatus
    claims: Optional[TokenClaims] = None
    signature: str = field(default="", repr=False)

    @property
    def ok(self) -> bool:
        return self.status is TokenStatus.VALID


def signature_segment(token: str) -> str:
    return token.rsplit(".", 1)[-1]


class TokenService:
    """Mint, verify and revoke bearer tokens."""

    def __init__(
        self,
        secret: str,
        redis=None,
        lifetime_seconds: int = 86400,
        guard: Optional[StoreGuard] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.redis = redis
        self.lifetime_seconds = lifetime_seconds
        self.guard = guard or StoreGuard()
        self._clock = clock

    def encode(self, claims: TokenClaims) -> tuple[str, TokenClaims]:
        """Sign ``claims`` with fresh iat/exp. No store access."""
        if claims.auth_method not in AUTH_METHODS:
            raise ValueError(f"Unknown auth method: {claims.auth_method!r}")
        now = int(self._clock())
        claims.iat = now
        claims.exp = now + self.lifetime_seconds
        token = jwt.encode(claims.to_payload(), self.secret, algorithm=ALGORITHM)
        return token, claims

    async def mint(self, claims: TokenClaims) -> str:
        token, claims = self.encode(claims)
        await self.guard.run(
            "token.mint",
            self.redis.set(
                revocation_key(claims.user_id, signature_segment(token)),
                MARK_VALID,
                ex=self.lifetime_seconds,
            ),
        )
        return token

    def _decode(self, token: str) -> TokenVerification:
        if not token or len(token.encode("utf-8")) > MAX_TOKEN_BYTES or token.count(".") != 2:
            return TokenVerification(TokenStatus.MALFORMED)
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "iat"]},
            )
        except jwt.InvalidSignatureError:
            return TokenVerification(TokenStatus.BAD_SIGNATURE)
        except jwt.InvalidTokenError:
            return TokenVerification(TokenStatus.MALFORMED)
        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            return TokenVerification(TokenStatus.MALFORMED)
        return TokenVerification(TokenStatus.VALID, claims, signature_segment(token))

    def _check_expiry(self, result: TokenVerification) -> TokenVerification:
        if self._clock() >= result.claims.exp:
            return TokenVerification(TokenStatus.EXPIRED, result.claims, result.signature)
        return result

    async def verify(
        self, token: str, expected_tenant_id: Optional[int] = None
    ) -> TokenVerification:
        """Check structure, signature, revocation, expiry, then tenant, in that order."""
        result = self._decode(token)
        if not result.ok:
            return result

        claims = result.claims
        mark = await self.guard.run(
            "token.verify",
            self.redis.get(revocation_key(claims.user_id, result.signature)),
        )
        if mark == MARK_BLACKLISTED:
            return TokenVerification(TokenStatus.REVOKED, claims, result.signature)

        result = self._check_expiry(result)
        if not result.ok:
            return result

        if expected_tenant_id is not None and claims.tenant_id != expected_tenant_id:
            return TokenVerification(TokenStatus.TENANT_MISMATCH, claims, result.signature)
        return result

    async def revoke(self, user_id: int, token: str) -> None:
        await self.guard.run(
            "token.revoke",
            self.redis.set(
                revocation_key(user_id, signature_segment(token)),
                MARK_BLACKLISTED,
                ex=self.lifetime_seconds,
            ),
        )

    def inspect(self, token: str) -> TokenVerification:
        """Offline check: signature and expiry only."""
        result = self._decode(token)
        if not result.ok:
            return result
        return self._check_expiry(result)
