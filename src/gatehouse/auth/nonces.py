"""Pending wallet challenges.

A challenge binds a wallet signature to one issuance: the client signs the
canonical message below, and the server rebuilds the same bytes from the
stored entry when it checks the signature. Entries are one-shot and expire
after ``ttl_ms``; issuing a new challenge for an address replaces the old one.
"""

import hmac
import json
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from gatehouse.common.cache import nonce_key
from gatehouse.common.exceptions import InvalidChallengeError

NONCE_BYTES = 16

CHALLENGE_TEMPLATE = (
    "Sign this message to authenticate with our service.\n"
    "\n"
    "Wallet: {address}\n"
    "Nonce: {nonce}\n"
    "Timestamp: {issued_at}\n"
    "Expires: {expires_at}"
)


class ChallengeNotFound(InvalidChallengeError):
    def __init__(self):
        super().__init__(reason="not_found")


class ChallengeExpired(InvalidChallengeError):
    def __init__(self):
        super().__init__(reason="expired")
        self.detail = "Challenge expired"


class ChallengeMismatch(InvalidChallengeError):
    def __init__(self):
        super().__init__(reason="mismatch")
        self.detail = "Nonce does not match the pending challenge"


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_ms(epoch_ms: int) -> str:
    """Render epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = datetime.fromtimestamp(epoch_ms // 1000, tz=timezone.utc)
    return f"{dt.strftime('%Y-%m-%dT%H:%M:%S')}.{epoch_ms % 1000:03d}Z"


def build_challenge_message(address: str, nonce: str, issued_at: int, expires_at: int) -> str:
    """The exact text a wallet signs. Must be byte-identical at verification."""
    return CHALLENGE_TEMPLATE.format(
        address=address,
        nonce=nonce,
        issued_at=iso_ms(issued_at),
        expires_at=iso_ms(expires_at),
    )


@dataclass
class PendingChallenge:
    address: str  # as submitted by the client; the message embeds it verbatim
    nonce: str
    issued_at: int  # epoch ms
    tenant_id: int

    def expires_at(self, ttl_ms: int) -> int:
        return self.issued_at + ttl_ms

    def is_expired(self, now: int, ttl_ms: int) -> bool:
        return now >= self.issued_at + ttl_ms

    def message(self, ttl_ms: int) -> str:
        return build_challenge_message(
            self.address, self.nonce, self.issued_at, self.expires_at(ttl_ms)
        )


@dataclass(frozen=True)
class Challenge:
    """What the client receives from an issue call."""

    wallet_address: str
    nonce: str
    message: str
    issued_at: int
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "nonce": self.nonce,
            "message": self.message,
            "issuedAt": iso_ms(self.issued_at),
            "expiresAt": iso_ms(self.expires_at),
        }


def _next_issued_at(now: int, prior: Optional[PendingChallenge]) -> int:
    # issuedAt never goes backwards for an address, even on a clock step.
    if prior is not None and now <= prior.issued_at:
        return prior.issued_at + 1
    return now


class NonceRegistry:
    """In-process challenge map keyed by lowercase wallet address.

    No method awaits while it touches ``_pending``, so each call is atomic on
    the event loop and a nonce can only be consumed once.
    """

    def __init__(self, ttl_ms: int = 300_000, clock: Callable[[], int] = now_ms):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._pending: dict[str, PendingChallenge] = {}

    def __len__(self) -> int:
        return len(self._pending)

    async def issue(self, address: str, tenant_id: int) -> Challenge:
        key = address.lower()
        now = self._clock()
        prior = self._pending.get(key)
        self.sweep(now)

        entry = PendingChallenge(
            address=address,
            nonce=secrets.token_hex(NONCE_BYTES),
            issued_at=_next_issued_at(now, prior),
            tenant_id=tenant_id,
        )
        self._pending[key] = entry
        return Challenge(
            wallet_address=address,
            nonce=entry.nonce,
            message=entry.message(self.ttl_ms),
            issued_at=entry.issued_at,
            expires_at=entry.expires_at(self.ttl_ms),
        )

    async def peek(self, address: str, tenant_id: int) -> PendingChallenge:
        """Return the live entry without consuming it."""
        entry = self._pending.get(address.lower())
        if entry is None or entry.tenant_id != tenant_id:
            raise ChallengeNotFound()
        if entry.is_expired(self._clock(), self.ttl_ms):
            del self._pending[address.lower()]
            raise ChallengeExpired()
        return entry

    async def consume(
        self, address: str, nonce: Optional[str], tenant_id: int
    ) -> PendingChallenge:
        """Remove and return the entry. ``nonce=None`` accepts the stored nonce."""
        key = address.lower()
        entry = self._pending.get(key)
        if entry is None or entry.tenant_id != tenant_id:
            raise ChallengeNotFound()
        if entry.is_expired(self._clock(), self.ttl_ms):
            del self._pending[key]
            raise ChallengeExpired()
        if nonce is not None and not hmac.compare_digest(entry.nonce, nonce):
            raise ChallengeMismatch()
        del self._pending[key]
        return entry

    def sweep(self, now: Optional[int] = None) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [k for k, v in self._pending.items() if v.is_expired(now, self.ttl_ms)]
        for key in expired:
            del self._pending[key]
        return len(expired)


class RedisNonceRegistry:
    """Same contract as NonceRegistry, shared across replicas through Redis.

    Entries live at ``wallet_nonce:{address}`` with a PX expiry; ``GETDEL``
    makes consumption single-use across processes.
    """

    def __init__(self, redis, ttl_ms: int = 300_000, clock: Callable[[], int] = now_ms):
        self.redis = redis
        self.ttl_ms = ttl_ms
        self._clock = clock

    async def _load(self, address: str) -> tuple[Optional[str], Optional[PendingChallenge]]:
        raw = await self.redis.get(nonce_key(address))
        if raw is None:
            return None, None
        return raw, PendingChallenge(**json.loads(raw))

    async def issue(self, address: str, tenant_id: int) -> Challenge:
        now = self._clock()
        _, prior = await self._load(address)
        entry = PendingChallenge(
            address=address,
            nonce=secrets.token_hex(NONCE_BYTES),
            issued_at=_next_issued_at(now, prior),
            tenant_id=tenant_id,
        )
        await self.redis.set(
            nonce_key(address), json.dumps(asdict(entry)), px=self.ttl_ms
        )
        return Challenge(
            wallet_address=address,
            nonce=entry.nonce,
            message=entry.message(self.ttl_ms),
            issued_at=entry.issued_at,
            expires_at=entry.expires_at(self.ttl_ms),
        )

    async def peek(self, address: str, tenant_id: int) -> PendingChallenge:
        _, entry = await self._load(address)
        if entry is None or entry.tenant_id != tenant_id:
            raise ChallengeNotFound()
        if entry.is_expired(self._clock(), self.ttl_ms):
            await self.redis.delete(nonce_key(address))
            raise ChallengeExpired()
        return entry

    async def consume(
        self, address: str, nonce: Optional[str], tenant_id: int
    ) -> PendingChallenge:
        raw, entry = await self._load(address)
        if entry is None or entry.tenant_id != tenant_id:
            raise ChallengeNotFound()
        if entry.is_expired(self._clock(), self.ttl_ms):
            await self.redis.delete(nonce_key(address))
            raise ChallengeExpired()
        if nonce is not None and not hmac.compare_digest(entry.nonce, nonce):
            raise ChallengeMismatch()
        # Only the caller whose GETDEL returns this exact entry wins.
        taken = await self.redis.getdel(nonce_key(address))
        if taken != raw:
            raise ChallengeNotFound()
        return entry

    def sweep(self, now: Optional[int] = None) -> int:
        # Redis evicts expired entries on its own.
        return 0
