"""Server-side sessions in Redis.

One live session per (tenant, user) lives at ``tenant:{t}:user_session:{u}``;
opening a new one supersedes the previous login. The per-user hash and the
per-tenant sorted set are indices over those records, pruned as sessions
are replaced or revoked.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from redis.exceptions import WatchError

from gatehouse.common.cache import (
    revoked_session_key,
    session_index_key,
    session_key,
    tenant_sessions_key,
)
from gatehouse.common.exceptions import SessionInvalidError
from gatehouse.common.logging import get_logger
from gatehouse.common.models import generate_uuid
from gatehouse.common.stores import StoreGuard

logger = get_logger("auth.sessions")


class SessionExpired(SessionInvalidError):
    def __init__(self):
        super().__init__("Session expired")


class SessionMismatch(SessionInvalidError):
    def __init__(self):
        super().__init__("Session is no longer active")


@dataclass
class SessionSummary:
    session_id: str
    issued_at: int
    last_activity: int
    current: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "issuedAt": self.issued_at,
            "lastActivity": self.last_activity,
            "current": self.current,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


def _summary(record: dict[str, Any]) -> str:
    return json.dumps({
        "sessionId": record["sessionId"],
        "issuedAt": record["issuedAt"],
        "lastActivity": record["lastActivity"],
    })


class SessionManager:
    """Open, refresh, list and revoke sessions."""

    def __init__(
        self,
        redis,
        ttl_seconds: int = 3600,
        guard: Optional[StoreGuard] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.guard = guard or StoreGuard()
        self._clock = clock

    async def open(self, user_id: int, tenant_id: int, snapshot: dict[str, Any]) -> str:
        return await self.guard.run(
            "session.open", self._open(user_id, tenant_id, snapshot)
        )

    async def _open(self, user_id: int, tenant_id: int, snapshot: dict[str, Any]) -> str:
        key = session_key(tenant_id, user_id)
        index = session_index_key(tenant_id, user_id)
        now = self._clock()
        record = {
            "sessionId": generate_uuid(),
            "issuedAt": now,
            "lastActivity": now,
            "user": snapshot,
        }

        previous = await self.redis.get(key)
        async with self.redis.pipeline(transaction=True) as pipe:
            if previous is not None:
                old_id = json.loads(previous)["sessionId"]
                pipe.hdel(index, old_id)
                pipe.zrem(tenant_sessions_key(tenant_id), f"{user_id}:{old_id}")
                pipe.set(revoked_session_key(tenant_id, old_id), "1", ex=self.ttl_seconds)
            pipe.set(key, json.dumps(record), ex=self.ttl_seconds)
            pipe.hset(index, record["sessionId"], _summary(record))
            pipe.expire(index, self.ttl_seconds)
            pipe.zadd(tenant_sessions_key(tenant_id), {f"{user_id}:{record['sessionId']}": now})
            await pipe.execute()
        return record["sessionId"]

    async def get(self, user_id: int, tenant_id: int) -> Optional[dict[str, Any]]:
        raw = await self.guard.run(
            "session.get", self.redis.get(session_key(tenant_id, user_id))
        )
        return json.loads(raw) if raw is not None else None

    async def touch(
        self,
        session_id: str,
        user_id: int,
        tenant_id: int,
        now: Optional[int] = None,
    ) -> dict[str, Any]:
        """Refresh lastActivity and TTL. Returns the stored record.

        Raises SessionExpired when no session exists, SessionMismatch when the
        stored session belongs to another login or this one was revoked.
        """
        now = self._clock() if now is None else now
        return await self.guard.run(
            "session.touch", self._touch(session_id, user_id, tenant_id, now)
        )

    async def _touch(
        self, session_id: str, user_id: int, tenant_id: int, now: int
    ) -> dict[str, Any]:
        key = session_key(tenant_id, user_id)
        index = session_index_key(tenant_id, user_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        if await self.redis.exists(revoked_session_key(tenant_id, session_id)):
                            raise SessionMismatch()
                        raise SessionExpired()
                    record = json.loads(raw)
                    if record["sessionId"] != session_id:
                        await pipe.unwatch()
                        raise SessionMismatch()

                    pipe.multi()
                    if now > record["lastActivity"]:
                        record["lastActivity"] = now
                        pipe.set(key, json.dumps(record), ex=self.ttl_seconds)
                        pipe.hset(index, session_id, _summary(record))
                    else:
                        pipe.expire(key, self.ttl_seconds)
                    pipe.expire(index, self.ttl_seconds)
                    await pipe.execute()
                    return record
                except WatchError:
                    logger.debug("Session %s changed during touch, retrying", session_id)
                    continue

    async def _list(self, user_id: int, tenant_id: int) -> list[SessionSummary]:
        raw_current = await self.redis.get(session_key(tenant_id, user_id))
        current_id = json.loads(raw_current)["sessionId"] if raw_current else None
        entries = await self.redis.hgetall(session_index_key(tenant_id, user_id))

        summaries = []
        stale = []
        for sid, raw in entries.items():
            if sid != current_id:
                stale.append(sid)
                continue
            data = json.loads(raw)
            summaries.append(SessionSummary(
                session_id=sid,
                issued_at=data["issuedAt"],
                last_activity=data["lastActivity"],
                current=True,
            ))
        if stale:
            await self._drop_index_entries(user_id, tenant_id, stale)
        summaries.sort(key=lambda s: s.issued_at, reverse=True)
        return summaries

    async def list_tenant(self, tenant_id: int, limit: int = 100) -> list[dict[str, Any]]:
        members = await self.guard.run(
            "session.list_tenant",
            self.redis.zrevrange(tenant_sessions_key(tenant_id), 0, limit - 1, withscores=True),
        )
        result = []
        for member, score in members:
            user_id, _, sid = member.partition(":")
            result.append({"userId": int(user_id), "sessionId": sid, "issuedAt": int(score)})
        return result

    async def revoke(self, user_id: int, tenant_id: int, session_id: str) -> bool:
        return await self.guard.run(
            "session.revoke", self._revoke(user_id, tenant_id, session_id)
        )

    async def _revoke(self, user_id: int, tenant_id: int, session_id: str) -> bool:
        key = session_key(tenant_id, user_id)
        removed = False
        raw = await self.redis.get(key)
        if raw is not None and json.loads(raw)["sessionId"] == session_id:
            await self.redis.delete(key)
            await self.redis.set(
                revoked_session_key(tenant_id, session_id), "1", ex=self.ttl_seconds
            )
            removed = True
        dropped = await self._drop_index_entries(user_id, tenant_id, [session_id])
        return removed or dropped > 0

    async def revoke_others(self, user_id: int, tenant_id: int, keep_session_id: str) -> int:
        return await self.guard.run(
            "session.revoke_others",
            self._revoke_others(user_id, tenant_id, keep_session_id),
        )

    async def _revoke_others(self, user_id: int, tenant_id: int, keep_session_id: str) -> int:
        key = session_key(tenant_id, user_id)
        others = [
            sid for sid in await self.redis.hkeys(session_index_key(tenant_id, user_id))
            if sid != keep_session_id
        ]
        raw = await self.redis.get(key)
        if raw is not None:
            current_id = json.loads(raw)["sessionId"]
            if current_id != keep_session_id:
                await self.redis.delete(key)
                await self.redis.set(
                    revoked_session_key(tenant_id, current_id), "1", ex=self.ttl_seconds
                )
                if current_id not in others:
                    others.append(current_id)
        if others:
            await self._drop_index_entries(user_id, tenant_id, others)
        return len(others)

    async def _drop_index_entries(
        self, user_id: int, tenant_id: int, session_ids: list[str]
    ) -> int:
        dropped = await self.redis.hdel(session_index_key(tenant_id, user_id), *session_ids)
        await self.redis.zrem(
            tenant_sessions_key(tenant_id), *[f"{user_id}:{sid}" for sid in session_ids]
        )
        return dropped

    # Defined last: inside the class body the name shadows the builtin.
    async def list(self, user_id: int, tenant_id: int) -> list[SessionSummary]:
        """Sessions indexed for the user, newest first."""
        return await self.guard.run("session.list", self._list(user_id, tenant_id))
