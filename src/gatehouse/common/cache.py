"""Redis client factory for sessions, revocation marks, counters and indices."""

import redis.asyncio as aioredis

from gatehouse.common.config import GatehouseSettings


def create_redis(settings: GatehouseSettings) -> aioredis.Redis:
    """Build the shared async Redis client.

    Responses are decoded to ``str``; every Gatehouse value is UTF-8 text or
    JSON.
    """
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.store_timeout_seconds,
        socket_connect_timeout=settings.store_timeout_seconds,
        health_check_interval=30,
    )


def session_key(tenant_id: int, user_id: int) -> str:
    return f"tenant:{tenant_id}:user_session:{user_id}"


def session_index_key(tenant_id: int, user_id: int) -> str:
    return f"tenant:{tenant_id}:user_sessions:{user_id}"


def tenant_sessions_key(tenant_id: int) -> str:
    return f"tenant:{tenant_id}:sessions"


def profile_key(tenant_id: int, user_id: int) -> str:
    return f"tenant:{tenant_id}:user_profile:{user_id}"


def revocation_key(user_id: int, signature: str) -> str:
    return f"jwt:{user_id}:{signature}"


def user_activity_key(user_id: int, tenant_id: int) -> str:
    return f"activity:user:{user_id}:{tenant_id}"


def tenant_activity_key(tenant_id: int) -> str:
    return f"activity:tenant:{tenant_id}"


def nonce_key(address: str) -> str:
    return f"wallet_nonce:{address.lower()}"


def revoked_session_key(tenant_id: int, session_id: str) -> str:
    return f"tenant:{tenant_id}:revoked_session:{session_id}"
