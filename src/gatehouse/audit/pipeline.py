"""Batched dual-store audit pipeline.

Every activity goes to the document stream; activities that describe a
row-level mutation (``table_name`` set) also go to the relational stream.
Batches are kept per (stream, tenant) and written when they reach
``batch_size`` or ``batch_timeout_ms`` after their first record, whichever
comes first. Writes for one key run one at a time, in enqueue order.

Enqueueing never awaits: callers on the request path only append to a list
and schedule tasks.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from redis.exceptions import RedisError

from gatehouse.audit import actions
from gatehouse.audit.actions import (
    ERROR,
    HIGH,
    INFO,
    WARN,
    determine_action_type,
    level_enabled,
    severity_for_status,
)
from gatehouse.audit.events import (
    ActivityPayload,
    ApiEvent,
    BlockchainEvent,
    DatabaseEvent,
    SecurityEvent,
    SystemEvent,
    UserActivityEvent,
)
from gatehouse.audit.stores import AuditRowStore, DocumentStore
from gatehouse.common.cache import tenant_activity_key, user_activity_key
from gatehouse.common.logging import LEVEL_MAP, get_logger
from gatehouse.common.models import utcnow

logger = get_logger("audit")
deadletter = get_logger("audit.deadletter")

DOCUMENT = "document"
RELATIONAL = "relational"

INDEX_MAX_ENTRIES = 1000
INDEX_TTL_SECONDS = 86400
SLOW_DB_OPERATION_MS = 100

SECURITY_FAILURE_ACTIONS = ("failed_login", "login_failed", "wallet_auth_failed")


class AuditPipeline:
    """Per-(stream, tenant) batcher in front of the document and row stores."""

    def __init__(
        self,
        documents: DocumentStore,
        audit_rows: AuditRowStore,
        redis=None,
        batch_size: int = 100,
        batch_timeout_ms: int = 5000,
        flush_retries: int = 0,
        retry_delay_ms: int = 200,
        log_level: str = "INFO",
        slow_request_ms: int = 1000,
        large_response_bytes: int = 1024 * 1024,
        default_tenant_id: int = 1,
    ):
        self.documents = documents
        self.audit_rows = audit_rows
        self.redis = redis
        self.batch_size = batch_size
        self.batch_timeout_ms = batch_timeout_ms
        self.flush_retries = flush_retries
        self.retry_delay_ms = retry_delay_ms
        self.log_level = log_level
        self.slow_request_ms = slow_request_ms
        self.large_response_bytes = large_response_bytes
        self.default_tenant_id = default_tenant_id

        self._batches: dict[tuple[str, int], list[dict[str, Any]]] = {}
        self._timers: dict[tuple[str, int], asyncio.TimerHandle] = {}
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Core ──

    def log_activity(self, payload: ActivityPayload) -> dict[str, Any]:
        """Enqueue one activity. Returns the document record."""
        timestamp = utcnow()
        details = dict(payload.details)
        details.update({
            "ipAddress": payload.ip_address,
            "userAgent": payload.user_agent,
            "sessionId": payload.session_id,
        })
        document = {
            "user_id": payload.user_id,
            "tenant_id": payload.tenant_id,
            "wallet_address": payload.wallet_address,
            "action": payload.action,
            "details": details,
            "ip_address": payload.ip_address,
            "user_agent": payload.user_agent,
            "session_id": payload.session_id,
            "severity": payload.severity,
            "timestamp": timestamp,
        }
        self._enqueue(DOCUMENT, payload.tenant_id, document)

        if payload.table_name:
            self._enqueue(RELATIONAL, payload.tenant_id, {
                "user_id": payload.user_id,
                "tenant_id": payload.tenant_id,
                "action": payload.action,
                "table_name": payload.table_name,
                "record_id": payload.record_id,
                "old_values": payload.old_values,
                "new_values": payload.new_values,
                "ip_address": payload.ip_address,
                "user_agent": payload.user_agent,
                "created_at": timestamp,
            })

        if self.redis is not None:
            self._spawn(self._update_indices(
                payload.user_id, payload.tenant_id, payload.action,
                int(timestamp.timestamp() * 1000),
            ))
        return document

    def _enqueue(self, stream: str, tenant_id: int, record: dict[str, Any]) -> None:
        key = (stream, tenant_id)
        batch = self._batches.setdefault(key, [])
        batch.append(record)

        if len(batch) >= self.batch_size:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._spawn(self._write(key, self._batches.pop(key)))
        elif key not in self._timers:
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(
                self.batch_timeout_ms / 1000, self._on_timeout, key
            )

    def _on_timeout(self, key: tuple[str, int]) -> None:
        self._timers.pop(key, None)
        records = self._batches.pop(key, None)
        if records:
            self._spawn(self._write(key, records))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _lock_for(self, key: tuple[str, int]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _write(self, key: tuple[str, int], records: list[dict[str, Any]]) -> None:
        stream, tenant_id = key
        store = self.documents if stream == DOCUMENT else self.audit_rows
        async with self._lock_for(key):
            attempt = 0
            while True:
                try:
                    await store.insert_many(records)
                    logger.debug("Flushed %d %s records for tenant %s", len(records), stream, tenant_id)
                    return
                except Exception as exc:
                    # Flush failures stay inside the pipeline; the batch goes to dead-letter.
                    if attempt < self.flush_retries:
                        attempt += 1
                        await asyncio.sleep(self.retry_delay_ms / 1000)
                        continue
                    logger.error(
                        "Failed to flush %s batch for tenant %s: %s", stream, tenant_id, exc
                    )
                    deadletter.error(
                        "Dropped audit batch",
                        extra={"context": {
                            "stream": stream,
                            "tenantId": tenant_id,
                            "attempts": attempt + 1,
                            "records": records,
                        }},
                    )
                    return

    async def _update_indices(self, user_id: int, tenant_id: int, action: str, now_ms: int) -> None:
        user_key = user_activity_key(user_id, tenant_id)
        tenant_key = tenant_activity_key(tenant_id)
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.zadd(user_key, {f"{action}:{now_ms}": now_ms})
                pipe.expire(user_key, INDEX_TTL_SECONDS)
                pipe.zadd(tenant_key, {f"{user_id}:{action}:{now_ms}": now_ms})
                pipe.expire(tenant_key, INDEX_TTL_SECONDS)
                pipe.zremrangebyrank(user_key, 0, -(INDEX_MAX_ENTRIES + 1))
                pipe.zremrangebyrank(tenant_key, 0, -(INDEX_MAX_ENTRIES + 1))
                await pipe.execute()
        except (RedisError, OSError) as exc:
            logger.warning("Failed to update activity indices: %s", exc)

    async def drain(self) -> None:
        """Wait for every scheduled write and index update to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def flush_all(self) -> None:
        """Write out every pending batch now. Called on shutdown."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for key in list(self._batches):
            records = self._batches.pop(key)
            if records:
                self._spawn(self._write(key, records))
        await self.drain()

    def pending(self, stream: str = DOCUMENT, tenant_id: Optional[int] = None) -> int:
        """Records waiting in memory for a stream (optionally one tenant)."""
        return sum(
            len(records) for (s, t), records in self._batches.items()
            if s == stream and (tenant_id is None or t == tenant_id)
        )

    # ── Event variants ──

    def record(self, event) -> Optional[dict[str, Any]]:
        """Dispatch an event to its variant method."""
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported audit event: {type(event).__name__}")
        return handler(self, event)

    def log_user_activity(self, event: UserActivityEvent) -> dict[str, Any]:
        return self.log_activity(ActivityPayload(
            user_id=event.user_id,
            tenant_id=event.tenant_id,
            action=event.action,
            details=event.details,
            wallet_address=event.wallet_address,
            table_name=event.table_name,
            record_id=event.record_id,
            old_values=event.old_values,
            new_values=event.new_values,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            session_id=event.session_id,
            severity=event.severity,
        ))

    def log_security_event(self, event: SecurityEvent) -> dict[str, Any]:
        severity = HIGH if event.flags else event.severity
        details = dict(event.details)
        details.update({
            "severity": severity,
            "securityFlags": list(event.flags),
            "threatLevel": HIGH if event.flags else "NORMAL",
        })
        level = logging.ERROR if severity == HIGH else logging.WARNING
        logger.log(
            level, "Security event %s", event.event,
            extra={"context": {
                "tenantId": event.tenant_id,
                "userId": event.user_id,
                "ipAddress": event.ip_address,
                "flags": list(event.flags),
            }},
        )
        return self.log_activity(ActivityPayload(
            user_id=event.user_id or 0,
            tenant_id=self._tenant(event.tenant_id),
            action=f"{actions.SECURITY_PREFIX}{event.event}",
            details=details,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            session_id=event.session_id,
            severity=severity,
        ))

    def log_api_request(self, event: ApiEvent) -> dict[str, Any]:
        slow = event.response_time_ms > self.slow_request_ms
        large = (event.response_size or 0) > self.large_response_bytes
        severity = severity_for_status(event.status_code)

        logger.log(
            logging.ERROR if event.status_code >= 400 else logging.WARNING if slow else logging.INFO,
            "%s %s %s %.0fms", event.method, event.path, event.status_code, event.response_time_ms,
        )
        api = {
            "method": event.method,
            "path": event.path,
            "statusCode": event.status_code,
            "responseTime": event.response_time_ms,
            "responseSize": event.response_size,
            "slow": slow,
            "large": large,
        }
        document = self.log_activity(ActivityPayload(
            user_id=event.user_id or 0,
            tenant_id=self._tenant(event.tenant_id),
            action=determine_action_type(event.method, event.path, event.status_code),
            details={"api": api, "performance": {
                "responseTime": event.response_time_ms, "slow": slow, "large": large,
            }},
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            session_id=event.session_id,
            severity=severity,
        ))

        if slow:
            self.log_system_event(SystemEvent(
                event="slow_request",
                level=WARN,
                tenant_id=event.tenant_id,
                details={
                    "method": event.method,
                    "path": event.path,
                    "responseTime": event.response_time_ms,
                    "threshold": self.slow_request_ms,
                },
            ))
        if large:
            self.log_system_event(SystemEvent(
                event="large_response",
                level=WARN,
                tenant_id=event.tenant_id,
                details={
                    "method": event.method,
                    "path": event.path,
                    "responseSize": event.response_size,
                    "threshold": self.large_response_bytes,
                },
            ))
        if event.status_code in (401, 403):
            self.log_security_event(SecurityEvent(
                tenant_id=event.tenant_id,
                event="auth_failure",
                user_id=event.user_id,
                details={
                    "method": event.method,
                    "path": event.path,
                    "statusCode": event.status_code,
                },
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                session_id=event.session_id,
                severity=HIGH,
            ))
        return document

    def log_database_operation(self, event: DatabaseEvent) -> dict[str, Any]:
        slow = event.duration_ms is not None and event.duration_ms > SLOW_DB_OPERATION_MS
        if not event.success:
            severity = ERROR
        elif slow:
            severity = WARN
        else:
            severity = INFO
        if severity != INFO:
            logger.log(
                LEVEL_MAP[severity], "DB %s on %s %s (%sms)", event.operation, event.table,
                "SUCCESS" if event.success else "FAILED", event.duration_ms,
            )
        details = {
            "table": event.table,
            "recordId": event.record_id,
            "duration": event.duration_ms,
            "success": event.success,
        }
        details.update(event.details)
        return self.log_activity(ActivityPayload(
            user_id=0,
            tenant_id=self._tenant(event.tenant_id),
            action=f"{actions.DATABASE_PREFIX}{event.operation}",
            details=details,
            severity=severity,
        ))

    def log_blockchain_operation(self, event: BlockchainEvent) -> dict[str, Any]:
        logger.log(
            logging.INFO if event.success else logging.ERROR,
            "Blockchain %s %s", event.operation, "SUCCESS" if event.success else "FAILED",
            extra={"context": {"txHash": event.tx_hash, "tenantId": event.tenant_id}},
        )
        details = {
            "txHash": event.tx_hash,
            "contractAddress": event.contract_address,
            "gasUsed": event.gas_used,
            "blockNumber": event.block_number,
            "success": event.success,
        }
        details.update(event.details)
        return self.log_activity(ActivityPayload(
            user_id=event.user_id or 0,
            tenant_id=self._tenant(event.tenant_id),
            action=f"{actions.BLOCKCHAIN_PREFIX}{event.operation}",
            details=details,
            severity=INFO if event.success else ERROR,
        ))

    def log_system_event(self, event: SystemEvent) -> Optional[dict[str, Any]]:
        """Record a system event unless its level is below the configured one."""
        if not level_enabled(event.level, self.log_level):
            return None
        logger.log(
            LEVEL_MAP.get(event.level, logging.INFO), "%s", event.event,
            extra={"context": {"tenantId": event.tenant_id, **event.details}},
        )
        details = dict(event.details)
        details["level"] = event.level
        return self.log_activity(ActivityPayload(
            user_id=0,
            tenant_id=self._tenant(event.tenant_id),
            action=f"{actions.SYSTEM_PREFIX}{event.event}",
            details=details,
            severity=event.level,
        ))

    def store_failure(self, operation: str, kind: str, exc: BaseException) -> None:
        """StoreGuard hook: hot-path store timeouts and failures."""
        self.log_activity(ActivityPayload(
            user_id=0,
            tenant_id=self.default_tenant_id,
            action=f"{actions.SYSTEM_PREFIX}store_failure",
            details={
                "operation": operation,
                "kind": kind,
                "error": type(exc).__name__,
                "level": WARN if kind == "timeout" else HIGH,
            },
            severity=WARN if kind == "timeout" else HIGH,
        ))

    def _tenant(self, tenant_id: Optional[int]) -> int:
        return tenant_id if tenant_id is not None else self.default_tenant_id

    _handlers = {
        UserActivityEvent: log_user_activity,
        SecurityEvent: log_security_event,
        ApiEvent: log_api_request,
        DatabaseEvent: log_database_operation,
        BlockchainEvent: log_blockchain_operation,
        SystemEvent: log_system_event,
    }

    # ── Read side ──

    async def get_logs(
        self,
        tenant_id: Optional[int] = None,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        records = await self.documents.find(
            tenant_id=tenant_id, user_id=user_id, action=action,
            start=start, end=end, limit=limit, offset=offset,
        )
        return [record.to_dict() for record in records]

    async def get_user_activity(
        self, user_id: int, tenant_id: int, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        return await self.get_logs(
            tenant_id=tenant_id, user_id=user_id, limit=limit, offset=offset
        )

    async def get_security_events(
        self, tenant_id: int, days: int = 30, limit: int = 100
    ) -> list[dict[str, Any]]:
        since = utcnow() - timedelta(days=days)
        records = await self.documents.find(
            tenant_id=tenant_id,
            actions=SECURITY_FAILURE_ACTIONS,
            action_prefix=actions.SECURITY_PREFIX,
            start=since,
            limit=limit,
        )
        return [record.to_dict() for record in records]

    async def get_activity_stats(
        self, user_id: int, tenant_id: int, hours: int = 24
    ) -> Optional[dict[str, Any]]:
        """Sliding counts from the Redis indices; None without Redis."""
        if self.redis is None:
            return None
        now = int(time.time() * 1000)
        cutoff = now - hours * 3600 * 1000
        user_entries = await self.redis.zrangebyscore(user_activity_key(user_id, tenant_id), cutoff, now)
        tenant_entries = await self.redis.zrangebyscore(tenant_activity_key(tenant_id), cutoff, now)
        return {
            "hours": hours,
            "userActivityCount": len(user_entries),
            "tenantActivityCount": len(tenant_entries),
            "userActivities": user_entries[-10:],
            "tenantActivities": tenant_entries[-10:],
        }

    async def cleanup_old_logs(self, days: int = 90, tenant_id: Optional[int] = None) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = await self.documents.delete_older_than(cutoff, tenant_id)
        self.log_system_event(SystemEvent(
            event="log_cleanup",
            level=INFO,
            tenant_id=tenant_id,
            details={"daysOld": days, "cleanedCount": removed},
        ))
        return removed
