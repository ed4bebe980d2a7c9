"""Tests for the batched audit pipeline."""

import asyncio
import logging

import pytest

from gatehouse.audit.actions import ERROR, HIGH, INFO, WARN, is_canonical_action
from gatehouse.audit.events import (
    ActivityPayload,
    ApiEvent,
    BlockchainEvent,
    DatabaseEvent,
    SecurityEvent,
    SystemEvent,
    UserActivityEvent,
)
from gatehouse.audit.pipeline import DOCUMENT, RELATIONAL, AuditPipeline


class RecordingStore:
    """In-memory batch sink that can be told to fail its first N writes."""

    def __init__(self, failures: int = 0):
        self.batches = []
        self.failures = failures
        self.calls = 0

    async def insert_many(self, records):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("store unavailable")
        self.batches.append(list(records))

    async def find(self, **filters):
        return []

    async def delete_older_than(self, cutoff, tenant_id=None):
        return 0


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def documents():
    return RecordingStore()


@pytest.fixture
def audit_rows():
    return RecordingStore()


@pytest.fixture
def make_pipeline(documents, audit_rows):
    def build(**overrides) -> AuditPipeline:
        options = {"batch_size": 3, "batch_timeout_ms": 60_000}
        options.update(overrides)
        options.setdefault("documents", documents)
        options.setdefault("audit_rows", audit_rows)
        return AuditPipeline(**options)
    return build


@pytest.fixture
def deadletter_handler():
    handler = ListHandler()
    logger = logging.getLogger("gatehouse.audit.deadletter")
    logger.addHandler(handler)
    yield handler
    logger.removeHandler(handler)


def _activity(i: int, tenant_id: int = 1, **extra) -> ActivityPayload:
    return ActivityPayload(user_id=10, tenant_id=tenant_id, action=f"get_item{i}", **extra)


class TestBatching:
    async def test_full_batch_is_one_write_in_call_order(self, make_pipeline, documents):
        pipeline = make_pipeline()
        for i in range(3):
            pipeline.log_activity(_activity(i))
        await pipeline.drain()
        assert len(documents.batches) == 1
        assert [r["action"] for r in documents.batches[0]] == ["get_item0", "get_item1", "get_item2"]
        assert pipeline.pending(DOCUMENT) == 0

    async def test_size_plus_one_makes_two_batches(self, make_pipeline, documents):
        pipeline = make_pipeline()
        for i in range(4):
            pipeline.log_activity(_activity(i))
        await pipeline.drain()
        assert len(documents.batches) == 1
        assert pipeline.pending(DOCUMENT, tenant_id=1) == 1

        await pipeline.flush_all()
        assert [[r["action"] for r in b] for b in documents.batches] == [
            ["get_item0", "get_item1", "get_item2"],
            ["get_item3"],
        ]

    async def test_partial_batch_waits_for_timeout(self, make_pipeline, documents):
        pipeline = make_pipeline(batch_timeout_ms=20)
        pipeline.log_activity(_activity(0))
        assert documents.batches == []
        await asyncio.sleep(0.1)
        await pipeline.drain()
        assert len(documents.batches) == 1

    async def test_tenants_batch_separately(self, make_pipeline, documents):
        pipeline = make_pipeline()
        for i in range(2):
            pipeline.log_activity(_activity(i, tenant_id=1))
            pipeline.log_activity(_activity(i, tenant_id=2))
        await pipeline.drain()
        assert documents.batches == []
        assert pipeline.pending(DOCUMENT, tenant_id=1) == 2
        assert pipeline.pending(DOCUMENT, tenant_id=2) == 2

        await pipeline.flush_all()
        assert sorted(len(b) for b in documents.batches) == [2, 2]
        for batch in documents.batches:
            assert len({r["tenant_id"] for r in batch}) == 1

    async def test_relational_rows_only_for_table_changes(self, make_pipeline, documents, audit_rows):
        pipeline = make_pipeline()
        pipeline.log_activity(_activity(0))
        pipeline.log_activity(_activity(
            1, table_name="users", record_id=10, new_values={"name": "B"}, old_values={"name": "A"},
        ))
        await pipeline.flush_all()
        assert sum(len(b) for b in documents.batches) == 2
        [[row]] = audit_rows.batches
        assert row["table_name"] == "users"
        assert row["record_id"] == 10
        assert row["old_values"] == {"name": "A"}
        assert row["new_values"] == {"name": "B"}

    async def test_document_shape(self, make_pipeline):
        pipeline = make_pipeline()
        document = pipeline.log_activity(_activity(
            0, ip_address="10.0.0.1", user_agent="pytest", session_id="s-1", details={"k": "v"},
        ))
        assert document["details"] == {
            "k": "v", "ipAddress": "10.0.0.1", "userAgent": "pytest", "sessionId": "s-1",
        }
        assert document["severity"] == INFO
        assert document["timestamp"].tzinfo is not None


class TestFlushFailures:
    async def test_retry_then_succeed(self, make_pipeline):
        documents = RecordingStore(failures=1)
        pipeline = make_pipeline(documents=documents, flush_retries=1, retry_delay_ms=0)
        for i in range(3):
            pipeline.log_activity(_activity(i))
        await pipeline.drain()
        assert documents.calls == 2
        assert len(documents.batches) == 1

    async def test_exhausted_batch_goes_to_dead_letter(self, make_pipeline, deadletter_handler):
        documents = RecordingStore(failures=10)
        pipeline = make_pipeline(documents=documents, flush_retries=1, retry_delay_ms=0)
        for i in range(3):
            pipeline.log_activity(_activity(i))
        await pipeline.drain()

        assert documents.batches == []
        [record] = deadletter_handler.records
        assert record.context["stream"] == DOCUMENT
        assert record.context["attempts"] == 2
        assert [r["action"] for r in record.context["records"]] == ["get_item0", "get_item1", "get_item2"]

    async def test_failure_does_not_reach_caller(self, make_pipeline, deadletter_handler):
        pipeline = make_pipeline(documents=RecordingStore(failures=1), batch_size=1)
        pipeline.log_activity(_activity(0))
        await pipeline.drain()
        assert len(deadletter_handler.records) == 1


class TestEventVariants:
    async def test_user_activity(self, make_pipeline, audit_rows):
        pipeline = make_pipeline()
        document = pipeline.record(UserActivityEvent(
            user_id=3, tenant_id=1, action="user_registered", table_name="users", record_id=3,
        ))
        assert document["action"] == "user_registered"
        assert pipeline.pending(RELATIONAL) == 1

    async def test_security_event_with_flags_is_high(self, make_pipeline):
        pipeline = make_pipeline()
        document = pipeline.record(SecurityEvent(
            tenant_id=1, event="threat", flags=["suspiciousUserAgent"], ip_address="10.0.0.1",
        ))
        assert document["action"] == "security_threat"
        assert document["severity"] == HIGH
        assert document["details"]["securityFlags"] == ["suspiciousUserAgent"]
        assert document["details"]["threatLevel"] == HIGH
        assert document["user_id"] == 0

    async def test_security_event_without_flags_keeps_severity(self, make_pipeline):
        pipeline = make_pipeline()
        document = pipeline.record(SecurityEvent(tenant_id=1, event="lockout"))
        assert document["severity"] == WARN
        assert document["details"]["threatLevel"] == "NORMAL"

    async def test_api_request(self, make_pipeline):
        pipeline = make_pipeline()
        document = pipeline.record(ApiEvent(
            tenant_id=1, method="GET", path="/auth/profile", status_code=200,
            response_time_ms=12.5, user_id=4, response_size=512,
        ))
        assert document["action"] == "profile_view"
        assert document["severity"] == INFO
        assert document["details"]["api"]["statusCode"] == 200
        assert document["details"]["performance"]["slow"] is False
        assert pipeline.pending(DOCUMENT) == 1

    async def test_unauthorized_request_adds_security_record(self, make_pipeline, documents):
        pipeline = make_pipeline(batch_size=10)
        document = pipeline.record(ApiEvent(
            tenant_id=1, method="POST", path="/auth/login", status_code=401, response_time_ms=40,
        ))
        assert document["action"] == "login_failed"
        assert document["severity"] == HIGH
        await pipeline.flush_all()
        actions = [r["action"] for r in documents.batches[0]]
        assert actions == ["login_failed", "security_auth_failure"]

    async def test_slow_and_large_requests(self, make_pipeline, documents):
        pipeline = make_pipeline(batch_size=10, slow_request_ms=100, large_response_bytes=1000)
        pipeline.record(ApiEvent(
            tenant_id=1, method="GET", path="/health", status_code=200,
            response_time_ms=250, response_size=5000,
        ))
        await pipeline.flush_all()
        actions = [r["action"] for r in documents.batches[0]]
        assert actions == ["get_health", "system_slow_request", "system_large_response"]
        assert documents.batches[0][1]["details"]["threshold"] == 100

    async def test_system_events_gated_by_log_level(self, make_pipeline):
        pipeline = make_pipeline(batch_size=10, slow_request_ms=100, log_level="ERROR")
        pipeline.record(ApiEvent(
            tenant_id=1, method="GET", path="/health", status_code=200, response_time_ms=250,
        ))
        assert pipeline.pending(DOCUMENT) == 1
        assert pipeline.record(SystemEvent(event="disk_low", level=WARN)) is None
        assert pipeline.record(SystemEvent(event="disk_full", level=ERROR))["action"] == "system_disk_full"

    async def test_debug_system_events_dropped_at_info(self, make_pipeline):
        pipeline = make_pipeline()
        assert pipeline.log_system_event(SystemEvent(event="trace", level="DEBUG")) is None

    async def test_missing_tenant_uses_default(self, make_pipeline):
        pipeline = make_pipeline(default_tenant_id=1)
        pipeline.record(ApiEvent(
            tenant_id=None, method="GET", path="/health", status_code=200, response_time_ms=1,
        ))
        assert pipeline.pending(DOCUMENT, tenant_id=1) == 1

    async def test_database_operation(self, make_pipeline):
        pipeline = make_pipeline()
        ok = pipeline.record(DatabaseEvent(tenant_id=1, operation="insert", table="users", duration_ms=5))
        slow = pipeline.record(DatabaseEvent(tenant_id=1, operation="update", table="users", duration_ms=500))
        failed = pipeline.record(DatabaseEvent(tenant_id=1, operation="delete", table="users", success=False))
        assert ok["action"] == "db_insert"
        assert [ok["severity"], slow["severity"], failed["severity"]] == [INFO, WARN, ERROR]

    async def test_blockchain_operation(self, make_pipeline):
        pipeline = make_pipeline()
        document = pipeline.record(BlockchainEvent(
            tenant_id=1, operation="mint", user_id=2, tx_hash="0xabc", success=False,
        ))
        assert document["action"] == "blockchain_mint"
        assert document["severity"] == ERROR
        assert document["details"]["txHash"] == "0xabc"

    async def test_store_failure_severity(self, make_pipeline, documents):
        pipeline = make_pipeline(default_tenant_id=1)
        pipeline.store_failure("session.touch", "timeout", TimeoutError())
        pipeline.store_failure("user.lookup", "failure", OSError("refused"))
        await pipeline.flush_all()
        [batch] = documents.batches
        assert [r["action"] for r in batch] == ["system_store_failure"] * 2
        assert [r["severity"] for r in batch] == [WARN, HIGH]
        assert batch[1]["details"]["operation"] == "user.lookup"

    async def test_unsupported_event(self, make_pipeline):
        with pytest.raises(TypeError):
            make_pipeline().record(object())

    async def test_every_recorded_action_is_canonical(self, make_pipeline, documents):
        pipeline = make_pipeline(batch_size=100, slow_request_ms=0)
        for status in (200, 401, 404, 500):
            pipeline.record(ApiEvent(
                tenant_id=1, method="POST", path="/api/auth/verify", status_code=status,
                response_time_ms=5,
            ))
        pipeline.record(SecurityEvent(tenant_id=1, event="threat", flags=["pathTraversal"]))
        await pipeline.flush_all()
        assert all(is_canonical_action(r["action"]) for b in documents.batches for r in b)


class TestActivityIndices:
    async def test_stats_count_recent_activity(self, make_pipeline, redis):
        pipeline = make_pipeline(redis=redis)
        pipeline.log_activity(_activity(0))
        pipeline.log_activity(ActivityPayload(user_id=11, tenant_id=1, action="user_login"))
        await pipeline.drain()

        stats = await pipeline.get_activity_stats(10, 1, hours=1)
        assert stats["userActivityCount"] == 1
        assert stats["tenantActivityCount"] == 2
        assert stats["userActivities"][0].startswith("get_item0:")

    async def test_indices_expire(self, make_pipeline, redis):
        pipeline = make_pipeline(redis=redis)
        pipeline.log_activity(_activity(0))
        await pipeline.drain()
        assert 0 < await redis.ttl("activity:user:10:1") <= 86400

    async def test_no_redis_no_stats(self, make_pipeline):
        assert await make_pipeline().get_activity_stats(10, 1) is None
