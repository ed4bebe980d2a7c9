"""Tests for the CLI commands that read and prune the audit and session stores."""

from datetime import timedelta

import fakeredis
import fakeredis.aioredis
import pytest
from typer.testing import CliRunner

import gatehouse.deps as deps
from gatehouse.audit.actions import FAILED_LOGIN, HIGH
from gatehouse.audit.events import UserActivityEvent
from gatehouse.cli import _with_services, app
from gatehouse.common.models import utcnow

runner = CliRunner()


@pytest.fixture
def stores(settings, tmp_path, monkeypatch):
    """File-backed SQLite and one shared fake Redis server, so data survives each command."""
    monkeypatch.setenv("GATEHOUSE_DB_URL", f"sqlite+aiosqlite:///{tmp_path / 'main.db'}")
    monkeypatch.setenv("GATEHOUSE_ACTIVITY_DB_URL", f"sqlite+aiosqlite:///{tmp_path / 'activity.db'}")
    from gatehouse.common.config import get_settings
    get_settings.cache_clear()

    server = fakeredis.FakeServer()
    build = deps.build_services

    def build_with_fake_redis(settings, redis=None):
        return build(settings, redis=fakeredis.aioredis.FakeRedis(server=server, decode_responses=True))

    monkeypatch.setattr(deps, "build_services", build_with_fake_redis)
    return _with_services


class TestSecurityEvents:
    def test_lists_failed_logins(self, stores):
        async def seed(services):
            services.audit.record(UserActivityEvent(
                user_id=4, tenant_id=1, action=FAILED_LOGIN, severity=HIGH, ip_address="10.0.0.9",
            ))

        stores(seed)
        result = runner.invoke(app, ["security-events", "--tenant", "1"])
        assert result.exit_code == 0
        assert "failed_login" in result.output
        assert "10.0.0.9" in result.output

    def test_other_tenant_is_empty(self, stores):
        async def seed(services):
            services.audit.record(UserActivityEvent(
                user_id=4, tenant_id=1, action=FAILED_LOGIN, severity=HIGH,
            ))

        stores(seed)
        result = runner.invoke(app, ["security-events", "--tenant", "2"])
        assert result.exit_code == 0
        assert "No security events" in result.output


class TestCleanupLogs:
    def test_removes_only_old_records(self, stores):
        async def seed(services):
            old = utcnow() - timedelta(days=120)
            await services.audit.documents.insert_many([
                {"user_id": 1, "tenant_id": 1, "action": "user_login", "details": {}, "timestamp": old},
                {"user_id": 1, "tenant_id": 1, "action": "user_login", "details": {}, "timestamp": utcnow()},
            ])

        stores(seed)
        result = runner.invoke(app, ["cleanup-logs", "--days", "90"])
        assert result.exit_code == 0
        assert "Removed 1 activity records" in result.output

        async def remaining(services):
            return await services.audit.get_logs(tenant_id=1, action="user_login")

        assert len(stores(remaining)) == 1


class TestTenantSessions:
    def test_lists_open_sessions(self, stores):
        async def seed(services):
            return await services.sessions.open(7, 1, {"id": 7})

        session_id = stores(seed)
        result = runner.invoke(app, ["sessions", "--tenant", "1"])
        assert result.exit_code == 0
        assert session_id in result.output

    def test_no_sessions(self, stores):
        result = runner.invoke(app, ["sessions", "--tenant", "2"])
        assert result.exit_code == 0
        assert "No sessions" in result.output
