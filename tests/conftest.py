"""Shared test fixtures for Gatehouse."""

import fakeredis.aioredis
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from httpx import ASGITransport, AsyncClient


TOKEN_SECRET = "test-token-secret-for-unit-tests"
CLIENT_IP = "10.0.0.1"
WALLET_KEY = "0x" + "4c" * 32
OTHER_WALLET_KEY = "0x" + "7d" * 32


def sign(message: str, private_key: str = WALLET_KEY) -> str:
    """personal_sign ``message`` and return the 0x-prefixed hex signature."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def token_secret():
    return TOKEN_SECRET


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def wallet():
    return Account.from_key(WALLET_KEY)


@pytest.fixture
def other_wallet():
    return Account.from_key(OTHER_WALLET_KEY)


@pytest.fixture
def redis():
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
async def db():
    """Relational store on in-memory SQLite with the default tenant (1) and tenant 2."""
    from gatehouse.common.database import DatabaseManager
    from gatehouse.tenants.service import TenantService

    manager = DatabaseManager.relational("sqlite+aiosqlite://")
    await manager.init()
    await manager.create_all()
    tenants = TenantService()
    async with manager.get_session() as session:
        await tenants.ensure_default(session)
        await tenants.create_tenant(session, name="Second", slug="second")
    yield manager
    await manager.close()


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.setenv("GATEHOUSE_DB_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("GATEHOUSE_ACTIVITY_DB_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("GATEHOUSE_TOKEN_SECRET", TOKEN_SECRET)
    monkeypatch.setenv("GATEHOUSE_BCRYPT_ROUNDS", "10")
    monkeypatch.setenv("GATEHOUSE_LOG_LEVEL", "INFO")

    # Clear the settings cache so new env vars take effect
    from gatehouse.common.config import get_settings
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def services(settings, redis):
    from gatehouse.deps import build_services
    return build_services(settings, redis=redis)


@pytest.fixture
def app(services):
    from gatehouse.app import create_app
    return create_app(services.settings, services)


@pytest.fixture
async def client(app, services):
    # Manually start services since ASGITransport doesn't run lifespan
    await services.startup()
    async with services.db.get_session() as session:
        await services.tenants.create_tenant(session, name="Second", slug="second")

    transport = ASGITransport(app=app, client=(CLIENT_IP, 50000))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await services.shutdown()


@pytest.fixture
def auth_headers():
    def build(token: str, **extra) -> dict:
        headers = {"Authorization": f"Bearer {token}"}
        headers.update(extra)
        return headers
    return build
