"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from eth_account import Account
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "false"

from celofx.api.app import create_app
from celofx.api.services import Services, build_services
from celofx.config import Settings
from celofx.ledger.database import create_ledger_engine, create_session_factory, init_db
from celofx.ledger.repository import LedgerRepository
from celofx.security import MemoryStore
from celofx.security.auth import AGENT_IDENTITY, AuthMode, Authorized
from celofx.utils.locks import clear_key_locks

from fakes import ChainState, FakeChain, FakePriceFeed, FakeVenue

AGENT_SECRET = "test-agent-secret"
AGENT_KEY = "0x" + "11" * 32
USER_WALLET_SECRET = "test-user-wallet-secret"
USER_KEY = "0x" + "22" * 32
USER_ADDRESS = Account.from_key(USER_KEY).address
CUSTODY_ADDRESS = Account.from_key(AGENT_KEY).address

MENTO_RATES = {("cUSD", "cEUR"): "0.93", ("cEUR", "cUSD"): "1.0875"}
UNISWAP_RATES = {("cUSD", "cEUR"): "0.92", ("cEUR", "cUSD"): "1.0875"}


def make_settings(**overrides) -> Settings:
    values = dict(
        agent_api_secret=AGENT_SECRET,
        agent_private_key=AGENT_KEY,
        user_agent_wallet_secret=USER_WALLET_SECRET,
        custody_address=CUSTODY_ADDRESS,
        upstash_redis_rest_url="",
        upstash_redis_rest_token="",
        notify_webhook_url="",
        telegram_bot_token="",
        agent_paused=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(autouse=True)
def reset_key_locks():
    clear_key_locks()
    yield
    clear_key_locks()


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed SQLite so every session sees the same database."""
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    await init_db(engine)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    return LedgerRepository(db_session)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(ChainState())


@pytest.fixture
def mento() -> FakeVenue:
    return FakeVenue("mento", MENTO_RATES)


@pytest.fixture
def uniswap() -> FakeVenue:
    return FakeVenue("uniswap", UNISWAP_RATES)


@pytest.fixture
def price_feed() -> FakePriceFeed:
    return FakePriceFeed()


@pytest.fixture
def services(settings, chain, mento, uniswap, price_feed, session_factory) -> Services:
    return build_services(
        settings,
        chain=chain,
        venues=[mento, uniswap],
        price_feed=price_feed,
        session_factory=session_factory,
        stores=(MemoryStore(), MemoryStore(max_entries=settings.idempotency_max_entries)),
    )


@pytest.fixture
def agent() -> Authorized:
    return Authorized(AuthMode.TRUSTED_AGENT, AGENT_IDENTITY, "hmac")


@pytest.fixture
def user() -> Authorized:
    return Authorized(AuthMode.WALLET_SIGNED, USER_ADDRESS.lower(), "signature")


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """Async test client over the app with fake collaborators."""
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
