"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "true"
os.environ["ALCHEMY_WEBSOCKET_URL"] = ""
os.environ["INFURA_WEBSOCKET_URL"] = ""
os.environ["WALLET_SEED_PHRASE"] = ""

from creditsync.chain.rpc import EthRpcClient
from creditsync.deposits.keys import KeyProvider
from creditsync.deposits.sweeper import DepositSweeper, SweepResult
from creditsync.ledger.database import build_engine, init_db
from creditsync.ledger.models import DepositStatus
from creditsync.ledger.repository import LedgerRepository
from creditsync.notifications.telegram import OperatorAlerts
from creditsync.pricing.oracle import PriceOracle
from creditsync.utils.tasks import TaskSet

ADMIN_WALLET = "0x" + "ad" * 20
USER_ADDRESS = "0x" + "1a" * 20
OTHER_ADDRESS = "0x" + "2b" * 20
SENDER_ADDRESS = "0x" + "5e" * 20
TEST_PRIVATE_KEY = "0x" + "11" * 32


def tx_hash(n: int) -> str:
    """Deterministic 32-byte transaction hash."""
    return "0x" + f"{n:064x}"


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a file-backed database so concurrent sessions use separate connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}", busy_timeout=5.0)
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture
def tasks() -> TaskSet:
    return TaskSet("test")


@pytest.fixture
def alerts() -> MagicMock:
    """Operator alert channel that records calls instead of sending."""
    return MagicMock(spec=OperatorAlerts)


def make_price_transport(prices: dict[str, Optional[float]]) -> httpx.MockTransport:
    """CoinGecko stub: ids mapped to None answer with HTTP 503."""

    def handler(request: httpx.Request) -> httpx.Response:
        coingecko_id = request.url.params["ids"]
        price = prices.get(coingecko_id)
        if price is None:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json={coingecko_id: {"usd": price}})

    return httpx.MockTransport(handler)


@pytest.fixture
def prices() -> dict[str, Optional[float]]:
    """Mutable CoinGecko price table used by the `oracle` fixture."""
    return {"ethereum": 3000.0, "tether": 1.0}


@pytest.fixture
def oracle(prices) -> PriceOracle:
    return PriceOracle(cache_ttl=0, transport=make_price_transport(prices))


@pytest.fixture
def rpc() -> AsyncMock:
    return AsyncMock(spec=EthRpcClient)


@pytest.fixture
def sweeper() -> AsyncMock:
    mock = AsyncMock(spec=DepositSweeper)
    mock.sweep.return_value = SweepResult(True, tx_hash="0x" + "ee" * 32)
    return mock


@pytest.fixture
def keys() -> MagicMock:
    mock = MagicMock(spec=KeyProvider)
    mock.private_key_for.return_value = TEST_PRIVATE_KEY
    return mock


@pytest_asyncio.fixture
async def user(session_factory):
    """Active user owning USER_ADDRESS."""
    async with session_factory() as session:
        repo = LedgerRepository(session)
        user = await repo.create_user(username="alice", email="alice@example.com")
        await repo.add_deposit_address(user.id, USER_ADDRESS, derivation_index=1)
        await session.commit()
    return user


async def insert_deposit(
    session_factory,
    user_id: int,
    tx: str,
    status: DepositStatus = DepositStatus.UNCONFIRMED,
    asset: str = "ETH",
    amount: Decimal = Decimal("0.01"),
    usd_value: Decimal = Decimal("30.00"),
):
    """Insert a deposit record directly."""
    async with session_factory() as session:
        repo = LedgerRepository(session)
        deposit = await repo.create_deposit(
            user_id=user_id,
            tx_hash=tx,
            asset=asset,
            amount=amount,
            raw_amount=int(amount * 10**18) if asset == "ETH" else int(amount * 10**6),
            usd_value=usd_value,
            to_address=USER_ADDRESS,
            from_address=SENDER_ADDRESS,
            block_number=100,
            status=status,
        )
        await session.commit()
    return deposit
