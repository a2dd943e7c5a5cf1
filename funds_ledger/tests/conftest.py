import pytest
import pytest_asyncio
from decimal import Decimal
from typing import AsyncGenerator, Dict, Optional, Tuple
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from funds_ledger.main import app
from funds_ledger.api.deps import get_address_provider
from funds_ledger.db.session import get_db, init_db
from funds_ledger.exceptions import ExternalCollaboratorError
from funds_ledger.integrations import AllocatedAddress, ChainObservation
from funds_ledger.models import LedgerReason
from funds_ledger.services.ledger import LedgerStore


class FakeAddressProvider:
    def __init__(self):
        self.calls = 0

    async def allocate_address(self, account_id: str, asset: str, network: str) -> AllocatedAddress:
        self.calls += 1
        return AllocatedAddress(address=f"{network}-{account_id}-{self.calls}")

class FakeChainWatcher:
    """
    In-memory chain: tests set what the watcher "sees" per address and per
    transaction, and can make it fail a number of times.
    """
    def __init__(self):
        self.addresses: Dict[Tuple[str, str], ChainObservation] = {}
        self.transactions: Dict[Tuple[str, str], ChainObservation] = {}
        self.failures_left = 0
        self.calls = 0
        # addresses whose payload cannot be parsed
        self.broken_addresses = set()

    def see_deposit(self, network: str, address: str, tx_hash: str, confirmations: int, amount: Decimal):
        self.addresses[(network, address)] = ChainObservation(tx_hash, confirmations, amount)

    def see_transaction(self, network: str, tx_hash: str, confirmations: int, failed: bool = False):
        self.transactions[(network, tx_hash)] = ChainObservation(tx_hash, confirmations, Decimal(0), failed)

    def _maybe_fail(self):
        self.calls += 1
        if self.failures_left:
            self.failures_left -= 1
            raise ExternalCollaboratorError("chain watcher unreachable")

    async def get_address_activity(self, asset: str, network: str, address: str) -> Optional[ChainObservation]:
        self._maybe_fail()
        if address in self.broken_addresses:
            raise ValueError(f"malformed payload for {address}")
        return self.addresses.get((network, address))

    async def get_transaction(self, network: str, tx_hash: str) -> Optional[ChainObservation]:
        self._maybe_fail()
        return self.transactions.get((network, tx_hash))

@pytest_asyncio.fixture(loop_scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    # A file database so every session gets its own connection
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)

@pytest_asyncio.fixture(loop_scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session

@pytest.fixture
def fund(session_factory):
    """Credits an account through its own committed unit of work."""
    async def _fund(account_id: str, amount: Decimal, asset: str = "USDT", reference_id: Optional[str] = None):
        async with session_factory() as session:
            store = LedgerStore(session)
            return await store.atomic(lambda: store.credit(
                account_id, asset, amount, LedgerReason.DEPOSIT, reference_id or f"fund-{account_id}-{amount}"
            ))
    return _fund

@pytest.fixture
def address_provider() -> FakeAddressProvider:
    return FakeAddressProvider()

@pytest.fixture
def chain_watcher() -> FakeChainWatcher:
    return FakeChainWatcher()

@pytest_asyncio.fixture(loop_scope="function")
async def client(session_factory, address_provider) -> AsyncGenerator[AsyncClient, None]:
    # Override get_db dependency
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_address_provider] = lambda: address_provider

    # Create transport with the app
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
