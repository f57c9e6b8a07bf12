"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- HTTP test client bound to the test session
- Test data factories (customers, stock, transaction items)
"""
import pytest
from decimal import Decimal
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from lpg_ledger.core.locks import CustomerLock
from lpg_ledger.db.database import Base, get_db
from lpg_ledger.db.models.customer import Customer
from lpg_ledger.db.models.stock import AccessoryStock, CylinderStatus, CylinderStock
from lpg_ledger.domain.ledger.schemas import TransactionItemIn
from lpg_ledger.domain.services.inventory import NoopInventoryExecutor, StockInventoryExecutor
from lpg_ledger.domain.services.ledger_service import LedgerService
from lpg_ledger.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# No custom event_loop fixture: pytest-asyncio handles it with asyncio_mode=auto
# and asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_customer_locks():
    """Each test starts with an empty per-customer lock registry"""
    CustomerLock.reset_all()
    yield
    CustomerLock.reset_all()


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def ledger_service(db_session: AsyncSession) -> LedgerService:
    """Ledger service with an inventory executor that accepts everything"""
    return LedgerService(db_session, inventory_executor=NoopInventoryExecutor())


@pytest.fixture
def stock_ledger_service(db_session: AsyncSession) -> LedgerService:
    """Ledger service that tracks cylinder and accessory stock in the DB"""
    return LedgerService(db_session, inventory_executor=StockInventoryExecutor(db_session))


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def customer_factory(db_session: AsyncSession):
    """Factory for creating test customers"""
    async def _create_customer(name: str = "Test Gas Agency") -> Customer:
        customer = Customer(name=name, ledger_balance=Decimal("0.00"))
        db_session.add(customer)
        await db_session.commit()
        await db_session.refresh(customer)
        return customer

    return _create_customer


@pytest.fixture
def stock_factory(db_session: AsyncSession):
    """Factory for seeding cylinder stock (per status) and accessory stock"""
    async def _create_stock(
        cylinder_type: str | None = None,
        status: CylinderStatus = CylinderStatus.FULL,
        count: int = 0,
        product_name: str | None = None,
    ):
        if product_name:
            row = AccessoryStock(product_name=product_name, count=count)
        else:
            row = CylinderStock(cylinder_type=cylinder_type, status=status, count=count)
        db_session.add(row)
        await db_session.commit()
        return row

    return _create_stock


def sale_item(cylinder_type: str = "DOMESTIC_11_8KG", quantity: int = 1, price: str = "500", **kwargs) -> TransactionItemIn:
    return TransactionItemIn(cylinder_type=cylinder_type, quantity=quantity, price_per_item=Decimal(price), **kwargs)


def buyback_item(
    cylinder_type: str = "DOMESTIC_11_8KG",
    quantity: int = 1,
    rate: str = "0.6",
    total: str | None = None,
    **kwargs
) -> TransactionItemIn:
    return TransactionItemIn(
        cylinder_type=cylinder_type,
        quantity=quantity,
        buyback_rate=Decimal(rate),
        buyback_total=Decimal(total) if total is not None else None,
        **kwargs
    )


def return_item(cylinder_type: str = "DOMESTIC_11_8KG", quantity: int = 1) -> TransactionItemIn:
    return TransactionItemIn(cylinder_type=cylinder_type, quantity=quantity)


@pytest.fixture
def items():
    """Builders for transaction items: items.sale(), items.buyback(), items.ret()"""
    class _Items:
        sale = staticmethod(sale_item)
        buyback = staticmethod(buyback_item)
        ret = staticmethod(return_item)

    return _Items
