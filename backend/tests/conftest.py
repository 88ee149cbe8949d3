"""
Pytest configuration and fixtures per i test di cassa.

Due famiglie di fixture:
- mock puri (MockOrderLine, collaboratori AsyncMock) per la logica senza database
- un database SQLite (aiosqlite) su file temporaneo per il gestore pagamenti,
  che ha bisogno di transazioni vere e di più connessioni concorrenti
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.models import Base, Order, OrderLine, Table
from app.schemas.operator import Operator, OperatorRole
from app.services.notification_service import NotificationService
from app.services.payment_allocator import PaymentAllocator
from app.services.receipt_queue_service import ReceiptQueueService


# Istante di riferimento per created_at delle righe (ordine FIFO deterministico)
BASE_TIME = datetime(2025, 3, 1, 20, 0, tzinfo=timezone.utc)


# ============================================================
# Fixtures per AsyncSession Mock
# ============================================================


@pytest.fixture
def mock_db():
    """Crea un mock di AsyncSession."""
    db = AsyncMock(spec=AsyncSession)
    db.execute = AsyncMock()
    db.add = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    return db


# ============================================================
# Mock di righe (senza database)
# ============================================================


class MockOrderLine:
    """Mock di OrderLine con i soli campi usati dall'allocazione."""
    def __init__(self, **kwargs):
        self.id = kwargs.get('id', uuid.uuid4())
        self.product_name = kwargs.get('product_name', 'Margherita')
        self.quantity = kwargs.get('quantity', 1)
        self.unit_price = kwargs.get('unit_price', Decimal("10.00"))
        self.is_paid = kwargs.get('is_paid', False)


@pytest.fixture
def mock_lines():
    """Righe [2 × €5, 1 × €10], dalla più vecchia."""
    return [
        MockOrderLine(product_name="Acqua", quantity=2, unit_price=Decimal("5.00")),
        MockOrderLine(product_name="Margherita", quantity=1, unit_price=Decimal("10.00")),
    ]


# ============================================================
# Fixtures per Operatori
# ============================================================


@pytest.fixture
def cashier():
    return Operator(id=uuid.uuid4(), name="Giulia Cassa", role=OperatorRole.CASHIER)


@pytest.fixture
def manager():
    return Operator(id=uuid.uuid4(), name="Marco Responsabile", role=OperatorRole.MANAGER)


@pytest.fixture
def waiter():
    return Operator(id=uuid.uuid4(), name="Luca Sala", role=OperatorRole.WAITER)


# ============================================================
# Fixtures per collaboratori esterni
# ============================================================


@pytest.fixture
def notifier():
    """NotificationService finto: registra le chiamate."""
    mock = AsyncMock(spec=NotificationService)
    mock.order_paid.return_value = True
    mock.payment_requested.return_value = True
    return mock


@pytest.fixture
def receipt_queue():
    """ReceiptQueueService finto: registra le chiamate."""
    mock = AsyncMock(spec=ReceiptQueueService)
    mock.enqueue_payment_receipts.return_value = 2
    return mock


@pytest.fixture
def redis_client():
    """Client Redis finto per i service di eventi e scontrini."""
    client = MagicMock()
    client.publish = AsyncMock(return_value=1)
    client.lpush = AsyncMock(return_value=1)
    return client


# ============================================================
# Database SQLite
# ============================================================


@pytest.fixture
async def engine(tmp_path):
    """Engine aiosqlite su file: più connessioni vedono gli stessi dati."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ristorante.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Sessione per preparare e verificare i dati."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def allocator(session_factory, notifier, receipt_queue):
    return PaymentAllocator(
        session_factory=session_factory,
        notifier=notifier,
        receipt_queue=receipt_queue,
    )


async def create_order(
    session: AsyncSession,
    lines: list[tuple[str, int, str]],
    *,
    table_number: str | None = "5",
    order_type: str = "table",
    status: str = "delivered",
    customer_name: str | None = None,
    opened_at: datetime = BASE_TIME,
) -> Order:
    """
    Crea un'ordinazione con le righe indicate come (nome, quantità, prezzo).

    Le righe ricevono created_at crescenti nell'ordine della lista.
    Se table_number è indicato il tavolo viene creato (o riusato) e occupato.
    """
    table_id = None
    if table_number is not None:
        table = (
            await session.execute(select(Table).where(Table.number == table_number))
        ).scalar_one_or_none()
        if table is None:
            table = Table(number=table_number, status="occupied")
            session.add(table)
            await session.flush()
        table_id = table.id

    order = Order(
        table_id=table_id,
        order_type=order_type,
        status=status,
        payment_status="unpaid",
        customer_name=customer_name,
        opened_at=opened_at,
    )
    session.add(order)
    await session.flush()

    for i, (name, quantity, price) in enumerate(lines, start=1):
        session.add(
            OrderLine(
                order_id=order.id,
                product_name=name,
                line_number=i,
                quantity=quantity,
                unit_price=Decimal(price),
                created_at=opened_at + timedelta(minutes=i),
            )
        )
    await session.commit()
    return order


@pytest.fixture
def order_factory(db):
    """Factory per creare ordinazioni nel database di test."""
    async def factory(lines, **kwargs) -> Order:
        return await create_order(db, lines, **kwargs)
    return factory
