"""
Pytest fixtures for test database, client, clock and authentication.

Each test gets its own SQLite database file (WAL mode, so concurrent
sessions behave like separate connections to a real server). Set
TEST_DATABASE_URL to run the suite against PostgreSQL instead.

Time is a FakeClock starting at T0; tests move it forward explicitly.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event as sa_event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.api.deps import get_app_settings, get_cache, get_clock, get_notifier, get_payment_gateway
from app.core.config import Settings
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import get_db
from app.main import app
from app.models.booking import Booking
from app.models.event import Event
from app.models.payment import PaymentEvent, PaymentRecord
from app.models.ticket import TicketInventory
from app.models.user import User
from app.services.booking_service import BookingService
from app.services.interfaces.offline_gateway import OfflineGateway
from app.services.interfaces.payment_gateway import compute_webhook_hmac
from app.services.notifications import Notifier
from app.services.ticket_tokens import TicketTokenIssuer

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
HMAC_SECRET = "test-hmac-secret"


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def send_email(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        PAYMENT_GATEWAY="offline",
        PAYMOB_HMAC_SECRET=HMAC_SECRET,
        REDIS_ENABLED=False,
        SCHEDULER_ENABLED=False,
        BOOKING_EXPIRY_MINUTES=15,
        INVENTORY_MAX_RETRIES=3,
        MAX_TICKETS_PER_BOOKING=10,
    )


@pytest.fixture
def gateway(clock: FakeClock) -> OfflineGateway:
    return OfflineGateway(HMAC_SECRET, clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ticket_tokens(test_settings: Settings) -> TicketTokenIssuer:
    return TicketTokenIssuer.from_settings(test_settings)


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Create tables, yield the engine, then drop tables for isolation."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    is_sqlite = url.startswith("sqlite")

    test_engine = create_async_engine(
        url,
        echo=False,
        connect_args={"timeout": 30} if is_sqlite else {},
    )

    if is_sqlite:
        @sa_event.listens_for(test_engine.sync_engine, "connect")
        def _enable_wal(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_service(gateway, notifier, ticket_tokens, clock, test_settings):
    """Builds a BookingService bound to the given session."""

    def factory(session: AsyncSession) -> BookingService:
        return BookingService(
            session,
            gateway,
            notifier=notifier,
            ticket_tokens=ticket_tokens,
            clock=clock,
            settings=test_settings,
        )

    return factory


@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory, gateway, clock, test_settings, notifier
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with a fresh session per request, offline gateway and fake clock."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_cache] = lambda: None
    app.dependency_overrides[get_app_settings] = lambda: test_settings
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _add(session_factory, obj):
    async with session_factory() as session:
        session.add(obj)
        await session.commit()
    return obj


@pytest_asyncio.fixture
async def test_user(session_factory) -> User:
    """Create a test user in the database."""
    return await _add(
        session_factory,
        User(email="test@example.com", name="Test User", phone="+201000000001"),
    )


@pytest_asyncio.fixture
async def other_user(session_factory) -> User:
    return await _add(
        session_factory,
        User(email="other@example.com", name="Other Person", phone="+201000000002"),
    )


@pytest_asyncio.fixture
async def organizer(session_factory) -> User:
    return await _add(
        session_factory,
        User(email="organizer@example.com", name="Event Organizer"),
    )


def _headers_for(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(data={'sub': str(user.id)})}"}


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    """Authorization headers with Bearer token."""
    return _headers_for(test_user)


@pytest.fixture
def other_headers(other_user: User) -> dict:
    return _headers_for(other_user)


@pytest.fixture
def organizer_headers(organizer: User) -> dict:
    return _headers_for(organizer)


@pytest_asyncio.fixture
async def test_event(session_factory, organizer: User) -> Event:
    """An event thirty days after T0."""
    return await _add(
        session_factory,
        Event(
            title="Test Concert",
            location="Test Venue",
            start_date=T0 + timedelta(days=30),
            end_date=T0 + timedelta(days=30, hours=4),
            organizer_id=organizer.id,
        ),
    )


@pytest_asyncio.fixture
async def past_event(session_factory, organizer: User) -> Event:
    return await _add(
        session_factory,
        Event(
            title="Last Year's Festival",
            location="Old Venue",
            start_date=T0 - timedelta(days=2),
            end_date=T0 - timedelta(days=1),
            organizer_id=organizer.id,
        ),
    )


def _ticket(event: Event, total: int, available: Optional[int] = None, **overrides) -> TicketInventory:
    fields = dict(
        event_id=event.id,
        type="standard",
        price_cents=25_000,
        currency="EGP",
        total_quantity=total,
        available_quantity=total if available is None else available,
        sale_start=T0 - timedelta(days=1),
        sale_end=T0 + timedelta(days=29),
        status="active",
        version=1,
    )
    fields.update(overrides)
    return TicketInventory(**fields)


@pytest_asyncio.fixture
async def ticket_type(session_factory, test_event: Event) -> TicketInventory:
    """100 standard tickets at 250.00 EGP, on sale around T0."""
    return await _add(session_factory, _ticket(test_event, 100))


@pytest_asyncio.fixture
async def limited_ticket(session_factory, test_event: Event) -> TicketInventory:
    """Only five VIP tickets."""
    return await _add(session_factory, _ticket(test_event, 5, type="vip", price_cents=100_000))


@pytest_asyncio.fixture
async def sold_out_ticket(session_factory, test_event: Event) -> TicketInventory:
    return await _add(session_factory, _ticket(test_event, 50, available=0, status="sold_out"))


@pytest_asyncio.fixture
async def past_ticket(session_factory, past_event: Event) -> TicketInventory:
    return await _add(
        session_factory,
        _ticket(past_event, 10, sale_start=T0 - timedelta(days=20), sale_end=T0 - timedelta(days=3)),
    )


@pytest.fixture
def create_booking(session_factory, make_service, test_user, test_event):
    """
    Creates a committed pending booking through the service, with a gateway
    order attached unless initiate=False.
    """

    async def _create(ticket: TicketInventory, quantity: int = 1, user: Optional[User] = None, initiate: bool = True) -> Booking:
        async with session_factory() as session:
            service = make_service(session)
            owner = await session.get(User, (user or test_user).id)
            booking = await service.create_booking(owner, test_event.id, ticket.id, quantity)
            if initiate:
                await service.initiate_payment(booking, owner)
            await session.commit()
        return booking

    return _create


@pytest.fixture
def fetch_booking(session_factory):
    async def _fetch(booking_code: str) -> Booking:
        async with session_factory() as session:
            result = await session.execute(select(Booking).where(Booking.booking_code == booking_code))
            return result.scalar_one()

    return _fetch


@pytest.fixture
def fetch_ticket(session_factory):
    async def _fetch(ticket_type_id: int) -> TicketInventory:
        async with session_factory() as session:
            return await session.get(TicketInventory, ticket_type_id)

    return _fetch


@pytest.fixture
def fetch_payment(session_factory):
    async def _fetch(booking_id: int) -> Optional[PaymentRecord]:
        async with session_factory() as session:
            result = await session.execute(select(PaymentRecord).where(PaymentRecord.booking_id == booking_id))
            return result.scalar_one_or_none()

    return _fetch


@pytest.fixture
def fetch_payment_events(session_factory):
    async def _fetch(payment_id: int) -> list[str]:
        async with session_factory() as session:
            result = await session.execute(
                select(PaymentEvent.event).where(PaymentEvent.payment_id == payment_id).order_by(PaymentEvent.id)
            )
            return list(result.scalars().all())

    return _fetch


@pytest.fixture
def make_transaction():
    """Gateway transaction payload for a booking's order."""

    def _make(booking: Booking, *, success: bool, pending: bool = False, tx_id: int = 9001,
              amount_cents: Optional[int] = None) -> dict:
        return {
            "id": tx_id,
            "pending": pending,
            "success": success,
            "amount_cents": booking.total_price_cents if amount_cents is None else amount_cents,
            "currency": booking.currency,
            "created_at": "2026-03-01T12:05:00.000000",
            "order": {"id": booking.payment_order_id},
        }

    return _make


@pytest.fixture
def sign():
    def _sign(transaction: dict, secret: str = HMAC_SECRET) -> str:
        return compute_webhook_hmac(transaction, secret)

    return _sign
