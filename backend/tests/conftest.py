"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite) with every
table created from the models, so tests are fully isolated and need no
running PostgreSQL.
"""

import uuid
from collections.abc import AsyncGenerator
from types import SimpleNamespace
from typing import Any

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from memberhub import models  # noqa: F401  (registers every table on Base.metadata)
from memberhub.api.deps import get_notifier
from memberhub.auth.security import create_access_token, hash_password
from memberhub.billing.states import MembershipStatus, PaymentStatus, SubscriptionStatus
from memberhub.database import Base, get_db, utcnow
from memberhub.main import app
from memberhub.models.business_entity import BusinessEntity, ServiceOffering
from memberhub.models.membership import Membership
from memberhub.models.payment import Payment
from memberhub.models.subscription import Subscription
from memberhub.models.user import User

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(test_engine, expire_on_commit=False) as session:
        yield session


class RecordingNotifier:
    """Notifier that records calls instead of sending anything."""

    def __init__(self) -> None:
        self.sent: list[SimpleNamespace] = []

    async def notify(self, db: AsyncSession, kind, user: User, **context: Any) -> None:
        self.sent.append(SimpleNamespace(kind=kind, user_id=user.id, context=context))

    def kinds(self) -> list:
        return [n.kind for n in self.sent]


@pytest_asyncio.fixture
async def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, notifier: RecordingNotifier) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


async def create_user(
    db: AsyncSession,
    role: str = "member",
    password: str = "testpass123",
    phone: str | None = None,
) -> User:
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"user-{unique}@test.com",
        hashed_password=hash_password(password),
        first_name="Test",
        last_name="Member",
        phone=phone,
        is_active=True,
        role=role,
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)
    return user


async def create_entity(
    db: AsyncSession,
    name: str,
    threshold: float = 90_000.0,
    status: str = "ACTIVE",
) -> BusinessEntity:
    entity = BusinessEntity(
        name=name,
        display_name=name.replace("_", " ").title(),
        vat_threshold=threshold,
        current_revenue=0.0,
        status=status,
    )
    db.add(entity)
    await db.flush()
    return entity


async def add_catalog_service(db: AsyncSession, entity: BusinessEntity, name: str = "Martial Arts Training") -> None:
    db.add(ServiceOffering(name=name, category="martial_arts", preferred_entity_id=entity.id, is_active=True))
    await db.flush()


async def add_revenue(
    db: AsyncSession,
    entity: BusinessEntity,
    amount: float,
    user: User | None = None,
    status: PaymentStatus = PaymentStatus.CONFIRMED,
) -> Payment:
    """Book revenue against an entity as one payment in the current VAT year."""
    user = user or await create_user(db)
    payment = Payment(
        user_id=user.id,
        amount=amount,
        currency="GBP",
        status=status.value,
        description="Seeded revenue",
        routed_entity_id=entity.id,
        processed_at=utcnow(),
    )
    db.add(payment)
    await db.flush()
    return payment


async def create_subscription(
    db: AsyncSession,
    user: User,
    entity: BusinessEntity,
    stripe_subscription_id: str | None = "sub_test_123",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    membership_status: MembershipStatus = MembershipStatus.ACTIVE,
    stripe_customer_id: str = "cus_test_123",
    membership_type: str = "FULL_ADULT",
) -> Subscription:
    subscription = Subscription(
        user_id=user.id,
        stripe_customer_id=stripe_customer_id,
        stripe_subscription_id=stripe_subscription_id,
        membership_type=membership_type,
        monthly_price=75.0,
        routed_entity_id=entity.id,
        status=status.value,
    )
    db.add(subscription)
    db.add(
        Membership(
            user_id=user.id,
            membership_type=membership_type,
            status=membership_status.value,
            monthly_price=75.0,
        )
    )
    await db.flush()
    return subscription


def auth_headers_for(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role)}"}


# ---------------------------------------------------------------------------
# Convenience fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    return await create_user(db_session)


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, role="admin")


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    return auth_headers_for(test_user)


@pytest_asyncio.fixture
async def admin_headers(admin_user: User) -> dict[str, str]:
    return auth_headers_for(admin_user)


@pytest_asyncio.fixture
async def mma_entity(db_session: AsyncSession) -> BusinessEntity:
    return await create_entity(db_session, "aura_mma")
