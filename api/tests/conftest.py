"""Shared fixtures for entitlement API tests.

Services run against a real in-memory SQLite database (via the local
adapter, so SAVEPOINTs work) and a real in-process cache.  Router tests use
the FastAPI app with dependency overrides and an httpx ``AsyncClient``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from entitlement_core.cache import InMemoryEntitlementCache
from entitlement_core.state.sqlite_adapter import create_local_tables, get_local_engine
from entitlement_core.state.tables import Base, CustomerTable, SubscriptionTable
from httpx import ASGITransport, AsyncClient
from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.types import TypeDecorator

from api.config import APISettings
from api.dependencies import get_db_session, get_entitlement_cache, get_settings
from api.main import create_app
from api.services.enforcement_service import EnforcementService
from api.services.entitlement_service import EntitlementService
from api.services.seat_service import SeatService
from api.services.usage_service import UsageLedger

WORKSPACE_ID = "ws-test"


def _patch_datetimes_for_sqlite() -> None:
    """SQLite returns naive datetimes; coerce timezone-aware columns back to UTC."""

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_datetimes_for_sqlite()


# ---------------------------------------------------------------------------
# Database / cache
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(engine):
    """One session per test; every service and request in the test shares it."""
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cache() -> InMemoryEntitlementCache:
    return InMemoryEntitlementCache(ttl_seconds=30.0)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def entitlement_service(async_session, cache) -> EntitlementService:
    return EntitlementService(async_session, cache)


@pytest.fixture
def ledger(async_session) -> UsageLedger:
    return UsageLedger(async_session)


@pytest.fixture
def enforcement_service(async_session, entitlement_service, ledger) -> EnforcementService:
    return EnforcementService(async_session, entitlement_service, ledger)


@pytest.fixture
def seat_service(async_session, entitlement_service) -> SeatService:
    return SeatService(async_session, entitlement_service)


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

SeedCustomer = Callable[..., Awaitable[SubscriptionTable]]


@pytest.fixture
def seed_customer(async_session) -> SeedCustomer:
    """Create a customer (if missing) and one subscription for it.

    The default billing period started 10 days ago and ends in 20 days.
    """

    async def _seed(
        customer_id: str = "cus_1",
        subscription_id: str = "sub_1",
        *,
        status: str = "active",
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        created_at: datetime | None = None,
    ) -> SubscriptionTable:
        now = datetime.now(UTC)
        if await async_session.get(CustomerTable, customer_id) is None:
            async_session.add(
                CustomerTable(id=customer_id, workspace_id=WORKSPACE_ID, email=f"{customer_id}@example.com")
            )
        subscription = SubscriptionTable(
            id=subscription_id,
            workspace_id=WORKSPACE_ID,
            customer_id=customer_id,
            status=status,
            current_period_start=period_start or now - timedelta(days=10),
            current_period_end=period_end or now + timedelta(days=20),
            created_at=created_at or now,
        )
        async_session.add(subscription)
        await async_session.flush()
        return subscription

    return _seed


@pytest.fixture
def grant(entitlement_service) -> Callable[..., Awaitable[Any]]:
    """Grant ``feature_key`` to ``cus_1`` through ``sub_1`` unless told otherwise."""

    async def _grant(
        feature_key: str,
        value: str,
        value_type: str,
        *,
        customer_id: str = "cus_1",
        subscription_id: str = "sub_1",
        expires_at: datetime | None = None,
    ) -> Any:
        return await entitlement_service.grant_entitlement(
            WORKSPACE_ID,
            customer_id,
            subscription_id,
            feature_key,
            value,
            value_type,
            expires_at,
        )

    return _grant


# ---------------------------------------------------------------------------
# FastAPI app / HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def api_settings() -> APISettings:
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        cors_origins=["http://localhost:3000"],
    )


@pytest.fixture
def app(async_session, cache, api_settings):
    """Create a FastAPI app whose dependencies resolve to the test session and cache."""
    application = create_app()

    async def _override_session():
        yield async_session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_entitlement_cache] = lambda: cache
    application.dependency_overrides[get_settings] = lambda: api_settings
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
