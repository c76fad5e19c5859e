"""FastAPI dependency injection for settings, database sessions, the entitlement cache and services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from entitlement_core.cache import EntitlementCache, InMemoryEntitlementCache
from entitlement_core.state.database import get_engine
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.services.enforcement_service import EnforcementService
from api.services.entitlement_service import EntitlementService
from api.services.seat_service import SeatService
from api.services.usage_service import UsageLedger

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for one request.

    The session commits on clean exit and rolls back on exception.  Seat
    capacity locks are held until this commit or rollback.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Entitlement cache
# ---------------------------------------------------------------------------

_entitlement_cache: InMemoryEntitlementCache | None = None


def init_cache(settings: APISettings) -> InMemoryEntitlementCache:
    """Create the process-wide entitlement cache and start its sweep thread."""
    global _entitlement_cache  # noqa: PLW0603
    _entitlement_cache = InMemoryEntitlementCache.from_settings(settings)
    _entitlement_cache.start_sweeper()
    return _entitlement_cache


def dispose_cache() -> None:
    """Stop the sweep thread and drop every entry."""
    global _entitlement_cache  # noqa: PLW0603
    if _entitlement_cache is not None:
        _entitlement_cache.stop_sweeper()
        _entitlement_cache.clear()
        _entitlement_cache = None


def get_entitlement_cache() -> EntitlementCache:
    """Return the cached :class:`InMemoryEntitlementCache` singleton."""
    if _entitlement_cache is None:
        raise RuntimeError(
            "Entitlement cache has not been initialised. Ensure init_cache() is called during application startup."
        )
    return _entitlement_cache


CacheDep = Annotated[EntitlementCache, Depends(get_entitlement_cache)]

# ---------------------------------------------------------------------------
# Services (request-scoped, sharing the request's session)
# ---------------------------------------------------------------------------


def get_entitlement_service(session: SessionDep, cache: CacheDep) -> EntitlementService:
    return EntitlementService(session, cache)


EntitlementServiceDep = Annotated[EntitlementService, Depends(get_entitlement_service)]


def get_usage_ledger(session: SessionDep) -> UsageLedger:
    return UsageLedger(session)


UsageLedgerDep = Annotated[UsageLedger, Depends(get_usage_ledger)]


def get_enforcement_service(
    session: SessionDep,
    entitlements: EntitlementServiceDep,
    ledger: UsageLedgerDep,
) -> EnforcementService:
    return EnforcementService(session, entitlements, ledger)


EnforcementServiceDep = Annotated[EnforcementService, Depends(get_enforcement_service)]


def get_seat_service(session: SessionDep, entitlements: EntitlementServiceDep) -> SeatService:
    return SeatService(session, entitlements)


SeatServiceDep = Annotated[SeatService, Depends(get_seat_service)]
