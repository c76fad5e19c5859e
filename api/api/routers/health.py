"""Health-check and readiness probe endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is registered at the
application root so orchestrators can gate traffic independently of the API
version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.dependencies import CacheDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _db_ok(session: SessionDep) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


def _cache_stats(cache: Any) -> dict[str, Any]:
    stats = getattr(cache, "stats", None)
    return dict(stats) if isinstance(stats, dict) else {}


@router.get("/health")
async def health(session: SessionDep, cache: CacheDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200; ``db`` reports whether the store is reachable and
    ``cache`` carries the entitlement cache statistics.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _db_ok(session) else "degraded",
        "cache": _cache_stats(cache),
    }


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    """HTTP 200 ``ready`` when the store answers ``SELECT 1``, else 503 ``not_ready``."""
    ready = await _db_ok(session)
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if ready else "unavailable"},
        },
    )
