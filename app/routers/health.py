"""
Health check endpoints with deep component checks.

- GET /api/health          cheap: process alive, version, uptime
- GET /api/health/deep     bounded checks for database, metering, disk, memory
"""
import asyncio
import logging
import time
from datetime import datetime, timezone

import psutil
from fastapi import APIRouter, Depends, Request

from app.auth.access_tokens import AuthenticatedUser, require_admin
from app.core.database import check_database
from app.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds


# ── Cheap health ─────────────────────────────────────────────────────
@router.get("/health")
async def health_check():
    """Cheap health check, no I/O."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Deep health (admin only, exposes infrastructure details) ─────────
@router.get("/health/deep")
async def deep_health_check(
    request: Request,
    _user: AuthenticatedUser = Depends(require_admin),
):
    """Deep health check with bounded component checks."""
    components = {}

    checks = [
        ("database", _check_database()),
        ("metering", _check_metering(request)),
        ("disk", _check_disk()),
        ("memory", _check_memory()),
    ]

    results = await asyncio.gather(
        *[_bounded_check(name, coro) for name, coro in checks],
        return_exceptions=True,
    )

    for name_result in results:
        if isinstance(name_result, Exception):
            continue
        name, result = name_result
        components[name] = result

    # Overall status = worst component
    statuses = [c.get("status", "down") for c in components.values()]
    if "down" in statuses:
        overall = "down"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"

    return {
        "status": overall,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "components": components,
    }


async def _bounded_check(name: str, coro) -> tuple[str, dict]:
    """Run a component check with a 2-second timeout."""
    try:
        result = await asyncio.wait_for(coro, timeout=COMPONENT_TIMEOUT)
        return name, result
    except asyncio.TimeoutError:
        return name, {"status": "down", "detail_safe": "Health check timed out"}
    except Exception as e:
        logger.warning("health_check_error", extra={"component": name, "error": str(e)})
        return name, {"status": "down", "detail_safe": f"Check failed: {type(e).__name__}"}


async def _check_database() -> dict:
    """SELECT 1 against the ledger database."""
    start = time.perf_counter()
    try:
        check_database()
        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        return {"status": "degraded" if latency_ms > 250 else "ok", "latency_ms": latency_ms}
    except Exception as e:
        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        return {
            "status": "down",
            "latency_ms": latency_ms,
            "detail_safe": f"Query failed: {type(e).__name__}",
        }


async def _check_metering(request: Request) -> dict:
    """Metering engine wired up; report live sessions."""
    engine = getattr(request.app.state, "metering_engine", None)
    if engine is None:
        return {"status": "down", "detail_safe": "Metering engine not initialized"}
    return {"status": "ok", "active_sessions": engine.active_sessions}


async def _check_disk() -> dict:
    """Check free disk space."""
    try:
        usage = psutil.disk_usage("/")
        free_pct = round(100.0 - usage.percent, 1)

        if free_pct < 5:
            status = "down"
        elif free_pct < 15:
            status = "degraded"
        else:
            status = "ok"

        return {"status": status, "free_pct": free_pct}
    except Exception as e:
        return {"status": "down", "detail_safe": f"Disk check failed: {type(e).__name__}"}


async def _check_memory() -> dict:
    """Check available memory."""
    try:
        mem = psutil.virtual_memory()
        avail_pct = round(100.0 - mem.percent, 1)

        if avail_pct < 3:
            status = "down"
        elif avail_pct < 10:
            status = "degraded"
        else:
            status = "ok"

        return {"status": status, "avail_pct": avail_pct}
    except Exception as e:
        return {"status": "down", "detail_safe": f"Memory check failed: {type(e).__name__}"}
