# fsm_outbox/services/health_service.py
from typing import Any, Awaitable, Callable, Dict
from datetime import datetime, timezone
import platform
import psutil
from fsm_outbox.config import settings
from fsm_outbox.database import AsyncSessionLocal, check_db_connection
from fsm_outbox.core.redis import check_redis_connection
from fsm_outbox.services.outbox_service import OutboxService
import logging

logger = logging.getLogger(__name__)

# The API cannot serve without these; Redis only degrades the idempotency fast path
CRITICAL_SERVICES = ("database",)


async def _check_service(check: Callable[[], Awaitable[bool]]) -> Dict[str, Any]:
    try:
        healthy = await check()
    except Exception as e:
        return {"healthy": False, "error": str(e)}
    return {"healthy": healthy, "status": "connected" if healthy else "disconnected"}


async def _outbox_backlog() -> Dict[str, Any]:
    try:
        async with AsyncSessionLocal() as session:
            stats = await OutboxService(session).get_stats()
    except Exception as e:
        logger.error(f"Failed to read outbox stats: {e}")
        return {"error": str(e)}

    oldest = stats["oldest_pending_at"]
    return {
        "pending": stats["pending"],
        "failing": stats["failing"],
        "oldest_pending_at": oldest.isoformat() if oldest else None,
    }


def _system_info() -> Dict[str, Any]:
    try:
        return {
            "cpu_percent": psutil.cpu_percent(interval=0.1),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage("/").percent,
            "python_version": platform.python_version(),
            "uptime_seconds": datetime.now(timezone.utc).timestamp() - psutil.boot_time(),
        }
    except Exception as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {}


def _overall(services: Dict[str, Dict[str, Any]]) -> str:
    if not all(services[name].get("healthy", False) for name in CRITICAL_SERVICES):
        return "unhealthy"
    if all(s.get("healthy", False) for s in services.values()):
        return "healthy"
    return "degraded"


async def get_detailed_health() -> Dict[str, Any]:
    """Database, cache, outbox backlog and host metrics in one report"""
    services = {
        "database": await _check_service(check_db_connection),
        "redis": await _check_service(check_redis_connection),
    }

    return {
        "overall_health": _overall(services),
        "services": services,
        # Backlog needs the database
        "outbox": await _outbox_backlog() if services["database"]["healthy"] else {},
        "system": _system_info(),
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
