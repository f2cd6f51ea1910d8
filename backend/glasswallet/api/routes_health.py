import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

from glasswallet.domain.outbox.service import outbox_counts_by_status

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _db_check(request: Request) -> tuple[bool, dict[str, Any]]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {
            "message": "database session factory unavailable",
            "hint": "app.state.db_session_factory is not configured; ensure startup wiring is complete.",
        }

    async def _ping_db():
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping_db(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": exc.__class__.__name__}

    return True, {"message": "database reachable"}


async def _outbox_check(request: Request) -> dict[str, Any]:
    """Backlog of undelivered webhooks and pixel syncs; informational, never fails readiness."""
    session_factory = request.app.state.db_session_factory
    try:
        async with session_factory() as session:
            counts = await outbox_counts_by_status(session, ("pending", "retry", "dead"))
    except Exception as exc:  # noqa: BLE001
        logger.debug("outbox_check_failed", exc_info=exc)
        return {"name": "outbox", "ok": False, "message": "outbox backlog unavailable"}
    return {"name": "outbox", "ok": True, "message": "outbox backlog", **counts}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    db_ok, db_detail = await _db_check(request)
    checks = [{"name": "db", "ok": db_ok, **db_detail}]
    if db_ok:
        checks.append(await _outbox_check(request))
    status_code = 200 if db_ok else 503
    return JSONResponse(status_code=status_code, content={"ok": db_ok, "checks": checks})
