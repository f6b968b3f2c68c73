"""
Health endpoints.

Lightweight liveness/readiness checks without exposing secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from auditor.core.database import get_engine

logger = logging.getLogger("auditor")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "user_entitlements",
    "entitlement_snapshots",
    "billing_events",
    "sync_leases",
    "entitlement_admin_audit",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except (SQLAlchemyError, ValueError) as e:
        logger.error(f"[readyz] readiness check failed: {type(e).__name__}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
