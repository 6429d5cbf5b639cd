from contextlib import asynccontextmanager

import psycopg
import structlog
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fintrack.core.config import settings
from fintrack.core.errors import LedgerError, StorageError
from fintrack.core.logging import configure_logging
from fintrack.db.pool import close_db_pool, open_db_pool
from fintrack.db.schema import ensure_schema
from fintrack.routers.internal import router as internal_router
from fintrack.routers.ledger import router as ledger_router
from fintrack.routers.reports import router as reports_router
from fintrack.services import state

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level, settings.log_json)
    open_db_pool()
    try:
        if settings.auto_migrate:
            ensure_schema()
        state.audit_sink.start()
        logger.info("service_started", service=settings.service_name)
        yield
    finally:
        state.audit_sink.stop(timeout=settings.audit_drain_timeout)
        close_db_pool()
        logger.info("service_stopped", service=settings.service_name)


app = FastAPI(title=settings.service_name, lifespan=lifespan)

app.include_router(ledger_router)
app.include_router(reports_router)
app.include_router(internal_router)


@app.get("/health")
def health():
    return {"ok": True, "service": settings.service_name, "audit_pending": state.audit_sink.pending}


@app.exception_handler(LedgerError)
def ledger_exc_handler(_, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "detail": exc.detail, "code": exc.code})


@app.exception_handler(psycopg.Error)
def storage_exc_handler(req, exc: psycopg.Error):
    # Read paths run outside unit_of_work, so driver errors can reach this far.
    logger.error("storage_error", path=req.url.path, error=repr(exc))
    return ledger_exc_handler(req, StorageError("Storage failure"))


@app.exception_handler(HTTPException)
def http_exc_handler(_, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "detail": exc.detail})


@app.exception_handler(RequestValidationError)
def validation_exc_handler(_, exc: RequestValidationError):
    errors = exc.errors()
    detail = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(status_code=400, content={"ok": False, "detail": detail, "code": "invalid_argument"})
