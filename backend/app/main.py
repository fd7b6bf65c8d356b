"""Collab backend: project access control and billing reconciliation API"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api import invitations, projects, subscriptions, webhooks
from app.core import otel
from app.core.logging import setup_logging
from app.core.middleware import (
    access_log_middleware, preflight_middleware,
    register_exception_handlers, setup_cors_middleware
)
from app.db.session import engine, get_db, init_db
from app.models import Base  # noqa: F401  registers every table on Base.metadata

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if otel.initialize_otel():
        logs_exported = otel.setup_otel_logging()
        otel.instrument_sqlalchemy(engine)
        logger.info(f"OTLP export on (logs {'on' if logs_exported else 'off'})")

    # Tables are owned by migrations in production; this only fills gaps
    init_db()
    logger.info("Collab backend started")
    yield
    logger.info("Collab backend stopping")


app = FastAPI(
    title="Collab Backend",
    description="Project collaboration access control and billing reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

if otel.is_enabled():
    otel.instrument_fastapi(app)

# Middleware: the last one added runs first
setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)
app.middleware("http")(preflight_middleware)

register_exception_handlers(app)

for module in (projects, invitations, subscriptions, webhooks):
    app.include_router(module.router)


@app.get("/metrics")
def metrics_endpoint():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Liveness plus a round trip to the record store"""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "unreachable"})
    return {"status": "healthy", "database": "ok"}
