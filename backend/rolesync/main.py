"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from rolesync.config import get_settings
from rolesync.db.session import SessionLocal
from rolesync.routers import audit, reconciliation, whitelist
from rolesync.runtime import get_runtime

logger = logging.getLogger(__name__)

settings = get_settings()


def _warm_backend_state() -> None:
    """Prime the DB connection and the reconciliation runtime at process start."""

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        get_runtime()
    except Exception:
        logger.exception("Backend warm-up failed; continuing without startup pre-warm.")


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(level=settings.log_level.upper())
    _warm_backend_state()
    yield


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(whitelist.router, tags=["whitelist"])
app.include_router(audit.router, tags=["audit"])
app.include_router(reconciliation.router, tags=["reconciliation"])


@app.get("/health")
def health() -> dict[str, str]:
    """Simple health check endpoint."""

    return {"status": "ok"}
