from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import chat_router, register_error_handlers
from config import get_settings
from logging_utils import configure_logging, get_logger
from runtime_state import runtime_state

APP_VERSION = "1.0.0"

logger = get_logger("main")


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    missing = settings.missing_auth_settings()
    if missing:
        # Authenticated routes fail closed until these are set.
        logger.warning("config.auth_incomplete", missing=list(missing))
    await runtime_state.ensure_started()

    yield

    await runtime_state.shutdown()


app = FastAPI(
    title="Edge Chat Gateway",
    description="Authenticated chat gateway with tiered conversational memory",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

register_error_handlers(app)
app.include_router(chat_router)


@app.get("/")
async def root():
    return {
        "message": "Edge Chat Gateway",
        "version": APP_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
        "runtime": await runtime_state.status(),
    }
    settings = get_settings()
    if settings.missing_auth_settings():
        payload["status"] = "degraded"
        payload["reason"] = "auth_not_configured"
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
