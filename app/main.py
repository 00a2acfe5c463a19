import asyncio
import os

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger, setup_logging
from app.routers import chat
from app.services.outbox_service import claim_pending_outbox, deliver_outbox_rows

setup_logging(settings.log_level)

app = FastAPI(
    title="Chat Turns API",
    description="Turn orchestration for the store assistant on web and WhatsApp",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)

outbox_logger = get_logger("outbox_worker")
_outbox_worker_task: asyncio.Task | None = None


def _is_outbox_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.outbox_worker_enabled


def _run_outbox_batch() -> dict[str, int] | None:
    db = SessionLocal()
    try:
        rows = claim_pending_outbox(db, limit=settings.outbox_process_limit)
        if not rows:
            return None
        return deliver_outbox_rows(
            db,
            rows,
            max_attempts=settings.outbox_max_attempts,
            retry_backoff_seconds=settings.outbox_retry_backoff_seconds,
        )
    finally:
        db.close()


async def _outbox_worker_loop() -> None:
    interval_seconds = max(settings.outbox_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await asyncio.to_thread(_run_outbox_batch)
            if results:
                outbox_logger.info("Outbox worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            outbox_logger.error(
                "Outbox worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_outbox_worker() -> None:
    global _outbox_worker_task
    if not _is_outbox_worker_enabled():
        return
    if _outbox_worker_task is None or _outbox_worker_task.done():
        _outbox_worker_task = asyncio.create_task(_outbox_worker_loop())
        outbox_logger.info("Outbox worker started")


@app.on_event("shutdown")
async def stop_outbox_worker() -> None:
    global _outbox_worker_task
    if _outbox_worker_task is None:
        return
    _outbox_worker_task.cancel()
    try:
        await _outbox_worker_task
    except asyncio.CancelledError:
        pass
    _outbox_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
