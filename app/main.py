import os
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger, setup_logging
from app.models import Conversation, QueueItem, Tenant
from app.routers import admin, whatsapp_webhook
from app.services.queue_worker import QueuePoller

setup_logging("DEBUG" if settings.debug else "INFO", settings.log_format)

app = FastAPI(
    title="Boka Inbox",
    description="WhatsApp inbound pipeline for the Boka booking platform",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(whatsapp_webhook.router)
app.include_router(admin.router)

worker_logger = get_logger("queue_poller")
_queue_poller: Optional[QueuePoller] = None


def _is_queue_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.queue_worker_enabled


@app.on_event("startup")
async def start_queue_poller() -> None:
    global _queue_poller
    if not _is_queue_worker_enabled():
        worker_logger.info("Queue poller disabled")
        return
    if _queue_poller is None or not _queue_poller.running:
        _queue_poller = QueuePoller()
        _queue_poller.start()


@app.on_event("shutdown")
async def stop_queue_poller() -> None:
    global _queue_poller
    if _queue_poller is None:
        return
    await _queue_poller.stop()
    _queue_poller = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "tenants": db.query(Tenant).count(),
        "conversations": db.query(Conversation).count(),
        "queue_items": db.query(QueueItem).count(),
    }
