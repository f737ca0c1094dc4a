"""
Inbox Sync API
FastAPI application: Gmail mailbox connections, invoice sync, Pub/Sub push
intake and background PDF previews.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from inboxsync.db import supabase_admin
from inboxsync.routers import documents, gmail
from inboxsync.services.storage import BUCKET

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
# httpx logs every request at INFO; Gmail paging would drown the sync logs
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://localhost:8080"]


def get_cors_origins() -> List[str]:
    """
    Dev origins plus any listed in CORS_ORIGINS (comma-separated), deduplicated
    in order, e.g. CORS_ORIGINS=https://app.example.com,https://preview.example.com
    """
    extra = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    return list(dict.fromkeys(DEFAULT_CORS_ORIGINS + extra))


app = FastAPI(
    title="Inbox Sync API",
    description="Gmail invoice ingestion: mailbox sync, push notifications and document extraction",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(gmail.router, prefix="/api/gmail", tags=["gmail"])
app.include_router(documents.router, prefix="/api/documents", tags=["documents"])


@app.on_event("startup")
async def log_configuration() -> None:
    """Warn about settings whose absence silently disables a feature."""
    for name, consequence in (
        ("SUPABASE_SERVICE_KEY", "sync, storage and previews will fail"),
        ("GOOGLE_CLIENT_ID", "mailboxes cannot be connected"),
        ("ANTHROPIC_API_KEY", "every document will need manual review"),
        ("GMAIL_PUBSUB_TOPIC", "push notifications are disabled"),
        ("CRON_SECRET", "auto-sync and watch renewal will reject every call"),
    ):
        if not os.getenv(name):
            logger.warning(f"{name} is not set: {consequence}")
    logger.info(f"Inbox Sync API started on port {os.getenv('HOST_PORT', '8000')}")


@app.get("/")
async def root():
    return {"message": "Inbox Sync API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """Cheap SELECT against gmail_connections; 503 when the database is unreachable."""
    if supabase_admin is None:
        raise HTTPException(status_code=503, detail="SUPABASE_SERVICE_KEY is not configured")

    try:
        supabase_admin.table("gmail_connections").select("id").limit(1).execute()
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(status_code=503, detail=f"Database connection failed: {exc}")
    return {"status": "ok", "database": "reachable"}


@app.get("/health/storage")
async def health_storage():
    """503 unless storage answers and the invoices bucket exists."""
    if supabase_admin is None:
        raise HTTPException(status_code=503, detail="SUPABASE_SERVICE_KEY is not configured")

    try:
        bucket_names = {b.name for b in supabase_admin.storage.list_buckets()}
    except Exception as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(status_code=503, detail=f"Storage check failed: {exc}")

    if BUCKET not in bucket_names:
        raise HTTPException(status_code=503, detail=f"Storage bucket '{BUCKET}' not found")
    return {"status": "ok", "storage": "reachable", "bucket": BUCKET}
