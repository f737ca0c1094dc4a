"""
Gmail router.

Endpoints:
  POST   /auth-url                 — Google consent URL (auth: JWT)
  POST   /connect                  — exchange OAuth code, create connection (auth: JWT)
  GET    /connections              — list the user's mailboxes (auth: JWT)
  DELETE /connections/{id}         — disconnect a mailbox (auth: JWT)
  POST   /sync                     — user-triggered full sync (auth: JWT)
  POST   /auto-sync                — poll every active mailbox (auth: X-Cron-Secret)
  POST   /watch-renew              — renew push subscriptions (auth: X-Cron-Secret)
  POST   /webhook                  — Pub/Sub push notifications (no auth, always 200)

Environment variables
---------------------
CRON_SECRET   Shared secret checked in the X-Cron-Secret header.
"""

import logging
import os
import uuid
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from inboxsync.auth import get_current_user, verify_connection_ownership
from inboxsync.db import supabase_admin
from inboxsync.exceptions import ConnectionRejected, TransportError
from inboxsync.models.gmail import (
    AuthUrlRequest,
    ConnectionSummary,
    ConnectRequest,
    SyncMode,
    SyncRequest,
    SyncResult,
    TimeRange,
)
from inboxsync.services.gmail_oauth import build_consent_url, connect_mailbox, disconnect_mailbox
from inboxsync.services.push_handler import decode_push_envelope, handle_push
from inboxsync.services.sync_orchestrator import (
    MAX_MESSAGES_PER_AUTO_RUN,
    active_connections,
    sync_connections,
)
from inboxsync.services.watch_renewal import renew_watches

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Cron authentication dependency
# ---------------------------------------------------------------------------

def _verify_cron_secret(x_cron_secret: Optional[str] = Header(None)) -> None:
    """
    Verify that a scheduler request carries the shared CRON_SECRET.

    Raises 401 if the secret is missing, unconfigured, or does not match.
    """
    expected = os.getenv("CRON_SECRET", "")
    if not expected:
        logger.warning("CRON_SECRET not configured, all cron requests will be rejected")
        raise HTTPException(status_code=401, detail="Cron secret not configured")

    if not x_cron_secret or x_cron_secret != expected:
        raise HTTPException(status_code=401, detail="Invalid cron secret")


def _summarize(results: List[SyncResult]) -> dict:
    return {
        "success": True,
        "accounts_processed": len(results),
        "documents_created": sum(r.documents_created for r in results),
        "messages_found": sum(r.found for r in results),
        "results": [r.model_dump(mode="json") for r in results],
    }


# ---------------------------------------------------------------------------
# OAuth + connection management
# ---------------------------------------------------------------------------

@router.post("/auth-url")
async def get_auth_url(
    body: AuthUrlRequest,
    user_id: str = Depends(get_current_user),
) -> dict:
    state = str(uuid.uuid4())
    return {"auth_url": build_consent_url(body.redirect_url, state), "state": state}


@router.post("/connect", response_model=ConnectionSummary)
async def connect(
    body: ConnectRequest,
    user_id: str = Depends(get_current_user),
):
    """Exchange the OAuth callback code and store the new mailbox connection."""
    try:
        connection = await run_in_threadpool(
            connect_mailbox, user_id, body.code, body.redirect_url, body.account_label
        )
    except ConnectionRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransportError as e:
        logger.error(f"Google unreachable during connect: {e}")
        raise HTTPException(status_code=503, detail="Google is unavailable, try again later")

    return ConnectionSummary(**connection.model_dump())


@router.get("/connections", response_model=List[ConnectionSummary])
async def list_connections(user_id: str = Depends(get_current_user)):
    result = (
        supabase_admin.table("gmail_connections")
        .select("id, email, account_label, is_active, last_sync_at")
        .eq("user_id", user_id)
        .order("created_at")
        .execute()
    )
    return [ConnectionSummary(**row) for row in result.data or []]


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    user_id: str = Depends(get_current_user),
) -> dict:
    await verify_connection_ownership(connection_id, user_id)
    disconnect_mailbox(user_id, connection_id)
    return {"message": "Gmail account disconnected"}


# ---------------------------------------------------------------------------
# Sync triggers
# ---------------------------------------------------------------------------

@router.post("/sync")
async def sync(
    body: SyncRequest,
    user_id: str = Depends(get_current_user),
) -> dict:
    """Full sync of the user's mailboxes (or one of them) over body.time_range."""
    if body.connection_id:
        await verify_connection_ownership(body.connection_id, user_id)

    connections = active_connections(user_id=user_id, connection_id=body.connection_id)
    if not connections:
        raise HTTPException(status_code=404, detail="No active Gmail connection")

    results = await run_in_threadpool(
        sync_connections, connections, SyncMode.FULL, body.time_range
    )
    return _summarize(results)


@router.post("/auto-sync")
async def auto_sync(_: None = Depends(_verify_cron_secret)) -> dict:
    """Scheduled poll: incremental sync of every active connection."""
    connections = active_connections()
    logger.info(f"Auto-sync: {len(connections)} active connection(s)")
    results = await run_in_threadpool(
        sync_connections,
        connections,
        SyncMode.INCREMENTAL,
        TimeRange.DAY,
        MAX_MESSAGES_PER_AUTO_RUN,
    )
    return _summarize(results)


@router.post("/watch-renew")
async def watch_renew(_: None = Depends(_verify_cron_secret)) -> dict:
    return await run_in_threadpool(renew_watches)


# ---------------------------------------------------------------------------
# Push webhook
# ---------------------------------------------------------------------------

@router.post("/webhook")
async def gmail_webhook(request: Request, background_tasks: BackgroundTasks) -> dict:
    """
    Pub/Sub push endpoint.

    Always returns 200 so Pub/Sub does not redeliver; the sync itself runs
    after the response is sent.
    """
    try:
        payload = await request.json()
    except ValueError as e:
        logger.warning(f"Push body is not JSON: {e}")
        return {"ok": True}

    notification = decode_push_envelope(payload)
    if notification is None:
        return {"ok": True}

    logger.info(
        f"Push for {notification.email_address} at historyId {notification.history_id}"
    )
    background_tasks.add_task(handle_push, notification)
    return {"ok": True}
