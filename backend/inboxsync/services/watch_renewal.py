"""
Gmail watch renewal.

users.watch registrations expire after seven days; a daily cron call keeps
push notifications flowing for every active connection.
"""

import logging
import os
from typing import Optional

from inboxsync.db import supabase_admin
from inboxsync.exceptions import IngestionError
from inboxsync.services.gmail_client import GmailClient
from inboxsync.services.sync_orchestrator import active_connections
from inboxsync.services.token_manager import refresh_access_token

logger = logging.getLogger(__name__)


def renew_watches(topic: Optional[str] = None) -> dict:
    """
    Re-register the push subscription for every active connection.

    Returns {"renewed": n, "failed": m}. Per-connection failures are counted
    and logged, never raised.
    """
    topic = topic or os.getenv("GMAIL_PUBSUB_TOPIC")
    if not topic:
        logger.warning("GMAIL_PUBSUB_TOPIC not set, nothing to renew")
        return {"renewed": 0, "failed": 0}

    renewed = 0
    failed = 0

    for connection in active_connections():
        try:
            connection = refresh_access_token(connection)
            with GmailClient(connection.access_token) as client:
                response = client.watch(topic)
        except IngestionError as e:
            logger.warning(f"Watch renewal failed for {connection.email}: {e}")
            failed += 1
            continue

        history_id = response.get("historyId")
        stored = connection.history_cursor
        try:
            observed = int(history_id) if history_id is not None else None
        except (TypeError, ValueError):
            observed = None

        # Seed a missing cursor only; advancing an existing one would skip
        # messages that arrived since the last sync
        if observed is not None and stored is None:
            supabase_admin.table("gmail_connections").update(
                {"last_history_id": str(observed)}
            ).eq("id", connection.id).execute()

        logger.info(f"Watch renewed for {connection.email} (expires {response.get('expiration')})")
        renewed += 1

    return {"renewed": renewed, "failed": failed}
