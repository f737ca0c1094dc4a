"""
Sync orchestrator: drives one mailbox connection through a sync run.

    idle -> token_validated -> messages_located -> processing -> committed -> idle
                 \\
                  -> auth_expired   (refresh rejected, connection deactivated)

Two runs for the same connection are excluded by a lease stored on the row
(sync_lease_until), taken with a conditional update. Messages are processed
one at a time and every per-message failure is isolated; the cursor and
last_sync_at are committed once candidates were located, and never move
backwards.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from inboxsync.db import supabase_admin
from inboxsync.exceptions import (
    AuthError,
    IngestionError,
    SyncInProgressError,
)
from inboxsync.models.gmail import (
    GmailConnection,
    LocateResult,
    SyncMode,
    SyncResult,
    SyncState,
    TimeRange,
)
from inboxsync.services.gmail_client import GmailClient
from inboxsync.services.materializer import ingested_message_ids, process_message
from inboxsync.services.message_locator import after_date_for, locate_candidates
from inboxsync.services.token_manager import refresh_access_token

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_RUN = 30
MAX_MESSAGES_PER_AUTO_RUN = 20
LEASE_TTL = timedelta(minutes=10)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: datetime) -> str:
    # "Z" keeps the timestamp safe inside a PostgREST or= filter
    return _utc(value).astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return _utc(value)
    return _utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


# ---------------------------------------------------------------------------
# Connection rows
# ---------------------------------------------------------------------------

def active_connections(
    user_id: Optional[str] = None,
    connection_id: Optional[str] = None,
    email: Optional[str] = None,
) -> list[GmailConnection]:
    """Load active connections, optionally narrowed by owner, id or mailbox."""
    query = supabase_admin.table("gmail_connections").select("*").eq("is_active", True)
    if user_id:
        query = query.eq("user_id", user_id)
    if connection_id:
        query = query.eq("id", connection_id)
    if email:
        query = query.eq("email", email)
    result = query.execute()
    return [GmailConnection(**row) for row in result.data or []]


def acquire_lease(connection_id: str, now: Optional[datetime] = None) -> bool:
    """Take the connection's lease unless an unexpired one is held."""
    now = now or datetime.now(timezone.utc)
    result = (
        supabase_admin.table("gmail_connections")
        .update({"sync_lease_until": _iso(now + LEASE_TTL)})
        .eq("id", connection_id)
        .or_(f"sync_lease_until.is.null,sync_lease_until.lt.{_iso(now)}")
        .execute()
    )
    return bool(result.data)


def release_lease(connection_id: str) -> None:
    supabase_admin.table("gmail_connections").update(
        {"sync_lease_until": None}
    ).eq("id", connection_id).execute()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class SyncOrchestrator:
    """Runs one connection at a time; `state` reflects the run in progress."""

    def __init__(self, client_factory: Callable[[str], GmailClient] = GmailClient):
        self.state = SyncState.IDLE
        self._client_factory = client_factory

    def _transition(self, state: SyncState) -> None:
        logger.debug(f"Sync state {self.state.value} -> {state.value}")
        self.state = state

    def run(
        self,
        connection: GmailConnection,
        mode: SyncMode,
        time_range: TimeRange = TimeRange.MONTH,
        target_history_id: Optional[int] = None,
        max_messages: int = MAX_MESSAGES_PER_RUN,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Sync one connection.

        Raises:
            SyncInProgressError: another run holds the lease; nothing changed.
            AuthError: the token could not be refreshed; the connection was
                deactivated and the orchestrator is left in auth_expired.
            TransportError: candidates could not be located; the cursor was
                not moved.
        """
        now = now or datetime.now(timezone.utc)
        result = SyncResult(connection_id=connection.id, email=connection.email, mode=mode)

        if not connection.is_active:
            logger.info(f"Skipping inactive connection {connection.email}")
            result.error = "connection is inactive"
            return result

        if not acquire_lease(connection.id, now):
            raise SyncInProgressError(f"Sync already running for {connection.email}")

        try:
            try:
                connection = refresh_access_token(connection, now)
            except AuthError:
                self._transition(SyncState.AUTH_EXPIRED)
                result.state = self.state
                raise
            self._transition(SyncState.TOKEN_VALIDATED)

            with self._client_factory(connection.access_token) as client:
                located = locate_candidates(
                    client,
                    mode,
                    connection.history_cursor,
                    after_date_for(time_range, now),
                    now=now,
                )
                self._transition(SyncState.MESSAGES_LOCATED)
                result.found = len(located.message_ids)
                logger.info(
                    f"{connection.email}: {result.found} candidate(s) "
                    f"({mode.value}{', search fallback' if located.fell_back_to_search else ''})"
                )

                self._transition(SyncState.PROCESSING)
                self._process(client, connection, located, max_messages, result)

            result.history_id = self._commit(connection, located, target_history_id, now)
            self._transition(SyncState.COMMITTED)
            result.state = self.state
            logger.info(
                f"{connection.email}: processed {result.processed}, "
                f"created {result.documents_created}, failed {len(result.failed_messages)}"
            )
            return result
        finally:
            release_lease(connection.id)
            if self.state != SyncState.AUTH_EXPIRED:
                self._transition(SyncState.IDLE)

    def _pending(self, connection: GmailConnection, located: LocateResult) -> list[str]:
        """Candidates not yet ingested, newest first."""
        try:
            ingested = ingested_message_ids(connection.user_id, located.message_ids)
        except Exception as e:
            # process_message still checks each id before doing any work
            logger.error(f"{connection.email}: could not load ingested message ids: {e}")
            ingested = set()
        # Gmail ids are hex and grow with time
        return sorted(located.message_ids - ingested, key=lambda m: (len(m), m), reverse=True)

    def _process(
        self,
        client: GmailClient,
        connection: GmailConnection,
        located: LocateResult,
        max_messages: int,
        result: SyncResult,
    ) -> None:
        pending = self._pending(connection, located)
        result.already_ingested = len(located.message_ids) - len(pending)
        for message_id in pending[:max_messages]:
            try:
                document = process_message(client, connection.user_id, message_id)
            except Exception as e:
                logger.error(f"{connection.email}: message {message_id} failed: {e}")
                result.failed_messages.append(message_id)
                continue
            result.processed += 1
            if document:
                result.documents_created += 1

    def _commit(
        self,
        connection: GmailConnection,
        located: LocateResult,
        target_history_id: Optional[int],
        now: datetime,
    ) -> Optional[int]:
        """Write cursor and last_sync_at, each the max of stored and new values."""
        stored = (
            supabase_admin.table("gmail_connections")
            .select("last_history_id, last_sync_at")
            .eq("id", connection.id)
            .execute()
        )
        row = stored.data[0] if stored.data else {}
        stored_connection = connection.model_copy(update={
            "last_history_id": row.get("last_history_id", connection.last_history_id),
        })

        cursors = [
            c for c in (
                connection.history_cursor,
                stored_connection.history_cursor,
                located.latest_history_id,
                target_history_id,
            )
            if c is not None
        ]
        new_cursor = max(cursors) if cursors else None

        last_syncs = [
            t for t in (
                _parse_timestamp(row.get("last_sync_at")),
                _utc(connection.last_sync_at),
                _utc(now),
            )
            if t is not None
        ]

        update = {"last_sync_at": _iso(max(last_syncs))}
        if new_cursor is not None:
            update["last_history_id"] = str(new_cursor)

        supabase_admin.table("gmail_connections").update(update).eq("id", connection.id).execute()
        return new_cursor


def sync_connections(
    connections: list[GmailConnection],
    mode: SyncMode,
    time_range: TimeRange = TimeRange.MONTH,
    max_messages: int = MAX_MESSAGES_PER_RUN,
    now: Optional[datetime] = None,
) -> list[SyncResult]:
    """
    Sync each connection in turn.

    A failure on one connection is recorded on its SyncResult and the batch
    moves on to the next.
    """
    results: list[SyncResult] = []
    for connection in connections:
        orchestrator = SyncOrchestrator()
        try:
            results.append(orchestrator.run(
                connection, mode, time_range, max_messages=max_messages, now=now,
            ))
        except IngestionError as e:
            logger.warning(f"Sync for {connection.email} aborted: {e}")
            results.append(SyncResult(
                connection_id=connection.id,
                email=connection.email,
                mode=mode,
                state=orchestrator.state,
                error=str(e),
            ))
        except Exception as e:
            logger.error(f"Unexpected error syncing {connection.email}: {e}")
            results.append(SyncResult(
                connection_id=connection.id,
                email=connection.email,
                mode=mode,
                state=orchestrator.state,
                error=str(e),
            ))
    return results
