"""
OAuth access-token refresh for Gmail connections.

A connection whose refresh grant is rejected is deactivated immediately and
stays inactive until the user goes through consent again.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from inboxsync.db import supabase_admin
from inboxsync.exceptions import AuthError, TransportError
from inboxsync.models.gmail import GmailConnection

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
TOKEN_TIMEOUT = 15.0
DEFAULT_EXPIRES_IN = 3600
# Throttling and request timeouts say nothing about the grant
TRANSIENT_STATUS_CODES = {408, 429}


def google_credentials() -> tuple[str, str]:
    return os.getenv("GOOGLE_CLIENT_ID", ""), os.getenv("GOOGLE_CLIENT_SECRET", "")


def token_is_expired(connection: GmailConnection, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    expires_at = connection.token_expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


def deactivate_connection(connection_id: str, reason: str) -> None:
    """Mark a connection inactive. Inactive connections are never synced automatically."""
    logger.warning(f"Deactivating Gmail connection {connection_id}: {reason}")
    supabase_admin.table("gmail_connections").update(
        {"is_active": False}
    ).eq("id", connection_id).execute()


def refresh_access_token(
    connection: GmailConnection,
    now: Optional[datetime] = None,
) -> GmailConnection:
    """
    Return a connection whose access token is valid.

    When token_expires_at <= now the refresh_token grant is exchanged at
    Google's token endpoint and the new token + expiry are persisted.

    Raises:
        AuthError: the grant was rejected (revoked, invalid) or there is no
            refresh token. The connection has been deactivated.
        TransportError: the token endpoint was unreachable, throttled (429),
            timed out (408) or returned 5xx.
            The connection is left active.
    """
    now = now or datetime.now(timezone.utc)
    if not token_is_expired(connection, now):
        return connection

    if not connection.refresh_token:
        deactivate_connection(connection.id, "no refresh token stored")
        raise AuthError("No refresh token stored for connection", connection_id=connection.id)

    client_id, client_secret = google_credentials()
    logger.info(f"Refreshing access token for {connection.email}")

    try:
        response = httpx.post(
            GOOGLE_TOKEN_URL,
            data={
                "refresh_token": connection.refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            },
            timeout=TOKEN_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise TransportError(f"Token endpoint unreachable: {e}") from e

    if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
        raise TransportError(
            f"Token endpoint returned {response.status_code}",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError:
        payload = {}

    if response.status_code >= 400 or "error" in payload or "access_token" not in payload:
        reason = payload.get("error_description") or payload.get("error") or f"HTTP {response.status_code}"
        deactivate_connection(connection.id, f"token refresh rejected ({reason})")
        raise AuthError(f"Token refresh rejected: {reason}", connection_id=connection.id)

    expires_at = now + timedelta(seconds=int(payload.get("expires_in", DEFAULT_EXPIRES_IN)))

    supabase_admin.table("gmail_connections").update({
        "access_token": payload["access_token"],
        "token_expires_at": expires_at.isoformat(),
    }).eq("id", connection.id).execute()

    return connection.model_copy(update={
        "access_token": payload["access_token"],
        "token_expires_at": expires_at,
    })
