"""
Google OAuth consent flow for connecting Gmail mailboxes.

The browser is sent to the consent URL, Google redirects back with a code,
and connect_mailbox turns that code into a gmail_connections row.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx

from inboxsync.db import supabase_admin
from inboxsync.exceptions import ConnectionRejected, TransportError
from inboxsync.models.gmail import GmailConnection
from inboxsync.services.gmail_client import GmailClient
from inboxsync.services.token_manager import (
    DEFAULT_EXPIRES_IN,
    GOOGLE_TOKEN_URL,
    TOKEN_TIMEOUT,
    google_credentials,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
]

MAX_CONNECTIONS_PER_USER = 3


def build_consent_url(redirect_url: str, state: str) -> str:
    client_id, _ = google_credentials()
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_url,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def exchange_code(code: str, redirect_url: str) -> dict:
    """
    Exchange an authorization code for tokens.

    Raises:
        ConnectionRejected: Google refused the code or returned no refresh token.
        TransportError: the token endpoint was unreachable.
    """
    client_id, client_secret = google_credentials()
    try:
        response = httpx.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_url,
                "grant_type": "authorization_code",
            },
            timeout=TOKEN_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise TransportError(f"Token endpoint unreachable: {e}") from e

    try:
        tokens = response.json()
    except ValueError:
        tokens = {}

    if response.status_code >= 400 or "error" in tokens:
        reason = tokens.get("error_description") or tokens.get("error") or f"HTTP {response.status_code}"
        logger.error(f"Authorization code exchange failed: {reason}")
        raise ConnectionRejected(f"Authorization code rejected: {reason}")

    if not tokens.get("refresh_token"):
        # Google only issues a refresh token on the first consent unless
        # prompt=consent is honoured; the user must revoke and reconnect.
        raise ConnectionRejected(
            "No refresh token received from Google. Remove the app's access "
            "from the Google account and connect again."
        )

    return tokens


def fetch_account_email(access_token: str) -> str:
    try:
        response = httpx.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=TOKEN_TIMEOUT,
        )
    except httpx.HTTPError as e:
        raise TransportError(f"Userinfo endpoint unreachable: {e}") from e

    if response.status_code >= 400:
        raise TransportError(
            f"Userinfo endpoint returned {response.status_code}",
            status_code=response.status_code,
        )

    email = response.json().get("email")
    if not email:
        raise ConnectionRejected("Google did not return an email address for this account")
    return email


def _register_watch(connection_id: str, access_token: str) -> Optional[str]:
    """Best-effort users.watch; returns the historyId it reported."""
    topic = os.getenv("GMAIL_PUBSUB_TOPIC")
    if not topic:
        logger.info("GMAIL_PUBSUB_TOPIC not set, skipping push registration")
        return None

    try:
        with GmailClient(access_token) as client:
            result = client.watch(topic)
    except TransportError as e:
        logger.warning(f"Could not register Gmail watch for {connection_id}: {e}")
        return None

    history_id = result.get("historyId")
    if history_id:
        supabase_admin.table("gmail_connections").update(
            {"last_history_id": str(history_id)}
        ).eq("id", connection_id).execute()
    return str(history_id) if history_id else None


def connect_mailbox(
    user_id: str,
    code: str,
    redirect_url: str,
    account_label: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GmailConnection:
    """
    Create a mailbox connection from an OAuth callback code.

    Raises:
        ConnectionRejected: the code was refused, the mailbox is already
            connected for this user, or the user has reached
            MAX_CONNECTIONS_PER_USER.
    """
    now = now or datetime.now(timezone.utc)
    tokens = exchange_code(code, redirect_url)
    email = fetch_account_email(tokens["access_token"])
    logger.info(f"OAuth consent completed for {email}")

    existing = (
        supabase_admin.table("gmail_connections")
        .select("id")
        .eq("user_id", user_id)
        .eq("email", email)
        .execute()
    )
    if existing.data:
        raise ConnectionRejected(f"{email} is already connected")

    count_result = (
        supabase_admin.table("gmail_connections")
        .select("id", count="exact")
        .eq("user_id", user_id)
        .execute()
    )
    count = count_result.count or 0
    if count >= MAX_CONNECTIONS_PER_USER:
        raise ConnectionRejected(
            f"At most {MAX_CONNECTIONS_PER_USER} Gmail accounts can be connected"
        )

    expires_at = now + timedelta(seconds=int(tokens.get("expires_in", DEFAULT_EXPIRES_IN)))
    row = {
        "user_id": user_id,
        "email": email,
        "account_label": account_label or f"Mailbox {count + 1}",
        "access_token": tokens["access_token"],
        "refresh_token": tokens["refresh_token"],
        "token_expires_at": expires_at.isoformat(),
        "is_active": True,
    }

    result = supabase_admin.table("gmail_connections").insert(row).execute()
    if not result.data:
        raise ConnectionRejected("Failed to save Gmail connection")

    connection = GmailConnection(**result.data[0])
    logger.info(f"Gmail connection saved: {connection.id}")

    history_id = _register_watch(connection.id, connection.access_token)
    if history_id:
        connection = connection.model_copy(update={"last_history_id": history_id})
    return connection


def disconnect_mailbox(user_id: str, connection_id: str) -> bool:
    """Delete one of the user's connections. Returns False when nothing matched."""
    result = (
        supabase_admin.table("gmail_connections")
        .delete()
        .eq("id", connection_id)
        .eq("user_id", user_id)
        .execute()
    )
    deleted = bool(result.data)
    if deleted:
        logger.info(f"Disconnected Gmail connection {connection_id} for user {user_id}")
    return deleted
