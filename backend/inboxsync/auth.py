"""
Request authentication for the user-facing endpoints.

Users sign in with Supabase Auth and send the access token as a bearer
token. When SUPABASE_JWT_SECRET is configured the HS256 signature is checked
locally with python-jose; otherwise the token is handed to the Supabase Auth
API. Cron and Pub/Sub endpoints do not use this module.
"""

import logging
import os
from typing import Optional

from fastapi import Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from inboxsync.db import supabase, supabase_admin

logger = logging.getLogger(__name__)

# Project Settings > API > JWT Secret
SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token or " " in token:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return token


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    FastAPI dependency returning the signed-in user's id (the ``sub`` claim).

    Raises:
        HTTPException: 401 when the header is missing or the token is
            malformed, expired or rejected.
    """
    token = _bearer_token(authorization)
    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)
    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> str:
    try:
        claims = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            # Supabase tokens carry aud=authenticated, not a per-app audience
            options={"verify_aud": False},
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def _verify_jwt_remotely(token: str) -> str:
    try:
        response = supabase.auth.get_user(token)
    except Exception as e:
        logger.info(f"Supabase rejected access token: {e}")
        detail = "Token expired" if "expired" in str(e).lower() else "Invalid token"
        raise HTTPException(status_code=401, detail=detail)

    if not response or not response.user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return response.user.id


async def verify_connection_ownership(connection_id: str, user_id: str) -> dict:
    """
    Load a gmail_connections row and check it belongs to user_id.

    Returns:
        The row (without tokens).

    Raises:
        HTTPException: 404 when the connection does not exist, 403 when it
            belongs to someone else, 500 when the lookup itself fails.
    """
    try:
        result = (
            supabase_admin.table("gmail_connections")
            .select("id, user_id, email, account_label, is_active")
            .eq("id", connection_id)
            .execute()
        )
    except Exception as e:
        logger.error(f"Ownership lookup failed for connection {connection_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify ownership")

    if not result.data:
        raise HTTPException(status_code=404, detail="Gmail connection not found")

    connection = result.data[0]
    if connection.get("user_id") != user_id:
        raise HTTPException(
            status_code=403,
            detail="You are not authorized to access this Gmail connection",
        )
    return connection
