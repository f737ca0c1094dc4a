"""
Supabase clients.

gmail_connections, invoices and document_usage live in Supabase Postgres;
invoice files and rendered preview pages live in the invoices storage bucket.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

if not SUPABASE_URL or not SUPABASE_KEY:
    raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in environment variables")

# Anon key; used only to validate user access tokens
supabase: Client = create_client(SUPABASE_URL, SUPABASE_KEY)

# Service role, bypasses RLS. Sync runs are started by cron and Pub/Sub with
# no signed-in user, so every engine read and write goes through this client.
supabase_admin: Optional[Client] = (
    create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY) if SUPABASE_SERVICE_KEY else None
)
