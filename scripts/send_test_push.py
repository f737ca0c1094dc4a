#!/usr/bin/env python3
"""
Dev helper: exercise the Gmail sync endpoints of a running backend.

Two modes:

  push   Build a Cloud Pub/Sub push envelope for a mailbox + historyId and
         POST it to /api/gmail/webhook, exactly as Pub/Sub would.
  cron   POST to one of the scheduler endpoints (/api/gmail/auto-sync or
         /api/gmail/watch-renew) with the X-Cron-Secret header.

Usage
-----
# Simulate a push notification for a connected mailbox
python scripts/send_test_push.py push --email me@example.com --history-id 123456

# Trigger the auto-sync poll
python scripts/send_test_push.py cron auto-sync

# Renew Gmail watches
python scripts/send_test_push.py cron watch-renew

# Target a different backend URL
python scripts/send_test_push.py --url http://staging.example.com push --email me@example.com

Environment / .env
------------------
CRON_SECRET   Shared scheduler secret (required for the cron mode).

The script reads .env from the project root and from backend/ if present.
"""

import argparse
import base64
import json
import os
import sys
import textwrap
from pathlib import Path

import httpx
from dotenv import load_dotenv


def build_push_envelope(email: str, history_id: int) -> dict:
    """
    Build a Pub/Sub push body.

    Pub/Sub delivers the Gmail notification base64-encoded in message.data.
    """
    notification = {"emailAddress": email, "historyId": history_id}
    data = base64.b64encode(json.dumps(notification).encode()).decode()
    return {
        "message": {
            "data": data,
            "messageId": "dev-test-message",
            "publishTime": "2024-01-01T00:00:00Z",
        },
        "subscription": "projects/dev/subscriptions/gmail-push-dev",
    }


def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


def _post(endpoint: str, payload: dict, headers: dict) -> int:
    try:
        response = httpx.post(endpoint, json=payload, headers=headers, timeout=120)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn inboxsync.main:app --reload",
            file=sys.stderr,
        )
        return 1
    _print_response(response)
    return 0 if response.status_code == 200 else 1


def main() -> int:
    # scripts/ lives one level below the project root
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_push.py",
        description="Send a test Gmail push notification or cron trigger to the backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_push.py push --email me@example.com --history-id 99999
              python scripts/send_test_push.py cron auto-sync
              python scripts/send_test_push.py --dry-run push --email me@example.com
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the request without sending it.",
    )
    subparsers = parser.add_subparsers(dest="mode", required=True)

    push = subparsers.add_parser("push", help="Simulate a Pub/Sub push notification")
    push.add_argument("--email", required=True, help="Connected mailbox address")
    push.add_argument(
        "--history-id",
        type=int,
        default=99999999,
        help="historyId to report (default: 99999999, always newer than the stored cursor)",
    )

    cron = subparsers.add_parser("cron", help="Call a scheduler endpoint")
    cron.add_argument("job", choices=["auto-sync", "watch-renew"])
    cron.add_argument(
        "--secret",
        default=None,
        help="Override the cron secret (defaults to CRON_SECRET).",
    )

    args = parser.parse_args()
    base = args.url.rstrip("/")

    if args.mode == "push":
        endpoint = f"{base}/api/gmail/webhook"
        payload = build_push_envelope(args.email, args.history_id)
        headers = {}
        print(f"Endpoint  : {endpoint}")
        print(f"Mailbox   : {args.email}")
        print(f"historyId : {args.history_id}")
    else:
        secret = args.secret or os.getenv("CRON_SECRET", "")
        if not secret and not args.dry_run:
            print(
                "ERROR: No cron secret found.\n"
                "Set CRON_SECRET in your environment or .env file, or pass --secret.",
                file=sys.stderr,
            )
            return 1
        endpoint = f"{base}/api/gmail/{args.job}"
        payload = {}
        headers = {"X-Cron-Secret": secret}
        print(f"Endpoint  : {endpoint}")

    if args.dry_run:
        print("\n[DRY RUN] Payload:")
        print(json.dumps(payload, indent=2))
        return 0

    return _post(endpoint, payload, headers)


if __name__ == "__main__":
    sys.exit(main())
