"""
Documents router — background preview conversion for Gmail-sourced PDFs.

Endpoints:
  POST /convert-previews  — one throttled conversion tick (auth: JWT)
  POST /end-session       — forget the user's throttle state (auth: JWT)
"""

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from inboxsync.auth import get_current_user
from inboxsync.models.document import PreviewTickResult
from inboxsync.services.pdf_previews import preview_converter

router = APIRouter()


@router.post("/convert-previews", response_model=PreviewTickResult)
async def convert_previews(user_id: str = Depends(get_current_user)):
    return await run_in_threadpool(preview_converter.tick, user_id)


@router.post("/end-session")
async def end_session(user_id: str = Depends(get_current_user)) -> dict:
    preview_converter.end_session(user_id)
    return {"ok": True}
