"""
Status Endpoint - Batch Progress Tracking

GET /api/v1/status?sessionId=... - Current progress of a batch
GET /api/v1/status/{session_id}  - Same, with the id in the path

Unknown or expired sessions return an empty default view, so polling
after expiry degrades gracefully.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_session_store
from src.engines.compositing.schemas import SessionView
from src.engines.compositing.sessions import SessionStore

router = APIRouter()


@router.get("", response_model=SessionView)
async def get_status(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    store: SessionStore = Depends(get_session_store)
):
    """Lightweight progress info, optimized for frequent polling."""
    return await store.get(session_id)


@router.get("/{session_id}", response_model=SessionView)
async def get_session_status(
    session_id: str,
    store: SessionStore = Depends(get_session_store)
):
    return await store.get(session_id)
