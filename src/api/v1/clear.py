"""
Clear Endpoint

POST /api/v1/clear - Drop a session and its outputs immediately
"""

from typing import Optional

from fastapi import APIRouter, Depends

from src.api.dependencies import get_session_store
from src.engines.compositing.schemas import CamelModel
from src.engines.compositing.sessions import SessionStore

router = APIRouter()


class ClearRequest(CamelModel):
    session_id: Optional[str] = None


@router.post("")
async def clear_session(
    request: ClearRequest,
    store: SessionStore = Depends(get_session_store)
):
    if request.session_id:
        await store.expire(request.session_id)
    return {"success": True}
