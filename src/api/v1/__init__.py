"""
API v1 Router Module - Batch Compositor

All v1 endpoints are prefixed with /api/v1/

Batch flow:
- POST /api/v1/upload - Store foreground images and the background
- POST /api/v1/process - Start a batch, returns a session id
- GET  /api/v1/status - Poll progress
- GET  /api/v1/download/{session_id} - Zip of the results
- POST /api/v1/clear - Drop a session early
"""

from fastapi import APIRouter

from src.api.v1.upload import router as upload_router
from src.api.v1.process import router as process_router
from src.api.v1.status import router as status_router
from src.api.v1.download import router as download_router
from src.api.v1.clear import router as clear_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(upload_router, prefix="/upload", tags=["upload"])
api_v1_router.include_router(process_router, prefix="/process", tags=["batch"])
api_v1_router.include_router(status_router, prefix="/status", tags=["status"])
api_v1_router.include_router(download_router, prefix="/download", tags=["download"])
api_v1_router.include_router(clear_router, prefix="/clear", tags=["batch"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
