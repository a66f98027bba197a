from fastapi import APIRouter

from backend.app.api.v1.endpoints.sync import router as sync_router

router = APIRouter()
router.include_router(sync_router, tags=["sync"])
