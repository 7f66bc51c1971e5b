"""API v1 router - aggregates all endpoint routers."""

from fastapi import APIRouter

from app.api.v1 import exclusions, hidden, library

api_router = APIRouter()

api_router.include_router(library.router, prefix="/library", tags=["library"])
api_router.include_router(hidden.router, prefix="/hidden", tags=["hidden"])
api_router.include_router(exclusions.router, prefix="/exclusions", tags=["exclusions"])
