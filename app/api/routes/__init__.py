from fastapi import APIRouter

from app.api.routes import cloudbeds, health, verify

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(verify.router, tags=["verify"])
api_router.include_router(cloudbeds.router, prefix="/cloudbeds", tags=["cloudbeds"])
