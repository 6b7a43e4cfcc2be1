from fastapi import APIRouter

from app.core.config import get_settings

router = APIRouter()
settings = get_settings()


@router.get("/health")
def health():
    return {
        "status": "ok",
        "storageConfigured": settings.storage_configured,
        "cloudbedsConfigured": settings.cloudbeds_configured,
        "environment": settings.ENVIRONMENT,
    }
