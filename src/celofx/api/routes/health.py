"""Health check endpoints."""

from fastapi import APIRouter, Depends

from celofx.api.services import Services, get_services

router = APIRouter()

SERVICE_NAME = "celofx"
VERSION = "0.1.0"


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/health/detailed")
async def detailed_health(services: Services = Depends(get_services)):
    """Detailed health check with redacted configuration and notifier state."""
    settings = services.settings
    return {
        "status": "paused" if settings.agent_paused else "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "sharedStore": settings.has_shared_store,
        "notifications": {
            "pending": services.dispatcher.pending,
            "recentFailures": len(services.dispatcher.failures),
        },
        "config": settings.get_safe_dict(),
    }
