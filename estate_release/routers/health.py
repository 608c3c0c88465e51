from fastapi import APIRouter, Depends
from estate_release.routers.deps import get_services
from estate_release.services.container import ReleaseServices

router = APIRouter(tags=["health"])

@router.get("/healthz")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "service": "estate-release-api"}

@router.get("/api/v1/health")
def api_health_check(services: ReleaseServices = Depends(get_services)):
    """API health check with background job state"""
    return {
        "status": "ok",
        "api_version": "v1",
        "monitor_running": services.monitor.running,
        "triggers": services.triggers.summary()
    }
