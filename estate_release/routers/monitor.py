from fastapi import APIRouter, Depends
from estate_release.routers.deps import get_services
from estate_release.schemas.monitor import MonitorHealth, MonitorStatus, MonitorConfigUpdate, TickSummary
from estate_release.services.container import ReleaseServices

router = APIRouter(prefix="/api/v1/monitor", tags=["monitor"])

@router.get("/status", response_model=MonitorStatus)
def get_status(services: ReleaseServices = Depends(get_services)):
    return services.monitor.status()

@router.post("/start", response_model=MonitorStatus)
def start_monitor(services: ReleaseServices = Depends(get_services)):
    """Start periodic switch evaluation (no-op when running)"""
    return services.monitor.start()

@router.post("/stop", response_model=MonitorStatus)
def stop_monitor(services: ReleaseServices = Depends(get_services)):
    return services.monitor.stop()

@router.post("/force-check", response_model=TickSummary)
def force_check(services: ReleaseServices = Depends(get_services)):
    """Evaluate all switches now"""
    return services.monitor.force_check()

@router.put("/config", response_model=MonitorStatus)
def update_config(request: MonitorConfigUpdate, services: ReleaseServices = Depends(get_services)):
    return services.monitor.update_config(request)

@router.get("/health", response_model=MonitorHealth)
def get_health(services: ReleaseServices = Depends(get_services)):
    """Stale passes and error rate of the monitor"""
    return services.monitor.health_check()
