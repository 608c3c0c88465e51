from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from estate_release.routers.deps import get_services
from estate_release.schemas.switch import (
    SwitchCreate, SwitchConfigUpdate, SwitchResponse, SwitchState, OwnerAction,
    CheckInRequest, CheckInResponse, HolidayModeRequest, AuditEntryResponse
)
from estate_release.services.container import ReleaseServices

router = APIRouter(prefix="/api/v1/dead-man-switch", tags=["dead-man-switch"])

@router.post("/", response_model=SwitchResponse, status_code=201)
def create_switch(request: SwitchCreate, services: ReleaseServices = Depends(get_services)):
    """Create a disabled switch for an owner"""
    return services.switches.create_switch(request.owner_id, request.config)

@router.get("/", response_model=List[SwitchResponse])
def list_switches(
    owner_id: Optional[str] = None,
    state: Optional[SwitchState] = None,
    services: ReleaseServices = Depends(get_services)
):
    """List switches, optionally for one owner or state"""
    return services.switches.list_switches(owner_id, state)

@router.get("/statistics")
def get_statistics(services: ReleaseServices = Depends(get_services)):
    """Switch counts per state"""
    return services.switches.get_statistics()

@router.get("/{switch_id}", response_model=SwitchResponse)
def get_switch(switch_id: str, services: ReleaseServices = Depends(get_services)):
    return services.switches.get_switch(switch_id)

@router.put("/{switch_id}", response_model=SwitchResponse)
def update_switch(switch_id: str, request: SwitchConfigUpdate, services: ReleaseServices = Depends(get_services)):
    """Replace the switch configuration"""
    return services.switches.update_configuration(switch_id, request.user_id, request.config)

@router.delete("/{switch_id}", status_code=204)
def delete_switch(switch_id: str, user_id: str = Query(...), services: ReleaseServices = Depends(get_services)):
    services.switches.delete_switch(switch_id, user_id)

@router.post("/{switch_id}/enable", response_model=SwitchResponse)
def enable_switch(switch_id: str, request: OwnerAction, services: ReleaseServices = Depends(get_services)):
    """Arm the switch; counts as a check-in"""
    return services.switches.enable_switch(switch_id, request.user_id)

@router.post("/{switch_id}/disable", response_model=SwitchResponse)
def disable_switch(switch_id: str, request: OwnerAction, services: ReleaseServices = Depends(get_services)):
    return services.switches.disable_switch(switch_id, request.user_id)

@router.post("/{switch_id}/reset", response_model=SwitchResponse)
def reset_switch(switch_id: str, request: OwnerAction, services: ReleaseServices = Depends(get_services)):
    """Rearm a triggered switch"""
    return services.switches.reset_switch(switch_id, request.user_id)

@router.post("/{switch_id}/checkin", response_model=CheckInResponse)
def check_in(switch_id: str, request: CheckInRequest, services: ReleaseServices = Depends(get_services)):
    """Record proof of life"""
    return services.switches.record_check_in(switch_id, request.user_id, request.method, request.metadata)

@router.post("/{switch_id}/holiday-mode", response_model=SwitchResponse)
def activate_holiday_mode(switch_id: str, request: HolidayModeRequest, services: ReleaseServices = Depends(get_services)):
    """Pause the inactivity clock for a window"""
    return services.switches.activate_holiday_mode(
        switch_id, request.user_id, request.start, request.end, request.reason
    )

@router.delete("/{switch_id}/holiday-mode", response_model=SwitchResponse)
def deactivate_holiday_mode(switch_id: str, user_id: str = Query(...), services: ReleaseServices = Depends(get_services)):
    return services.switches.deactivate_holiday_mode(switch_id, user_id)

@router.get("/{switch_id}/audit", response_model=List[AuditEntryResponse])
def get_audit_trail(switch_id: str, limit: Optional[int] = Query(None, ge=1), services: ReleaseServices = Depends(get_services)):
    """State changes and owner actions, oldest first"""
    return services.switches.get_audit_trail(switch_id, limit)
