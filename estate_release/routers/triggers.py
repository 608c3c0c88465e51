from fastapi import APIRouter, Depends, Query
from typing import List
from estate_release.routers.deps import get_services
from estate_release.schemas.trigger import (
    ScheduleRequest, ScheduleToggle, ScheduleResponse, TriggerConditionCreate,
    TriggerConditionResponse, SignalCreate, SignalResponse, EvaluationResultResponse
)
from estate_release.services.container import ReleaseServices
from estate_release.services.trigger_engine import HIGH_CONFIDENCE

router = APIRouter(prefix="/api/v1/triggers", tags=["triggers"])

@router.post("/evaluate/{user_id}", response_model=List[EvaluationResultResponse])
def trigger_evaluation(user_id: str, services: ReleaseServices = Depends(get_services)):
    """Run every enabled trigger condition of the user now"""
    return services.triggers.trigger_evaluation(user_id)

@router.get("/evaluations/{user_id}", response_model=List[EvaluationResultResponse])
def get_evaluations(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    high_confidence_only: bool = False,
    services: ReleaseServices = Depends(get_services)
):
    """Evaluation history, most recent first"""
    if high_confidence_only:
        return services.triggers.get_high_confidence_results(user_id, HIGH_CONFIDENCE, limit)
    return services.triggers.get_evaluation_history(user_id, limit)

@router.get("/schedule/{user_id}", response_model=ScheduleResponse)
def get_schedule(user_id: str, services: ReleaseServices = Depends(get_services)):
    return services.triggers.get_user_schedule(user_id)

@router.post("/schedule/{user_id}", response_model=ScheduleResponse)
def register_user(user_id: str, request: ScheduleRequest, services: ReleaseServices = Depends(get_services)):
    """Create or replace the user's evaluation schedule"""
    return services.triggers.register_user(user_id, request.frequency, request.enabled)

@router.put("/schedule/{user_id}", response_model=ScheduleResponse)
def set_enabled(user_id: str, request: ScheduleToggle, services: ReleaseServices = Depends(get_services)):
    """Turn scheduled evaluation on or off"""
    return services.triggers.set_user_evaluation_enabled(user_id, request.enabled)

@router.post("/conditions", response_model=TriggerConditionResponse, status_code=201)
def register_trigger(request: TriggerConditionCreate, services: ReleaseServices = Depends(get_services)):
    return services.triggers.register_trigger(request)

@router.get("/conditions", response_model=List[TriggerConditionResponse])
def list_triggers(user_id: str = Query(...), services: ReleaseServices = Depends(get_services)):
    return services.triggers.list_triggers(user_id)

@router.delete("/conditions/{trigger_id}", status_code=204)
def remove_trigger(trigger_id: int, user_id: str = Query(...), services: ReleaseServices = Depends(get_services)):
    services.triggers.remove_trigger(trigger_id, user_id)

@router.post("/signals", response_model=SignalResponse, status_code=201)
def record_signal(request: SignalCreate, services: ReleaseServices = Depends(get_services)):
    """Ingest an external signal; realtime users are evaluated right away"""
    return services.triggers.record_signal(request)

@router.post("/conditions/{trigger_id}/reset", response_model=TriggerConditionResponse)
def reset_trigger(trigger_id: int, user_id: str = Query(...), services: ReleaseServices = Depends(get_services)):
    """Re-arm a triggered condition so its actions can run again"""
    return services.triggers.reset_trigger(trigger_id, user_id)
