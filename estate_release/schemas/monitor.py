from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from estate_release.schemas.switch import EscalationStage


class MonitorStats(BaseModel):
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    consecutive_errors: int = 0
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    average_check_duration_ms: float = 0.0
    error_rate: float = 0.0
    uptime: float = 100.0


class MonitorHealth(BaseModel):
    healthy: bool
    running: bool
    uptime: float
    consecutive_errors: int
    error_rate: float
    last_success_age_seconds: Optional[float] = None
    issues: List[str] = []


class MonitorStatus(BaseModel):
    running: bool
    last_check_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None
    switches_evaluated: int = 0
    switches_triggered: int = 0
    tick_seconds: int
    stats: MonitorStats


class MonitorConfigUpdate(BaseModel):
    tick_seconds: Optional[int] = Field(default=None, ge=1)
    max_workers: Optional[int] = Field(default=None, ge=1)
    default_escalation_stages: Optional[List[EscalationStage]] = None


class TickSummary(BaseModel):
    started_at: datetime
    duration_ms: float
    switches_evaluated: int = 0
    switches_triggered: int = 0
    transitions: int = 0
    actions_completed: int = 0
    actions_failed: int = 0
    errors: int = 0
