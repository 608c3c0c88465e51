from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime
from typing import Optional, List, Dict

from estate_release.database import to_naive_utc

HOLIDAY_MAX_DAYS = 90


class SwitchState(str, Enum):
    DISABLED = "disabled"
    ARMED = "armed"
    WARNING = "warning"
    GRACE = "grace"
    TRIGGERED = "triggered"


class CheckInMethod(str, Enum):
    APP_LOGIN = "app_login"
    EMAIL_RESPONSE = "email_response"
    SMS_RESPONSE = "sms_response"
    PHONE_CALL = "phone_call"
    WEB_CHECKIN = "web_checkin"
    BIOMETRIC = "biometric"
    API_TOKEN = "api_token"
    MANUAL_TRIGGER = "manual_trigger"


class EscalationAction(str, Enum):
    NOTIFY_OWNER = "notify_owner"
    NOTIFY_CONTACTS = "notify_contacts"
    RELEASE = "release"


class OverrideType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    TEMPORARY = "temporary"


class HolidayReasonKind(str, Enum):
    VACATION = "vacation"
    TRAVEL = "travel"
    MEDICAL = "medical"
    OTHER = "other"


class EscalationStage(BaseModel):
    delay_hours: float = Field(gt=0)
    recipients: List[str] = []
    action: EscalationAction = EscalationAction.NOTIFY_OWNER


class BeneficiaryGrant(BaseModel):
    beneficiary_id: str
    resource_type: str = "all"
    resource_id: Optional[str] = None
    delay_hours: float = Field(default=0, ge=0)


class OverridePlan(BaseModel):
    override_type: OverrideType = OverrideType.TEMPORARY
    beneficiary_id: Optional[str] = None
    expiration_hours: float = Field(default=72, gt=0)


class ReleasePlan(BaseModel):
    grants: List[BeneficiaryGrant] = []
    emergency_override: Optional[OverridePlan] = None


class SwitchConfig(BaseModel):
    """
    Escalation thresholds are all measured from the last check-in, minus any
    holiday time. Without explicit stages the grace period starts at the
    check-in interval and the switch triggers once the grace period is over.
    """
    check_in_interval_hours: float = Field(default=60 * 24, gt=0)
    warning_threshold_hours: Optional[float] = Field(default=None, gt=0)
    grace_period_hours: float = Field(default=7 * 24, ge=0)
    escalation_stages: List[EscalationStage] = []
    warning_recipients: List[str] = []
    max_holiday_days: int = Field(default=HOLIDAY_MAX_DAYS, ge=1, le=HOLIDAY_MAX_DAYS)
    refreshable: bool = True
    release: ReleasePlan = ReleasePlan()

    @model_validator(mode="after")
    def _check_thresholds(self):
        stages = self.resolved_stages()
        delays = [s.delay_hours for s in stages]
        if delays != sorted(delays):
            raise ValueError("escalation stage delays must be non-decreasing")
        if self.resolved_warning_threshold() > delays[0]:
            raise ValueError("warning threshold must not exceed the first escalation stage delay")
        return self

    def resolved_stages(self) -> List[EscalationStage]:
        if self.escalation_stages:
            return list(self.escalation_stages)
        return [
            EscalationStage(
                delay_hours=self.check_in_interval_hours,
                action=EscalationAction.NOTIFY_OWNER,
            ),
            EscalationStage(
                delay_hours=self.check_in_interval_hours + self.grace_period_hours,
                action=EscalationAction.RELEASE,
            ),
        ]

    def resolved_warning_threshold(self) -> float:
        if self.warning_threshold_hours is not None:
            return self.warning_threshold_hours
        # one week ahead of the interval, or halfway for short intervals
        return max(self.check_in_interval_hours - 7 * 24, self.check_in_interval_hours / 2)

    @property
    def grace_start_hours(self) -> float:
        return self.resolved_stages()[0].delay_hours

    @property
    def final_delay_hours(self) -> float:
        return self.resolved_stages()[-1].delay_hours


class CheckInMetadata(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    location: Optional[str] = None
    note: Optional[str] = None
    extra: Dict[str, str] = {}


class HolidayReason(BaseModel):
    kind: HolidayReasonKind = HolidayReasonKind.VACATION
    note: Optional[str] = None


# ---------- Requests ----------

class SwitchCreate(BaseModel):
    owner_id: str
    config: Optional[SwitchConfig] = None


class SwitchConfigUpdate(BaseModel):
    user_id: str
    config: SwitchConfig


class OwnerAction(BaseModel):
    user_id: str


class CheckInRequest(BaseModel):
    user_id: str
    method: CheckInMethod
    metadata: Optional[CheckInMetadata] = None


class HolidayModeRequest(BaseModel):
    user_id: str
    start: datetime
    end: datetime
    reason: Optional[HolidayReason] = None

    @field_validator("start", "end")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


# ---------- Responses ----------

class HolidayWindowResponse(BaseModel):
    id: int
    start: datetime
    end: datetime
    reason: Optional[HolidayReason] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuditEntryResponse(BaseModel):
    id: int
    switch_id: str
    timestamp: datetime
    from_state: SwitchState
    to_state: SwitchState
    reason: str
    actor: str
    result: str
    details: Dict = {}

    class Config:
        from_attributes = True


class SwitchResponse(BaseModel):
    id: str
    owner_id: str
    state: SwitchState
    config: SwitchConfig
    last_check_in_at: datetime
    cycle: int
    holiday_windows: List[HolidayWindowResponse] = []
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CheckInResponse(BaseModel):
    switch_id: str
    state: SwitchState
    previous_state: SwitchState
    last_check_in_at: datetime
