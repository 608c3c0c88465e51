from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


class EvaluationFrequency(str, Enum):
    REALTIME = "realtime"
    MINUTE = "minute"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class TriggerKind(str, Enum):
    INACTIVITY = "inactivity"
    MEDICAL_EMERGENCY = "medical_emergency"
    LEGAL_DOCUMENT = "legal_document"
    BENEFICIARY_PETITION = "beneficiary_petition"
    THIRD_PARTY_SIGNAL = "third_party_signal"
    MANUAL_OVERRIDE = "manual_override"


class SignalSource(str, Enum):
    MEDICAL_EMERGENCY = "medical_emergency"
    LEGAL_DOCUMENT = "legal_document"
    BENEFICIARY_PETITION = "beneficiary_petition"
    THIRD_PARTY = "third_party"
    MANUAL_OVERRIDE = "manual_override"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SignalStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    APPROVED = "approved"
    VERIFIED = "verified"
    RESOLVED = "resolved"


class RequiredAction(str, Enum):
    GRANT_ACCESS = "grant_access"
    NOTIFY_CONTACTS = "notify_contacts"
    REQUEST_VERIFICATION = "request_verification"
    TIME_DELAY = "time_delay"
    ESCALATE = "escalate"


class ConditionStatus(str, Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"


class TriggerPriority(str, Enum):
    NORMAL = "normal"
    CRITICAL = "critical"


# ---------- Requests ----------

class ScheduleRequest(BaseModel):
    frequency: EvaluationFrequency = EvaluationFrequency.HOURLY
    enabled: bool = True


class ScheduleToggle(BaseModel):
    enabled: bool


class TriggerConditionCreate(BaseModel):
    user_id: str
    kind: str
    name: str
    parameters: Dict[str, Any] = {}
    notify_recipients: List[str] = []
    enabled: bool = True


class SignalCreate(BaseModel):
    user_id: str
    source: SignalSource
    signal_type: str
    severity: Optional[Severity] = None
    status: SignalStatus = SignalStatus.ACTIVE
    verified: bool = False
    payload: Dict[str, Any] = {}


# ---------- Responses ----------

class ScheduleResponse(BaseModel):
    user_id: str
    frequency: EvaluationFrequency
    enabled: bool
    next_run_at: datetime
    last_run_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TriggerConditionResponse(BaseModel):
    id: int
    user_id: str
    kind: str
    name: str
    parameters: Dict[str, Any] = {}
    notify_recipients: List[str] = []
    enabled: bool
    status: ConditionStatus = ConditionStatus.ACTIVE
    priority: TriggerPriority = TriggerPriority.NORMAL
    triggered_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SignalResponse(BaseModel):
    id: int
    user_id: str
    source: SignalSource
    signal_type: str
    severity: Optional[Severity] = None
    status: SignalStatus
    verified: bool
    payload: Dict[str, Any] = {}
    received_at: datetime

    class Config:
        from_attributes = True


class EvaluationResultResponse(BaseModel):
    id: int
    user_id: str
    trigger_id: int
    trigger_kind: str
    triggered: bool
    confidence: float = Field(ge=0, le=1)
    reason_codes: List[str] = []
    required_actions: List[RequiredAction] = []
    details: Dict[str, Any] = {}
    evaluated_at: datetime

    class Config:
        from_attributes = True
