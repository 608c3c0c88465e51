from estate_release.database import Base
from .switch import DeadManSwitch, HolidayWindow, SwitchAuditEntry, EscalationAction
from .token import EmergencyAccessToken, AccessLogEntry
from .trigger import TriggerCondition, ExternalSignal, EvaluationSchedule, EvaluationResult
from .release import AccessGrant, EmergencyOverride
from .audit import AuditLog

__all__ = [
    "Base",
    "DeadManSwitch",
    "HolidayWindow",
    "SwitchAuditEntry",
    "EscalationAction",
    "EmergencyAccessToken",
    "AccessLogEntry",
    "TriggerCondition",
    "ExternalSignal",
    "EvaluationSchedule",
    "EvaluationResult",
    "AccessGrant",
    "EmergencyOverride",
    "AuditLog"
]
