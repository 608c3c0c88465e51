from .switch import SwitchConfig, SwitchResponse, SwitchState, CheckInMethod, CheckInResponse
from .monitor import MonitorStatus, MonitorStats, TickSummary
from .trigger import EvaluationFrequency, EvaluationResultResponse, ScheduleResponse
from .token import AccessLevel, TokenType, IssuedTokenResponse, TokenValidationResponse

__all__ = [
    "SwitchConfig",
    "SwitchResponse",
    "SwitchState",
    "CheckInMethod",
    "CheckInResponse",
    "MonitorStatus",
    "MonitorStats",
    "TickSummary",
    "EvaluationFrequency",
    "EvaluationResultResponse",
    "ScheduleResponse",
    "AccessLevel",
    "TokenType",
    "IssuedTokenResponse",
    "TokenValidationResponse"
]
