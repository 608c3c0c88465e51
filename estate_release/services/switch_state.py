"""
Dead man's switch state machine.

Pure functions over switch data: how much inactivity time counts, which
state that time leads to, and whether a holiday window may be added.
Persistence and side effects live in the switch service and the monitor.
"""
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from estate_release.schemas.switch import EscalationStage, SwitchConfig, SwitchState
from estate_release.services.errors import InvalidConfiguration

# states the monitor evaluates on every tick
MONITORED_STATES = (SwitchState.ARMED, SwitchState.WARNING, SwitchState.GRACE)


def _merged(windows: Iterable[Tuple[datetime, datetime]]) -> List[Tuple[datetime, datetime]]:
    merged: List[Tuple[datetime, datetime]] = []
    for start, end in sorted(windows):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def effective_elapsed(last_check_in_at: datetime, now: datetime, windows: Iterable) -> timedelta:
    """
    Time since the last check-in minus the part of it covered by holiday
    windows. ``windows`` holds objects with ``start``/``end`` attributes or
    ``(start, end)`` tuples.
    """
    if now <= last_check_in_at:
        return timedelta(0)

    spans = []
    for window in windows:
        start, end = (window.start, window.end) if hasattr(window, "start") else window
        spans.append((start, end))

    excluded = timedelta(0)
    for start, end in _merged(spans):
        overlap_start = max(start, last_check_in_at)
        overlap_end = min(end, now)
        if overlap_end > overlap_start:
            excluded += overlap_end - overlap_start

    return (now - last_check_in_at) - excluded


def escalation_plan(
    config: SwitchConfig,
    default_stages: Optional[Sequence[EscalationStage]] = None,
) -> Tuple[float, List[EscalationStage]]:
    """
    Warning threshold and escalation stages (hours) in force for a switch.
    Monitor-wide default stages apply only to switches without their own.
    """
    if config.escalation_stages or not default_stages:
        return config.resolved_warning_threshold(), config.resolved_stages()

    stages = sorted(default_stages, key=lambda s: s.delay_hours)
    warning = min(config.resolved_warning_threshold(), stages[0].delay_hours)
    return warning, list(stages)


def next_state(state: SwitchState, elapsed_hours: float, warning_hours: float,
               stages: Sequence[EscalationStage]) -> SwitchState:
    """One step of the time-driven transitions; never moves backwards"""
    if state == SwitchState.ARMED and elapsed_hours >= warning_hours:
        return SwitchState.WARNING
    if state == SwitchState.WARNING and elapsed_hours >= stages[0].delay_hours:
        return SwitchState.GRACE
    if state == SwitchState.GRACE and elapsed_hours >= stages[-1].delay_hours:
        return SwitchState.TRIGGERED
    return state


def transitions(state: SwitchState, elapsed_hours: float, warning_hours: float,
                stages: Sequence[EscalationStage]) -> List[SwitchState]:
    """Every state entered, in order, when ``elapsed_hours`` have passed"""
    entered = []
    current = state
    while True:
        target = next_state(current, elapsed_hours, warning_hours, stages)
        if target == current:
            return entered
        entered.append(target)
        current = target


def due_grace_stages(elapsed_hours: float, stages: Sequence[EscalationStage]) -> List[int]:
    """Indexes of the intermediate stages (neither first nor final) already reached"""
    return [
        index for index, stage in enumerate(stages)
        if 0 < index < len(stages) - 1 and elapsed_hours >= stage.delay_hours
    ]


def validate_holiday_window(start: datetime, end: datetime, now: datetime, max_days: int,
                            existing: Iterable) -> None:
    if start >= end:
        raise InvalidConfiguration("holiday window must end after it starts")
    if start < now:
        raise InvalidConfiguration("holiday window cannot start in the past")
    if end - start > timedelta(days=max_days):
        raise InvalidConfiguration(f"holiday window cannot exceed {max_days} days")
    for window in existing:
        if start < window.end and window.start < end:
            raise InvalidConfiguration("holiday window overlaps an existing window")
