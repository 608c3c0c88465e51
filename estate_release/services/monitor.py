"""
Dead man's switch monitor

Every tick evaluates each armed, warning or grace switch, commits the state
transitions its inactivity calls for, and then carries out the escalation
actions owed for the switch's current cycle (notifications and the release
plan). Actions are recorded before they run, so a failed delivery is simply
picked up again on the next tick and nothing runs twice for one cycle.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from estate_release.database import utcnow
from estate_release.models.switch import DeadManSwitch, EscalationAction, SwitchAuditEntry
from estate_release.schemas.monitor import MonitorConfigUpdate, MonitorHealth, MonitorStats, MonitorStatus, TickSummary
from estate_release.schemas.switch import EscalationAction as StageAction
from estate_release.schemas.switch import EscalationStage, SwitchConfig, SwitchState
from estate_release.services.audit import AuditLogger
from estate_release.services.errors import TransientDeliveryFailure
from estate_release.services.locks import KeyedLock
from estate_release.services.switch_state import (
    MONITORED_STATES,
    due_grace_stages,
    effective_elapsed,
    escalation_plan,
    transitions,
)

logger = logging.getLogger(__name__)

JOB_ID = "dead_man_switch_monitor"
HEALTH_JOB_ID = "dead_man_switch_monitor_health"
MAX_COMMIT_RETRIES = 3
DURATION_ALPHA = 0.1
CONSECUTIVE_ERROR_ALERT = 5
STALE_SUCCESS_INTERVALS = 2
MAX_HEALTHY_ERROR_RATE = 0.2

TRANSITION_REASONS = {
    SwitchState.WARNING: "inactivity_warning",
    SwitchState.GRACE: "grace_period_started",
    SwitchState.TRIGGERED: "switch_triggered",
}


@dataclass
class _SwitchOutcome:
    evaluated: bool = False
    triggered: bool = False
    transitions: int = 0
    completed: int = 0
    failed: int = 0
    error: bool = False


class DeadManSwitchMonitor:
    def __init__(self, session_factory: Callable[[], Session], notifier, release, audit: AuditLogger,
                 locks: KeyedLock, clock: Callable[[], datetime] = utcnow,
                 tick_seconds: int = 3600, max_workers: int = 1, health_check_seconds: int = 300,
                 auto_recovery: bool = True, alert_on_errors: bool = True):
        self.session_factory = session_factory
        self.notifier = notifier
        self.release = release
        self.audit = audit
        self.locks = locks
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.max_workers = max_workers
        self.health_check_seconds = health_check_seconds
        self.auto_recovery = auto_recovery
        self.alert_on_errors = alert_on_errors
        self.default_stages: Optional[List[EscalationStage]] = None

        self.running = False
        self.started_at: Optional[datetime] = None
        self.last_check_at: Optional[datetime] = None
        self.switches_evaluated = 0
        self.switches_triggered = 0
        self.stats = MonitorStats()

        self._scheduler = BackgroundScheduler()
        self._loop_lock = threading.Lock()
        self._state_lock = threading.Lock()

    # ---------- lifecycle ----------

    def start(self) -> MonitorStatus:
        with self._state_lock:
            if self.running:
                logger.warning("Dead man's switch monitor is already running")
                return self.status()

            self._scheduler.add_job(
                self._scheduled_tick,
                IntervalTrigger(seconds=self.tick_seconds),
                id=JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True
            )
            self._scheduler.add_job(
                self._scheduled_health_check,
                IntervalTrigger(seconds=self.health_check_seconds),
                id=HEALTH_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True
            )
            if not self._scheduler.running:
                self._scheduler.start()
            self.running = True
            self.started_at = self.clock()

        self._audit("monitor_started", details={
            "tick_seconds": self.tick_seconds,
            "health_check_seconds": self.health_check_seconds
        })
        logger.info(f"Dead man's switch monitor started (interval: {self.tick_seconds}s)")
        return self.status()

    def stop(self) -> MonitorStatus:
        with self._state_lock:
            if not self.running:
                return self.status()
            for job_id in (JOB_ID, HEALTH_JOB_ID):
                if self._scheduler.get_job(job_id):
                    self._scheduler.remove_job(job_id)
            self.running = False

        self._audit("monitor_stopped")
        logger.info("Dead man's switch monitor stopped")
        return self.status()

    def shutdown(self):
        self.stop()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def status(self) -> MonitorStatus:
        return MonitorStatus(
            running=self.running,
            last_check_at=self.last_check_at,
            next_check_at=self._next_run_time(),
            switches_evaluated=self.switches_evaluated,
            switches_triggered=self.switches_triggered,
            tick_seconds=self.tick_seconds,
            stats=self.stats.model_copy(),
        )

    def update_config(self, update: MonitorConfigUpdate) -> MonitorStatus:
        """New values apply from the next evaluation on"""
        changes: Dict[str, Any] = {}
        with self._state_lock:
            if update.tick_seconds and update.tick_seconds != self.tick_seconds:
                self.tick_seconds = update.tick_seconds
                changes["tick_seconds"] = update.tick_seconds
                if self._scheduler.get_job(JOB_ID):
                    self._scheduler.reschedule_job(JOB_ID, trigger=IntervalTrigger(seconds=self.tick_seconds))
            if update.max_workers:
                self.max_workers = update.max_workers
                changes["max_workers"] = update.max_workers
            if update.default_escalation_stages is not None:
                self.default_stages = list(update.default_escalation_stages) or None
                changes["default_escalation_stages"] = [
                    s.model_dump(mode="json") for s in update.default_escalation_stages
                ]

        if changes:
            self._audit("monitor_config_updated", details=changes)
            logger.info(f"Monitor configuration updated: {list(changes)}")
        return self.status()

    def force_check(self) -> TickSummary:
        """Run one pass right away, serialized with the scheduled ticks"""
        return self._run_pass()

    def _next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(JOB_ID) if self.running else None
        if not job or not job.next_run_time:
            return None
        return job.next_run_time.astimezone(timezone.utc).replace(tzinfo=None)

    def _scheduled_tick(self):
        try:
            self._run_pass()
        except Exception as e:
            logger.error(f"Dead man's switch monitor tick failed: {str(e)}")

    def _audit(self, action: str, details: Optional[Dict[str, Any]] = None,
               result: str = "success", risk_level: str = "low"):
        self.audit.append_audit_log({
            "action": action,
            "actor": "monitor",
            "result": result,
            "risk_level": risk_level,
            "details": details or {}
        })

    # ---------- health ----------

    def health_check(self) -> MonitorHealth:
        """
        Flags a running monitor whose last successful pass is more than two
        intervals old (or that has not succeeded since it started), and an
        overall error rate above 20%.
        """
        now = self.clock()
        stats = self.stats
        last_success = stats.last_success_at or self.started_at
        age = (now - last_success).total_seconds() if last_success else None

        issues = []
        if self.running and age is not None and age > STALE_SUCCESS_INTERVALS * self.tick_seconds:
            issues.append("stale_success")
        if stats.error_rate > MAX_HEALTHY_ERROR_RATE:
            issues.append("high_error_rate")
        if issues:
            logger.warning(
                f"Dead man's switch monitor unhealthy: {', '.join(issues)} "
                f"(error rate {stats.error_rate:.0%}, last success {age}s ago)"
            )

        return MonitorHealth(
            healthy=not issues,
            running=self.running,
            uptime=stats.uptime,
            consecutive_errors=stats.consecutive_errors,
            error_rate=stats.error_rate,
            last_success_age_seconds=age,
            issues=issues,
        )

    def _scheduled_health_check(self):
        try:
            health = self.health_check()
            if "stale_success" in health.issues and self.auto_recovery:
                self._attempt_auto_recovery("stale_success")
        except Exception as e:
            logger.error(f"Dead man's switch monitor health check failed: {str(e)}")

    def _handle_critical_error(self):
        errors = self.stats.consecutive_errors
        logger.critical(f"Dead man's switch monitor failed {errors} passes in a row")
        try:
            self._audit("monitor_critical_error", result="failure", risk_level="critical", details={
                "consecutive_errors": errors,
                "error_rate": self.stats.error_rate,
                "last_error_at": self.stats.last_error_at.isoformat() if self.stats.last_error_at else None
            })
            if self.alert_on_errors:
                self._send_critical_alert(errors)
        except Exception as e:
            logger.error(f"Could not record the monitor's critical state: {str(e)}")

        if self.auto_recovery:
            self._attempt_auto_recovery("consecutive_errors")

    def _send_critical_alert(self, errors: int):
        logger.critical(f"ALERT: dead man's switch monitor needs attention ({errors} consecutive failures)")
        self._audit("monitor_alert_sent", risk_level="critical", details={
            "severity": "critical",
            "consecutive_errors": errors,
            "uptime": self.stats.uptime
        })

    def _attempt_auto_recovery(self, reason: str) -> bool:
        """Restart the schedule if it was running, then run one pass"""
        logger.warning(f"Attempting dead man's switch monitor auto-recovery ({reason})")
        was_running = self.running
        self.stats.consecutive_errors = 0
        try:
            if was_running:
                self.stop()
                self.start()
            self.force_check()
            recovered = self.stats.consecutive_errors == 0
        except Exception as e:
            logger.error(f"Monitor auto-recovery failed: {str(e)}")
            recovered = False

        try:
            self._audit(
                "monitor_auto_recovery",
                result="success" if recovered else "failure",
                risk_level="high",
                details={"reason": reason, "success": recovered, "restarted": was_running}
            )
        except Exception as e:
            logger.error(f"Could not record monitor auto-recovery: {str(e)}")
        if recovered:
            logger.info("Dead man's switch monitor recovered")
        return recovered

    # ---------- evaluation pass ----------

    def _run_pass(self) -> TickSummary:
        try:
            with self._loop_lock:
                return self._evaluate_due_switches()
        finally:
            if self.stats.consecutive_errors == CONSECUTIVE_ERROR_ALERT:
                self._handle_critical_error()

    def _evaluate_due_switches(self) -> TickSummary:
        started = time.perf_counter()
        now = self.clock()
        summary = TickSummary(started_at=now, duration_ms=0)
        try:
            switch_ids = self._due_switch_ids()
            if self.max_workers > 1 and len(switch_ids) > 1:
                with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                    outcomes = list(pool.map(lambda sid: self._process_switch(sid, now), switch_ids))
            else:
                outcomes = [self._process_switch(sid, now) for sid in switch_ids]
        except Exception as e:
            summary.duration_ms = (time.perf_counter() - started) * 1000
            self._record_pass(summary, success=False)
            logger.error(f"Dead man's switch check failed: {str(e)}")
            self._audit("monitor_check_failed", result="failure", risk_level="high", details={"error": str(e)})
            raise

        for outcome in outcomes:
            summary.switches_evaluated += int(outcome.evaluated)
            summary.switches_triggered += int(outcome.triggered)
            summary.transitions += outcome.transitions
            summary.actions_completed += outcome.completed
            summary.actions_failed += outcome.failed
            summary.errors += int(outcome.error)

        summary.duration_ms = (time.perf_counter() - started) * 1000
        self.last_check_at = now
        self.switches_evaluated += summary.switches_evaluated
        self.switches_triggered += summary.switches_triggered
        self._record_pass(summary, success=summary.errors == 0)

        if summary.transitions or summary.errors or summary.actions_failed:
            logger.info(
                f"Monitor pass: {summary.switches_evaluated} evaluated, {summary.transitions} transitions, "
                f"{summary.switches_triggered} triggered, {summary.actions_failed} failed actions"
            )
        return summary

    def _record_pass(self, summary: TickSummary, success: bool):
        stats = self.stats
        stats.total_checks += 1
        if success:
            stats.successful_checks += 1
            stats.consecutive_errors = 0
            stats.last_success_at = summary.started_at
        else:
            stats.failed_checks += 1
            stats.consecutive_errors += 1
            stats.last_error_at = summary.started_at

        if stats.total_checks == 1:
            stats.average_check_duration_ms = summary.duration_ms
        else:
            stats.average_check_duration_ms = (
                DURATION_ALPHA * summary.duration_ms
                + (1 - DURATION_ALPHA) * stats.average_check_duration_ms
            )
        stats.error_rate = stats.failed_checks / stats.total_checks
        stats.uptime = stats.successful_checks / stats.total_checks * 100

    def _due_switch_ids(self) -> List[str]:
        """Switches to evaluate plus those still owing actions for their current cycle"""
        db = self.session_factory()
        try:
            active = (
                db.query(DeadManSwitch.id)
                .filter(DeadManSwitch.state.in_([s.value for s in MONITORED_STATES]))
                .all()
            )
            owed = (
                db.query(EscalationAction.switch_id)
                .join(DeadManSwitch, DeadManSwitch.id == EscalationAction.switch_id)
                .filter(
                    EscalationAction.status != "done",
                    EscalationAction.cycle == DeadManSwitch.cycle,
                    DeadManSwitch.state != SwitchState.DISABLED.value
                )
                .distinct()
                .all()
            )
            return sorted({row[0] for row in active} | {row[0] for row in owed})
        finally:
            db.close()

    def _process_switch(self, switch_id: str, now: datetime) -> _SwitchOutcome:
        outcome = _SwitchOutcome()
        try:
            self._advance(switch_id, now, outcome)
            self._execute_pending(switch_id, outcome)
        except Exception as e:
            outcome.error = True
            logger.exception(f"Error evaluating switch {switch_id}: {e}")
        return outcome

    # ---------- phase 1: transitions ----------

    def _advance(self, switch_id: str, now: datetime, outcome: _SwitchOutcome):
        with self.locks.hold(switch_id):
            for attempt in range(1, MAX_COMMIT_RETRIES + 1):
                db = self.session_factory()
                try:
                    evaluated, entered = self._apply_transitions(db, switch_id, now)
                except (StaleDataError, IntegrityError):
                    # a check-in or another worker got there first
                    db.rollback()
                    logger.info(f"Switch {switch_id} changed during evaluation, re-reading (attempt {attempt})")
                    continue
                finally:
                    db.close()

                outcome.evaluated = evaluated
                outcome.transitions = len(entered)
                outcome.triggered = SwitchState.TRIGGERED in entered
                return

        logger.warning(f"Gave up evaluating switch {switch_id} after {MAX_COMMIT_RETRIES} attempts")

    def _apply_transitions(self, db: Session, switch_id: str, now: datetime):
        switch = db.get(DeadManSwitch, switch_id)
        if switch is None or SwitchState(switch.state) not in MONITORED_STATES:
            return False, []

        config = SwitchConfig.model_validate(switch.config)
        warning_hours, stages = escalation_plan(config, self.default_stages)
        elapsed_hours = effective_elapsed(switch.last_check_in_at, now, switch.holiday_windows).total_seconds() / 3600

        current = SwitchState(switch.state)
        entered = transitions(current, elapsed_hours, warning_hours, stages)
        details = {"effective_elapsed_hours": round(elapsed_hours, 3), "cycle": switch.cycle}

        previous = current
        for state in entered:
            db.add(SwitchAuditEntry(
                switch_id=switch.id,
                timestamp=now,
                from_state=previous.value,
                to_state=state.value,
                reason=TRANSITION_REASONS[state],
                actor="monitor",
                details=details
            ))
            self._queue_for_state(db, switch, state, config, stages)
            previous = state

        final = entered[-1] if entered else current
        if final == SwitchState.GRACE:
            for index in due_grace_stages(elapsed_hours, stages):
                self._queue_stage_notice(db, switch, stages, index)

        if entered:
            switch.state = final.value
            logger.info(f"Switch {switch.id}: {current.value} -> {final.value} after {elapsed_hours:.1f}h")
        if final == SwitchState.TRIGGERED and entered:
            self.audit.record(
                "dead_man_switch_triggered",
                actor="monitor",
                risk_level="critical",
                details={"switch_id": switch.id, "owner_id": switch.owner_id, **details},
                session=db
            )
            logger.warning(f"Dead man's switch {switch.id} TRIGGERED for owner {switch.owner_id}")

        db.commit()
        return True, entered

    def _queue(self, db: Session, switch: DeadManSwitch, key: str, payload: Dict[str, Any]):
        exists = (
            db.query(EscalationAction.id)
            .filter(
                EscalationAction.switch_id == switch.id,
                EscalationAction.cycle == switch.cycle,
                EscalationAction.action_key == key
            )
            .first()
        )
        if exists:
            return
        db.add(EscalationAction(
            switch_id=switch.id,
            cycle=switch.cycle,
            action_key=key,
            status="pending",
            attempts=0,
            payload=payload,
            created_at=self.clock()
        ))

    def _notice(self, switch: DeadManSwitch, recipients: List[str], template: str,
                extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = {"switch_id": switch.id, "owner_id": switch.owner_id, "cycle": switch.cycle}
        context.update(extra or {})
        return {"kind": "notification", "recipients": recipients, "template": template, "context": context}

    def _queue_stage_notice(self, db: Session, switch: DeadManSwitch, stages: List[EscalationStage], index: int):
        stage = stages[index]
        if stage.action == StageAction.NOTIFY_OWNER:
            recipients = [switch.owner_id] + [r for r in stage.recipients if r != switch.owner_id]
        else:
            recipients = list(stage.recipients)
        if not recipients:
            return
        template = "release_notice" if stage.action == StageAction.RELEASE else f"escalation_{stage.action.value}"
        self._queue(db, switch, f"notify:stage:{index}", self._notice(
            switch, recipients, template, {"stage": index, "delay_hours": stage.delay_hours}
        ))

    def _queue_for_state(self, db: Session, switch: DeadManSwitch, state: SwitchState,
                         config: SwitchConfig, stages: List[EscalationStage]):
        if state == SwitchState.WARNING:
            recipients = config.warning_recipients or [switch.owner_id]
            self._queue(db, switch, "notify:warning", self._notice(
                switch, recipients, "check_in_warning", {"deadline_hours": stages[0].delay_hours}
            ))
        elif state == SwitchState.GRACE:
            self._queue_stage_notice(db, switch, stages, 0)
        elif state == SwitchState.TRIGGERED:
            if len(stages) > 1:
                self._queue_stage_notice(db, switch, stages, len(stages) - 1)
            reason = f"Dead man's switch {switch.id} triggered"
            for index, grant in enumerate(config.release.grants):
                self._queue(db, switch, f"grant:{index}", {
                    "kind": "grant", "reason": reason, **grant.model_dump(mode="json")
                })
            if config.release.emergency_override:
                self._queue(db, switch, "override", {
                    "kind": "override", "reason": reason,
                    **config.release.emergency_override.model_dump(mode="json")
                })

    # ---------- phase 2: side effects ----------

    def _execute_pending(self, switch_id: str, outcome: _SwitchOutcome):
        db = self.session_factory()
        try:
            switch = db.get(DeadManSwitch, switch_id)
            if switch is None or switch.state in (SwitchState.DISABLED.value, SwitchState.ARMED.value):
                return

            actions = (
                db.query(EscalationAction)
                .filter(
                    EscalationAction.switch_id == switch.id,
                    EscalationAction.cycle == switch.cycle,
                    EscalationAction.status != "done"
                )
                .order_by(EscalationAction.id.asc())
                .all()
            )
            for action in actions:
                state = switch.state
                action.attempts = (action.attempts or 0) + 1
                try:
                    external_id = self._perform(switch, action)
                except TransientDeliveryFailure as e:
                    action.status = "failed"
                    action.last_error = e.message
                    db.add(SwitchAuditEntry(
                        switch_id=switch.id,
                        timestamp=self.clock(),
                        from_state=state,
                        to_state=state,
                        reason="escalation_action_failed",
                        actor="monitor",
                        result="warning",
                        details={"action": action.action_key, "attempts": action.attempts, "error": e.message}
                    ))
                    db.commit()
                    outcome.failed += 1
                    logger.warning(f"Action {action.action_key} for switch {switch_id} failed, retrying next tick")
                    continue

                action.status = "done"
                action.external_id = external_id
                action.last_error = None
                action.completed_at = self.clock()
                db.add(SwitchAuditEntry(
                    switch_id=switch.id,
                    timestamp=self.clock(),
                    from_state=state,
                    to_state=state,
                    reason="escalation_action_completed",
                    actor="monitor",
                    details={"action": action.action_key, "attempts": action.attempts, "external_id": external_id}
                ))
                db.commit()
                outcome.completed += 1
        finally:
            db.close()

    def _perform(self, switch: DeadManSwitch, action: EscalationAction) -> Optional[str]:
        payload = action.payload or {}
        kind = payload.get("kind")

        if kind == "notification":
            delivered = self.notifier.deliver_notification(
                payload["recipients"], payload["template"], payload.get("context", {})
            )
            if not delivered:
                raise TransientDeliveryFailure("notification provider reported a failed delivery")
            return None

        if kind == "grant":
            return self.release.create_time_delayed_access_grant(
                beneficiary_id=payload["beneficiary_id"],
                resource_type=payload.get("resource_type", "all"),
                resource_id=payload.get("resource_id"),
                delay_hours=payload.get("delay_hours", 0),
                reason=payload["reason"]
            )

        if kind == "override":
            return self.release.create_emergency_override(
                triggered_by=f"dead_man_switch:{switch.id}",
                reason=payload["reason"],
                override_type=payload["override_type"],
                beneficiary_id=payload.get("beneficiary_id"),
                expiration_hours=payload["expiration_hours"]
            )

        raise ValueError(f"unknown escalation action {action.action_key}")
