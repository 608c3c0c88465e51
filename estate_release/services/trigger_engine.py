"""
Trigger evaluation engine

Evaluates each user's registered trigger conditions against their switch
states and the external signals on record, on a per-user schedule. Results
are appended to the user's evaluation history; deciding what a confidence
score is good enough for is left to the caller.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from estate_release.database import utcnow
from estate_release.models.switch import DeadManSwitch
from estate_release.models.trigger import EvaluationResult, EvaluationSchedule, ExternalSignal, TriggerCondition
from estate_release.schemas.switch import SwitchConfig
from estate_release.schemas.trigger import (
    ConditionStatus,
    EvaluationFrequency,
    EvaluationResultResponse,
    ScheduleResponse,
    SignalCreate,
    RequiredAction,
    SignalResponse,
    TriggerConditionCreate,
    TriggerConditionResponse,
    TriggerPriority,
)
from estate_release.services.action_rules import ActionPlan, ActionRuleRegistry
from estate_release.services.audit import AuditLogger
from estate_release.services.errors import Forbidden, InvalidConfiguration, NotFound, TransientDeliveryFailure
from estate_release.services.rules import (
    EvaluationContext,
    RuleOutcome,
    RuleRegistry,
    SignalSnapshot,
    SwitchSnapshot,
)
from estate_release.services.switch_state import effective_elapsed

logger = logging.getLogger(__name__)

JOB_ID = "trigger_evaluation"
HIGH_CONFIDENCE = 0.8

FREQUENCY_STEPS = {
    EvaluationFrequency.MINUTE: timedelta(minutes=1),
    EvaluationFrequency.HOURLY: timedelta(hours=1),
    EvaluationFrequency.DAILY: timedelta(days=1),
    EvaluationFrequency.WEEKLY: timedelta(weeks=1),
}


def next_run_after(frequency: EvaluationFrequency, from_time: datetime) -> datetime:
    """Realtime schedules are driven by signals, so their next run stays put"""
    return from_time + FREQUENCY_STEPS.get(EvaluationFrequency(frequency), timedelta(0))


def high_confidence(results: List[EvaluationResultResponse],
                    threshold: float = HIGH_CONFIDENCE) -> List[EvaluationResultResponse]:
    return [r for r in results if r.triggered and r.confidence >= threshold]


@dataclass
class _ConditionSnapshot:
    """Condition fields needed after its session is closed"""
    id: int
    user_id: str
    kind: str
    name: str
    parameters: Dict[str, Any]

    @classmethod
    def of(cls, condition: TriggerCondition) -> "_ConditionSnapshot":
        return cls(condition.id, condition.user_id, condition.kind, condition.name, dict(condition.parameters or {}))


class TriggerEvaluationEngine:
    def __init__(self, session_factory: Callable[[], Session], rules: RuleRegistry, notifier,
                 audit: AuditLogger, clock: Callable[[], datetime] = utcnow,
                 tick_seconds: int = 60, history_limit: int = 100, release=None,
                 action_rules: Optional[ActionRuleRegistry] = None):
        self.session_factory = session_factory
        self.rules = rules
        self.action_rules = action_rules or ActionRuleRegistry.with_defaults()
        self.notifier = notifier
        self.release = release
        self.audit = audit
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.history_limit = history_limit
        self._scheduler = BackgroundScheduler()

    # ---------- scheduling ----------

    def start(self):
        if self._scheduler.get_job(JOB_ID):
            return
        self._scheduler.add_job(
            self._scheduled_run,
            IntervalTrigger(seconds=self.tick_seconds),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(f"Trigger evaluation scheduler started (interval: {self.tick_seconds}s)")

    def shutdown(self):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Trigger evaluation scheduler stopped")

    def _scheduled_run(self):
        try:
            self.run_scheduled_evaluations()
        except Exception as e:
            logger.error(f"Error in scheduled trigger evaluation: {str(e)}")

    def run_scheduled_evaluations(self) -> int:
        """Evaluate every enabled user whose next run is due; returns how many ran"""
        now = self.clock()
        db = self.session_factory()
        try:
            due = (
                db.query(EvaluationSchedule.user_id)
                .filter(
                    EvaluationSchedule.enabled == True,
                    EvaluationSchedule.frequency != EvaluationFrequency.REALTIME.value,
                    EvaluationSchedule.next_run_at <= now
                )
                .all()
            )
        finally:
            db.close()

        evaluated = 0
        for (user_id,) in due:
            try:
                self.trigger_evaluation(user_id)
                evaluated += 1
            except Exception as e:
                logger.error(f"Scheduled evaluation for user {user_id} failed: {str(e)}")
        return evaluated

    # ---------- schedules ----------

    def register_user(self, user_id: str, frequency: EvaluationFrequency = EvaluationFrequency.HOURLY,
                      enabled: bool = True) -> ScheduleResponse:
        now = self.clock()
        db = self.session_factory()
        try:
            schedule = db.get(EvaluationSchedule, user_id)
            if schedule is None:
                schedule = EvaluationSchedule(user_id=user_id)
                db.add(schedule)
            schedule.frequency = EvaluationFrequency(frequency).value
            schedule.enabled = enabled
            schedule.next_run_at = now
            schedule.updated_at = now
            db.commit()
            db.refresh(schedule)
            logger.info(f"Evaluation schedule for {user_id}: {schedule.frequency} (enabled={enabled})")
            return ScheduleResponse.model_validate(schedule)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_user_schedule(self, user_id: str) -> ScheduleResponse:
        db = self.session_factory()
        try:
            schedule = db.get(EvaluationSchedule, user_id)
            if schedule is None:
                raise NotFound(f"no evaluation schedule for user {user_id}")
            return ScheduleResponse.model_validate(schedule)
        finally:
            db.close()

    def set_user_evaluation_enabled(self, user_id: str, enabled: bool) -> ScheduleResponse:
        db = self.session_factory()
        try:
            schedule = db.get(EvaluationSchedule, user_id)
            if schedule is None:
                raise NotFound(f"no evaluation schedule for user {user_id}")
            schedule.enabled = enabled
            schedule.updated_at = self.clock()
            db.commit()
            db.refresh(schedule)
            return ScheduleResponse.model_validate(schedule)
        finally:
            db.close()

    # ---------- trigger conditions ----------

    def register_trigger(self, request: TriggerConditionCreate) -> TriggerConditionResponse:
        if request.kind not in self.rules:
            raise InvalidConfiguration(
                f"unknown trigger kind '{request.kind}', expected one of {self.rules.kinds()}"
            )
        db = self.session_factory()
        try:
            condition = TriggerCondition(
                user_id=request.user_id,
                kind=request.kind,
                name=request.name,
                parameters=request.parameters,
                notify_recipients=request.notify_recipients,
                enabled=request.enabled,
                created_at=self.clock()
            )
            db.add(condition)
            db.commit()
            db.refresh(condition)
            return TriggerConditionResponse.model_validate(condition)
        finally:
            db.close()

    def list_triggers(self, user_id: str) -> List[TriggerConditionResponse]:
        db = self.session_factory()
        try:
            conditions = (
                db.query(TriggerCondition)
                .filter(TriggerCondition.user_id == user_id)
                .order_by(TriggerCondition.id.asc())
                .all()
            )
            return [TriggerConditionResponse.model_validate(c) for c in conditions]
        finally:
            db.close()

    def remove_trigger(self, trigger_id: int, user_id: str) -> None:
        db = self.session_factory()
        try:
            condition = db.get(TriggerCondition, trigger_id)
            if condition is None:
                raise NotFound(f"trigger {trigger_id} not found")
            if condition.user_id != user_id:
                raise Forbidden(f"trigger {trigger_id} belongs to another user")
            db.delete(condition)
            db.commit()
        finally:
            db.close()

    # ---------- signals ----------

    def record_signal(self, request: SignalCreate) -> SignalResponse:
        db = self.session_factory()
        try:
            signal = ExternalSignal(
                user_id=request.user_id,
                source=request.source.value,
                signal_type=request.signal_type,
                severity=request.severity.value if request.severity else None,
                status=request.status.value,
                verified=request.verified,
                payload=request.payload,
                received_at=self.clock()
            )
            db.add(signal)
            db.commit()
            db.refresh(signal)
            response = SignalResponse.model_validate(signal)
            schedule = db.get(EvaluationSchedule, request.user_id)
            realtime = (
                schedule is not None and schedule.enabled
                and schedule.frequency == EvaluationFrequency.REALTIME.value
            )
        finally:
            db.close()

        logger.info(f"Signal {request.source.value}/{request.signal_type} recorded for {request.user_id}")
        if realtime:
            self.trigger_evaluation(request.user_id)
        return response

    # ---------- evaluation ----------

    def _build_context(self, db: Session, user_id: str, now: datetime) -> EvaluationContext:
        switches = []
        for switch in db.query(DeadManSwitch).filter(DeadManSwitch.owner_id == user_id).all():
            config = SwitchConfig.model_validate(switch.config)
            elapsed = effective_elapsed(switch.last_check_in_at, now, switch.holiday_windows)
            switches.append(SwitchSnapshot(
                switch_id=switch.id,
                state=switch.state,
                last_check_in_at=switch.last_check_in_at,
                effective_elapsed_hours=elapsed.total_seconds() / 3600,
                check_in_interval_hours=config.check_in_interval_hours
            ))

        signals = [
            SignalSnapshot(
                signal_id=s.id,
                source=s.source,
                signal_type=s.signal_type,
                severity=s.severity,
                status=s.status,
                verified=bool(s.verified),
                payload=s.payload or {},
                received_at=s.received_at
            )
            for s in db.query(ExternalSignal).filter(ExternalSignal.user_id == user_id).all()
        ]
        return EvaluationContext(user_id=user_id, now=now, switches=switches, signals=signals)

    def _evaluate_rule(self, condition: TriggerCondition, context: EvaluationContext) -> RuleOutcome:
        rule = self.rules.get(condition.kind)
        if rule is None:
            return RuleOutcome.no_match("unknown_trigger_kind")
        try:
            return rule.evaluate(context, condition.parameters or {})
        except Exception as e:
            logger.exception(f"Error evaluating trigger {condition.id} ({condition.kind}): {e}")
            return RuleOutcome.no_match("evaluation_error", error=str(e))

    def trigger_evaluation(self, user_id: str) -> List[EvaluationResultResponse]:
        """Evaluate every enabled condition of the user now"""
        now = self.clock()
        db = self.session_factory()
        try:
            context = self._build_context(db, user_id, now)
            conditions = (
                db.query(TriggerCondition)
                .filter(TriggerCondition.user_id == user_id, TriggerCondition.enabled == True)
                .order_by(TriggerCondition.id.asc())
                .all()
            )

            rows = []
            notify_plan = []
            action_plan = []
            for condition in conditions:
                outcome = self._evaluate_rule(condition, context)
                confidence = max(0.0, min(outcome.confidence, 1.0))
                plan = self.action_rules.plan({
                    "kind": condition.kind,
                    "name": condition.name,
                    "priority": condition.priority,
                    "parameters": condition.parameters or {},
                    "triggered": outcome.triggered,
                    "confidence": confidence,
                    "reason_codes": outcome.reason_codes,
                    "details": outcome.details,
                })
                row = EvaluationResult(
                    user_id=user_id,
                    trigger_id=condition.id,
                    trigger_kind=condition.kind,
                    triggered=outcome.triggered,
                    confidence=confidence,
                    reason_codes=outcome.reason_codes,
                    required_actions=[a.value for a in plan.actions],
                    details=outcome.details,
                    evaluated_at=now
                )
                db.add(row)
                rows.append(row)
                if outcome.triggered and condition.notify_recipients:
                    notify_plan.append((len(rows) - 1, list(condition.notify_recipients), condition.name))
                if outcome.triggered and condition.status != ConditionStatus.TRIGGERED.value:
                    self._mark_triggered(db, condition, plan, now)
                    action_plan.append((len(rows) - 1, _ConditionSnapshot.of(condition), plan))

            schedule = db.get(EvaluationSchedule, user_id)
            if schedule is not None:
                schedule.last_run_at = now
                schedule.next_run_at = next_run_after(schedule.frequency, now)

            self.audit.record(
                "trigger_evaluation_completed",
                actor="trigger_engine",
                details={
                    "user_id": user_id,
                    "evaluated": len(rows),
                    "triggered": [r.trigger_id for r in rows if r.triggered]
                },
                session=db
            )
            db.commit()
            results = [EvaluationResultResponse.model_validate(r) for r in rows]
            self._prune_history(db, user_id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        for index, recipients, name in notify_plan:
            self._notify(recipients, name, results[index])
        for index, condition, plan in action_plan:
            self._execute_actions(condition, plan, results[index])

        triggered = sum(1 for r in results if r.triggered)
        if triggered:
            logger.warning(f"{triggered} trigger(s) matched for user {user_id}")
        return results

    def _mark_triggered(self, db: Session, condition: TriggerCondition, plan: ActionPlan, now: datetime):
        condition.status = ConditionStatus.TRIGGERED.value
        condition.triggered_at = now
        if RequiredAction.ESCALATE in plan.actions:
            condition.priority = TriggerPriority.CRITICAL.value
        self.audit.record(
            "trigger_condition_triggered",
            actor="trigger_engine",
            risk_level="high",
            details={
                "user_id": condition.user_id,
                "trigger_id": condition.id,
                "kind": condition.kind,
                "rules": plan.rule_ids,
                "actions": [a.value for a in plan.actions]
            },
            session=db
        )

    def _deliver(self, recipients: List[str], template: str, payload: Dict[str, Any], trigger_id: int) -> bool:
        try:
            delivered = self.notifier.deliver_notification(recipients, template, payload)
        except TransientDeliveryFailure as e:
            logger.warning(f"Could not deliver {template} for trigger {trigger_id}: {e.message}")
            return False
        if delivered is False:
            logger.warning(f"Notification provider reported a failed {template} delivery for trigger {trigger_id}")
            return False
        return True

    def _notify(self, recipients: List[str], trigger_name: str, result: EvaluationResultResponse):
        self._deliver(
            recipients,
            "trigger_activated",
            {
                "user_id": result.user_id,
                "trigger_id": result.trigger_id,
                "trigger_name": trigger_name,
                "trigger_kind": result.trigger_kind,
                "confidence": result.confidence,
                "reason_codes": result.reason_codes
            },
            result.trigger_id
        )

    def _execute_actions(self, condition: "_ConditionSnapshot", plan: ActionPlan,
                         result: EvaluationResultResponse):
        """Side effects of a condition entering the triggered status; escalation is already stored"""
        failures = []
        summary = {
            "trigger_id": condition.id,
            "trigger_name": condition.name,
            "trigger_kind": condition.kind,
            "confidence": result.confidence,
            "reason_codes": result.reason_codes
        }
        for action in plan.actions:
            if action == RequiredAction.GRANT_ACCESS:
                failures.extend(self._grant_access(condition, plan, result))
            elif action == RequiredAction.NOTIFY_CONTACTS:
                contacts = list(condition.parameters.get("emergency_contacts", []))
                if contacts and not self._deliver(contacts, "emergency_trigger", summary, condition.id):
                    failures.append(action.value)
            elif action == RequiredAction.REQUEST_VERIFICATION:
                payload = dict(summary, verify_path=f"/verify-trigger/{condition.id}")
                if not self._deliver([condition.user_id], "verification_required", payload, condition.id):
                    failures.append(action.value)

        self.audit.append_audit_log({
            "action": "trigger_actions_executed",
            "actor": "trigger_engine",
            "result": "warning" if failures else "success",
            "risk_level": "high",
            "details": {
                "user_id": condition.user_id,
                "trigger_id": condition.id,
                "actions": [a.value for a in plan.actions],
                "failed": failures
            }
        })

    def _grant_access(self, condition: "_ConditionSnapshot", plan: ActionPlan,
                      result: EvaluationResultResponse) -> List[str]:
        beneficiaries = list(condition.parameters.get("beneficiaries", []))
        if not beneficiaries or self.release is None:
            logger.info(f"Trigger {condition.id} calls for access grants but names no beneficiaries")
            return []

        failed = []
        reason = f"Automatic grant: {condition.name} ({', '.join(result.reason_codes)})"
        for beneficiary_id in beneficiaries:
            try:
                self.release.create_time_delayed_access_grant(
                    beneficiary_id=beneficiary_id,
                    resource_type=condition.parameters.get("resource_type", "all"),
                    resource_id=None,
                    delay_hours=plan.delay_hours,
                    reason=reason
                )
            except TransientDeliveryFailure as e:
                logger.error(f"Access grant for {beneficiary_id} from trigger {condition.id} failed: {e.message}")
                failed.append(f"grant_access:{beneficiary_id}")
        return failed

    def reset_trigger(self, trigger_id: int, user_id: str) -> TriggerConditionResponse:
        """Back to active so a later match runs its actions again"""
        db = self.session_factory()
        try:
            condition = db.get(TriggerCondition, trigger_id)
            if condition is None:
                raise NotFound(f"trigger {trigger_id} not found")
            if condition.user_id != user_id:
                raise Forbidden(f"trigger {trigger_id} belongs to another user")
            condition.status = ConditionStatus.ACTIVE.value
            condition.triggered_at = None
            db.commit()
            db.refresh(condition)
            return TriggerConditionResponse.model_validate(condition)
        finally:
            db.close()

    def _prune_history(self, db: Session, user_id: str):
        stale_ids = [
            row.id for row in
            db.query(EvaluationResult.id)
            .filter(EvaluationResult.user_id == user_id)
            .order_by(EvaluationResult.id.desc())
            .offset(self.history_limit)
            .all()
        ]
        if stale_ids:
            db.query(EvaluationResult).filter(EvaluationResult.id.in_(stale_ids)).delete(synchronize_session=False)
            db.commit()

    def get_evaluation_history(self, user_id: str, limit: int = 50) -> List[EvaluationResultResponse]:
        """Most recent first"""
        db = self.session_factory()
        try:
            rows = (
                db.query(EvaluationResult)
                .filter(EvaluationResult.user_id == user_id)
                .order_by(EvaluationResult.id.desc())
                .limit(limit)
                .all()
            )
            return [EvaluationResultResponse.model_validate(r) for r in rows]
        finally:
            db.close()

    def get_high_confidence_results(self, user_id: str, threshold: float = HIGH_CONFIDENCE,
                                    limit: int = 50) -> List[EvaluationResultResponse]:
        return high_confidence(self.get_evaluation_history(user_id, limit), threshold)

    def summary(self) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            return {
                "scheduled_users": db.query(EvaluationSchedule).count(),
                "enabled_users": db.query(EvaluationSchedule).filter(EvaluationSchedule.enabled == True).count(),
                "trigger_conditions": db.query(TriggerCondition).count(),
                "running": self._scheduler.running,
            }
        finally:
            db.close()
