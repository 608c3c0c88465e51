"""
Trigger rules and the evaluation engine: scoring, schedules, history and
realtime evaluation
"""
import logging
from datetime import timedelta

import pytest

from conftest import T0
from estate_release.schemas.trigger import (
    ConditionStatus,
    EvaluationFrequency,
    EvaluationResultResponse,
    RequiredAction,
    Severity,
    SignalCreate,
    SignalSource,
    SignalStatus,
    TriggerConditionCreate,
    TriggerPriority,
)
from estate_release.services.action_rules import (
    ActionRule,
    ActionRuleRegistry,
    ConditionGroup,
    FieldCondition,
)
from estate_release.services.errors import Forbidden, InvalidConfiguration, NotFound
from estate_release.services.rules import (
    BeneficiaryPetitionRule,
    EvaluationContext,
    InactivityRule,
    LegalDocumentRule,
    ManualOverrideRule,
    MedicalEmergencyRule,
    RuleRegistry,
    SignalSnapshot,
    SwitchSnapshot,
    ThirdPartySignalRule,
    TriggerRule,
)
from estate_release.services.trigger_engine import high_confidence, next_run_after


def signal(source, signal_type="event", severity=None, status="active", verified=False, payload=None, signal_id=1):
    return SignalSnapshot(
        signal_id=signal_id,
        source=source,
        signal_type=signal_type,
        severity=severity,
        status=status,
        verified=verified,
        payload=payload or {},
        received_at=T0,
    )


def context(switches=(), signals=()):
    return EvaluationContext(user_id="owner-1", now=T0, switches=list(switches), signals=list(signals))


def switch_snapshot(elapsed_hours, state="armed", interval=48):
    return SwitchSnapshot(
        switch_id="switch-1",
        state=state,
        last_check_in_at=T0 - timedelta(hours=elapsed_hours),
        effective_elapsed_hours=elapsed_hours,
        check_in_interval_hours=interval,
    )


def condition(kind, name=None, **kwargs):
    return TriggerConditionCreate(user_id="owner-1", kind=kind, name=name or kind, **kwargs)


# ---------- rules ----------

def test_inactivity_confidence_grows_per_overdue_day():
    rule = InactivityRule()
    outcome = rule.evaluate(context([switch_snapshot(24 * 5)]), {})
    assert outcome.triggered
    assert outcome.confidence == pytest.approx(0.8)
    assert outcome.reason_codes == ["check_in_overdue"]

    capped = rule.evaluate(context([switch_snapshot(24 * 30, state="triggered")]), {})
    assert capped.confidence == 1.0
    assert "switch_triggered" in capped.reason_codes


def test_inactivity_ignores_recent_and_disabled_switches():
    rule = InactivityRule()
    assert rule.evaluate(context([switch_snapshot(10)]), {}).reason_codes == ["recent_check_in"]
    assert rule.evaluate(context([switch_snapshot(500, state="disabled")]), {}).reason_codes == ["switch_not_enabled"]
    assert not rule.evaluate(context([switch_snapshot(24 * 3)]), {"min_overdue_days": 2}).triggered


def test_medical_emergency_scoring():
    rule = MedicalEmergencyRule()
    high = rule.evaluate(context(signals=[signal("medical_emergency", severity="high")]), {})
    assert high.triggered and high.confidence == pytest.approx(0.8)

    boosted = rule.evaluate(context(signals=[
        signal("medical_emergency", severity="high", verified=True, payload={"signal_strength": 95})
    ]), {})
    assert boosted.confidence == 1.0
    assert "emergency_verified" in boosted.reason_codes

    resolved = rule.evaluate(context(signals=[signal("medical_emergency", severity="critical", status="resolved")]), {})
    assert not resolved.triggered


def test_legal_documents_need_verification():
    rule = LegalDocumentRule()
    unverified = context(signals=[signal("legal_document", "death_certificate")])
    assert not rule.evaluate(unverified, {}).triggered

    certificate = context(signals=[signal("legal_document", "death_certificate", verified=True)])
    assert rule.evaluate(certificate, {}).confidence == 1.0

    court_order = context(signals=[signal("legal_document", "court_order", verified=True)])
    outcome = rule.evaluate(court_order, {})
    assert outcome.confidence == pytest.approx(0.8)
    assert outcome.details["document_type"] == "court_order"


def test_beneficiary_petitions():
    rule = BeneficiaryPetitionRule()
    approved = context(signals=[signal("beneficiary_petition", status="approved")])
    assert rule.evaluate(approved, {}).confidence == 1.0

    urgent = [
        signal("beneficiary_petition", severity="high", status="pending", signal_id=i)
        for i in range(3)
    ]
    outcome = rule.evaluate(context(signals=urgent), {})
    assert outcome.triggered and outcome.confidence == pytest.approx(0.7)
    assert not rule.evaluate(context(signals=urgent[:2]), {}).triggered


def test_third_party_signals():
    rule = ThirdPartySignalRule()
    notice = context(signals=[signal("third_party", "death_notification", verified=True)])
    assert rule.evaluate(notice, {}).confidence == pytest.approx(0.9)

    corroborating = context(signals=[
        signal("third_party", "obituary_published", verified=True, signal_id=1),
        signal("third_party", "memorial_account_creation", verified=True, signal_id=2),
    ])
    assert rule.evaluate(corroborating, {}).confidence == pytest.approx(0.8)


def test_manual_override_requires_authentication_by_default():
    rule = ManualOverrideRule()
    unauthenticated = context(signals=[signal("manual_override")])
    assert rule.evaluate(unauthenticated, {}).reason_codes == ["override_not_authenticated"]
    assert rule.evaluate(unauthenticated, {"require_authenticated": False}).triggered

    authenticated = context(signals=[signal("manual_override", payload={"authenticated": True})])
    assert rule.evaluate(authenticated, {}).confidence == 1.0


def test_registry_lists_default_kinds():
    registry = RuleRegistry.with_defaults()
    assert registry.kinds() == sorted([
        "inactivity", "medical_emergency", "legal_document",
        "beneficiary_petition", "third_party_signal", "manual_override",
    ])
    assert "inactivity" in registry
    assert registry.get("nope") is None


def test_high_confidence_filter_and_next_run():
    results = [
        EvaluationResultResponse(id=1, user_id="u", trigger_id=1, trigger_kind="inactivity",
                                 triggered=True, confidence=0.9, evaluated_at=T0),
        EvaluationResultResponse(id=2, user_id="u", trigger_id=2, trigger_kind="inactivity",
                                 triggered=True, confidence=0.5, evaluated_at=T0),
        EvaluationResultResponse(id=3, user_id="u", trigger_id=3, trigger_kind="inactivity",
                                 triggered=False, confidence=0.0, evaluated_at=T0),
    ]
    assert [r.id for r in high_confidence(results)] == [1]
    assert next_run_after(EvaluationFrequency.DAILY, T0) == T0 + timedelta(days=1)
    assert next_run_after(EvaluationFrequency.REALTIME, T0) == T0


# ---------- engine ----------

def test_unknown_kind_is_rejected(services):
    with pytest.raises(InvalidConfiguration):
        services.triggers.register_trigger(condition("horoscope"))


def test_remove_trigger_checks_owner(services):
    created = services.triggers.register_trigger(condition("inactivity"))
    with pytest.raises(Forbidden):
        services.triggers.remove_trigger(created.id, "someone-else")
    services.triggers.remove_trigger(created.id, "owner-1")
    assert services.triggers.list_triggers("owner-1") == []
    with pytest.raises(NotFound):
        services.triggers.remove_trigger(created.id, "owner-1")


def test_evaluation_appends_history_even_without_match(services, armed_switch):
    services.triggers.register_trigger(condition("inactivity"))
    services.triggers.register_trigger(condition("legal_document"))

    results = services.triggers.trigger_evaluation("owner-1")
    assert [r.triggered for r in results] == [False, False]
    assert results[0].reason_codes == ["recent_check_in"]

    history = services.triggers.get_evaluation_history("owner-1")
    assert len(history) == 2
    assert services.audit.recent(action="trigger_evaluation_completed")


def test_overdue_switch_triggers_and_notifies(services, armed_switch, clock, notifier):
    services.triggers.register_trigger(condition("inactivity", notify_recipients=["lawyer@example.com"]))
    clock.at(hours=24 * 5)

    [result] = services.triggers.trigger_evaluation("owner-1")
    assert result.triggered
    assert result.confidence == pytest.approx(0.8)
    assert services.triggers.get_high_confidence_results("owner-1")[0].id == result.id

    assert notifier.templates() == ["trigger_activated"]
    assert notifier.sent[0]["recipients"] == ["lawyer@example.com"]
    assert notifier.sent[0]["payload"]["trigger_id"] == result.trigger_id


def test_history_is_pruned_to_limit(services):
    services.triggers.history_limit = 3
    services.triggers.register_trigger(condition("legal_document"))
    for _ in range(5):
        services.triggers.trigger_evaluation("owner-1")

    history = services.triggers.get_evaluation_history("owner-1")
    assert len(history) == 3
    assert history[0].id > history[-1].id


def test_failing_rule_is_recorded_as_error(services):
    class ExplodingRule(TriggerRule):
        kind = "exploding"

        def evaluate(self, context, parameters):
            raise RuntimeError("boom")

    services.triggers.rules.register(ExplodingRule())
    services.triggers.register_trigger(condition("exploding"))
    services.triggers.register_trigger(condition("legal_document"))

    results = services.triggers.trigger_evaluation("owner-1")
    assert results[0].reason_codes == ["evaluation_error"]
    assert results[0].details["error"] == "boom"
    assert len(results) == 2


def test_schedules(services, clock):
    with pytest.raises(NotFound):
        services.triggers.get_user_schedule("owner-1")
    with pytest.raises(NotFound):
        services.triggers.set_user_evaluation_enabled("owner-1", False)

    schedule = services.triggers.register_user("owner-1", EvaluationFrequency.DAILY)
    assert schedule.next_run_at == T0
    assert services.triggers.set_user_evaluation_enabled("owner-1", False).enabled is False


def test_scheduled_runs_respect_next_run_and_enabled(services, clock):
    services.triggers.register_trigger(condition("legal_document"))
    services.triggers.register_user("owner-1", EvaluationFrequency.DAILY)

    assert services.triggers.run_scheduled_evaluations() == 1
    schedule = services.triggers.get_user_schedule("owner-1")
    assert schedule.last_run_at == T0
    assert schedule.next_run_at == T0 + timedelta(days=1)

    clock.at(hours=12)
    assert services.triggers.run_scheduled_evaluations() == 0

    clock.at(hours=25)
    services.triggers.set_user_evaluation_enabled("owner-1", False)
    assert services.triggers.run_scheduled_evaluations() == 0

    services.triggers.set_user_evaluation_enabled("owner-1", True)
    assert services.triggers.run_scheduled_evaluations() == 1


def test_realtime_signal_evaluates_immediately(services, notifier):
    services.triggers.register_user("owner-1", EvaluationFrequency.REALTIME)
    services.triggers.register_trigger(condition("legal_document", notify_recipients=["executor@example.com"]))
    assert services.triggers.run_scheduled_evaluations() == 0

    services.triggers.record_signal(SignalCreate(
        user_id="owner-1",
        source=SignalSource.LEGAL_DOCUMENT,
        signal_type="death_certificate",
        status=SignalStatus.VERIFIED,
        verified=True,
    ))

    [result] = services.triggers.get_evaluation_history("owner-1")
    assert result.triggered and result.confidence == 1.0
    assert notifier.templates() == ["trigger_activated"]


def test_hourly_signal_waits_for_schedule(services):
    services.triggers.register_user("owner-1", EvaluationFrequency.HOURLY)
    services.triggers.register_trigger(condition("medical_emergency"))
    services.triggers.record_signal(SignalCreate(
        user_id="owner-1",
        source=SignalSource.MEDICAL_EMERGENCY,
        signal_type="hospital_admission",
        severity=Severity.CRITICAL,
    ))
    assert services.triggers.get_evaluation_history("owner-1") == []

    services.triggers.run_scheduled_evaluations()
    [result] = services.triggers.get_evaluation_history("owner-1")
    assert result.confidence == 1.0


# ---------- action rules ----------

def medical_fields(**details):
    return {"kind": "medical_emergency", "triggered": True, "reason_codes": [], "details": details}


def test_default_action_rules_match_critical_medical_emergencies():
    registry = ActionRuleRegistry.with_defaults()

    by_severity = registry.plan(medical_fields(severity="critical", alert_type="hospital_admission"))
    assert by_severity.actions == [RequiredAction.GRANT_ACCESS, RequiredAction.NOTIFY_CONTACTS]
    assert by_severity.rule_ids == ["medical-emergency-critical"]

    by_alert = registry.plan(medical_fields(severity="high", alert_type="cardiac_arrest"))
    assert by_alert.rule_ids == ["medical-emergency-critical"]

    assert registry.plan(medical_fields(severity="high", alert_type="hospital_admission")).actions == []

    untriggered = dict(medical_fields(severity="critical"), triggered=False)
    assert registry.plan(untriggered).actions == []


def test_action_rules_run_by_priority_without_duplicates():
    registry = ActionRuleRegistry.with_defaults()
    registry.register(ActionRule(
        id="unless-low",
        name="Anything not low",
        groups=[ConditionGroup("none", [FieldCondition("details.severity", "equals", "low")])],
        actions=[RequiredAction.NOTIFY_CONTACTS, RequiredAction.ESCALATE],
        priority=200,
    ))
    plan = registry.plan(medical_fields(severity="critical"))
    assert plan.rule_ids == ["unless-low", "medical-emergency-critical"]
    assert plan.actions == [RequiredAction.NOTIFY_CONTACTS, RequiredAction.ESCALATE, RequiredAction.GRANT_ACCESS]

    assert registry.plan(medical_fields(severity="low")).rule_ids == []

    with pytest.raises(ValueError):
        FieldCondition("kind", "resembles", "x")


def test_death_certificate_plan_carries_delay():
    plan = ActionRuleRegistry.with_defaults().plan({
        "kind": "legal_document",
        "triggered": True,
        "reason_codes": ["death_certificate_verified"],
        "details": {},
    })
    assert plan.actions == [RequiredAction.TIME_DELAY, RequiredAction.GRANT_ACCESS, RequiredAction.NOTIFY_CONTACTS]
    assert plan.delay_hours == 24

    court_order = ActionRuleRegistry.with_defaults().plan({
        "kind": "legal_document",
        "triggered": True,
        "reason_codes": ["critical_document_verified"],
        "details": {},
    })
    assert court_order.actions == []


# ---------- triggered actions ----------

def critical_medical_signal(services):
    services.triggers.record_signal(SignalCreate(
        user_id="owner-1",
        source=SignalSource.MEDICAL_EMERGENCY,
        signal_type="cardiac_event",
        severity=Severity.CRITICAL,
    ))


def test_critical_medical_trigger_grants_access_and_notifies_contacts(services, notifier):
    services.triggers.register_trigger(condition("medical_emergency", parameters={
        "beneficiaries": ["beneficiary-1", "beneficiary-2"],
        "emergency_contacts": ["sister@example.com"],
    }))
    critical_medical_signal(services)

    [result] = services.triggers.trigger_evaluation("owner-1")
    assert result.required_actions == [RequiredAction.GRANT_ACCESS, RequiredAction.NOTIFY_CONTACTS]

    grants = services.release.list_grants()
    assert sorted(g.beneficiary_id for g in grants) == ["beneficiary-1", "beneficiary-2"]
    assert all(g.delay_hours == 0 and g.reason.startswith("Automatic grant") for g in grants)

    assert notifier.templates() == ["emergency_trigger"]
    assert notifier.sent[0]["recipients"] == ["sister@example.com"]

    [stored] = services.triggers.list_triggers("owner-1")
    assert stored.status == ConditionStatus.TRIGGERED
    assert stored.triggered_at == T0
    assert stored.priority == TriggerPriority.NORMAL
    assert services.audit.recent(action="trigger_condition_triggered")
    assert services.audit.recent(action="trigger_actions_executed")[0].result == "success"


def test_triggered_condition_runs_actions_once_until_reset(services, notifier):
    created = services.triggers.register_trigger(condition("medical_emergency", parameters={
        "beneficiaries": ["beneficiary-1"],
        "emergency_contacts": ["sister@example.com"],
    }))
    critical_medical_signal(services)

    services.triggers.trigger_evaluation("owner-1")
    [again] = services.triggers.trigger_evaluation("owner-1")
    assert again.triggered
    assert again.required_actions == [RequiredAction.GRANT_ACCESS, RequiredAction.NOTIFY_CONTACTS]
    assert len(services.release.list_grants()) == 1
    assert notifier.templates() == ["emergency_trigger"]

    with pytest.raises(Forbidden):
        services.triggers.reset_trigger(created.id, "someone-else")
    with pytest.raises(NotFound):
        services.triggers.reset_trigger(created.id + 100, "owner-1")

    reset = services.triggers.reset_trigger(created.id, "owner-1")
    assert reset.status == ConditionStatus.ACTIVE
    assert reset.triggered_at is None

    services.triggers.trigger_evaluation("owner-1")
    assert len(services.release.list_grants()) == 2
    assert notifier.templates() == ["emergency_trigger", "emergency_trigger"]


def test_petition_threshold_escalates_and_requests_verification(services, notifier):
    services.triggers.register_trigger(condition("beneficiary_petition"))
    for _ in range(3):
        services.triggers.record_signal(SignalCreate(
            user_id="owner-1",
            source=SignalSource.BENEFICIARY_PETITION,
            signal_type="access_request",
            severity=Severity.HIGH,
            status=SignalStatus.PENDING,
        ))

    [result] = services.triggers.trigger_evaluation("owner-1")
    assert result.required_actions == [
        RequiredAction.REQUEST_VERIFICATION, RequiredAction.ESCALATE, RequiredAction.NOTIFY_CONTACTS
    ]
    assert notifier.templates() == ["verification_required"]
    assert notifier.sent[0]["recipients"] == ["owner-1"]
    assert notifier.sent[0]["payload"]["verify_path"] == f"/verify-trigger/{result.trigger_id}"

    [stored] = services.triggers.list_triggers("owner-1")
    assert stored.priority == TriggerPriority.CRITICAL
    assert services.release.list_grants() == []


def test_death_certificate_grant_waits_a_day(services, notifier):
    services.triggers.register_trigger(condition("legal_document", parameters={
        "beneficiaries": ["beneficiary-1"],
        "resource_type": "documents",
    }))
    services.triggers.record_signal(SignalCreate(
        user_id="owner-1",
        source=SignalSource.LEGAL_DOCUMENT,
        signal_type="death_certificate",
        status=SignalStatus.VERIFIED,
        verified=True,
    ))

    [result] = services.triggers.trigger_evaluation("owner-1")
    assert RequiredAction.TIME_DELAY in result.required_actions

    [grant] = services.release.list_grants("beneficiary-1")
    assert grant.delay_hours == 24
    assert grant.available_at == T0 + timedelta(hours=24)
    assert grant.resource_type == "documents"
    assert notifier.templates() == []


def test_failed_contact_delivery_is_reported_in_audit(services, notifier):
    services.triggers.register_trigger(condition("medical_emergency", parameters={
        "emergency_contacts": ["sister@example.com"],
    }))
    critical_medical_signal(services)
    notifier.failures = 1

    [result] = services.triggers.trigger_evaluation("owner-1")
    assert result.triggered
    [entry] = services.audit.recent(action="trigger_actions_executed")
    assert entry.result == "warning"
    assert entry.details["failed"] == ["notify_contacts"]


def test_unsuccessful_delivery_result_is_logged(services, armed_switch, clock, caplog):
    class RefusingNotifier:
        def deliver_notification(self, recipients, template, payload):
            return False

    services.triggers.notifier = RefusingNotifier()
    services.triggers.register_trigger(condition("inactivity", notify_recipients=["lawyer@example.com"]))
    clock.at(hours=24 * 5)

    with caplog.at_level(logging.WARNING, logger="estate_release.services.trigger_engine"):
        [result] = services.triggers.trigger_evaluation("owner-1")

    assert result.triggered
    assert "failed trigger_activated delivery" in caplog.text
