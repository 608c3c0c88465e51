"""
Trigger rules

Each rule kind implements ``evaluate(context, parameters)`` and is looked up
by kind in a ``RuleRegistry``; the evaluation engine never branches on kind.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

SEVERITY_CONFIDENCE = {"critical": 1.0, "high": 0.8}
CRITICAL_DOCUMENTS = ("court_order", "medical_directive")
CORROBORATING_SIGNALS = ("obituary_published", "memorial_account_creation")


@dataclass
class SwitchSnapshot:
    switch_id: str
    state: str
    last_check_in_at: datetime
    effective_elapsed_hours: float
    check_in_interval_hours: float


@dataclass
class SignalSnapshot:
    signal_id: int
    source: str
    signal_type: str
    severity: Optional[str]
    status: str
    verified: bool
    payload: Dict[str, Any]
    received_at: datetime


@dataclass
class EvaluationContext:
    user_id: str
    now: datetime
    switches: List[SwitchSnapshot] = field(default_factory=list)
    signals: List[SignalSnapshot] = field(default_factory=list)

    def signals_from(self, source: str, statuses: Optional[Iterable[str]] = None) -> List[SignalSnapshot]:
        wanted = set(statuses) if statuses else None
        return [
            s for s in self.signals
            if s.source == source and (wanted is None or s.status in wanted)
        ]


@dataclass
class RuleOutcome:
    triggered: bool
    confidence: float
    reason_codes: List[str]
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def no_match(cls, *reason_codes: str, **details) -> "RuleOutcome":
        return cls(False, 0.0, list(reason_codes), details)


class TriggerRule:
    kind = ""

    def evaluate(self, context: EvaluationContext, parameters: Dict[str, Any]) -> RuleOutcome:
        raise NotImplementedError


class InactivityRule(TriggerRule):
    """Overdue check-ins; confidence grows by 0.1 per full overdue day"""
    kind = "inactivity"

    def evaluate(self, context, parameters):
        switches = [s for s in context.switches if s.state != "disabled"]
        if not switches:
            return RuleOutcome.no_match("switch_not_enabled")

        min_overdue_days = float(parameters.get("min_overdue_days", 0))
        worst = max(switches, key=lambda s: s.effective_elapsed_hours - s.check_in_interval_hours)
        days_since = worst.effective_elapsed_hours / 24
        overdue_days = days_since - worst.check_in_interval_hours / 24
        details = {"switch_id": worst.switch_id, "days_since_check_in": round(days_since, 2)}

        if overdue_days < min_overdue_days or overdue_days < 0:
            return RuleOutcome.no_match("recent_check_in", **details)

        reasons = ["check_in_overdue"]
        if worst.state == "triggered":
            reasons.append("switch_triggered")
        confidence = min(0.5 + 0.1 * math.floor(overdue_days), 1.0)
        details["overdue_days"] = round(overdue_days, 2)
        return RuleOutcome(True, confidence, reasons, details)


class MedicalEmergencyRule(TriggerRule):
    kind = "medical_emergency"

    def evaluate(self, context, parameters):
        emergencies = context.signals_from("medical_emergency", statuses=("active",))
        if not emergencies:
            return RuleOutcome.no_match("no_active_medical_emergency")

        ranked = sorted(
            emergencies,
            key=lambda s: (SEVERITY_CONFIDENCE.get(s.severity or "", 0.5), s.received_at),
            reverse=True
        )
        worst = ranked[0]
        confidence = SEVERITY_CONFIDENCE.get(worst.severity or "", 0.5)
        reasons = [f"{worst.severity or 'unknown'}_medical_emergency"]
        if worst.verified:
            confidence += 0.2
            reasons.append("emergency_verified")
        if float(worst.payload.get("signal_strength", 0)) > 80:
            confidence += 0.1

        threshold = parameters.get("min_severity")
        if threshold and SEVERITY_CONFIDENCE.get(worst.severity or "", 0.5) < SEVERITY_CONFIDENCE.get(threshold, 0.5):
            return RuleOutcome.no_match("severity_below_threshold", signal_id=worst.signal_id)

        return RuleOutcome(True, min(confidence, 1.0), reasons, {
            "signal_id": worst.signal_id,
            "severity": worst.severity,
            "alert_type": worst.payload.get("alert_type", worst.signal_type)
        })


class LegalDocumentRule(TriggerRule):
    kind = "legal_document"

    def evaluate(self, context, parameters):
        documents = [d for d in context.signals_from("legal_document") if d.verified]

        for document in documents:
            if document.signal_type == "death_certificate":
                return RuleOutcome(True, 1.0, ["death_certificate_verified"], {"signal_id": document.signal_id})

        for document in documents:
            if document.signal_type in CRITICAL_DOCUMENTS:
                return RuleOutcome(True, 0.8, ["critical_document_verified"],
                                   {"signal_id": document.signal_id, "document_type": document.signal_type})

        return RuleOutcome.no_match("no_verified_critical_document")


class BeneficiaryPetitionRule(TriggerRule):
    kind = "beneficiary_petition"

    def evaluate(self, context, parameters):
        petitions = context.signals_from("beneficiary_petition")
        approved = [p for p in petitions if p.status == "approved"]
        if approved:
            return RuleOutcome(True, 1.0, ["petition_approved"], {"petition_ids": [p.signal_id for p in approved]})

        required = int(parameters.get("min_urgent_petitions", 3))
        urgent = [p for p in petitions if p.status == "pending" and p.severity in ("high", "critical")]
        if len(urgent) >= required:
            return RuleOutcome(True, 0.7, ["urgent_petitions_pending"], {"pending_urgent": len(urgent)})

        return RuleOutcome.no_match("insufficient_petitions", pending_urgent=len(urgent))


class ThirdPartySignalRule(TriggerRule):
    kind = "third_party_signal"

    def evaluate(self, context, parameters):
        signals = [s for s in context.signals_from("third_party") if s.verified]

        death_notices = [s for s in signals if s.signal_type == "death_notification"]
        if death_notices:
            return RuleOutcome(True, 0.9, ["death_notification"], {"signal_id": death_notices[0].signal_id})

        corroborating = [s for s in signals if s.signal_type in CORROBORATING_SIGNALS]
        if len(corroborating) >= int(parameters.get("min_corroborating", 2)):
            return RuleOutcome(True, 0.8, ["corroborating_signals"], {"signals": len(corroborating)})

        return RuleOutcome.no_match("no_verified_signal")


class ManualOverrideRule(TriggerRule):
    kind = "manual_override"

    def evaluate(self, context, parameters):
        overrides = context.signals_from("manual_override", statuses=("active",))
        if not overrides:
            return RuleOutcome.no_match("no_active_override")

        if parameters.get("require_authenticated", True):
            overrides = [o for o in overrides if o.payload.get("authenticated")]
            if not overrides:
                return RuleOutcome.no_match("override_not_authenticated")

        latest = max(overrides, key=lambda o: o.received_at)
        return RuleOutcome(True, 1.0, ["manual_override_active"], {"signal_id": latest.signal_id})


class RuleRegistry:
    def __init__(self, rules: Iterable[TriggerRule] = ()):
        self._rules: Dict[str, TriggerRule] = {}
        for rule in rules:
            self.register(rule)

    @classmethod
    def with_defaults(cls) -> "RuleRegistry":
        return cls([
            InactivityRule(),
            MedicalEmergencyRule(),
            LegalDocumentRule(),
            BeneficiaryPetitionRule(),
            ThirdPartySignalRule(),
            ManualOverrideRule(),
        ])

    def register(self, rule: TriggerRule):
        if not rule.kind:
            raise ValueError(f"{type(rule).__name__} has no kind")
        self._rules[rule.kind] = rule

    def get(self, kind: str) -> Optional[TriggerRule]:
        return self._rules.get(kind)

    def kinds(self) -> List[str]:
        return sorted(self._rules)

    def __contains__(self, kind: str) -> bool:
        return kind in self._rules
