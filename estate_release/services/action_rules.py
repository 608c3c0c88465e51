"""
Action rules

Turn a triggered evaluation into the actions it calls for. Each rule holds
groups of field conditions (``all``, ``any`` or ``none`` of them must hold)
over the condition and its outcome; every matching rule contributes its
actions, highest priority first, without duplicates.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from estate_release.schemas.trigger import RequiredAction

MISSING = object()


def _contains(value, target) -> bool:
    if isinstance(value, (list, tuple, set, dict)):
        return target in value
    return str(target) in str(value)


def _number(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(value, target, check: Callable[[float, float], bool]) -> bool:
    left, right = _number(value), _number(target)
    return left is not None and right is not None and check(left, right)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda value, target: value == target,
    "not_equals": lambda value, target: value != target,
    "contains": lambda value, target: value is not MISSING and _contains(value, target),
    "greater_than": lambda value, target: _compare(value, target, lambda a, b: a > b),
    "less_than": lambda value, target: _compare(value, target, lambda a, b: a < b),
    "in": lambda value, target: value in target,
    "not_in": lambda value, target: value not in target,
}


def field_value(fields: Dict[str, Any], path: str):
    """Dotted lookup, ``MISSING`` when any part is absent"""
    value: Any = fields
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return MISSING
        value = value[part]
    return value


@dataclass
class FieldCondition:
    field: str
    operator: str
    value: Any

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise ValueError(f"unknown operator {self.operator}")

    def matches(self, fields: Dict[str, Any]) -> bool:
        return OPERATORS[self.operator](field_value(fields, self.field), self.value)


@dataclass
class ConditionGroup:
    mode: str
    conditions: List[FieldCondition]

    def matches(self, fields: Dict[str, Any]) -> bool:
        results = [c.matches(fields) for c in self.conditions]
        if self.mode == "all":
            return all(results)
        if self.mode == "any":
            return any(results)
        if self.mode == "none":
            return not any(results)
        raise ValueError(f"unknown condition group {self.mode}")


@dataclass
class ActionRule:
    id: str
    name: str
    groups: List[ConditionGroup]
    actions: List[RequiredAction]
    priority: int = 0
    enabled: bool = True
    delay_hours: float = 0

    def matches(self, fields: Dict[str, Any]) -> bool:
        return self.enabled and all(group.matches(fields) for group in self.groups)


@dataclass
class ActionPlan:
    actions: List[RequiredAction] = field(default_factory=list)
    rule_ids: List[str] = field(default_factory=list)
    delay_hours: float = 0


def _all(*conditions: FieldCondition) -> ConditionGroup:
    return ConditionGroup("all", list(conditions))


def _any(*conditions: FieldCondition) -> ConditionGroup:
    return ConditionGroup("any", list(conditions))


def default_action_rules() -> List[ActionRule]:
    return [
        ActionRule(
            id="medical-emergency-critical",
            name="Critical medical emergency",
            groups=[
                _all(FieldCondition("kind", "equals", "medical_emergency")),
                _any(
                    FieldCondition("details.severity", "equals", "critical"),
                    FieldCondition("details.alert_type", "in", ["cardiac_arrest", "severe_fall", "no_pulse"]),
                ),
            ],
            actions=[RequiredAction.GRANT_ACCESS, RequiredAction.NOTIFY_CONTACTS],
            priority=100,
        ),
        ActionRule(
            id="manual-override-immediate",
            name="Manual override activation",
            groups=[_all(FieldCondition("kind", "equals", "manual_override"))],
            actions=[RequiredAction.GRANT_ACCESS, RequiredAction.NOTIFY_CONTACTS],
            priority=95,
        ),
        ActionRule(
            id="legal-document-death-cert",
            name="Death certificate filed",
            groups=[_all(
                FieldCondition("kind", "equals", "legal_document"),
                FieldCondition("reason_codes", "contains", "death_certificate_verified"),
            )],
            actions=[RequiredAction.TIME_DELAY, RequiredAction.GRANT_ACCESS, RequiredAction.NOTIFY_CONTACTS],
            priority=90,
            delay_hours=24,
        ),
        ActionRule(
            id="beneficiary-petition-threshold",
            name="Multiple beneficiary petitions",
            groups=[_all(
                FieldCondition("kind", "equals", "beneficiary_petition"),
                FieldCondition("details.pending_urgent", "greater_than", 2),
            )],
            actions=[RequiredAction.REQUEST_VERIFICATION, RequiredAction.ESCALATE, RequiredAction.NOTIFY_CONTACTS],
            priority=80,
        ),
        ActionRule(
            id="inactivity-detection",
            name="Extended inactivity",
            groups=[_all(
                FieldCondition("kind", "equals", "inactivity"),
                FieldCondition("details.days_since_check_in", "greater_than", 30),
            )],
            actions=[RequiredAction.NOTIFY_CONTACTS, RequiredAction.TIME_DELAY, RequiredAction.ESCALATE],
            priority=50,
            delay_hours=24 * 7,
        ),
    ]


class ActionRuleRegistry:
    def __init__(self, rules: Iterable[ActionRule] = ()):
        self._rules: Dict[str, ActionRule] = {}
        for rule in rules:
            self.register(rule)

    @classmethod
    def with_defaults(cls) -> "ActionRuleRegistry":
        return cls(default_action_rules())

    def register(self, rule: ActionRule):
        self._rules[rule.id] = rule

    def rules(self) -> List[ActionRule]:
        return sorted(self._rules.values(), key=lambda r: r.priority, reverse=True)

    def plan(self, fields: Dict[str, Any]) -> ActionPlan:
        """Actions owed by a triggered result; nothing when it did not trigger"""
        plan = ActionPlan()
        if not fields.get("triggered"):
            return plan
        for rule in self.rules():
            if not rule.matches(fields):
                continue
            plan.rule_ids.append(rule.id)
            for action in rule.actions:
                if action not in plan.actions:
                    plan.actions.append(action)
            if RequiredAction.TIME_DELAY in rule.actions:
                plan.delay_hours = max(plan.delay_hours, rule.delay_hours)
        return plan
