from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from glasswallet.domain.tagging.db_models import (
    TAG_BLACKLIST,
    TAG_QUALIFIED,
    TAG_TYPES,
    TAG_UNQUALIFIED,
    TAG_WHITELIST,
)

logger = logging.getLogger(__name__)

BASELINE_RULE_NAME = "Baseline qualification"
BASELINE_QUALIFIED_SCORE = 720
BASELINE_QUALIFIED_INCOME_CENTS = 8_000_000
BASELINE_UNQUALIFIED_SCORE = 580

CONTRADICTIONS = {
    TAG_WHITELIST: TAG_BLACKLIST,
    TAG_BLACKLIST: TAG_WHITELIST,
    TAG_QUALIFIED: TAG_UNQUALIFIED,
    TAG_UNQUALIFIED: TAG_QUALIFIED,
}

_COMPOUND_KEYS = ("all", "any", "not")
_SHORTHAND_OPS = {"gt", "gte", "lt", "lte", "eq", "ne", "in", "not_in", "contains", "exists"}


@dataclass(frozen=True)
class RuleSpec:
    name: str
    conditions: Mapping[str, Any]
    actions: Mapping[str, Any]
    priority: int = 0
    rule_id: uuid.UUID | None = None
    created_at: datetime | None = None


@dataclass
class TagDecision:
    tag_type: str
    reason: str
    triggering_rule_id: uuid.UUID | None = None
    sync_to_pixels: bool = False


@dataclass(frozen=True)
class WebhookEvent:
    name: str
    url: str | None = None
    rule_id: uuid.UUID | None = None


@dataclass
class Evaluation:
    decisions: list[TagDecision] = field(default_factory=list)
    webhook_events: list[WebhookEvent] = field(default_factory=list)
    matched_rules: list[str] = field(default_factory=list)

    @property
    def tag_types(self) -> list[str]:
        return [decision.tag_type for decision in self.decisions]

    @property
    def untagged(self) -> bool:
        return not self.decisions

    @property
    def sync_tag_types(self) -> list[str]:
        return [decision.tag_type for decision in self.decisions if decision.sync_to_pixels]


def evaluate(
    attributes: Mapping[str, Any],
    rules: Iterable[RuleSpec],
    signals: Mapping[str, Any] | None = None,
    *,
    order: str = "desc",
    include_baseline: bool = True,
) -> Evaluation:
    """Run every rule against ``attributes`` in priority order.

    All firing rules contribute. The first rule to propose a tag type owns the
    decision (reason and rule id); later proposals may only turn on
    ``sync_to_pixels``. A tag contradicting an earlier decision is dropped.
    """
    payload = {**attributes, "ai": dict(signals or {})}
    ordered = order_rules(rules, order=order)
    if include_baseline:
        ordered.append(baseline_rule(attributes))

    evaluation = Evaluation()
    by_type: dict[str, TagDecision] = {}
    seen_events: set[str] = set()

    for rule in ordered:
        if not evaluate_conditions(payload, rule.conditions):
            continue
        evaluation.matched_rules.append(rule.name)
        actions = rule.actions or {}
        sync = bool(actions.get("syncToPixels"))
        for tag_type in _action_tags(actions):
            existing = by_type.get(tag_type)
            if existing is not None:
                existing.sync_to_pixels = existing.sync_to_pixels or sync
                continue
            opposite = CONTRADICTIONS.get(tag_type)
            if opposite in by_type:
                logger.info(
                    "tag_decision_contradiction_dropped",
                    extra={"extra": {"tag_type": tag_type, "kept": opposite, "rule": rule.name}},
                )
                continue
            decision = TagDecision(
                tag_type=tag_type,
                reason=str(actions.get("reason") or f"Auto-tagged by rule: {rule.name}")[:200],
                triggering_rule_id=rule.rule_id,
                sync_to_pixels=sync,
            )
            by_type[tag_type] = decision
            evaluation.decisions.append(decision)

        webhook_url = actions.get("webhookUrl")
        for event_name in actions.get("webhookEvents") or []:
            if not isinstance(event_name, str) or event_name in seen_events:
                continue
            seen_events.add(event_name)
            evaluation.webhook_events.append(
                WebhookEvent(name=event_name, url=webhook_url if isinstance(webhook_url, str) else None, rule_id=rule.rule_id)
            )
    return evaluation


def order_rules(rules: Iterable[RuleSpec], *, order: str = "desc") -> list[RuleSpec]:
    def _created(rule: RuleSpec) -> float:
        return rule.created_at.timestamp() if rule.created_at else 0.0

    def _key(rule: RuleSpec) -> tuple[int, float, str]:
        priority = -rule.priority if order == "desc" else rule.priority
        return (priority, _created(rule), str(rule.rule_id or ""))

    return sorted(rules, key=_key)


def baseline_rule(attributes: Mapping[str, Any]) -> RuleSpec:
    score = attributes.get("creditScore")
    if _is_number(score) and score <= BASELINE_UNQUALIFIED_SCORE:
        return RuleSpec(
            name=BASELINE_RULE_NAME,
            conditions={"creditScore": {"lte": BASELINE_UNQUALIFIED_SCORE}},
            actions={
                "addTags": [TAG_UNQUALIFIED, TAG_BLACKLIST],
                "reason": f"Credit score at or below {BASELINE_UNQUALIFIED_SCORE}",
            },
            priority=-1,
        )
    return RuleSpec(
        name=BASELINE_RULE_NAME,
        conditions={
            "creditScore": {"gte": BASELINE_QUALIFIED_SCORE},
            "incomeEstimate": {"gte": BASELINE_QUALIFIED_INCOME_CENTS},
        },
        actions={
            "addTags": [TAG_QUALIFIED, TAG_WHITELIST],
            "reason": "Credit score and income above qualification thresholds",
        },
        priority=-1,
    )


def _action_tags(actions: Mapping[str, Any]) -> list[str]:
    tags: list[str] = []
    single = actions.get("addTag")
    if isinstance(single, str):
        tags.append(single)
    many = actions.get("addTags")
    if isinstance(many, Sequence) and not isinstance(many, str):
        tags.extend(tag for tag in many if isinstance(tag, str))
    valid = []
    for tag in dict.fromkeys(tags):
        if tag in TAG_TYPES:
            valid.append(tag)
        else:
            logger.warning("rule_action_unknown_tag", extra={"extra": {"tag_type": tag}})
    return valid


def evaluate_conditions(payload: Mapping[str, Any], conditions: Mapping[str, Any] | None) -> bool:
    if not conditions:
        return True

    if _has_compound_conditions(conditions):
        all_conditions = conditions.get("all", [])
        any_conditions = conditions.get("any", [])
        not_conditions = conditions.get("not")

        if all_conditions and not _evaluate_condition_group(payload, all_conditions, all):
            return False
        if any_conditions and not _evaluate_condition_group(payload, any_conditions, any):
            return False
        if not_conditions is not None:
            return not _evaluate_condition(payload, not_conditions)
        return True

    for key, expected in conditions.items():
        actual = _get_payload_value(payload, key)
        if _is_shorthand(expected):
            if not all(_apply_operator(actual, value, op) for op, value in expected.items()):
                return False
        elif actual != expected:
            return False
    return True


def _is_shorthand(expected: Any) -> bool:
    return isinstance(expected, Mapping) and bool(expected) and all(key in _SHORTHAND_OPS for key in expected)


def _has_compound_conditions(conditions: Mapping[str, Any]) -> bool:
    return any(key in conditions for key in _COMPOUND_KEYS)


def _evaluate_condition_group(payload: Mapping[str, Any], conditions: Any, aggregator) -> bool:
    if not isinstance(conditions, Sequence) or isinstance(conditions, str):
        return False
    evaluations = (_evaluate_condition(payload, condition) for condition in conditions)
    return aggregator(evaluations)


def _evaluate_condition(payload: Mapping[str, Any], condition: Any) -> bool:
    if isinstance(condition, Mapping) and "field" in condition:
        field_name = condition.get("field")
        if not isinstance(field_name, str) or not field_name:
            return False
        op = condition.get("op", "eq")
        expected = condition.get("value")
        actual = _get_payload_value(payload, field_name)
        return _apply_operator(actual, expected, op)

    if isinstance(condition, Mapping):
        return evaluate_conditions(payload, condition)

    return False


def _get_payload_value(payload: Mapping[str, Any], field_name: str) -> Any:
    current: Any = payload
    for part in field_name.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _apply_operator(actual: Any, expected: Any, op: Any) -> bool:
    if not isinstance(op, str):
        return False
    normalized = op.lower()
    if normalized in {"equals", "eq", "="}:
        return actual == expected
    if normalized in {"ne", "!="}:
        return actual != expected
    if normalized == "contains":
        return _contains(actual, expected)
    if normalized == "exists":
        return (actual is not None) == bool(expected)
    if normalized in {"lt", "<"}:
        return _compare_numbers(actual, expected, "lt")
    if normalized in {"gt", ">"}:
        return _compare_numbers(actual, expected, "gt")
    if normalized in {"lte", "<="}:
        return _compare_numbers(actual, expected, "lte")
    if normalized in {"gte", ">="}:
        return _compare_numbers(actual, expected, "gte")
    if normalized == "in":
        return _in_set(actual, expected)
    if normalized == "not_in":
        return isinstance(expected, (list, tuple, set)) and actual not in expected
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return expected in actual
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return False


def _compare_numbers(actual: Any, expected: Any, op: str) -> bool:
    if not _is_number(actual) or not _is_number(expected):
        return False
    if op == "lt":
        return actual < expected
    if op == "gt":
        return actual > expected
    if op == "lte":
        return actual <= expected
    if op == "gte":
        return actual >= expected
    return False


def _in_set(actual: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple, set)):
        return actual in expected
    return False
