"""
Condition and Goal evaluation.

Both are pluggable: the executor takes any callable with the matching
signature. The defaults below cover the field/operator/value shape the
authoring canvas produces.

Condition config:
    {"field": "payload.amount", "operator": "greater_than", "value": 100}
  returns "yes" / "no". With {"field": ..., "mode": "switch"} the field's
  value itself (as a string) is the branch key.

Goal config:
    {"goal": "booking_completed"}       satisfied if the contact achieved it
    {"field": ..., "operator": ..., ...} satisfied if the predicate holds
"""
import logging
from typing import Any, Callable, Dict, Optional

from models.workflow import AutomationNode

logger = logging.getLogger("automation_engine")

ConditionEvaluator = Callable[[AutomationNode, Dict[str, Any]], Optional[str]]
GoalEvaluator = Callable[[AutomationNode, Dict[str, Any]], bool]

_MISSING = object()


def resolve_path(context: Dict[str, Any], path: str) -> Any:
    """Looks up a dotted path like 'contact.stage' in nested dicts."""
    current: Any = context
    for part in str(path).split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    op = (operator or "equals").lower()

    if op == "exists":
        return actual is not _MISSING and actual is not None
    if op == "not_exists":
        return actual is _MISSING or actual is None
    if actual is _MISSING:
        # a missing field never satisfies a positive comparison
        return op in ("not_equals", "neq", "not_contains")

    if op in ("equals", "eq"):
        return actual == expected or str(actual) == str(expected)
    if op in ("not_equals", "neq"):
        return not (actual == expected or str(actual) == str(expected))
    if op == "contains":
        if isinstance(actual, (list, tuple, set, dict)):
            return expected in actual
        return str(expected) in str(actual)
    if op == "not_contains":
        if isinstance(actual, (list, tuple, set, dict)):
            return expected not in actual
        return str(expected) not in str(actual)
    if op in ("greater_than", "gt", "less_than", "lt"):
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        return a > b if op in ("greater_than", "gt") else a < b

    logger.warning(f"Unknown condition operator '{operator}', treating as false")
    return False


def evaluate_predicate(config: Dict[str, Any], context: Dict[str, Any]) -> bool:
    actual = resolve_path(context, config.get("field", ""))
    return _compare(actual, config.get("operator", "equals"), config.get("value"))


def default_condition_evaluator(node: AutomationNode, context: Dict[str, Any]) -> Optional[str]:
    config = node.config or {}
    if not config.get("field"):
        return None

    if config.get("mode") == "switch":
        value = resolve_path(context, config["field"])
        return None if value is _MISSING or value is None else str(value)

    return "yes" if evaluate_predicate(config, context) else "no"


def default_goal_evaluator(node: AutomationNode, context: Dict[str, Any]) -> bool:
    config = node.config or {}

    goal = config.get("goal")
    if goal:
        achieved = (context.get("contact") or {}).get("goals_achieved") or []
        if goal in achieved:
            return True

    if config.get("field"):
        return evaluate_predicate(config, context)
    return False
