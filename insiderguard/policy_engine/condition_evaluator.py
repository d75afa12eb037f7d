# -*- coding: utf-8 -*-
"""
Condition Evaluator

Decides which resolved policies are triggered by an event. The event's
attribute map is its free-form ``attributes`` merged with ``category``,
``severity``, ``risk_score`` and a derived ``time_based`` label
(``business_hours`` or ``after_hours``).

Semantics:
    - A policy without conditions is unconditionally satisfied.
    - ``equals``/``contains``/``in`` and their negations compare
      case-insensitively as strings; ``in`` takes a comma-separated list.
      Integral float attributes compare in integer form, so a score of
      90.0 equals "90" but not "90.0" or "0090".
    - Numeric operators coerce both sides to float. A coercion failure
      is an EvaluationError, logged, and the condition is false.
    - A missing attribute makes a condition false, except ``always``.
    - Connectors combine strictly left to right: the connector stored on
      condition i joins it to condition i+1. There is no precedence.

Example:
    >>> evaluator = ConditionEvaluator()
    >>> matched = evaluator.filter_matching(policies, event)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from insiderguard.exceptions import EvaluationError
from insiderguard.policy_engine.config import PolicyEngineConfig, get_config
from insiderguard.policy_engine.metrics import record_condition_error
from insiderguard.policy_engine.models import (
    ConditionSpec,
    ConditionType,
    LogicalConnector,
    NUMERIC_OPERATORS,
    Operator,
    Policy,
    SecurityEvent,
)

logger = logging.getLogger(__name__)

BUSINESS_HOURS = "business_hours"
AFTER_HOURS = "after_hours"


def _norm(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _canonical(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return _norm(value)


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ConditionEvaluator:
    """Evaluates policy conditions against security events."""

    def __init__(self, config: Optional[PolicyEngineConfig] = None) -> None:
        self._config = config or get_config()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_attributes(self, event: SecurityEvent) -> Dict[str, Any]:
        """Attribute map a condition's type is looked up in."""
        attrs = event.attribute_map()
        attrs.setdefault(
            ConditionType.TIME_BASED.value, self.time_label(event.timestamp),
        )
        return attrs

    def time_label(self, timestamp: datetime) -> str:
        """``business_hours`` on weekdays inside the configured window."""
        start = self._config.business_hours_start
        end = self._config.business_hours_end
        if timestamp.weekday() < 5 and start <= timestamp.hour < end:
            return BUSINESS_HOURS
        return AFTER_HOURS

    def filter_matching(
        self,
        policies: List[Policy],
        event: SecurityEvent,
    ) -> List[Policy]:
        """Policies whose conditions are satisfied, in the given order."""
        attrs = self.build_attributes(event)
        return [p for p in policies if self.matches(p, attrs)]

    def matches(self, policy: Policy, attributes: Dict[str, Any]) -> bool:
        """Fold the policy's conditions left to right.

        Evaluation stops once the running result can no longer change.
        """
        conditions = policy.conditions
        if not conditions:
            return True

        result = self._safe_evaluate(policy, conditions[0], attributes)
        for prev, condition in zip(conditions, conditions[1:]):
            if prev.logical_operator == LogicalConnector.AND:
                result = result and self._safe_evaluate(policy, condition, attributes)
            else:
                result = result or self._safe_evaluate(policy, condition, attributes)
        return result

    def evaluate_condition(
        self,
        condition: ConditionSpec,
        attributes: Dict[str, Any],
    ) -> bool:
        """Evaluate one condition.

        Raises:
            EvaluationError: If a numeric operator meets a non-numeric value.
        """
        if condition.is_always:
            return True

        actual = attributes.get(condition.condition_type)
        if actual is None:
            return False

        operator = condition.operator
        if operator in NUMERIC_OPERATORS:
            return self._compare_numeric(condition, actual)

        expected = _norm(condition.value)
        if operator in (Operator.EQUALS, Operator.NOT_EQUALS):
            equal = self._equal(actual, condition.value)
            return equal if operator == Operator.EQUALS else not equal

        if operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
            if isinstance(actual, (list, tuple, set, frozenset)):
                found = expected in {_canonical(v) for v in actual}
            else:
                found = expected in _canonical(actual)
            return found if operator == Operator.CONTAINS else not found

        options = {part.strip().lower() for part in condition.value.split(",") if part.strip()}
        member = _canonical(actual) in options
        return member if operator == Operator.IN else not member

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _safe_evaluate(
        self,
        policy: Policy,
        condition: ConditionSpec,
        attributes: Dict[str, Any],
    ) -> bool:
        try:
            return self.evaluate_condition(condition, attributes)
        except EvaluationError as exc:
            record_condition_error(condition.condition_type)
            logger.warning(
                "Condition on policy %d evaluated false: %s", policy.id, exc.message,
            )
            return False

    @staticmethod
    def _equal(actual: Any, expected: str) -> bool:
        return _canonical(actual) == _norm(expected)

    @staticmethod
    def _compare_numeric(condition: ConditionSpec, actual: Any) -> bool:
        left = _as_float(actual)
        right = _as_float(condition.value)
        if left is None or right is None:
            raise EvaluationError(
                f"Cannot compare {actual!r} {condition.operator.value} "
                f"{condition.value!r} numerically",
                condition_type=condition.condition_type,
                operator=condition.operator.value,
                context={"actual": str(actual), "expected": condition.value},
            )
        if condition.operator == Operator.GREATER_THAN:
            return left > right
        if condition.operator == Operator.LESS_THAN:
            return left < right
        if condition.operator == Operator.GREATER_EQUAL:
            return left >= right
        return left <= right


__all__ = [
    "ConditionEvaluator",
    "BUSINESS_HOURS",
    "AFTER_HOURS",
]
