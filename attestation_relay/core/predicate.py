"""
Predicate Evaluation

Pure, deterministic threshold checks. No I/O.

Each action type owns exactly one rule. Asking about an action with no
rule is a configuration error, never a silent False.
"""

import math
from typing import Mapping

from ..schemas.actions import ActionType, FactValue, PredicateRule
from .errors import PredicateError


def _as_number(value: FactValue) -> float:
    if isinstance(value, bool):
        raise PredicateError(f"Fact value {value!r} is not numeric")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError as e:
            raise PredicateError(f"Fact value {value!r} is not numeric") from e
    if not math.isfinite(number):
        raise PredicateError(f"Fact value {value!r} is not finite")
    return number


class PredicateEvaluator:
    """Evaluates fact values against per-action rules."""

    def __init__(self, rules: Mapping[ActionType, PredicateRule]):
        self._rules = dict(rules)

    def rule_for(self, action_type: ActionType) -> PredicateRule:
        try:
            return self._rules[action_type]
        except KeyError:
            raise PredicateError(f"No predicate rule configured for {action_type}") from None

    def evaluate(self, action_type: ActionType, value: FactValue) -> bool:
        """
        Check a fact value against the action's rule.

        The value is compared in the unit its FactQuery declares.

        Raises:
            PredicateError: If the action has no rule or the value is not numeric
        """
        rule = self.rule_for(action_type)
        return rule.comparison.apply(_as_number(value), rule.threshold)
