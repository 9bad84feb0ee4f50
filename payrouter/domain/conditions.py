"""Evaluation of routing rule conditions against a transaction context.

Every function here is pure and never raises for bad rule data: malformed
literals, unknown operators and unknown fields all evaluate to a non-match so a
broken rule cannot take routing down.
"""
from decimal import Decimal
import logging
import re
from typing import Any, Iterable, Optional, Union

from payrouter.domain.models import (
    ConditionField,
    ConditionOperator,
    OPERATOR_ALIASES,
    RoutingCondition,
    TransactionContext,
    UnrecognizedCondition,
)

logger = logging.getLogger(__name__)

NUMERIC_FIELDS = {ConditionField.AMOUNT, ConditionField.RISK_SCORE}


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).casefold()


def _equals(field_value: Any, literal: Any) -> bool:
    if field_value is None or literal is None:
        return field_value is None and literal is None
    if isinstance(field_value, (int, float, Decimal)) or isinstance(literal, (int, float, Decimal)):
        left, right = _to_float(field_value), _to_float(literal)
        if left is not None and right is not None:
            return left == right
    return _to_text(field_value) == _to_text(literal)


def _compare(field_value: Any, literal: Any, operator: ConditionOperator) -> bool:
    left, right = _to_float(field_value), _to_float(literal)
    if left is None or right is None:
        return False
    if operator is ConditionOperator.GT:
        return left > right
    if operator is ConditionOperator.GTE:
        return left >= right
    if operator is ConditionOperator.LT:
        return left < right
    return left <= right


def _regex_search(field_value: Any, pattern: Any) -> bool:
    try:
        compiled = re.compile(str(pattern), re.IGNORECASE)
    except re.error as e:
        logger.error(f"Invalid regex in routing condition {pattern!r}: {e}")
        return False
    return compiled.search("" if field_value is None else str(field_value)) is not None


def _resolve_operator(operator: Union[ConditionOperator, str, None]) -> Optional[ConditionOperator]:
    if isinstance(operator, ConditionOperator):
        return operator
    if not isinstance(operator, str):
        return None
    alias = OPERATOR_ALIASES.get(operator.strip())
    if alias is not None:
        return alias
    try:
        return ConditionOperator(operator.strip().lower())
    except ValueError:
        return None


def evaluate(field_value: Any, operator: Union[ConditionOperator, str, None], literal: Any) -> bool:
    """Evaluate a single ``field_value <operator> literal`` comparison."""
    resolved = _resolve_operator(operator)
    if resolved is None:
        logger.warning(f"Unknown routing condition operator: {operator!r}")
        return False

    if resolved is ConditionOperator.EQ:
        return _equals(field_value, literal)
    if resolved is ConditionOperator.NE:
        return not _equals(field_value, literal)
    if resolved in (ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE):
        return _compare(field_value, literal, resolved)
    if resolved is ConditionOperator.IN:
        if not isinstance(literal, (list, tuple, set)):
            return False
        return any(_equals(field_value, item) for item in literal)
    if resolved is ConditionOperator.NOT_IN:
        if not isinstance(literal, (list, tuple, set)):
            return True
        return not any(_equals(field_value, item) for item in literal)
    if resolved is ConditionOperator.CONTAINS:
        return _to_text(literal) in _to_text(field_value)
    if resolved is ConditionOperator.STARTS_WITH:
        return _to_text(field_value).startswith(_to_text(literal))
    if resolved is ConditionOperator.ENDS_WITH:
        return _to_text(field_value).endswith(_to_text(literal))
    return _regex_search(field_value, literal)


def resolve_field(field: Union[ConditionField, str, None], context: TransactionContext) -> tuple[bool, Any]:
    """Return ``(known, value)`` for a condition field on the given context."""
    try:
        resolved = ConditionField(field)
    except ValueError:
        return False, None

    value = getattr(context, resolved.value)
    if resolved in NUMERIC_FIELDS:
        return True, _to_float(value)
    return True, value


def evaluate_condition(
    condition: Union[RoutingCondition, UnrecognizedCondition], context: TransactionContext
) -> bool:
    if isinstance(condition, UnrecognizedCondition):
        logger.warning(
            f"Skipping unrecognized routing condition field={condition.field!r} operator={condition.operator!r}"
        )
        return False

    known, field_value = resolve_field(condition.field, context)
    if not known:
        return False
    return evaluate(field_value, condition.operator, condition.value)


def evaluate_conditions(
    conditions: Iterable[Union[RoutingCondition, UnrecognizedCondition]], context: TransactionContext
) -> bool:
    """All conditions must hold. No conditions means always match."""
    return all(evaluate_condition(condition, context) for condition in conditions)
