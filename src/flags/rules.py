"""Targeting rule evaluation.

A rule matches when all of its conditions match; an allocation's rules
match when any rule matches, or unconditionally when there are none.
"""

import math
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any, Callable

from semver import Version

from src.flags.models import Condition, ConditionValueType, Rule
from src.flags.obfuscation import decode_base64, get_md5_hash

class OperatorType(str, Enum):
    MATCHES = "MATCHES"
    NOT_MATCHES = "NOT_MATCHES"
    GTE = "GTE"
    GT = "GT"
    LTE = "LTE"
    LT = "LT"
    ONE_OF = "ONE_OF"
    NOT_ONE_OF = "NOT_ONE_OF"
    IS_NULL = "IS_NULL"


OBFUSCATED_OPERATORS = {get_md5_hash(op.value): op for op in OperatorType}

_COMPARATORS: dict[OperatorType, Callable[[Any, Any], bool]] = {
    OperatorType.GTE: lambda a, b: a >= b,
    OperatorType.GT: lambda a, b: a > b,
    OperatorType.LTE: lambda a, b: a <= b,
    OperatorType.LT: lambda a, b: a < b,
}


def matches_rules(
    rules: list[Rule], subject_attributes: Mapping[str, Any], obfuscated: bool = False
) -> tuple[bool, Rule | None]:
    """Return whether any rule matches, and the first rule that did."""
    if not rules:
        return True, None
    for rule in rules:
        if matches_rule(rule, subject_attributes, obfuscated):
            return True, rule
    return False, None


def matches_rule(
    rule: Rule, subject_attributes: Mapping[str, Any], obfuscated: bool = False
) -> bool:
    if obfuscated:
        hashed = {get_md5_hash(k): v for k, v in subject_attributes.items()}
        return all(evaluate_obfuscated_condition(hashed, c) for c in rule.conditions)
    return all(evaluate_condition(subject_attributes, c) for c in rule.conditions)


def evaluate_condition(subject_attributes: Mapping[str, Any], condition: Condition) -> bool:
    value = subject_attributes.get(condition.attribute)
    operator = _parse_operator(condition.operator)

    if operator is OperatorType.IS_NULL:
        if condition.value is True:
            return value is None
        return value is not None

    if value is None or operator is None:
        return False
    if operator in _COMPARATORS:
        return _compare(operator, value, condition.value)
    if operator is OperatorType.MATCHES:
        return re.search(str(condition.value), to_attribute_string(value)) is not None
    if operator is OperatorType.NOT_MATCHES:
        return re.search(str(condition.value), to_attribute_string(value)) is None
    if operator is OperatorType.ONE_OF:
        return to_attribute_string(value) in _as_list(condition.value)
    if operator is OperatorType.NOT_ONE_OF:
        return to_attribute_string(value) not in _as_list(condition.value)
    return False


def evaluate_obfuscated_condition(
    hashed_attributes: Mapping[str, Any], condition: Condition
) -> bool:
    value = hashed_attributes.get(condition.attribute)
    operator = OBFUSCATED_OPERATORS.get(condition.operator)

    if operator is OperatorType.IS_NULL:
        if condition.value == get_md5_hash("true"):
            return value is None
        return value is not None

    if value is None or operator is None:
        return False
    if operator in _COMPARATORS:
        return _compare(operator, value, decode_base64(str(condition.value)))
    if operator is OperatorType.MATCHES:
        pattern = decode_base64(str(condition.value))
        return re.search(pattern, to_attribute_string(value)) is not None
    if operator is OperatorType.NOT_MATCHES:
        pattern = decode_base64(str(condition.value))
        return re.search(pattern, to_attribute_string(value)) is None
    if operator is OperatorType.ONE_OF:
        return get_md5_hash(to_attribute_string(value)) in _as_list(condition.value)
    if operator is OperatorType.NOT_ONE_OF:
        return get_md5_hash(to_attribute_string(value)) not in _as_list(condition.value)
    return False


def to_attribute_string(value: Any) -> str:
    """Render an attribute the way every SDK does before string comparison."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_valid_semver(value: Any) -> bool:
    return isinstance(value, str) and Version.is_valid(value)


def _parse_operator(operator: str) -> OperatorType | None:
    try:
        return OperatorType(operator)
    except ValueError:
        return None


def _as_list(value: ConditionValueType) -> list[str]:
    return value if isinstance(value, list) else []


def _compare(operator: OperatorType, attribute_value: Any, condition_value: Any) -> bool:
    comparator = _COMPARATORS[operator]
    if is_valid_semver(condition_value):
        if not is_valid_semver(attribute_value):
            return False
        # SemVer 2.0 precedence; build metadata is ignored
        precedence = Version.parse(attribute_value).compare(condition_value)
        return comparator(precedence, 0)

    attribute_number = _to_number(attribute_value)
    condition_number = _to_number(condition_value)
    if attribute_number is None or condition_number is None:
        return False
    return comparator(attribute_number, condition_number)


def _to_number(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number
