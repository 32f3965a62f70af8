from __future__ import annotations
import math
import datetime
from decimal import Decimal
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any

from .model import (
    PrerequisiteFlagCondition,
    PrerequisiteFlagComparator,
    Segment,
    SegmentComparator,
    SegmentCondition,
    Setting,
    SettingType,
    TargetingRule,
    UserComparator,
    UserCondition,
    infer_value,
    is_allowed_value,
    unwrap_value,
)


if TYPE_CHECKING:
    from .evaluator import CannotEvaluate


_invalid_value = "<invalid value>"
_invalid_name = "<invalid name>"
_invalid_operator = "<invalid operator>"
_invalid_reference = "<invalid reference>"

_string_list_max_length = 10

_UC = UserComparator

_text_list_comparators = frozenset(
    {
        _UC.TEXT_IS_ONE_OF,
        _UC.TEXT_IS_NOT_ONE_OF,
        _UC.TEXT_CONTAINS_ANY_OF,
        _UC.TEXT_NOT_CONTAINS_ANY_OF,
        _UC.SEMVER_IS_ONE_OF,
        _UC.SEMVER_IS_NOT_ONE_OF,
        _UC.TEXT_STARTS_WITH_ANY_OF,
        _UC.TEXT_NOT_STARTS_WITH_ANY_OF,
        _UC.TEXT_ENDS_WITH_ANY_OF,
        _UC.TEXT_NOT_ENDS_WITH_ANY_OF,
        _UC.ARRAY_CONTAINS_ANY_OF,
        _UC.ARRAY_NOT_CONTAINS_ANY_OF,
    }
)
_sensitive_list_comparators = frozenset(
    {
        _UC.SENSITIVE_TEXT_IS_ONE_OF,
        _UC.SENSITIVE_TEXT_IS_NOT_ONE_OF,
        _UC.SENSITIVE_TEXT_STARTS_WITH_ANY_OF,
        _UC.SENSITIVE_TEXT_NOT_STARTS_WITH_ANY_OF,
        _UC.SENSITIVE_TEXT_ENDS_WITH_ANY_OF,
        _UC.SENSITIVE_TEXT_NOT_ENDS_WITH_ANY_OF,
        _UC.SENSITIVE_ARRAY_CONTAINS_ANY_OF,
        _UC.SENSITIVE_ARRAY_NOT_CONTAINS_ANY_OF,
    }
)
_text_comparators = frozenset(
    {
        _UC.SEMVER_LESS,
        _UC.SEMVER_LESS_OR_EQUALS,
        _UC.SEMVER_GREATER,
        _UC.SEMVER_GREATER_OR_EQUALS,
        _UC.TEXT_EQUALS,
        _UC.TEXT_NOT_EQUALS,
    }
)
_sensitive_text_comparators = frozenset({_UC.SENSITIVE_TEXT_EQUALS, _UC.SENSITIVE_TEXT_NOT_EQUALS})
_number_comparators = frozenset(
    {
        _UC.NUMBER_EQUALS,
        _UC.NUMBER_NOT_EQUALS,
        _UC.NUMBER_LESS,
        _UC.NUMBER_LESS_OR_EQUALS,
        _UC.NUMBER_GREATER,
        _UC.NUMBER_GREATER_OR_EQUALS,
    }
)
_datetime_comparators = frozenset({_UC.DATETIME_BEFORE, _UC.DATETIME_AFTER})

_user_comparator_text = {
    _UC.TEXT_IS_ONE_OF: "IS ONE OF",
    _UC.SENSITIVE_TEXT_IS_ONE_OF: "IS ONE OF",
    _UC.SEMVER_IS_ONE_OF: "IS ONE OF",
    _UC.TEXT_IS_NOT_ONE_OF: "IS NOT ONE OF",
    _UC.SENSITIVE_TEXT_IS_NOT_ONE_OF: "IS NOT ONE OF",
    _UC.SEMVER_IS_NOT_ONE_OF: "IS NOT ONE OF",
    _UC.TEXT_CONTAINS_ANY_OF: "CONTAINS ANY OF",
    _UC.TEXT_NOT_CONTAINS_ANY_OF: "NOT CONTAINS ANY OF",
    _UC.SEMVER_LESS: "<",
    _UC.NUMBER_LESS: "<",
    _UC.SEMVER_LESS_OR_EQUALS: "<=",
    _UC.NUMBER_LESS_OR_EQUALS: "<=",
    _UC.SEMVER_GREATER: ">",
    _UC.NUMBER_GREATER: ">",
    _UC.SEMVER_GREATER_OR_EQUALS: ">=",
    _UC.NUMBER_GREATER_OR_EQUALS: ">=",
    _UC.NUMBER_EQUALS: "=",
    _UC.NUMBER_NOT_EQUALS: "!=",
    _UC.DATETIME_BEFORE: "BEFORE",
    _UC.DATETIME_AFTER: "AFTER",
    _UC.TEXT_EQUALS: "EQUALS",
    _UC.SENSITIVE_TEXT_EQUALS: "EQUALS",
    _UC.TEXT_NOT_EQUALS: "NOT EQUALS",
    _UC.SENSITIVE_TEXT_NOT_EQUALS: "NOT EQUALS",
    _UC.TEXT_STARTS_WITH_ANY_OF: "STARTS WITH ANY OF",
    _UC.SENSITIVE_TEXT_STARTS_WITH_ANY_OF: "STARTS WITH ANY OF",
    _UC.TEXT_NOT_STARTS_WITH_ANY_OF: "NOT STARTS WITH ANY OF",
    _UC.SENSITIVE_TEXT_NOT_STARTS_WITH_ANY_OF: "NOT STARTS WITH ANY OF",
    _UC.TEXT_ENDS_WITH_ANY_OF: "ENDS WITH ANY OF",
    _UC.SENSITIVE_TEXT_ENDS_WITH_ANY_OF: "ENDS WITH ANY OF",
    _UC.TEXT_NOT_ENDS_WITH_ANY_OF: "NOT ENDS WITH ANY OF",
    _UC.SENSITIVE_TEXT_NOT_ENDS_WITH_ANY_OF: "NOT ENDS WITH ANY OF",
    _UC.ARRAY_CONTAINS_ANY_OF: "ARRAY CONTAINS ANY OF",
    _UC.SENSITIVE_ARRAY_CONTAINS_ANY_OF: "ARRAY CONTAINS ANY OF",
    _UC.ARRAY_NOT_CONTAINS_ANY_OF: "ARRAY NOT CONTAINS ANY OF",
    _UC.SENSITIVE_ARRAY_NOT_CONTAINS_ANY_OF: "ARRAY NOT CONTAINS ANY OF",
}


def number_to_string(n: int | float) -> str:
    """
    Format a number the way it is rendered in evaluation logs and hashed for
    percentage options, so that it is consistent with other platforms: no
    trailing ".0" for integral floats, "NaN", "Infinity" and exponent notation
    only outside the [1e-7, 1e21) range.
    """
    if isinstance(n, int):
        return str(n)
    if math.isnan(n):
        return "NaN"
    if math.isinf(n):
        return "Infinity" if n > 0 else "-Infinity"
    if n.is_integer() and abs(n) < 1e21:
        return str(int(n))
    s = repr(n)
    if "e" not in s:
        return s
    mantissa, exp = s.split("e")
    e = int(exp)
    if -7 < e < 21:
        return format(Decimal(s), "f")
    return f"{mantissa}e{'+' if e > 0 else '-'}{abs(e)}"


def value_to_string(value: Any) -> str:
    if not is_allowed_value(value):
        return _invalid_value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    return number_to_string(value)


def format_string_list(
    items: Iterable[str],
    max_length: int = 0,
    get_omitted_text: Callable[[int], str] | None = None,
    separator: str = ", ",
) -> str:
    items = list(items)
    omitted = 0
    if max_length > 0 and len(items) > max_length:
        omitted = len(items) - max_length
        items = items[:max_length]
    s = separator.join(f"'{item}'" for item in items)
    if omitted and get_omitted_text:
        s += get_omitted_text(omitted)
    return s


def _datetime_to_iso(seconds: float) -> str | None:
    try:
        t = datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return t.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_user_comparator(comparator: Any) -> str:
    return _user_comparator_text.get(comparator, _invalid_operator)


def format_prerequisite_flag_comparator(comparator: Any) -> str:
    match comparator:
        case PrerequisiteFlagComparator.EQUALS:
            return "EQUALS"
        case PrerequisiteFlagComparator.NOT_EQUALS:
            return "NOT EQUALS"
    return _invalid_operator


def format_segment_comparator(comparator: Any) -> str:
    match comparator:
        case SegmentComparator.IS_IN:
            return "IS IN SEGMENT"
        case SegmentComparator.IS_NOT_IN:
            return "IS NOT IN SEGMENT"
    return _invalid_operator


def format_user_condition(condition: UserCondition) -> str:
    return str(EvaluateLogBuilder().append_user_condition(condition))


class LazyString:
    """
    Defers formatting until the string is actually needed, e.g. when a log
    record passing the logger's level check gets formatted.
    """

    __slots__ = ("_fn", "_value")

    def __init__(self, fn: Callable[[], str]):
        self._fn = fn
        self._value: str | None = None

    def __str__(self):
        if self._value is None:
            self._value = self._fn()
        return self._value


class EvaluateLogBuilder:
    """
    Builds the indented, human readable trace of a setting evaluation.
    """

    def __init__(self, eol: str = "\n"):
        self._eol = eol
        self._parts: list[str] = []
        self._indent = ""

    def __str__(self):
        return "".join(self._parts)

    def reset_indent(self) -> EvaluateLogBuilder:
        self._indent = ""
        return self

    def increase_indent(self) -> EvaluateLogBuilder:
        self._indent += "  "
        return self

    def decrease_indent(self) -> EvaluateLogBuilder:
        self._indent = self._indent[:-2]
        return self

    def new_line(self, text: str = "") -> EvaluateLogBuilder:
        self._parts.append(self._eol + self._indent + text)
        return self

    def append(self, text: str) -> EvaluateLogBuilder:
        self._parts.append(text)
        return self

    def _append_user_condition_core(self, attribute: str, comparator: Any, comparison_value: Any = None) -> EvaluateLogBuilder:
        value = comparison_value if comparison_value is not None else _invalid_value
        return self.append(f"User.{attribute} {format_user_comparator(comparator)} '{value}'")

    def _append_user_condition_string(self, attribute: str, comparator: Any, comparison_value: Any, is_sensitive: bool) -> EvaluateLogBuilder:
        if not isinstance(comparison_value, str):
            return self._append_user_condition_core(attribute, comparator)
        return self._append_user_condition_core(attribute, comparator, "<hashed value>" if is_sensitive else comparison_value)

    def _append_user_condition_string_list(self, attribute: str, comparator: Any, comparison_value: Any, is_sensitive: bool) -> EvaluateLogBuilder:
        if not isinstance(comparison_value, (list, tuple)) or not all(isinstance(v, str) for v in comparison_value):
            return self._append_user_condition_core(attribute, comparator)

        comparator_text = format_user_comparator(comparator)
        if is_sensitive:
            n = len(comparison_value)
            return self.append(f"User.{attribute} {comparator_text} [<{n} hashed {'value' if n == 1 else 'values'}>]")

        values = format_string_list(
            comparison_value,
            _string_list_max_length,
            lambda count: f", ... <{count} more {'value' if count == 1 else 'values'}>",
        )
        return self.append(f"User.{attribute} {comparator_text} [{values}]")

    def _append_user_condition_number(self, attribute: str, comparator: Any, comparison_value: Any, is_datetime: bool = False) -> EvaluateLogBuilder:
        if not isinstance(comparison_value, (int, float)) or isinstance(comparison_value, bool):
            return self._append_user_condition_core(attribute, comparator)

        comparator_text = format_user_comparator(comparator)
        value = number_to_string(comparison_value)
        iso = _datetime_to_iso(comparison_value) if is_datetime else None
        if iso is not None:
            return self.append(f"User.{attribute} {comparator_text} '{value}' ({iso} UTC)")
        return self.append(f"User.{attribute} {comparator_text} '{value}'")

    def append_user_condition(self, condition: UserCondition) -> EvaluateLogBuilder:
        attribute = condition.attribute if isinstance(condition.attribute, str) else _invalid_name
        comparator = condition.comparator
        value = condition.comparison_value

        if comparator in _text_list_comparators:
            return self._append_user_condition_string_list(attribute, comparator, value, False)
        if comparator in _text_comparators:
            return self._append_user_condition_string(attribute, comparator, value, False)
        if comparator in _number_comparators:
            return self._append_user_condition_number(attribute, comparator, value)
        if comparator in _sensitive_list_comparators:
            return self._append_user_condition_string_list(attribute, comparator, value, True)
        if comparator in _datetime_comparators:
            return self._append_user_condition_number(attribute, comparator, value, True)
        if comparator in _sensitive_text_comparators:
            return self._append_user_condition_string(attribute, comparator, value, True)

        match value:
            case str():
                return self._append_user_condition_string(attribute, comparator, value, False)
            case tuple() | list():
                return self._append_user_condition_string_list(attribute, comparator, value, False)
            case _:
                return self._append_user_condition_number(attribute, comparator, value)

    def append_prerequisite_flag_condition(self, condition: PrerequisiteFlagCondition, settings: dict[str, Setting]) -> EvaluateLogBuilder:
        if not isinstance(condition.flag_key, str):
            key = _invalid_name
        elif condition.flag_key not in settings:
            key = _invalid_reference
        else:
            key = condition.flag_key
        comparator = format_prerequisite_flag_comparator(condition.comparator)
        value = value_to_string(infer_value(condition.comparison_value))
        return self.append(f"Flag '{key}' {comparator} '{value}'")

    def append_segment_condition(self, condition: SegmentCondition, segments: Sequence[Segment] | None) -> EvaluateLogBuilder:
        index = condition.segment_index
        if segments is not None and isinstance(index, int) and 0 <= index < len(segments):
            name = segments[index].name
            if not isinstance(name, str) or not name:
                name = _invalid_name
        else:
            name = _invalid_reference
        return self.append(f"User {format_segment_comparator(condition.comparator)} '{name}'")

    def append_condition_result(self, result: bool) -> EvaluateLogBuilder:
        return self.append("true" if result else "false")

    def append_condition_consequence(self, result: bool) -> EvaluateLogBuilder:
        self.append(" => ").append_condition_result(result)
        if result:
            return self
        return self.append(", skipping the remaining AND conditions")

    def _append_targeting_rule_then_part(self, rule: TargetingRule, setting_type: SettingType, new_line: bool) -> EvaluateLogBuilder:
        (self.new_line() if new_line else self.append(" ")).append("THEN")

        if rule.has_percentage_options(ignore_if_invalid=True):
            return self.append(" % options")

        value = unwrap_value(rule.served_value.value, setting_type, True) if rule.served_value is not None else None
        return self.append(f" '{value_to_string(value)}'")

    def append_targeting_rule_consequence(
        self,
        rule: TargetingRule,
        setting_type: SettingType,
        is_match_or_error: bool | CannotEvaluate,
        new_line: bool,
    ) -> EvaluateLogBuilder:
        self.increase_indent()
        match is_match_or_error:
            case True:
                outcome = "MATCH, applying rule"
            case False:
                outcome = "no match"
            case _:
                outcome = str(is_match_or_error)
        self._append_targeting_rule_then_part(rule, setting_type, new_line).append(" => ").append(outcome)
        return self.decrease_indent()
