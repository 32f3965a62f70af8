from __future__ import annotations
import re
import json
import logging
import hashlib
import datetime
from enum import IntEnum
from typing import Any

from .evaluate_log import (
    EvaluateLogBuilder,
    LazyString,
    format_segment_comparator,
    format_string_list,
    format_user_condition,
    number_to_string,
    value_to_string,
)
from .model import (
    Condition,
    InvalidConfigModelError,
    PercentageOption,
    PrerequisiteFlagComparator,
    PrerequisiteFlagCondition,
    ProjectConfig,
    SegmentComparator,
    SegmentCondition,
    ServedValue,
    Setting,
    SettingType,
    SettingValue,
    TargetingRule,
    UserComparator,
    UserCondition,
    infer_setting_type,
    infer_value,
    is_compatible_value,
    unwrap_value,
)
from .semver import SemanticVersion, try_parse_version
from .user import IDENTIFIER, User


logger = logging.getLogger(__name__)

_UC = UserComparator

_float_re = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|[+-]?Infinity", flags=re.ASCII)

_targeting_rule_ignored_message = "The current targeting rule is ignored and the evaluation continues with the next rule."


class EvaluationErrorCode(IntEnum):
    UNEXPECTED_ERROR = -1
    NONE = 0
    INVALID_CONFIG_MODEL = 1
    SETTING_VALUE_TYPE_MISMATCH = 2
    CONFIG_JSON_NOT_AVAILABLE = 1000
    SETTING_KEY_MISSING = 1001


class EvaluationError(Exception):
    def __init__(self, error_code: EvaluationErrorCode, message: str):
        super().__init__(message)
        self.error_code = error_code


def get_evaluation_error_code(err: BaseException) -> EvaluationErrorCode:
    if isinstance(err, EvaluationError):
        return err.error_code
    if isinstance(err, InvalidConfigModelError):
        return EvaluationErrorCode.INVALID_CONFIG_MODEL
    return EvaluationErrorCode.UNEXPECTED_ERROR


class CannotEvaluate:
    """
    The outcome of a condition that could not be evaluated (e.g. the user
    object or a user attribute is missing). It counts as a non-match in the
    AND chain but, unlike False, is never inverted and is reported
    separately in the evaluation log.
    """

    __slots__ = ("reason",)

    def __init__(self, reason: str):
        self.reason = reason

    def __str__(self):
        return self.reason

    def __repr__(self):
        return f"CannotEvaluate({self.reason!r})"

    def __eq__(self, other):
        return isinstance(other, CannotEvaluate) and other.reason == self.reason

    def __hash__(self):
        return hash(self.reason)


type ConditionResult = bool | CannotEvaluate

_missing_user_object = CannotEvaluate("cannot evaluate, User Object is missing")


def _missing_user_attribute(name: str) -> CannotEvaluate:
    return CannotEvaluate(f"cannot evaluate, the User.{name} attribute is missing")


def _invalid_user_attribute(name: str, reason: str) -> CannotEvaluate:
    return CannotEvaluate(f"cannot evaluate, the User.{name} attribute is invalid ({reason})")


class EvaluateContext:
    """
    Per evaluation state. A child context is created for each prerequisite
    flag; it shares the user, the settings, the visited flags and the log
    builder with its parent.
    """

    __slots__ = (
        "key",
        "setting",
        "user",
        "settings",
        "visited_flags",
        "log_builder",
        "is_missing_user_object_logged",
        "is_missing_user_object_attribute_logged",
        "_setting_type",
    )

    def __init__(
        self,
        key: str,
        setting: Setting,
        user: User | None,
        settings: dict[str, Setting],
        visited_flags: list[str] | None = None,
        log_builder: EvaluateLogBuilder | None = None,
    ):
        self.key = key
        self.setting = setting
        self.user = user
        self.settings = settings
        self.visited_flags = visited_flags if visited_flags is not None else []
        self.log_builder = log_builder
        self.is_missing_user_object_logged = False
        self.is_missing_user_object_attribute_logged = False
        self._setting_type: SettingType | None = None

    @staticmethod
    def for_prerequisite_flag(key: str, setting: Setting, parent: EvaluateContext) -> EvaluateContext:
        return EvaluateContext(key, setting, parent.user, parent.settings, parent.visited_flags, parent.log_builder)

    @property
    def setting_type(self) -> SettingType:
        if self._setting_type is None:
            self._setting_type = _get_setting_type(self.setting)
        return self._setting_type


class EvaluateResult:
    __slots__ = ("selected_value", "matched_targeting_rule", "matched_percentage_option", "return_value")
    selected_value: ServedValue
    matched_targeting_rule: TargetingRule | None
    matched_percentage_option: PercentageOption | None
    return_value: SettingValue | None

    def __init__(
        self,
        selected_value: ServedValue,
        matched_targeting_rule: TargetingRule | None = None,
        matched_percentage_option: PercentageOption | None = None,
    ):
        self.selected_value = selected_value
        self.matched_targeting_rule = matched_targeting_rule
        self.matched_percentage_option = matched_percentage_option
        self.return_value = None


def _get_setting_type(setting: Setting) -> SettingType:
    # Settings created from override values must not have rules or options.
    if setting.type == SettingType.UNKNOWN and (setting.targeting_rules or setting.percentage_options):
        raise InvalidConfigModelError("Setting type is missing or invalid.")
    return setting.type


def _hash_comparison_value_slice(slice_utf8: bytes, config_salt: str, context_salt: str) -> str:
    return hashlib.sha256(slice_utf8 + config_salt.encode("utf-8") + context_salt.encode("utf-8")).hexdigest()


def _hash_comparison_value(value: str, config_salt: str, context_salt: str) -> str:
    return _hash_comparison_value_slice(value.encode("utf-8"), config_salt, context_salt)


def _percentage_hash(key: str, attribute_value: Any) -> int:
    """
    Hash the setting key and the user attribute to an int in the range
    [0, 100). The result must be the same on every platform so that users
    are assigned the same percentage option everywhere.
    """
    s = key + _user_attribute_value_to_string(attribute_value)
    return int(hashlib.sha1(s.encode("utf-8")).hexdigest()[:7], 16) % 100


def _datetime_to_unix_seconds(t: datetime.datetime) -> float:
    if t.tzinfo is None:
        t = t.replace(tzinfo=datetime.timezone.utc)
    return t.timestamp()


def _is_string_list(v: Any) -> bool:
    return isinstance(v, (list, tuple)) and all(isinstance(e, str) for e in v)


def _user_attribute_value_to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, datetime.datetime):
        return number_to_string(_datetime_to_unix_seconds(value))
    if _is_string_list(value):
        return json.dumps(list(value), separators=(",", ":"), ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return number_to_string(value)
    return str(value)


def _parse_float_strict(s: str) -> float | None:
    s = s.strip()
    if not _float_re.fullmatch(s):
        return None
    return float(s)


def _user_to_json(user: User) -> str:
    def default(o: Any) -> Any:
        if isinstance(o, datetime.datetime):
            return datetime.datetime.fromtimestamp(_datetime_to_unix_seconds(o), tz=datetime.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return str(o)

    return json.dumps(user.attributes(), separators=(",", ":"), ensure_ascii=False, default=default)


def _ensure_str(v: Any) -> str:
    if not isinstance(v, str):
        raise InvalidConfigModelError("Comparison value is missing or invalid.")
    return v


def _ensure_str_list(v: Any) -> tuple[str, ...]:
    if not _is_string_list(v):
        raise InvalidConfigModelError("Comparison value is missing or invalid.")
    return tuple(v)


def _ensure_number(v: Any) -> float:
    if not isinstance(v, (int, float)) or isinstance(v, bool):
        raise InvalidConfigModelError("Comparison value is missing or invalid.")
    return v


def _get_config_salt(setting: Setting) -> str:
    if not isinstance(setting.config_salt, str):
        raise InvalidConfigModelError("Config JSON salt is missing or invalid.")
    return setting.config_salt


class RolloutEvaluator:
    """
    Evaluates settings: targeting rules top to bottom (first full match
    wins), then percentage options, then the setting's own value.
    """

    def evaluate(self, default_value: Any, context: EvaluateContext) -> EvaluateResult:
        logger.debug("RolloutEvaluator.evaluate() called.")

        log_builder = context.log_builder

        # The trace is expensive to build so skip it when it wouldn't be logged.
        if logger.isEnabledFor(logging.INFO):
            context.log_builder = log_builder = EvaluateLogBuilder()
            log_builder.append(f"Evaluating '{context.key}'")
            if context.user is not None:
                log_builder.append(f" for User '{_user_to_json(context.user)}'")
            log_builder.increase_indent()

        return_value = default_value
        try:
            setting_type = context.setting_type
            inferred_type = context.setting.inferred_type

            # Unsupported override values are reported by unwrap_value below.
            if default_value is not None and inferred_type is not None and not is_compatible_value(default_value, inferred_type):
                type_name = inferred_type.name.capitalize()
                raise EvaluationError(
                    EvaluationErrorCode.SETTING_VALUE_TYPE_MISMATCH,
                    "The type of a setting must match the type of the specified default value. "
                    f"Setting's type was {type_name} but the default value's type was {type(default_value).__name__}. "
                    f"Please use a default value which corresponds to the setting type {type_name}.",
                )

            result = self._evaluate_setting(context)
            result.return_value = return_value = unwrap_value(result.selected_value.value, setting_type)
            return result
        except Exception:
            if log_builder is not None:
                log_builder.reset_indent().increase_indent()
            return_value = default_value
            raise
        finally:
            if log_builder is not None:
                returned = "null" if return_value is None else value_to_string(return_value)
                log_builder.new_line(f"Returning '{returned}'.").decrease_indent()
                logger.info("%s", log_builder)

    def _evaluate_setting(self, context: EvaluateContext) -> EvaluateResult:
        setting = context.setting

        if setting.targeting_rules:
            result = self._evaluate_targeting_rules(setting.targeting_rules, context)
            if result is not None:
                return result

        if setting.percentage_options:
            result = self._evaluate_percentage_options(setting.percentage_options, None, context)
            if result is not None:
                return result

        return EvaluateResult(setting)

    def _evaluate_targeting_rules(self, rules: tuple[TargetingRule, ...], context: EvaluateContext) -> EvaluateResult | None:
        log_builder = context.log_builder
        if log_builder:
            log_builder.new_line("Evaluating targeting rules and applying the first match if any:")

        for rule in rules:
            result = self._evaluate_conditions(rule.conditions, rule, context.key, context)

            if result is not True:
                if isinstance(result, CannotEvaluate) and log_builder:
                    log_builder.increase_indent().new_line(_targeting_rule_ignored_message).decrease_indent()
                continue

            if not rule.has_percentage_options():
                return EvaluateResult(rule.served_value, matched_targeting_rule=rule)

            if log_builder:
                log_builder.increase_indent()

            evaluate_result = self._evaluate_percentage_options(rule.percentage_options, rule, context)
            if evaluate_result is not None:
                if log_builder:
                    log_builder.decrease_indent()
                return evaluate_result

            if log_builder:
                log_builder.new_line(_targeting_rule_ignored_message).decrease_indent()

        return None

    def _log_missing_user_object(self, context: EvaluateContext):
        if not context.is_missing_user_object_logged:
            logger.warning(
                "Cannot evaluate targeting rules and %% options for setting '%s' (User Object is missing). "
                "You should pass a User Object to the evaluation methods like `evaluate()` in order to make targeting work properly.",
                context.key,
            )
            context.is_missing_user_object_logged = True

    def _evaluate_percentage_options(
        self,
        options: tuple[PercentageOption, ...],
        matched_rule: TargetingRule | None,
        context: EvaluateContext,
    ) -> EvaluateResult | None:
        log_builder = context.log_builder

        if context.user is None:
            if log_builder:
                log_builder.new_line("Skipping % options because the User Object is missing.")
            self._log_missing_user_object(context)
            return None

        attribute_name = context.setting.percentage_option_attribute
        if attribute_name is None:
            attribute_name = IDENTIFIER
            attribute_value = context.user.identifier
        elif isinstance(attribute_name, str):
            attribute_value = context.user.get_attribute(attribute_name)
        else:
            raise InvalidConfigModelError("Percentage evaluation attribute is invalid.")

        if attribute_value is None:
            if log_builder:
                log_builder.new_line(f"Skipping % options because the User.{attribute_name} attribute is missing.")
            if not context.is_missing_user_object_attribute_logged:
                logger.warning(
                    "Cannot evaluate %% options for setting '%s' (the User.%s attribute is missing). "
                    "You should set the User.%s attribute in order to make targeting work properly.",
                    context.key,
                    attribute_name,
                    attribute_name,
                )
                context.is_missing_user_object_attribute_logged = True
            return None

        if log_builder:
            log_builder.new_line(f"Evaluating % options based on the User.{attribute_name} attribute:")

        hash_value = _percentage_hash(context.key, attribute_value)

        if log_builder:
            log_builder.new_line(
                f"- Computing hash in the [0..99] range from User.{attribute_name} => {hash_value} "
                "(this value is sticky and consistent across all SDKs)"
            )

        bucket = 0
        for i, option in enumerate(options):
            percentage = option.percentage
            if not isinstance(percentage, (int, float)) or isinstance(percentage, bool) or percentage < 0:
                raise InvalidConfigModelError("Percentage is missing or invalid.")

            bucket += percentage
            if hash_value >= bucket:
                continue

            if log_builder:
                value = unwrap_value(option.value, context.setting_type, True)
                log_builder.new_line(
                    f"- Hash value {hash_value} selects % option {i + 1} ({number_to_string(percentage)}%), '{value_to_string(value)}'."
                )

            return EvaluateResult(option, matched_targeting_rule=matched_rule, matched_percentage_option=option)

        raise InvalidConfigModelError("Sum of percentage option percentages is less than 100.")

    def _evaluate_conditions(
        self,
        conditions: tuple[Condition, ...],
        rule: TargetingRule | None,
        context_salt: str,
        context: EvaluateContext,
    ) -> ConditionResult:
        """
        AND together the conditions, stopping at the first one that does not
        evaluate to True.
        """
        result: ConditionResult = True
        log_builder = context.log_builder
        new_line_before_then = False

        if log_builder:
            log_builder.new_line("- ")

        for i, condition in enumerate(conditions):
            if log_builder:
                if i == 0:
                    log_builder.append("IF ").increase_indent()
                else:
                    log_builder.increase_indent().new_line("AND ")

            match condition:
                case UserCondition():
                    result = self._evaluate_user_condition(condition, context_salt, context)
                    new_line_before_then = len(conditions) > 1
                case PrerequisiteFlagCondition():
                    result = self._evaluate_prerequisite_flag_condition(condition, context)
                    new_line_before_then = True
                case SegmentCondition():
                    result = self._evaluate_segment_condition(condition, context)
                    new_line_before_then = result is not _missing_user_object or len(conditions) > 1
                case _:
                    raise InvalidConfigModelError("Condition is missing or invalid.")

            success = result is True

            if log_builder:
                if rule is None or len(conditions) > 1:
                    log_builder.append_condition_consequence(success)
                log_builder.decrease_indent()

            if not success:
                break

        if rule is not None and log_builder:
            log_builder.append_targeting_rule_consequence(rule, context.setting_type, result, new_line_before_then)

        return result

    def _handle_invalid_user_attribute(self, condition: UserCondition, context: EvaluateContext, name: str, reason: str) -> CannotEvaluate:
        logger.warning(
            "Cannot evaluate condition (%s) for setting '%s' (%s). "
            "Please check the User.%s attribute and make sure that its value corresponds to the comparison operator.",
            LazyString(lambda: format_user_condition(condition)),
            context.key,
            reason,
            name,
        )
        return _invalid_user_attribute(name, reason)

    def _get_text(self, condition: UserCondition, context: EvaluateContext, name: str, value: Any) -> str:
        if isinstance(value, str):
            return value
        text = _user_attribute_value_to_string(value)
        logger.warning(
            "Evaluation of condition (%s) for setting '%s' may not produce the expected result "
            "(the User.%s attribute is not a string value, thus it was automatically converted to the string value '%s'). "
            "Please make sure that using a non-string value was intended.",
            LazyString(lambda: format_user_condition(condition)),
            context.key,
            name,
            text,
        )
        return text

    def _get_semver(self, condition: UserCondition, context: EvaluateContext, name: str, value: Any) -> SemanticVersion | CannotEvaluate:
        if isinstance(value, str):
            version = try_parse_version(value.strip())
            if version is not None:
                return version
        reason = f"'{_user_attribute_value_to_string(value)}' is not a valid semantic version"
        return self._handle_invalid_user_attribute(condition, context, name, reason)

    def _get_number(self, condition: UserCondition, context: EvaluateContext, name: str, value: Any) -> float | CannotEvaluate:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            number = _parse_float_strict(value.replace(",", ".", 1))
            if number is not None:
                return number
            if value.strip() == "NaN":
                return float("nan")
        reason = f"'{_user_attribute_value_to_string(value)}' is not a valid decimal number"
        return self._handle_invalid_user_attribute(condition, context, name, reason)

    def _get_unix_seconds(self, condition: UserCondition, context: EvaluateContext, name: str, value: Any) -> float | CannotEvaluate:
        if isinstance(value, datetime.datetime):
            return _datetime_to_unix_seconds(value)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            number = _parse_float_strict(value.replace(",", ".", 1))
            if number is not None:
                return number
            if value.strip() == "NaN":
                return float("nan")
        reason = f"'{_user_attribute_value_to_string(value)}' is not a valid Unix timestamp (number of seconds elapsed since Unix epoch)"
        return self._handle_invalid_user_attribute(condition, context, name, reason)

    def _get_string_list(self, condition: UserCondition, context: EvaluateContext, name: str, value: Any) -> tuple[str, ...] | CannotEvaluate:
        items = value
        if isinstance(items, str):
            try:
                items = json.loads(items)
            except ValueError:
                pass
        if _is_string_list(items):
            return tuple(items)
        reason = f"'{_user_attribute_value_to_string(value)}' is not a valid string array"
        return self._handle_invalid_user_attribute(condition, context, name, reason)

    def _evaluate_user_condition(self, condition: UserCondition, context_salt: str, context: EvaluateContext) -> ConditionResult:
        if context.log_builder:
            context.log_builder.append_user_condition(condition)

        if context.user is None:
            self._log_missing_user_object(context)
            return _missing_user_object

        name = condition.attribute
        if not isinstance(name, str):
            raise InvalidConfigModelError("Comparison attribute is missing or invalid.")

        value = context.user.get_attribute(name)
        # Empty strings count as missing too.
        if value is None or (isinstance(value, str) and value == ""):
            if not context.is_missing_user_object_attribute_logged:
                logger.warning(
                    "Cannot evaluate condition (%s) for setting '%s' (the User.%s attribute is missing). "
                    "You should set the User.%s attribute in order to make targeting work properly.",
                    LazyString(lambda: format_user_condition(condition)),
                    context.key,
                    name,
                    name,
                )
                context.is_missing_user_object_attribute_logged = True
            return _missing_user_attribute(name)

        comparator = condition.comparator
        cv = condition.comparison_value

        match comparator:
            case _UC.TEXT_EQUALS | _UC.TEXT_NOT_EQUALS:
                text = self._get_text(condition, context, name, value)
                return (text == _ensure_str(cv)) != (comparator == _UC.TEXT_NOT_EQUALS)

            case _UC.SENSITIVE_TEXT_EQUALS | _UC.SENSITIVE_TEXT_NOT_EQUALS:
                text = self._get_text(condition, context, name, value)
                h = _hash_comparison_value(text, _get_config_salt(context.setting), context_salt)
                return (h == _ensure_str(cv)) != (comparator == _UC.SENSITIVE_TEXT_NOT_EQUALS)

            case _UC.TEXT_IS_ONE_OF | _UC.TEXT_IS_NOT_ONE_OF:
                text = self._get_text(condition, context, name, value)
                negate = comparator == _UC.TEXT_IS_NOT_ONE_OF
                return any(_ensure_str(item) == text for item in _ensure_str_list(cv)) != negate

            case _UC.SENSITIVE_TEXT_IS_ONE_OF | _UC.SENSITIVE_TEXT_IS_NOT_ONE_OF:
                text = self._get_text(condition, context, name, value)
                h = _hash_comparison_value(text, _get_config_salt(context.setting), context_salt)
                negate = comparator == _UC.SENSITIVE_TEXT_IS_NOT_ONE_OF
                return any(item == h for item in _ensure_str_list(cv)) != negate

            case _UC.TEXT_STARTS_WITH_ANY_OF | _UC.TEXT_NOT_STARTS_WITH_ANY_OF:
                text = self._get_text(condition, context, name, value)
                negate = comparator == _UC.TEXT_NOT_STARTS_WITH_ANY_OF
                return any(text.startswith(item) for item in _ensure_str_list(cv)) != negate

            case _UC.TEXT_ENDS_WITH_ANY_OF | _UC.TEXT_NOT_ENDS_WITH_ANY_OF:
                text = self._get_text(condition, context, name, value)
                negate = comparator == _UC.TEXT_NOT_ENDS_WITH_ANY_OF
                return any(text.endswith(item) for item in _ensure_str_list(cv)) != negate

            case _UC.SENSITIVE_TEXT_STARTS_WITH_ANY_OF | _UC.SENSITIVE_TEXT_NOT_STARTS_WITH_ANY_OF:
                text = self._get_text(condition, context, name, value)
                negate = comparator == _UC.SENSITIVE_TEXT_NOT_STARTS_WITH_ANY_OF
                return self._evaluate_sensitive_text_slice(text, _ensure_str_list(cv), context, context_salt, True) != negate

            case _UC.SENSITIVE_TEXT_ENDS_WITH_ANY_OF | _UC.SENSITIVE_TEXT_NOT_ENDS_WITH_ANY_OF:
                text = self._get_text(condition, context, name, value)
                negate = comparator == _UC.SENSITIVE_TEXT_NOT_ENDS_WITH_ANY_OF
                return self._evaluate_sensitive_text_slice(text, _ensure_str_list(cv), context, context_salt, False) != negate

            case _UC.TEXT_CONTAINS_ANY_OF | _UC.TEXT_NOT_CONTAINS_ANY_OF:
                text = self._get_text(condition, context, name, value)
                negate = comparator == _UC.TEXT_NOT_CONTAINS_ANY_OF
                return any(item in text for item in _ensure_str_list(cv)) != negate

            case _UC.SEMVER_IS_ONE_OF | _UC.SEMVER_IS_NOT_ONE_OF:
                version = self._get_semver(condition, context, name, value)
                if isinstance(version, CannotEvaluate):
                    return version
                return self._evaluate_semver_is_one_of(version, _ensure_str_list(cv), comparator == _UC.SEMVER_IS_NOT_ONE_OF)

            case _UC.SEMVER_LESS | _UC.SEMVER_LESS_OR_EQUALS | _UC.SEMVER_GREATER | _UC.SEMVER_GREATER_OR_EQUALS:
                version = self._get_semver(condition, context, name, value)
                if isinstance(version, CannotEvaluate):
                    return version
                other = try_parse_version(_ensure_str(cv).strip())
                if other is None:
                    return False
                c = version.compare(other)
                match comparator:
                    case _UC.SEMVER_LESS:
                        return c < 0
                    case _UC.SEMVER_LESS_OR_EQUALS:
                        return c <= 0
                    case _UC.SEMVER_GREATER:
                        return c > 0
                return c >= 0

            case (
                _UC.NUMBER_EQUALS
                | _UC.NUMBER_NOT_EQUALS
                | _UC.NUMBER_LESS
                | _UC.NUMBER_LESS_OR_EQUALS
                | _UC.NUMBER_GREATER
                | _UC.NUMBER_GREATER_OR_EQUALS
            ):
                number = self._get_number(condition, context, name, value)
                if isinstance(number, CannotEvaluate):
                    return number
                other = _ensure_number(cv)
                match comparator:
                    case _UC.NUMBER_EQUALS:
                        return number == other
                    case _UC.NUMBER_NOT_EQUALS:
                        return number != other
                    case _UC.NUMBER_LESS:
                        return number < other
                    case _UC.NUMBER_LESS_OR_EQUALS:
                        return number <= other
                    case _UC.NUMBER_GREATER:
                        return number > other
                return number >= other

            case _UC.DATETIME_BEFORE | _UC.DATETIME_AFTER:
                seconds = self._get_unix_seconds(condition, context, name, value)
                if isinstance(seconds, CannotEvaluate):
                    return seconds
                other = _ensure_number(cv)
                return seconds < other if comparator == _UC.DATETIME_BEFORE else seconds > other

            case _UC.ARRAY_CONTAINS_ANY_OF | _UC.ARRAY_NOT_CONTAINS_ANY_OF:
                items = self._get_string_list(condition, context, name, value)
                if isinstance(items, CannotEvaluate):
                    return items
                values = _ensure_str_list(cv)
                negate = comparator == _UC.ARRAY_NOT_CONTAINS_ANY_OF
                return any(item in values for item in items) != negate

            case _UC.SENSITIVE_ARRAY_CONTAINS_ANY_OF | _UC.SENSITIVE_ARRAY_NOT_CONTAINS_ANY_OF:
                items = self._get_string_list(condition, context, name, value)
                if isinstance(items, CannotEvaluate):
                    return items
                values = _ensure_str_list(cv)
                salt = _get_config_salt(context.setting)
                negate = comparator == _UC.SENSITIVE_ARRAY_NOT_CONTAINS_ANY_OF
                return any(_hash_comparison_value(item, salt, context_salt) in values for item in items) != negate

        raise InvalidConfigModelError("Comparison operator is missing or invalid.")

    def _evaluate_sensitive_text_slice(
        self,
        text: str,
        values: tuple[str, ...],
        context: EvaluateContext,
        context_salt: str,
        starts_with: bool,
    ) -> bool:
        """
        Each comparison value has the form "<byte length>_<hash>", where the
        hash is computed from the first (or last) <byte length> UTF-8 bytes of
        the expected text.
        """
        salt = _get_config_salt(context.setting)
        text_utf8 = text.encode("utf-8")
        for item in values:
            length_str, sep, expected_hash = item.partition("_")
            if not sep or not length_str.strip().isdecimal() or not expected_hash:
                raise InvalidConfigModelError("Comparison value is missing or invalid.")
            length = int(length_str)
            if len(text_utf8) < length:
                continue
            slice_utf8 = text_utf8[:length] if starts_with else text_utf8[len(text_utf8) - length :]
            if _hash_comparison_value_slice(slice_utf8, salt, context_salt) == expected_hash:
                return True
        return False

    def _evaluate_semver_is_one_of(self, version: SemanticVersion, values: tuple[str, ...], negate: bool) -> bool:
        result = False
        for item in values:
            # Empty items are ignored and an invalid item makes the whole
            # condition a non-match (even when negated) for compatibility
            # with older evaluation logic. Earlier matches don't stop the
            # scan for the same reason.
            if not item:
                continue
            other = try_parse_version(item.strip())
            if other is None:
                return False
            if not result and version.compare(other) == 0:
                result = True
        return result != negate

    def _evaluate_prerequisite_flag_condition(self, condition: PrerequisiteFlagCondition, context: EvaluateContext) -> bool:
        log_builder = context.log_builder
        if log_builder:
            log_builder.append_prerequisite_flag_condition(condition, context.settings)

        key = condition.flag_key
        if not isinstance(key, str):
            raise InvalidConfigModelError("Prerequisite flag key is missing or invalid.")

        prerequisite = context.settings.get(key)
        if prerequisite is None:
            raise InvalidConfigModelError("Prerequisite flag is missing or invalid.")

        prerequisite_type = _get_setting_type(prerequisite)
        cv = condition.comparison_value
        comparison_value: SettingValue | None = None
        if prerequisite_type != SettingType.UNKNOWN:
            inferred_type = prerequisite_type
            comparison_value = unwrap_value(cv, prerequisite_type, True)
        else:
            inferred_type = infer_setting_type(prerequisite.value)
            if inferred_type is not None:
                comparison_value = unwrap_value(cv, inferred_type, True)
                if inferred_type == SettingType.DOUBLE:
                    # Number override values are compared to both int and double comparison values.
                    int_value = unwrap_value(cv, SettingType.INT, True)
                    if comparison_value is None:
                        comparison_value = int_value
                    elif int_value is not None:
                        comparison_value = None

        if comparison_value is None and inferred_type is not None:
            raise InvalidConfigModelError(
                f"Type mismatch between comparison value '{value_to_string(infer_value(cv))}' and prerequisite flag '{key}'."
            )

        visited = context.visited_flags
        visited.append(context.key)
        if key in visited:
            visited.append(key)
            cycle = format_string_list(visited, separator=" -> ")
            raise InvalidConfigModelError(f"Circular dependency detected between the following depending flags: {cycle}.")

        prerequisite_context = EvaluateContext.for_prerequisite_flag(key, prerequisite, context)

        if log_builder:
            log_builder.new_line("(").increase_indent().new_line(f"Evaluating prerequisite flag '{key}':")

        prerequisite_result = self._evaluate_setting(prerequisite_context)

        visited.pop()

        prerequisite_value = unwrap_value(prerequisite_result.selected_value.value, prerequisite_type)

        match condition.comparator:
            case PrerequisiteFlagComparator.EQUALS:
                result = prerequisite_value == comparison_value
            case PrerequisiteFlagComparator.NOT_EQUALS:
                result = prerequisite_value != comparison_value
            case _:
                raise InvalidConfigModelError("Comparison operator is missing or invalid.")

        if log_builder:
            log_builder.new_line(f"Prerequisite flag evaluation result: '{value_to_string(prerequisite_value)}'.")
            log_builder.new_line("Condition (").append_prerequisite_flag_condition(condition, context.settings)
            log_builder.append(") evaluates to ").append_condition_result(result).append(".")
            log_builder.decrease_indent().new_line(")")

        return result

    def _evaluate_segment_condition(self, condition: SegmentCondition, context: EvaluateContext) -> ConditionResult:
        segments = context.setting.segments

        log_builder = context.log_builder
        if log_builder:
            log_builder.append_segment_condition(condition, segments)

        if context.user is None:
            self._log_missing_user_object(context)
            return _missing_user_object

        index = condition.segment_index
        if not isinstance(index, int) or not 0 <= index < len(segments):
            raise InvalidConfigModelError("Segment reference is invalid.")

        segment = segments[index]
        if not isinstance(segment.name, str) or not segment.name:
            raise InvalidConfigModelError("Segment name is missing.")

        if log_builder:
            log_builder.new_line("(").increase_indent().new_line(f"Evaluating segment '{segment.name}':")

        segment_result = self._evaluate_conditions(segment.conditions, None, segment.name, context)
        result = segment_result

        if not isinstance(result, CannotEvaluate):
            match condition.comparator:
                case SegmentComparator.IS_IN:
                    pass
                case SegmentComparator.IS_NOT_IN:
                    result = not result
                case _:
                    raise InvalidConfigModelError("Comparison operator is missing or invalid.")

        if log_builder:
            log_builder.new_line("Segment evaluation result: ")
            if isinstance(result, CannotEvaluate):
                log_builder.append(str(result))
            else:
                in_or_not = SegmentComparator.IS_IN if segment_result else SegmentComparator.IS_NOT_IN
                log_builder.append(f"User {format_segment_comparator(in_or_not)}")
            log_builder.append(".")

            log_builder.new_line("Condition (").append_segment_condition(condition, segments).append(")")
            if isinstance(result, CannotEvaluate):
                log_builder.append(" failed to evaluate")
            else:
                log_builder.append(" evaluates to ").append_condition_result(result)
            log_builder.append(".")
            log_builder.decrease_indent().new_line(")")

        return result


class EvaluationDetails:
    """
    The result of evaluating a setting along with the details of how the
    value was selected.
    """

    __slots__ = (
        "key",
        "value",
        "variation_id",
        "fetch_time",
        "user",
        "is_default_value",
        "error_code",
        "error_message",
        "error_exception",
        "matched_targeting_rule",
        "matched_percentage_option",
    )
    key: str
    value: SettingValue | None
    variation_id: str | None
    fetch_time: datetime.datetime | None
    user: User | None
    is_default_value: bool
    error_code: EvaluationErrorCode
    error_message: str | None
    error_exception: BaseException | None
    matched_targeting_rule: TargetingRule | None
    matched_percentage_option: PercentageOption | None

    def __repr__(self):
        return f"EvaluationDetails(key={self.key!r}, value={self.value!r}, error_code={self.error_code!r})"

    @staticmethod
    def from_evaluate_result(
        key: str,
        result: EvaluateResult,
        fetch_time: datetime.datetime | None = None,
        user: User | None = None,
    ) -> EvaluationDetails:
        d = EvaluationDetails()
        d.key = key
        d.value = result.return_value
        d.variation_id = result.selected_value.variation_id
        d.fetch_time = fetch_time
        d.user = user
        d.is_default_value = False
        d.error_code = EvaluationErrorCode.NONE
        d.error_message = None
        d.error_exception = None
        d.matched_targeting_rule = result.matched_targeting_rule
        d.matched_percentage_option = result.matched_percentage_option
        return d

    @staticmethod
    def from_default_value(
        key: str,
        default_value: Any,
        fetch_time: datetime.datetime | None = None,
        user: User | None = None,
        error_message: str | None = None,
        error_exception: BaseException | None = None,
        error_code: EvaluationErrorCode = EvaluationErrorCode.UNEXPECTED_ERROR,
    ) -> EvaluationDetails:
        d = EvaluationDetails()
        d.key = key
        d.value = default_value
        d.variation_id = None
        d.fetch_time = fetch_time
        d.user = user
        d.is_default_value = True
        d.error_code = error_code
        d.error_message = error_message
        d.error_exception = error_exception
        d.matched_targeting_rule = None
        d.matched_percentage_option = None
        return d


def _fetch_time(remote_config: ProjectConfig | None) -> datetime.datetime | None:
    if remote_config is None or remote_config.is_empty:
        return None
    return remote_config.fetch_time


def evaluate_one(
    evaluator: RolloutEvaluator,
    settings: dict[str, Setting] | None,
    key: str,
    default_value: Any,
    user: User | None,
    remote_config: ProjectConfig | None,
) -> EvaluationDetails:
    """
    Evaluate a single setting. Missing config data and unknown keys produce
    default-valued details. Evaluation errors propagate to the caller.
    """
    if settings is None:
        message = (
            f"Config JSON is not present when evaluating setting '{key}'. "
            f"Returning the `default_value` parameter that you specified in your application: '{default_value}'."
        )
        logger.error("%s", message)
        return EvaluationDetails.from_default_value(
            key, default_value, _fetch_time(remote_config), user, message, None, EvaluationErrorCode.CONFIG_JSON_NOT_AVAILABLE
        )

    setting = settings.get(key)
    if setting is None:
        message = (
            f"Failed to evaluate setting '{key}' (the key was not found in config JSON). "
            f"Returning the `default_value` parameter that you specified in your application: '{default_value}'. "
            f"Available keys: [{format_string_list(settings)}]."
        )
        logger.error("%s", message)
        return EvaluationDetails.from_default_value(
            key, default_value, _fetch_time(remote_config), user, message, None, EvaluationErrorCode.SETTING_KEY_MISSING
        )

    result = evaluator.evaluate(default_value, EvaluateContext(key, setting, user, settings))
    return EvaluationDetails.from_evaluate_result(key, result, _fetch_time(remote_config), user)


def evaluate_all(
    evaluator: RolloutEvaluator,
    settings: dict[str, Setting] | None,
    user: User | None,
    remote_config: ProjectConfig | None,
) -> tuple[list[EvaluationDetails], list[Exception]]:
    """
    Evaluate every setting with no default value. Per setting failures are
    collected and returned along with default-valued details.
    """
    errors: list[Exception] = []
    if settings is None:
        logger.error("Config JSON is not present. Returning empty result.")
        return [], errors

    details: list[EvaluationDetails] = []
    for key, setting in settings.items():
        try:
            result = evaluator.evaluate(None, EvaluateContext(key, setting, user, settings))
            d = EvaluationDetails.from_evaluate_result(key, result, _fetch_time(remote_config), user)
        except Exception as e:
            errors.append(e)
            d = EvaluationDetails.from_default_value(key, None, _fetch_time(remote_config), user, str(e), e, get_evaluation_error_code(e))
        details.append(d)
    return details, errors


def find_key_and_value(settings: dict[str, Setting] | None, variation_id: str) -> tuple[str, SettingValue] | None:
    """
    Find the setting and the value that belong to the given variation id.
    """
    if settings is None:
        logger.error("Config JSON is not present. Returning None.")
        return None

    for key, setting in settings.items():
        setting_type = _get_setting_type(setting)

        if setting.variation_id == variation_id:
            return key, unwrap_value(setting.value, setting_type)

        for rule in setting.targeting_rules:
            if rule.has_percentage_options():
                for option in rule.percentage_options:
                    if option.variation_id == variation_id:
                        return key, unwrap_value(option.value, setting_type)
            elif rule.served_value.variation_id == variation_id:
                return key, unwrap_value(rule.served_value.value, setting_type)

        for option in setting.percentage_options:
            if option.variation_id == variation_id:
                return key, unwrap_value(option.value, setting_type)

    logger.error("Could not find the setting for the specified variation ID: '%s'.", variation_id)
    return None
