from __future__ import annotations
import os
import json
import time
import datetime
import jsonschema
from enum import IntEnum
from typing import Any


type SettingValue = bool | str | int | float
type VariationId = str | None
type DictConfig = dict[str, Any]


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _config_schema = json.load(f)

_max_safe_integer = (1 << 53) - 1


class InvalidConfigModelError(ValueError):
    """
    Raised during evaluation when the config model violates one of its
    invariants (e.g. percentages summing to less than 100, circular
    prerequisite flags).
    """


class SettingType(IntEnum):
    # Only used internally for settings created from simple flag override values.
    UNKNOWN = -1
    BOOLEAN = 0
    STRING = 1
    INT = 2
    DOUBLE = 3


class RedirectMode(IntEnum):
    NO = 0
    SHOULD = 1
    FORCE = 2


class UserComparator(IntEnum):
    TEXT_IS_ONE_OF = 0
    TEXT_IS_NOT_ONE_OF = 1
    TEXT_CONTAINS_ANY_OF = 2
    TEXT_NOT_CONTAINS_ANY_OF = 3
    SEMVER_IS_ONE_OF = 4
    SEMVER_IS_NOT_ONE_OF = 5
    SEMVER_LESS = 6
    SEMVER_LESS_OR_EQUALS = 7
    SEMVER_GREATER = 8
    SEMVER_GREATER_OR_EQUALS = 9
    NUMBER_EQUALS = 10
    NUMBER_NOT_EQUALS = 11
    NUMBER_LESS = 12
    NUMBER_LESS_OR_EQUALS = 13
    NUMBER_GREATER = 14
    NUMBER_GREATER_OR_EQUALS = 15
    SENSITIVE_TEXT_IS_ONE_OF = 16
    SENSITIVE_TEXT_IS_NOT_ONE_OF = 17
    DATETIME_BEFORE = 18
    DATETIME_AFTER = 19
    SENSITIVE_TEXT_EQUALS = 20
    SENSITIVE_TEXT_NOT_EQUALS = 21
    SENSITIVE_TEXT_STARTS_WITH_ANY_OF = 22
    SENSITIVE_TEXT_NOT_STARTS_WITH_ANY_OF = 23
    SENSITIVE_TEXT_ENDS_WITH_ANY_OF = 24
    SENSITIVE_TEXT_NOT_ENDS_WITH_ANY_OF = 25
    SENSITIVE_ARRAY_CONTAINS_ANY_OF = 26
    SENSITIVE_ARRAY_NOT_CONTAINS_ANY_OF = 27
    TEXT_EQUALS = 28
    TEXT_NOT_EQUALS = 29
    TEXT_STARTS_WITH_ANY_OF = 30
    TEXT_NOT_STARTS_WITH_ANY_OF = 31
    TEXT_ENDS_WITH_ANY_OF = 32
    TEXT_NOT_ENDS_WITH_ANY_OF = 33
    ARRAY_CONTAINS_ANY_OF = 34
    ARRAY_NOT_CONTAINS_ANY_OF = 35


class PrerequisiteFlagComparator(IntEnum):
    EQUALS = 0
    NOT_EQUALS = 1


class SegmentComparator(IntEnum):
    IS_IN = 0
    IS_NOT_IN = 1


def _comparator[E: IntEnum](enum_type: type[E], value: int) -> E | int:
    # Unknown operators are kept and reported when a flag is evaluated.
    try:
        return enum_type(value)
    except ValueError:
        return value


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def infer_setting_type(value: Any) -> SettingType | None:
    """
    Infer the setting type of a plain python value. Numbers are always
    inferred as DOUBLE. Returns None for unsupported values.
    """
    if isinstance(value, bool):
        return SettingType.BOOLEAN
    if isinstance(value, str):
        return SettingType.STRING
    if _is_number(value):
        return SettingType.DOUBLE
    return None


def is_allowed_value(value: Any) -> bool:
    return infer_setting_type(value) is not None


def is_compatible_value(value: Any, setting_type: SettingType) -> bool:
    match setting_type:
        case SettingType.BOOLEAN:
            return isinstance(value, bool)
        case SettingType.STRING:
            return isinstance(value, str)
        case SettingType.INT | SettingType.DOUBLE:
            return _is_number(value)
    return False


def unwrap_value(setting_value: Any, setting_type: SettingType, ignore_if_invalid: bool = False) -> SettingValue | None:
    """
    Extract the python value from a setting value model ({"b": ...},
    {"s": ...}, {"i": ...} or {"d": ...}) according to the setting type.

    Settings created from simple override values (UNKNOWN type) carry the
    python value directly.
    """
    model = setting_value if isinstance(setting_value, dict) else {}
    match setting_type:
        case SettingType.BOOLEAN:
            value = model.get("b")
            if isinstance(value, bool):
                return value
        case SettingType.STRING:
            value = model.get("s")
            if isinstance(value, str):
                return value
        case SettingType.INT:
            value = model.get("i")
            if _is_number(value) and float(value).is_integer() and abs(value) <= _max_safe_integer:
                return int(value)
        case SettingType.DOUBLE:
            value = model.get("d")
            if _is_number(value):
                return float(value)
        case SettingType.UNKNOWN:
            if is_allowed_value(setting_value):
                return setting_value
            if ignore_if_invalid:
                return None
            if setting_value is None:
                raise InvalidConfigModelError("Setting value is null.")
            raise InvalidConfigModelError(f"Setting value '{setting_value}' is of an unsupported type ({type(setting_value).__name__}).")

    if ignore_if_invalid:
        return None
    raise InvalidConfigModelError("Setting value is missing or invalid.")


def infer_value(setting_value: Any) -> SettingValue | None:
    """
    Infer the value of a setting value model without knowing the setting
    type. Returns None when zero or more than one value is present.
    """
    if not isinstance(setting_value, dict):
        return None
    value = None
    for k, check in (
        ("b", lambda v: isinstance(v, bool)),
        ("s", lambda v: isinstance(v, str)),
        ("i", lambda v: _is_number(v) and float(v).is_integer()),
        ("d", _is_number),
    ):
        current = setting_value.get(k)
        if current is None:
            continue
        if value is not None or not check(current):
            return None
        value = current
    return value


class Preferences:
    __slots__ = ("base_url", "redirect_mode", "salt")
    base_url: str | None
    redirect_mode: RedirectMode | None
    salt: str | None

    def __init__(self, base_url: str | None = None, redirect_mode: RedirectMode | None = None, salt: str | None = None):
        self.base_url = base_url
        self.redirect_mode = redirect_mode
        self.salt = salt

    @staticmethod
    def from_dict(d: DictConfig) -> Preferences:
        r = d.get("r")
        return Preferences(d.get("u"), RedirectMode(r) if r is not None else None, d.get("s"))


class ServedValue:
    """
    A value served by a setting, a targeting rule or a percentage option.
    `value` holds the raw setting value model, which is unwrapped according to
    the type of the owning setting at evaluation time.
    """

    __slots__ = ("value", "variation_id")
    value: Any
    variation_id: VariationId

    def __init__(self, value: Any, variation_id: VariationId = None):
        self.value = value
        self.variation_id = variation_id

    @staticmethod
    def from_dict(d: DictConfig) -> ServedValue:
        return ServedValue(d["v"], d.get("i"))


class PercentageOption(ServedValue):
    __slots__ = ("percentage",)
    percentage: float

    def __init__(self, percentage: float, value: Any, variation_id: VariationId = None):
        super().__init__(value, variation_id)
        self.percentage = percentage

    @staticmethod
    def from_dict(d: DictConfig) -> PercentageOption:
        return PercentageOption(d["p"], d["v"], d.get("i"))


class UserCondition:
    __slots__ = ("attribute", "comparator", "comparison_value")
    attribute: str
    comparator: UserComparator | int
    # str for text/semver comparators, number for number/datetime comparators
    # and a tuple of strings for list comparators.
    comparison_value: str | int | float | tuple[str, ...]

    def __init__(self, attribute: str, comparator: UserComparator | int, comparison_value: str | int | float | tuple[str, ...]):
        self.attribute = attribute
        self.comparator = comparator
        self.comparison_value = comparison_value

    @staticmethod
    def from_dict(d: DictConfig) -> UserCondition:
        if "l" in d:
            value = tuple(d["l"])
        elif "d" in d:
            value = d["d"]
        else:
            value = d["s"]
        return UserCondition(d["a"], _comparator(UserComparator, d["c"]), value)


class PrerequisiteFlagCondition:
    __slots__ = ("flag_key", "comparator", "comparison_value")
    flag_key: str
    comparator: PrerequisiteFlagComparator | int
    comparison_value: Any

    def __init__(self, flag_key: str, comparator: PrerequisiteFlagComparator | int, comparison_value: Any):
        self.flag_key = flag_key
        self.comparator = comparator
        self.comparison_value = comparison_value

    @staticmethod
    def from_dict(d: DictConfig) -> PrerequisiteFlagCondition:
        return PrerequisiteFlagCondition(d["f"], _comparator(PrerequisiteFlagComparator, d["c"]), d["v"])


class SegmentCondition:
    __slots__ = ("segment_index", "comparator")
    segment_index: int
    comparator: SegmentComparator | int

    def __init__(self, segment_index: int, comparator: SegmentComparator | int):
        self.segment_index = segment_index
        self.comparator = comparator

    @staticmethod
    def from_dict(d: DictConfig) -> SegmentCondition:
        return SegmentCondition(d["s"], _comparator(SegmentComparator, d["c"]))


type Condition = UserCondition | PrerequisiteFlagCondition | SegmentCondition


def _condition_from_dict(d: DictConfig) -> Condition:
    match d:
        case {"u": u}:
            return UserCondition.from_dict(u)
        case {"p": p}:
            return PrerequisiteFlagCondition.from_dict(p)
        case {"s": s}:
            return SegmentCondition.from_dict(s)
    raise ValueError("condition must have exactly one of u, p, s")


class TargetingRule:
    __slots__ = ("conditions", "served_value", "percentage_options")
    conditions: tuple[Condition, ...]
    served_value: ServedValue | None
    percentage_options: tuple[PercentageOption, ...] | None

    def __init__(
        self,
        conditions: tuple[Condition, ...],
        served_value: ServedValue | None = None,
        percentage_options: tuple[PercentageOption, ...] | None = None,
    ):
        self.conditions = conditions
        self.served_value = served_value
        self.percentage_options = percentage_options

    @staticmethod
    def from_dict(d: DictConfig) -> TargetingRule:
        return TargetingRule(
            tuple(_condition_from_dict(c) for c in d["c"]),
            ServedValue.from_dict(d["s"]) if "s" in d else None,
            tuple(PercentageOption.from_dict(p) for p in d["p"]) if "p" in d else None,
        )

    def has_percentage_options(self, ignore_if_invalid: bool = False) -> bool | None:
        """
        Tell whether the THEN part of the rule is a list of percentage options
        rather than a single served value.
        """
        if self.served_value is not None:
            if self.percentage_options is None:
                return False
        elif self.percentage_options:
            return True
        if ignore_if_invalid:
            return None
        raise InvalidConfigModelError("Targeting rule THEN part is missing or invalid.")


class Segment:
    __slots__ = ("name", "conditions")
    name: str
    conditions: tuple[UserCondition, ...]

    def __init__(self, name: str, conditions: tuple[UserCondition, ...]):
        self.name = name
        self.conditions = conditions

    @staticmethod
    def from_dict(d: DictConfig) -> Segment:
        return Segment(d["n"], tuple(UserCondition.from_dict(c) for c in d["r"]))


class Setting(ServedValue):
    __slots__ = (
        "type",
        "percentage_option_attribute",
        "targeting_rules",
        "percentage_options",
        "config_salt",
        "segments",
    )
    type: SettingType
    percentage_option_attribute: str | None
    targeting_rules: tuple[TargetingRule, ...]
    percentage_options: tuple[PercentageOption, ...]
    # Back-references to the owning config, stamped once at load time.
    config_salt: str | None
    segments: tuple[Segment, ...]

    def __init__(
        self,
        type: SettingType,
        value: Any,
        variation_id: VariationId = None,
        percentage_option_attribute: str | None = None,
        targeting_rules: tuple[TargetingRule, ...] = (),
        percentage_options: tuple[PercentageOption, ...] = (),
    ):
        super().__init__(value, variation_id)
        self.type = type
        self.percentage_option_attribute = percentage_option_attribute
        self.targeting_rules = targeting_rules
        self.percentage_options = percentage_options
        self.config_salt = None
        self.segments = ()

    @staticmethod
    def from_dict(d: DictConfig) -> Setting:
        return Setting(
            SettingType(d["t"]),
            d["v"],
            d.get("i"),
            d.get("a"),
            tuple(TargetingRule.from_dict(r) for r in d.get("r", [])),
            tuple(PercentageOption.from_dict(p) for p in d.get("p", [])),
        )

    @staticmethod
    def from_value(value: SettingValue) -> Setting:
        """
        Create a setting from a simple flag override value.
        """
        return Setting(SettingType.UNKNOWN, value)

    @property
    def inferred_type(self) -> SettingType | None:
        """
        The declared type, or the type inferred from the value for settings
        created from simple override values (None when unsupported).
        """
        if self.type != SettingType.UNKNOWN:
            return self.type
        return infer_setting_type(self.value)


class Config:
    """
    A parsed config document. Treat instances as immutable once created.
    """

    __slots__ = ("preferences", "segments", "settings")
    preferences: Preferences | None
    segments: tuple[Segment, ...]
    settings: dict[str, Setting]

    @property
    def salt(self) -> str | None:
        return self.preferences.salt if self.preferences else None

    @staticmethod
    def from_json(s: str) -> Config:
        return Config.from_dict(json.loads(s))

    @staticmethod
    def from_dict(c: DictConfig) -> Config:
        """
        Validate the raw document against the schema and build the config.
        Raises jsonschema.ValidationError for structurally invalid documents.
        """
        jsonschema.validate(c, _config_schema)

        config = Config()
        config.preferences = Preferences.from_dict(c["p"]) if "p" in c else None
        config.segments = tuple(Segment.from_dict(s) for s in c.get("s", []))
        config.settings = {}
        for key, s in c.get("f", {}).items():
            setting = Setting.from_dict(s)
            setting.config_salt = config.salt
            setting.segments = config.segments
            config.settings[key] = setting
        return config


class ProjectConfig:
    """
    A cache record: the raw config JSON, the parsed config (None when empty),
    the fetch timestamp in milliseconds and the HTTP ETag.
    """

    serialization_format_version = "v2"
    EMPTY: ProjectConfig

    __slots__ = ("config_json", "config", "timestamp", "http_etag")
    config_json: str | None
    config: Config | None
    timestamp: int
    http_etag: str | None

    def __init__(self, config_json: str | None, config: Config | None, timestamp: int, http_etag: str | None):
        self.config_json = config_json
        self.config = config
        self.timestamp = timestamp
        self.http_etag = http_etag

    def __repr__(self):
        return f"ProjectConfig(timestamp={self.timestamp!r}, http_etag={self.http_etag!r}, empty={self.is_empty!r})"

    @staticmethod
    def generate_timestamp() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def content_equals(a: ProjectConfig, b: ProjectConfig) -> bool:
        """
        Compare ETags when both records have one, otherwise the raw JSON.
        """
        if a.http_etag and b.http_etag:
            return a.http_etag == b.http_etag
        return a.config_json == b.config_json

    def with_timestamp(self, timestamp: int) -> ProjectConfig:
        return ProjectConfig(self.config_json, self.config, timestamp, self.http_etag)

    @property
    def is_empty(self) -> bool:
        return self.config is None

    @property
    def fetch_time(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.timestamp / 1000, tz=datetime.timezone.utc)

    def is_expired(self, expiration_ms: float) -> bool:
        return self is ProjectConfig.EMPTY or self.timestamp + expiration_ms < ProjectConfig.generate_timestamp()

    def serialize(self) -> str:
        return f"{self.timestamp}\n{self.http_etag or ''}\n{self.config_json or ''}"

    @staticmethod
    def deserialize(value: str) -> ProjectConfig:
        """
        Parse a record in the "<timestamp>\\n<etag>\\n<config json>" format.
        """
        parts = value.split("\n", 2)
        if len(parts) < 3:
            raise ValueError("Number of values is fewer than expected.")
        timestamp_str, http_etag, config_json = parts

        digits = timestamp_str.removeprefix("-")
        if not (digits.isascii() and digits.isdecimal()):
            raise ValueError(f"Invalid fetch time: {timestamp_str}")
        timestamp = int(timestamp_str)

        config = None
        if config_json:
            try:
                config = Config.from_json(config_json)
            except (ValueError, jsonschema.ValidationError) as e:
                raise ValueError(f"Invalid config JSON content: {config_json}") from e

        return ProjectConfig(config_json or None, config, timestamp, http_etag or None)


ProjectConfig.EMPTY = ProjectConfig(None, None, 0, None)
