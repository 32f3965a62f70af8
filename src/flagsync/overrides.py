from __future__ import annotations
import enum

from .model import Config, DictConfig, Setting, SettingValue, is_allowed_value


class OverrideBehaviour(enum.IntEnum):
    # Only the local values are used. No HTTP requests are made.
    LOCAL_ONLY = 0
    # Local values win over the downloaded ones.
    LOCAL_OVER_REMOTE = 1
    # Downloaded values win over the local ones.
    REMOTE_OVER_LOCAL = 2


class FlagOverrides:
    """
    Local setting values that replace or complement the downloaded config.
    """

    __slots__ = ("settings", "behaviour")
    settings: dict[str, Setting]
    behaviour: OverrideBehaviour

    def __init__(self, values: dict[str, SettingValue], behaviour: OverrideBehaviour):
        """
        values: Maps setting keys to plain bool, str, int or float values.
        """
        if not isinstance(values, dict):
            raise TypeError(f"values must be a dict, not {type(values).__name__}")
        for k, v in values.items():
            if not isinstance(k, str):
                raise TypeError(f"setting key must be a string, not {type(k).__name__}")
            if not is_allowed_value(v):
                raise TypeError(f"setting value must be a bool, str, int or float, not {type(v).__name__}")
        self.settings = {k: Setting.from_value(v) for k, v in values.items()}
        self.behaviour = OverrideBehaviour(behaviour)

    @staticmethod
    def from_config_dict(c: DictConfig, behaviour: OverrideBehaviour) -> FlagOverrides:
        """
        Build overrides from a full config document, so that local settings
        can have targeting rules and percentage options too.
        """
        overrides = FlagOverrides({}, behaviour)
        overrides.settings = dict(Config.from_dict(c).settings)
        return overrides

    def merge(self, remote: dict[str, Setting] | None) -> dict[str, Setting] | None:
        match self.behaviour:
            case OverrideBehaviour.LOCAL_ONLY:
                return self.settings
            case OverrideBehaviour.LOCAL_OVER_REMOTE:
                return {**(remote or {}), **self.settings}
        return {**self.settings, **(remote or {})}
