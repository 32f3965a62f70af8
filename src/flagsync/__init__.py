from __future__ import annotations
import time
import asyncio
import logging
from typing import Any

from prometheus_client import Histogram

from .cache import CacheSyncResult, ConfigCache, ExternalConfigCache, InMemoryConfigCache
from .evaluator import (
    EvaluationDetails,
    EvaluationError,
    EvaluationErrorCode,
    RolloutEvaluator,
    evaluate_all,
    evaluate_one,
    find_key_and_value,
    get_evaluation_error_code,
)
from .fetcher import ConfigFetcher, FetchError, FetchRequest, FetchResponse, HttpxConfigFetcher
from .hooks import Hooks
from .model import Config, InvalidConfigModelError, ProjectConfig, Setting, SettingType, SettingValue, is_allowed_value
from .options import AutoPoll, DataGovernance, LazyLoad, ManualPoll, Options, cache_key
from .overrides import FlagOverrides, OverrideBehaviour
from .service import ClientCacheState, ConfigService, RefreshErrorCode, RefreshResult
from .user import User


logger = logging.getLogger(__name__)

_proxy_sdk_key_prefix = "configcat-proxy/"
_sdk_key_length = 22

_prom_labels = ["key", "error_code"]
_prom_eval_duration = Histogram(
    "flagsync_evaluation_seconds",
    "Setting evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=_prom_labels,
)


def _is_valid_sdk_key(sdk_key: str, base_url_overridden: bool) -> bool:
    if base_url_overridden and len(sdk_key) > len(_proxy_sdk_key_prefix) and sdk_key.startswith(_proxy_sdk_key_prefix):
        return True
    parts = sdk_key.split("/")
    match len(parts):
        case 2:
            return len(parts[0]) == _sdk_key_length and len(parts[1]) == _sdk_key_length
        case 3:
            return parts[0] == "configcat-sdk-1" and len(parts[1]) == _sdk_key_length and len(parts[2]) == _sdk_key_length
    return False


class Client:
    """
    Evaluates settings against the config kept up to date by the configured
    polling mode. Evaluation failures never raise: the default value is
    returned and the details carry the error. Only invalid arguments raise.

    Unless local only flag overrides are used, the client must be created
    from within a running event loop, which it must then be used from.
    """

    def __init__(self, sdk_key: str, options: Options | None = None):
        if options is None:
            options = Options()
        if not isinstance(options, Options):
            raise TypeError(f"options must be an Options, not {type(options).__name__}")

        overrides = options.flag_overrides
        local_only = overrides is not None and overrides.behaviour == OverrideBehaviour.LOCAL_ONLY
        if not isinstance(sdk_key, str) or not sdk_key:
            raise ValueError("Invalid 'sdk_key' value")
        if not local_only and not _is_valid_sdk_key(sdk_key, options.base_url_overridden):
            raise ValueError("Invalid 'sdk_key' value")

        self._options = options
        self._hooks = options.hooks if options.hooks is not None else Hooks()
        self._default_user = options.default_user
        self._evaluator = RolloutEvaluator()
        self._service: ConfigService | None = None

        if local_only:
            self._hooks.emit("client_ready", ClientCacheState.HAS_LOCAL_OVERRIDE_FLAG_DATA_ONLY)
        else:
            store = ExternalConfigCache(options.cache) if options.cache is not None else InMemoryConfigCache()
            fetcher = options.fetcher if options.fetcher is not None else HttpxConfigFetcher()
            self._service = ConfigService(sdk_key, options, store, fetcher, self._hooks, cache_key(sdk_key))

    @property
    def hooks(self) -> Hooks:
        return self._hooks

    @staticmethod
    def _validate_key(key: str):
        if not isinstance(key, str):
            raise TypeError(f"key must be a string, not {type(key).__name__}")
        if not key:
            raise ValueError("key must not be empty")

    @staticmethod
    def _validate_default_value(default_value: Any):
        if default_value is not None and not is_allowed_value(default_value):
            raise TypeError(f"default_value must be a bool, str, int, float or None, not {type(default_value).__name__}")

    @staticmethod
    def _validate_user(user: User | None):
        if user is not None and not isinstance(user, User):
            raise TypeError(f"user must be a User, not {type(user).__name__}")

    async def _get_settings(self) -> tuple[dict[str, Setting] | None, ProjectConfig | None]:
        overrides = self._options.flag_overrides
        if overrides is not None and overrides.behaviour == OverrideBehaviour.LOCAL_ONLY:
            return overrides.settings, None

        assert self._service is not None
        config = await self._service.get_config()
        remote = config.config.settings if config.config is not None else None
        if overrides is not None:
            return overrides.merge(remote), config
        return remote, config

    def _record_eval_metrics(self, d: EvaluationDetails, dur: float):
        _prom_eval_duration.labels(key=d.key, error_code=str(int(d.error_code))).observe(dur)

    async def detailed_evaluate(self, key: str, default_value: Any, user: User | None = None) -> EvaluationDetails:
        """
        Evaluate the setting and return the value along with the details of
        the evaluation.

        key: The key of the setting.
        default_value: Returned when the setting can't be evaluated. Its type
          must match the type of the setting (None matches any type).
        user: The user to evaluate targeting rules and percentage options
          against. Defaults to the default user.
        """
        logger.debug("detailed_evaluate() called.")
        self._validate_key(key)
        self._validate_default_value(default_value)
        self._validate_user(user)
        if user is None:
            user = self._default_user

        remote_config = None
        start = time.perf_counter()
        try:
            settings, remote_config = await self._get_settings()
            d = evaluate_one(self._evaluator, settings, key, default_value, user, remote_config)
        except Exception as e:
            logger.exception(
                "Error occurred while evaluating setting '%s'. Returning the `default_value` parameter that you specified in your application: '%s'.",
                key,
                default_value,
            )
            fetch_time = remote_config.fetch_time if remote_config is not None and not remote_config.is_empty else None
            d = EvaluationDetails.from_default_value(key, default_value, fetch_time, user, str(e), e, get_evaluation_error_code(e))
        self._record_eval_metrics(d, time.perf_counter() - start)

        self._hooks.emit("flag_evaluated", d)
        return d

    async def evaluate(self, key: str, default_value: Any, user: User | None = None) -> Any:
        """
        Evaluate the setting and return its value, or default_value if it
        can't be evaluated.
        """
        return (await self.detailed_evaluate(key, default_value, user)).value

    async def detailed_evaluate_all(self, user: User | None = None) -> list[EvaluationDetails]:
        """
        Evaluate all settings. Settings that can't be evaluated have None
        values and carry the error in their details.
        """
        logger.debug("detailed_evaluate_all() called.")
        self._validate_user(user)
        if user is None:
            user = self._default_user

        try:
            settings, remote_config = await self._get_settings()
            details, errors = evaluate_all(self._evaluator, settings, user, remote_config)
        except Exception:
            logger.exception("Error occurred while evaluating all settings. Returning empty result.")
            return []

        if errors:
            logger.error(
                "Error occurred while evaluating all settings. %d setting(s) returned None.",
                len(errors),
                exc_info=errors[-1],
            )
        for d in details:
            self._hooks.emit("flag_evaluated", d)
        return details

    async def evaluate_all(self, user: User | None = None) -> dict[str, SettingValue | None]:
        return {d.key: d.value for d in await self.detailed_evaluate_all(user)}

    async def get_all_keys(self) -> list[str]:
        logger.debug("get_all_keys() called.")
        try:
            settings, _ = await self._get_settings()
        except Exception:
            logger.exception("Error occurred while getting all setting keys. Returning empty list.")
            return []
        if settings is None:
            logger.error("Config JSON is not present. Returning empty list.")
            return []
        return list(settings)

    async def get_key_and_value(self, variation_id: str) -> tuple[str, SettingValue] | None:
        """
        Find the setting key and value that belong to the variation id.
        """
        logger.debug("get_key_and_value() called.")
        if not isinstance(variation_id, str) or not variation_id:
            raise ValueError("variation_id must be a non-empty string")
        try:
            settings, _ = await self._get_settings()
            return find_key_and_value(settings, variation_id)
        except Exception:
            logger.exception("Error occurred while looking up variation id '%s'. Returning None.", variation_id)
            return None

    async def force_refresh(self) -> RefreshResult:
        """
        Fetch the latest config now, regardless of the polling mode.
        """
        logger.debug("force_refresh() called.")
        if self._service is None:
            return RefreshResult.failure(
                RefreshErrorCode.LOCAL_ONLY_CLIENT,
                "Client is configured to use the LOCAL_ONLY override behaviour, which prevents synchronization with external cache and making HTTP requests.",
            )
        try:
            result, _ = await self._service.refresh_config()
        except Exception as e:
            logger.exception("Error occurred in force_refresh()")
            return RefreshResult.failure(RefreshErrorCode.UNEXPECTED_ERROR, str(e), e)
        return result

    async def wait_for_ready(self) -> ClientCacheState:
        """
        Wait until the client is initialized and return the state of its
        config data.
        """
        if self._service is None:
            return ClientCacheState.HAS_LOCAL_OVERRIDE_FLAG_DATA_ONLY
        return await asyncio.shield(self._service.ready)

    def get_cache_state(self) -> ClientCacheState:
        if self._service is None:
            return ClientCacheState.HAS_LOCAL_OVERRIDE_FLAG_DATA_ONLY
        return self._service.get_cache_state(self._service.local_cached_config)

    def set_default_user(self, user: User):
        """
        Set the user used by evaluations when none is passed.
        """
        if not isinstance(user, User):
            raise TypeError(f"user must be a User, not {type(user).__name__}")
        self._default_user = user

    def clear_default_user(self):
        self._default_user = None

    @property
    def is_offline(self) -> bool:
        return self._service is None or self._service.is_offline

    def set_online(self):
        if self._service is None:
            logger.warning("Client is configured to use the LOCAL_ONLY override behaviour, thus `set_online()` has no effect.")
            return
        self._service.set_online()

    def set_offline(self):
        if self._service is not None:
            self._service.set_offline()

    def dispose(self):
        """
        Stop background polling and remove all hook listeners.
        """
        logger.debug("dispose() called.")
        if self._service is not None:
            self._service.dispose()
        self._hooks.clear()


__all__ = [
    "AutoPoll",
    "CacheSyncResult",
    "Client",
    "ClientCacheState",
    "Config",
    "ConfigCache",
    "ConfigFetcher",
    "DataGovernance",
    "EvaluationDetails",
    "EvaluationError",
    "EvaluationErrorCode",
    "FetchError",
    "FetchRequest",
    "FetchResponse",
    "FlagOverrides",
    "Hooks",
    "HttpxConfigFetcher",
    "InvalidConfigModelError",
    "LazyLoad",
    "ManualPoll",
    "Options",
    "OverrideBehaviour",
    "RefreshErrorCode",
    "RefreshResult",
    "SettingType",
    "User",
]
