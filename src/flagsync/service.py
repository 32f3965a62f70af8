from __future__ import annotations
import enum
import asyncio
import logging
import jsonschema
from typing import Any

from prometheus_client import Counter

from .cache import CacheSyncResult, ConfigStore, InMemoryConfigCache
from .fetcher import ConfigFetcher, FetchError, FetchRequest, FetchResponse
from .hooks import Hooks
from .model import Config, ProjectConfig, RedirectMode
from .options import AutoPoll, LazyLoad, ManualPoll, Options, config_url


logger = logging.getLogger(__name__)

_poll_expiration_tolerance_ms = 500
_max_redirect_retry_count = 2

_prom_fetches = Counter(
    "flagsync_config_fetches",
    "Config fetch attempts",
    labelnames=["status", "error_code"],
)


class RefreshErrorCode(enum.IntEnum):
    UNEXPECTED_ERROR = -1
    NONE = 0
    LOCAL_ONLY_CLIENT = 1
    INVALID_SDK_KEY = 1100
    UNEXPECTED_HTTP_RESPONSE = 1101
    HTTP_REQUEST_TIMEOUT = 1102
    HTTP_REQUEST_FAILURE = 1103
    INVALID_HTTP_RESPONSE_CONTENT = 1105
    INVALID_HTTP_RESPONSE_WHEN_LOCAL_CACHE_IS_EMPTY = 1106
    OFFLINE_CLIENT = 3200


class ClientCacheState(enum.IntEnum):
    NO_FLAG_DATA = 0
    HAS_LOCAL_OVERRIDE_FLAG_DATA_ONLY = 1
    HAS_CACHED_FLAG_DATA_ONLY = 2
    HAS_UP_TO_DATE_FLAG_DATA = 3


class FetchStatus(enum.Enum):
    FETCHED = "fetched"
    NOT_MODIFIED = "not_modified"
    ERRORED = "errored"


class FetchResult:
    """
    The outcome of a fetch attempt. config is never None: errors carry the
    best available record.
    """

    __slots__ = ("status", "config", "error_code", "error_message", "error_exception")
    status: FetchStatus
    config: ProjectConfig
    error_code: RefreshErrorCode
    error_message: str | None
    error_exception: BaseException | None

    def __init__(
        self,
        status: FetchStatus,
        config: ProjectConfig,
        error_code: RefreshErrorCode = RefreshErrorCode.NONE,
        error_message: str | None = None,
        error_exception: BaseException | None = None,
    ):
        self.status = status
        self.config = config
        self.error_code = error_code
        self.error_message = error_message
        self.error_exception = error_exception

    @staticmethod
    def success(config: ProjectConfig) -> FetchResult:
        return FetchResult(FetchStatus.FETCHED, config)

    @staticmethod
    def not_modified(config: ProjectConfig) -> FetchResult:
        return FetchResult(FetchStatus.NOT_MODIFIED, config)

    @staticmethod
    def error(
        config: ProjectConfig,
        error_code: RefreshErrorCode,
        error_message: str,
        error_exception: BaseException | None = None,
    ) -> FetchResult:
        return FetchResult(FetchStatus.ERRORED, config, error_code, error_message, error_exception)


class RefreshResult:
    __slots__ = ("error_code", "error_message", "error_exception")
    error_code: RefreshErrorCode
    error_message: str | None
    error_exception: BaseException | None

    def __init__(
        self,
        error_code: RefreshErrorCode,
        error_message: str | None = None,
        error_exception: BaseException | None = None,
    ):
        if (error_message is None) != (error_code == RefreshErrorCode.NONE):
            raise ValueError("error_message must be given exactly when error_code is not NONE")
        self.error_code = error_code
        self.error_message = error_message
        self.error_exception = error_exception

    def __repr__(self):
        return f"RefreshResult(error_code={self.error_code!r}, error_message={self.error_message!r})"

    @property
    def is_success(self) -> bool:
        return self.error_message is None

    @staticmethod
    def success() -> RefreshResult:
        return RefreshResult(RefreshErrorCode.NONE)

    @staticmethod
    def failure(error_code: RefreshErrorCode, error_message: str, error_exception: BaseException | None = None) -> RefreshResult:
        return RefreshResult(error_code, error_message, error_exception)

    @staticmethod
    def from_fetch_result(r: FetchResult) -> RefreshResult:
        if r.status != FetchStatus.ERRORED:
            return RefreshResult.success()
        return RefreshResult.failure(r.error_code, r.error_message or "Unknown error.", r.error_exception)


class _Status(enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    DISPOSED = "disposed"


def _cache_state_by_expiry(config: ProjectConfig, expiration_ms: float) -> ClientCacheState:
    if config.is_empty:
        return ClientCacheState.NO_FLAG_DATA
    if config.is_expired(expiration_ms):
        return ClientCacheState.HAS_CACHED_FLAG_DATA_ONLY
    return ClientCacheState.HAS_UP_TO_DATE_FLAG_DATA


class _ManualPollPolicy:
    """
    Never fetches on its own. The cache is only synced.
    """

    def start(self, service: ConfigService, initial_sync_up: asyncio.Future[ProjectConfig]):
        pass

    async def wait_for_ready(self, service: ConfigService, initial_sync_up: asyncio.Future[ProjectConfig]) -> ClientCacheState:
        return self.get_cache_state(await initial_sync_up)

    def get_cache_state(self, config: ProjectConfig) -> ClientCacheState:
        if config.is_empty:
            return ClientCacheState.NO_FLAG_DATA
        return ClientCacheState.HAS_CACHED_FLAG_DATA_ONLY

    async def get_config(self, service: ConfigService) -> ProjectConfig:
        logger.debug("ManualPoll get_config() called.")
        return await service.sync_up_with_cache()

    def on_config_fetched(self):
        pass

    def go_online(self, service: ConfigService):
        pass

    def dispose(self):
        pass


class _LazyLoadPolicy(_ManualPollPolicy):
    """
    Fetches when the cached config is older than the TTL.
    """

    def __init__(self, mode: LazyLoad):
        self._ttl_ms = mode.cache_time_to_live_seconds * 1000

    def get_cache_state(self, config: ProjectConfig) -> ClientCacheState:
        return _cache_state_by_expiry(config, self._ttl_ms)

    async def get_config(self, service: ConfigService) -> ProjectConfig:
        logger.debug("LazyLoad get_config() called.")
        config = await service.sync_up_with_cache()
        if not config.is_expired(self._ttl_ms):
            logger.debug("LazyLoad get_config(): cache is valid, returning from cache.")
            return config
        if service.is_offline:
            logger.debug("LazyLoad get_config(): cache is empty or expired.")
            return config
        logger.debug("LazyLoad get_config(): cache is empty or expired, refreshing.")
        _, config = await service.refresh_config_core(config, False)
        return config


class _AutoPollPolicy(_ManualPollPolicy):
    """
    Fetches at startup and then on a fixed interval in a background task.
    """

    def __init__(self, mode: AutoPoll):
        self._poll_interval_ms = mode.poll_interval_seconds * 1000
        self._poll_expiration_ms = self._poll_interval_ms - _poll_expiration_tolerance_ms
        self._max_init_wait_seconds = mode.max_init_wait_time_seconds
        self._init_event = asyncio.Event()
        self._initialized = self._max_init_wait_seconds == 0
        self._initialization: asyncio.Future[bool] | None = None
        self._worker: asyncio.Task | None = None

    def start(self, service: ConfigService, initial_sync_up: asyncio.Future[ProjectConfig]):
        if not self._initialized:
            self._initialization = asyncio.ensure_future(self._wait_for_initialization())
        self._start_worker(service, initial_sync_up)

    async def _wait_for_initialization(self) -> bool:
        if self._max_init_wait_seconds < 0:
            await self._init_event.wait()
            success = True
        else:
            try:
                await asyncio.wait_for(self._init_event.wait(), self._max_init_wait_seconds)
                success = True
            except TimeoutError:
                success = False
        self._initialized = True
        return success

    def _signal_initialization(self):
        self._init_event.set()

    async def wait_for_ready(self, service: ConfigService, initial_sync_up: asyncio.Future[ProjectConfig]) -> ClientCacheState:
        if self._initialization is not None:
            await asyncio.shield(self._initialization)
        return self.get_cache_state(service.local_cached_config)

    def get_cache_state(self, config: ProjectConfig) -> ClientCacheState:
        return _cache_state_by_expiry(config, self._poll_interval_ms)

    async def get_config(self, service: ConfigService) -> ProjectConfig:
        logger.debug("AutoPoll get_config() called.")
        config = await service.sync_up_with_cache()
        if not config.is_expired(self._poll_interval_ms):
            self._signal_initialization()
        elif not service.is_offline and not self._initialized and self._initialization is not None:
            logger.debug("AutoPoll get_config(): cache is empty or expired, waiting for initialization.")
            await asyncio.shield(self._initialization)
            config = service.local_cached_config
        else:
            logger.debug("AutoPoll get_config(): cache is empty or expired.")
        return config

    def on_config_fetched(self):
        self._signal_initialization()

    def go_online(self, service: ConfigService):
        self._stop_worker()
        self._start_worker(service, None)

    def dispose(self):
        self._stop_worker()
        # Release anyone still waiting for the first fetch.
        self._signal_initialization()

    def _start_worker(self, service: ConfigService, initial_sync_up: asyncio.Future[ProjectConfig] | None):
        logger.debug("AutoPoll starting refresh worker.")
        self._worker = asyncio.ensure_future(self._run_worker(service, initial_sync_up))

    def _stop_worker(self):
        if self._worker is not None:
            logger.debug("AutoPoll stopping refresh worker.")
            self._worker.cancel()
            self._worker = None

    async def _run_worker(self, service: ConfigService, initial_sync_up: asyncio.Future[ProjectConfig] | None):
        loop = asyncio.get_running_loop()
        while True:
            scheduled_next_time = loop.time() + self._poll_interval_ms / 1000
            try:
                await self._refresh(service, initial_sync_up)
            except Exception:
                logger.exception("Error occurred during auto polling")
            initial_sync_up = None
            delay = scheduled_next_time - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)

    async def _refresh(self, service: ConfigService, initial_sync_up: asyncio.Future[ProjectConfig] | None):
        if initial_sync_up is not None:
            latest = await initial_sync_up
            # Only an explicit offline state prevents the initial fetch.
            can_fetch = not service.is_offline_exactly
        else:
            latest = await service.sync_up_with_cache()
            can_fetch = not service.is_offline

        if latest.is_expired(self._poll_expiration_ms) and can_fetch:
            # Initialization is signalled by on_config_fetched.
            await service.refresh_config_core(latest, False)
            return
        self._signal_initialization()


type _Policy = _ManualPollPolicy | _LazyLoadPolicy | _AutoPollPolicy


def _make_policy(options: Options) -> _Policy:
    match options.polling_mode:
        case AutoPoll() as mode:
            return _AutoPollPolicy(mode)
        case LazyLoad() as mode:
            return _LazyLoadPolicy(mode)
        case ManualPoll():
            return _ManualPollPolicy()
    raise TypeError(f"unsupported polling mode {options.polling_mode!r}")


class ConfigService:
    """
    Keeps the local config in sync with the CDN and the external cache.

    At most one fetch is in flight at a time; concurrent refreshes share
    its result. When and whether to fetch is decided by the policy of the
    configured polling mode.

    Must be created from within a running event loop.
    """

    def __init__(
        self,
        sdk_key: str,
        options: Options,
        store: ConfigStore,
        fetcher: ConfigFetcher,
        hooks: Hooks,
        cache_key: str,
    ):
        self._sdk_key = sdk_key
        self._options = options
        self._store = store
        self._fetcher = fetcher
        self._hooks = hooks
        self._cache_key = cache_key
        self._base_url = options.base_url
        self._request_url = config_url(self._base_url, sdk_key, options.client_version)
        self._status = _Status.OFFLINE if options.offline else _Status.ONLINE
        self._pending_refresh: asyncio.Future[tuple[FetchResult, ProjectConfig]] | None = None
        self._pending_sync_up: asyncio.Future[ProjectConfig] | None = None
        self._policy = _make_policy(options)

        initial_sync_up = asyncio.ensure_future(self.sync_up_with_cache())
        self._policy.start(self, initial_sync_up)
        self.ready: asyncio.Future[ClientCacheState] = asyncio.ensure_future(self._get_ready(initial_sync_up))

    async def _get_ready(self, initial_sync_up: asyncio.Future[ProjectConfig]) -> ClientCacheState:
        state = await self._policy.wait_for_ready(self, initial_sync_up)
        self._hooks.emit("client_ready", state)
        return state

    @property
    def local_cached_config(self) -> ProjectConfig:
        return self._store.local_cached_config

    @property
    def is_offline(self) -> bool:
        return self._status != _Status.ONLINE

    @property
    def is_offline_exactly(self) -> bool:
        return self._status == _Status.OFFLINE

    @property
    def disposed(self) -> bool:
        return self._status == _Status.DISPOSED

    def get_cache_state(self, config: ProjectConfig) -> ClientCacheState:
        return self._policy.get_cache_state(config)

    async def get_config(self) -> ProjectConfig:
        return await self._policy.get_config(self)

    async def refresh_config(self) -> tuple[RefreshResult, ProjectConfig]:
        """
        Fetch the latest config now, regardless of the polling mode.
        """
        logger.debug("ConfigService.refresh_config() called.")
        if self.is_offline:
            message = "Client is in offline mode, it cannot initiate HTTP calls."
            logger.warning("%s", message)
            return RefreshResult.failure(RefreshErrorCode.OFFLINE_CLIENT, message), self._store.local_cached_config

        latest = await self.sync_up_with_cache()
        fetch_result, config = await self.refresh_config_core(latest, True)
        return RefreshResult.from_fetch_result(fetch_result), config

    async def refresh_config_core(self, latest: ProjectConfig, initiated_by_user: bool) -> tuple[FetchResult, ProjectConfig]:
        if self._pending_refresh is None:
            self._pending_refresh = asyncio.ensure_future(self._refresh_config_core(latest, initiated_by_user))
        # Cancelling one waiter must not cancel the fetch shared with others.
        return await asyncio.shield(self._pending_refresh)

    async def _refresh_config_core(self, latest: ProjectConfig, initiated_by_user: bool) -> tuple[FetchResult, ProjectConfig]:
        try:
            fetch_result = await self._fetch(latest)

            # Errors may only replace an empty record, so that the new
            # timestamp throttles retries against a failing server.
            should_update_cache = (
                fetch_result.status in (FetchStatus.FETCHED, FetchStatus.NOT_MODIFIED)
                or fetch_result.config.timestamp > latest.timestamp
                and (not fetch_result.config.is_empty or self._store.local_cached_config.is_empty)
            )
            previous = latest
            if should_update_cache:
                await self._store.set(self._cache_key, fetch_result.config)
                latest = fetch_result.config

            self._on_config_fetched(fetch_result, initiated_by_user)

            if fetch_result.status == FetchStatus.FETCHED and not ProjectConfig.content_equals(previous, fetch_result.config):
                self._on_config_changed(fetch_result.config)

            return fetch_result, latest
        finally:
            self._pending_refresh = None

    def _on_config_fetched(self, fetch_result: FetchResult, initiated_by_user: bool):
        logger.debug("config fetched")
        _prom_fetches.labels(status=fetch_result.status.value, error_code=str(int(fetch_result.error_code))).inc()
        self._policy.on_config_fetched()
        self._hooks.emit("config_fetched", RefreshResult.from_fetch_result(fetch_result), initiated_by_user)

    def _on_config_changed(self, config: ProjectConfig):
        logger.debug("config changed")
        self._hooks.emit("config_changed", config.config)

    async def sync_up_with_cache(self) -> ProjectConfig:
        """
        Read the external cache, adopting the record found there if it
        differs from the local one. Concurrent callers share one read.
        """
        if isinstance(self._store, InMemoryConfigCache):
            return self._store.local_cached_config
        if self._pending_sync_up is None:
            self._pending_sync_up = asyncio.ensure_future(self._sync_up_with_cache())
        return await asyncio.shield(self._pending_sync_up)

    async def _sync_up_with_cache(self) -> ProjectConfig:
        try:
            result, config = await self._store.get(self._cache_key)
        finally:
            self._pending_sync_up = None
        if result == CacheSyncResult.CHANGED and not config.is_empty:
            self._on_config_changed(config)
        return config

    async def _fetch(self, last_config: ProjectConfig) -> FetchResult:
        logger.debug("ConfigService._fetch() called.")
        try:
            response, config_or_error = await self._fetch_request(last_config.http_etag)
        except FetchError as e:
            if e.cause == "timeout":
                message = f"Request timed out while trying to fetch config JSON. Timeout value: {e.timeout_seconds}s"
                logger.error("%s", message)
                return FetchResult.error(last_config, RefreshErrorCode.HTTP_REQUEST_TIMEOUT, message, e)
            message = "Unexpected error occurred while trying to fetch config JSON. It is most likely due to a local network issue."
            logger.error("%s", message, exc_info=e)
            return FetchResult.error(last_config, RefreshErrorCode.HTTP_REQUEST_FAILURE, message, e)
        except Exception as e:
            message = "Unexpected error occurred while trying to fetch config JSON."
            logger.error("%s", message, exc_info=e)
            return FetchResult.error(last_config, RefreshErrorCode.HTTP_REQUEST_FAILURE, message, e)

        status, reason = response.status_code, response.reason_phrase
        match status:
            case 200:
                if not isinstance(config_or_error, Config):
                    message = f"Fetching config JSON was successful but the HTTP response content was invalid. ({config_or_error})"
                    logger.error("%s", message)
                    return FetchResult.error(
                        last_config,
                        RefreshErrorCode.INVALID_HTTP_RESPONSE_CONTENT,
                        message,
                        config_or_error if isinstance(config_or_error, BaseException) else None,
                    )
                logger.debug("ConfigService._fetch(): fetch was successful.")
                return FetchResult.success(ProjectConfig(response.body, config_or_error, ProjectConfig.generate_timestamp(), response.etag))
            case 304:
                if last_config.is_empty:
                    message = (
                        f"Unexpected HTTP response was received when no config JSON is cached locally: {status} {reason}"
                    )
                    logger.error("%s", message)
                    return FetchResult.error(last_config, RefreshErrorCode.INVALID_HTTP_RESPONSE_WHEN_LOCAL_CACHE_IS_EMPTY, message)
                logger.debug("ConfigService._fetch(): content was not modified.")
                return FetchResult.not_modified(last_config.with_timestamp(ProjectConfig.generate_timestamp()))
            case 403 | 404:
                message = (
                    "Your SDK Key seems to be wrong. You can find the valid SDK Key at https://app.configcat.com/sdkkey"
                )
                logger.error("%s", message)
                return FetchResult.error(
                    last_config.with_timestamp(ProjectConfig.generate_timestamp()), RefreshErrorCode.INVALID_SDK_KEY, message
                )
        message = f"Unexpected HTTP response was received while trying to fetch config JSON: {status} {reason}"
        logger.error("%s", message)
        return FetchResult.error(last_config, RefreshErrorCode.UNEXPECTED_HTTP_RESPONSE, message)

    async def _fetch_request(self, last_etag: str | None) -> tuple[FetchResponse, Any]:
        """
        Fetch the config document, following redirects to another CDN as
        instructed by the document's preferences. Returns the response and
        the parsed config (or the parse error) for 200 responses.
        """
        options = self._options
        retry = 0
        while True:
            logger.debug("ConfigService._fetch_request(): fetching%s", f", retry {retry}/{_max_redirect_retry_count}" if retry else "")
            request = FetchRequest(self._request_url, last_etag, {}, options.request_timeout_seconds)
            response = await self._fetcher.fetch(request)

            if response.status_code != 200:
                return response, None
            if not response.body:
                return response, ValueError("No response body.")

            try:
                config = Config.from_json(response.body)
            except (ValueError, jsonschema.ValidationError) as e:
                return response, e

            preferences = config.preferences
            if preferences is None:
                return response, config

            base_url = preferences.base_url
            if not base_url or base_url == self._base_url:
                return response, config

            redirect = preferences.redirect_mode
            if options.base_url_overridden and redirect != RedirectMode.FORCE:
                return response, config

            self._base_url = base_url
            self._request_url = config_url(base_url, self._sdk_key, options.client_version)

            if redirect == RedirectMode.NO:
                return response, config
            if redirect == RedirectMode.SHOULD:
                logger.warning(
                    "The `data_governance` option does not match the data governance settings of your project. "
                    "Make sure the option is set to the value that matches your project to avoid redirects."
                )
            if retry >= _max_redirect_retry_count:
                logger.error("Redirection loop encountered while trying to fetch config JSON. Please contact support.")
                return response, config
            retry += 1

    def set_online(self):
        if self._status == _Status.OFFLINE:
            self._policy.go_online(self)
            self._status = _Status.ONLINE
            logger.info("Switched to ONLINE mode.")
        elif self.disposed:
            logger.warning("The client object is already disposed, thus `set_online()` has no effect.")

    def set_offline(self):
        if self._status == _Status.ONLINE:
            self._status = _Status.OFFLINE
            logger.info("Switched to OFFLINE mode.")
        elif self.disposed:
            logger.warning("The client object is already disposed, thus `set_offline()` has no effect.")

    def dispose(self):
        logger.debug("ConfigService.dispose() called.")
        self._status = _Status.DISPOSED
        self._policy.dispose()
