from __future__ import annotations
import enum
import hashlib
from typing import TYPE_CHECKING

from .model import ProjectConfig
from .user import User

if TYPE_CHECKING:
    from .cache import ConfigCache
    from .fetcher import ConfigFetcher
    from .hooks import Hooks
    from .overrides import FlagOverrides


VERSION = "0.1.0"

_config_file_name = "config_v6.json"
_max_timer_seconds = 2147483


class DataGovernance(enum.Enum):
    GLOBAL = "https://cdn-global.configcat.com"
    EU_ONLY = "https://cdn-eu.configcat.com"


class AutoPoll:
    """
    Fetch the config at startup and then every poll_interval_seconds.
    Evaluations made before the first fetch completes wait up to
    max_init_wait_time_seconds (negative means wait forever).
    """

    mode_id = "a"

    def __init__(self, poll_interval_seconds: float = 60, max_init_wait_time_seconds: float = 5):
        if not isinstance(poll_interval_seconds, (int, float)) or not 1 <= poll_interval_seconds <= _max_timer_seconds:
            raise ValueError(f"poll_interval_seconds must be between 1 and {_max_timer_seconds}")
        if not isinstance(max_init_wait_time_seconds, (int, float)) or max_init_wait_time_seconds > _max_timer_seconds:
            raise ValueError(f"max_init_wait_time_seconds must be at most {_max_timer_seconds}")
        self.poll_interval_seconds = poll_interval_seconds
        self.max_init_wait_time_seconds = max_init_wait_time_seconds


class LazyLoad:
    """
    Fetch the config on demand when the cached one is older than
    cache_time_to_live_seconds.
    """

    mode_id = "l"

    def __init__(self, cache_time_to_live_seconds: float = 60):
        if not isinstance(cache_time_to_live_seconds, (int, float)) or not 1 <= cache_time_to_live_seconds <= 2147483647:
            raise ValueError("cache_time_to_live_seconds must be between 1 and 2147483647")
        self.cache_time_to_live_seconds = cache_time_to_live_seconds


class ManualPoll:
    """
    Fetch the config only when force_refresh is called.
    """

    mode_id = "m"


type PollingMode = AutoPoll | LazyLoad | ManualPoll


class Options:
    """
    Client options. All arguments are keyword only.

    polling_mode: AutoPoll(), LazyLoad() or ManualPoll(). Defaults to AutoPoll().
    base_url: Overrides the CDN base URL. Redirects from the server are then
      only followed when they are forced.
    data_governance: Selects the default CDN.
    request_timeout_seconds: Timeout of a single HTTP request.
    cache: External cache to persist config records in.
    fetcher: Transport to download configs with. Defaults to httpx.
    offline: Start in offline mode (no HTTP requests).
    flag_overrides: Local flag values.
    default_user: User used when none is passed to evaluations.
    hooks: Event listeners.
    """

    def __init__(
        self,
        *,
        polling_mode: PollingMode | None = None,
        base_url: str | None = None,
        data_governance: DataGovernance = DataGovernance.GLOBAL,
        request_timeout_seconds: float = 30,
        cache: ConfigCache | None = None,
        fetcher: ConfigFetcher | None = None,
        offline: bool = False,
        flag_overrides: FlagOverrides | None = None,
        default_user: User | None = None,
        hooks: Hooks | None = None,
    ):
        if polling_mode is None:
            polling_mode = AutoPoll()
        if not isinstance(polling_mode, (AutoPoll, LazyLoad, ManualPoll)):
            raise TypeError(f"polling_mode must be AutoPoll, LazyLoad or ManualPoll, not {type(polling_mode).__name__}")
        if not isinstance(data_governance, DataGovernance):
            raise TypeError(f"data_governance must be a DataGovernance, not {type(data_governance).__name__}")
        if not isinstance(request_timeout_seconds, (int, float)) or request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be a positive number")
        if default_user is not None and not isinstance(default_user, User):
            raise TypeError(f"default_user must be a User, not {type(default_user).__name__}")

        self.polling_mode = polling_mode
        self.base_url_overridden = bool(base_url)
        self.base_url = base_url.rstrip("/") if base_url else data_governance.value
        self.data_governance = data_governance
        self.request_timeout_seconds = request_timeout_seconds
        self.cache = cache
        self.fetcher = fetcher
        self.offline = offline
        self.flag_overrides = flag_overrides
        self.default_user = default_user
        self.hooks = hooks

    @property
    def client_version(self) -> str:
        return f"flagsync-python/{self.polling_mode.mode_id}-{VERSION}"


def config_url(base_url: str, sdk_key: str, client_version: str) -> str:
    return f"{base_url}/configuration-files/{sdk_key}/{_config_file_name}?sdk={client_version}"


def cache_key(sdk_key: str) -> str:
    """
    The key config records are stored under in external caches. It must
    match other platforms so that they can share a cache.
    """
    s = f"{sdk_key}_{_config_file_name}_{ProjectConfig.serialization_format_version}"
    return hashlib.sha1(s.encode("utf-8")).hexdigest()
