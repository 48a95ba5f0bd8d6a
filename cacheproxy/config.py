"""Configuration parsing and defaults for the proxy."""

from dataclasses import dataclass, field
import json
from pathlib import Path
import tempfile
from typing import Optional

from .cache import DEFAULT_CAPACITY
from .client import DEFAULT_TIMEOUT
from .policy import DEFAULT_CACHEABLE_EXTENSIONS, CachePolicy
from .refresh import DEFAULT_MAX_PENDING, DEFAULT_WORKERS

DEFAULT_CACHE_DIRECTORY = Path(tempfile.gettempdir()) / 'cacheproxy'


class ConfigError(ValueError):
    """Raised when configuration parsing or validation fails."""

    pass


@dataclass(frozen=True)
class ProxySettings:
    """Root configuration object for a proxy instance."""

    host: str = '127.0.0.1'
    port: int = 0
    cache_directory: Path = DEFAULT_CACHE_DIRECTORY
    cache_capacity: int = DEFAULT_CAPACITY
    cache_directory_levels: int = 2
    connect_timeout: float = DEFAULT_TIMEOUT
    read_timeout: float = DEFAULT_TIMEOUT
    refresh_workers: int = DEFAULT_WORKERS
    max_pending_refreshes: int = DEFAULT_MAX_PENDING
    policy: CachePolicy = field(default_factory=CachePolicy)


DEFAULT_SETTINGS = ProxySettings()


def load_settings(path: Optional[Path]) -> ProxySettings:
    """Load settings from a JSON file path. A missing file yields the defaults."""

    if path is None or not path.exists():
        return DEFAULT_SETTINGS

    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as exc:
        raise ConfigError('config must be valid JSON') from exc
    if not isinstance(data, dict):
        raise ConfigError('config must be a JSON object')
    return settings_from_dict(data)


def settings_from_dict(data: dict) -> ProxySettings:
    """Parse settings from a Python dict."""

    cache = _section(data, 'cache')
    network = _section(data, 'network')
    refresh = _section(data, 'refresh')

    return ProxySettings(
        host=_string(data, 'host', DEFAULT_SETTINGS.host),
        port=_integer(data, 'port', DEFAULT_SETTINGS.port, minimum=0),
        cache_directory=Path(_string(cache, 'directory', str(DEFAULT_SETTINGS.cache_directory))),
        cache_capacity=_integer(cache, 'capacity_bytes', DEFAULT_SETTINGS.cache_capacity, minimum=1),
        cache_directory_levels=_integer(cache, 'directory_levels', DEFAULT_SETTINGS.cache_directory_levels, minimum=0),
        connect_timeout=_number(network, 'connect_timeout_seconds', DEFAULT_SETTINGS.connect_timeout),
        read_timeout=_number(network, 'read_timeout_seconds', DEFAULT_SETTINGS.read_timeout),
        refresh_workers=_integer(refresh, 'workers', DEFAULT_SETTINGS.refresh_workers, minimum=1),
        max_pending_refreshes=_integer(refresh, 'max_pending', DEFAULT_SETTINGS.max_pending_refreshes, minimum=1),
        policy=policy_from_dict(_section(data, 'policy')),
    )


def policy_from_dict(data: dict) -> CachePolicy:
    """Parse the cache policy section."""

    extensions = data.get('cacheable_extensions')
    if extensions is None:
        cacheable_extensions = DEFAULT_CACHEABLE_EXTENSIONS
    else:
        if not isinstance(extensions, list) or not all(isinstance(item, str) for item in extensions):
            raise ConfigError('policy.cacheable_extensions must be a list of strings')
        cacheable_extensions = frozenset(_extension(item) for item in extensions)

    defaults = CachePolicy()
    return CachePolicy(
        cacheable_extensions=cacheable_extensions,
        cacheable_max_age=_integer(data, 'cacheable_max_age_seconds', defaults.cacheable_max_age, minimum=0),
        default_max_age=_integer(data, 'default_max_age_seconds', defaults.default_max_age, minimum=0),
        store_non_cacheable=_boolean(data, 'store_non_cacheable', defaults.store_non_cacheable),
        refresh_non_cacheable=_boolean(data, 'refresh_non_cacheable', defaults.refresh_non_cacheable),
    )


def _extension(value: str) -> str:
    value = value.strip().lower()
    return value if value.startswith('.') else '.' + value


def _section(data: dict, key: str) -> dict:
    value = data.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError('{} must be an object'.format(key))
    return value


def _string(data: dict, key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError('{} must be a non-empty string'.format(key))
    return value


def _boolean(data: dict, key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError('{} must be a boolean'.format(key))
    return value


def _integer(data: dict, key: str, default: int, minimum: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError('{} must be an integer'.format(key))
    if value < minimum:
        raise ConfigError('{} must be at least {}'.format(key, minimum))
    return value


def _number(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError('{} must be a number'.format(key))
    if value <= 0:
        raise ConfigError('{} must be positive'.format(key))
    return float(value)
