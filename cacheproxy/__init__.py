__version__ = '0.1.0'

from .cache import Cache, FileCache, HttpAwareCache
from .config import ConfigError, ProxySettings, load_settings, settings_from_dict
from .errors import CacheMiss, GatewayError, OfflineError, ProxyError, ResolutionError
from .model import CacheEntry, FetchMode, Request, Response
from .policy import CachePolicy
from .resolver import ResolverConfig, resolve
from .server import ProxyServer

__all__ = [
    'Cache',
    'CacheEntry',
    'CacheMiss',
    'CachePolicy',
    'ConfigError',
    'FetchMode',
    'FileCache',
    'GatewayError',
    'HttpAwareCache',
    'OfflineError',
    'ProxyError',
    'ProxyServer',
    'ProxySettings',
    'Request',
    'ResolutionError',
    'ResolverConfig',
    'Response',
    'load_settings',
    'resolve',
    'settings_from_dict',
]
