"""
The local listener and the public face of the proxy.

A `ProxyServer` binds an ephemeral loopback port, hands every request to the dispatcher, and exposes the few
operations the rendering surface needs: the local base URL, origin configuration, cache update listeners, cache
clearing and forced refreshes.
"""

from concurrent.futures import Future, ThreadPoolExecutor
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import threading
from typing import Optional

import requests
from requests.structures import CaseInsensitiveDict

from . import __version__
from .adapter import create_session
from .cache import Cache, FileCache, HttpAwareCache
from .client import ForwardingClient
from .config import DEFAULT_SETTINGS, ProxySettings
from .dispatcher import Dispatcher, error_response, local_response
from .errors import RequestBodyError
from .model import Request
from .notify import CacheUpdateListener, NotificationHub
from .refresh import BackgroundRefresher
from .resolver import ResolverConfig, to_local_path


logger = logging.getLogger(__name__)

_MAX_LINE = 65537


class ProxyRequestHandler(BaseHTTPRequestHandler):
    """
    Translates between the local HTTP connection and the dispatcher. Any method and any path are accepted.
    """

    protocol_version = 'HTTP/1.1'
    server_version = 'cacheproxy/{}'.format(__version__)

    def log_message(self, format, *args):
        logger.debug('{} - {}'.format(self.address_string(), format % args))

    def _read_body(self) -> Optional[bytes]:
        """
        Read the request body, framed either by chunked transfer coding or by Content-Length.

        @throws RequestBodyError
          If the framing is malformed. The rest of the body is then left unread, so the connection must be closed.
        """
        if 'chunked' in self.headers.get('Transfer-Encoding', '').lower():
            return self._read_chunked_body() or None
        value = self.headers.get('Content-Length')
        if value is None:
            return None
        try:
            length = int(value)
        except ValueError:
            length = -1
        if length < 0:
            raise RequestBodyError(400, 'Malformed Content-Length: {}'.format(value))
        return self.rfile.read(length) if length > 0 else None

    def _read_chunked_body(self) -> bytes:
        chunks = []
        while True:
            line = self.rfile.readline(_MAX_LINE)
            try:
                size = int(line.split(b';', 1)[0].strip(), 16)
            except ValueError:
                size = -1
            if size < 0:
                raise RequestBodyError(400, 'Malformed chunk size: {!r}'.format(line.strip()))
            if size == 0:
                break
            chunks.append(self.rfile.read(size))
            self.rfile.readline(_MAX_LINE)

        # Trailers are discarded.
        while self.rfile.readline(_MAX_LINE) not in (b'\r\n', b'\n', b''):
            pass
        return b''.join(chunks)

    def _headers(self) -> CaseInsensitiveDict:
        headers = CaseInsensitiveDict()
        for name, value in self.headers.items():
            if name in headers:
                separator = '; ' if name.lower() == 'cookie' else ', '
                headers[name] = '{}{}{}'.format(headers[name], separator, value)
            else:
                headers[name] = value
        return headers

    def _proxy(self) -> None:
        try:
            body = self._read_body()
        except RequestBodyError as e:
            logger.warning('Rejecting request for {}: {}'.format(self.path, e))
            response = local_response(error_response(e.status, str(e)))
            response.headers['Connection'] = 'close'
        else:
            request = Request(method=self.command, uri=self.path, headers=self._headers(), body=body)
            response = self.server.dispatcher.dispatch(request)

        body = response.body or b''
        self.send_response(response.status, response.reason or None)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if self.command != 'HEAD' and body:
            self.wfile.write(body)

    do_GET = _proxy
    do_HEAD = _proxy
    do_POST = _proxy
    do_PUT = _proxy
    do_PATCH = _proxy
    do_DELETE = _proxy
    do_OPTIONS = _proxy


class _ProxyHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher
        super().__init__(address, ProxyRequestHandler)


class ProxyServer:
    """
    An offline-capable caching proxy for a single origin.

    Example::

        proxy = ProxyServer('https://example.test', 'apps/demo')
        proxy.start()
        url = proxy.get_proxy_url() + '/apps/demo/index.html'
    """

    def __init__(self,
                 base_url: str,
                 base_path_segment: str = '',
                 settings: ProxySettings = DEFAULT_SETTINGS,
                 cache: Optional[Cache] = None,
                 session: Optional[requests.Session] = None) -> None:
        """
        @param base_url
          The origin root.
        @param base_path_segment
          The sub-path the app is mounted under on the origin.
        @param settings
          Listener, cache, network and refresh settings.
        @param cache
          The store to use. Defaults to a `FileCache` in `settings.cache_directory`.
        @param session
          The session to send upstream requests with. Defaults to one with the cache-control override mounted.
        """
        self.__settings = settings
        self.__config = ResolverConfig(base_url, base_path_segment)
        self.__config_lock = threading.Lock()
        self.__lifecycle_lock = threading.RLock()
        self.__server = None  # type: Optional[_ProxyHTTPServer]
        self.__thread = None  # type: Optional[threading.Thread]

        if cache is None:
            cache = HttpAwareCache(FileCache(settings.cache_directory,
                                             settings.cache_directory_levels,
                                             settings.cache_capacity))
        self.__cache = cache
        self.__client = ForwardingClient(cache,
                                         settings.policy,
                                         session=session if session is not None else create_session(settings.policy),
                                         connect_timeout=settings.connect_timeout,
                                         read_timeout=settings.read_timeout)
        self.__hub = NotificationHub()
        self.__refresher = BackgroundRefresher(self.__client,
                                               self.__hub,
                                               max_workers=settings.refresh_workers,
                                               max_pending=settings.max_pending_refreshes)
        self.__dispatcher = Dispatcher(self.__client, self.__refresher, self._current_config, settings.policy)
        self.__maintenance = ThreadPoolExecutor(max_workers=1, thread_name_prefix='cacheproxy-maintenance')

    def __enter__(self) -> 'ProxyServer':
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def dispatcher(self) -> Dispatcher:
        return self.__dispatcher

    @property
    def hub(self) -> NotificationHub:
        return self.__hub

    @property
    def refresher(self) -> BackgroundRefresher:
        return self.__refresher

    @property
    def cache(self) -> Cache:
        return self.__cache

    # region Lifecycle

    def is_running(self) -> bool:
        with self.__lifecycle_lock:
            return self.__server is not None

    def start(self) -> None:
        with self.__lifecycle_lock:
            if self.__server is not None:
                logger.info('Proxy server already running at {}'.format(self.get_proxy_url()))
                return
            try:
                self.__settings.cache_directory.mkdir(parents=True, exist_ok=True)
                server = _ProxyHTTPServer((self.__settings.host, self.__settings.port), self.__dispatcher)
            except OSError:
                logger.exception('Could not start the proxy server')
                return

            thread = threading.Thread(target=server.serve_forever,
                                      kwargs={'poll_interval': 0.25},
                                      name='cacheproxy-server',
                                      daemon=True)
            thread.start()
            self.__server = server
            self.__thread = thread
            logger.info('Proxy server started at {}'.format(self.get_proxy_url()))

    def stop(self) -> None:
        with self.__lifecycle_lock:
            server, thread = self.__server, self.__thread
            if server is None:
                return
            self.__server = None
            self.__thread = None
            try:
                server.shutdown()
                server.server_close()
                thread.join(timeout=5)
            except Exception:
                logger.exception('Error while stopping the proxy server')
                return
            logger.info('Proxy server stopped')

    def close(self) -> None:
        """
        Stop the listener and release the worker pools and the HTTP session.
        """
        self.stop()
        self.__refresher.shutdown(wait=False)
        self.__maintenance.shutdown(wait=False)
        self.__client.close()
        self.__cache.close()

    def get_proxy_url(self) -> str:
        with self.__lifecycle_lock:
            if self.__server is None:
                return ''
            host, port = self.__server.server_address[:2]
            return 'http://{}:{}'.format(host, port)

    # endregion

    # region Configuration

    def _current_config(self) -> ResolverConfig:
        with self.__config_lock:
            return self.__config

    def set_base_url(self, url: str) -> None:
        with self.__config_lock:
            self.__config = ResolverConfig(url, self.__config.base_path_segment)
        logger.info('Base URL set to {}'.format(url))

    def set_base_path_segment(self, path: str) -> None:
        with self.__config_lock:
            self.__config = ResolverConfig(self.__config.base_url, path)
        logger.info('Base path segment set to {}'.format(path))

    def upstream_url(self, url: str) -> str:
        """
        The upstream URL for `url`, which may be a local proxy URL, a local path or already an upstream URL.
        """
        return self._current_config().resolve(to_local_path(url, self.get_proxy_url()))

    # endregion

    # region Cache updates

    def register_cache_update_listener(self, url: str, listener: CacheUpdateListener) -> None:
        self.__hub.subscribe(self.upstream_url(url), listener)

    def unregister_cache_update_listener(self, url: str, listener: CacheUpdateListener) -> None:
        self.__hub.unsubscribe(self.upstream_url(url), listener)

    def force_cache_refresh(self, url: str) -> Optional[Future]:
        upstream = self.upstream_url(url)
        return self.__refresher.submit(upstream, Request(method='GET', uri=upstream))

    def clear_cache(self) -> None:
        try:
            self.__maintenance.submit(self._clear_cache)
        except RuntimeError:
            logger.warning('Proxy is closed. Not clearing the cache.')

    def _clear_cache(self) -> None:
        try:
            self.__cache.clear()
            logger.info('Cache cleared')
        except Exception:
            logger.exception('Could not clear the cache')

    # endregion
