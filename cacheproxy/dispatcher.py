"""
The serve policy: turns an inbound local request into a response.

Every request walks the same states::

    RESOLVE -> CLASSIFY -> CACHE_FIRST   -> RESPOND
                        -> NETWORK_FIRST -> RESPOND

Cacheable URLs are served from the cache whenever possible and revalidated in the background
(stale-while-revalidate). Everything else goes to the network first and falls back to the cache only when the
origin cannot be reached.
"""

from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
import logging
from typing import Callable, Dict, Optional

from .client import ForwardingClient
from .errors import CacheMiss, GatewayError, OfflineError, ResolutionError
from .model import FetchMode, Request, Response
from .policy import CachePolicy
from .refresh import BackgroundRefresher
from .resolver import ResolverConfig
from .util import HOP_BY_HOP_HEADERS, without_headers


logger = logging.getLogger(__name__)

CACHE_STATUS_HEADER = 'X-Cache'

OFFLINE_CACHEABLE_MESSAGE = 'Offline: Content not available in cache.'
OFFLINE_NON_CACHEABLE_MESSAGE = 'Offline: This content requires network connection.'

# The proxy rewrites addressing and lets requests negotiate its own encoding with the origin.
_DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {'host', 'content-length', 'accept-encoding'}
_DROPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {'content-length', 'content-encoding'}


class DispatchState(Enum):
    RESOLVE = 'resolve'
    CLASSIFY = 'classify'
    CACHE_FIRST = 'cache-first'
    NETWORK_FIRST = 'network-first'
    RESPOND = 'respond'


class CacheStatus:
    HIT = 'HIT'
    """Served from the cache."""
    MISS = 'MISS'
    """Served from the network."""
    STALE = 'STALE'
    """Served from the cache because the origin could not be reached."""


@dataclass
class Exchange:
    """
    The state of one inbound request as it moves through the dispatcher.
    """

    request: Request
    config: ResolverConfig
    state: DispatchState = DispatchState.RESOLVE
    upstream: Optional[Request] = None
    cacheable: bool = False
    response: Optional[Response] = None
    cache_status: Optional[str] = None


def error_response(status: int, message: str) -> Response:
    return Response(status=status,
                    reason=HTTPStatus(status).phrase,
                    headers={'Content-Type': 'text/plain; charset=utf-8'},
                    body=message.encode('utf-8'))


def local_response(response: Response, cache_status: Optional[str] = None) -> Response:
    """
    Prepare `response` for the local hop.

    Upstream headers are copied except for connection-level ones. The rendering surface must never cache a second
    time, so the freshness directives are replaced by explicit no-store ones.
    """
    headers = without_headers(response.headers, _DROPPED_RESPONSE_HEADERS)
    headers['Cache-Control'] = 'no-store, no-cache, must-revalidate'
    headers['Pragma'] = 'no-cache'
    headers['Expires'] = '0'
    if cache_status is not None:
        headers[CACHE_STATUS_HEADER] = cache_status
    return Response(status=response.status,
                    reason=response.reason,
                    headers=headers,
                    body=response.body)


class Dispatcher:
    def __init__(self,
                 client: ForwardingClient,
                 refresher: BackgroundRefresher,
                 config: Callable[[], ResolverConfig],
                 policy: Optional[CachePolicy] = None) -> None:
        """
        @param client
          Fetches from the cache and the network.
        @param refresher
          Receives background refreshes for URLs served from the cache.
        @param config
          Returns the current resolver configuration. It is called once per request.
        @param policy
          Classifies URLs. Defaults to the client's policy.
        """
        self.__client = client
        self.__refresher = refresher
        self.__config = config
        self.__policy = policy if policy is not None else client.policy
        self.__transitions = {
            DispatchState.RESOLVE: self.resolve,
            DispatchState.CLASSIFY: self.classify,
            DispatchState.CACHE_FIRST: self.cache_first,
            DispatchState.NETWORK_FIRST: self.network_first,
        }  # type: Dict[DispatchState, Callable[[Exchange], DispatchState]]

    def dispatch(self, request: Request) -> Response:
        """
        Produce the response for an inbound local request. This never raises.
        """
        try:
            exchange = Exchange(request=request, config=self.__config())
            while exchange.state is not DispatchState.RESPOND:
                exchange.state = self.__transitions[exchange.state](exchange)
            return self.respond(exchange)
        except Exception as e:
            logger.exception('Error proxying request: {}'.format(request.uri))
            return local_response(error_response(500, 'Proxy error: {}'.format(e)))

    def resolve(self, exchange: Exchange) -> DispatchState:
        try:
            path = self._local_path(exchange.request)
        except ResolutionError as e:
            logger.warning('Rejecting request: {}'.format(e))
            exchange.response = error_response(400, str(e))
            return DispatchState.RESPOND

        url = exchange.config.resolve(path)
        logger.debug('Proxying request to: {}'.format(url))
        exchange.upstream = Request(method=exchange.request.method,
                                    uri=url,
                                    headers=without_headers(exchange.request.headers, _DROPPED_REQUEST_HEADERS),
                                    body=exchange.request.body)
        return DispatchState.CLASSIFY

    def classify(self, exchange: Exchange) -> DispatchState:
        exchange.cacheable = self.__policy.is_cacheable(exchange.upstream.uri)
        return DispatchState.CACHE_FIRST if exchange.cacheable else DispatchState.NETWORK_FIRST

    def cache_first(self, exchange: Exchange) -> DispatchState:
        upstream = exchange.upstream
        try:
            exchange.response = self.__client.fetch(upstream, FetchMode.CACHE_ONLY)
            exchange.cache_status = CacheStatus.HIT
            logger.debug('Cache hit for: {}'.format(upstream.uri))
            self.__refresher.submit(upstream.uri, upstream)
            return DispatchState.RESPOND
        except CacheMiss:
            logger.debug('Cache miss for: {}'.format(upstream.uri))

        try:
            exchange.response = self.__client.fetch(upstream, FetchMode.NETWORK_ONLY)
            exchange.cache_status = CacheStatus.MISS
        except OfflineError:
            exchange.response = error_response(503, OFFLINE_CACHEABLE_MESSAGE)
        except GatewayError as e:
            exchange.response = error_response(502, 'Gateway error: {}'.format(e.cause))
        return DispatchState.RESPOND

    def network_first(self, exchange: Exchange) -> DispatchState:
        upstream = exchange.upstream
        logger.debug('Direct request for: {}'.format(upstream.uri))
        try:
            exchange.response = self.__client.fetch(upstream, FetchMode.NETWORK_ONLY)
            exchange.cache_status = CacheStatus.MISS
            if self.__policy.refresh_non_cacheable:
                self.__refresher.submit(upstream.uri, upstream)
            return DispatchState.RESPOND
        except GatewayError as e:
            exchange.response = error_response(502, 'Gateway error: {}'.format(e.cause))
            return DispatchState.RESPOND
        except OfflineError:
            logger.info('Origin unreachable. Falling back to the cache for: {}'.format(upstream.uri))

        try:
            exchange.response = self.__client.fetch(upstream, FetchMode.CACHE_ONLY)
            exchange.cache_status = CacheStatus.STALE
        except CacheMiss:
            exchange.response = error_response(503, OFFLINE_NON_CACHEABLE_MESSAGE)
        return DispatchState.RESPOND

    def respond(self, exchange: Exchange) -> Response:
        return local_response(exchange.response, exchange.cache_status)

    def _local_path(self, request: Request) -> str:
        path = request.uri
        if not path:
            raise ResolutionError('Missing path')
        if not path.startswith('/') and '://' not in path:
            raise ResolutionError('Malformed path: {}'.format(path))
        return path
