import logging
from typing import Optional

import requests
from urllib3.exceptions import NewConnectionError

from .adapter import create_session
from .cache import Cache
from .errors import CacheMiss, GatewayError, OfflineError
from .model import FetchMode, Request, Response
from .policy import CachePolicy
from .util import HOP_BY_HOP_HEADERS, without_headers


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# requests has already decoded and measured the body by the time we see it.
_DROPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {'content-encoding', 'content-length'}

_OFFLINE_MARKERS = (
    'Failed to establish a new connection',
    'Failed to resolve',
    'Name or service not known',
    'nodename nor servname provided',
    'Temporary failure in name resolution',
    'No address associated with hostname',
    'Network is unreachable',
)


def is_offline(error: requests.RequestException) -> bool:
    """
    Whether `error` means the origin could not be reached at all.

    DNS failures and refused or timed-out connection attempts count as offline. Anything that happens once a
    connection exists (read timeouts, aborted connections, bad responses) does not.
    """
    if isinstance(error, requests.exceptions.ConnectTimeout):
        return True
    if not isinstance(error, requests.exceptions.ConnectionError):
        return False

    reason = error.args[0] if error.args else None
    reason = getattr(reason, 'reason', reason)
    if isinstance(reason, NewConnectionError):
        return True
    message = str(error)
    return any(marker in message for marker in _OFFLINE_MARKERS)


class ForwardingClient:
    """
    Executes requests against the cache, the network, or both.

    The dispatcher always picks one of the two forced modes explicitly. `FetchMode.NORMAL` (fresh cache entry, else
    network) is only used by supporting operations.
    """

    def __init__(self,
                 cache: Cache,
                 policy: CachePolicy,
                 session: Optional[requests.Session] = None,
                 connect_timeout: float = DEFAULT_TIMEOUT,
                 read_timeout: float = DEFAULT_TIMEOUT) -> None:
        self.cache = cache
        self.policy = policy
        self.session = session if session is not None else create_session(policy)
        self.timeout = (connect_timeout, read_timeout)

    def fetch(self, request: Request, mode: FetchMode = FetchMode.NORMAL) -> Response:
        """
        Retrieve a response for `request`.

        @param request
          A request whose URI is already the upstream URL.
        @param mode
          Where the response may come from.
        @return
          The response. Live responses are stored before they are returned.
        @throws CacheMiss
          In `CACHE_ONLY` mode, when there is no stored entry.
        @throws OfflineError
          When the origin cannot be reached.
        @throws GatewayError
          When the exchange with the origin fails for any other reason.
        """
        if mode is FetchMode.CACHE_ONLY:
            entry = self.cache.get(request)
            if entry is None:
                raise CacheMiss(request.uri)
            logger.debug('Cache hit for {}'.format(request.uri))
            return entry.response

        if mode is FetchMode.NORMAL:
            entry = self.cache.get(request)
            if entry is not None and entry.is_fresh():
                logger.debug('Fresh cache hit for {}'.format(request.uri))
                return entry.response

        return self._from_network(request)

    def close(self) -> None:
        self.session.close()

    def _from_network(self, request: Request) -> Response:
        response = self._send(request)
        if self._should_store(request):
            try:
                self.cache.add(request, response)
            except OSError:
                logger.exception('Could not store the response for {}'.format(request.uri))
        return response

    def _should_store(self, request: Request) -> bool:
        return self.policy.store_non_cacheable or self.policy.is_cacheable(request.uri)

    def _send(self, request: Request) -> Response:
        logger.debug('Sending {} {}'.format(request.method, request.uri))
        try:
            requests_response = self.session.request(request.method,
                                                     request.uri,
                                                     headers=dict(request.headers),
                                                     data=request.body,
                                                     timeout=self.timeout)
        except requests.RequestException as e:
            if is_offline(e):
                logger.warning('Origin unreachable for {}: {}'.format(request.uri, e))
                raise OfflineError(request.uri, e) from e
            logger.warning('Network error for {}: {}'.format(request.uri, e))
            raise GatewayError(request.uri, e) from e

        logger.debug('Response for {}: {}'.format(request.uri, requests_response.status_code))
        return Response(status=requests_response.status_code,
                        reason=requests_response.reason or '',
                        headers=without_headers(requests_response.headers, _DROPPED_RESPONSE_HEADERS),
                        body=requests_response.content)
