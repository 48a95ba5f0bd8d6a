"""
Defines the types passed between the proxy's components.

These types are as simple as possible in order to most conveniently consume and
produce instances of them. Headers are always case-insensitive mappings; bodies
are always fully read `bytes`.
"""

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import MutableMapping, Optional

from requests.structures import CaseInsensitiveDict


def _headers(headers) -> CaseInsensitiveDict:
    return CaseInsensitiveDict(headers or {})


class FetchMode(Enum):
    """
    Where the forwarding client may look for a response.
    """

    CACHE_ONLY = 'cache-only'
    NETWORK_ONLY = 'network-only'
    NORMAL = 'normal'


@dataclass
class Request:
    """
    Represents an arbitrary request.

    For inbound requests `uri` is the request target as received by the local
    listener. Once resolved, it is the fully-qualified upstream URL.
    """

    method: str
    """
    The HTTP method of the request. E.g., "GET".
    """

    uri: str
    """
    The id of the resource being requested.
    """

    headers: MutableMapping[str, str] = field(default_factory=CaseInsensitiveDict)
    """
    All the headers being sent with the request.
    """

    body: Optional[bytes] = field(default=None, compare=False)
    """
    The request payload, if any.
    """

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = _headers(self.headers)

    def copy(self, **changes) -> 'Request':
        headers = changes.pop('headers', self.headers)
        return Request(method=changes.pop('method', self.method),
                       uri=changes.pop('uri', self.uri),
                       headers=CaseInsensitiveDict(headers),
                       body=changes.pop('body', self.body))


@dataclass
class Response:
    """
    Represents an arbitrary response, without any bells and whistles.

    We deliberately do not use `requests.Response`, we just want a type that
    does what we need, and nothing more.
    """

    status: int
    """
    The status code of the response. E.g., 200 or 400.
    """

    reason: str = ''
    """
    The reason string, which relates to the status code.
    """

    headers: MutableMapping[str, str] = field(default_factory=CaseInsensitiveDict)
    """
    All the headers sent with the response.
    """

    body: Optional[bytes] = None
    """
    The response payload.
    """

    def __post_init__(self) -> None:
        self.headers = _headers(self.headers)

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get('Content-Type')

    @property
    def validators(self) -> dict:
        """
        The ETag and Last-Modified headers of the response, where present.
        """
        return {name: self.headers[name]
                for name in ('ETag', 'Last-Modified')
                if name in self.headers}

    def copy(self) -> 'Response':
        return Response(status=self.status,
                        reason=self.reason,
                        headers=CaseInsensitiveDict(self.headers),
                        body=self.body)


@dataclass
class CacheEntry:
    """
    A cache entry.

    The freshness window (`max_age`) belongs to the entry rather than the
    origin: it is whatever the proxy's own cache-control rewrite put on the
    response before it was stored.
    """
    request: Request
    response: Response
    stored_at: float = field(default_factory=time.time, compare=False)
    max_age: int = field(default=0, compare=False)

    def is_fresh(self, now: Optional[float] = None) -> bool:
        if now is None:
            now = time.time()
        return now - self.stored_at < self.max_age
