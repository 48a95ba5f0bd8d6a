import posixpath
from typing import Iterable, Mapping
from urllib.parse import urlsplit

from requests.structures import CaseInsensitiveDict


# Headers that describe a single connection rather than the resource. They are
# never forwarded across the proxy in either direction.
HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'proxy-connection',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
})


def clamp(value, min, max):
    return sorted((min, value, max))[1]


def without_headers(headers: Mapping[str, str], names: Iterable[str]) -> CaseInsensitiveDict:
    """
    Copy `headers`, leaving out every header named in `names` (case-insensitive).
    """
    excluded = {name.lower() for name in names}
    return CaseInsensitiveDict((name, value)
                               for name, value in headers.items()
                               if name.lower() not in excluded)


def extension_of(uri: str) -> str:
    """
    The lower-cased file extension of the path of `uri`, including the dot.

    The query string and fragment are ignored, so `/app.js?v=3` is a `.js`.
    """
    try:
        path = urlsplit(uri).path
    except ValueError:
        path = uri.split('?', 1)[0].split('#', 1)[0]
    return posixpath.splitext(path)[1].lower()
