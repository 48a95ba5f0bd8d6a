"""
Maps paths received by the local listener to upstream URLs.
"""

from dataclasses import dataclass
import re
from urllib.parse import urlsplit, urlunsplit


_SCHEME = re.compile(r'[A-Za-z][A-Za-z0-9+.-]*://')


@dataclass(frozen=True)
class ResolverConfig:
    """
    An immutable snapshot of the origin the proxy currently forwards to.
    """

    base_url: str
    base_path_segment: str = ''

    def resolve(self, local_path: str) -> str:
        return resolve(local_path, self.base_url, self.base_path_segment)


def resolve(local_path: str, base_url: str, base_path_segment: str = '') -> str:
    """
    Resolve a local request path to a fully-qualified upstream URL.

    @param local_path
      The request target received by the local listener, e.g. `/app/main.js?v=2`.
      Targets which already embed an absolute URL (`/https://host/x`) are used
      verbatim.
    @param base_url
      The origin root, e.g. `https://example.test/` .
    @param base_path_segment
      The sub-path the app is mounted under on the origin. When the incoming
      path contains it, the upstream URL is re-anchored at that segment so that
      relative navigation inside the app keeps working.
    @return
      The upstream URL. This never raises; a path that cannot be resolved
      sensibly still produces a best-effort URL and the fetch fails later.
    """
    # Only the path part may carry an embedded URL; `?next=https://...` must not.
    match = _SCHEME.search(local_path.split('?', 1)[0])
    if match is not None:
        return local_path[match.start():]

    base = base_url.rstrip('/')
    path = '/' + local_path.lstrip('/')

    segment = base_path_segment.strip('/')
    if segment:
        index = path.find(segment)
        if index >= 0:
            suffix = path[index + len(segment):]
            # Only the path of the base URL may hold the segment, never its host.
            parts = urlsplit(base)
            anchor_index = parts.path.find(segment)
            if anchor_index >= 0:
                anchor = urlunsplit((parts.scheme, parts.netloc, parts.path[:anchor_index + len(segment)], '', ''))
            else:
                anchor = '{}/{}'.format(base, segment)
            return anchor + suffix

    return base + path


def to_local_path(url: str, proxy_url: str) -> str:
    """
    Strip the local proxy origin from `url`.

    URLs that do not point at the proxy are returned unchanged.
    """
    if proxy_url and url.startswith(proxy_url):
        rest = url[len(proxy_url):]
        if not rest:
            return '/'
        if rest[0] in '/?#':
            return rest
    return url
