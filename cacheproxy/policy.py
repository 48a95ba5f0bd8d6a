"""
Classification of upstream URLs and the cache-control override applied to
everything fetched from the origin.

Most origins mark dynamic-looking paths as non-cacheable, which would defeat
offline use. The proxy therefore ignores the origin's directives and imposes
its own freshness windows.
"""

from dataclasses import dataclass
import logging
from typing import FrozenSet, MutableMapping

from .util import extension_of


logger = logging.getLogger(__name__)

DEFAULT_CACHEABLE_EXTENSIONS = frozenset({
    '.js', '.css', '.html', '.htm',
    '.png', '.jpg', '.jpeg', '.gif', '.webp',
    '.woff', '.woff2', '.ttf', '.otf', '.eot',
    '.svg', '.ico',
})


@dataclass(frozen=True)
class CachePolicy:
    """
    Decides which URLs are cache-first and how long stored responses stay fresh.
    """

    cacheable_extensions: FrozenSet[str] = DEFAULT_CACHEABLE_EXTENSIONS
    cacheable_max_age: int = 600
    """Freshness window, in seconds, for cacheable extensions."""
    default_max_age: int = 60
    """Freshness window, in seconds, for everything else."""
    store_non_cacheable: bool = True
    """Also store network responses for non-cacheable URLs, as an offline fallback."""
    refresh_non_cacheable: bool = False
    """Kick a background refresh after serving a non-cacheable URL from the network."""

    def is_cacheable(self, uri: str) -> bool:
        return extension_of(uri) in self.cacheable_extensions

    def max_age_for(self, uri: str) -> int:
        return self.cacheable_max_age if self.is_cacheable(uri) else self.default_max_age

    def rewrite(self, uri: str, headers: MutableMapping[str, str]) -> None:
        """
        Overwrite the freshness directives in response `headers` for a request to `uri`.
        """
        max_age = self.max_age_for(uri)
        logger.debug('Overriding Cache-Control for {} to max-age={}'.format(uri, max_age))
        headers['Cache-Control'] = 'public, max-age={}'.format(max_age)
        headers.pop('Pragma', None)
        headers.pop('Expires', None)


def parse_max_age(cache_control: str) -> int:
    """
    Read the max-age directive out of a Cache-Control header value.

    @return
      The number of seconds, or 0 when the directive is missing or malformed.
    """
    for directive in cache_control.split(','):
        name, _, value = directive.strip().partition('=')
        if name.lower() == 'max-age':
            try:
                return max(0, int(value.strip().strip('"')))
            except ValueError:
                return 0
    return 0
