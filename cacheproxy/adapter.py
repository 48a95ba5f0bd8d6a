from http.cookiejar import DefaultCookiePolicy
import logging

import requests
from requests.adapters import HTTPAdapter

from .policy import CachePolicy


logger = logging.getLogger(__name__)


class CacheControlAdapter(HTTPAdapter):
    """
    A transport adapter that imposes the proxy's freshness policy on every live response.

    This runs for each response that actually came off the wire, before anything gets a chance to store it, so the
    store only ever sees the overridden Cache-Control directives.
    """

    def __init__(self, policy: CachePolicy, *args, **kw) -> None:
        super().__init__(*args, **kw)
        self.policy = policy

    def build_response(self, req: requests.PreparedRequest, resp) -> requests.Response:
        response = super().build_response(req, resp)
        self.policy.rewrite(req.url, response.headers)
        return response


def create_session(policy: CachePolicy) -> requests.Session:
    """
    Build a session whose HTTP and HTTPS transports apply `policy`.
    """
    session = requests.Session()
    # Cookies belong to the rendering surface, which sends its own with every request.
    session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    adapter = CacheControlAdapter(policy)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    logger.debug('Created a session with the cache-control override mounted.')
    return session
