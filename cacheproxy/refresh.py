"""
Background revalidation of cached URLs.

A refresh fetches a URL from the network, compares the result with what the cache held before, and notifies
listeners when the cached content changed. At most one refresh per URL is in flight at any time; a submission for a URL
that is already being refreshed is dropped.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
from typing import Optional, Set

from .client import ForwardingClient
from .errors import CacheMiss
from .model import FetchMode, Request, Response
from .notify import NotificationHub


logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_MAX_PENDING = 64


@dataclass(frozen=True)
class RefreshJob:
    """
    Everything a refresh needs, captured when it was submitted.
    """

    url: str
    request: Request

    def network_request(self) -> Request:
        headers = dict(self.request.headers)
        headers['Cache-Control'] = 'no-cache'
        return self.request.copy(headers=headers)


def has_changed(prior: Optional[Response], fresh: Response) -> bool:
    """
    Decide whether `fresh` carries different content than `prior`.

    Bodies are compared byte for byte when both are available. Otherwise the validators (ETag, Last-Modified) are
    compared. Without a prior response there is no baseline, so nothing counts as changed.
    """
    if prior is None:
        return False
    if prior.body is not None and fresh.body is not None:
        return prior.body != fresh.body
    return prior.validators != fresh.validators


class BackgroundRefresher:
    def __init__(self,
                 client: ForwardingClient,
                 hub: NotificationHub,
                 max_workers: int = DEFAULT_WORKERS,
                 max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.__client = client
        self.__hub = hub
        self.__max_pending = max_pending
        self.__executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='cacheproxy-refresh')
        self.__in_flight = set()  # type: Set[str]
        self.__lock = threading.Lock()

    def submit(self, url: str, request: Request) -> Optional[Future]:
        """
        Schedule a refresh of `url`.

        @param url
          The upstream URL to refresh. Listeners for this URL are notified on change.
        @param request
          The upstream request to replay. It is copied, later changes to it have no effect.
        @return
          A future resolving to whether the content changed, or `None` if the URL is already being refreshed or too
          many refreshes are pending.
        """
        job = RefreshJob(url=url, request=request.copy())
        with self.__lock:
            if url in self.__in_flight:
                logger.debug('Refresh already in flight for {}. Skipping.'.format(url))
                return None
            if len(self.__in_flight) >= self.__max_pending:
                logger.warning('{} refreshes already pending. Dropping the refresh for {}.'.format(
                    len(self.__in_flight), url))
                return None
            self.__in_flight.add(url)

        try:
            future = self.__executor.submit(self._run, job)
        except RuntimeError:
            self._release(url)
            logger.warning('Refresher is shut down. Dropping the refresh for {}.'.format(url))
            return None

        def release_if_cancelled(done: Future) -> None:
            if done.cancelled():
                self._release(url)

        future.add_done_callback(release_if_cancelled)
        logger.debug('Scheduled a background refresh for {}'.format(url))
        return future

    def is_refreshing(self, url: str) -> bool:
        with self.__lock:
            return url in self.__in_flight

    def in_flight(self) -> Set[str]:
        with self.__lock:
            return set(self.__in_flight)

    def shutdown(self, wait: bool = True) -> None:
        self.__executor.shutdown(wait=wait, cancel_futures=not wait)

    def _release(self, url: str) -> None:
        with self.__lock:
            self.__in_flight.discard(url)

    def _run(self, job: RefreshJob) -> bool:
        try:
            return self._refresh(job)
        except Exception:
            # A background refresh never affects the response that was already served.
            logger.exception('Background refresh failed for {}'.format(job.url))
            return False
        finally:
            self._release(job.url)

    def _refresh(self, job: RefreshJob) -> bool:
        logger.info('Refreshing {} in the background'.format(job.url))
        try:
            prior = self.__client.fetch(job.request, FetchMode.CACHE_ONLY)
        except CacheMiss:
            logger.debug('No cached entry for {}. Nothing to compare against.'.format(job.url))
            prior = None

        fresh = self.__client.fetch(job.network_request(), FetchMode.NETWORK_ONLY)
        if fresh.status >= 500:
            logger.warning('Origin answered {} for {}. Keeping the cached entry.'.format(fresh.status, job.url))
            return False

        if not has_changed(prior, fresh):
            logger.info('Content for {} is unchanged'.format(job.url))
            return False

        # Listeners reload from the cache, so only what the cache now holds counts.
        try:
            stored = self.__client.fetch(job.request, FetchMode.CACHE_ONLY)
        except CacheMiss:
            stored = None
        if stored is None or not has_changed(prior, stored):
            logger.info('Origin answered {} for {} but the cached entry was kept. Not notifying.'.format(
                fresh.status, job.url))
            return False

        logger.info('Content for {} changed'.format(job.url))
        self.__hub.publish(job.url)
        return True
