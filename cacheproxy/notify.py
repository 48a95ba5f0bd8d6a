"""
Per-URL registry of parties interested in cache updates.
"""

import logging
import threading
from typing import Callable, Dict, List


logger = logging.getLogger(__name__)

CacheUpdateListener = Callable[[str], None]
"""
Called with the URL whose cached content changed.
"""


class NotificationHub:
    """
    A concurrent multimap from URL to listeners.

    Every operation is atomic with respect to the others. `publish()` calls listeners outside of the lock, on a
    snapshot of the listeners taken when it started, so a listener that unsubscribes concurrently may still receive
    that one notification.
    """

    def __init__(self) -> None:
        self.__listeners = {}  # type: Dict[str, List[CacheUpdateListener]]
        self.__lock = threading.Lock()

    def subscribe(self, url: str, listener: CacheUpdateListener) -> None:
        with self.__lock:
            self.__listeners.setdefault(url, []).append(listener)
        logger.debug('Registered a cache update listener for {}'.format(url))

    def unsubscribe(self, url: str, listener: CacheUpdateListener) -> bool:
        """
        Remove one registration of `listener` for `url`.

        @return
          Whether the listener was registered. Removing the last listener for a URL removes the URL.
        """
        with self.__lock:
            listeners = self.__listeners.get(url)
            if not listeners or listener not in listeners:
                return False
            listeners.remove(listener)
            if not listeners:
                del self.__listeners[url]
        logger.debug('Unregistered a cache update listener for {}'.format(url))
        return True

    def publish(self, url: str) -> int:
        """
        Notify every listener registered for `url`.

        A listener that raises is logged and skipped; the remaining listeners are still notified.

        @return
          The number of listeners that were notified successfully.
        """
        with self.__lock:
            listeners = list(self.__listeners.get(url, ()))
        if not listeners:
            logger.debug('No listeners for {}. Nothing to notify.'.format(url))
            return 0

        logger.info('Notifying {} listener(s) that {} changed'.format(len(listeners), url))
        notified = 0
        for listener in listeners:
            try:
                listener(url)
                notified += 1
            except Exception:
                logger.exception('Cache update listener failed for {}'.format(url))
        return notified

    def listeners(self, url: str) -> List[CacheUpdateListener]:
        with self.__lock:
            return list(self.__listeners.get(url, ()))

    def urls(self) -> List[str]:
        with self.__lock:
            return list(self.__listeners)

    def clear(self) -> None:
        with self.__lock:
            self.__listeners.clear()
