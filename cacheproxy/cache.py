from abc import ABC, abstractmethod
from dataclasses import dataclass
import hashlib
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
import threading
import time
from typing import List, Mapping, Optional, Tuple

from .model import CacheEntry, Request, Response
from .policy import parse_max_age
from .util import clamp


logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50 * 1024 * 1024

# Entries share this many locks, picked by key hash.
LOCK_STRIPES = 64


class Cache(ABC):
    """
    An abstraction of a response cache.

    A response cache has a relatively narrow scope: to remember a response such that it can be recalled later for a
    matching request. Note that this deliberately precludes certain responsibilities such as deciding freshness. The
    forwarding client and the dispatcher decide when an entry is good enough to serve.
    """

    @abstractmethod
    def get(self, request: Request) -> Optional[CacheEntry]:
        """
        Retrieve a cached response matching `request`.

        @param request
          The request to look up in the cache.
        @return
          A cached response for `request`, or `None` if there is no valid one.
        """

    @abstractmethod
    def add(self, request: Request, response: Response) -> Optional[CacheEntry]:
        """
        Add a response to the cache, replacing any prior entry for `request`.

        @param request
          The request for which a response should be cached.
        @param response
          The response to cache. Its body must be fully read.
        @return
          A cached entry, or `None` if the cache could not cache the response.
        """

    @abstractmethod
    def delete(self, request: Request) -> None:
        """
        Delete a response from the cache.

        @param request
            A request to find in the cache. The corresponding response will be deleted.
        """

    @abstractmethod
    def clear(self) -> None:
        """
        Delete every entry.
        """

    def size(self) -> int:
        """
        The number of bytes the cache currently occupies.
        """
        return 0

    def close(self):
        """
        Close any resources associated with the cache.
        """


class HttpAwareCache(Cache):
    """
    Augments a cache with HTTP-specific knowledge.

    - Only GET requests are cached.
    - Only sensible response statuses are cached.
    - Vary headers of the cached response must match the incoming request.

    Cache-Control is deliberately not consulted. The proxy overrides it anyway.
    """

    cachable_status_codes = frozenset({200, 203, 204, 300, 301, 308, 404, 410})

    def __init__(self, implementation: Cache) -> None:
        self.__impl = implementation

    def get(self, request: Request) -> Optional[CacheEntry]:
        logger.debug('Delegating cache lookup to decorated cache.')
        entry = self.__impl.get(request)
        if entry is None:
            logger.debug('Decorated cache did not find a matching cache entry.')
            return None

        # region Only cache for response statuses that make sense to cache.
        if not self._is_cachable_status_code(entry.response.status):
            logger.info('Status code {} is not cachable'.format(entry.response.status))
            return None
        if not self._is_cachable_method(entry.request.method):
            logger.info('Method {} is not cachable'.format(entry.request.method))
            return None
        # endregion

        # region Only cache if all specific Vary headers match.
        for key in self._vary_keys(entry.response.headers):
            if key == '*':
                logger.info('Cache entry is rejected because it varies on everything.')
                return None
            if key not in entry.request.headers:
                if key in request.headers:
                    logger.info('Cache entry is rejected because the incoming request has a Vary header the cached '
                                'request did not: {}'.format(key))
                    return None
                continue

            if key not in request.headers:
                logger.info('Cache entry is rejected because the incoming request is missing a Vary header: {}'.format(key))
                return None

            expected_value = entry.request.headers[key]
            value = request.headers[key]
            if expected_value != value:
                logger.info('Cache entry is rejected because the value for a Vary header is not equal to the value in '
                            'the original request. Header: {}. Expected value: {}. Actual value: {}'.format(
                                key, expected_value, value))
                return None
        # endregion

        logger.debug('Cache entry passed all HTTP checks. Returning entry from cache.')
        return entry

    def add(self, request: Request, response: Response) -> Optional[CacheEntry]:
        if not self._is_cachable_status_code(response.status):
            logger.info('Refusing to create cache entry. Status code {} is not cachable.'.format(response.status))
            return None
        if not self._is_cachable_method(request.method):
            logger.info('Refusing to create cache entry. Method {} is not cachable.'.format(request.method))
            return None

        logger.debug('Delegating cache entry creation to decorated cache.')
        return self.__impl.add(request, response)

    def delete(self, request: Request) -> None:
        logger.debug('Delegating cache entry deletion to decorated cache.')
        self.__impl.delete(request)

    def clear(self) -> None:
        self.__impl.clear()

    def size(self) -> int:
        return self.__impl.size()

    def close(self):
        self.__impl.close()

    def _vary_keys(self, headers: Mapping[str, str]) -> List[str]:
        return [key.strip() for key in headers.get('Vary', '').split(',') if key.strip()]

    def _is_cachable_status_code(self, status: int) -> bool:
        return status in self.cachable_status_codes

    def _is_cachable_method(self, method: str) -> bool:
        return method in {'GET'}


@dataclass
class FileCacheResponseModel:
    status: int
    reason: str
    headers: Mapping[str, str]
    body_path: Optional[Path]


@dataclass
class FileCacheEntryModel:
    entry_path: Path
    request: Request
    response: FileCacheResponseModel
    stored_at: float
    max_age: int


class CorruptEntry(Exception):
    def __init__(self, entry_path: Path):
        super().__init__()
        self.__entry_path = entry_path

    @property
    def entry_path(self) -> Path:
        return self.__entry_path


class FileCache(Cache):
    """
    A size-bounded cache of JSON entry files pointing at separate body files.

    Entries are addressed by a hash of the normalized request (method and URI). Writes to the same entry are
    serialized with one of a fixed set of striped locks and land atomically via a temporary file and a rename.
    After every write the least recently used entries are evicted until the cache fits its capacity again.
    """

    def __init__(self, directory: Path, cache_directory_levels: int = 2, capacity: int = DEFAULT_CAPACITY) -> None:
        """
        Initialize the file cache.

        @param directory
          The path to the root directory of the cache.
        @param cache_directory_levels
          The number of subdirectory levels to use in the cache directory. This
          will be clamped to be between 0 and 20, respectively.
        @param capacity
          The number of bytes the entry and body files may occupy together.
        """
        self.__directory = Path(directory)
        self.__entry_directory = self.__directory / 'entries'
        self.__body_directory = self.__directory / 'bodies'
        self.__cache_directory_levels = clamp(cache_directory_levels, 0, 20)
        self.__capacity = capacity
        self.__locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))
        self.__eviction_lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self.__directory

    @property
    def capacity(self) -> int:
        return self.__capacity

    def _key(self, request: Request) -> str:
        return '{} {}'.format(request.method, request.uri)

    def _get_path(self, key: str) -> Path:
        hashed = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return self._split_path(hashed)

    def _split_path(self, path: str) -> Path:
        subdirectories = (list(path[:self.__cache_directory_levels])
                          + [path[self.__cache_directory_levels:]])
        return Path(*subdirectories)

    def _entry_path(self, key: str) -> Path:
        return self.__entry_directory / self._get_path(key)

    def _lock_for(self, key: str) -> threading.Lock:
        return self.__locks[hash(key) % len(self.__locks)]

    def _load_entry(self, entry_path: Path) -> FileCacheEntryModel:
        """
        Read a cache entry from a file.

        @param entry_path
            The path to the entry file.
        @return
            The decoded contents of the file.
        @throws FileNotFoundError
            If there is no entry file.
        @throws CorruptEntry
            If the entry file could not be parsed.
        """
        try:
            with open(entry_path, 'r', encoding='utf-8') as f:
                entry = json.load(f)
            body = entry['response']['body']
            return FileCacheEntryModel(entry_path=entry_path,
                                       request=Request(
                                           method=entry['request']['method'],
                                           uri=entry['request']['uri'],
                                           headers=entry['request']['headers']
                                       ),
                                       response=FileCacheResponseModel(
                                           status=entry['response']['status'],
                                           reason=entry['response']['reason'],
                                           headers=entry['response']['headers'],
                                           body_path=None if body is None else self.__body_directory / Path(body)),
                                       stored_at=entry['stored_at'],
                                       max_age=entry['max_age'])
        except (KeyError, TypeError, json.JSONDecodeError):
            raise CorruptEntry(entry_path)

    def _read_body(self, entry_model: FileCacheEntryModel) -> Optional[bytes]:
        if entry_model.response.body_path is None:
            return None
        try:
            return entry_model.response.body_path.read_bytes()
        except FileNotFoundError:
            raise CorruptEntry(entry_model.entry_path)

    def get(self, request: Request) -> Optional[CacheEntry]:
        key = self._key(request)
        entry_path = self._entry_path(key)
        with self._lock_for(key):
            try:
                logger.debug('Looking at the file system for a cache entry matching {}.'.format(key))
                entry_model = self._load_entry(entry_path)
                body = self._read_body(entry_model)
            except CorruptEntry as e:
                logger.warning('Found a corrupt cache entry. Deleting the entry file {}.'.format(e.entry_path))
                self._unlink(e.entry_path)
                return None
            except FileNotFoundError:
                logger.debug('No matching cache entry found.')
                return None

            # The entry file's mtime records the last access for eviction.
            self._touch(entry_path)

        return CacheEntry(
            request=entry_model.request,
            response=Response(
                status=entry_model.response.status,
                reason=entry_model.response.reason,
                headers=entry_model.response.headers,
                body=body
            ),
            stored_at=entry_model.stored_at,
            max_age=entry_model.max_age,
        )

    def add(self, request: Request, response: Response) -> CacheEntry:
        key = self._key(request)
        entry_path = self._entry_path(key)
        stored_at = time.time()
        max_age = parse_max_age(response.headers.get('Cache-Control', ''))

        with self._lock_for(key):
            try:
                previous_body = self._load_entry(entry_path).response.body_path
            except (CorruptEntry, FileNotFoundError):
                previous_body = None

            body_path = None
            if response.body is not None:
                # A randomized body path means a reader of the old entry never sees a half-written body.
                body_path = self.__body_directory / self._split_path(os.urandom(32).hex())
                logger.debug('Writing response body for {} to {}'.format(key, body_path))
                self._write_atomically(body_path, response.body)

            serialized = {
                'request': {
                    'method': request.method,
                    'uri': request.uri,
                    'headers': dict(request.headers),
                },
                'response': {
                    'status': response.status,
                    'reason': response.reason,
                    'headers': dict(response.headers),
                    'body': None if body_path is None else str(body_path.relative_to(self.__body_directory)),
                },
                'stored_at': stored_at,
                'max_age': max_age,
            }
            logger.debug('Writing entry file for {} to {}'.format(key, entry_path))
            self._write_atomically(entry_path, json.dumps(serialized).encode('utf-8'))

            if previous_body is not None and previous_body != body_path:
                self._unlink(previous_body)

        self._evict()

        return CacheEntry(request.copy(), response.copy(), stored_at=stored_at, max_age=max_age)

    def delete(self, request: Request) -> None:
        key = self._key(request)
        with self._lock_for(key):
            self._delete_entry(self._entry_path(key))

    def _delete_entry(self, entry_path: Path) -> None:
        try:
            logger.debug('Looking for the entry file {} so that we can delete both the entry and the associated '
                         'body.'.format(entry_path))
            entry_model = self._load_entry(entry_path)
            paths_to_delete = [entry_model.entry_path]
            if entry_model.response.body_path is not None:
                paths_to_delete.append(entry_model.response.body_path)
        except CorruptEntry as e:
            logger.warning('Found a corrupt cache entry. Marking only the entry file for deletion.')
            paths_to_delete = [e.entry_path]
        except FileNotFoundError:
            logger.debug('No matching cache entry found. Nothing to delete.')
            return

        for path in paths_to_delete:
            self._unlink(path)

    def clear(self) -> None:
        with self.__eviction_lock:
            for directory in (self.__entry_directory, self.__body_directory):
                if directory.exists():
                    logger.info('Deleting {}'.format(directory))
                    shutil.rmtree(directory)

    def size(self) -> int:
        total = 0
        for directory in (self.__entry_directory, self.__body_directory):
            if not directory.exists():
                continue
            for path in directory.rglob('*'):
                try:
                    if path.is_file():
                        total += path.stat().st_size
                except FileNotFoundError:
                    continue
        return total

    def _evict(self) -> None:
        with self.__eviction_lock:
            total = self.size()
            if total <= self.__capacity:
                return

            logger.info('Cache occupies {} bytes, over its capacity of {}. Evicting least recently used entries.'.format(
                total, self.__capacity))
            for entry_path, entry_size in self._entries_by_last_access():
                if total <= self.__capacity:
                    break
                try:
                    key = self._key(self._load_entry(entry_path).request)
                except CorruptEntry:
                    self._unlink(entry_path)
                    total -= entry_size
                    continue
                except FileNotFoundError:
                    continue
                with self._lock_for(key):
                    self._delete_entry(entry_path)
                total -= entry_size

    def _entries_by_last_access(self) -> List[Tuple[Path, int]]:
        """
        Every entry file with the bytes it accounts for, oldest access first.
        """
        entries = []
        for entry_path in self.__entry_directory.rglob('*'):
            try:
                if not entry_path.is_file() or entry_path.name.startswith('.'):
                    continue
                stat = entry_path.stat()
                entry_size = stat.st_size
                try:
                    body_path = self._load_entry(entry_path).response.body_path
                    if body_path is not None:
                        entry_size += body_path.stat().st_size
                except (CorruptEntry, FileNotFoundError):
                    pass
                entries.append((stat.st_mtime, entry_path, entry_size))
            except FileNotFoundError:
                continue
        entries.sort(key=lambda item: item[0])
        return [(path, entry_size) for _, path, entry_size in entries]

    def _write_atomically(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=str(path.parent), prefix='.tmp-')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(temp_name, str(path))
        except BaseException:
            self._unlink(Path(temp_name))
            raise

    def _touch(self, path: Path) -> None:
        try:
            os.utime(str(path))
        except OSError:
            logger.exception('Unexpected error occurred while touching {}'.format(path))

    def _unlink(self, path: Path) -> None:
        try:
            logger.debug('Deleting {}'.format(path))
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception('Unexpected error occurred while deleting {}'.format(path))
