from ddt import ddt, data, unpack
import hashlib
import json
from mockito import when, mock, unstub, verify
import os
from pathlib import Path
from tempfile import TemporaryDirectory
import threading
import time
from typing import Optional
from unittest import TestCase

from cacheproxy.cache import LOCK_STRIPES, Cache, FileCache, HttpAwareCache
from cacheproxy.model import CacheEntry, Request, Response


def entry_path(directory: Path, key: str, levels: int = 5) -> Path:
    hashed = hashlib.sha256(key.encode('utf-8')).hexdigest()
    return directory / 'entries' / Path(*(list(hashed[:levels]) + [hashed[levels:]]))


def google_request(**headers) -> Request:
    return Request(method='GET', uri='http://google.ca', headers=headers or {'Accept': 'application/pdf'})


class TestFileCache(TestCase):
    def test_get_reads_entry_and_body(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            body_path = directory / 'bodies' / 'path' / 'to' / 'body'
            body_path.parent.mkdir(parents=True)
            body_path.write_bytes(b'some contents')

            path = entry_path(directory, 'GET http://google.ca')
            path.parent.mkdir(parents=True)
            path.write_text(json.dumps({
                'request': {'method': 'GET', 'uri': 'http://google.ca', 'headers': {'Accept': 'application/pdf'}},
                'response': {
                    'status': 200,
                    'reason': 'OK',
                    'headers': {'Vary': 'Accept', 'ETag': 'gibberish'},
                    'body': str(Path('path', 'to', 'body')),
                },
                'stored_at': 1000.0,
                'max_age': 600,
            }))

            entry = FileCache(directory, 5).get(google_request())

            self.assertEqual(google_request(), entry.request)
            self.assertEqual(200, entry.response.status)
            self.assertEqual('OK', entry.response.reason)
            self.assertEqual({'vary': 'Accept', 'etag': 'gibberish'}, dict(entry.response.headers.lower_items()))
            self.assertEqual(b'some contents', entry.response.body)
            self.assertEqual(1000.0, entry.stored_at)
            self.assertEqual(600, entry.max_age)

    def test_get_without_entry_is_a_miss(self):
        with TemporaryDirectory() as directory:
            self.assertIsNone(FileCache(Path(directory), 5).get(google_request()))

    def test_add_writes_entry_file(self):
        request = google_request(**{'Accept': 'application/pdf', 'X-something-else': 'some value'})
        response = Response(status=200,
                            reason='OK',
                            headers={'Vary': 'Accept', 'ETag': 'gibberish', 'Cache-Control': 'public, max-age=600'},
                            body=b'some contents')

        with TemporaryDirectory() as directory:
            directory = Path(directory)
            cache = FileCache(directory, 5)

            entry = cache.add(request, response)

            path = entry_path(directory, 'GET http://google.ca')
            self.assertTrue(path.exists(), 'The cache should create the file for the cache entry')
            contents = json.loads(path.read_text())
            body_path = directory / 'bodies' / contents['response']['body']
            self.assertEqual(b'some contents', body_path.read_bytes())

            # The body path is deliberately not predictable.
            del contents['response']['body']
            self.assertEqual({
                'method': 'GET',
                'uri': 'http://google.ca',
                'headers': {'Accept': 'application/pdf', 'X-something-else': 'some value'},
            }, contents['request'])
            self.assertEqual(200, contents['response']['status'])
            self.assertEqual(600, contents['max_age'])
            self.assertEqual(600, entry.max_age)
            self.assertTrue(entry.is_fresh())
            self.assertEqual(b'some contents', entry.response.body)

    def test_add_then_get(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)
            cache.add(google_request(), Response(status=200, reason='OK', headers={'ETag': '"1"'}, body=b'first'))

            entry = cache.get(google_request())

            self.assertEqual(b'first', entry.response.body)
            self.assertEqual('"1"', entry.response.headers['etag'])

    def test_add_overwrites_and_removes_previous_body(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            cache = FileCache(directory, 2)
            cache.add(google_request(), Response(status=200, body=b'first'))
            cache.add(google_request(), Response(status=200, body=b'second'))

            self.assertEqual(b'second', cache.get(google_request()).response.body)
            bodies = [path for path in (directory / 'bodies').rglob('*') if path.is_file()]
            self.assertEqual(1, len(bodies))

    def test_add_without_body(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)
            cache.add(google_request(), Response(status=204))

            self.assertIsNone(cache.get(google_request()).response.body)

    def test_entries_are_keyed_by_method_and_uri(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)
            cache.add(Request('GET', 'https://o.test/a.js'), Response(status=200, body=b'a'))

            self.assertIsNone(cache.get(Request('GET', 'https://o.test/b.js')))
            self.assertIsNone(cache.get(Request('HEAD', 'https://o.test/a.js')))
            self.assertEqual(b'a', cache.get(Request('get', 'https://o.test/a.js')).response.body)

    def test_corrupt_entry_is_deleted(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            path = entry_path(directory, 'GET http://google.ca')
            path.parent.mkdir(parents=True)
            path.write_text('{"request": ')

            self.assertIsNone(FileCache(directory, 5).get(google_request()))
            self.assertFalse(path.exists())

    def test_entry_with_missing_body_is_deleted(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            cache = FileCache(directory, 5)
            cache.add(google_request(), Response(status=200, body=b'contents'))
            for body in [path for path in (directory / 'bodies').rglob('*') if path.is_file()]:
                body.unlink()

            self.assertIsNone(cache.get(google_request()))
            self.assertFalse(entry_path(directory, 'GET http://google.ca').exists())

    def test_delete(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            cache = FileCache(directory, 5)
            cache.add(google_request(), Response(status=200, body=b'contents'))

            cache.delete(google_request())

            self.assertIsNone(cache.get(google_request()))
            self.assertEqual(0, cache.size())

    def test_delete_missing_entry(self):
        with TemporaryDirectory() as directory:
            FileCache(Path(directory), 5).delete(google_request())

    def test_clear(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)
            cache.add(Request('GET', 'https://o.test/a.js'), Response(status=200, body=b'a'))
            cache.add(Request('GET', 'https://o.test/b.js'), Response(status=200, body=b'b'))

            cache.clear()

            self.assertIsNone(cache.get(Request('GET', 'https://o.test/a.js')))
            self.assertEqual(0, cache.size())
            # The cache is still usable afterwards.
            cache.add(Request('GET', 'https://o.test/a.js'), Response(status=200, body=b'again'))
            self.assertEqual(b'again', cache.get(Request('GET', 'https://o.test/a.js')).response.body)

    def test_evicts_least_recently_used_entries(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            first, second, third = (Request('GET', 'https://o.test/{}.js'.format(name)) for name in ('a', 'b', 'c'))
            cache = FileCache(directory, 2, capacity=10 ** 9)
            cache.add(first, Response(status=200, body=b'x' * 1000))
            cache.add(second, Response(status=200, body=b'x' * 1000))

            # Make the access order explicit rather than relying on timestamp resolution.
            now = time.time()
            os.utime(str(entry_path(directory, 'GET https://o.test/a.js', 2)), (now - 100, now - 100))
            os.utime(str(entry_path(directory, 'GET https://o.test/b.js', 2)), (now - 200, now - 200))
            capacity = cache.size() + 100

            cache = FileCache(directory, 2, capacity=capacity)
            cache.add(third, Response(status=200, body=b'x' * 1000))

            self.assertIsNone(cache.get(second))
            self.assertIsNotNone(cache.get(first))
            self.assertIsNotNone(cache.get(third))
            self.assertLessEqual(cache.size(), capacity)

    def test_get_marks_entry_as_recently_used(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            cache = FileCache(directory, 2)
            cache.add(google_request(), Response(status=200, body=b'contents'))
            path = entry_path(directory, 'GET http://google.ca', 2)
            os.utime(str(path), (1000, 1000))

            cache.get(google_request())

            self.assertGreater(path.stat().st_mtime, 1000)

    def test_concurrent_writes_to_the_same_entry(self):
        with TemporaryDirectory() as directory:
            directory = Path(directory)
            cache = FileCache(directory, 2)
            bodies = [str(i).encode('ascii') * 100 for i in range(10)]

            threads = [threading.Thread(target=cache.add, args=(google_request(), Response(status=200, body=body)))
                       for body in bodies]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            self.assertIn(cache.get(google_request()).response.body, bodies)
            stored = [path for path in (directory / 'bodies').rglob('*') if path.is_file()]
            self.assertEqual(1, len(stored))

    def test_entry_locks_do_not_grow_with_the_number_of_urls(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 2)

            locks = {id(cache._lock_for('GET https://o.test/{}.js'.format(i))) for i in range(1000)}

            self.assertLessEqual(len(locks), LOCK_STRIPES)
            self.assertIs(cache._lock_for('GET https://o.test/a.js'), cache._lock_for('GET https://o.test/a.js'))


@ddt
class TestHttpAwareCache(TestCase):
    def setUp(self):
        self.__wrapped = mock(Cache)
        self.__sut = HttpAwareCache(self.__wrapped)

    def tearDown(self):
        unstub()

    @data(
        (
            # When the decorated cache does not have an element, neither does the HTTP-aware cache.
            google_request(),
            None,
            False,
        ),
        (
            # When the cached entry is a 5xx error, it does not qualify for caching by HTTP rules.
            google_request(),
            CacheEntry(google_request(), Response(status=500, reason='Internal Server Error', body=b'')),
            False,
        ),
        (
            # When the cached request was not a GET, the entry does not qualify.
            google_request(),
            CacheEntry(Request('POST', 'http://google.ca', {'Accept': 'application/pdf'}), Response(status=200)),
            False,
        ),
        (
            # When the new request has a Vary header the cached request did not have, the cache entry is not matched.
            google_request(**{'Accept': 'application/pdf', 'X-MY-COOL-HEADER': '52'}),
            CacheEntry(google_request(), Response(status=200, headers={'Vary': 'X-MY-COOL-HEADER'})),
            False,
        ),
        (
            # When the new request is missing a Vary header specified in the cached response, the cache entry is not
            # matched.
            google_request(),
            CacheEntry(google_request(**{'Accept': 'application/pdf', 'X-MY-COOL-HEADER': '52'}),
                       Response(status=200, headers={'Vary': 'X-MY-COOL-HEADER'})),
            False,
        ),
        (
            # When the new request has a different value than the cached request for a Vary header, the cache entry is
            # not matched.
            google_request(**{'Accept': 'application/pdf', 'X-MY-COOL-HEADER': '53'}),
            CacheEntry(google_request(**{'Accept': 'application/pdf', 'X-MY-COOL-HEADER': '52'}),
                       Response(status=200, headers={'Vary': 'X-MY-COOL-HEADER'})),
            False,
        ),
        (
            # Vary: * never matches.
            google_request(),
            CacheEntry(google_request(), Response(status=200, headers={'Vary': '*'})),
            False,
        ),
        (
            # Vary header names are case-insensitive.
            google_request(**{'Accept': 'application/pdf', 'x-my-cool-header': '52'}),
            CacheEntry(google_request(**{'Accept': 'application/pdf', 'X-MY-COOL-HEADER': '52'}),
                       Response(status=200, headers={'Vary': 'Accept, X-My-Cool-Header'})),
            True,
        ),
        (
            # A Vary header absent from both requests matches.
            google_request(),
            CacheEntry(google_request(), Response(status=200, headers={'Vary': 'Accept-Language'})),
            True,
        ),
        (
            # Without Vary, a cachable status is enough.
            google_request(),
            CacheEntry(google_request(), Response(status=203)),
            True,
        ),
        (
            google_request(),
            CacheEntry(google_request(), Response(status=404)),
            True,
        ),
    )
    @unpack
    def test_get(self, request: Request, decorated_result: Optional[CacheEntry], expect_entry: bool):
        when(self.__wrapped).get(request).thenReturn(decorated_result)

        entry = self.__sut.get(request)

        if expect_entry:
            self.assertIs(decorated_result, entry)
        else:
            self.assertIsNone(entry)

    @data(
        # When the status code is 200, the response can be cached.
        ('GET', 200, True),
        ('GET', 301, True),
        ('GET', 404, True),
        # When the status code is 500, the response is not cached.
        ('GET', 500, False),
        ('GET', 206, False),
        # Only GET requests are cached.
        ('POST', 200, False),
        ('HEAD', 200, False),
    )
    @unpack
    def test_add(self, method: str, status: int, expected_to_be_cached: bool):
        request = Request(method, 'http://google.ca', {'Accept': 'application/pdf'})
        response = Response(status=status, reason='OK', headers={'ETag': 'gibberish'}, body=b'some contents')
        when(self.__wrapped).add(request, response).thenReturn(CacheEntry(request, response))

        result = self.__sut.add(request, response)

        if expected_to_be_cached:
            self.assertEqual(CacheEntry(request, response), result)
        else:
            self.assertIsNone(result)
        verify(self.__wrapped, 1 if expected_to_be_cached else 0).add(request, response)

    def test_delete(self):
        request = google_request()
        when(self.__wrapped).delete(request).thenReturn(None)

        self.__sut.delete(request)

        verify(self.__wrapped).delete(request)

    def test_clear(self):
        when(self.__wrapped).clear().thenReturn(None)

        self.__sut.clear()

        verify(self.__wrapped).clear()
