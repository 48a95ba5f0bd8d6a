import json
from pathlib import Path
import socket
from tempfile import TemporaryDirectory
from unittest import TestCase

from cacheproxy.__main__ import build_parser, main


class TestParser(TestCase):
    def test_defaults(self):
        args = build_parser().parse_args(['--base-url', 'https://o.test'])

        self.assertEqual('https://o.test', args.base_url)
        self.assertEqual('', args.base_path)
        self.assertIsNone(args.config)
        self.assertIsNone(args.port)
        self.assertEqual('INFO', args.log_level)

    def test_base_url_is_required(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])


class TestMain(TestCase):
    def setUp(self):
        self.directory = TemporaryDirectory()
        self.root = Path(self.directory.name)

    def tearDown(self):
        self.directory.cleanup()

    def test_invalid_config_exits_with_2(self):
        config = self.root / 'settings.json'
        config.write_text('{"port": -1}', encoding='utf-8')

        self.assertEqual(2, main(['--base-url', 'https://o.test', '--config', str(config)]))

    def test_unavailable_port_exits_with_1(self):
        config = self.root / 'settings.json'
        config.write_text(json.dumps({'cache': {'directory': str(self.root / 'cache')}}), encoding='utf-8')
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(('127.0.0.1', 0))
            taken.listen(1)
            port = taken.getsockname()[1]

            self.assertEqual(1, main(['--base-url', 'https://o.test', '--config', str(config), '--port', str(port)]))
