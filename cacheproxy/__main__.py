"""Run a proxy in the foreground until interrupted."""

import argparse
import dataclasses
import logging
from pathlib import Path
import sys
import threading
from typing import List, Optional

from .config import ConfigError, load_settings
from .server import ProxyServer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='cacheproxy', description='Offline-capable caching proxy for one origin.')
    parser.add_argument('--base-url', required=True, help='origin root, e.g. https://example.test')
    parser.add_argument('--base-path', default='', help='sub-path the app is mounted under on the origin')
    parser.add_argument('--config', type=Path, help='JSON settings file')
    parser.add_argument('--port', type=int, help='local port (default: ephemeral)')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print('Invalid config: {}'.format(exc), file=sys.stderr)
        return 2
    if args.port is not None:
        settings = dataclasses.replace(settings, port=args.port)

    with ProxyServer(args.base_url, args.base_path, settings) as proxy:
        if not proxy.is_running():
            return 1
        print(proxy.get_proxy_url(), flush=True)
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            pass
    return 0


if __name__ == '__main__':
    sys.exit(main())
