# hostrelay.py
"""
hostrelay -- Multi-tenant HTTPS reverse proxy.

ARCHITECTURE:
- CERTS: 'cert_registry.py' (one certificate per hostname, chosen via SNI).
- ROUTING: 'host_config.py' (../<hostname>/config.yml -> localhost:<port>).
- PROXY: 'proxy_manager.py' (listeners, stats) and 'proxy_core.py' (per-request flow).
"""

import sys
import asyncio
import argparse
import logging
import traceback
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

from proxy_common import (
    ProxySettings, DEFAULT_CERT_ROOT, DEFAULT_SITES_ROOT, DEFAULT_STATS_FILE,
    DEFAULT_BACKEND_HOST, DEFAULT_HTTPS_PORT
)
from proxy_manager import ProxyManager

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

BANNER = r"""
{Fore.CYAN}  _               _
 | |__   ___  ___| |_ _ __ ___| | __ _ _   _
 | '_ \ / _ \/ __| __| '__/ _ \ |/ _` | | | |
 | | | | (_) \__ \ |_| | |  __/ | (_| | |_| |
 |_| |_|\___/|___/\__|_|  \___|_|\__,_|\__, |
                                       |___/ {Style.RESET_ALL}
{Fore.WHITE}  -- [+] Multi-tenant HTTPS reverse proxy [+] --{Style.RESET_ALL}
"""

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="hostrelay - multi-tenant HTTPS reverse proxy")
    parser.add_argument("--bind", default="0.0.0.0", help="Listen address (default: 0.0.0.0)")
    parser.add_argument("--http-port", type=int, default=None,
                        help="Plaintext (redirect) port (default: $PORT or 80)")
    parser.add_argument("--https-port", type=int, default=DEFAULT_HTTPS_PORT,
                        help="TLS listen port (default: 443)")
    parser.add_argument("--public-https-port", type=int, default=None,
                        help="HTTPS port advertised in redirects (default: --https-port)")
    parser.add_argument("--cert-root", default=DEFAULT_CERT_ROOT,
                        help=f"Certificate store, one directory per hostname (default: {DEFAULT_CERT_ROOT})")
    parser.add_argument("--sites-root", default=DEFAULT_SITES_ROOT,
                        help="Directory holding <hostname>/config.yml (default: ..)")
    parser.add_argument("--stats-file", default=DEFAULT_STATS_FILE,
                        help=f"Stats document rewritten every second (default: {DEFAULT_STATS_FILE})")
    parser.add_argument("--backend-host", default=DEFAULT_BACKEND_HOST,
                        help="Host tenant backends listen on (default: localhost)")
    parser.add_argument("--negative-ttl", type=float, default=None,
                        help="Seconds before an unknown host is looked up again (default: never)")
    parser.add_argument("--no-trust-proxy", action="store_true",
                        help="Ignore X-Forwarded-Host / X-Forwarded-Proto")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log verbosity")
    return parser

def settings_from_args(args: argparse.Namespace) -> ProxySettings:
    overrides = dict(
        bind_address=args.bind,
        https_port=args.https_port,
        public_https_port=args.public_https_port,
        cert_root=args.cert_root,
        sites_root=args.sites_root,
        stats_file=args.stats_file,
        backend_host=args.backend_host,
        negative_ttl=args.negative_ttl,
        trust_proxy=not args.no_trust_proxy,
    )
    if args.http_port is not None:
        overrides['http_port'] = args.http_port
    return ProxySettings.from_env(**overrides)

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    colorama_init()
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        print(f"{Fore.RED}[CRITICAL] {e}{Style.RESET_ALL}")
        return 2

    print(BANNER.format(Fore=Fore, Style=Style))
    print(f"{Fore.YELLOW}[*] {settings!r}{Style.RESET_ALL}")

    try:
        if sys.platform != "win32":
            import uvloop
            uvloop.run(ProxyManager(settings).run())
        else:
            asyncio.run(ProxyManager(settings).run())
    except KeyboardInterrupt:
        pass
    except OSError as e:
        print(f"{Fore.RED}[CRITICAL] Cannot start HTTPS server: {e}{Style.RESET_ALL}")
        return 1
    except Exception as e: # pylint: disable=broad-exception-caught
        print(f"Error: {e}")
        traceback.print_exc()
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
