#Filename: proxy_common.py
"""
PROXY COMMON DEFINITIONS
Shared logic, constants, and base classes for the hostrelay core.
Implements Single Source of Truth (SSOT) for proxy configuration.
"""

import os
import re
import socket
import asyncio
import ipaddress
from typing import Optional, Callable, Tuple, Dict, Mapping

from structures import RequestHead, CORS_ALLOW_HEADERS

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
HOSTNAME_LABEL_PATTERN = re.compile(r'^(?!-)[a-z0-9_-]{1,63}(?<!-)$')
UPSTREAM_CONNECT_TIMEOUT = 10.0
BACKEND_RESPONSE_TIMEOUT = 60.0
IDLE_TIMEOUT = 60.0
TLS_HANDSHAKE_TIMEOUT = 30.0
MAX_HEADER_LIST_SIZE = 262144
READ_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536

DEFAULT_HTTP_PORT = 80
DEFAULT_HTTPS_PORT = 443
DEFAULT_CERT_ROOT = "/etc/letsencrypt/live"
DEFAULT_SITES_ROOT = ".."
DEFAULT_STATS_FILE = "stats.json"
DEFAULT_BACKEND_HOST = "localhost"
STATS_INTERVAL = 1.0

CIRCUIT_FAILURE_THRESHOLD = 5
CIRCUIT_RESET_TIMEOUT = 30.0

MISSING_HOST_MESSAGE = (
    "400 Bad Request! The 'host' header must be set when making requests to this server."
)
UNKNOWN_HOST_MESSAGE = "400 Bad Request! The host '{host}' was not found on this server."

class ProxyError(Exception):
    """Base exception for Proxy operations."""

class RequestFramingError(ProxyError):
    """Raised when the client sends a request that cannot be parsed."""

class BackendUnavailableError(ProxyError):
    """Raised when a tenant backend cannot be reached (or its circuit is open)."""

class ProxySettings:
    """
    Runtime configuration of the proxy.
    Defaults mirror a stock deployment; the CLI overrides individual fields.
    """
    __slots__ = (
        'bind_address', 'http_port', 'https_port', 'public_https_port', 'cert_root',
        'sites_root', 'stats_file', 'stats_interval', 'backend_host', 'negative_ttl',
        'trust_proxy', 'connect_timeout', 'response_timeout'
    )

    def __init__(
        self,
        bind_address: str = "0.0.0.0",
        http_port: int = DEFAULT_HTTP_PORT,
        https_port: int = DEFAULT_HTTPS_PORT,
        public_https_port: Optional[int] = None,
        cert_root: str = DEFAULT_CERT_ROOT,
        sites_root: str = DEFAULT_SITES_ROOT,
        stats_file: str = DEFAULT_STATS_FILE,
        stats_interval: float = STATS_INTERVAL,
        backend_host: str = DEFAULT_BACKEND_HOST,
        negative_ttl: Optional[float] = None,
        trust_proxy: bool = True,
        connect_timeout: float = UPSTREAM_CONNECT_TIMEOUT,
        response_timeout: float = BACKEND_RESPONSE_TIMEOUT
    ) -> None:
        self.bind_address = bind_address
        self.http_port = http_port
        self.https_port = https_port
        # Port advertised in redirects; differs from https_port behind NAT / port mapping.
        self.public_https_port = public_https_port if public_https_port is not None else https_port
        self.cert_root = cert_root
        self.sites_root = sites_root
        self.stats_file = stats_file
        self.stats_interval = stats_interval
        self.backend_host = backend_host
        self.negative_ttl = negative_ttl
        self.trust_proxy = trust_proxy
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'ProxySettings':
        """Builds settings, taking the plaintext port from $PORT when set."""
        environ = os.environ if environ is None else environ
        port = environ.get("PORT")
        if port and 'http_port' not in overrides:
            try:
                overrides['http_port'] = int(port)
            except ValueError as exc:
                raise ValueError(f"PORT must be an integer, got {port!r}") from exc
        return cls(**overrides)

    def __repr__(self) -> str:
        return (
            f"<ProxySettings http=:{self.http_port} https=:{self.https_port} "
            f"certs={self.cert_root} sites={self.sites_root}>"
        )

# -- Stateless Helper Functions --

def split_host_port(value: str, default_port: Optional[int] = None) -> Tuple[str, Optional[int]]:
    """Parses a host[:port] string (IPv6 literals in brackets) into (hostname, port)."""
    if not value:
        return "", default_port
    if value.startswith('['):
        end = value.find(']')
        if end != -1:
            host = value[1:end]
            rem = value[end + 1:]
            if rem.startswith(':'):
                try:
                    return host, int(rem[1:])
                except ValueError:
                    return host, default_port
            return host, default_port
    if value.count(':') == 1:
        host, port_str = value.split(':', 1)
        try:
            return host, int(port_str)
        except ValueError:
            return host, default_port
    return value, default_port

def normalize_hostname(hostname: Optional[str]) -> str:
    if not hostname:
        return ""
    return hostname.strip().lower().rstrip('.')

def is_valid_hostname(hostname: str) -> bool:
    """
    True for DNS names and IP literals.
    Rejects anything that could escape a directory when used as a path component.
    """
    if not hostname or len(hostname) > 253:
        return False
    try:
        ipaddress.ip_address(hostname)
        return ':' not in hostname
    except ValueError:
        pass
    return all(HOSTNAME_LABEL_PATTERN.match(label) for label in hostname.split('.'))

def extract_hostname(head: RequestHead, trust_proxy: bool = True) -> str:
    """
    Determines the hostname a request is addressed to.
    Explicit sources (X-Forwarded-Host behind a trusted proxy, absolute-form target)
    win over the Host header. The port segment is always stripped.
    """
    if trust_proxy:
        forwarded = head.get('x-forwarded-host')
        if forwarded:
            host, _ = split_host_port(forwarded.split(',')[0].strip())
            if host:
                return normalize_hostname(host)

    if '://' in head.target:
        authority = head.target.split('://', 1)[1].split('/', 1)[0].split('?', 1)[0]
        authority = authority.rsplit('@', 1)[-1]
        host, _ = split_host_port(authority)
        if host:
            return normalize_hostname(host)

    host_header = head.get('host')
    if host_header:
        host, _ = split_host_port(host_header.strip())
        return normalize_hostname(host)
    return ""

def is_secure_request(head: RequestHead, tls: bool, trust_proxy: bool = True) -> bool:
    """TLS on this hop, or a trusted upstream proxy that terminated TLS for us."""
    if tls:
        return True
    if trust_proxy:
        proto = head.get('x-forwarded-proto', '') or ''
        return proto.split(',')[0].strip().lower() == 'https'
    return False

def cors_headers(origin: str) -> Dict[str, str]:
    return {
        'Access-Control-Allow-Origin': origin,
        'Access-Control-Allow-Headers': CORS_ALLOW_HEADERS
    }

class BaseProxyHandler:
    """
    Base class containing shared logic for the connection handler and forwarder.
    Manages backend connections and logging.
    """
    __slots__ = ('callback', 'connect_timeout')

    def __init__(
        self,
        manager_callback: Optional[Callable[[str, object], None]],
        connect_timeout: float = UPSTREAM_CONNECT_TIMEOUT
    ):
        self.callback = manager_callback
        self.connect_timeout = connect_timeout

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            try:
                self.callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    async def _connect_upstream(
        self,
        host: str,
        port: int
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Opens a plaintext TCP connection to a tenant backend.
        Timeouts propagate as asyncio.TimeoutError, everything else as BackendUnavailableError.
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            raise
        except OSError as e:
            raise BackendUnavailableError(f"Upstream connection failed: {e}") from e

        try:
            sock = writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        return reader, writer

def render_response(
    code: int,
    reason: str,
    body: bytes = b"",
    headers: Optional[Mapping[str, str]] = None
) -> bytes:
    """Serializes a complete, self-contained HTTP/1.1 response (connection closes after it)."""
    lines = [f"HTTP/1.1 {code} {reason}"]
    for k, v in (headers or {}).items():
        lines.append(f"{k}: {v}")
    if body:
        lines.append("Content-Type: text/plain; charset=utf-8")
    lines.append(f"Content-Length: {len(body)}")
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode('latin-1') + body

async def send_response(
    writer: asyncio.StreamWriter,
    code: int,
    reason: str,
    message: str = "",
    headers: Optional[Mapping[str, str]] = None
) -> None:
    """Sends a response to the client; a peer that already went away is ignored."""
    try:
        writer.write(render_response(code, reason, message.encode('utf-8'), headers))
        await writer.drain()
    except (ConnectionError, RuntimeError):
        pass
