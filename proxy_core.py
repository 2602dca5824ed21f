#Filename: proxy_core.py
"""
ASYNC PROXY CORE - HOSTRELAY
Per-connection HTTP/1.1 handler shared by both listeners.
Reads the request head, applies the HTTP -> HTTPS redirect gate, resolves the
tenant and hands the connection to the RequestForwarder.
"""

import asyncio
import re
import ssl
from typing import Optional, Callable, Tuple, List, AsyncIterator

from colorama import Fore, Style

from structures import RequestHead
from proxy_common import (
    BaseProxyHandler, RequestFramingError, send_response,
    extract_hostname, is_secure_request, cors_headers,
    STRICT_HEADER_PATTERN, IDLE_TIMEOUT, TLS_HANDSHAKE_TIMEOUT,
    MAX_HEADER_LIST_SIZE, COMPACTION_THRESHOLD, READ_CHUNK_SIZE,
    DEFAULT_HTTPS_PORT, MISSING_HOST_MESSAGE, UNKNOWN_HOST_MESSAGE
)
from host_config import HostConfigResolver
from proxy_forward import RequestForwarder
from stats import StatsAggregator

MAX_HEADER_COUNT = 100
CHUNK_SIZE_PATTERN = re.compile(rb'^[0-9A-Fa-f]{1,16}$')

class Http11ProxyHandler(BaseProxyHandler):
    """
    Handles one HTTP/1.1 client connection carrying one request.
    Every response is sent with 'Connection: close'.
    """
    __slots__ = (
        'reader', 'writer', 'resolver', 'forwarder', 'stats', 'tls', 'trust_proxy',
        'public_https_port', 'client_addr', 'buffer', '_buffer_offset', '_previous_byte_was_cr'
    )

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        manager_callback: Optional[Callable[[str, object], None]],
        resolver: HostConfigResolver,
        forwarder: RequestForwarder,
        stats: Optional[StatsAggregator] = None,
        tls: bool = False,
        trust_proxy: bool = True,
        public_https_port: int = DEFAULT_HTTPS_PORT,
        initial_data: bytes = b""
    ):
        super().__init__(manager_callback)
        raw_addr = writer.get_extra_info('peername')
        self.client_addr = (
            (str(raw_addr[0]), int(raw_addr[1]))
            if isinstance(raw_addr, tuple) and len(raw_addr) >= 2 else None
        )
        self.reader = reader
        self.writer = writer
        self.resolver = resolver
        self.forwarder = forwarder
        self.stats = stats
        self.tls = tls
        self.trust_proxy = trust_proxy
        self.public_https_port = public_https_port
        self.buffer = bytearray(initial_data)
        self._buffer_offset = 0
        self._previous_byte_was_cr = False

    async def _fill(self) -> bytes:
        """Reads one chunk from the client into the buffer."""
        if (
            self._buffer_offset > COMPACTION_THRESHOLD
            and self._buffer_offset > (len(self.buffer) // 2)
        ):
            del self.buffer[:self._buffer_offset]
            self._buffer_offset = 0
        try:
            data = await asyncio.wait_for(
                self.reader.read(READ_CHUNK_SIZE), timeout=IDLE_TIMEOUT
            )
        except asyncio.TimeoutError as exc:
            raise RequestFramingError("Read Timeout (Idle)") from exc
        except ConnectionError as exc:
            raise RequestFramingError(f"Incomplete message ({exc})") from exc
        self.buffer.extend(data)
        return data

    async def _read_strict_line(self) -> bytes:
        """
        Reads a single line from the buffer/stream, strictly adhering to RFC limits.
        Returns b"" at a clean EOF.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index == -1:
                pending = len(self.buffer) - self._buffer_offset
                if pending > 0:
                    self._previous_byte_was_cr = self.buffer[-1] == 0x0D
                if pending > MAX_HEADER_LIST_SIZE:
                    raise RequestFramingError("Header Line Exceeded Max Length")
                if not await self._fill():
                    if len(self.buffer) - self._buffer_offset > 0:
                        raise RequestFramingError("Incomplete message")
                    return b""
                continue

            line_len = lf_index - self._buffer_offset
            if line_len > MAX_HEADER_LIST_SIZE:
                raise RequestFramingError("Header Line Exceeded Max Length")

            is_crlf = False
            if lf_index > self._buffer_offset:
                is_crlf = self.buffer[lf_index - 1] == 0x0D
            elif self._previous_byte_was_cr:
                is_crlf = True

            line_end = lf_index - 1 if is_crlf else lf_index
            line = bytes(self.buffer[self._buffer_offset:line_end]) if line_end > self._buffer_offset else b""
            self._buffer_offset = lf_index + 1
            self._previous_byte_was_cr = False
            return line

    async def read_request_head(self) -> Optional[RequestHead]:
        """Parses the request line and headers. None if the client closed without sending."""
        line = await self._read_strict_line()
        # Tolerate a leading empty line (RFC 9112 Section 2.2).
        if not line and len(self.buffer) > 0:
            line = await self._read_strict_line()
        if not line:
            return None

        try:
            parts = line.split(b' ', 2)
            if len(parts) != 3:
                raise ValueError
            method, target, version = (p.decode('ascii') for p in parts)
            if not version.startswith('HTTP/1.'):
                raise ValueError
        except ValueError as exc:
            raise RequestFramingError("Malformed Request Line") from exc

        headers: List[Tuple[str, str]] = []
        while True:
            h_line = await self._read_strict_line()
            if not h_line:
                break
            if h_line[0] in (0x20, 0x09):
                raise RequestFramingError("Obsolete Line Folding Rejected")
            match = STRICT_HEADER_PATTERN.match(h_line)
            if not match:
                raise RequestFramingError("Invalid Header Syntax")
            headers.append((match.group(1).decode('ascii'), match.group(2).decode('latin-1').strip()))
            if len(headers) > MAX_HEADER_COUNT:
                raise RequestFramingError("Too Many Headers")

        head = RequestHead(method, target, version, headers)
        self._validate_framing(head)
        return head

    def _validate_framing(self, head: RequestHead) -> None:
        """Transfer-Encoding & Content-Length rules (request smuggling guards)."""
        te = head.get('transfer-encoding')
        if te:
            # TE wins over CL; drop CL so the backend cannot disagree with us.
            head.headers = [h for h in head.headers if h[0].lower() != 'content-length']
            enc = [e.strip().lower() for e in te.split(',')]
            if enc[-1] != 'chunked':
                raise RequestFramingError("Bad Transfer-Encoding")
            return
        lengths = set(head.get_all('content-length'))
        if len(lengths) > 1:
            raise RequestFramingError("Conflicting Content-Length")
        if lengths:
            cl = lengths.pop()
            if not (cl.isascii() and cl.isdigit()):
                raise RequestFramingError("Invalid Content-Length")

    # -- Body streaming --

    def take_buffered(self) -> bytes:
        """Hands out (and forgets) bytes read past the parsed request."""
        rem = bytes(self.buffer[self._buffer_offset:])
        del self.buffer[:]
        self._buffer_offset = 0
        return rem

    async def _iter_bytes(self, n: int) -> AsyncIterator[bytes]:
        remaining = n
        while remaining > 0:
            available = len(self.buffer) - self._buffer_offset
            if available == 0:
                if not await self._fill():
                    raise RequestFramingError("Incomplete read in body")
                continue
            take = min(available, remaining)
            chunk = bytes(self.buffer[self._buffer_offset:self._buffer_offset + take])
            self._buffer_offset += take
            remaining -= take
            yield chunk

    async def iter_body(self, head: RequestHead) -> AsyncIterator[bytes]:
        """
        Yields the request body as it arrives, framing bytes included, so the
        backend receives exactly what the client sent.
        """
        if head.is_chunked:
            while True:
                line = await self._read_strict_line()
                size_field = line.split(b';', 1)[0].strip()
                if not CHUNK_SIZE_PATTERN.match(size_field):
                    raise RequestFramingError("Invalid chunk size")
                size = int(size_field, 16)
                yield line + b"\r\n"
                if size == 0:
                    while True:
                        trailer = await self._read_strict_line()
                        yield trailer + b"\r\n"
                        if not trailer:
                            return
                async for piece in self._iter_bytes(size):
                    yield piece
                if await self._read_strict_line():
                    raise RequestFramingError("Missing chunk terminator")
                yield b"\r\n"
        else:
            cl = head.get('content-length')
            if cl:
                async for piece in self._iter_bytes(int(cl)):
                    yield piece

    # -- Request flow --

    async def run(self) -> None:
        """Handles the connection: redirect gate -> resolve -> forward."""
        try:
            try:
                head = await self.read_request_head()
            except RequestFramingError as e:
                self.log("ERROR", f"Framing Error: {e}")
                if "Timeout" not in str(e) and "Incomplete" not in str(e):
                    await send_response(self.writer, 400, "Bad Request", f"400 Bad Request! {e}.")
                return
            if head is None:
                return

            if not is_secure_request(head, self.tls, self.trust_proxy):
                await self._redirect(head)
                return
            await self._proxy(head)
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", f"HTTP/1.1 Proxy Error: {e!r}")
        finally:
            if not self.writer.is_closing():
                self.writer.close()

    def redirect_location(self, hostname: str, head: RequestHead) -> str:
        host = f"[{hostname}]" if ':' in hostname else hostname
        if self.public_https_port != DEFAULT_HTTPS_PORT:
            host = f"{host}:{self.public_https_port}"
        return f"https://{host}{head.path}"

    async def _redirect(self, head: RequestHead) -> None:
        hostname = extract_hostname(head, self.trust_proxy)
        if not hostname:
            await send_response(self.writer, 400, "Bad Request", MISSING_HOST_MESSAGE)
            return
        location = self.redirect_location(hostname, head)
        await send_response(self.writer, 301, "Moved Permanently", headers={'Location': location})

    async def _proxy(self, head: RequestHead) -> None:
        hostname = extract_hostname(head, self.trust_proxy)
        extra = cors_headers(hostname) if hostname else {}

        if self.stats:
            self.stats.record()
        self.log("SERVED", (
            f"Served: {Fore.MAGENTA}https{Fore.LIGHTBLACK_EX}://"
            f"{Fore.YELLOW}{hostname or '<no host>'}{Style.RESET_ALL}{head.path}"
        ))

        if not hostname:
            await send_response(self.writer, 400, "Bad Request", MISSING_HOST_MESSAGE)
            return

        config = await self.resolver.resolve(hostname)
        if not config.valid:
            await send_response(
                self.writer, 400, "Bad Request", UNKNOWN_HOST_MESSAGE.format(host=hostname), extra
            )
            return

        await self.forwarder.forward(head, self, config, extra, self.client_addr)

async def start_listener(
    host: str,
    port: int,
    handler_factory: Callable[[asyncio.StreamReader, asyncio.StreamWriter], Http11ProxyHandler],
    manager_callback: Optional[Callable[[str, object], None]] = None,
    ssl_context: Optional[ssl.SSLContext] = None
) -> asyncio.AbstractServer:
    """
    Binds host:port and serves every accepted connection with a fresh handler.
    Bind errors propagate (OSError).
    """
    async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        await handler_factory(r, w).run()

    server = await asyncio.start_server(
        _handle, host, port, ssl=ssl_context,
        ssl_handshake_timeout=TLS_HANDSHAKE_TIMEOUT if ssl_context else None
    )
    if manager_callback:
        kind = "HTTPS" if ssl_context else "HTTP"
        manager_callback("SYSTEM", f"Started {kind} server on {host}:{port}")
    return server
