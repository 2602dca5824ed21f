#Filename: proxy_forward.py
"""
REQUEST FORWARDER
Streams one request to its tenant backend on localhost and the backend's
response back to the client. Nothing is buffered beyond a read chunk:
the request body is uploaded while the response is being relayed.
"""

import asyncio
import time
from typing import Optional, Callable, Tuple, List, Dict, Mapping, AsyncIterator, Set

from structures import RequestHead, HostConfig, HOP_BY_HOP_HEADERS
from proxy_common import (
    BaseProxyHandler, ProxyError, RequestFramingError, BackendUnavailableError, send_response,
    UPSTREAM_CONNECT_TIMEOUT, BACKEND_RESPONSE_TIMEOUT, READ_CHUNK_SIZE,
    DEFAULT_BACKEND_HOST, CIRCUIT_FAILURE_THRESHOLD, CIRCUIT_RESET_TIMEOUT
)

MAX_RESPONSE_HEAD_SIZE = 65536
FORWARDED_HEADERS = frozenset({'x-forwarded-for', 'x-forwarded-proto', 'x-forwarded-host'})
# Status reported (never sent) when the client vanished before a response could be relayed.
CLIENT_CLOSED_REQUEST = 499

class BackendGuard:
    """
    Circuit breaker keyed by backend port.
    Opens after `failure_threshold` consecutive failures; once `reset_timeout` has
    elapsed a single trial request is let through (half-open).
    """
    __slots__ = ('failure_threshold', 'reset_timeout', '_clock', '_failures', '_opened_at')

    def __init__(
        self,
        failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        reset_timeout: float = CIRCUIT_RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures: Dict[int, int] = {}
        self._opened_at: Dict[int, float] = {}

    def allow(self, port: int) -> bool:
        opened = self._opened_at.get(port)
        if opened is None:
            return True
        if (self._clock() - opened) >= self.reset_timeout:
            # Re-arm so only this one trial passes until it reports back.
            self._opened_at[port] = self._clock()
            return True
        return False

    def record_success(self, port: int) -> None:
        self._failures.pop(port, None)
        self._opened_at.pop(port, None)

    def record_failure(self, port: int) -> None:
        count = self._failures.get(port, 0) + 1
        self._failures[port] = count
        if count >= self.failure_threshold:
            self._opened_at[port] = self._clock()

def _connection_tokens(values: List[str]) -> Set[str]:
    return {t.strip().lower() for v in values for t in v.split(',') if t.strip()}

def parse_response_head(raw: bytes) -> Tuple[bytes, int, List[Tuple[str, str]]]:
    """Splits a raw response head into (status line, status code, headers)."""
    lines = raw.split(b"\r\n")
    status_line = lines[0]
    parts = status_line.split(b' ', 2)
    if len(parts) < 2 or not parts[0].startswith(b'HTTP/'):
        raise ProxyError(f"Malformed backend status line: {status_line[:80]!r}")
    try:
        code = int(parts[1])
    except ValueError as exc:
        raise ProxyError(f"Malformed backend status code: {parts[1]!r}") from exc

    headers: List[Tuple[str, str]] = []
    for line in lines[1:]:
        if not line:
            continue
        if b':' not in line:
            raise ProxyError(f"Malformed backend header: {line[:80]!r}")
        k, v = line.split(b':', 1)
        headers.append((k.decode('latin-1').strip(), v.decode('latin-1').strip()))
    return status_line, code, headers

class RequestForwarder(BaseProxyHandler):
    """
    Forwards to <backend_host>:<HostConfig.target_port>.
    The client side is any object exposing `reader`, `writer`, `iter_body(head)`
    and `take_buffered()` (see proxy_core.Http11ProxyHandler).
    """
    __slots__ = ('backend_host', 'response_timeout', 'guard')

    def __init__(
        self,
        manager_callback: Optional[Callable[[str, object], None]],
        backend_host: str = DEFAULT_BACKEND_HOST,
        guard: Optional[BackendGuard] = None,
        connect_timeout: float = UPSTREAM_CONNECT_TIMEOUT,
        response_timeout: float = BACKEND_RESPONSE_TIMEOUT
    ) -> None:
        super().__init__(manager_callback, connect_timeout)
        self.backend_host = backend_host
        self.response_timeout = response_timeout
        self.guard = guard if guard is not None else BackendGuard()

    def build_backend_head(
        self,
        head: RequestHead,
        client_addr: Optional[Tuple[str, int]] = None,
        scheme: str = "https"
    ) -> bytes:
        """Request line and headers as sent to the backend."""
        upgrade = head.wants_upgrade
        drop = set(HOP_BY_HOP_HEADERS) | _connection_tokens(head.get_all('connection'))
        lines = [f"{head.method} {head.path} {head.version}"]
        xff = []
        forwarded_host = None
        for k, v in head.headers:
            lk = k.lower()
            if lk == 'upgrade' and upgrade:
                lines.append(f"{k}: {v}")
                continue
            if lk in drop:
                continue
            if lk == 'x-forwarded-for':
                xff.append(v)
            elif lk == 'x-forwarded-host':
                forwarded_host = forwarded_host or v
            elif lk not in FORWARDED_HEADERS:
                lines.append(f"{k}: {v}")

        if client_addr:
            xff.append(client_addr[0])
        if xff:
            lines.append(f"X-Forwarded-For: {', '.join(xff)}")
        lines.append(f"X-Forwarded-Proto: {scheme}")
        forwarded_host = forwarded_host or head.get('host')
        if forwarded_host:
            lines.append(f"X-Forwarded-Host: {forwarded_host}")
        lines.append("Connection: Upgrade" if upgrade else "Connection: close")
        return ("\r\n".join(lines) + "\r\n\r\n").encode('latin-1')

    def build_client_head(
        self,
        status_line: bytes,
        status: int,
        headers: List[Tuple[str, str]],
        extra_headers: Mapping[str, str]
    ) -> bytes:
        """Response head as relayed to the client; backend headers win over extra_headers."""
        switching = status == 101
        drop = set(HOP_BY_HOP_HEADERS) | _connection_tokens(
            [v for k, v in headers if k.lower() == 'connection']
        )
        present = {k.lower() for k, _ in headers}
        out = [status_line.decode('latin-1')]
        for k, v in headers:
            lk = k.lower()
            if switching and lk == 'upgrade':
                out.append(f"{k}: {v}")
            elif lk not in drop:
                out.append(f"{k}: {v}")
        for k, v in extra_headers.items():
            if k.lower() not in present:
                out.append(f"{k}: {v}")
        out.append("Connection: Upgrade" if switching else "Connection: close")
        return ("\r\n".join(out) + "\r\n\r\n").encode('latin-1')

    async def forward(
        self,
        head: RequestHead,
        client,
        config: HostConfig,
        extra_headers: Optional[Mapping[str, str]] = None,
        client_addr: Optional[Tuple[str, int]] = None,
        scheme: str = "https"
    ) -> int:
        """
        Proxies one request. Returns the status code sent to the client: the
        backend's, or 400/408/502/503/504 generated here. CLIENT_CLOSED_REQUEST
        means the client aborted its upload and nothing was sent.
        """
        extra = dict(extra_headers or {})
        port = config.target_port
        writer = client.writer

        if not self.guard.allow(port):
            self.log("WARNING", f"Circuit open for {config.hostname} (:{port})")
            await send_response(writer, 503, "Service Unavailable",
                                f"503 Service Unavailable! '{config.hostname}' is not responding.", extra)
            return 503

        try:
            u_r, u_w = await self._connect_upstream(self.backend_host, port)
        except asyncio.TimeoutError:
            self.guard.record_failure(port)
            self.log("ERROR", f"Backend {self.backend_host}:{port} connect timeout ({config.hostname})")
            await send_response(writer, 504, "Gateway Timeout", "504 Gateway Timeout", extra)
            return 504
        except BackendUnavailableError as e:
            self.guard.record_failure(port)
            self.log("ERROR", f"{config.hostname}: {e}")
            await send_response(writer, 502, "Bad Gateway", "502 Bad Gateway", extra)
            return 502

        upload: Optional[asyncio.Task[None]] = None
        try:
            try:
                u_w.write(self.build_backend_head(head, client_addr, scheme))
                await u_w.drain()

                upload = asyncio.create_task(self._upload(client.iter_body(head), u_w))
                upload.add_done_callback(lambda t: self._on_upload_done(t, u_w))

                status_line, status, headers = await asyncio.wait_for(
                    self._read_response_head(u_r, writer), timeout=self.response_timeout
                )
            except asyncio.TimeoutError:
                client_status = await self._client_fault(upload, writer, config, extra)
                if client_status is not None:
                    return client_status
                if upload is not None and not upload.done():
                    # The backend is still waiting for a body the client has not sent.
                    self.log("WARNING", f"{config.hostname}: request body stalled")
                    await send_response(writer, 408, "Request Timeout", "408 Request Timeout", extra)
                    return 408
                self.guard.record_failure(port)
                self.log("ERROR", f"Backend :{port} response timeout ({config.hostname})")
                await send_response(writer, 504, "Gateway Timeout", "504 Gateway Timeout", extra)
                return 504
            except (ProxyError, ConnectionError, asyncio.IncompleteReadError,
                    asyncio.LimitOverrunError) as e:
                client_status = await self._client_fault(upload, writer, config, extra)
                if client_status is not None:
                    return client_status
                self.guard.record_failure(port)
                self.log("ERROR", f"Backend :{port} sent no valid response ({config.hostname}): {e}")
                await send_response(writer, 502, "Bad Gateway", "502 Bad Gateway", extra)
                return 502

            self.guard.record_success(port)
            writer.write(self.build_client_head(status_line, status, headers, extra))
            await writer.drain()

            if status == 101:
                # The tunnel takes over client.reader; the request body must be fully sent first.
                await asyncio.gather(upload, return_exceptions=True)
                if not upload.cancelled() and upload.exception() is not None:
                    return status
                await asyncio.gather(
                    self._pipe(client.reader, u_w, client.take_buffered()),
                    self._pipe(u_r, writer),
                    return_exceptions=True
                )
            else:
                await self._relay_response(client, upload, u_r, u_w, config)
            return status
        finally:
            if upload is not None and not upload.done():
                upload.cancel()
            if not u_w.is_closing():
                u_w.close()

    async def _client_fault(
        self,
        upload: 'Optional[asyncio.Task[None]]',
        writer: asyncio.StreamWriter,
        config: HostConfig,
        extra: Mapping[str, str]
    ) -> Optional[int]:
        """
        Status for an exchange that broke because the client aborted its upload,
        or None when the backend is to blame. Client faults never reach the BackendGuard.
        """
        if upload is None or not upload.done() or upload.cancelled():
            return None
        exc = upload.exception()
        if not isinstance(exc, RequestFramingError):
            return None
        if "Timeout" in str(exc) or "Incomplete" in str(exc):
            self.log("DEBUG", f"{config.hostname}: client aborted request ({exc})")
            return CLIENT_CLOSED_REQUEST
        self.log("ERROR", f"{config.hostname}: Framing Error in request body: {exc}")
        await send_response(writer, 400, "Bad Request", f"400 Bad Request! {exc}.", extra)
        return 400

    async def _relay_response(
        self,
        client,
        upload: 'asyncio.Task[None]',
        u_r: asyncio.StreamReader,
        u_w: asyncio.StreamWriter,
        config: HostConfig
    ) -> None:
        """Pipes the response body; a client disconnect tears down the backend side at once."""
        relay = asyncio.create_task(self._pipe(u_r, client.writer))
        watch = asyncio.create_task(self._watch_client(client.reader, upload))
        try:
            done, _ = await asyncio.wait({relay, watch}, return_when=asyncio.FIRST_COMPLETED)
            if relay not in done:
                self.log("DEBUG", f"{config.hostname}: client disconnected, closing backend connection")
                if not u_w.is_closing():
                    u_w.close()
        finally:
            for task in (relay, watch):
                if not task.done():
                    task.cancel()
            await asyncio.gather(relay, watch, return_exceptions=True)

    async def _watch_client(self, reader: asyncio.StreamReader, upload: 'asyncio.Task[None]') -> None:
        """Returns once the client has gone away. Bytes past the request are discarded."""
        await asyncio.wait({upload})
        if upload.cancelled() or upload.exception() is not None:
            return
        try:
            while await reader.read(READ_CHUNK_SIZE):
                pass
        except ConnectionError:
            pass

    async def _read_response_head(
        self, u_r: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> Tuple[bytes, int, List[Tuple[str, str]]]:
        """Reads the final response head, relaying interim 1xx responses as they come."""
        while True:
            raw = await u_r.readuntil(b"\r\n\r\n")
            if len(raw) > MAX_RESPONSE_HEAD_SIZE:
                raise ProxyError("Backend response head too large")
            status_line, status, headers = parse_response_head(raw[:-4])
            if 100 <= status < 200 and status != 101:
                writer.write(raw)
                await writer.drain()
                continue
            return status_line, status, headers

    async def _upload(self, body: AsyncIterator[bytes], u_w: asyncio.StreamWriter) -> None:
        async for chunk in body:
            if chunk:
                u_w.write(chunk)
                await u_w.drain()

    def _on_upload_done(self, task: 'asyncio.Task[None]', u_w: asyncio.StreamWriter) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Client went away (or sent garbage) mid-body: tear down the backend side.
            self.log("DEBUG", f"Request body upload aborted: {exc}")
            if not u_w.is_closing():
                u_w.close()

    async def _pipe(
        self,
        r: asyncio.StreamReader,
        w: asyncio.StreamWriter,
        initial: bytes = b""
    ) -> None:
        """Pipes data from a reader to a writer; closes the writer when either side ends."""
        try:
            if initial:
                w.write(initial)
                await w.drain()
            while not r.at_eof():
                data = await r.read(READ_CHUNK_SIZE)
                if not data:
                    break
                w.write(data)
                await w.drain()
        except (ConnectionError, RuntimeError, OSError):
            pass
        finally:
            try:
                w.close()
                await w.wait_closed()
            except (ConnectionError, OSError):
                pass
