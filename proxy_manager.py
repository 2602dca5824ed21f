# proxy_manager.py

"""
Proxy Manager.
Wires the certificate registry, config resolver, forwarder and stats aggregator
into two listeners: plaintext (redirect only) and TLS (SNI-selected certificates).
"""

import asyncio
import functools
import logging
import signal
from typing import Optional, Callable, List, Any

import proxy_core
from proxy_common import ProxySettings
from host_config import ConfigCache, HostConfigResolver
from cert_registry import CertRegistry
from proxy_forward import RequestForwarder, BackendGuard
from stats import StatsAggregator, JsonStatsSink

log = logging.getLogger("ProxyManager")

SHUTDOWN_GRACE = 5.0

LOG_LEVELS = {
    "SERVED": logging.INFO,
    "SYSTEM": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "DEBUG": logging.DEBUG,
}

class ProxyManager:
    def __init__(
        self,
        settings: Optional[ProxySettings] = None,
        external_callback: Optional[Callable[[str, Any], None]] = None
    ):
        self.settings = settings or ProxySettings.from_env()
        self.external_callback = external_callback
        self.registry = CertRegistry(self.settings.cert_root)
        self.resolver = HostConfigResolver(
            self.settings.sites_root, ConfigCache(negative_ttl=self.settings.negative_ttl)
        )
        self.forwarder = RequestForwarder(
            self.unified_callback,
            backend_host=self.settings.backend_host,
            guard=BackendGuard(),
            connect_timeout=self.settings.connect_timeout,
            response_timeout=self.settings.response_timeout
        )
        self.stats = StatsAggregator(
            JsonStatsSink(self.settings.stats_file), interval=self.settings.stats_interval
        )
        self.servers: List[asyncio.AbstractServer] = []
        self.stats_task: Optional[asyncio.Task] = None
        self.stop_event = asyncio.Event()
        self._reload_task: Optional[asyncio.Task] = None

    def unified_callback(self, level: str, payload: Any) -> None:
        """Single sink for handler events: logging plus the optional external callback."""
        log.log(LOG_LEVELS.get(level, logging.INFO), f"{payload}")
        if self.external_callback:
            try:
                self.external_callback(level, payload)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    def handler_factory(self, tls: bool) -> Callable[..., proxy_core.Http11ProxyHandler]:
        return functools.partial(self._make_handler, tls=tls)

    def _make_handler(self, reader, writer, tls: bool) -> proxy_core.Http11ProxyHandler:
        return proxy_core.Http11ProxyHandler(
            reader, writer, self.unified_callback, self.resolver, self.forwarder,
            stats=self.stats, tls=tls, trust_proxy=self.settings.trust_proxy,
            public_https_port=self.settings.public_https_port
        )

    async def start(self) -> None:
        log.info("=== Starting Proxy Manager ===")
        s = self.settings
        await self.registry.load_all()

        # The secure listener is the only startup failure that is fatal.
        secure = await proxy_core.start_listener(
            s.bind_address, s.https_port, self.handler_factory(tls=True),
            self.unified_callback, ssl_context=self.registry.server_context()
        )
        self.servers.append(secure)

        try:
            plain = await proxy_core.start_listener(
                s.bind_address, s.http_port, self.handler_factory(tls=False),
                self.unified_callback
            )
            self.servers.append(plain)
        except OSError as e:
            log.error(f"HTTP listener on :{s.http_port} unavailable, continuing without redirects: {e}")

        self.stats_task = asyncio.create_task(self.stats.run())
        self._install_reload_signal()

    def _install_reload_signal(self) -> None:
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, self.request_reload)
        except (NotImplementedError, AttributeError, RuntimeError):
            log.debug("SIGHUP reload not supported on this platform")

    def request_reload(self) -> None:
        if self._reload_task and not self._reload_task.done():
            log.info("Certificate reload already in progress")
            return
        log.info("SIGHUP received, reloading certificates")
        self._reload_task = asyncio.create_task(self.registry.reload())

    async def run(self) -> None:
        await self.start()
        try:
            await self.stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self.stop_event.set()

    async def shutdown(self) -> None:
        for server in self.servers:
            server.close()
        for server in self.servers:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=SHUTDOWN_GRACE)
            except asyncio.TimeoutError:
                log.warning("Open connections still draining at shutdown")
        self.servers.clear()

        if self.stats_task:
            self.stats_task.cancel()
            try:
                await self.stats_task
            except asyncio.CancelledError:
                pass
            self.stats_task = None
        try:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
        except (NotImplementedError, AttributeError, RuntimeError):
            pass
        await self.stats.persist(self.stats.snapshot())
        log.info("Proxy stopped")
