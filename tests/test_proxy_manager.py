# tests/test_proxy_manager.py
import json
import asyncio
import logging
import pytest
from unittest.mock import MagicMock, AsyncMock, patch

import proxy_core
from conftest import make_writer
from proxy_common import ProxySettings
from proxy_manager import ProxyManager
from cert_registry import CertRegistry

def settings_for(tmp_path, cert_root, sites_root, **overrides):
    values = dict(
        bind_address="127.0.0.1", http_port=0, https_port=0,
        cert_root=str(cert_root), sites_root=str(sites_root),
        stats_file=str(tmp_path / "stats.json"), stats_interval=0.05
    )
    values.update(overrides)
    return ProxySettings(**values)

class TestCallbacks:
    @pytest.mark.asyncio
    async def test_routes_to_logger_and_external(self, tmp_path, cert_root, sites_root, caplog):
        external = MagicMock()
        manager = ProxyManager(settings_for(tmp_path, cert_root, sites_root), external)
        with caplog.at_level(logging.DEBUG, logger="ProxyManager"):
            manager.unified_callback("ERROR", "backend down")
        external.assert_called_once_with("ERROR", "backend down")
        assert any(r.levelno == logging.ERROR and r.message == "backend down" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_external_failure_swallowed(self, tmp_path, cert_root, sites_root):
        manager = ProxyManager(
            settings_for(tmp_path, cert_root, sites_root), MagicMock(side_effect=RuntimeError)
        )
        manager.unified_callback("SERVED", "x")

    @pytest.mark.asyncio
    async def test_handler_factory(self, tmp_path, cert_root, sites_root):
        manager = ProxyManager(settings_for(tmp_path, cert_root, sites_root, public_https_port=8443))
        handler = manager.handler_factory(tls=True)(asyncio.StreamReader(), make_writer())
        assert handler.tls
        assert handler.stats is manager.stats
        assert handler.forwarder is manager.forwarder
        assert handler.public_https_port == 8443
        assert not manager.handler_factory(tls=False)(asyncio.StreamReader(), make_writer()).tls

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, tmp_path, cert_root, sites_root):
        manager = ProxyManager(settings_for(tmp_path, cert_root, sites_root))
        await manager.start()
        try:
            assert len(manager.servers) == 2
            assert manager.stats_task is not None
            manager.stats.record()
        finally:
            await manager.shutdown()

        assert manager.servers == []
        assert manager.stats_task is None
        doc = json.loads((tmp_path / "stats.json").read_text())
        assert doc['req_counter'] + doc['req_per_second'] == 1

    @pytest.mark.asyncio
    async def test_plaintext_bind_failure_tolerated(self, tmp_path, cert_root, sites_root):
        manager = ProxyManager(settings_for(tmp_path, cert_root, sites_root))
        secure = MagicMock()
        secure.wait_closed = AsyncMock()
        with patch.object(proxy_core, 'start_listener',
                          AsyncMock(side_effect=[secure, OSError("address in use")])):
            await manager.start()
        try:
            assert manager.servers == [secure]
        finally:
            await manager.shutdown()
        secure.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_secure_bind_failure_is_fatal(self, tmp_path, cert_root, sites_root):
        manager = ProxyManager(settings_for(tmp_path, cert_root, sites_root))
        with patch.object(proxy_core, 'start_listener', AsyncMock(side_effect=OSError("denied"))):
            with pytest.raises(OSError):
                await manager.start()
        assert manager.stats_task is None

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, tmp_path, cert_root, sites_root):
        manager = ProxyManager(settings_for(tmp_path, cert_root, sites_root))
        task = asyncio.create_task(manager.run())
        for _ in range(100):
            if len(manager.servers) == 2:
                break
            await asyncio.sleep(0.01)
        manager.stop()
        await asyncio.wait_for(task, timeout=10)
        assert manager.servers == []

class TestReload:
    @pytest.mark.asyncio
    async def test_reload_runs_once_at_a_time(self, tmp_path, cert_root, sites_root):
        manager = ProxyManager(settings_for(tmp_path, cert_root, sites_root))
        gate = asyncio.Event()

        async def slow_reload():
            await gate.wait()
            return {}

        with patch.object(CertRegistry, 'reload', side_effect=slow_reload) as reload:
            manager.request_reload()
            manager.request_reload()
            await asyncio.sleep(0)
            gate.set()
            await manager._reload_task
        reload.assert_called_once()
