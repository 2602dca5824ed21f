# tests/test_cert_registry.py
"""
Tests for cert_registry.py: certificate store scanning, reload and SNI selection.
"""
import ssl
import asyncio
import pytest
from unittest.mock import MagicMock
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from conftest import generate_cert, write_cert_dir
from cert_registry import CertRegistry, CertificateLoadError

def der_of(cert_pem: bytes) -> bytes:
    return x509.load_pem_x509_certificate(cert_pem).public_bytes(serialization.Encoding.DER)

async def handshake(port: int, server_name: str) -> bytes:
    """Completes a TLS handshake and returns the server certificate (DER)."""
    client_ctx = ssl.create_default_context()
    client_ctx.check_hostname = False
    client_ctx.verify_mode = ssl.CERT_NONE
    reader, writer = await asyncio.open_connection(
        "127.0.0.1", port, ssl=client_ctx, server_hostname=server_name
    )
    try:
        return writer.get_extra_info('ssl_object').getpeercert(binary_form=True)
    finally:
        writer.close()

async def start_tls_server(registry: CertRegistry):
    async def handler(reader, writer):
        writer.close()
    server = await asyncio.start_server(handler, "127.0.0.1", 0, ssl=registry.server_context())
    return server, server.sockets[0].getsockname()[1]

class TestLoading:
    @pytest.mark.asyncio
    async def test_loads_every_host(self, cert_root):
        write_cert_dir(cert_root, "a.test")
        write_cert_dir(cert_root, "b.test")
        registry = CertRegistry(str(cert_root))
        entries = await registry.load_all()
        assert sorted(entries) == ["a.test", "b.test"]
        assert registry.hostnames() == ["a.test", "b.test"]
        assert registry.get_context("A.TEST") is registry.get_context("a.test") is not None
        assert entries["a.test"].not_valid_after is not None

    @pytest.mark.asyncio
    async def test_broken_host_does_not_affect_others(self, cert_root):
        write_cert_dir(cert_root, "good.test")
        bad = cert_root / "bad.test"
        bad.mkdir()
        (bad / "cert.pem").write_bytes(b"not a certificate")
        (bad / "privkey.pem").write_bytes(b"not a key")
        (cert_root / "empty.test").mkdir()

        registry = CertRegistry(str(cert_root))
        await registry.load_all()
        assert registry.hostnames() == ["good.test"]
        assert registry.get_context("good.test") is not None
        assert registry.get_context("bad.test") is None

    @pytest.mark.asyncio
    async def test_missing_store_is_empty(self, tmp_path):
        registry = CertRegistry(str(tmp_path / "absent"))
        assert await registry.load_all() == {}

    def test_mismatched_key_rejected(self, cert_root):
        cert_pem, _ = generate_cert("a.test")
        _, other_key = generate_cert("a.test")
        write_cert_dir(cert_root, "a.test", cert_pem, other_key)
        with pytest.raises(CertificateLoadError):
            CertRegistry(str(cert_root)).load_entry("a.test")

    @pytest.mark.asyncio
    async def test_expired_certificate_still_loaded(self, cert_root):
        write_cert_dir(cert_root, "old.test", days=-1)
        registry = CertRegistry(str(cert_root))
        entries = await registry.load_all()
        assert entries["old.test"].is_expired()

class TestReload:
    @pytest.mark.asyncio
    async def test_failed_host_keeps_previous_entry(self, cert_root):
        write_cert_dir(cert_root, "a.test")
        write_cert_dir(cert_root, "b.test")
        registry = CertRegistry(str(cert_root))
        await registry.load_all()
        old_ctx = registry.get_context("a.test")

        (cert_root / "a.test" / "cert.pem").write_bytes(b"garbage")
        write_cert_dir(cert_root, "c.test")
        await registry.reload()

        assert registry.get_context("a.test") is old_ctx
        assert registry.hostnames() == ["a.test", "b.test", "c.test"]

    @pytest.mark.asyncio
    async def test_removed_host_dropped(self, cert_root):
        write_cert_dir(cert_root, "a.test")
        d = write_cert_dir(cert_root, "b.test")
        registry = CertRegistry(str(cert_root))
        await registry.load_all()

        for f in d.iterdir():
            f.unlink()
        d.rmdir()
        await registry.reload()
        assert registry.hostnames() == ["a.test"]

class TestSniCallback:
    @pytest.mark.asyncio
    async def test_unknown_name_alerts(self, cert_root):
        registry = CertRegistry(str(cert_root))
        await registry.load_all()
        ssl_obj = MagicMock()
        result = registry.sni_callback(ssl_obj, "nope.test", None)
        assert result == ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        assert registry.sni_callback(ssl_obj, None, None) == ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME

    @pytest.mark.asyncio
    async def test_known_name_switches_context(self, cert_root):
        write_cert_dir(cert_root, "a.test")
        registry = CertRegistry(str(cert_root))
        await registry.load_all()
        ssl_obj = MagicMock()
        assert registry.sni_callback(ssl_obj, "A.test", None) is None
        assert ssl_obj.context is registry.get_context("a.test")

    @pytest.mark.asyncio
    async def test_handshake_presents_matching_certificate(self, cert_root):
        a_cert, a_key = generate_cert("a.test")
        b_cert, b_key = generate_cert("b.test")
        write_cert_dir(cert_root, "a.test", a_cert, a_key)
        write_cert_dir(cert_root, "b.test", b_cert, b_key)
        registry = CertRegistry(str(cert_root))
        await registry.load_all()

        server, port = await start_tls_server(registry)
        try:
            assert await handshake(port, "a.test") == der_of(a_cert)
            assert await handshake(port, "b.test") == der_of(b_cert)
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_handshake_fails_for_unknown_name(self, cert_root):
        write_cert_dir(cert_root, "a.test")
        registry = CertRegistry(str(cert_root))
        await registry.load_all()

        server, port = await start_tls_server(registry)
        try:
            with pytest.raises((ssl.SSLError, ConnectionError)):
                await handshake(port, "unknown.test")
        finally:
            server.close()
            await server.wait_closed()
