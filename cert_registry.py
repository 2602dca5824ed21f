#Filename: cert_registry.py
"""
TLS CONTEXT REGISTRY
Indexes per-hostname certificate material found under the certificate store
(one directory per hostname, certbot 'live' layout) and selects the matching
SSLContext from SNI during the handshake.
"""

import os
import ssl
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

# Cryptography Imports
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from structures import CertificateEntry, CERT_FILENAME, KEY_FILENAME
from proxy_common import DEFAULT_CERT_ROOT, normalize_hostname

log = logging.getLogger("CertRegistry")

class CertificateLoadError(Exception):
    """Raised when one hostname's certificate material is unusable."""

def _public_bytes(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

class CertRegistry:
    """
    hostname -> (CertificateEntry, SSLContext).
    Loaded once at startup; reload() rebuilds both maps and swaps them in with a
    single assignment, so the SNI callback never sees a half-built state.
    """

    def __init__(
        self,
        store_root: str = DEFAULT_CERT_ROOT,
        cert_filename: str = CERT_FILENAME,
        key_filename: str = KEY_FILENAME
    ) -> None:
        self.store_root = store_root
        self.cert_filename = cert_filename
        self.key_filename = key_filename
        self._state: Tuple[Dict[str, CertificateEntry], Dict[str, ssl.SSLContext]] = ({}, {})

    def hostnames(self) -> List[str]:
        return sorted(self._state[0])

    def get_context(self, hostname: str) -> Optional[ssl.SSLContext]:
        return self._state[1].get(normalize_hostname(hostname))

    # -- Loading --

    async def load_all(self) -> Dict[str, CertificateEntry]:
        """Scans the store (in a worker thread) and installs the result."""
        entries, contexts, _ = await asyncio.to_thread(self._scan)
        self._state = (entries, contexts)
        log.info(f"Loaded certificates from {self.store_root}: {', '.join(self.hostnames()) or 'none'}")
        return entries

    async def reload(self) -> Dict[str, CertificateEntry]:
        """
        Rescans the store. Hosts whose new material fails to load keep their
        previous entry; hosts whose directory disappeared are dropped.
        """
        entries, contexts, failed = await asyncio.to_thread(self._scan)
        old_entries, old_contexts = self._state
        for hostname in failed:
            if hostname in old_contexts:
                log.warning(f"Keeping previous certificate for {hostname}")
                entries[hostname] = old_entries[hostname]
                contexts[hostname] = old_contexts[hostname]
        self._state = (entries, contexts)
        log.info(f"Reloaded certificates: {', '.join(self.hostnames()) or 'none'}")
        return entries

    def _scan(self) -> Tuple[Dict[str, CertificateEntry], Dict[str, ssl.SSLContext], List[str]]:
        entries: Dict[str, CertificateEntry] = {}
        contexts: Dict[str, ssl.SSLContext] = {}
        failed: List[str] = []
        try:
            with os.scandir(self.store_root) as it:
                names = sorted(d.name for d in it if d.is_dir())
        except OSError as e:
            log.error(f"Cannot read certificate store {self.store_root}: {e}")
            return entries, contexts, failed

        for name in names:
            hostname = normalize_hostname(name)
            try:
                entry = self.load_entry(name)
                contexts[hostname] = self.build_context(entry)
            except (
                OSError, ValueError, ssl.SSLError, UnsupportedAlgorithm, CertificateLoadError
            ) as e:
                log.error(f"Skipping {name}: {e}")
                failed.append(hostname)
                continue
            entries[hostname] = entry
            if entry.is_expired():
                log.warning(f"Certificate for {hostname} expired at {entry.not_valid_after}")
        return entries, contexts, failed

    def load_entry(self, dirname: str) -> CertificateEntry:
        """Reads and cross-checks one hostname's certificate and private key."""
        cert_path = os.path.join(self.store_root, dirname, self.cert_filename)
        key_path = os.path.join(self.store_root, dirname, self.key_filename)

        with open(cert_path, "rb") as f:
            cert_pem = f.read()
        with open(key_path, "rb") as f:
            key_pem = f.read()

        cert = x509.load_pem_x509_certificate(cert_pem)
        try:
            key = serialization.load_pem_private_key(key_pem, password=None)
        except TypeError as e:
            raise CertificateLoadError(f"Private key is encrypted: {e}") from e

        if _public_bytes(cert.public_key()) != _public_bytes(key.public_key()):
            raise CertificateLoadError("Private key does not match certificate")

        return CertificateEntry(
            normalize_hostname(dirname), cert_pem, key_pem, cert_path, key_path,
            cert.not_valid_after_utc
        )

    def build_context(self, entry: CertificateEntry) -> ssl.SSLContext:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        ctx.load_cert_chain(entry.cert_path, entry.key_path)
        ctx.set_alpn_protocols(["http/1.1"])
        return ctx

    # -- Handshake --

    def server_context(self) -> ssl.SSLContext:
        """
        Listener context. Carries no certificate of its own; the SNI callback
        swaps in the per-host context before the handshake completes.
        """
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        ctx.set_alpn_protocols(["http/1.1"])
        ctx.sni_callback = self.sni_callback
        return ctx

    def sni_callback(
        self, ssl_obj: ssl.SSLObject, server_name: Optional[str], ssl_context: ssl.SSLContext
    ) -> Optional[int]:
        """Selects the certificate for the negotiated server name."""
        if not server_name:
            log.debug("TLS handshake without SNI rejected")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        ctx = self.get_context(server_name)
        if ctx is None:
            log.debug(f"No certificate for SNI name {server_name}")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        ssl_obj.context = ctx
        return None
