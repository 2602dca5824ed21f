# conftest.py
import sys
import os
import datetime
from typing import Optional, Tuple
from unittest.mock import MagicMock, AsyncMock

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.asymmetric import ec

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

def generate_cert(hostname: str, days: int = 30, key=None) -> Tuple[bytes, bytes]:
    """Self-signed ECC P-256 certificate for hostname. Returns (cert_pem, key_pem)."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = x509.CertificateBuilder().subject_name(
        name
    ).issuer_name(
        name
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - datetime.timedelta(days=1)
    ).not_valid_after(
        now + datetime.timedelta(days=days)
    ).add_extension(
        x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False,
    ).sign(key, hashes.SHA256())

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem

def write_cert_dir(root, hostname: str, cert_pem: Optional[bytes] = None,
                   key_pem: Optional[bytes] = None, days: int = 30):
    """Creates <root>/<hostname>/{cert.pem,privkey.pem} (certbot 'live' layout)."""
    if cert_pem is None or key_pem is None:
        gen_cert, gen_key = generate_cert(hostname, days=days)
        cert_pem = gen_cert if cert_pem is None else cert_pem
        key_pem = gen_key if key_pem is None else key_pem
    d = root / hostname
    d.mkdir(parents=True, exist_ok=True)
    (d / "cert.pem").write_bytes(cert_pem)
    (d / "privkey.pem").write_bytes(key_pem)
    return d

def write_site(root, hostname: str, body: str):
    """Creates <root>/<hostname>/config.yml."""
    d = root / hostname
    d.mkdir(parents=True, exist_ok=True)
    (d / "config.yml").write_text(body)
    return d

def make_writer(peer=("203.0.113.7", 51000)):
    """StreamWriter stand-in that records everything written."""
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    writer.get_extra_info.side_effect = lambda name, default=None: peer if name == 'peername' else default
    return writer

def written(writer) -> bytes:
    return b"".join(c.args[0] for c in writer.write.call_args_list)

@pytest.fixture
def cert_root(tmp_path):
    root = tmp_path / "live"
    root.mkdir()
    return root

@pytest.fixture
def sites_root(tmp_path):
    root = tmp_path / "sites"
    root.mkdir()
    return root
