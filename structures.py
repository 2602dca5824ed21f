#Filename: structures.py
"""
CORE DATA STRUCTURES
Single Source of Truth (SSOT) for the routing model.
Shared by the Resolver, Certificate Registry, Forwarder and Stats Aggregator.
"""

import datetime
from typing import Dict, List, Tuple, Optional, Any, NamedTuple, FrozenSet

# -- Constants --

CONFIG_FILENAME: str = "config.yml"
CERT_FILENAME: str = "cert.pem"
KEY_FILENAME: str = "privkey.pem"

# Connection-scoped headers that never cross the proxy hop (RFC 9110 Section 7.6.1).
# Content-Length and Transfer-Encoding are absent: body framing passes through unchanged.
HOP_BY_HOP_HEADERS: FrozenSet[str] = frozenset({
    'connection', 'keep-alive', 'proxy-connection', 'proxy-authenticate',
    'proxy-authorization', 'te', 'upgrade'
})

CORS_ALLOW_HEADERS: str = "X-Requested-With, Content-Type"

# -- Types --

class HostConfig(NamedTuple):
    """
    Routing target of one tenant.
    Immutable; a negative entry (valid=False) records a failed lookup.
    """
    hostname: str
    port: Optional[int] = None
    local_port: Optional[int] = None
    valid: bool = True
    loaded_at: float = 0.0

    @property
    def target_port(self) -> Optional[int]:
        """local-port overrides port when present."""
        return self.local_port or self.port

    @classmethod
    def invalid(cls, hostname: str, loaded_at: float = 0.0) -> 'HostConfig':
        return cls(hostname, None, None, False, loaded_at)

    def __repr__(self) -> str:
        if not self.valid:
            return f"<HostConfig {self.hostname} (invalid)>"
        return f"<HostConfig {self.hostname} -> :{self.target_port}>"

class CertificateEntry(NamedTuple):
    """PEM material of one hostname, as read from the certificate store."""
    hostname: str
    certificate: bytes
    private_key: bytes
    cert_path: str
    key_path: str
    not_valid_after: Optional[datetime.datetime] = None

    def is_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        if self.not_valid_after is None:
            return False
        now = now or datetime.datetime.now(datetime.timezone.utc)
        return now >= self.not_valid_after

class StatsSnapshot(NamedTuple):
    """One persisted stats document."""
    requests_per_second: int = 0
    request_counter: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'req_counter': self.request_counter,
            'req_per_second': self.requests_per_second
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatsSnapshot':
        """Builds a snapshot from a persisted document. Non-integer fields raise ValueError."""
        rps = data.get('req_per_second', 0)
        counter = data.get('req_counter', 0)
        for value in (rps, counter):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"Stats fields must be integers, got {value!r}")
        return cls(rps, counter)

class RequestHead:
    """
    Parsed request line and header block of an inbound HTTP/1.x request.
    Headers keep their original order and casing.
    """
    __slots__ = ('method', 'target', 'version', 'headers')

    def __init__(
        self,
        method: str,
        target: str,
        version: str,
        headers: List[Tuple[str, str]]
    ) -> None:
        if not isinstance(headers, list):
            raise TypeError(f"Headers must be List[Tuple[str, str]], got {type(headers).__name__}")
        self.method = method
        self.target = target
        self.version = version
        self.headers = headers

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive lookup of the first header with this name."""
        lname = name.lower()
        for k, v in self.headers:
            if k.lower() == lname:
                return v
        return default

    def get_all(self, name: str) -> List[str]:
        lname = name.lower()
        return [v for k, v in self.headers if k.lower() == lname]

    @property
    def path(self) -> str:
        """Origin-form target (path + query), also for absolute-form requests."""
        if self.target.startswith('/') or self.target == '*':
            return self.target
        scheme_end = self.target.find('://')
        if scheme_end == -1:
            return '/' + self.target
        path_start = self.target.find('/', scheme_end + 3)
        query_start = self.target.find('?', scheme_end + 3)
        if path_start == -1 or (query_start != -1 and query_start < path_start):
            return '/' + (self.target[query_start:] if query_start != -1 else '')
        return self.target[path_start:]

    @property
    def is_chunked(self) -> bool:
        te = self.get('transfer-encoding', '') or ''
        return 'chunked' in [e.strip().lower() for e in te.split(',')]

    @property
    def wants_upgrade(self) -> bool:
        conn = self.get('connection', '') or ''
        return self.get('upgrade') is not None and 'upgrade' in conn.lower()

    def __repr__(self) -> str:
        return f"<RequestHead {self.method} {self.target} {self.version}>"
