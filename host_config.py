#Filename: host_config.py
"""
HOST CONFIGURATION RESOLVER
Maps a request hostname to its tenant routing target.
Each tenant lives in a directory named after its hostname holding a YAML document:

    port: 3000          # required
    local-port: 9000    # optional, overrides port as forwarding target

Lookups are memoized in an explicit ConfigCache, failed lookups included.
"""

import os
import time
import asyncio
import logging
from typing import Optional, Dict, Callable

import yaml

from structures import HostConfig, CONFIG_FILENAME
from proxy_common import normalize_hostname, is_valid_hostname, DEFAULT_SITES_ROOT

log = logging.getLogger("HostConfig")

class ConfigCache:
    """
    hostname -> HostConfig.
    The first stored result for a hostname wins, so concurrent first lookups converge
    on one object. Negative entries live forever unless negative_ttl is set.
    """
    __slots__ = ('negative_ttl', '_clock', '_entries')

    def __init__(
        self,
        negative_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.negative_ttl = negative_ttl
        self._clock = clock
        self._entries: Dict[str, HostConfig] = {}

    def _is_stale(self, config: HostConfig) -> bool:
        if config.valid or self.negative_ttl is None:
            return False
        return (self._clock() - config.loaded_at) >= self.negative_ttl

    def get(self, hostname: str) -> Optional[HostConfig]:
        config = self._entries.get(hostname)
        if config is None or self._is_stale(config):
            return None
        return config

    def put(self, config: HostConfig) -> HostConfig:
        """Stores config unless a live entry exists; returns the entry now cached."""
        existing = self._entries.get(config.hostname)
        if existing is not None and not self._is_stale(existing):
            return existing
        self._entries[config.hostname] = config
        return config

    def evict(self, hostname: str) -> bool:
        """Explicit invalidation hook. Returns True if an entry was dropped."""
        return self._entries.pop(normalize_hostname(hostname), None) is not None

    def now(self) -> float:
        return self._clock()

class HostConfigResolver:
    """Resolves hostnames against <sites_root>/<hostname>/config.yml."""

    def __init__(
        self,
        sites_root: str = DEFAULT_SITES_ROOT,
        cache: Optional[ConfigCache] = None,
        filename: str = CONFIG_FILENAME
    ) -> None:
        self.sites_root = sites_root
        self.cache = cache if cache is not None else ConfigCache()
        self.filename = filename

    def config_path(self, hostname: str) -> str:
        return os.path.join(self.sites_root, hostname, self.filename)

    async def resolve(self, hostname: str) -> HostConfig:
        """
        Returns the tenant configuration for hostname. Never raises:
        every failure is reported as a HostConfig with valid=False.
        """
        name = normalize_hostname(hostname)
        cached = self.cache.get(name)
        if cached is not None:
            return cached

        if not is_valid_hostname(name):
            log.debug(f"Rejecting malformed hostname {hostname!r}")
            return HostConfig.invalid(name, self.cache.now())

        config = await asyncio.to_thread(self.load, name)
        return self.cache.put(config)

    def load(self, hostname: str) -> HostConfig:
        """Reads and parses one configuration document (blocking)."""
        loaded_at = self.cache.now()
        path = self.config_path(hostname)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, UnicodeDecodeError) as e:
            log.info(f"No configuration for {hostname}: {e}")
            return HostConfig.invalid(hostname, loaded_at)
        except yaml.YAMLError as e:
            log.warning(f"Invalid YAML in {path}: {e}")
            return HostConfig.invalid(hostname, loaded_at)

        try:
            port, local_port = parse_config_document(data)
        except ValueError as e:
            log.warning(f"Rejected configuration {path}: {e}")
            return HostConfig.invalid(hostname, loaded_at)

        config = HostConfig(hostname, port, local_port, True, loaded_at)
        log.info(f"Loaded {config!r}")
        return config

def _as_port(value: object, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{field}' must be an integer, got {value!r}")
    if not 0 < value < 65536:
        raise ValueError(f"'{field}' out of range: {value}")
    return value

def parse_config_document(data: object):
    """Validates a parsed YAML document and returns (port, local_port)."""
    if not isinstance(data, dict):
        raise ValueError("document is not a mapping")
    if data.get('error') is True:
        raise ValueError("document flagged as error")
    if 'port' not in data:
        raise ValueError("missing required field 'port'")
    port = _as_port(data['port'], 'port')
    local_port = data.get('local-port')
    if local_port is not None:
        local_port = _as_port(local_port, 'local-port')
    return port, local_port
