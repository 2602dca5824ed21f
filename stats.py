#Filename: stats.py
"""
STATS AGGREGATOR
Counts handled requests and rewrites a small JSON document every interval:

    {"req_counter": <cumulative>, "req_per_second": <last interval>}
"""

import os
import json
import asyncio
import logging
import tempfile
from typing import Optional

from structures import StatsSnapshot
from proxy_common import STATS_INTERVAL, DEFAULT_STATS_FILE

log = logging.getLogger("Stats")

class JsonStatsSink:
    """Persists snapshots to a JSON file, replacing it atomically."""
    __slots__ = ('path',)

    def __init__(self, path: str = DEFAULT_STATS_FILE) -> None:
        self.path = os.path.abspath(path)

    def load(self) -> StatsSnapshot:
        """Last persisted snapshot, or zeros when there is none (or it is corrupt)."""
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("stats document is not an object")
            return StatsSnapshot.from_dict(data)
        except FileNotFoundError:
            return StatsSnapshot()
        except (OSError, ValueError) as e:
            log.warning(f"Ignoring unreadable stats file {self.path}: {e}")
            return StatsSnapshot()

    def write(self, snapshot: StatsSnapshot) -> None:
        directory = os.path.dirname(self.path) or '.'
        fd, tmp_path = tempfile.mkstemp(prefix='.stats-', suffix='.tmp', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(snapshot.to_dict(), f)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

class StatsAggregator:
    """
    Two counters: requests in the current interval and the cumulative total.
    Each tick persists both, then folds the interval count into the total.
    """

    def __init__(self, sink: Optional[JsonStatsSink] = None, interval: float = STATS_INTERVAL) -> None:
        self.sink = sink
        self.interval = interval
        initial = sink.load() if sink else StatsSnapshot()
        self.requests_per_second = initial.requests_per_second
        self.request_counter = initial.request_counter

    def record(self) -> None:
        self.requests_per_second += 1

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(self.requests_per_second, self.request_counter)

    def tick(self) -> StatsSnapshot:
        """Captures the current values and starts a new interval."""
        snap = self.snapshot()
        self.request_counter += self.requests_per_second
        self.requests_per_second = 0
        return snap

    async def persist(self, snapshot: StatsSnapshot) -> bool:
        """Writes a snapshot off the event loop. Failures are logged, never raised."""
        if not self.sink:
            return False
        try:
            await asyncio.to_thread(self.sink.write, snapshot)
            return True
        except (OSError, TypeError, ValueError) as e:
            log.error(f"Failed to persist stats to {self.sink.path}: {e}")
            return False

    async def run(self) -> None:
        """Timer loop; runs until cancelled."""
        while True:
            await asyncio.sleep(self.interval)
            await self.persist(self.tick())
