"""In-memory caches for experiment configuration and results.

Three bounded LRU caches with per-entry expiry sit in front of the
persistence layer and the analytics store. Keys are prefixed with the site
id so one write can drop everything a site owns.

Every create/update/delete of an experiment must call
ExperimentCache.invalidate for the owning site before returning; TTL
expiry does not replace it.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, TypeVar
from urllib.parse import quote

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TTLCache:
    """Thread-safe LRU cache with per-entry expiry."""

    def __init__(self, max_size: int = 100, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: Any, ttl: float | None = None):
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            elif len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (value, self._clock() + (self.ttl if ttl is None else ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            stale = [k for k in self._entries if k.startswith(prefix)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def cleanup(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._entries.items() if now > exp]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        return {"size": len(self._entries), "max_size": self.max_size, "ttl": self.ttl}

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key: str):
        return self.get(key) is not None


@dataclass(frozen=True)
class CacheConfig:
    # Experiment configs rarely change and writes invalidate explicitly
    active_experiments_size: int = 50
    active_experiments_ttl: float = 300.0
    experiment_size: int = 100
    experiment_ttl: float = 120.0
    # Results should stay fairly fresh
    results_size: int = 30
    results_ttl: float = 30.0


def _key_part(value: str) -> str:
    # ":" separates key segments, so ids are percent-encoded
    return quote(str(value), safe="")


def site_prefix(site_id: str) -> str:
    return f"{_key_part(site_id)}:"


def active_experiments_key(site_id: str) -> str:
    return f"{site_prefix(site_id)}active-experiments"


def experiment_key(site_id: str, experiment_id: str) -> str:
    return f"{site_prefix(site_id)}experiment:{_key_part(experiment_id)}"


def results_prefix(site_id: str, experiment_id: str) -> str:
    return f"{site_prefix(site_id)}results:{_key_part(experiment_id)}:"


def results_key(
    site_id: str,
    experiment_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
) -> str:
    return f"{results_prefix(site_id, experiment_id)}{start_date or 'all'}:{end_date or 'now'}"


class ExperimentCache:
    """Read-through caches for one process, constructed by the caller.

    Fetchers are only called on a miss. A fetcher that raises leaves the
    cache untouched and the error propagates. Two concurrent misses may
    both fetch; the results are identical so the last write wins.
    """

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic):
        config = config or CacheConfig()
        self.active_experiments = TTLCache(config.active_experiments_size, config.active_experiments_ttl, clock)
        self.experiments = TTLCache(config.experiment_size, config.experiment_ttl, clock)
        self.results = TTLCache(config.results_size, config.results_ttl, clock)

    @staticmethod
    def _read_through(cache: TTLCache, key: str, fetcher: Callable[[], T]) -> T:
        cached = cache.get(key)
        if cached is not None:
            return cached
        value = fetcher()
        if value is not None:
            cache.set(key, value)
        return value

    def get_active_experiments(self, site_id: str, fetcher: Callable[[], T]) -> T:
        return self._read_through(self.active_experiments, active_experiments_key(site_id), fetcher)

    def get_experiment(self, site_id: str, experiment_id: str, fetcher: Callable[[], T]) -> T:
        return self._read_through(self.experiments, experiment_key(site_id, experiment_id), fetcher)

    def get_results(
        self,
        site_id: str,
        experiment_id: str,
        fetcher: Callable[[], T],
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> T:
        key = results_key(site_id, experiment_id, start_date, end_date)
        return self._read_through(self.results, key, fetcher)

    def invalidate(self, site_id: str, experiment_id: str | None = None) -> int:
        """Drop cached entries after a write to a site's experiments.

        Without an experiment id every entry of the site goes. With one,
        the site's active list, that experiment, and its results go.
        """
        prefix = site_prefix(site_id)
        if experiment_id is None:
            removed = sum(
                cache.invalidate_prefix(prefix)
                for cache in (self.active_experiments, self.experiments, self.results)
            )
        else:
            removed = self.active_experiments.invalidate_prefix(prefix)
            removed += int(self.experiments.delete(experiment_key(site_id, experiment_id)))
            removed += self.results.invalidate_prefix(results_prefix(site_id, experiment_id))
        logger.debug(
            "Invalidated %d cache entries for site %s (experiment=%s)",
            removed, site_id, experiment_id,
        )
        return removed

    def cleanup(self) -> int:
        return sum(
            cache.cleanup()
            for cache in (self.active_experiments, self.experiments, self.results)
        )

    def stats(self) -> dict:
        return {
            "active_experiments": self.active_experiments.stats(),
            "experiments": self.experiments.stats(),
            "results": self.results.stats(),
        }
