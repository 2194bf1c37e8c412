"""
In-memory advisory cache of visit counts per entity and period.

Registration reads through it ahead of quota checks. Values may be stale;
the recalculation engine never reads it and always works from visit rows.
Every write that touches an entity's visits must invalidate that entity.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Optional
import logging
import threading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountKey:
    """Cache key: an entity and a period such as ``2026-10``, ``2026`` or ``host:2026-10-19``."""

    entity_id: int
    period: str

    @classmethod
    def month(cls, entity_id: int, day: date) -> "CountKey":
        return cls(entity_id, day.strftime("%Y-%m"))

    @classmethod
    def year(cls, entity_id: int, day: date) -> "CountKey":
        return cls(entity_id, day.strftime("%Y"))

    @classmethod
    def host_day(cls, host_id: int, day: date) -> "CountKey":
        return cls(host_id, f"host:{day.isoformat()}")


class VisitCountCache:
    """Typed TTL cache with a size limit and explicit per-entity invalidation.

    Shared by request threads, so every access to the dicts holds ``_lock``.
    ``compute`` in ``get_or_compute`` runs outside it.
    """

    MAX_ENTRIES = 10000  # Prevent unbounded memory growth

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._counts: Dict[CountKey, int] = {}
        self._expiry: Dict[CountKey, datetime] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _evict_expired(self):
        now = datetime.now()
        expired = [k for k, exp in self._expiry.items() if exp <= now]
        for k in expired:
            self._counts.pop(k, None)
            self._expiry.pop(k, None)

    def get(self, key: CountKey) -> Optional[int]:
        """Get a count if present and not expired."""
        with self._lock:
            if key in self._counts:
                if datetime.now() < self._expiry.get(key, datetime.min):
                    self.hits += 1
                    return self._counts[key]
                self._counts.pop(key, None)
                self._expiry.pop(key, None)
            self.misses += 1
            return None

    def set(self, key: CountKey, value: int, ttl_seconds: Optional[int] = None):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if len(self._counts) >= self.MAX_ENTRIES:
                self._evict_expired()
            if len(self._counts) >= self.MAX_ENTRIES:
                oldest_keys = sorted(self._expiry, key=self._expiry.get)[:100]
                for k in oldest_keys:
                    self._counts.pop(k, None)
                    self._expiry.pop(k, None)
            self._counts[key] = value
            self._expiry[key] = datetime.now() + timedelta(seconds=ttl)

    def get_or_compute(self, key: CountKey, compute: Callable[[], int]) -> int:
        value = self.get(key)
        if value is None:
            value = compute()
            self.set(key, value)
        return value

    def invalidate_entity(self, entity_id: int):
        """Drop every period cached for an entity, including its host-day counts."""
        with self._lock:
            keys = [k for k in self._counts if k.entity_id == entity_id]
            for key in keys:
                self._counts.pop(key, None)
                self._expiry.pop(key, None)
        if keys:
            logger.debug(f"Invalidated {len(keys)} cached counts for entity {entity_id}")

    def clear(self):
        with self._lock:
            self._counts.clear()
            self._expiry.clear()

    def stats(self) -> dict:
        now = datetime.now()
        with self._lock:
            total = len(self._counts)
            valid = sum(1 for exp in self._expiry.values() if exp > now)
        return {
            "total_keys": total,
            "valid_keys": valid,
            "expired_keys": total - valid,
            "hits": self.hits,
            "misses": self.misses,
        }
