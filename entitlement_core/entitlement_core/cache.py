"""Short-lived read-through cache for resolved entitlements.

Keys are built from ``(workspace_id, customer_id[, feature_key])`` so that
every entry belonging to one customer shares a common prefix; a grant or
revoke drops them all with :meth:`EntitlementCache.invalidate_prefix`.

Design notes:
    * :class:`EntitlementCache` is the seam the resolver depends on; a
      distributed implementation only needs the four protocol methods.
    * :class:`InMemoryEntitlementCache` is a lock-protected dict.  Entries
      carry an absolute expiry and are lazily evicted on read; a background
      sweep thread owned by the cache removes entries nobody reads again.
    * Dropping an entry only costs latency.  The TTL bounds staleness for
      store changes made outside the resolver.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

_KEY_ROOT = "ent"
# Feature entries and the whole-customer entry live in separate namespaces so
# a feature literally named "all" cannot collide with the customer set.
_FEATURE_NS = "f"
_ALL_NS = "all"


def customer_cache_prefix(workspace_id: str, customer_id: str) -> str:
    """Prefix shared by every cache entry of one customer."""
    # Percent-encode the components: a ``:`` inside an id must not let one
    # customer's prefix match another customer's keys.
    return f"{_KEY_ROOT}:{quote(workspace_id, safe='')}:{quote(customer_id, safe='')}:"


def entitlement_cache_key(workspace_id: str, customer_id: str, feature_key: str | None = None) -> str:
    """Cache key for one feature, or for the customer's full set when *feature_key* is ``None``."""
    prefix = customer_cache_prefix(workspace_id, customer_id)
    if feature_key is None:
        return prefix + _ALL_NS
    return f"{prefix}{_FEATURE_NS}:{quote(feature_key, safe='')}"


class EntitlementCache(Protocol):
    """Cache abstraction consumed by the entitlement resolver."""

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` on miss or expiry."""
        ...

    def set(self, key: str, value: Any) -> None:
        """Store *value* under *key* for the cache's TTL."""
        ...

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with *prefix*.  Returns count removed."""
        ...

    def clear(self) -> int:
        """Drop every entry.  Returns count removed."""
        ...


@dataclass(slots=True)
class _CacheEntry:
    """A cached value with a monotonic expiry timestamp."""

    value: Any
    expires_at: float
    created_at: float = field(default_factory=time.monotonic)


class InMemoryEntitlementCache:
    """Thread-safe in-process TTL cache with a periodic sweep.

    Parameters
    ----------
    ttl_seconds:
        Lifetime of an entry.  Entries expire even without invalidation.
    sweep_interval_seconds:
        How often the background sweep removes expired entries.
    max_entries:
        When exceeded, expired entries are purged first, then the oldest 10%.
    enabled:
        If ``False``, all operations are no-ops.  Allows disabling via
        config without changing call sites.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        max_entries: int = 50_000,
        enabled: bool = True,
    ) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._sweep_interval = sweep_interval_seconds
        self._max_entries = max_entries
        self._enabled = enabled

        self._sweep_thread: threading.Thread | None = None
        self._stop_event = threading.Event()

        # Stats
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_settings(cls, settings: Any) -> InMemoryEntitlementCache:
        """Build from any settings object carrying the ``cache_*`` fields."""
        return cls(
            ttl_seconds=settings.cache_ttl_seconds,
            sweep_interval_seconds=settings.cache_sweep_interval_seconds,
            max_entries=settings.cache_max_entries,
            enabled=settings.cache_enabled,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        if not self._enabled:
            return None

        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None

            if time.monotonic() >= entry.expires_at:
                del self._store[key]
                self._misses += 1
                logger.debug("Entitlement cache expired: key=%s", key)
                return None

            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any) -> None:
        if not self._enabled:
            return

        now = time.monotonic()
        with self._lock:
            if len(self._store) >= self._max_entries and key not in self._store:
                self._evict_locked(now)
            self._store[key] = _CacheEntry(value=value, expires_at=now + self._ttl, created_at=now)

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for k in keys:
                del self._store[k]
        if keys:
            logger.debug("Invalidated %d entitlement cache entries for prefix=%s", len(keys), prefix)
        return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._store)
            self._store.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Entitlement cache cleared: removed %d entries", count)
        return count

    def sweep(self) -> int:
        """Remove all expired entries.  Returns count removed."""
        now = time.monotonic()
        with self._lock:
            expired = [k for k, v in self._store.items() if now >= v.expires_at]
            for k in expired:
                del self._store[k]
        if expired:
            logger.debug("Entitlement cache sweep removed %d expired entries", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start_sweeper(self) -> None:
        """Start a daemon thread that sweeps expired entries at regular intervals."""
        if self._sweep_thread is not None or not self._enabled:
            return

        self._stop_event.clear()

        def _run() -> None:
            while not self._stop_event.wait(self._sweep_interval):
                self.sweep()

        self._sweep_thread = threading.Thread(target=_run, name="entitlement-cache-sweep", daemon=True)
        self._sweep_thread.start()
        logger.info(
            "Entitlement cache sweeper started (ttl=%.0fs interval=%.0fs)",
            self._ttl,
            self._sweep_interval,
        )

    def stop_sweeper(self) -> None:
        """Stop the background sweep thread."""
        self._stop_event.set()
        if self._sweep_thread is not None:
            self._sweep_thread.join(timeout=5.0)
            self._sweep_thread = None

    @property
    def sweeper_running(self) -> bool:
        return self._sweep_thread is not None and self._sweep_thread.is_alive()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def stats(self) -> dict[str, Any]:
        """Return cache hit/miss statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._store),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
                "max_entries": self._max_entries,
                "enabled": self._enabled,
            }

    @property
    def size(self) -> int:
        """Number of entries currently in the cache (including expired)."""
        return len(self._store)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _evict_locked(self, now: float) -> None:
        """Purge expired entries, then the oldest 10% if still full.

        Must be called while holding ``self._lock``.
        """
        expired = [k for k, v in self._store.items() if now >= v.expires_at]
        for k in expired:
            del self._store[k]

        if len(self._store) < self._max_entries:
            return

        evict_count = max(1, self._max_entries // 10)
        oldest = sorted(self._store, key=lambda k: self._store[k].created_at)[:evict_count]
        for k in oldest:
            del self._store[k]
        logger.debug("Evicted %d expired + %d oldest entitlement cache entries", len(expired), len(oldest))
