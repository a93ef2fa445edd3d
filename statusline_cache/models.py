"""Shared types: policy, persisted records, coordinator results."""
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Optional

from statusline_cache.errors import CorruptCacheFile, ErrorCode

logger = logging.getLogger(__name__)


def now_ms():
    """Wall-clock epoch milliseconds (comparable across processes)."""
    return int(time.time() * 1000)


# ═══════════════════════ POLICY ═══════════════════════

@dataclass(frozen=True)
class FreshnessPolicy:
    """Per-resource timing knobs. Immutable for the life of the process.

    critical_window_ms only affects status reporting ("critical" vs "stale"),
    never whether a fetch happens.
    """
    fresh_window_ms: int
    cooldown_window_ms: int
    stale_lock_timeout_ms: int
    lock_retry_interval_ms: int
    lock_max_retries: int
    fetch_timeout_ms: int
    critical_window_ms: Optional[int] = None

    def __post_init__(self):
        for name in ("fresh_window_ms", "cooldown_window_ms", "lock_retry_interval_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        for name in ("stale_lock_timeout_ms", "fetch_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")
        if self.lock_max_retries < 1:
            raise ValueError(f"lock_max_retries must be >= 1, got {self.lock_max_retries}")
        if self.critical_window_ms is not None and self.critical_window_ms < self.fresh_window_ms:
            raise ValueError("critical_window_ms must not be shorter than fresh_window_ms")

    def replace(self, **changes):
        return FreshnessPolicy(**{**asdict(self), **changes})


# ═══════════════════════ RECORDS ═══════════════════════

@dataclass(frozen=True)
class LockRecord:
    holder_pid: Optional[int]
    acquired_at_ms: int

    def age_ms(self, now):
        return now - self.acquired_at_ms

    def is_stale(self, now, timeout_ms):
        """Older than timeout_ms, or dated more than timeout_ms in the future."""
        return abs(self.age_ms(now)) >= timeout_ms

    def encode(self):
        return f"{self.holder_pid}\n{self.acquired_at_ms}\n"

    @classmethod
    def decode(cls, text, fallback_ms):
        """Parse lock file text; garbage keeps the file mtime and no pid."""
        parts = text.split()
        try:
            pid = int(parts[0])
            acquired = int(parts[1])
        except (IndexError, ValueError):
            return cls(holder_pid=None, acquired_at_ms=fallback_ms)
        return cls(holder_pid=pid if pid > 0 else None, acquired_at_ms=acquired)


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    holder_pid: Optional[int] = None
    reclaimed: bool = False
    attempts: int = 0


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    fetched_at_ms: int
    success: bool = True

    def to_dict(self):
        return {"payload": self.payload, "fetchedAtMs": self.fetched_at_ms, "success": self.success}

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict) or "payload" not in data:
            raise CorruptCacheFile("cache entry is not an object with a payload")
        ts = data.get("fetchedAtMs")
        # bool is an int subclass; reject it explicitly
        if not isinstance(ts, int) or isinstance(ts, bool):
            raise CorruptCacheFile(f"fetchedAtMs is not an integer: {ts!r}")
        success = data.get("success", True)
        if not isinstance(success, bool):
            raise CorruptCacheFile(f"success is not a boolean: {success!r}")
        return cls(payload=data["payload"], fetched_at_ms=ts, success=success)


# ═══════════════════════ RESULTS ═══════════════════════

class State(str, Enum):
    FRESH_HIT = "fresh_hit"
    FETCHED = "fetched"
    SHARED_HIT = "shared_hit"          # another process committed while we waited
    COOLDOWN_FALLBACK = "cooldown_fallback"
    STALE_FALLBACK = "stale_fallback"
    DEFAULT_FALLBACK = "default_fallback"


class Event(str, Enum):
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_CONTENDED = "lock_contended"
    STALE_LOCK_RECLAIMED = "stale_lock_reclaimed"
    FETCH_SUCCEEDED = "fetch_succeeded"
    FETCH_FAILED = "fetch_failed"
    COOLDOWN_ACTIVE = "cooldown_active"
    CORRUPT_CACHE = "corrupt_cache"
    CACHE_WRITE_FAILED = "cache_write_failed"


EventCallback = Callable[[Event, str], None]


@dataclass(frozen=True)
class FetchResult:
    """What a caller gets back from every coordinator path."""
    payload: Any
    state: State
    stale: bool
    fetched_at_ms: Optional[int] = None
    reason: Optional[ErrorCode] = None

    @property
    def fresh(self):
        return not self.stale

    @property
    def is_default(self):
        return self.state is State.DEFAULT_FALLBACK or (
            self.state is State.COOLDOWN_FALLBACK and self.fetched_at_ms is None)


def emit(callback, event, resource_id):
    """Deliver a telemetry event; a broken listener never breaks a caller."""
    if callback is None:
        return
    try:
        callback(event, resource_id)
    except Exception as e:
        logger.warning("Event listener failed for %s/%s: %s", event.value, resource_id, e)
