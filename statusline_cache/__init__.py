"""Cross-process single-flight cache for status line data.

Many short-lived status line processes share one slow external fetch
through three files per resource: a lock, an atomically replaced cache
entry, and a failure cooldown marker.
"""
from statusline_cache.config import load_config
from statusline_cache.coordinator import SharedFetchCoordinator
from statusline_cache.errors import ErrorCode
from statusline_cache.freshness import FreshnessTracker
from statusline_cache.models import CacheEntry, Event, FetchResult, FreshnessPolicy, State
from statusline_cache.mutex import FilesystemMutex
from statusline_cache.store import AtomicCacheStore

__version__ = "0.3.0"

__all__ = [
    "AtomicCacheStore",
    "CacheEntry",
    "ErrorCode",
    "Event",
    "FetchResult",
    "FilesystemMutex",
    "FreshnessPolicy",
    "FreshnessTracker",
    "SharedFetchCoordinator",
    "State",
    "load_config",
]
