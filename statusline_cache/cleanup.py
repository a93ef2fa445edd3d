"""Sweep leftovers from crashed or killed processes.

Nothing here is needed for correctness (stale locks heal on the next
acquire, expired cooldowns are ignored) but killed writers leave temp files
behind that nobody else removes. Cache files are never touched.
"""
import logging
from dataclasses import dataclass
from pathlib import Path

from statusline_cache.freshness import FreshnessTracker
from statusline_cache.models import LockRecord, now_ms
from statusline_cache.mutex import is_alive
from statusline_cache.store import COOLDOWN_SUFFIX, LOCK_SUFFIX, TMP_SUFFIX

logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    temp_files: int = 0
    locks: int = 0
    cooldowns: int = 0
    bytes_freed: int = 0


def _remove(path, stats, attr):
    try:
        size = path.stat().st_size
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
        return
    setattr(stats, attr, getattr(stats, attr) + 1)
    stats.bytes_freed += size
    logger.info("Removed %s", path.name)


def sweep(cache_dir, policy, clock=now_ms):
    """Remove orphaned temp files, dead stale locks and expired cooldowns."""
    cache_dir = Path(cache_dir)
    stats = SweepStats()
    if not cache_dir.is_dir():
        return stats

    now = clock()
    tracker = FreshnessTracker(cache_dir, clock=clock)
    for path in sorted(cache_dir.iterdir()):
        if not path.is_file():
            continue
        try:
            mtime_ms = int(path.stat().st_mtime * 1000)
        except OSError:
            continue
        name = path.name

        if name.endswith(TMP_SUFFIX):
            if now - mtime_ms >= policy.stale_lock_timeout_ms:
                _remove(path, stats, "temp_files")

        elif name.endswith(LOCK_SUFFIX):
            try:
                record = LockRecord.decode(path.read_text(encoding="utf-8", errors="replace"), mtime_ms)
            except OSError:
                continue
            if record.is_stale(now, policy.stale_lock_timeout_ms) and is_alive(record.holder_pid) is not True:
                _remove(path, stats, "locks")

        elif name.endswith(COOLDOWN_SUFFIX):
            resource_id = name[:-len(COOLDOWN_SUFFIX)]
            try:
                expired = tracker.should_attempt_fetch(resource_id, policy)
            except ValueError:
                continue
            if expired:
                _remove(path, stats, "cooldowns")

    return stats
