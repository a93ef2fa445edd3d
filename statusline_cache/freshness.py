"""Freshness and failure-cooldown decisions.

is_fresh() is pure timestamp arithmetic. The cooldown lives in a
<resource>.cooldown file because every status line run is a new process; a
cooldown kept in memory would never be seen by the next run.
"""
import json
import logging

from statusline_cache.models import now_ms
from statusline_cache.store import COOLDOWN_SUFFIX, atomic_write_text, ensure_private_dir, path_for

logger = logging.getLogger(__name__)


def always_valid(entry):
    return True


class FreshnessTracker:
    def __init__(self, cache_dir, clock=now_ms):
        self.cache_dir = cache_dir
        self.clock = clock

    # ── freshness ──

    def is_fresh(self, fetched_at_ms, policy, now=None):
        """True while now - fetched_at_ms < fresh_window_ms. The boundary is stale."""
        if not fetched_at_ms or fetched_at_ms <= 0:
            return False
        now = self.clock() if now is None else now
        return now - fetched_at_ms < policy.fresh_window_ms

    def status(self, fetched_at_ms, policy, now=None):
        """fresh / stale / critical / unknown, for display."""
        if not fetched_at_ms or fetched_at_ms <= 0:
            return "unknown"
        now = self.clock() if now is None else now
        if self.is_fresh(fetched_at_ms, policy, now):
            return "fresh"
        if policy.critical_window_ms is not None and now - fetched_at_ms >= policy.critical_window_ms:
            return "critical"
        return "stale"

    # ── cooldown ──

    def path(self, resource_id):
        return path_for(self.cache_dir, resource_id, COOLDOWN_SUFFIX)

    def read_cooldown(self, resource_id):
        """Return {"lastFailureAtMs", "failures", "reason"} or None.

        Unparseable content falls back to the file mtime as the failure time.
        """
        path = self.path(resource_id)
        try:
            raw = path.read_text(encoding="utf-8", errors="replace")
            mtime_ms = int(path.stat().st_mtime * 1000)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Unreadable cooldown file %s: %s", path, e)
            return None
        try:
            data = json.loads(raw)
            ts = data["lastFailureAtMs"]
            if not isinstance(ts, int) or isinstance(ts, bool):
                raise ValueError(f"bad lastFailureAtMs {ts!r}")
        except (ValueError, KeyError, TypeError) as e:
            logger.debug("Cooldown file %s malformed (%s), using mtime", path, e)
            return {"lastFailureAtMs": mtime_ms, "failures": 1, "reason": ""}
        return {
            "lastFailureAtMs": ts,
            "failures": data.get("failures", 1) if isinstance(data.get("failures"), int) else 1,
            "reason": str(data.get("reason", "")),
        }

    def cooldown_remaining_ms(self, resource_id, policy):
        record = self.read_cooldown(resource_id)
        if record is None:
            return 0
        age = self.clock() - record["lastFailureAtMs"]
        return max(0, policy.cooldown_window_ms - age)

    def should_attempt_fetch(self, resource_id, policy):
        """False only while a cooldown record younger than the window exists."""
        return self.cooldown_remaining_ms(resource_id, policy) <= 0

    def record_failure(self, resource_id, reason=""):
        prior = self.read_cooldown(resource_id)
        record = {
            "lastFailureAtMs": self.clock(),
            "failures": (prior["failures"] + 1) if prior else 1,
            "reason": str(reason),
        }
        path = self.path(resource_id)
        try:
            ensure_private_dir(path.parent)
            atomic_write_text(path, json.dumps(record, separators=(",", ":")))
        except OSError as e:
            # fall back to a bare touch; the mtime still carries the failure time
            logger.warning("Could not write cooldown for %s: %s", resource_id, e)
            try:
                path.touch()
            except OSError:
                return
        logger.info("%s in cooldown after failure #%d (%s)", resource_id, record["failures"], reason)

    def record_success(self, resource_id):
        try:
            self.path(resource_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not clear cooldown for %s: %s", resource_id, e)
