"""Single-flight fetch coordination across independent status line processes.

    cache fresh? ──yes──> FRESH_HIT (no lock, no cooldown check)
        │no
    in cooldown? ──yes──> COOLDOWN_FALLBACK
        │no
    acquire lock ──no──> wait once, re-read ──> SHARED_HIT | STALE/DEFAULT_FALLBACK
        │yes
    re-check cache/cooldown ──> SHARED_HIT | COOLDOWN_FALLBACK
        │
    fetch (timeout) + commit, lock held throughout ──> FETCHED | STALE/DEFAULT_FALLBACK

Every path returns a FetchResult. The lock covers the fetch and the cache
write together; releasing it between the two lets a second process start
the same stale-to-fresh transition.
"""
import logging
import math
import os
import signal
import threading
import time

from statusline_cache.errors import EmptyResult, ErrorCode, FetchFailure, FetchTimeout, LockUnavailable
from statusline_cache.freshness import FreshnessTracker, always_valid
from statusline_cache.models import CacheEntry, Event, FetchResult, State, emit, now_ms
from statusline_cache.mutex import FilesystemMutex
from statusline_cache.store import AtomicCacheStore, validate_resource_id

logger = logging.getLogger(__name__)

DETACHED_GRACE_S = 10


def default_looks_empty(payload):
    """Default "returned nothing useful" check."""
    if payload is None:
        return True
    if isinstance(payload, (str, bytes)):
        return not payload.strip()
    if isinstance(payload, (dict, list, tuple)):
        return len(payload) == 0
    return False


def call_with_timeout(fn, timeout_s):
    """Run fn() in a daemon thread; FetchTimeout if it overruns.

    A hung fn keeps running in its thread but no longer holds anything up:
    the caller moves on, and the thread dies with the process.
    """
    box = {}

    def target():
        try:
            box["value"] = fn()
        except BaseException as e:
            box["error"] = e

    t = threading.Thread(target=target, name="statusline-fetch", daemon=True)
    t.start()
    t.join(timeout_s)
    if t.is_alive():
        raise FetchTimeout(f"fetch exceeded {timeout_s:.1f}s")
    if "error" in box:
        err = box["error"]
        if isinstance(err, FetchFailure):
            raise err
        raise FetchFailure(f"{type(err).__name__}: {err}") from err
    return box.get("value")


class SharedFetchCoordinator:
    def __init__(self, resource_id, fetcher, policy, cache_dir, default=None,
                 is_valid=None, looks_empty=None, on_event=None,
                 clock=now_ms, sleep=time.sleep):
        self.resource_id = validate_resource_id(resource_id)
        self.fetch = getattr(fetcher, "fetch", fetcher)
        self.policy = policy
        self.default = default
        self.is_valid = is_valid or always_valid
        self.looks_empty = looks_empty or default_looks_empty
        self.on_event = on_event
        self.clock = clock
        self.sleep = sleep
        self.store = AtomicCacheStore(cache_dir, on_event=on_event)
        self.mutex = FilesystemMutex(cache_dir, clock=clock, sleep=sleep, on_event=on_event)
        self.tracker = FreshnessTracker(cache_dir, clock=clock)

    # ═══════════════════════ PUBLIC ═══════════════════════

    def get(self, background=False):
        """Best available value for the resource. Never raises.

        background: with a stale entry on disk, return it at once and leave
        the refresh to a detached child process.
        """
        entry = None
        try:
            entry = self.store.read(self.resource_id)
            if self._usable(entry):
                return self._result(entry, State.FRESH_HIT)

            if not self.tracker.should_attempt_fetch(self.resource_id, self.policy):
                logger.debug("%s cooling down, serving last known value", self.resource_id)
                emit(self.on_event, Event.COOLDOWN_ACTIVE, self.resource_id)
                return self._fallback(entry, ErrorCode.COOLDOWN, State.COOLDOWN_FALLBACK)

            if background and entry is not None:
                self.refresh_detached()
                return self._fallback(entry, None)

            return self._fetch_or_wait(entry, recheck=True)
        except Exception:
            logger.exception("Unexpected error coordinating %s", self.resource_id)
            return self._fallback(entry, ErrorCode.FETCH_FAILURE)

    def refresh(self, ignore_cooldown=False):
        """Fetch now, skipping the freshness short-circuit. Never raises."""
        entry = None
        try:
            entry = self.store.read(self.resource_id)
            if not ignore_cooldown and not self.tracker.should_attempt_fetch(self.resource_id, self.policy):
                return self._fallback(entry, ErrorCode.COOLDOWN, State.COOLDOWN_FALLBACK)
            return self._fetch_or_wait(entry, recheck=False)
        except Exception:
            logger.exception("Unexpected error refreshing %s", self.resource_id)
            return self._fallback(entry, ErrorCode.FETCH_FAILURE)

    def refresh_detached(self, grace_s=DETACHED_GRACE_S):
        """Fork a session-detached child that runs refresh() under a hard alarm.

        Returns the child pid to the parent (None if fork failed). The child
        takes the lock itself and never returns.
        """
        try:
            pid = os.fork()
        except OSError as e:
            logger.warning("Could not fork background refresh for %s: %s", self.resource_id, e)
            return None
        if pid:
            logger.debug("Background refresh of %s in pid %d", self.resource_id, pid)
            return pid
        # child
        try:
            os.setsid()
            # SIGALRM's default action kills us even if the fetch thread hangs
            signal.alarm(math.ceil(self.policy.fetch_timeout_ms / 1000.0) + grace_s)
            self.refresh()
        except BaseException:
            logger.exception("Background refresh of %s crashed", self.resource_id)
        finally:
            os._exit(0)

    # ═══════════════════════ INTERNALS ═══════════════════════

    def _usable(self, entry):
        if entry is None or not entry.success:
            return False
        if not self.tracker.is_fresh(entry.fetched_at_ms, self.policy):
            return False
        try:
            return bool(self.is_valid(entry))
        except Exception as e:
            logger.warning("Invalidation check for %s failed, treating as stale: %s",
                           self.resource_id, e)
            return False

    def _fetch_or_wait(self, prior, recheck):
        try:
            with self.mutex.held(self.resource_id, self.policy):
                current = self.store.read(self.resource_id) or prior
                if recheck:
                    # someone may have committed or failed while we queued
                    if self._usable(current):
                        return self._result(current, State.SHARED_HIT)
                    if not self.tracker.should_attempt_fetch(self.resource_id, self.policy):
                        return self._fallback(current, ErrorCode.COOLDOWN, State.COOLDOWN_FALLBACK)
                return self._fetch_and_commit(current)
        except LockUnavailable as e:
            logger.debug("%s; waiting once for the holder", e)

        self.sleep(self.policy.lock_retry_interval_ms / 1000.0)
        current = self.store.read(self.resource_id)
        if self._usable(current):
            return self._result(current, State.SHARED_HIT)
        return self._fallback(current or prior, ErrorCode.LOCK_UNAVAILABLE)

    def _fetch_and_commit(self, prior):
        """Caller holds the lock."""
        started = self.clock()
        try:
            payload = call_with_timeout(self.fetch, self.policy.fetch_timeout_ms / 1000.0)
            if self._looks_empty(payload):
                raise EmptyResult("fetch returned an empty-looking payload")
        except FetchFailure as e:
            logger.warning("Fetch for %s failed after %dms: %s", self.resource_id,
                           self.clock() - started, e)
            self.tracker.record_failure(self.resource_id, e.code.value)
            emit(self.on_event, Event.FETCH_FAILED, self.resource_id)
            return self._fallback(prior, e.code)

        entry = CacheEntry(payload=payload, fetched_at_ms=self.clock(), success=True)
        try:
            self.store.write(self.resource_id, entry)
        except (OSError, TypeError, ValueError) as e:
            # nothing committed: cool down as after a failed fetch
            logger.warning("Could not commit %s to cache: %s", self.resource_id, e)
            emit(self.on_event, Event.CACHE_WRITE_FAILED, self.resource_id)
            self.tracker.record_failure(self.resource_id, ErrorCode.CACHE_WRITE_FAILED.value)
        else:
            self.tracker.record_success(self.resource_id)
        logger.debug("Fetched %s in %dms", self.resource_id, entry.fetched_at_ms - started)
        emit(self.on_event, Event.FETCH_SUCCEEDED, self.resource_id)
        return self._result(entry, State.FETCHED)

    def _looks_empty(self, payload):
        try:
            return bool(self.looks_empty(payload))
        except Exception as e:
            logger.warning("Empty-payload check for %s failed: %s", self.resource_id, e)
            return True

    def _result(self, entry, state):
        return FetchResult(payload=entry.payload, state=state, stale=False,
                           fetched_at_ms=entry.fetched_at_ms)

    def _fallback(self, entry, reason, state=None):
        if entry is not None:
            return FetchResult(payload=entry.payload, state=state or State.STALE_FALLBACK,
                               stale=True, fetched_at_ms=entry.fetched_at_ms, reason=reason)
        return FetchResult(payload=self._default(), state=state or State.DEFAULT_FALLBACK,
                           stale=True, reason=reason)

    def _default(self):
        if not callable(self.default):
            return self.default
        try:
            return self.default()
        except Exception as e:
            logger.warning("Default factory for %s failed: %s", self.resource_id, e)
            return None
