"""Cross-process mutex: one exclusively-created lock file per resource.

The lock file holds the holder's pid and acquisition time. A crashed holder
needs no cleanup: once the record is older than stale_lock_timeout_ms (or is
dated that far in the future) and the pid no longer answers signal 0, the
next acquirer deletes it and takes over.

PID reuse inside the stale window makes a dead holder look alive; that case
waits out the retries like any live holder.

Reclaim re-reads the record before deleting it, but the re-read and the
unlink are not one step. Two processes that judged the same record stale can
still interleave so that one deletes the lock the other just created, and
both then hold it. The window is a few syscalls wide and is not closed.
"""
import errno
import logging
import os
import time
from contextlib import contextmanager

from statusline_cache.errors import LockUnavailable
from statusline_cache.models import Event, LockRecord, LockResult, emit, now_ms
from statusline_cache.store import LOCK_SUFFIX, ensure_private_dir, path_for

logger = logging.getLogger(__name__)


def is_alive(pid):
    """Signal-0 liveness probe. Returns True, False, or None when undecidable."""
    if not pid or pid <= 0:
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    except OSError as e:
        logger.debug("Liveness probe for pid %d failed: %s", pid, e)
        return None
    return True


class FilesystemMutex:
    def __init__(self, cache_dir, clock=now_ms, sleep=time.sleep, on_event=None):
        self.cache_dir = cache_dir
        self.clock = clock
        self.sleep = sleep
        self.on_event = on_event

    def path(self, resource_id):
        return path_for(self.cache_dir, resource_id, LOCK_SUFFIX)

    def holder(self, resource_id):
        """Current LockRecord, or None when unlocked or unreadable."""
        path = self.path(resource_id)
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
            mtime_ms = int(path.stat().st_mtime * 1000)
        except OSError:
            return None
        return LockRecord.decode(text, mtime_ms)

    def acquire(self, resource_id, policy):
        """Try to take the lock; bounded by policy.lock_max_retries attempts.

        Never raises for filesystem trouble: anything unexpected is reported
        as not acquired.
        """
        path = self.path(resource_id)
        try:
            ensure_private_dir(path.parent)
        except OSError as e:
            logger.warning("Cannot create lock dir for %s: %s", resource_id, e)
            return LockResult(acquired=False)

        attempts = 0
        reclaimed = False
        holder_pid = None
        while attempts < policy.lock_max_retries:
            attempts += 1
            try:
                if self._create(path):
                    logger.debug("Acquired %s lock (attempt %d)", resource_id, attempts)
                    emit(self.on_event, Event.LOCK_ACQUIRED, resource_id)
                    return LockResult(acquired=True, holder_pid=os.getpid(),
                                      reclaimed=reclaimed, attempts=attempts)
            except OSError as e:
                logger.warning("Lock create failed for %s: %s", resource_id, e)
                return LockResult(acquired=False, attempts=attempts)

            record = self.holder(resource_id)
            if record is None:
                # released between our create and read; try again at once
                continue
            holder_pid = record.holder_pid

            if not reclaimed \
                    and record.is_stale(self.clock(), policy.stale_lock_timeout_ms):
                alive = is_alive(record.holder_pid)
                if alive is not True and self._reclaim(resource_id, record):
                    reclaimed = True
                    attempts -= 1  # the retry after a reclaim is free
                    continue

            if attempts < policy.lock_max_retries:
                self.sleep(policy.lock_retry_interval_ms / 1000.0)

        logger.debug("Gave up on %s lock after %d attempts (holder pid %s)",
                     resource_id, attempts, holder_pid)
        emit(self.on_event, Event.LOCK_CONTENDED, resource_id)
        return LockResult(acquired=False, holder_pid=holder_pid,
                          reclaimed=reclaimed, attempts=attempts)

    def release(self, resource_id):
        """Delete the lock only if this process is the recorded holder."""
        record = self.holder(resource_id)
        if record is None:
            return False
        if record.holder_pid != os.getpid():
            logger.warning("Not releasing %s lock held by pid %s (we are %d)",
                           resource_id, record.holder_pid, os.getpid())
            return False
        try:
            self.path(resource_id).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not release %s lock: %s", resource_id, e)
            return False
        return True

    @contextmanager
    def held(self, resource_id, policy):
        """Hold the lock for the body; raises LockUnavailable if contended."""
        result = self.acquire(resource_id, policy)
        if not result.acquired:
            raise LockUnavailable(f"{resource_id} locked by pid {result.holder_pid}")
        try:
            yield result
        finally:
            self.release(resource_id)

    def _create(self, path):
        """O_EXCL create. True on success, False if the file already exists."""
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        record = LockRecord(holder_pid=os.getpid(), acquired_at_ms=self.clock())
        try:
            try:
                os.write(fd, record.encode().encode("ascii"))
            finally:
                os.close(fd)
        except OSError:
            path.unlink(missing_ok=True)
            raise
        return True

    def _reclaim(self, resource_id, seen):
        """Delete a stale record, provided it is still the one we judged stale."""
        current = self.holder(resource_id)
        if current != seen:
            return False
        try:
            self.path(resource_id).unlink()
        except OSError as e:
            if e.errno != errno.ENOENT:
                logger.warning("Could not reclaim stale %s lock: %s", resource_id, e)
                return False
        logger.warning("Reclaimed stale %s lock from pid %s (age %dms)",
                       resource_id, seen.holder_pid, seen.age_ms(self.clock()))
        emit(self.on_event, Event.STALE_LOCK_RECLAIMED, resource_id)
        return True
