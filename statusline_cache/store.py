"""Atomic per-resource cache files.

Layout, one set per resource under a private directory:
  <resource>.cache     JSON {"payload", "fetchedAtMs", "success"}
  <resource>.lock      holder pid + acquisition epoch-ms (see mutex.py)
  <resource>.cooldown  last failure marker (see freshness.py)

Writes go to a uniquely named temp file in the same directory and are
renamed over the target, so a reader sees the previous complete entry or the
new complete entry and nothing in between. Concurrent writers race on the
rename; last one wins.
"""
import json
import logging
import os
import re
import tempfile
from pathlib import Path

from statusline_cache.errors import CorruptCacheFile
from statusline_cache.models import CacheEntry, Event, emit

logger = logging.getLogger(__name__)

CACHE_SUFFIX = ".cache"
LOCK_SUFFIX = ".lock"
COOLDOWN_SUFFIX = ".cooldown"
TMP_SUFFIX = ".tmp"

_RESOURCE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def validate_resource_id(resource_id):
    """Reject ids that could escape the cache dir or collide with temp files."""
    if not isinstance(resource_id, str) or not _RESOURCE_RE.match(resource_id) \
            or resource_id.endswith(TMP_SUFFIX):
        raise ValueError(f"Invalid resource id {resource_id!r}")
    return resource_id


def path_for(cache_dir, resource_id, suffix):
    return Path(cache_dir) / f"{validate_resource_id(resource_id)}{suffix}"


def ensure_private_dir(path):
    """Create *path* owner-only (0700). Tightens an existing dir we own."""
    path = Path(path)
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    try:
        st = path.stat()
        if st.st_uid == os.getuid() and st.st_mode & 0o077:
            path.chmod(0o700)
    except OSError as e:
        logger.debug("Could not tighten permissions on %s: %s", path, e)
    return path


def atomic_write_text(path, content):
    """Write *content* to *path* via a sibling mkstemp file + os.replace.

    mkstemp gives every writer its own temp name, so two writers never
    interleave bytes in one file. Raises OSError on failure.
    """
    path = Path(path)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=TMP_SUFFIX)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class AtomicCacheStore:
    def __init__(self, cache_dir, on_event=None):
        self.cache_dir = Path(cache_dir)
        self.on_event = on_event

    def path(self, resource_id):
        return path_for(self.cache_dir, resource_id, CACHE_SUFFIX)

    def read(self, resource_id):
        """Return the stored CacheEntry, or None when missing or unreadable."""
        path = self.path(resource_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Unreadable cache file %s: %s", path, e)
            self._corrupt(resource_id)
            return None
        try:
            return self._decode(raw)
        except CorruptCacheFile as e:
            logger.warning("Ignoring corrupt cache file %s: %s", path, e)
            self._corrupt(resource_id)
            return None

    def write(self, resource_id, entry):
        """Replace the whole entry atomically. Raises on serialization or I/O errors."""
        content = json.dumps(entry.to_dict(), separators=(",", ":"))
        ensure_private_dir(self.cache_dir)
        atomic_write_text(self.path(resource_id), content)
        logger.debug("Committed %s (fetchedAtMs=%d)", resource_id, entry.fetched_at_ms)

    @staticmethod
    def _decode(raw):
        if not raw.strip():
            raise CorruptCacheFile("empty file")
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CorruptCacheFile(f"invalid JSON: {e}") from e
        return CacheEntry.from_dict(data)

    def _corrupt(self, resource_id):
        emit(self.on_event, Event.CORRUPT_CACHE, resource_id)
