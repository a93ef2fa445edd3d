"""AtomicCacheStore: tolerant reads, rename-only writes."""

import json
import os
import shutil
import stat
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from statusline_cache.models import CacheEntry, Event
from statusline_cache.store import AtomicCacheStore, atomic_write_text, ensure_private_dir, path_for


class TestReadWrite:
    def setup_method(self):
        self.dir = Path(tempfile.mkdtemp())
        self.events = []
        self.store = AtomicCacheStore(self.dir, on_event=lambda e, r: self.events.append((e, r)))

    def teardown_method(self):
        shutil.rmtree(self.dir, ignore_errors=True)

    def test_missing_is_none(self):
        assert self.store.read("billing") is None
        assert self.events == []

    def test_write_then_read(self):
        entry = CacheEntry(payload={"costUSD": 12.5}, fetched_at_ms=1_700_000_000_000)
        self.store.write("billing", entry)
        assert self.store.read("billing") == entry

    def test_on_disk_format(self):
        self.store.write("billing", CacheEntry(payload=[1, 2], fetched_at_ms=42, success=True))
        data = json.loads((self.dir / "billing.cache").read_text())
        assert data == {"payload": [1, 2], "fetchedAtMs": 42, "success": True}

    def test_replaces_whole_entry(self):
        self.store.write("billing", CacheEntry(payload={"a": 1, "b": 2}, fetched_at_ms=1))
        self.store.write("billing", CacheEntry(payload={"c": 3}, fetched_at_ms=2))
        assert self.store.read("billing").payload == {"c": 3}

    def test_no_temp_files_left(self):
        for i in range(5):
            self.store.write("billing", CacheEntry(payload=i, fetched_at_ms=i + 1))
        assert sorted(p.name for p in self.dir.iterdir()) == ["billing.cache"]

    def test_invalid_json_is_none(self):
        (self.dir / "billing.cache").write_text('{"payload": {"cost')
        assert self.store.read("billing") is None
        assert self.events == [(Event.CORRUPT_CACHE, "billing")]

    def test_empty_file_is_none(self):
        (self.dir / "billing.cache").write_text("")
        assert self.store.read("billing") is None

    def test_wrong_shape_is_none(self):
        (self.dir / "billing.cache").write_text(json.dumps([1, 2, 3]))
        assert self.store.read("billing") is None

    def test_bad_timestamp_is_none(self):
        (self.dir / "billing.cache").write_text(json.dumps({"payload": 1, "fetchedAtMs": "yesterday"}))
        assert self.store.read("billing") is None
        (self.dir / "billing.cache").write_text(json.dumps({"payload": 1, "fetchedAtMs": True}))
        assert self.store.read("billing") is None

    def test_binary_garbage_is_none(self):
        (self.dir / "billing.cache").write_bytes(b"\xff\xfe\x00garbage")
        assert self.store.read("billing") is None

    def test_unserializable_payload_raises_and_keeps_old(self):
        self.store.write("billing", CacheEntry(payload="old", fetched_at_ms=1))
        with pytest.raises(TypeError):
            self.store.write("billing", CacheEntry(payload=object(), fetched_at_ms=2))
        assert self.store.read("billing").payload == "old"

    def test_failed_rename_cleans_temp(self):
        with patch("statusline_cache.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                self.store.write("billing", CacheEntry(payload="x", fetched_at_ms=1))
        assert list(self.dir.iterdir()) == []

    def test_file_is_owner_only(self):
        self.store.write("billing", CacheEntry(payload="x", fetched_at_ms=1))
        mode = stat.S_IMODE((self.dir / "billing.cache").stat().st_mode)
        assert mode == 0o600

    def test_creates_missing_dir(self):
        store = AtomicCacheStore(self.dir / "nested" / "cache")
        store.write("billing", CacheEntry(payload="x", fetched_at_ms=1))
        assert store.read("billing").payload == "x"


class TestLayout:
    def test_path_for(self):
        assert path_for("/tmp/c", "billing", ".lock") == Path("/tmp/c/billing.lock")

    @pytest.mark.parametrize("bad", ["", "../etc", "a/b", ".hidden", "-flag", "x.tmp", None])
    def test_rejects_unsafe_ids(self, bad):
        with pytest.raises(ValueError):
            path_for("/tmp/c", bad, ".cache")

    def test_accepts_dotted_ids(self):
        assert path_for("/tmp/c", "billing.oauth_v2", ".cache").name == "billing.oauth_v2.cache"

    def test_private_dir(self):
        base = Path(tempfile.mkdtemp())
        try:
            d = base / "cache"
            d.mkdir(mode=0o755)
            os.chmod(d, 0o755)
            ensure_private_dir(d)
            assert stat.S_IMODE(d.stat().st_mode) == 0o700
        finally:
            shutil.rmtree(base, ignore_errors=True)

    def test_atomic_write_text(self):
        base = Path(tempfile.mkdtemp())
        try:
            target = base / "x.cooldown"
            atomic_write_text(target, "one")
            atomic_write_text(target, "two")
            assert target.read_text() == "two"
            assert [p.name for p in base.iterdir()] == ["x.cooldown"]
        finally:
            shutil.rmtree(base, ignore_errors=True)
