"""End-to-end tests for the statusline-cache command line."""

import json
import logging
import shutil
import sys
import tempfile
from pathlib import Path

from statusline_cache.cli import EXIT_USAGE, fmt_age, main


class TestFmtAge:
    def test_units(self):
        assert fmt_age(45_000) == "45s"
        assert fmt_age(12 * 60_000) == "12m"
        assert fmt_age(3 * 3_600_000 + 5 * 60_000) == "3h05m"
        assert fmt_age(-5) == "0s"


class TestCommands:
    def setup_method(self):
        self.dir = Path(tempfile.mkdtemp())
        self.cache = self.dir / "cache"
        ok = self.dir / "ok.py"
        ok.write_text("print('{\"a\": 1}')\n")
        bad = self.dir / "bad.py"
        bad.write_text("import sys\nsys.exit(1)\n")
        self.config = self.dir / "statusline.toml"
        self.config.write_text(
            "[resources.good]\n"
            f"command = [{json.dumps(sys.executable)}, {json.dumps(str(ok))}]\n"
            "[resources.broken]\n"
            f"command = [{json.dumps(sys.executable)}, {json.dumps(str(bad))}]\n"
        )

    def teardown_method(self):
        logging.getLogger("statusline_cache").handlers.clear()
        shutil.rmtree(self.dir, ignore_errors=True)

    def run(self, *args):
        return main(["--config", str(self.config), "--cache-dir", str(self.cache), *args])

    def test_get_prints_payload(self, capsys):
        assert self.run("get", "good") == 0
        assert capsys.readouterr().out.strip() == '{"a":1}'
        assert (self.cache / "good.cache").exists()

    def test_get_failure_prints_null_and_cools_down(self, capsys):
        assert self.run("get", "broken") == 0
        assert capsys.readouterr().out.strip() == "null"
        assert (self.cache / "broken.cooldown").exists()

    def test_get_unknown_resource(self, capsys):
        assert self.run("get", "weather") == EXIT_USAGE
        assert "weather" in capsys.readouterr().err

    def test_refresh_exit_codes(self, capsys):
        assert self.run("refresh", "good") == 0
        assert self.run("refresh", "broken") == 1
        capsys.readouterr()
        assert self.run("refresh", "broken") == 1
        assert "broken: cooldown_fallback (COOLDOWN)" in capsys.readouterr().err
        assert self.run("refresh", "broken", "--force") == 1
        assert "broken: default_fallback (FETCH_FAILURE)" in capsys.readouterr().err

    def test_status(self, capsys):
        self.run("get", "good")
        self.run("get", "broken")
        capsys.readouterr()
        assert self.run("status") == 0
        lines = capsys.readouterr().out.splitlines()
        good = next(line for line in lines if "good:" in line)
        broken = next(line for line in lines if "broken:" in line)
        assert "fresh" in good and "unlocked" in good and "no cooldown" in good
        assert "no cache" in broken and "no cooldown" not in broken

    def test_status_without_resources(self, capsys):
        self.config.write_text("")
        assert self.run("status") == 0
        assert "No cached resources." in capsys.readouterr().out

    def test_reset_clears_cooldown(self):
        self.run("get", "broken")
        assert (self.cache / "broken.cooldown").exists()
        assert self.run("reset", "broken") == 0
        assert not (self.cache / "broken.cooldown").exists()

    def test_cleanup(self, capsys):
        assert self.run("cleanup") == 0
        assert capsys.readouterr().out.startswith("Removed 0 temp, 0 lock, 0 cooldown files")

    def test_unsafe_resource_id(self):
        assert self.run("reset", "../etc") == EXIT_USAGE
