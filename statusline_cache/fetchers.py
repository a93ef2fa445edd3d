"""External fetchers: slow commands whose JSON output gets cached.

The coordinator only needs a zero-argument fetch(); CommandFetcher runs a
command under its own subprocess timeout so a hung child gets killed rather
than orphaned.
"""
import json
import logging
import os
import shutil
import subprocess
from datetime import datetime, timezone

from statusline_cache.errors import FetchFailure, FetchTimeout

logger = logging.getLogger(__name__)

# bun/node installed via common managers are not on PATH for hook processes
EXTRA_PATHS = ("~/.bun/bin", "~/.local/bin", "~/.nvm/current/bin", "/usr/local/bin")


def extend_path(env=None):
    env = os.environ if env is None else env
    for p in EXTRA_PATHS:
        expanded = os.path.expanduser(p)
        if expanded not in env.get("PATH", "").split(os.pathsep):
            env["PATH"] = expanded + os.pathsep + env.get("PATH", "")
    return env


class CommandFetcher:
    """Run argv, parse stdout as JSON."""

    def __init__(self, argv, timeout_s, env=None):
        if not argv:
            raise ValueError("CommandFetcher needs a non-empty argv")
        self.argv = list(argv)
        self.timeout_s = timeout_s
        self.env = env

    def fetch(self):
        logger.debug("Running: %s", " ".join(self.argv))
        try:
            r = subprocess.run(self.argv, capture_output=True, text=True,
                               timeout=self.timeout_s, env=self.env)
        except subprocess.TimeoutExpired as e:
            raise FetchTimeout(f"{self.argv[0]} timed out after {self.timeout_s}s") from e
        except OSError as e:
            raise FetchFailure(f"{self.argv[0]} could not start: {e}") from e

        if r.returncode != 0:
            msg = r.stderr.strip() or f"{self.argv[0]} exited with code {r.returncode}"
            raise FetchFailure(msg)
        if not r.stdout.strip():
            raise FetchFailure(f"{self.argv[0]} printed nothing")
        try:
            return json.loads(r.stdout)
        except json.JSONDecodeError as e:
            raise FetchFailure(f"{self.argv[0]} printed invalid JSON: {e}") from e

    def __repr__(self):
        return f"CommandFetcher({self.argv!r}, timeout_s={self.timeout_s})"


# ═══════════════════════ CCUSAGE ═══════════════════════

def ccusage_command():
    """argv for `ccusage blocks --json --active`, or None if no runner is installed."""
    extend_path()
    if shutil.which("ccusage"):
        cmd = ["ccusage"]
    elif shutil.which("bunx"):
        cmd = ["bunx", "ccusage"]
    elif shutil.which("npx"):
        cmd = ["npx", "-y", "ccusage"]
    else:
        return None
    return cmd + ["blocks", "--json", "--active"]


def _active_block(payload):
    if not isinstance(payload, dict):
        return None
    for block in payload.get("blocks") or []:
        if isinstance(block, dict) and block.get("isActive") is True:
            return block
    return None


def ccusage_looks_empty(payload, now=None):
    """A syntactically fine ccusage reply that carries no billing data.

    No active block, or an active block with zero cost, zero tokens and no
    time left: ccusage answers like that when its own data source failed.
    """
    block = _active_block(payload)
    if block is None:
        return True
    try:
        cost = float(block.get("costUSD") or 0)
        tokens = int(block.get("totalTokens") or 0)
    except (TypeError, ValueError):
        return True
    if cost > 0 or tokens > 0:
        return False

    end = block.get("usageLimitResetTime") or block.get("endTime")
    if not end:
        return True
    try:
        end_dt = datetime.fromisoformat(str(end).replace("Z", "+00:00"))
    except ValueError:
        return True
    if end_dt.tzinfo is None:
        end_dt = end_dt.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (end_dt - now).total_seconds() < 60
