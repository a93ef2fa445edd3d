"""Configuration: optional TOML file over built-in defaults.

~/.claude/statusline.toml (or $STATUSLINE_CONFIG):

    [cache]
    dir = "~/.claude/statusline-cache"

    [coordination]              # defaults for every resource
    fresh_window_ms = 120000

    [resources.billing]         # per-resource overrides
    command = ["ccusage", "blocks", "--json", "--active"]
    cooldown_window_ms = 600000

    [logging]
    level = "WARNING"
    file = "~/.claude/statusline-cache/statusline.log"

The coordination code itself has no defaults; every policy is built here.
"""
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path

from statusline_cache.errors import ConfigError
from statusline_cache.fetchers import ccusage_command
from statusline_cache.models import FreshnessPolicy

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("~/.claude/statusline.toml")
CACHE_DIR = Path("~/.claude/statusline-cache")
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
LOG_MAX_BYTES = 500_000

# ccusage takes 20-30s; lock timeout leaves room for a slow holder
DEFAULT_POLICY = {
    "fresh_window_ms": 120_000,      # 2 min
    "cooldown_window_ms": 300_000,   # 5 min
    "stale_lock_timeout_ms": 60_000,
    "lock_retry_interval_ms": 500,
    "lock_max_retries": 3,
    "fetch_timeout_ms": 35_000,
    "critical_window_ms": 600_000,   # 10 min
}

POLICY_KEYS = {f.name for f in fields(FreshnessPolicy)}


@dataclass
class ResourceConfig:
    name: str
    policy: FreshnessPolicy
    command: list = field(default_factory=list)


@dataclass
class Config:
    cache_dir: Path
    defaults: dict
    resources: dict
    log_level: str = "WARNING"
    log_file: str = ""

    def policy(self, name):
        if name in self.resources:
            return self.resources[name].policy
        return build_policy(self.defaults, {}, name)

    def resource(self, name):
        """ResourceConfig for *name*; ConfigError when nothing can fetch it."""
        res = self.resources.get(name)
        if res is not None and res.command:
            return res
        if name == "billing":
            cmd = ccusage_command()
            if cmd:
                return ResourceConfig(name=name, policy=self.policy(name), command=cmd)
            raise ConfigError("billing: ccusage not found (bun install -g ccusage)")
        raise ConfigError(f"{name}: no command configured under [resources.{name}]")


def _load_toml(path):
    """Parse *path*; empty dict on any problem. Requires tomllib (3.11+) or tomli."""
    if not path.exists():
        return {}
    try:
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib  # type: ignore
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return {}


def build_policy(defaults, overrides, name=""):
    merged = {**DEFAULT_POLICY, **defaults, **overrides}
    values = {k: v for k, v in merged.items() if k in POLICY_KEYS}
    try:
        return FreshnessPolicy(**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid policy for {name or 'defaults'}: {e}") from e


def load_config(path=None, env=None):
    """Read the TOML config. Invalid sections fall back to defaults with a warning."""
    env = os.environ if env is None else env
    path = Path(path or env.get("STATUSLINE_CONFIG") or CONFIG_PATH).expanduser()
    cfg = _load_toml(path)

    c = cfg.get("cache", {})
    cache_dir = Path(env.get("STATUSLINE_CACHE_DIR") or c.get("dir") or CACHE_DIR).expanduser()

    defaults = {k: v for k, v in cfg.get("coordination", {}).items() if k in POLICY_KEYS}
    try:
        build_policy(defaults, {})
    except ConfigError as e:
        logger.warning("%s; using built-in defaults", e)
        defaults = {}

    resources = {}
    for name, r in (cfg.get("resources") or {}).items():
        if not isinstance(r, dict):
            continue
        command = r.get("command") or []
        if isinstance(command, str):
            command = command.split()
        try:
            policy = build_policy(defaults, {k: v for k, v in r.items() if k in POLICY_KEYS}, name)
        except ConfigError as e:
            logger.warning("%s; using defaults", e)
            policy = build_policy(defaults, {}, name)
        resources[name] = ResourceConfig(name=name, policy=policy, command=list(command))

    lg = cfg.get("logging", {})
    return Config(
        cache_dir=cache_dir,
        defaults=defaults,
        resources=resources,
        log_level=str(lg.get("level", "WARNING")).upper(),
        log_file=str(lg.get("file", "")),
    )


def setup_logging(level="WARNING", log_file="", verbose=False):
    """stderr handler (stdout belongs to the status line), plus optional rotating file."""
    root = logging.getLogger("statusline_cache")
    root.setLevel(logging.DEBUG if verbose else getattr(logging, level, logging.WARNING))
    for h in list(root.handlers):
        root.removeHandler(h)
    stderr = logging.StreamHandler(sys.stderr)
    stderr.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(stderr)
    if log_file:
        try:
            p = Path(log_file).expanduser()
            p.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(p, maxBytes=LOG_MAX_BYTES, backupCount=1)
            fh.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(fh)
        except OSError as e:
            root.warning("Cannot open log file %s: %s", log_file, e)
    return root
