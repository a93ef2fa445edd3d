"""statusline-cache command line.

  statusline-cache get billing            cached payload as JSON (fetch if stale)
  statusline-cache get billing --background
  statusline-cache refresh billing [--force]
  statusline-cache status [RESOURCE ...]
  statusline-cache reset billing          clear the failure cooldown
  statusline-cache cleanup

stdout carries only the payload; everything else goes to stderr.
"""
import argparse
import json
import sys
from pathlib import Path

from statusline_cache.cleanup import sweep
from statusline_cache.config import load_config, setup_logging
from statusline_cache.coordinator import SharedFetchCoordinator
from statusline_cache.errors import ConfigError
from statusline_cache.fetchers import CommandFetcher, ccusage_looks_empty
from statusline_cache.freshness import FreshnessTracker
from statusline_cache.mutex import FilesystemMutex, is_alive
from statusline_cache.store import AtomicCacheStore, CACHE_SUFFIX, ensure_private_dir

EXIT_USAGE = 2


def fmt_age(ms):
    """Format a duration: 45s, 12m, 3h05m."""
    s = max(0, int(ms)) // 1000
    if s < 60:
        return f"{s}s"
    h, m = s // 3600, s % 3600 // 60
    return f"{h}h{m:02d}m" if h else f"{m}m"


def build_coordinator(cfg, name):
    res = cfg.resource(name)
    fetcher = CommandFetcher(res.command, timeout_s=res.policy.fetch_timeout_ms / 1000.0)
    looks_empty = ccusage_looks_empty if name == "billing" else None
    return SharedFetchCoordinator(name, fetcher, res.policy, cfg.cache_dir, looks_empty=looks_empty)


def cmd_get(cfg, args):
    coord = build_coordinator(cfg, args.resource)
    result = coord.get(background=args.background)
    print(json.dumps(result.payload, separators=(",", ":")))
    if args.verbose:
        print(f"{args.resource}: {result.state.value}"
              + (f" ({result.reason.value})" if result.reason else ""), file=sys.stderr)
    return 0


def cmd_refresh(cfg, args):
    coord = build_coordinator(cfg, args.resource)
    result = coord.refresh(ignore_cooldown=args.force)
    print(json.dumps(result.payload, separators=(",", ":")))
    print(f"{args.resource}: {result.state.value}"
          + (f" ({result.reason.value})" if result.reason else ""), file=sys.stderr)
    return 0 if result.fresh else 1


def _known_resources(cfg):
    names = set(cfg.resources)
    if cfg.cache_dir.is_dir():
        names.update(p.name[:-len(CACHE_SUFFIX)] for p in cfg.cache_dir.glob(f"*{CACHE_SUFFIX}"))
    return sorted(names)


def cmd_status(cfg, args):
    names = args.resources or _known_resources(cfg)
    if not names:
        print("No cached resources.")
        return 0

    store = AtomicCacheStore(cfg.cache_dir)
    mutex = FilesystemMutex(cfg.cache_dir)
    tracker = FreshnessTracker(cfg.cache_dir)
    now = tracker.clock()
    for name in names:
        policy = cfg.policy(name)
        try:
            entry = store.read(name)
        except ValueError as e:
            print(f"  {name}: {e}")
            continue
        if entry is None:
            cache = "no cache"
        else:
            cache = f"{tracker.status(entry.fetched_at_ms, policy, now)} ({fmt_age(now - entry.fetched_at_ms)} old)"

        lock = mutex.holder(name)
        if lock is None:
            lock_part = "unlocked"
        else:
            state = {True: "alive", False: "dead", None: "unknown"}[is_alive(lock.holder_pid)]
            lock_part = f"locked by {lock.holder_pid} ({state}, {fmt_age(lock.age_ms(now))})"

        remaining = tracker.cooldown_remaining_ms(name, policy)
        cool = f"cooldown {fmt_age(remaining)}" if remaining else "no cooldown"
        print(f"  {name}: {cache} | {lock_part} | {cool}")
    return 0


def cmd_reset(cfg, args):
    FreshnessTracker(cfg.cache_dir).record_success(args.resource)
    print(f"{args.resource}: cooldown cleared", file=sys.stderr)
    return 0


def cmd_cleanup(cfg, args):
    stats = sweep(cfg.cache_dir, cfg.policy(""))
    print(f"Removed {stats.temp_files} temp, {stats.locks} lock, {stats.cooldowns} cooldown files"
          f" ({stats.bytes_freed} bytes)")
    return 0


def build_parser():
    p = argparse.ArgumentParser(prog="statusline-cache",
                                description="Shared single-flight cache for status line data.")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    p.add_argument("--config", help="TOML config (default ~/.claude/statusline.toml)")
    p.add_argument("--cache-dir", help="override the cache directory")
    sub = p.add_subparsers(dest="command", required=True)

    g = sub.add_parser("get", help="print the cached payload, fetching if stale")
    g.add_argument("resource")
    g.add_argument("--background", action="store_true",
                   help="serve stale data now and refresh in a detached process")
    g.set_defaults(func=cmd_get)

    r = sub.add_parser("refresh", help="fetch now, ignoring freshness")
    r.add_argument("resource")
    r.add_argument("--force", action="store_true", help="ignore the failure cooldown too")
    r.set_defaults(func=cmd_refresh)

    s = sub.add_parser("status", help="cache age, lock holder and cooldown per resource")
    s.add_argument("resources", nargs="*")
    s.set_defaults(func=cmd_status)

    x = sub.add_parser("reset", help="clear a resource's failure cooldown")
    x.add_argument("resource")
    x.set_defaults(func=cmd_reset)

    c = sub.add_parser("cleanup", help="remove orphaned temp files, dead locks, expired cooldowns")
    c.set_defaults(func=cmd_cleanup)
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    if args.cache_dir:
        cfg.cache_dir = Path(args.cache_dir).expanduser()
    setup_logging(cfg.log_level, cfg.log_file, verbose=args.verbose)

    try:
        ensure_private_dir(cfg.cache_dir)
        return args.func(cfg, args)
    except (ConfigError, ValueError) as e:
        print(f"statusline-cache: {e}", file=sys.stderr)
        return EXIT_USAGE
    except OSError as e:
        print(f"statusline-cache: {e}", file=sys.stderr)
        return 1
