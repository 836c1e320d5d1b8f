"""
Paddle Arena headless runner.

Runs a batch of NPC-vs-NPC matches from a preset file through the session
scheduler as fast as the CPU allows and prints one result line per match.

    python main.py scripts/pid_vs_technician.py --sessions 8 --seed 42
    python main.py --list

A preset is a .py file exposing `SCRIPT = {...}`, the same payload that
`POST /sessions` accepts.
"""

import argparse
import importlib.util
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from scheduler import SessionScheduler

logger = logging.getLogger("main")

DEFAULT_MAX_TICKS = 200_000


def collect_script_files(directory: str = "scripts") -> List[Path]:
    """Sorted .py presets in `directory`."""
    scripts_dir = Path(directory)
    if not scripts_dir.is_dir():
        return []
    return sorted(p for p in scripts_dir.glob("*.py") if not p.name.startswith("_"))


def load_script_file(path: str) -> dict:
    """Import a preset file and return its SCRIPT dict."""
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Script not found: {abs_path}")
    spec = importlib.util.spec_from_file_location("_paddle_arena_script", abs_path)
    mod = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(mod)
    except Exception as exc:
        raise ValueError(f"Script error: {exc}") from exc
    script = getattr(mod, "SCRIPT", None)
    if not isinstance(script, dict):
        raise ValueError(f"No SCRIPT dict in {os.path.basename(abs_path)}")
    return script


def run_batch(script: dict, sessions: int, seed: Optional[int], max_ticks: int) -> List[dict]:
    """Play `sessions` matches side by side until each finishes or hits `max_ticks`."""
    scheduler = SessionScheduler()
    ids = []
    for i in range(sessions):
        ids.append(scheduler.create(script, seed=None if seed is None else seed + i))

    ticks = 0
    while ticks < max_ticks and scheduler.tick_all():
        ticks += 1

    results = [scheduler.query(sid) for sid in ids]
    for snap in results:
        if snap["running"]:
            logger.warning("session %s hit the %d tick limit at %s", snap["id"], max_ticks, snap["score"])
    scheduler.stop_all()
    return results


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run NPC matches headless")
    parser.add_argument("script", nargs="?", default="", help="preset .py file exposing SCRIPT")
    parser.add_argument("--sessions", type=int, default=1, help="matches to run in parallel (default 1)")
    parser.add_argument("--seed", type=int, default=None, help="base seed; match i uses seed + i")
    parser.add_argument("--max-ticks", type=int, default=DEFAULT_MAX_TICKS,
                        help=f"tick limit per batch (default {DEFAULT_MAX_TICKS})")
    parser.add_argument("--list", action="store_true", help="list presets in scripts/ and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.list or not args.script:
        for path in collect_script_files():
            print(path)
        return 0

    try:
        script = load_script_file(args.script)
    except (FileNotFoundError, ValueError) as exc:
        print(exc, file=sys.stderr)
        return 2

    results = run_batch(script, max(1, args.sessions), args.seed, args.max_ticks)
    wins = {1: 0, 2: 0}
    for snap in results:
        p1, p2 = snap["paddle1"]["controller"], snap["paddle2"]["controller"]
        print(f"{snap['id'][:8]}  {p1:>10} {snap['score'][0]:>2} - {snap['score'][1]:<2} {p2:<10}"
              f"  winner={snap['winner']}  ticks={snap['tick']}")
        if snap["winner"] in wins:
            wins[snap["winner"]] += 1
    print(f"player 1: {wins[1]}  player 2: {wins[2]}  unfinished: {len(results) - wins[1] - wins[2]}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
