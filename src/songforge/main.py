#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import random
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, NoReturn, Optional

from dotenv import load_dotenv

from songforge.analysis import FfmpegAnalyzer
from songforge.config import ClientConfig, ExtensionConfig, SchedulerConfig, parse_duration
from songforge.errors import Cancelled, CircuitBreakerError, ProviderError
from songforge.interfaces import SessionStore
from songforge.logging_setup import setup_logging
from songforge.providers import get_provider, list_providers
from songforge.scheduler import Scheduler
from songforge.storage import FileSessionStore, SQLiteStore
from songforge.templates import list_types, task_source

log = logging.getLogger("songforge.main")

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_CIRCUIT_BREAKER = 3
EXIT_CANCELLED = 130


# ----------------------------
# basic utils
# ----------------------------

def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def die(msg: str, code: int = EXIT_CONFIG) -> NoReturn:
    eprint(msg)
    raise SystemExit(code)


def _duration_arg(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def default_db_path() -> str:
    return os.environ.get("SONGFORGE_DB", "data/songforge.sqlite")


def install_signal_handlers(cancel: threading.Event) -> Callable[[], None]:
    """
    SIGINT/SIGTERM set the cancel event; a second SIGINT falls back to
    KeyboardInterrupt. Returns a function restoring the previous handlers.
    """

    def _handler(signum: int, _frame: Any) -> None:
        if cancel.is_set() and signum == signal.SIGINT:
            raise KeyboardInterrupt
        log.warning("received signal %d, cancelling (in-flight work is drained)", signum)
        cancel.set()

    previous = {}
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is not None:
            previous[sig] = signal.signal(sig, _handler)

    def restore() -> None:
        for sig, h in previous.items():
            signal.signal(sig, h)

    return restore


def session_store_for(args: argparse.Namespace, store: SQLiteStore) -> SessionStore:
    if args.cookie_file:
        return FileSessionStore(Path(args.cookie_file))
    return store.session_store(args.provider, args.account)


def extension_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "min_duration": args.min_duration,
        "max_duration": args.max_duration,
        "max_extensions": args.max_extensions,
        "min_increment": args.min_increment,
        "end_style": args.end_style,
        "end_lyrics": args.end_lyrics,
        "force_end_style": args.force_end_style,
        "force_end_lyrics": args.force_end_lyrics,
        "intro": args.intro,
        "lyrics_per_fragment": args.lyrics_per_fragment,
        "poll_interval": args.poll_interval,
    }


# ----------------------------
# commands
# ----------------------------

def generate_cmd(args: argparse.Namespace) -> int:
    rng = random.Random(args.seed) if args.seed is not None else random.Random()

    try:
        sched_cfg = SchedulerConfig.from_env(
            concurrency=args.concurrency,
            wait_min=args.wait_min,
            wait_max=args.wait_max if args.wait_max is not None else args.wait_min,
            limit=args.limit,
            timeout=args.timeout,
        )
        client_cfg = ClientConfig.from_env(wait=args.wait, proxy=args.proxy, dump_dir=args.log_dir)
        overrides = extension_overrides(args)
        # Chains of a single generation run side by side only when one song is requested.
        overrides["parallel"] = args.parallel if args.parallel is not None else sched_cfg.limit == 1
        ext_cfg = ExtensionConfig.from_env(args.provider, **overrides)

        lyrics = (args.lyrics or "").replace("\\n", "\n").splitlines()
        tasks = task_source(
            input_path=args.input,
            type_=args.type or "",
            prompt=args.prompt or "",
            style=args.style or "",
            title=args.title or "",
            lyrics=lyrics,
            manual=args.manual,
            instrumental=args.instrumental,
            rng=rng,
        )
    except (ValueError, OSError) as e:
        die(f"[songforge] invalid configuration: {e}")

    store = SQLiteStore(Path(args.db), provider=args.provider, account=args.account)
    store.init()

    analyzer: Optional[FfmpegAnalyzer] = None
    if not args.no_analysis and args.provider != "stub":
        analyzer = FfmpegAnalyzer(ffmpeg=args.ffmpeg, session=None, timeout=client_cfg.timeout)
        try:
            analyzer.check()
        except ProviderError as e:
            die(f"[songforge] {e}")

    try:
        provider = get_provider(
            args.provider,
            session_store=session_store_for(args, store),
            client_config=client_cfg,
            ext_config=ext_cfg,
            analyzer=analyzer,
            rng=rng,
        )
    except ProviderError as e:
        die(f"[songforge] {e}")

    cancel = threading.Event()
    restore_signals = install_signal_handlers(cancel)

    log.info(
        "generate: provider=%s account=%s db=%s concurrency=%d limit=%s parallel=%s",
        args.provider, args.account, args.db, sched_cfg.concurrency, sched_cfg.limit or "none", ext_cfg.parallel,
    )
    try:
        try:
            provider.start(cancel)
        except Cancelled:
            return EXIT_CANCELLED
        except ProviderError as e:
            eprint(f"[songforge] couldn't start {args.provider}: {e}")
            return EXIT_CONFIG

        scheduler = Scheduler(provider, tasks, sink=store, config=sched_cfg, rng=rng)
        try:
            stats = scheduler.run(cancel)
        except Cancelled:
            eprint(f"[songforge] cancelled after {scheduler.stats.iterations} iteration(s)")
            return EXIT_CANCELLED
        except CircuitBreakerError as e:
            eprint(f"[songforge] {e}")
            return EXIT_CIRCUIT_BREAKER

        print(json.dumps({
            "reason": stats.reason,
            "iterations": stats.iterations,
            "succeeded": stats.succeeded,
            "failed": stats.failed,
            "songs": stats.songs,
            "elapsed": round(stats.elapsed, 1),
        }, sort_keys=True))
        return EXIT_OK
    finally:
        restore_signals()
        try:
            provider.stop()
        except ProviderError as e:
            log.warning("couldn't stop %s cleanly: %s", args.provider, e)
        if analyzer is not None:
            analyzer.close()


def songs_list_cmd(args: argparse.Namespace) -> int:
    store = SQLiteStore(Path(args.db))
    store.init()
    rows = store.list_songs(limit=int(args.limit))
    if args.json:
        print(json.dumps(rows, indent=2, sort_keys=True))
        return 0
    if not rows:
        print("(no songs)")
        return 0
    for r in rows:
        print(f"{r['id']}  {float(r.get('duration_sec') or 0):7.1f}s  {r.get('provider') or '-':6}  {r.get('title') or ''}")
    return 0


def songs_show_cmd(args: argparse.Namespace) -> int:
    store = SQLiteStore(Path(args.db))
    store.init()
    song = store.get_song(args.id)
    if song is None:
        die(f"[songforge] song not found: {args.id}", code=1)
    song["fragments"] = store.list_fragments(args.id)
    print(json.dumps(song, indent=2, sort_keys=True))
    return 0


def cookie_set_cmd(args: argparse.Namespace) -> int:
    value = args.value
    if value is None or value == "-":
        value = sys.stdin.read()
    value = (value or "").strip()
    if not value:
        die("[songforge] cookie is empty")
    store = SQLiteStore(Path(args.db))
    store.init()
    store.session_store(args.provider, args.account).set_credential(value)
    eprint(f"[songforge] stored cookie for {args.provider}/{args.account}")
    return 0


def types_cmd(args: argparse.Namespace) -> int:
    for t in list_types():
        print(t)
    return 0


# ----------------------------
# parser
# ----------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="songforge", description="AI music generation orchestrator")
    p.add_argument("--env", default=".env", help="Path to .env (default: .env)")
    p.add_argument("--log-level", default=os.environ.get("SONGFORGE_LOG_LEVEL", "INFO"))
    p.add_argument("--log-dir", default=os.environ.get("SONGFORGE_LOG_DIR", "logs"), help="Log and debug dump directory")
    p.add_argument("--db", default=default_db_path(), help="SQLite database path")

    sub = p.add_subparsers(dest="cmd", required=True)

    # generate
    g = sub.add_parser("generate", help="Generate songs until the limit or timeout")
    g.add_argument("--provider", default=os.environ.get("SONGFORGE_PROVIDER", "stub"), choices=list_providers())
    g.add_argument("--account", default=os.environ.get("SONGFORGE_ACCOUNT", "default"))
    g.add_argument("--cookie-file", default=None, help="Read/write the session cookie from this file instead of the db")

    gt = g.add_argument_group("tasks")
    gt.add_argument("--input", default=None, help="Weighted task templates (.json or .csv)")
    gt.add_argument("--type", default=None, help="Built-in template type")
    gt.add_argument("--prompt", default=None)
    gt.add_argument("--style", default=None)
    gt.add_argument("--title", default=None)
    gt.add_argument("--lyrics", default=None, help="Lyric lines (newline or \\n separated)")
    gt.add_argument("--manual", action="store_true", help="Send prompt/lyrics as-is")
    gt.add_argument("--instrumental", action="store_true")

    gs = g.add_argument_group("scheduling")
    gs.add_argument("--concurrency", type=int, default=None)
    gs.add_argument("--wait-min", type=_duration_arg, default=None)
    gs.add_argument("--wait-max", type=_duration_arg, default=None)
    gs.add_argument("--limit", type=int, default=None, help="Stop after this many generations (0 = no limit)")
    gs.add_argument("--timeout", type=_duration_arg, default=None, help="Soft deadline for the whole run")
    gs.add_argument("--seed", type=int, default=None, help="Seed for template and candidate choices")

    ge = g.add_argument_group("extension")
    ge.add_argument("--min-duration", type=_duration_arg, default=None)
    ge.add_argument("--max-duration", type=_duration_arg, default=None)
    ge.add_argument("--max-extensions", type=int, default=None)
    ge.add_argument("--min-increment", type=_duration_arg, default=None)
    ge.add_argument("--end-style", default=None)
    ge.add_argument("--end-lyrics", default=None)
    ge.add_argument("--force-end-style", default=None)
    ge.add_argument("--force-end-lyrics", default=None)
    ge.add_argument("--intro", action="store_const", const=True, default=None, help="Finish chains with an intro (udio)")
    ge.add_argument("--lyrics-per-fragment", type=int, default=None)
    ge.add_argument("--poll-interval", type=_duration_arg, default=None)
    ge.add_argument("--parallel", dest="parallel", action="store_const", const=True, default=None)
    ge.add_argument("--sequential", dest="parallel", action="store_const", const=False)

    gn = g.add_argument_group("network")
    gn.add_argument("--wait", type=_duration_arg, default=None, help="Minimum interval between requests")
    gn.add_argument("--proxy", default=None)
    gn.add_argument("--no-analysis", action="store_true", help="Skip ffmpeg audio analysis")
    gn.add_argument("--ffmpeg", default=os.environ.get("SONGFORGE_FFMPEG", "ffmpeg"))
    gn.add_argument("--debug", action="store_true", help="Log request/response bodies")
    g.set_defaults(func=generate_cmd)

    # songs
    sg = sub.add_parser("songs", help="Generated songs")
    sgs = sg.add_subparsers(dest="songs_cmd", required=True)

    sl = sgs.add_parser("list", help="List songs")
    sl.add_argument("--limit", type=int, default=20)
    sl.add_argument("--json", action="store_true")
    sl.set_defaults(func=songs_list_cmd)

    ss = sgs.add_parser("show", help="Show a song and its fragments")
    ss.add_argument("id")
    ss.set_defaults(func=songs_show_cmd)

    # cookie
    cg = sub.add_parser("cookie", help="Session cookies")
    cgs = cg.add_subparsers(dest="cookie_cmd", required=True)

    cs = cgs.add_parser("set", help="Store the raw cookie string for a provider account")
    cs.add_argument("--provider", required=True, choices=[n for n in list_providers() if n != "stub"])
    cs.add_argument("--account", default="default")
    cs.add_argument("--value", default=None, help="Cookie string (default: read stdin)")
    cs.set_defaults(func=cookie_set_cmd)

    # types
    tg = sub.add_parser("types", help="List built-in template types")
    tg.set_defaults(func=types_cmd)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(args.env)

    level = logging.DEBUG if getattr(args, "debug", False) else getattr(logging, str(args.log_level).upper(), logging.INFO)
    setup_logging(args.log_dir, level=level)

    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
