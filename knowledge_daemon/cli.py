"""
`knowledge-daemon` command line.

Commands
--------
knowledge-daemon run                                -- start the daemon (blocks)
knowledge-daemon learn-commit <hash> [--refresh]    -- learn one commit
knowledge-daemon learn-recent [--count N]           -- learn the N latest commits
knowledge-daemon learn-error "<message>" --solution "<fix>" [--type T] [--tag T ...]
knowledge-daemon find-solution "<message>" [--file PATH] [--limit N]
knowledge-daemon suggest "<message>"                -- built-in table, then store
knowledge-daemon mark <solution_id> --success|--fail
knowledge-daemon sync [full|incremental|bidirectional|import]
knowledge-daemon sync-status
knowledge-daemon patterns [--attention]             -- pattern freshness report
knowledge-daemon commits [--limit N] [--metadata]
knowledge-daemon query "<text>"
knowledge-daemon stats
knowledge-daemon health [--json]
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Optional

from tqdm import tqdm

from .config import Config
from .daemon import KnowledgeDaemon, OperationResult
from .errors import StoreInitError

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s  %(levelname)s  %(name)s  %(message)s"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(cfg: Config, verbose: bool, to_file: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, cfg.LOG_LEVEL, logging.INFO)
    if not logging.root.handlers:
        logging.basicConfig(level=level if to_file else max(level, logging.WARNING),
                            format=_LOG_FORMAT)
    if to_file and cfg.LOG_DIR:
        os.makedirs(cfg.LOG_DIR, exist_ok=True)
        handler = logging.FileHandler(os.path.join(cfg.LOG_DIR, "knowledge-daemon.log"),
                                      encoding="utf-8")
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler.setLevel(level)
        logging.root.addHandler(handler)
        logging.root.setLevel(min(logging.root.level, level))


def _open_daemon(args: argparse.Namespace) -> KnowledgeDaemon:
    cfg = args.cfg
    try:
        return KnowledgeDaemon(cfg)
    except StoreInitError as exc:
        print(f"Cannot start: {exc}", file=sys.stderr)
        sys.exit(1)


def _emit(result: OperationResult, as_json: bool = False) -> None:
    """Print an operation result and exit non-zero on failure."""
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    elif not result.success:
        print(f"Error: {result.reason}", file=sys.stderr)
    if not result.success:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

def _cmd_run(args: argparse.Namespace) -> None:
    daemon = _open_daemon(args)
    daemon.serve_forever()


def _cmd_learn_commit(args: argparse.Namespace) -> None:
    result = _open_daemon(args).learn_commit(args.hash, refresh=args.refresh)
    if result.success and not args.json:
        data = result.data
        print(f"{data['hash'][:12]}  type={data['type'] or '-'}  module={data['module'] or '-'}"
              f"  identity={data['identity'] or '-'}")
        if result.reason:
            print(f"  ({result.reason})")
        if data["error_solution_id"]:
            print(f"  error solution #{data['error_solution_id']}")
        if data["pattern"]:
            print(f"  pattern {data['pattern']}")
        if data["modules"]:
            print(f"  modules: {', '.join(data['modules'])}")
    _emit(result, args.json)


def _cmd_learn_recent(args: argparse.Namespace) -> None:
    daemon = _open_daemon(args)
    with tqdm(total=args.count, unit="commit", desc="Learning",
              disable=args.json) as pbar:
        result = daemon.learn_recent(args.count, progress=lambda _h: pbar.update(1))
    if result.success and not args.json:
        data = result.data
        print(f"Learned {data['learned']}, already known {data['already_known']}, "
              f"skipped {data['skipped']}")
        for err in data["errors"]:
            print(f"  ! {err}")
    _emit(result, args.json)


def _cmd_learn_error(args: argparse.Namespace) -> None:
    payload = {
        "errorMessage": args.message,
        "solution": args.solution,
        "errorType": args.error_type,
        "filePath": args.file,
        "solutionCode": args.code or "",
        "filesChanged": args.files or [],
        "steps": args.step or [],
        "tags": args.tag or [],
    }
    result = _open_daemon(args).learn_error(payload)
    if result.success and not args.json:
        print(f"Stored solution #{result.data['id']}: {result.data['pattern']}")
    _emit(result, args.json)


def _cmd_find_solution(args: argparse.Namespace) -> None:
    payload = {"errorMessage": args.message, "filePath": args.file,
               "errorType": args.error_type, "limit": args.limit}
    result = _open_daemon(args).find_solution(payload)
    if result.success and not args.json:
        solutions = result.data["solutions"]
        if not solutions:
            print("  (no known solution)")
        for sol in solutions:
            print(f"#{sol['id']:<5} score={sol['score']:<7} rate={sol['success_rate']:<6} "
                  f"{sol['solution']}")
            print(f"       pattern: {sol['pattern']}")
    _emit(result, args.json)


def _cmd_suggest(args: argparse.Namespace) -> None:
    result = _open_daemon(args).auto_suggest({"errorMessage": args.message})
    if result.success and not args.json:
        if not result.data["found"]:
            print("  (no suggestion)")
        else:
            s = result.data["suggestion"]
            print(f"[{s['source']}] {s['type']}  confidence={s['confidence']}")
            print(f"  cause    : {s['cause']}")
            print(f"  solution : {s['solution']}")
    _emit(result, args.json)


def _cmd_mark(args: argparse.Namespace) -> None:
    result = _open_daemon(args).mark_outcome(
        {"solutionId": args.solution_id, "succeeded": args.succeeded})
    if result.success and not args.json:
        print(f"Solution #{result.data['id']}: {result.data['success_count']} success / "
              f"{result.data['fail_count']} fail")
    _emit(result, args.json)


def _cmd_sync(args: argparse.Namespace) -> None:
    result = _open_daemon(args).sync(args.kind)
    if result.success and not args.json:
        data = result.data
        print(f"{data['kind']}/{data['direction']} done in {data['duration_ms']} ms, "
              f"graph size {data['graph_size']}")
        for key, value in sorted(data["counts"].items()):
            print(f"  {key:<24}: {value}")
    _emit(result, args.json)


def _cmd_sync_status(args: argparse.Namespace) -> None:
    result = _open_daemon(args).sync_status()
    if result.success and not args.json:
        data = result.data
        print(f"Graph file : {data['graph_path']} "
              f"({data['graph_records']} records{'' if data['graph_exists'] else ', absent'})")
        print(f"Backups    : {data['backups']}")
        last = data["last_sync"]
        if last:
            print(f"Last sync  : {last['synced_at']}  {last['kind']}/{last['direction']} "
                  f"[{last['status']}]")
        else:
            print("Last sync  : never")
    _emit(result, args.json)


def _cmd_patterns(args: argparse.Namespace) -> None:
    daemon = _open_daemon(args)
    if args.attention:
        result = daemon.pattern_attention()
        if result.success and not args.json:
            if not result.data:
                print("  (all patterns current)")
            for p in result.data:
                extra = " (drifted)" if p["differences"] else ""
                print(f"  {p['status']:<8} {p['pattern_name']}{extra}")
    else:
        result = daemon.pattern_status()
        if result.success and not args.json:
            print(result.data["message"])
    _emit(result, args.json)


def _cmd_commits(args: argparse.Namespace) -> None:
    result = _open_daemon(args).recent_commits(args.limit, metadata_only=args.metadata)
    if result.success and not args.json:
        for c in result.data:
            flag = "*" if c["has_metadata_block"] else " "
            print(f"{flag} {c['hash'][:10]}  {c['type'] or '-':<8} {c['module'] or '-':<16} "
                  f"{c['timestamp']}")
    _emit(result, args.json)


def _cmd_query(args: argparse.Namespace) -> None:
    result = _open_daemon(args).query(args.text, args.limit)
    if result.success and not args.json:
        for section, items in result.data.items():
            print(f"\n{section}  [{len(items)} result(s)]")
            print("-" * 60)
            for item in items:
                print("  " + "  ".join(str(v) for v in item.values()))
    _emit(result, args.json)


def _cmd_stats(args: argparse.Namespace) -> None:
    result = _open_daemon(args).stats()
    if result.success and not args.json:
        for key, value in result.data.items():
            print(f"  {key:<18}: {value}")
    _emit(result, args.json)


def _cmd_health(args: argparse.Namespace) -> None:
    from . import health as health_mod

    daemon = _open_daemon(args)
    status = health_mod.check(daemon.store, daemon.engine, daemon.scheduler, daemon.source)
    if args.json:
        print(health_mod.to_json(status))
    else:
        print(health_mod.format_health(status))
    if not status.store_ok:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="knowledge-daemon",
        description="Project knowledge store: commit learning, error solutions, graph sync",
    )
    parser.add_argument("--config", default=None, help="Path to a .knowledge-daemon.yaml file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")

    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    run_p = subparsers.add_parser("run", help="Start the daemon (blocks until SIGINT/SIGTERM)")
    run_p.set_defaults(func=_cmd_run)

    lc_p = subparsers.add_parser("learn-commit", help="Learn a single commit")
    lc_p.add_argument("hash", help="Commit hash")
    lc_p.add_argument("--refresh", action="store_true",
                      help="Re-parse an already learned commit")
    lc_p.set_defaults(func=_cmd_learn_commit)

    lr_p = subparsers.add_parser("learn-recent", help="Learn the most recent commits")
    lr_p.add_argument("--count", type=int, default=20, help="Number of commits (default: 20)")
    lr_p.set_defaults(func=_cmd_learn_recent)

    le_p = subparsers.add_parser("learn-error", help="Store an error and its solution")
    le_p.add_argument("message", help="Raw error message")
    le_p.add_argument("--solution", required=True, help="How the error was fixed")
    le_p.add_argument("--type", dest="error_type", default=None, help="Error type override")
    le_p.add_argument("--file", default=None, help="File where the error occurred")
    le_p.add_argument("--code", default=None, help="Code snippet of the fix")
    le_p.add_argument("--files", nargs="*", default=None, help="Files changed by the fix")
    le_p.add_argument("--step", action="append", help="Solution step (repeatable)")
    le_p.add_argument("--tag", action="append", help="Tag (repeatable)")
    le_p.set_defaults(func=_cmd_learn_error)

    fs_p = subparsers.add_parser("find-solution", help="Rank known solutions for an error")
    fs_p.add_argument("message", help="Raw error message")
    fs_p.add_argument("--file", default=None, help="File where the error occurred")
    fs_p.add_argument("--type", dest="error_type", default=None, help="Error type hint")
    fs_p.add_argument("--limit", type=int, default=5, help="Maximum candidates (default: 5)")
    fs_p.set_defaults(func=_cmd_find_solution)

    sg_p = subparsers.add_parser("suggest", help="Suggest a fix for a common or known error")
    sg_p.add_argument("message", help="Raw error message")
    sg_p.set_defaults(func=_cmd_suggest)

    mk_p = subparsers.add_parser("mark", help="Record whether a solution worked")
    mk_p.add_argument("solution_id", type=int, help="Solution id")
    outcome = mk_p.add_mutually_exclusive_group(required=True)
    outcome.add_argument("--success", dest="succeeded", action="store_true")
    outcome.add_argument("--fail", dest="succeeded", action="store_false")
    mk_p.set_defaults(func=_cmd_mark)

    sy_p = subparsers.add_parser("sync", help="Run a sync pass now")
    sy_p.add_argument("kind", nargs="?", default="bidirectional",
                      choices=["full", "incremental", "bidirectional", "import"])
    sy_p.set_defaults(func=_cmd_sync)

    ss_p = subparsers.add_parser("sync-status", help="Show graph file and sync log state")
    ss_p.set_defaults(func=_cmd_sync_status)

    pt_p = subparsers.add_parser("patterns", help="Pattern freshness report")
    pt_p.add_argument("--attention", action="store_true",
                      help="Only list new, missing and drifted patterns")
    pt_p.set_defaults(func=_cmd_patterns)

    cm_p = subparsers.add_parser("commits", help="List learned commits")
    cm_p.add_argument("--limit", type=int, default=20)
    cm_p.add_argument("--metadata", action="store_true",
                      help="Only commits carrying a metadata block")
    cm_p.set_defaults(func=_cmd_commits)

    q_p = subparsers.add_parser("query", help="Search everything the daemon knows")
    q_p.add_argument("text", help="Search text")
    q_p.add_argument("--limit", type=int, default=10)
    q_p.set_defaults(func=_cmd_query)

    st_p = subparsers.add_parser("stats", help="Show store statistics")
    st_p.set_defaults(func=_cmd_stats)

    h_p = subparsers.add_parser("health", help="Show daemon health")
    h_p.set_defaults(func=_cmd_health)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """
    Entry point for the ``knowledge-daemon`` console script.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    args.cfg = Config.load(args.config)
    _configure_logging(args.cfg, args.verbose, to_file=args.cmd == "run")
    args.func(args)


if __name__ == "__main__":
    main()
