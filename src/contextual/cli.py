"""Contextual CLI -- inspect and manage a context vault from the shell.

Provides ``stats``, ``list``, ``show``, ``backup``, ``backups``,
``restore``, ``filter`` and ``amplify`` subcommands.

Uses **only the Python standard library** (argparse, json, logging).
Automatic backups are never started from the CLI.

Usage::

    contextual [--path DIR] [--no-encryption] [--key KEY] [--json] [--verbose] <command>

    contextual stats
    contextual list
    contextual show     <context_id>
    contextual backup
    contextual backups
    contextual restore  [--timestamp MILLIS]
    contextual filter   <question> <answer> [<answer> ...]
    contextual amplify  <question> <answer>
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
from datetime import datetime, timezone
from typing import Any

from . import __version__
from .config import ContextualConfig
from .context import Context
from .core import Contextual
from .housekeeper import AIHousekeeper

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_contextual(args: argparse.Namespace) -> Contextual:
    """Build a :class:`Contextual` from CLI arguments and the environment.

    Command-line options override ``CONTEXTUAL_*`` variables.  The
    backup thread is always disabled.
    """
    overrides: dict[str, Any] = {"auto_backup": False}
    if args.path:
        overrides["storage_path"] = args.path
    if args.no_encryption:
        overrides["encryption_enabled"] = False
    if args.key:
        overrides["encryption_key"] = args.key
    return Contextual(ContextualConfig.from_env(**overrides))


def _format_millis(timestamp: int) -> str:
    moment = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S")


def _truncate(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    return text[: max(width - 3, 0)] + "..."


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _find_context(ctx: Contextual, prefix: str) -> Context | None:
    """Resolve a full id or an unambiguous id prefix.

    Prints an error to stderr and returns ``None`` when nothing (or more
    than one context) matches.
    """
    context = ctx.get_context(prefix)
    if context is not None:
        return context
    matches = [cid for cid in ctx.vault.get_all_context_ids() if cid.startswith(prefix)]
    if len(matches) == 1:
        return ctx.get_context(matches[0])
    if not matches:
        print(f"Error: No context found with ID prefix '{prefix}'.", file=sys.stderr)
    else:
        print(
            f"Error: Ambiguous ID prefix '{prefix}' matches {len(matches)} contexts.",
            file=sys.stderr,
        )
    return None


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _cmd_stats(args: argparse.Namespace) -> int:
    ctx = _build_contextual(args)
    stats = ctx.get_stats()
    if args.json:
        _print_json(stats)
        return 0

    vault = stats["vault"]
    contexts = stats["contexts"]
    print("Contextual Statistics")
    print("─" * 40)
    print(f"{'Storage:':<25}{vault['storage_path']}")
    print(f"{'Encrypted:':<25}{'yes' if vault['encrypted'] else 'no'}")
    print(f"{'Memory only:':<25}{'yes' if vault['memory_only'] else 'no'}")
    print(f"{'Contexts:':<25}{contexts['total']}")
    print(f"{'Backups:':<25}{vault['backup_count']}")
    backups = ctx.list_backups()
    if backups:
        print(f"{'Latest backup:':<25}{_format_millis(backups[-1])}")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    ctx = _build_contextual(args)
    contexts = ctx.list_contexts()
    if args.json:
        _print_json([c.to_dict() for c in contexts])
        return 0

    if not contexts:
        print("No contexts found.")
        return 0

    term_width = shutil.get_terminal_size((80, 24)).columns
    # ID(8) + App(12) + Hits(5) + Accessed(16) + gaps
    fixed_width = 8 + 2 + 12 + 2 + 5 + 2 + 16 + 2
    keys_width = max(20, term_width - fixed_width)

    print(f"{'ID':<8}  {'App':<12}  {'Hits':>5}  {'Last access':<16}  {'State keys'}")
    print(f"{'─' * 8}  {'─' * 12}  {'─' * 5}  {'─' * 16}  {'─' * keys_width}")
    for c in contexts:
        keys = _truncate(", ".join(sorted(map(str, c.state))), keys_width)
        accessed = c.last_access.isoformat()[:16].replace("T", " ")
        app = _truncate(c.app_id, 12)
        print(f"{c.id[:8]:<8}  {app:<12}  {c.access_count:4d}x  {accessed:<16}  {keys}")

    print(f"\n{len(contexts)} context(s)")
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    ctx = _build_contextual(args)
    context = _find_context(ctx, args.context_id)
    if context is None:
        return 1
    if args.json:
        _print_json(context.to_dict())
        return 0

    print(f"Context {context.id}")
    print("─" * 40)
    print(f"{'App:':<15}{context.app_id}")
    print(f"{'Access Count:':<15}{context.access_count}")
    print(f"{'Last Access:':<15}{context.last_access.isoformat()}")
    print(f"{'Transitions:':<15}{len(context.transitions)}")
    print()
    print("State:")
    for line in json.dumps(context.state, indent=2, ensure_ascii=False, default=str).splitlines():
        print(f"  {line}")
    return 0


def _cmd_backup(args: argparse.Namespace) -> int:
    ctx = _build_contextual(args)
    timestamp = ctx.backup()
    if timestamp is None:
        print("Error: Backup failed (see log output).", file=sys.stderr)
        return 1
    if args.json:
        _print_json({"timestamp": timestamp})
    else:
        print(f"Backup {timestamp} written ({_format_millis(timestamp)} UTC).")
    return 0


def _cmd_backups(args: argparse.Namespace) -> int:
    ctx = _build_contextual(args)
    stamps = ctx.list_backups()
    if args.json:
        _print_json(stamps)
        return 0
    if not stamps:
        print("No backups found.")
        return 0
    for stamp in stamps:
        print(f"{stamp}  {_format_millis(stamp)}")
    return 0


def _cmd_restore(args: argparse.Namespace) -> int:
    ctx = _build_contextual(args)
    if not ctx.restore(args.timestamp):
        print("Error: Restore failed (see log output).", file=sys.stderr)
        return 1
    count = len(ctx.bridge)
    if args.json:
        _print_json({"restored": count})
    else:
        print(f"Restored {count} context(s).")
    return 0


def _cmd_filter(args: argparse.Namespace) -> int:
    housekeeper = AIHousekeeper()
    try:
        result = housekeeper.filter_answers(args.answers, args.question)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.json:
        _print_json(
            {
                "answer": result.answer,
                "index": result.index,
                "confidence": result.confidence,
                "meets_threshold": result.meets_threshold,
                "score": result.score.to_dict(),
            }
        )
        return 0

    print(f"Best answer (#{result.index + 1}, confidence {result.confidence:.3f}):")
    print(f"  {result.answer}")
    print()
    for name, value in result.score.factors.items():
        print(f"  {name + ':':<15}{value:.2f}")
    return 0


def _cmd_amplify(args: argparse.Namespace) -> int:
    housekeeper = AIHousekeeper()
    amplified = housekeeper.amplify_detailed(args.answer, args.question)
    if args.json:
        _print_json(
            {
                "text": amplified.text,
                "concepts": amplified.concepts,
                "reasoning": amplified.reasoning,
                "depth": amplified.depth,
            }
        )
    else:
        print(amplified.text)
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        A configured :class:`argparse.ArgumentParser`.
    """
    parser = argparse.ArgumentParser(
        prog="contextual",
        description="Contextual -- inspect and manage your context vault.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--path",
        default=None,
        help="Vault directory (default: $CONTEXTUAL_PATH or ~/.contextual).",
    )
    parser.add_argument(
        "--no-encryption",
        action="store_true",
        help="Read and write the vault without encryption.",
    )
    parser.add_argument(
        "--key",
        default=None,
        help="Encryption key (64 hex characters) or passphrase.",
    )
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show library log output.")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("stats", help="Show vault and context statistics.")
    subparsers.add_parser("list", help="List stored contexts.")

    p_show = subparsers.add_parser("show", help="Show a context in full.")
    p_show.add_argument("context_id", help="Context ID or unambiguous prefix.")

    subparsers.add_parser("backup", help="Write a backup snapshot now.")
    subparsers.add_parser("backups", help="List backup snapshots.")

    p_restore = subparsers.add_parser("restore", help="Restore contexts from a backup.")
    p_restore.add_argument(
        "--timestamp",
        type=int,
        default=None,
        help="Snapshot timestamp in milliseconds (default: latest).",
    )

    p_filter = subparsers.add_parser("filter", help="Pick the best of several answers.")
    p_filter.add_argument("question", help="The question the answers respond to.")
    p_filter.add_argument("answers", nargs="+", help="Candidate answers.")

    p_amplify = subparsers.add_parser("amplify", help="Expand an answer.")
    p_amplify.add_argument("question", help="The original question.")
    p_amplify.add_argument("answer", help="The answer to expand.")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Args:
        argv: Command-line arguments. Defaults to ``sys.argv[1:]``.

    Returns:
        Exit code (0 for success, 1 for errors).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("CONTEXTUAL_DEBUG") else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # Keep library logging out of normal CLI output.
    logging.getLogger("contextual").setLevel(logging.NOTSET if args.verbose else logging.WARNING)

    if args.command is None:
        parser.print_help()
        return 0

    commands: dict[str, Any] = {
        "stats": _cmd_stats,
        "list": _cmd_list,
        "show": _cmd_show,
        "backup": _cmd_backup,
        "backups": _cmd_backups,
        "restore": _cmd_restore,
        "filter": _cmd_filter,
        "amplify": _cmd_amplify,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        result: int = handler(args)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return result


if __name__ == "__main__":
    sys.exit(main())
