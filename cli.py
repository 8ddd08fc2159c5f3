"""
Command-line driver for the Ralph loop.

Usage:
    python cli.py run <bead-id> [--max-iterations N] [--agent claude]
    python cli.py show <bead-id>
    python cli.py init <bead-id> --intent "..." --check "build=go build ./..."

Exit codes for `run`: 0 when the bead reached completed, 1 when it failed or
a precondition (agent CLI missing, bead missing or malformed) stopped it.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import config
from features.beads.models import Constraints, Verifier, WorkItem
from features.beads.store import BeadStoreError, JsonBeadStore, open_store
from workflows.ralph_loop import PRECONDITION_ERRORS, RalphLoop

log = logging.getLogger("ralph")


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def _settings(args: argparse.Namespace) -> config.Settings:
    return config.load_settings(
        workspace_root=Path(args.workspace).resolve() if args.workspace else None,
        beads_dir=Path(args.beads_dir) if args.beads_dir else None,
        store_backend=args.store,
        agent_preset=getattr(args, "agent", None),
        max_iterations=getattr(args, "max_iterations", None),
    )


def cmd_run(args: argparse.Namespace) -> int:
    try:
        settings = _settings(args)
        loop = RalphLoop.from_settings(settings)
        outcome = loop.run_bead(args.bead_id)
    except PRECONDITION_ERRORS as e:
        log.error("Cannot start: %s", e)
        return 1
    except ValueError as e:
        log.error("Invalid configuration: %s", e)
        return 1

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    return outcome.exit_code


def cmd_show(args: argparse.Namespace) -> int:
    store = open_store(_settings(args))
    try:
        bead = store.load(args.bead_id)
    except (*PRECONDITION_ERRORS, BeadStoreError) as e:
        log.error("%s", e)
        return 1
    print(json.dumps(bead.to_dict(), indent=2))
    return 0


def _parse_check(spec: str, timeout: int) -> Verifier:
    name, sep, command = spec.partition("=")
    if not sep:
        name, command = spec, spec
    return Verifier(name=name.strip(), command=command.strip(), timeout_seconds=timeout)


def cmd_init(args: argparse.Namespace) -> int:
    settings = _settings(args)
    store = JsonBeadStore(settings.resolve(settings.beads_dir))
    bead = WorkItem(
        id=args.bead_id,
        title=args.title or "",
        intent=args.intent,
        verifiers=[_parse_check(c, settings.verifier_timeout_sec) for c in args.check],
        constraints=Constraints(max_iterations=args.max_iterations or settings.max_iterations),
    )
    try:
        path = store.create(bead)
    except BeadStoreError as e:
        log.error("%s", e)
        return 1
    print(path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Run a bead through the retry-until-verified Ralph loop.",
    )
    parser.add_argument("--workspace", help="Project root for agent and verifier processes (default: cwd)")
    parser.add_argument("--beads-dir", help="JSON bead store directory (default: .beads/ralph)")
    parser.add_argument("--store", choices=["json", "bd"], help="Work-item store backend")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the loop on a bead")
    run.add_argument("bead_id")
    run.add_argument("--max-iterations", type=int, help="Default when the bead sets none")
    run.add_argument("--agent", help="Agent preset (claude, kimi, codex)")
    run.add_argument("--json", action="store_true", help="Print the outcome as JSON")
    run.set_defaults(func=cmd_run)

    show = sub.add_parser("show", help="Print a bead")
    show.add_argument("bead_id")
    show.set_defaults(func=cmd_show)

    init = sub.add_parser("init", help="Create a JSON bead")
    init.add_argument("bead_id")
    init.add_argument("--intent", required=True)
    init.add_argument("--title")
    init.add_argument("--check", action="append", required=True,
                      help="Verifier as NAME=COMMAND (repeatable, run in order)")
    init.add_argument("--max-iterations", type=int)
    init.set_defaults(func=cmd_init)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
