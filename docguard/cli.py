"""Command-line front door for docguard.

``watch`` guards one document on the terminal, ``graph`` prints its include
graph, ``recover`` lists or discards emergency backups.
"""

from __future__ import annotations

import argparse
import signal
import sys
import time
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import TextIO

from loguru import logger

from .config import load_docguard_config, load_durable_preferences, save_durable_preferences
from .conflicts import Conflict, ConflictKind
from .coordinator import ConflictCoordinator
from .recovery import CrashRecoveryManager
from .resolution import Action, ActionOutcome, PreferenceStore, Resolution, ResolutionPolicy


def _positive_float(value: str) -> float:
    """argparse type for positive float values."""
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("value must be > 0")
    return parsed


def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "WARNING",
        format="<green>{time:HH:mm:ss}</green> <level>{level: <8}</level> {message}",
    )


def _ask_target(conflict: Conflict, action: Action, input_fn: Callable[[str], str]) -> Path | None:
    if action == Action.BREAK_EDGE:
        default = conflict.related_edges[0].to_path if conflict.related_edges else None
        answer = input_fn(f"include to drop [{default}]: ").strip()
        return Path(answer) if answer else default
    if action == Action.FIND_ALTERNATIVE:
        answer = input_fn("replacement file: ").strip()
        return Path(answer) if answer else None
    if action == Action.SAVE_COPY_ELSEWHERE:
        answer = input_fn("copy destination (empty = next to the file): ").strip()
        return Path(answer) if answer else None
    return None


def prompt_for_resolution(
    conflict: Conflict,
    *,
    input_fn: Callable[[str], str] = input,
    output: TextIO | None = None,
) -> Resolution:
    """Ask on the terminal which offered action to take. Empty input dismisses."""
    output = output if output is not None else sys.stdout
    actions = list(ResolutionPolicy.offered_actions(conflict.kind))
    if Action.DISMISS in actions:
        actions.remove(Action.DISMISS)
    output.write(f"\n{conflict.describe()}\n")
    for index, action in enumerate(actions, start=1):
        output.write(f"  {index}) {action.value}\n")
    output.flush()

    while True:
        try:
            answer = input_fn(f"choose 1-{len(actions)}, append ! to remember (empty = dismiss): ").strip()
        except EOFError:
            return Resolution(conflict=conflict, action=Action.DISMISS)
        if not answer:
            return Resolution(conflict=conflict, action=Action.DISMISS)
        remember = answer.endswith("!")
        answer = answer.rstrip("!")
        if answer.isdigit() and 1 <= int(answer) <= len(actions):
            break
        output.write(f"not a choice: {answer!r}\n")

    action = actions[int(answer) - 1]
    try:
        target = _ask_target(conflict, action, input_fn)
    except EOFError:
        return Resolution(conflict=conflict, action=Action.DISMISS)
    return Resolution(conflict=conflict, action=action, target=target, remember=remember)


def _print_outcome(outcome: ActionOutcome, output: TextIO) -> None:
    status = "ok" if outcome.applied else "failed"
    output.write(f"[{status}] {outcome.action.value} {outcome.path}: {outcome.detail}\n")
    if outcome.action == Action.VIEW_GRAPH and outcome.content:
        output.write(outcome.content + "\n")
    output.flush()


def build_coordinator(config=None) -> ConflictCoordinator:
    """Coordinator with durable preferences read from and saved to the config file."""
    config = config if config is not None else load_docguard_config()
    preferences = PreferenceStore(load_durable_preferences(), save_durable=save_durable_preferences)
    return ConflictCoordinator(config, policy=ResolutionPolicy(preferences))


def _install_signal_handlers(coordinator: ConflictCoordinator) -> None:
    def on_signal(signum, _frame) -> None:
        logger.warning("received signal {}; writing emergency backups", signum)
        coordinator.emergency_flush()
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, on_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, on_signal)


def run_watch(
    path: Path,
    coordinator: ConflictCoordinator,
    *,
    tick_seconds: float = 0.1,
    input_fn: Callable[[str], str] = input,
    output: TextIO | None = None,
    max_ticks: int | None = None,
) -> int:
    """Guard ``path`` until interrupted, prompting for every conflict."""
    output = output if output is not None else sys.stdout
    coordinator.run_crash_recovery()
    handle = coordinator.register_document(path)
    coordinator.on_conflicts_ready(
        lambda conflicts: [prompt_for_resolution(c, input_fn=input_fn, output=output) for c in conflicts],
        handle,
    )
    coordinator.on_action_applied(lambda outcome: _print_outcome(outcome, output), handle)
    status = coordinator.get_system_status()
    output.write(f"watching {handle.path} ({status.tracked_files} file(s), {status.graph_edge_count} include(s))\n")
    output.flush()

    ticks = 0
    try:
        while max_ticks is None or ticks < max_ticks:
            coordinator.tick()
            ticks += 1
            time.sleep(tick_seconds)
    except KeyboardInterrupt:
        output.write("\nstopped\n")
    finally:
        coordinator.close()
    return 0


def run_graph(path: Path, coordinator: ConflictCoordinator, output: TextIO | None = None) -> int:
    """Print the include graph of ``path``; returns 1 when a cycle was rejected."""
    output = output if output is not None else sys.stdout
    coordinator.register_document(path)
    try:
        text = coordinator.graph.describe()
        output.write((text or "(no includes)") + "\n")
        cycles = [
            entry.conflict
            for entry in (coordinator.queue.entry(p) for p in coordinator.queue.pending_paths())
            if entry is not None and entry.conflict.kind == ConflictKind.CIRCULAR_DEPENDENCY
        ]
        for conflict in cycles:
            members = " -> ".join(str(p) for p in (*conflict.cycle, conflict.cycle[0]))
            output.write(f"cycle rejected: {members}\n")
    finally:
        coordinator.close()
    return 1 if cycles else 0


def run_recover(manager: CrashRecoveryManager, *, discard: bool, output: TextIO | None = None) -> int:
    output = output if output is not None else sys.stdout
    backups = manager.recover()
    if not backups:
        output.write("no emergency backups\n")
        return 0
    for backup in backups:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(backup.snapshot_at))
        output.write(f"{backup.original_path}  saved {stamp}  ({len(backup.snapshot_content)} chars)\n")
        if discard:
            manager.discard(backup.original_path)
    if discard:
        output.write(f"discarded {len(backups)} backup(s)\n")
    return 0


def main() -> int:
    """Parse CLI arguments and dispatch to a subcommand."""
    parser = argparse.ArgumentParser(
        prog="docguard",
        description="Watch a document and its includes for external changes and resolve conflicts.",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr.")
    commands = parser.add_subparsers(dest="command", required=True)

    watch = commands.add_parser("watch", parents=[common], help="Guard a document until interrupted.")
    watch.add_argument("path", help="Main document to watch.")
    watch.add_argument("--poll", action="store_true", help="Poll instead of using native notification.")
    watch.add_argument(
        "--interval",
        type=_positive_float,
        default=None,
        help="Polling interval in seconds (default: from config).",
    )

    graph = commands.add_parser("graph", parents=[common], help="Print the include graph of a document.")
    graph.add_argument("path", help="Main document.")

    recover = commands.add_parser("recover", parents=[common], help="List emergency backups left by a crash.")
    recover.add_argument("--discard", action="store_true", help="Delete the listed backups.")

    args = parser.parse_args()
    configure_logging(args.verbose)
    config = load_docguard_config()

    if args.command == "recover":
        manager = CrashRecoveryManager(config.resolved_backup_dir(), snapshot_interval=config.snapshot_interval)
        return run_recover(manager, discard=args.discard)

    path = Path(args.path)
    if not path.exists():
        raise SystemExit(f"Path not found: {path}")

    if args.command == "graph":
        return run_graph(path, build_coordinator(replace(config, native_watch=False)))

    if args.poll:
        config = replace(config, native_watch=False)
    if args.interval is not None:
        config = replace(config, polling_interval=args.interval)
    coordinator = build_coordinator(config)
    _install_signal_handlers(coordinator)
    return run_watch(path, coordinator)


if __name__ == "__main__":
    sys.exit(main())
