"""CLI entrypoint for ralphio."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from ralphio import __version__
from ralphio.run_log import configure_logging
from ralphio.schemas import UsageInfo

logger = logging.getLogger("ralphio")

COMMANDS = ("init",)


def _load_dotenv() -> None:
    """Load .env from the working directory or its parent."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported modes."""
    p = argparse.ArgumentParser(
        prog="ralphio",
        description="RALPHIO - one task per loop agent orchestrator.",
        epilog=(
            "Environment: LOOP_TIMEOUT_MS (per-invocation deadline, default 600000), "
            "CLAUDE_CODE_EXECUTABLE / CLAUDE_PATH (Claude Code CLI location)."
        ),
    )
    p.add_argument(
        "command",
        nargs="?",
        default=None,
        metavar="init",
        help="Initialize the .agent/ structure with template files.",
    )
    # -- Run modes -------------------------------------------------------------
    modes = p.add_mutually_exclusive_group()
    modes.add_argument(
        "--once",
        action="store_true",
        help="Execute one task and exit (0 on success, 1 on failure).",
    )
    modes.add_argument(
        "--until-success",
        action="store_true",
        help=(
            "Continue executing tasks until completion (0), "
            "3 consecutive failures (1), or the iteration limit (2)."
        ),
    )
    modes.add_argument(
        "--parse-prd",
        metavar="FILE",
        default=None,
        help="Parse a PRD file and append tasks to the planning file.",
    )
    p.add_argument(
        "--version",
        action="store_true",
        help="Display version information.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) console logging.",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate mode."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"ralphio v{__version__}")
        return 0

    if args.command is not None:
        if args.command not in COMMANDS:
            print(f"Error: unknown command '{args.command}'", file=sys.stderr)
            parser.print_help(sys.stderr)
            return 1
        if args.once or args.until_success or args.parse_prd:
            print("Error: 'init' cannot be combined with run options.", file=sys.stderr)
            return 1
        configure_logging(verbose=args.verbose)
        return _run_init()

    if not (args.once or args.until_success or args.parse_prd):
        parser.print_help()
        return 0

    _load_dotenv()
    from ralphio.config import load_config

    config = load_config()
    configure_logging(config.paths.logs_dir, verbose=args.verbose)
    logger.debug("Loaded configuration: %s", config.model_dump(mode="json"))

    if args.parse_prd:
        return _run_parse_prd(config, args.parse_prd)
    if args.once:
        return _run_once(config)
    return _run_until_success(config)


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _run_init() -> int:
    from ralphio.scaffold import ScaffoldError, init_workspace

    try:
        result = init_workspace(Path.cwd())
    except ScaffoldError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not result.created:
        print(f"{result.agent_dir.name}/ already exists. Skipping initialization.")
        return 0

    print(f"Initialized {result.agent_dir.name}/ structure:")
    for path in result.files:
        print(f"  - {path.relative_to(result.agent_dir.parent).as_posix()}")
    print("\nNext steps:")
    print("  1. Edit .agent/planning.md to add your tasks")
    print("  2. Run 'ralphio --once' to execute the first task")
    print("  3. Or run 'ralphio --until-success' to work through every task")
    return 0


def _build_transport(config):
    """Instantiate the configured transport; ``None`` when it cannot start."""
    import ralphio.claude_code  # noqa: F401  (registers the default transport)
    from ralphio.agent_runner import InvocationError, get_transport_class

    try:
        transport = get_transport_class(config.agent)()
        transport.check_available()
    except KeyError as exc:
        print(f"Error: {exc.args[0]}", file=sys.stderr)
        return None
    except InvocationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return None
    return transport


def _run_once(config) -> int:
    from ralphio.loop import TaskLoop

    transport = _build_transport(config)
    if transport is None:
        return 1

    loop = TaskLoop(config, transport)
    if not loop.has_work():
        print("No unchecked tasks found. Nothing to do.")
        return 0

    print("RALPHIO starting single iteration...")
    result = asyncio.run(loop.run_once())
    if result.success:
        print("\nSingle iteration completed successfully")
        _print_commit(result)
        return 0
    print(f"\nSingle iteration failed: {result.error}", file=sys.stderr)
    return 1


def _run_until_success(config) -> int:
    from ralphio.loop import TaskLoop

    transport = _build_transport(config)
    if transport is None:
        return 1

    print(
        f"RALPHIO starting loop (max {config.max_iterations} iterations, "
        f"stop after {config.max_consecutive_failures} consecutive failures)..."
    )
    loop = TaskLoop(config, transport)
    outcome = asyncio.run(loop.run_until_done())

    succeeded = sum(1 for item in outcome.iterations if item.success)
    usage = _usage_totals(outcome.iterations)
    print("\n" + "=" * 60)
    print("  RALPHIO - Run Summary")
    print("=" * 60)
    print(f"  Stop reason: {outcome.stop_reason.value}")
    print(f"  Iterations:  {len(outcome.iterations)} / {config.max_iterations}")
    print(f"  Succeeded:   {succeeded}")
    print(f"  Failed:      {len(outcome.iterations) - succeeded}")
    print(
        f"  Tokens:      {usage.total_tokens} "
        f"(input {usage.input_tokens}, output {usage.output_tokens})"
    )
    print(f"  Cost:        ${usage.cost_usd:.4f}")
    print(f"  Exit code:   {outcome.exit_code}")
    print("=" * 60)

    if outcome.iterations:
        print(f"\n  {'#':>3}  {'Result':<7}  {'Commit':<18}  Task")
        print(f"  {'-' * 3}  {'-' * 7}  {'-' * 18}  {'-' * 30}")
        for item in outcome.iterations:
            commit = item.commit.outcome.value if item.commit else "-"
            task = item.task.text if item.task else "-"
            print(
                f"  {item.index:>3}  "
                f"{'ok' if item.success else 'FAILED':<7}  "
                f"{commit:<18}  "
                f"{task[:60]}"
            )
    print()
    return outcome.exit_code


def _run_parse_prd(config, prd_file: str) -> int:
    from ralphio.prd import PrdError, parse_prd

    transport = _build_transport(config)
    if transport is None:
        return 1

    try:
        asyncio.run(parse_prd(config, prd_file, transport))
    except PrdError as exc:
        logger.error("PRD parsing error: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Tasks successfully added to {config.paths.plan_file}")
    print("Review the tasks and run 'ralphio --once' or 'ralphio --until-success' to start.")
    return 0


def _usage_totals(iterations) -> UsageInfo:
    total = UsageInfo()
    for item in iterations:
        if item.invocation is None:
            continue
        used = item.invocation.usage
        total.input_tokens += used.input_tokens
        total.output_tokens += used.output_tokens
        total.total_tokens += used.total_tokens
        total.cost_usd += used.cost_usd
    return total


def _print_commit(result) -> None:
    if result.commit is None:
        return
    if result.commit.message:
        print(f"  Commit: {result.commit.outcome.value} ({result.commit.message})")
    else:
        print(f"  Commit: {result.commit.outcome.value}")


def cli() -> None:
    """Console-script wrapper around :func:`main`."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
