from __future__ import annotations

import argparse
import signal
import threading
from contextlib import contextmanager
from functools import partial
from pathlib import Path
from types import FrameType
from typing import Iterator, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

from crate_apply import (
    CratesIoClient,
    CratesIoFetcher,
    DockerEngine,
    HarnessPolicy,
    LocalEngine,
    Mode,
    RunSummary,
    run_batch,
)
from crate_apply.errors import SystemicFailure
from crate_apply.execution.capabilities import preflight_validate_backend_capabilities
from crate_apply.execution.config import DEFAULT_DOCKER_IMAGE
from crate_apply.execution.process import terminate_running
from crate_apply.logging import LOG_FORMATS, configure_logging
from crate_apply.results import OUTCOME_KINDS, ExecutionResult
from crate_apply.store import RESULTS_FILE, iter_results
from crate_apply.targets import parse_specifiers

_CONSOLE = Console(no_color=False)

_OUTCOME_STYLES = {
    "success": "bold green",
    "failure": "bold red",
    "timeout": "bold yellow",
    "crashed": "bold magenta",
    "fetch_error": "red",
    "skipped": "dim",
}


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m capply")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit with status 2.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_usage()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build the crate-apply CLI parser.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m capply",
        description=(
            "crate-apply CLI\n"
            "Build, test or benchmark crates from crates.io in bulk.\n"
            "Every outcome is appended to <out>/results.jsonl; re-runs resume."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m capply run left_pad\n"
            "  python -m capply run serde=1.0.0 rand --test --release\n"
            "  python -m capply run '*' --workers 8 --timeout 600\n"
            "  python -m capply summary --out work"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run cargo over one or more crate specifiers.",
        description=(
            "Resolve specifiers and run cargo on every pending crate.\n"
            "SPEC is `name`, `name=version` or `*` for the whole registry."
        ),
        epilog=(
            "Examples:\n"
            "  python -m capply run left_pad=1.0.0\n"
            "  python -m capply run '*' --bench --engine docker"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("specs", nargs="+", metavar="SPEC", help="Crate specifier.")
    mode_group = run_cmd.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--test",
        dest="mode",
        action="store_const",
        const=Mode.TEST,
        default=Mode.BUILD,
        help="Run `cargo test` instead of `cargo build`.",
    )
    mode_group.add_argument(
        "--bench",
        dest="mode",
        action="store_const",
        const=Mode.BENCH,
        help="Run `cargo bench` instead of `cargo build`.",
    )
    run_cmd.add_argument(
        "--release",
        action="store_true",
        default=None,
        help="Pass --release to cargo.",
    )
    run_cmd.add_argument("--workers", type=int, help="Concurrent attempts (default: CPU count, at most 4).")
    run_cmd.add_argument("--timeout", type=int, help="Wall-clock seconds per attempt (default: 900).")
    run_cmd.add_argument(
        "--breaker-threshold",
        type=int,
        help="Stop after N consecutive crashes/timeouts; 0 disables (default: 10).",
    )
    run_cmd.add_argument("--out", default="work", help="Output directory (default: work).")
    run_cmd.add_argument(
        "--force",
        action="store_true",
        help="Archive existing results and run everything again.",
    )
    run_cmd.add_argument("--policy-file", help="TOML policy file; flags override its values.")
    run_cmd.add_argument(
        "--engine",
        choices=("local", "docker"),
        default="local",
        help="Where cargo runs (default: local).",
    )
    run_cmd.add_argument(
        "--docker-image",
        default=DEFAULT_DOCKER_IMAGE,
        help=f"Image used with --engine docker (default: {DEFAULT_DOCKER_IMAGE}).",
    )
    run_cmd.add_argument(
        "--docker-context",
        help=(
            "Use an existing Docker context name.\n"
            "Mutually exclusive with --docker-host and --ssh-host."
        ),
    )
    run_cmd.add_argument(
        "--docker-host",
        help=(
            "Connect directly with DOCKER_HOST.\n"
            "Examples: ssh://user@server, tcp://host:2376"
        ),
    )
    run_cmd.add_argument("--ssh-host", help="SSH shortcut for remote Docker.")
    run_cmd.add_argument("--ssh-user", help="SSH username used with --ssh-host.")
    run_cmd.add_argument("--ssh-port", type=int, help="SSH port used with --ssh-host.")
    run_cmd.add_argument("--ssh-key-path", help="SSH private key used with --ssh-host.")
    _add_logging_args(run_cmd)

    summary_cmd = sub.add_parser(
        "summary",
        help="Count recorded outcomes in an output directory.",
        description="Print counts per outcome kind from an existing result store.",
        formatter_class=_HELP_FORMATTER,
    )
    summary_cmd.add_argument("--out", default="work", help="Output directory (default: work).")
    _add_logging_args(summary_cmd)
    return parser


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    """Attach the shared logging flags to a subcommand.

    Example:
        ```python
        _add_logging_args(run_cmd)
        ```
    """
    parser.add_argument(
        "--log-level",
        default="info",
        choices=("debug", "info", "warning", "error"),
        help="Log level for stderr logs (default: info).",
    )
    parser.add_argument(
        "--log-format",
        default="console",
        choices=LOG_FORMATS,
        help="Log rendering (default: console).",
    )


def build_policy(args: argparse.Namespace) -> HarnessPolicy:
    """Load the policy file, then apply CLI overrides.

    Example:
        ```python
        policy = build_policy(args)
        ```
    """
    policy = HarnessPolicy.from_file(args.policy_file) if args.policy_file else HarnessPolicy()
    return policy.with_overrides(
        workers=args.workers,
        timeout_seconds=args.timeout,
        breaker_threshold=args.breaker_threshold,
        release=args.release,
    )


def build_engine(args: argparse.Namespace) -> LocalEngine | DockerEngine:
    """Create the execution engine selected by `--engine`.

    Example:
        ```python
        engine = build_engine(args)
        ```
    """
    if args.engine == "docker":
        return DockerEngine(
            image=args.docker_image,
            docker_context=args.docker_context,
            docker_host=args.docker_host,
            ssh_host=args.ssh_host,
            ssh_user=args.ssh_user,
            ssh_port=args.ssh_port,
            ssh_key_path=args.ssh_key_path,
        )
    return LocalEngine()


@contextmanager
def _cancel_on_signals(cancel: threading.Event) -> Iterator[None]:
    """Turn the first SIGINT/SIGTERM into a graceful cancel.

    A second SIGINT raises KeyboardInterrupt: the run stops without waiting for
    running attempts, whose tool processes the caller then kills.

    Example:
        ```python
        with _cancel_on_signals(cancel):
            run_batch(...)
        ```
    """

    def _handler(signum: int, frame: FrameType | None) -> None:
        """Set the cancel event, or interrupt if it is already set.

        Example:
            ```python
            _handler(signal.SIGINT, None)
            ```
        """
        if cancel.is_set() and signum == signal.SIGINT:
            raise KeyboardInterrupt
        cancel.set()
        _CONSOLE.print("[bold yellow]Cancelling: waiting for running attempts to finish...[/bold yellow]")

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _print_result(result: ExecutionResult) -> None:
    """Print one committed result as a single line.

    Example:
        ```python
        _print_result(result)
        ```
    """
    kind = result.outcome.kind
    style = _OUTCOME_STYLES.get(kind, "white")
    _CONSOLE.print(
        f"[{style}]{kind:>11}[/{style}]  {result.target}  [dim]{result.duration:.1f}s[/dim]",
        highlight=False,
    )


def _counts_table(counts: dict[str, int], title: str) -> Table:
    """Render outcome counts in a rich table.

    Example:
        ```python
        table = _counts_table({"success": 3}, "Outcomes")
        ```
    """
    table = Table(title=title)
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right")
    for kind in OUTCOME_KINDS:
        style = _OUTCOME_STYLES.get(kind, "white")
        table.add_row(f"[{style}]{kind}[/{style}]", str(counts.get(kind, 0)))
    table.add_row("total", str(sum(counts.values())), style="bold")
    return table


def _print_summary(summary: RunSummary) -> None:
    """Render the end-of-run report.

    Example:
        ```python
        _print_summary(summary)
        ```
    """
    _CONSOLE.print(_counts_table(dict(summary.counts), "Outcomes this run"))
    lines = [
        f"Resolved targets: {summary.resolved}",
        f"Already recorded (resumed): {summary.resumed}",
        f"Result store: {summary.store_path}",
    ]
    border = "green"
    if summary.breaker_tripped:
        lines.append("[bold red]Circuit breaker tripped.[/bold red]")
        border = "red"
    if summary.fatal_error:
        lines.append(f"[bold red]Fatal error:[/bold red] {summary.fatal_error}")
        border = "red"
    if summary.cancelled:
        lines.append("[bold yellow]Run cancelled.[/bold yellow]")
        border = "yellow"
    if summary.resolved == 0 and not summary.cancelled:
        lines.append("[bold red]No target could be resolved.[/bold red]")
        border = "red"
    _CONSOLE.print(Panel.fit("\n".join(lines), title="Run Summary", border_style=border))


def _run(args: argparse.Namespace) -> int:
    """Handle `capply run`.

    Example:
        ```python
        code = _run(build_parser().parse_args(["run", "left_pad"]))
        ```
    """
    try:
        specifiers = parse_specifiers(args.specs)
        policy = build_policy(args)
        engine = build_engine(args)
        preflight_validate_backend_capabilities(args.engine, policy)
    except ValueError as exc:
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {exc}", border_style="red"))
        return 2

    registry = CratesIoClient.from_policy(policy)
    fetcher = CratesIoFetcher.from_policy(policy, checksum_lookup=registry.checksum)
    cancel = threading.Event()
    try:
        with _cancel_on_signals(cancel):
            summary = run_batch(
                specifiers,
                mode=args.mode,
                registry=registry,
                fetcher=fetcher,
                engine=engine,
                policy=policy,
                out_dir=args.out,
                force=args.force,
                cancel_event=cancel,
                on_result=_print_result,
            )
    except SystemicFailure as exc:
        store_path = Path(args.out) / RESULTS_FILE
        _CONSOLE.print(
            Panel.fit(
                f"[bold red]Run aborted:[/bold red] {exc}\nResult store: {store_path}",
                border_style="red",
            )
        )
        return 1
    except KeyboardInterrupt:
        killed = terminate_running()
        _CONSOLE.print(f"[bold yellow]Interrupted:[/bold yellow] killed {killed} running attempt(s); they stay pending.")
        return 130
    finally:
        registry.close()
        fetcher.close()
    _print_summary(summary)
    return summary.exit_code()


def _summary(args: argparse.Namespace) -> int:
    """Handle `capply summary`.

    Example:
        ```python
        code = _summary(build_parser().parse_args(["summary", "--out", "work"]))
        ```
    """
    store_path = Path(args.out) / RESULTS_FILE
    if not store_path.exists():
        _CONSOLE.print(Panel.fit(f"No result store at {store_path}", style="bold red"))
        return 1
    counts: dict[str, int] = {}
    for result in iter_results(store_path):
        counts[result.outcome.kind] = counts.get(result.outcome.kind, 0) + 1
    _CONSOLE.print(_counts_table(counts, "Recorded outcomes"))
    _CONSOLE.print(f"Result store: {store_path}", highlight=False)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `capply` CLI command handler.

    Example:
        ```python
        code = main(["run", "left_pad", "--test"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(level=args.log_level, fmt=args.log_format)

    if args.command == "run":
        return _run(args)
    if args.command == "summary":
        return _summary(args)

    parser.error("Unhandled command")
    return 2
