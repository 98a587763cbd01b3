"""Main CLI entry point - drives a daemon session from the shell."""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import typer

from tgsdaemon.core.configs import CONFIG_PATH, SessionConfig, get_session_config, load_raw_config
from tgsdaemon.core.errors import DaemonError
from tgsdaemon.daemon.diagnostics import failure_diagnostic, result_to_diagnostics
from tgsdaemon.daemon.protocol import ResultEnvelope
from tgsdaemon.daemon.session import DaemonSession
from tgsdaemon.ui import output

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="tgs-daemon - check .tgs schema files through a long-running typegen daemon.",
)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_SESSION_FAILED = 2


# ============================================================================
# Shared setup
# ============================================================================

def _load_config(
    executable: Optional[str] = None,
    policy: Optional[str] = None,
    startup_timeout: Optional[float] = None,
) -> SessionConfig:
    """
    Load config, apply command-line overrides. Exits on error.
    """
    raw = load_raw_config()
    if executable:
        raw["executable"] = executable
    if policy:
        raw["policy"] = policy
    if startup_timeout is not None:
        raw["startup_timeout"] = str(startup_timeout)

    try:
        return get_session_config(raw)
    except ValueError as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(EXIT_SESSION_FAILED)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _read_documents(files: List[Path]) -> Tuple[Dict[str, str], List[str]]:
    """Read every file up front; unreadable ones are reported and skipped."""
    texts: Dict[str, str] = {}
    unreadable: List[str] = []
    for path in files:
        try:
            texts[str(path)] = path.read_text(encoding="utf-8")
        except OSError as e:
            output.render_failure(str(path), e)
            unreadable.append(str(path))
    return texts, unreadable


async def _check_documents(
    session: DaemonSession,
    texts: Dict[str, str],
    from_disk: bool,
) -> Dict[str, object]:
    """Submit all documents concurrently; map path -> result or error."""
    async with session:
        keys = list(texts)
        outcomes = await asyncio.gather(
            *(session.submit(key, None if from_disk else texts[key]) for key in keys),
            return_exceptions=True,
        )
    for outcome in outcomes:
        if isinstance(outcome, BaseException) and not isinstance(outcome, DaemonError):
            raise outcome
    return dict(zip(keys, outcomes))


# ============================================================================
# Commands
# ============================================================================

@app.command()
def check(
    files: List[Path] = typer.Argument(..., help=".tgs files to check"),
    from_disk: bool = typer.Option(False, "--from-disk", help="Let the daemon read files itself (bare-path requests)"),
    policy: Optional[str] = typer.Option(None, "--policy", help="Multiplexing policy: fifo or single-slot"),
    executable: Optional[str] = typer.Option(None, "--executable", help="Path to the typegen executable"),
    startup_timeout: Optional[float] = typer.Option(None, "--startup-timeout", min=0.1, help="Seconds to wait for the daemon ready signal"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and session statistics"),
) -> None:
    """
    Parse files through the typegen daemon and print diagnostics.

    Example: tgs-daemon check schemas/*.tgs

    Exit codes: 0 all clean, 1 some file has errors, 2 the daemon could
    not be used at all.
    """
    config = _load_config(executable, policy, startup_timeout)
    _configure_logging("DEBUG" if verbose else config.log_level)

    texts, failed = _read_documents(files)
    if not texts:
        raise typer.Exit(EXIT_ERRORS)

    session = DaemonSession(config)
    try:
        outcomes = asyncio.run(_check_documents(session, texts, from_disk))
    except DaemonError as e:
        # Startup failed: nothing was checked.
        output.render_failure(config.executable, e)
        raise typer.Exit(EXIT_SESSION_FAILED)

    for path, outcome in outcomes.items():
        if isinstance(outcome, ResultEnvelope):
            diagnostics = result_to_diagnostics(outcome, texts[path])
            if outcome.success and not diagnostics:
                output.render_success(path, outcome)
                continue
            if not diagnostics:
                diagnostics = [failure_diagnostic(DaemonError("parse failed without error details"))]
            output.render_diagnostics(path, diagnostics, texts[path])
        else:
            # No result to point into: report at the top, without a source excerpt.
            output.render_diagnostics(path, [failure_diagnostic(outcome)], "")
        failed.append(path)

    if verbose:
        output.render_stats(session.get_stats())

    output.render_summary(len(files), failed)
    raise typer.Exit(EXIT_ERRORS if failed else EXIT_OK)


@app.command()
def settings(
    action: str = typer.Argument("show", help="Action: show or path"),
) -> None:
    """
    Inspect the daemon configuration.

    Actions:
        show - Display the effective configuration (file + environment)
        path - Print the config file location
    """
    if action == "path":
        typer.echo(str(CONFIG_PATH))
        return
    if action != "show":
        typer.echo(f"Unknown action: {action}. Available actions: show, path", err=True)
        raise typer.Exit(EXIT_SESSION_FAILED)

    config = _load_config()
    source = str(CONFIG_PATH) if CONFIG_PATH.exists() else "defaults"
    output.render_settings(config, source)


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
