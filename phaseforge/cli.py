"""
PHASEFORGE CLI — The Interface

  phaseforge run <slug> --repo <path>   (execute a feature's plan)
  phaseforge init [path]                (bootstrap .phaseforge in a repo)
  phaseforge status --repo <path>       (config, API keys, feature progress)
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from phaseforge.audit_logger import AuditLogger
from phaseforge.config_loader import STATE_DIR_NAME, EngineConfig, load_config, validate_api_keys
from phaseforge.engine import Engine
from phaseforge.errors import PhaseforgeError
from phaseforge.events import (
    ChangeRequestCreated,
    CheckResult,
    Error,
    Finished,
    PhaseCommitted,
    PhaseStarted,
    ReviewCompleted,
    ReviewStarted,
    RunEvent,
    Started,
    VerificationCompleted,
    VerificationStarted,
)
from phaseforge.identity import BANNER, __codename__, __tagline__, __version__
from phaseforge.plan_store import PlanStore, StepStatus

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / STATE_DIR_NAME / ".env")

app = typer.Typer(
    name="phaseforge",
    help=f"{__codename__} — {__tagline__}",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    slug: str = typer.Argument(..., help="Feature slug (directory under .phaseforge/features)"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the configured model"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Execute the phases of a planned feature."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)

    try:
        engine = Engine(EngineConfig(repo_path=repo, model=model))
        ok = asyncio.run(_run_feature(engine, slug))
    except PhaseforgeError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        raise typer.Exit(1)

    usage = engine.usage_summary()
    if usage:
        console.print(
            f"\n[dim]{usage['call_count']} calls, "
            f"{usage['total_tokens']:,} tokens, "
            f"${usage['estimated_cost']:.4f}[/]"
        )

    if not ok:
        raise typer.Exit(1)


async def _run_feature(engine: Engine, slug: str) -> bool:
    """Consume the run's events. False if the run ended in a fatal error."""
    audit = AuditLogger.for_feature(engine.config.logs_dir, slug)
    ok = True
    stream = await engine.run(slug)
    async with stream:
        async for event in stream:
            audit.log_event(event)
            _render_event(event)
            if isinstance(event, Error) and event.fatal:
                ok = False
    await stream.wait()
    return ok


def _render_event(event: RunEvent) -> None:
    if isinstance(event, Started):
        console.print(Panel(
            f"[bold green]Feature:[/] {escape(event.feature)}\n"
            f"[bold]Phases:[/] {event.total_phases}",
            title=f"⚡ {__codename__}",
            border_style="bright_green",
        ))
    elif isinstance(event, PhaseStarted):
        console.print(f"\n[bold cyan]▶ Phase {event.index + 1}: {escape(event.name)}[/]")
    elif isinstance(event, CheckResult):
        mark = "[green]✓[/]" if event.passed else "[red]✗[/]"
        console.print(f"  {mark} check {escape(event.name)}")
    elif isinstance(event, PhaseCommitted):
        console.print(f"  [green]committed[/] {escape(event.commit)}")
    elif isinstance(event, ReviewStarted):
        console.print("\n[bold]🔍 Reviewing...[/]")
    elif isinstance(event, ReviewCompleted):
        console.print(f"  {event.issue_count} issue(s) found")
        for issue in event.issues:
            line = f"- [{issue.severity.value}] {issue.file}: {issue.description}"
            console.print(f"  [dim]{escape(line)}[/]")
    elif isinstance(event, VerificationStarted):
        console.print("\n[bold]🧪 Verifying...[/]")
    elif isinstance(event, VerificationCompleted):
        color = "green" if event.passed else "red"
        console.print(f"  [{color}]{escape(event.details)}[/]")
    elif isinstance(event, ChangeRequestCreated):
        console.print(f"\n[bold green]🚀 PR:[/] {escape(event.url)}")
    elif isinstance(event, Error):
        color = "red" if event.fatal else "yellow"
        console.print(f"[{color}]Error ({event.error_kind}): {escape(event.detail)}[/]")
    elif isinstance(event, Finished):
        console.print("\n[bold green]Finished.[/]")


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize the .phaseforge directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    try:
        Engine(EngineConfig(repo_path=repo)).init()
    except PhaseforgeError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Initialized {repo / STATE_DIR_NAME}[/]")
    console.print("  Add a plan under [bold]features/<slug>/phases.yaml[/] and run [bold]phaseforge run <slug>[/].")


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check PHASEFORGE configuration and feature progress."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "gh", "glab"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)

    if not repo:
        return

    repo = repo.resolve()
    try:
        config = load_config(repo)
    except PhaseforgeError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        raise typer.Exit(1)

    console.print("\n[bold]Agent:[/]")
    console.print(f"  Model:      {config.agent.model or '(default)'}")
    console.print(f"  Max turns:  {config.agent.max_turns}")
    console.print(f"  Branch:     {escape(config.git.branch_pattern)} (base {config.git.base_branch})")
    console.print(f"  Review:     {'on' if config.review.enabled else 'off'} ({config.review.max_iterations} iterations)")
    console.print(f"  Verify:     {'on' if config.verification.enabled else 'off'} ({config.verification.max_iterations} iterations)")
    console.print(f"  Checks:     {', '.join(h.name for h in config.hooks.pre_commit) or '(none)'}")

    state_dir = repo / STATE_DIR_NAME
    if not state_dir.exists():
        console.print(f"\n[yellow]Not initialized: run `phaseforge init {repo}`[/]")
        return

    store = PlanStore(state_dir)
    features_table = Table(title="Features", border_style="magenta")
    features_table.add_column("Slug")
    features_table.add_column("Phases")
    features_table.add_column("Execution")
    for slug in store.list_features():
        try:
            plan = store.load(slug)
        except PhaseforgeError as e:
            features_table.add_row(slug, f"[red]{escape(str(e))}[/]", "")
            continue
        done = sum(1 for p in plan.phases if p.is_completed)
        execution = "-"
        if plan.execution is not None:
            color = "green" if plan.execution.status == StepStatus.COMPLETED else "red"
            execution = f"[{color}]{plan.execution.status.value}[/] ({plan.execution.total_turns} turns)"
        features_table.add_row(slug, f"{done}/{len(plan.phases)}", execution)
    console.print(features_table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(msg.rstrip())}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(msg.rstrip())}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
