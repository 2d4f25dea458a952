"""CLI interface for crewflow."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from crewflow import __version__
from crewflow.adapters.claude_cli import ClaudeCliAgentClient
from crewflow.adapters.docker import DockerEnvironmentProvider
from crewflow.adapters.planner import SingleTaskPlanner, YamlPlanner, load_plan
from crewflow.adapters.scripted import ScriptedAgentClient
from crewflow.adapters.worktree import WorktreeEnvironmentProvider
from crewflow.conversation.log import ConversationLog
from crewflow.core.exceptions import CrewflowError
from crewflow.core.lifecycle import LifecycleRegistry, install_signal_handlers
from crewflow.core.orchestrator import Orchestrator
from crewflow.core.state import TaskStore
from crewflow.integrator.merge import format_conflict_report
from crewflow.schemas.config import CrewflowConfig
from crewflow.schemas.status import MergeStatus, TaskState
from crewflow.schemas.tasks import Role
from crewflow.utils.git import get_repo_root

console = Console()

DEFAULT_CONFIG = ".crewflow.yaml"

# Replies that reach consensus in one round
DRY_RUN_SCRIPT = {
    Role.ARCHITECT: ["Plan drafted. Ready to implement."],
    Role.CODER: ["Changes applied. Ready to proceed."],
    Role.REVIEWER: ["Approved, no issues found."],
    Role.TESTER: ["All checks pass."],
    Role.SPECIALIST: ["Done."],
}


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """crewflow: multi-agent code changes in isolated environments.

    Runs architect, coder and reviewer agents against a repository, each
    subtask on its own branch, and merges the results.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _load_config(config: str | None, repo: Path) -> CrewflowConfig:
    config_path = Path(config) if config else repo / DEFAULT_CONFIG
    return CrewflowConfig.load(config_path)


def _build_provider(kind: str, repo: Path, cfg: CrewflowConfig):
    worktrees = WorktreeEnvironmentProvider(repo, worktree_dir=cfg.orchestration.worktree_dir)
    if kind == "docker":
        return DockerEnvironmentProvider(cfg.environment, worktrees)
    return worktrees


def _store_for(repo: Path, cfg: CrewflowConfig) -> TaskStore:
    return TaskStore(repo / cfg.orchestration.state_dir)


def _resolve_repo(repo: str | None) -> Path:
    root = get_repo_root(Path(repo) if repo else None)
    if root is None:
        console.print("[red]Not inside a git repository.[/red]")
        sys.exit(1)
    return root


@main.command()
@click.argument("description")
@click.option("--repo", "-r", type=click.Path(exists=True, file_okay=False), help="Repository")
@click.option("--plan", "plan_file", type=click.Path(exists=True), help="YAML plan file")
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to .crewflow.yaml")
@click.option(
    "--provider",
    type=click.Choice(["docker", "worktree"]),
    default=None,
    help="Environment provider (defaults to the config file's)",
)
@click.option("--base", "base_branch", default=None, help="Base branch")
@click.option("--dry-run", is_flag=True, help="Use canned agent replies instead of claude")
def run(
    description: str,
    repo: str | None,
    plan_file: str | None,
    config: str | None,
    provider: str | None,
    base_branch: str | None,
    dry_run: bool,
) -> None:
    """Run a task end to end."""
    repo_root = _resolve_repo(repo)
    cfg = _load_config(config, repo_root)

    kind = provider or cfg.environment.provider
    if dry_run:
        kind = "worktree"
    env_provider = _build_provider(kind, repo_root, cfg)
    registry = LifecycleRegistry(env_provider, max_workers=cfg.orchestration.max_concurrency)

    agent = ScriptedAgentClient(DRY_RUN_SCRIPT) if dry_run else ClaudeCliAgentClient(cfg.agents)
    planner = YamlPlanner(plan_file) if plan_file else SingleTaskPlanner()

    orchestrator = Orchestrator(
        repository=repo_root,
        registry=registry,
        provider=env_provider,
        agent=agent,
        planner=planner,
        config=cfg,
        store=_store_for(repo_root, cfg),
    )
    restore = install_signal_handlers(
        registry, on_signal=lambda signum: orchestrator.cancel_all()
    )

    console.print(f"\n[bold blue]Task:[/bold blue] {description}")
    console.print(f"[dim]Repository: {repo_root}  Provider: {kind}[/dim]\n")
    if dry_run:
        console.print("[yellow]Dry run: agents replaced by canned replies[/yellow]\n")

    try:
        result = orchestrator.run(description, base_branch=base_branch)
    finally:
        restore()

    task = result.task
    style = _get_status_style(task.status)
    console.print(
        Panel(
            f"[{style}]{task.status.value}[/{style}]: {task.reason or '-'}",
            title=task.id,
        )
    )

    if result.merge_result and result.merge_result.status == MergeStatus.CONFLICTED:
        subtask_ids = {s.branch_name: s.id for s in task.subtasks}
        console.print(format_conflict_report(result.merge_result, subtask_ids))

    for dialogue in result.dialogues:
        console.print(
            f"Dialogue {dialogue.agent_a.value} <-> {dialogue.agent_b.value}: "
            f"{dialogue.rounds}/{dialogue.max_rounds} round(s), {dialogue.reason}"
        )

    if result.costs:
        console.print(f"Cost: ${result.costs.get('cost_usd', 0.0):.4f}")
    for failure in result.cleanup.failures:
        console.print(f"[yellow]Cleanup:[/yellow] {failure}")

    if not result.succeeded:
        sys.exit(1)


@main.command()
@click.argument("task_id", required=False)
@click.option("--repo", "-r", type=click.Path(exists=True, file_okay=False), help="Repository")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(task_id: str | None, repo: str | None, as_json: bool) -> None:
    """Show persisted tasks, or one task's history."""
    repo_root = _resolve_repo(repo)
    store = _store_for(repo_root, _load_config(None, repo_root))

    if task_id:
        task = store.load(task_id)
        if task is None:
            console.print(f"[red]Unknown task:[/red] {task_id}")
            sys.exit(1)

        if as_json:
            click.echo(json.dumps(task.model_dump(mode="json"), indent=2))
            return

        console.print(Panel(f"[bold]{task.id}[/bold]"))
        console.print(f"Request: {task.description}")
        console.print(f"Mode: {task.mode.value if task.mode else '-'}")
        console.print(f"Rounds: {task.rounds}")
        console.print(f"Reason: {task.reason or '-'}")

        table = Table(title="\nTransitions")
        table.add_column("From", style="dim")
        table.add_column("To", style="magenta")
        table.add_column("At", style="dim")
        table.add_column("Reason")
        for record in task.transitions:
            table.add_row(
                record.from_state.value if record.from_state else "-",
                record.to_state.value,
                record.at,
                record.reason or "",
            )
        console.print(table)

        if task.subtasks:
            subtasks = Table(title="\nSubtasks")
            subtasks.add_column("ID", style="cyan")
            subtasks.add_column("Branch", style="green")
            subtasks.add_column("Roles")
            for subtask in task.subtasks:
                subtasks.add_row(
                    subtask.id,
                    subtask.branch_name,
                    ", ".join(r.value for r in subtask.roles),
                )
            console.print(subtasks)
        return

    tasks = store.list_tasks()
    if as_json:
        click.echo(json.dumps([t.model_dump(mode="json") for t in tasks], indent=2))
        return

    if not tasks:
        console.print("[yellow]No tasks found.[/yellow]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Status", style="magenta")
    table.add_column("Mode", style="dim")
    table.add_column("Created", style="dim")
    table.add_column("Description")

    for task in tasks:
        status_style = _get_status_style(task.status)
        table.add_row(
            task.id,
            f"[{status_style}]{task.status.value}[/{status_style}]",
            task.mode.value if task.mode else "-",
            task.created_at,
            task.description[:60],
        )

    console.print(table)


def _get_status_style(status: TaskState) -> str:
    """Get Rich style for a task status."""
    styles = {
        TaskState.CREATED: "dim",
        TaskState.PLANNING: "yellow",
        TaskState.PROVISIONING: "yellow",
        TaskState.EXECUTING: "blue",
        TaskState.REVIEWING: "cyan",
        TaskState.MERGING: "magenta",
        TaskState.COMPLETED: "green bold",
        TaskState.FAILED: "red bold",
        TaskState.CANCELLED: "red",
    }
    return styles.get(status, "white")


@main.command()
@click.argument("task_id")
@click.option("--repo", "-r", type=click.Path(exists=True, file_okay=False), help="Repository")
@click.option("--markdown", is_flag=True, help="Print as markdown")
def conversation(task_id: str, repo: str | None, markdown: bool) -> None:
    """Print a task's conversation log."""
    repo_root = _resolve_repo(repo)
    store = _store_for(repo_root, _load_config(None, repo_root))
    path = store.conversation_path(task_id)

    if not path.exists():
        console.print(f"[yellow]No conversation recorded for {task_id}.[/yellow]")
        return

    log = ConversationLog.load(path)
    if markdown:
        click.echo(log.to_markdown())
        return

    for entry in log.entries():
        tag = " (dialogue)" if entry.is_dialogue else ""
        console.print(
            f"[bold cyan]{entry.speaker_role}[/bold cyan]{tag} [dim]{entry.timestamp}[/dim]"
        )
        console.print(entry.text, markup=False)
        console.print()


@main.command()
@click.option("--repo", "-r", type=click.Path(exists=True, file_okay=False), help="Repository")
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to .crewflow.yaml")
@click.option("--provider", type=click.Choice(["docker", "worktree"]), default=None)
@click.option("--prefix", default=None, help="Environment name prefix to sweep")
@click.option("--max-age-hours", type=float, default=None, help="Only sweep older environments")
def cleanup(
    repo: str | None,
    config: str | None,
    provider: str | None,
    prefix: str | None,
    max_age_hours: float | None,
) -> None:
    """Remove environments left behind by crashed runs."""
    repo_root = _resolve_repo(repo)
    cfg = _load_config(config, repo_root)
    env_provider = _build_provider(provider or cfg.environment.provider, repo_root, cfg)
    registry = LifecycleRegistry(env_provider)

    prefix = prefix or cfg.orchestration.environment_prefix
    console.print(f"[bold]Sweeping environments matching[/bold] {prefix}*\n")

    report = registry.force_release_by_owner_prefix(prefix, max_age_hours=max_age_hours)
    console.print(f"Removed {report.released_count} environment(s).")
    for failure in report.failures:
        console.print(f"[red]✗[/red] {failure}")

    worktrees = (
        env_provider.worktrees
        if isinstance(env_provider, DockerEnvironmentProvider)
        else env_provider
    )
    stale = worktrees.manager.cleanup_stale_worktrees()
    if stale:
        console.print(f"Pruned {len(stale)} stale worktree directory(ies).")

    if not report.ok:
        sys.exit(1)
    console.print("\n[green]Cleanup complete.[/green]")


@main.command()
@click.argument("plan_file", type=click.Path(exists=True), default="plan.yaml")
def validate(plan_file: str) -> None:
    """Validate a YAML plan file."""
    console.print(f"[bold]Validating:[/bold] {plan_file}\n")

    try:
        plan = load_plan(plan_file)
    except CrewflowError as e:
        console.print(f"[red]✗[/red] Validation failed: {e}")
        sys.exit(1)

    console.print("[green]✓[/green] Schema validation passed")
    console.print(f"[green]✓[/green] Mode: {plan.resolved_mode().value}")
    for index, spec in enumerate(plan.subtasks, start=1):
        roles = ", ".join(r.value for r in spec.roles)
        console.print(f"    {index}. {spec.description} [dim]({roles})[/dim]")


@main.command()
@click.argument("output", type=click.Path(), default=DEFAULT_CONFIG)
def init(output: str) -> None:
    """Initialize a new configuration file."""
    output_path = Path(output)

    if output_path.exists():
        if not click.confirm(f"{output} already exists. Overwrite?"):
            return

    config = CrewflowConfig()
    config.save(output_path)
    console.print(f"[green]Created:[/green] {output}")


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"crewflow v{__version__}")


if __name__ == "__main__":
    main()
