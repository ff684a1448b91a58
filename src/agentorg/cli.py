"""CLI entry point for agentorg."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from agentorg import __version__
from agentorg.config import Settings
from agentorg.errors import AgentOrgError
from agentorg.logging import setup_logging

if TYPE_CHECKING:
    from agentorg.delegation.models import ChatResult, DelegatedTask
    from agentorg.services import Services

console = Console()

T = TypeVar("T")

STATUS_STYLE = {
    "pending": "dim",
    "in_progress": "yellow",
    "completed": "green",
    "needs_review": "magenta",
    "failed": "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="agentorg")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="AGENTORG_DATA_DIR",
    help="Directory holding the agentorg database",
)
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None) -> None:
    """agentorg: hierarchical delegation for LLM agents."""
    ctx.ensure_object(dict)
    settings = Settings.from_env()
    if data_dir is not None:
        settings = dataclasses.replace(settings, data_dir=data_dir)
    ctx.obj["settings"] = settings
    setup_logging(settings.log_level, settings.log_format)


def _with_services(ctx: click.Context, action: Callable[[Services], Awaitable[T]]) -> T:
    """Open services for one command and run ``action`` against them."""
    from agentorg.services import open_services

    async def runner() -> T:
        async with open_services(ctx.obj["settings"], model=ctx.obj.get("model")) as services:
            return await action(services)

    try:
        return asyncio.run(runner())
    except AgentOrgError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize agentorg: create the data directory and database."""
    from agentorg.storage.database import Database

    settings: Settings = ctx.obj["settings"]
    db = Database(settings.data_dir)
    db.ensure_tables()
    console.print(f"[green]agentorg initialized at {db.data_dir}[/green]")
    console.print(f"  Database: {db.db_path}")


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include inactive agents")
@click.pass_context
def agents(ctx: click.Context, show_all: bool) -> None:
    """List agents and who they may delegate to."""

    async def action(services: Services) -> list[Any]:
        return await services.agents.list_agents(active_only=not show_all)

    found = _with_services(ctx, action)
    if not found:
        console.print("[dim]No agents yet. Load some with import-agents.[/dim]")
        return

    table = Table(title="Agents")
    table.add_column("Slug", style="cyan")
    table.add_column("Name")
    table.add_column("Role", style="green")
    table.add_column("Delegates To")
    table.add_column("Permissions")
    table.add_column("Depth")
    table.add_column("Active")

    for agent in found:
        table.add_row(
            agent.slug,
            agent.display_name,
            agent.role,
            ", ".join(sorted(agent.can_delegate_to)) or "-",
            ", ".join(sorted(agent.action_permissions)),
            str(agent.max_delegation_depth),
            "yes" if agent.is_active else "[red]no[/red]",
        )

    console.print(table)


@main.command("import-agents")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_agents_cmd(ctx: click.Context, path: Path) -> None:
    """Load agent definitions from a JSON file."""
    from agentorg.services import import_agents

    async def action(services: Services) -> list[Any]:
        return await import_agents(services.agents, path)

    try:
        imported = _with_services(ctx, action)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"[green]Imported {len(imported)} agent(s)[/green]")


@main.command()
@click.argument("slug")
@click.argument("message")
@click.option("--user-id", default="cli", help="User id recorded with the message")
@click.pass_context
def chat(ctx: click.Context, slug: str, message: str, user_id: str) -> None:
    """Send one message to an agent."""

    async def action(services: Services) -> ChatResult:
        return await services.runtime.execute_agent_chat(slug, message, user_id)

    result = _with_services(ctx, action)
    _print_chat_result(result)


@main.command()
@click.argument("slug")
@click.argument("title")
@click.option("--description", default="", help="Task details")
@click.option("--priority", type=click.IntRange(1, 10), default=None, help="1 = highest")
@click.option("--run", "run_now", is_flag=True, help="Execute the task immediately")
@click.pass_context
def delegate(
    ctx: click.Context,
    slug: str,
    title: str,
    description: str,
    priority: int | None,
    run_now: bool,
) -> None:
    """Delegate a task to an agent as the user."""

    async def action(services: Services) -> tuple[str | None, str | None, ChatResult | None]:
        outcome = await services.engine.delegate_from_user(slug, title, description, priority)
        task_id = outcome.task_id
        if task_id is None or not run_now:
            return task_id, outcome.error, None
        return task_id, None, await services.runtime.execute_agent_task(task_id)

    task_id, error, result = _with_services(ctx, action)
    if error:
        raise click.ClickException(error)

    console.print(f"[green]Delegated:[/green] {task_id}")
    if result is not None:
        _print_chat_result(result)
    elif run_now:
        console.print(f"[red]Task {task_id} failed; see: agentorg tasks {slug}[/red]")


@main.command("run-task")
@click.argument("task_id")
@click.pass_context
def run_task(ctx: click.Context, task_id: str) -> None:
    """Execute a pending task."""

    async def action(services: Services) -> tuple[ChatResult | None, DelegatedTask | None]:
        result = await services.runtime.execute_agent_task(task_id)
        return result, await services.tasks.get(task_id)

    result, task = _with_services(ctx, action)
    if task is None:
        raise click.ClickException(f"Task not found: {task_id}")
    if result is None:
        console.print(f"[red]Task {task_id} not executed[/red] (status: {task.status})")
        if task.error:
            console.print(f"  Error: {task.error}")
        return
    _print_chat_result(result)


@main.command("run-pending")
@click.option("--agent", "agent_slug", default=None, help="Only this agent's tasks")
@click.option("--limit", type=int, default=None, help="Maximum tasks to run")
@click.pass_context
def run_pending(ctx: click.Context, agent_slug: str | None, limit: int | None) -> None:
    """Execute queued tasks in priority order."""
    from agentorg.errors import NotFoundError

    async def action(services: Services) -> list[ChatResult | None]:
        agent_id = None
        if agent_slug is not None:
            agent = await services.registry.get(agent_slug)
            if agent is None:
                raise NotFoundError("agent", agent_slug)
            agent_id = agent.id
        return await services.runtime.run_pending_tasks(agent_id, limit)

    results = _with_services(ctx, action)
    done = sum(1 for r in results if r is not None)
    console.print(f"Ran {len(results)} task(s): {done} finished, {len(results) - done} failed")


@main.command()
@click.argument("task_id")
@click.option("--feedback", default=None, help="Note for the agent")
@click.pass_context
def approve(ctx: click.Context, task_id: str, feedback: str | None) -> None:
    """Approve a deliverable awaiting review."""

    async def action(services: Services) -> DelegatedTask:
        return await services.engine.approve_deliverable(task_id, feedback)

    task = _with_services(ctx, action)
    console.print(f"[green]Approved[/green] {task.id}: {task.title}")


@main.command()
@click.argument("task_id")
@click.option("--feedback", default=None, help="Why the deliverable was turned down")
@click.pass_context
def reject(ctx: click.Context, task_id: str, feedback: str | None) -> None:
    """Reject a deliverable awaiting review."""

    async def action(services: Services) -> DelegatedTask:
        return await services.engine.reject_deliverable(task_id, feedback)

    task = _with_services(ctx, action)
    console.print(f"[red]Rejected[/red] {task.id}: {task.review_feedback}")


@main.command("request-changes")
@click.argument("task_id")
@click.argument("feedback")
@click.pass_context
def request_changes(ctx: click.Context, task_id: str, feedback: str) -> None:
    """Send a deliverable back to its agent with feedback."""

    async def action(services: Services) -> DelegatedTask:
        return await services.engine.request_changes(task_id, feedback)

    try:
        task = _with_services(ctx, action)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="FEEDBACK") from exc
    console.print(f"[yellow]Changes requested[/yellow] {task.id} is pending again")


@main.command()
@click.argument("slug")
@click.option(
    "--status",
    type=click.Choice(["pending", "in_progress", "completed", "needs_review", "failed"]),
    default=None,
)
@click.pass_context
def tasks(ctx: click.Context, slug: str, status: str | None) -> None:
    """Show tasks assigned to an agent."""
    from agentorg.errors import NotFoundError

    async def action(services: Services) -> list[DelegatedTask]:
        agent = await services.registry.get(slug)
        if agent is None:
            raise NotFoundError("agent", slug)
        return await services.tasks.list_by_assignee(agent.id, status=status)

    found = _with_services(ctx, action)
    if not found:
        console.print(f"[dim]No tasks for {slug}.[/dim]")
        return

    table = Table(title=f"Tasks for {slug}")
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Title", max_width=40)
    table.add_column("Priority")
    table.add_column("Depth")
    table.add_column("Status")
    table.add_column("Created")

    for task in found:
        style = STATUS_STYLE.get(task.status, "dim")
        table.add_row(
            task.id,
            task.title[:40],
            str(task.priority),
            str(task.depth),
            f"[{style}]{task.status}[/{style}]",
            task.created_at.isoformat()[:16],
        )

    console.print(table)


@main.command()
@click.argument("task_id")
@click.pass_context
def chain(ctx: click.Context, task_id: str) -> None:
    """Show every task related to a task's delegation chain."""

    async def action(services: Services) -> list[DelegatedTask]:
        return await services.engine.get_delegation_chain(task_id)

    related = _with_services(ctx, action)
    if not related:
        raise click.ClickException(f"Task not found: {task_id}")

    table = Table(title=f"Delegation chain for {task_id}")
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Title", max_width=40)
    table.add_column("Assigned By")
    table.add_column("Assigned To")
    table.add_column("Depth")
    table.add_column("Status")

    for task in related:
        style = STATUS_STYLE.get(task.status, "dim")
        table.add_row(
            task.id,
            task.title[:40],
            task.assigned_by,
            task.assigned_to,
            str(task.depth),
            f"[{style}]{task.status}[/{style}]",
        )

    console.print(table)


def _print_chat_result(result: ChatResult) -> None:
    """Print an agent response with a short summary."""
    console.print(f"\n[bold cyan]{result.agent_slug}:[/bold cyan] {result.response}")
    console.print(f"\n[dim]Model: {result.model or '-'} | Tokens: {result.tokens_used}[/dim]")

    if result.delegations:
        console.print("\n[bold]Delegations:[/bold]")
        for d in result.delegations:
            console.print(f"  - {d.to_agent_slug}: {d.task_id} ({d.status})")

    failed = [a for a in result.actions if a.status == "failed"]
    if failed:
        console.print("\n[red]Failed actions:[/red]")
        for action in failed:
            console.print(f"  - {action.action_type}: {action.error_message}")
