"""
CLI interface for contentgen.

Provides command-line access to generation, history and statistics.
"""

import sys
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from contentgen.config.loader import Settings, load_settings
from contentgen.config.logging import configure_logging
from contentgen.core.errors import GenerationError
from contentgen.core.options import GenerationOptions
from contentgen.core.orchestrator import GenerationOrchestrator
from contentgen.core.resolver import ModelResolver
from contentgen.core.stats import StatsCache
from contentgen.providers.registry import build_registry
from contentgen.storage.cache import RedisCache
from contentgen.storage.models import Agent, GenerationStatus
from contentgen.storage.repository import AgentRepository, GenerationRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def build_orchestrator(settings: Settings) -> GenerationOrchestrator:
    """Wire an orchestrator from validated settings."""
    generations = GenerationRepository(settings.db_path)
    return GenerationOrchestrator(
        registry=build_registry(
            settings.credentials,
            max_concurrency=settings.max_concurrency_per_provider,
            request_timeout=settings.request_timeout_seconds,
        ),
        generations=generations,
        agents=AgentRepository(settings.db_path),
        stats=StatsCache(
            RedisCache.from_url(settings.redis_url),
            generations,
            ttl_seconds=settings.stats_ttl_seconds,
        ),
        resolver=ModelResolver(strict=settings.strict_model_resolution),
        retry_policy=settings.retry,
        request_timeout=settings.request_timeout_seconds,
        persistence_policy=settings.persistence_failure_policy,
        default_model=settings.default_model,
    )


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


@contextmanager
def _orchestrator(ctx: typer.Context) -> Iterator[GenerationOrchestrator]:
    """Build an orchestrator and shut its provider workers down afterwards."""
    orchestrator = build_orchestrator(_settings(ctx))
    try:
        yield orchestrator
    finally:
        orchestrator.registry.close()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
):
    """contentgen CLI."""
    configure_logging(log_level, json_output=json_logs)
    try:
        ctx.obj = {"settings": load_settings(config)}
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if ctx.invoked_subcommand is None:
        console.print("contentgen - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the contentgen database."""
    try:
        initialize_schema(_settings(ctx).db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except GenerationError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def providers(ctx: typer.Context):
    """List configured providers and their models."""
    with _orchestrator(ctx) as orchestrator:
        available = orchestrator.available_providers()
        models = {provider: orchestrator.models_for_provider(provider) for provider in available}
    if not available:
        console.print("[bold yellow]No providers configured[/] - set an API key such as OPENAI_API_KEY")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Models")
    for provider in available:
        table.add_row(provider, ", ".join(models[provider]))
    console.print(table)


@app.command()
def generate(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Task prompt"),
    user: str = typer.Option(..., "--user", "-u", help="Requesting user id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model identifier"),
    temperature: Optional[float] = typer.Option(None, "--temperature", "-t"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens"),
    system_prompt: Optional[str] = typer.Option(None, "--system-prompt", "-s"),
    context: Optional[str] = typer.Option(None, "--context"),
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Agent id to attribute"),
):
    """Generate content with the model's provider."""
    try:
        with _orchestrator(ctx) as orchestrator:
            result = orchestrator.generate(
                prompt,
                user,
                GenerationOptions(
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    system_prompt=system_prompt,
                    context=context,
                    agent_id=agent,
                ),
            )
    except GenerationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(result.content)
    console.print(
        f"\n[dim]{result.metadata['provider']}/{result.metadata['model']} · "
        f"{result.tokens['total']} tokens · {_format_currency(result.cost)} · "
        f"{result.metadata['duration']} ms · id {result.generation_id}[/]"
    )
    if result.persistence_error:
        console.print(f"[yellow]Warning:[/] not fully recorded: {result.persistence_error}")


@app.command()
def stats(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="User id"),
):
    """Show aggregated generation statistics for a user."""
    try:
        with _orchestrator(ctx) as orchestrator:
            snapshot = orchestrator.get_stats(user)
    except GenerationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Generation stats for {user}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total generations", str(snapshot.total_generations))
    table.add_row("Successful", str(snapshot.successful_generations))
    table.add_row("Failed", str(snapshot.failed_generations))
    table.add_row("Total tokens", str(snapshot.total_tokens))
    table.add_row("Total cost", _format_currency(snapshot.total_cost))
    table.add_row("Average duration", f"{snapshot.average_duration:,.0f} ms")
    table.add_row("Most used model", snapshot.most_used_model)
    console.print(table)


@app.command()
def history(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    status: Optional[GenerationStatus] = typer.Option(None, "--status", case_sensitive=False),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(20, "--limit"),
):
    """List a user's generations, newest first."""
    try:
        with _orchestrator(ctx) as orchestrator:
            result = orchestrator.list_generations(
                user, page=page, limit=limit, status=status, model=model
            )
    except GenerationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.generations:
        console.print("\n[dim]No generations found.[/]")
        return

    table = Table(title=f"Generations (page {result.page}, {result.total} total)")
    for column in ("Id", "Created", "Model", "Status", "Tokens", "Cost"):
        table.add_column(column)
    for generation in result.generations:
        table.add_row(
            generation.id,
            generation.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            generation.model,
            generation.status.value,
            str(generation.total_tokens or 0),
            _format_currency(generation.cost or 0),
        )
    console.print(table)


@app.command("agent-create")
def agent_create(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="Owner user id"),
    name: str = typer.Option(..., "--name"),
    agent_type: str = typer.Option("content", "--type"),
    model: str = typer.Option("gpt-3.5-turbo", "--model", "-m"),
    system_prompt: str = typer.Option(..., "--system-prompt", "-s"),
    temperature: float = typer.Option(0.7, "--temperature", "-t"),
    max_tokens: int = typer.Option(1000, "--max-tokens"),
    constraint: Optional[List[str]] = typer.Option(None, "--constraint"),
    default: bool = typer.Option(False, "--default", help="Make this the default agent for its type"),
):
    """Create a reusable generation preset."""
    try:
        agent = AgentRepository(_settings(ctx).db_path).create(Agent(
            id=uuid.uuid4().hex,
            user_id=user,
            name=name,
            type=agent_type,
            model=model,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            constraints=list(constraint or []),
            is_default=default,
            created_at=datetime.now(),
        ))
    except GenerationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Agent created: {agent.id}")


def _format_currency(amount: float) -> str:
    """Format currency with enough precision for sub-cent requests."""
    return f"${abs(amount):,.6f}"


if __name__ == "__main__":
    app()
