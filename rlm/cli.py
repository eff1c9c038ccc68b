"""Command-line interface for the meeting-query pipeline."""

import asyncio
import json
from pathlib import Path
from typing import Annotated

import typer

from .config.loader import load_config
from .config.factory import create_from_profile

app = typer.Typer(
    name="rlm",
    help="Ask questions across a set of meeting records.",
    add_completion=False,
)


def load_agent_file(path: Path) -> list[dict]:
    """Read agent records from a JSON list or a {"agents": [...]} object."""
    with open(path) as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("agents", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of agent records")
    return data


@app.command()
def ask(
    query: Annotated[str, typer.Argument(help="Question to answer")],
    agents_file: Annotated[
        Path,
        typer.Option("--agents", "-a", help="JSON file of meeting agent records"),
    ],
    repl: Annotated[
        bool,
        typer.Option("--repl", help="Answer by generating and running sandboxed code"),
    ] = False,
    profile: Annotated[
        str,
        typer.Option("--profile", "-p", help="Configuration profile from models.yaml"),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: text or json"),
    ] = "text",
):
    """
    Answer a question across meeting records.

    Examples:

        # Decompose, execute and aggregate
        rlm ask "What are all the action items?" --agents meetings.json

        # Use the sandboxed code path
        rlm ask "How many meetings mention budget?" -a meetings.json --repl

        # Offline run against the mock backend
        rlm ask "What was decided?" -a meetings.json --profile test --format json
    """
    if output_format not in ("text", "json"):
        typer.echo("Error: Format must be one of: text, json", err=True)
        raise typer.Exit(1)

    if not agents_file.exists():
        typer.echo(f"Error: Agents file not found: {agents_file}", err=True)
        raise typer.Exit(1)

    try:
        agents = load_agent_file(agents_file)
    except (ValueError, json.JSONDecodeError) as e:
        typer.echo(f"Error: Could not read agents: {e}", err=True)
        raise typer.Exit(1)

    asyncio.run(_ask_async(query, agents, repl, profile, output_format))


async def _ask_async(
    query: str,
    agents: list[dict],
    repl: bool,
    profile: str | None,
    output_format: str,
):
    """Async implementation of ask."""
    from .llm import as_completion_call

    config = load_config(profile)
    try:
        provider, pipeline = create_from_profile(config)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    pipeline.load_agents(agents)

    def show_progress(step: str, kind: str, details: dict):
        if output_format == "text":
            typer.echo(f"  [{step}] {kind}", err=True)

    pipeline.set_progress_callback(show_progress)

    try:
        async with provider:
            call = as_completion_call(
                provider,
                temperature=config.llm.temperature,
                max_tokens=config.llm.max_tokens,
            )
            if repl:
                result = await pipeline.process_with_repl(query, call)
            else:
                result = await pipeline.process(query, call)
    finally:
        pipeline.terminate()

    if output_format == "json":
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    typer.echo()
    typer.echo(result.response)
    typer.echo()
    metadata = result.metadata
    typer.echo(f"Tier: {result.tier.value}")
    if metadata.get("strategy"):
        typer.echo(f"Strategy: {metadata['strategy']}")
    if metadata.get("aggregation_type"):
        typer.echo(f"Aggregation: {metadata['aggregation_type']}")
    if metadata.get("pipeline_time") is not None:
        typer.echo(f"Time: {metadata['pipeline_time']:.2f}s")

    if not result.success:
        raise typer.Exit(1)


@app.command()
def classify(
    query: Annotated[str, typer.Argument(help="Question to classify")],
    agents_file: Annotated[
        Path,
        typer.Option("--agents", "-a", help="Optional JSON file of agent records"),
    ] = None,
    profile: Annotated[
        str,
        typer.Option("--profile", "-p", help="Configuration profile from models.yaml"),
    ] = None,
):
    """
    Show how a question would be classified and planned, without calling a model.

    Examples:

        rlm classify "Compare the Q1 and Q2 planning meetings"
        rlm classify "What patterns emerge?" --agents meetings.json
    """
    from .context import ContextStore
    from .orchestration import QueryDecomposer

    config = load_config(profile)
    store = ContextStore()
    if agents_file is not None:
        store.load_agents(load_agent_file(agents_file))

    decomposer = QueryDecomposer(store, config.pipeline.decomposer)
    plan = decomposer.decompose(query)

    typer.echo(f"Intent:     {plan.classification.intent.value}")
    typer.echo(f"Complexity: {plan.classification.complexity.value}")
    typer.echo(f"Strategy:   {plan.strategy.type.value} ({plan.strategy.reason})")
    typer.echo(f"Est. calls: {plan.strategy.estimated_calls}")
    for sub_query in plan.sub_queries:
        targets = ", ".join(sub_query.target_agent_ids) or "-"
        typer.echo(f"  {sub_query.id} [{sub_query.type.value}] -> {targets}")


@app.command()
def profiles():
    """List available configuration profiles."""
    import yaml

    config_path = Path(__file__).parent / "config" / "models.yaml"

    with open(config_path) as f:
        data = yaml.safe_load(f)

    typer.echo("Available profiles:\n")
    for name, profile in data.get("profiles", {}).items():
        llm = profile.get("llm", {})
        typer.echo(f"  {name}")
        typer.echo(f"    Backend: {llm.get('backend', 'openrouter')}")
        typer.echo(f"    Model: {llm.get('model') or 'default'}")
        typer.echo()


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
