"""init command — interactive setup of .repolens.yml for a repository."""

from __future__ import annotations

from pathlib import Path

import click
import yaml
from rich.console import Console

from repolens_core.config import DEFAULT_CONFIG, KNOWN_AGENTS

console = Console()


@click.command("init")
@click.option("--yes", "-y", is_flag=True, help="Accept every default without prompting.")
@click.pass_context
def init_cmd(ctx, yes: bool):
    """Write a starter configuration file.

    Creates (or updates) the file given by --config, .repolens.yml by
    default, preserving keys already present.
    """
    config_path = Path(ctx.obj.get("config_path") or ".repolens.yml")
    console.print("\n[bold cyan]repolens init[/bold cyan]\n")

    if yes:
        provider = DEFAULT_CONFIG["model"]
        agents = list(KNOWN_AGENTS)
        store_path = DEFAULT_CONFIG["store_path"]
        excludes: list[str] = []
    else:
        provider = click.prompt(
            "AI provider",
            type=click.Choice(["anthropic", "openai"]),
            default=DEFAULT_CONFIG["model"],
        )
        agents_answer = click.prompt("Investigators (comma separated)", default=",".join(KNOWN_AGENTS))
        agents = [a.strip() for a in agents_answer.split(",") if a.strip()]
        unknown = [a for a in agents if a not in KNOWN_AGENTS]
        if unknown or not agents:
            raise click.UsageError(f"Unknown agent(s): {', '.join(unknown) or '(none given)'}")
        store_path = click.prompt("SQLite database path", default=DEFAULT_CONFIG["store_path"])
        exclude_answer = click.prompt("Paths to exclude (comma separated globs)", default="", show_default=False)
        excludes = [p.strip() for p in exclude_answer.split(",") if p.strip()]

    config: dict = {"model": provider, "agents": agents, "store_path": store_path}
    if excludes:
        config["exclude"] = excludes

    _write_config(config_path, config)
    console.print(f"[green]Created {config_path}[/green]")

    api_key_env = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
    console.print(f"\n[yellow]Remember to export [bold]{api_key_env}[/bold] before running a review.[/yellow]")
    console.print("\n[bold green]Setup complete![/bold green]")
    console.print("Run a review with: [bold]repolens review .[/bold]")


def _write_config(path: Path, config: dict) -> None:
    """Write or update the config file, preserving any existing keys."""
    existing: dict = {}
    if path.exists():
        existing = yaml.safe_load(path.read_text()) or {}
    existing.update(config)
    path.write_text(yaml.dump(existing, default_flow_style=False, sort_keys=False))
