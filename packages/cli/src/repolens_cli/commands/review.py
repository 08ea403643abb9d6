"""review command — run an evidence-gated review of a repository."""

from __future__ import annotations

import asyncio
import json

import click
from rich.console import Console
from rich.table import Table

from repolens_core.config import KNOWN_AGENTS, validate_config
from repolens_core.orchestrator import Orchestrator

console = Console()

_SEVERITY_STYLE = {"critical": "red", "high": "yellow", "medium": "blue", "low": "dim", "info": "dim"}
_SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "info": 4}


def _print_progress(payload: dict) -> None:
    """Echo pipeline steps and agent lifecycle events while the review runs."""
    if payload.get("type") != "event":
        return
    event = payload["event"]
    data = event.get("data") or {}
    agent = event.get("agent")
    if event["type"] == "evidence_collected" and data.get("kind") == "pipeline_step":
        if data.get("warning"):
            console.print(f"[yellow]  ! {data['warning']}[/yellow]")
        else:
            console.print(f"[dim]  {data.get('message', '')}[/dim]")
    elif event["type"] == "agent_started":
        console.print(f"[cyan]  {agent} agent started[/cyan]")
    elif event["type"] == "agent_completed":
        console.print(f"[green]  {agent} agent completed[/green]")
    elif event["type"] == "agent_failed":
        console.print(f"[red]  {agent} agent failed: {data.get('error')}[/red]")


def print_findings(findings: list, title: str) -> None:
    if not findings:
        console.print("[green]No findings.[/green]")
        return
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Severity", width=9)
    table.add_column("Agent", width=12)
    table.add_column("Title", max_width=50)
    table.add_column("Location", max_width=40)
    table.add_column("Conf.", justify="right", width=5)
    table.add_column("Status", width=9)
    for f in sorted(findings, key=lambda f: (_SEVERITY_ORDER.get(f.severity, 5), -f.confidence)):
        style = _SEVERITY_STYLE.get(f.severity, "white")
        location = f"{f.evidence[0].file_path}:{f.evidence[0].start_line}" if f.evidence else ""
        table.add_row(
            f.id,
            f"[{style}]{f.severity}[/{style}]",
            f.agent,
            f.title,
            location,
            f"{f.confidence:.2f}",
            f.status,
        )
    console.print(table)


@click.command("review")
@click.argument("path", default=".", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--mode",
    type=click.Choice(["full", "diff"]),
    default="full",
    show_default=True,
    help="Review the whole repository or only the working changes and what they affect.",
)
@click.option(
    "--agent",
    "agents",
    multiple=True,
    type=click.Choice(list(KNOWN_AGENTS)),
    help="Investigator to run; repeat for several. Defaults to the configured agents.",
)
@click.option(
    "--model",
    type=click.Choice(["anthropic", "openai"]),
    default=None,
    help="AI model provider. Overrides config file.",
)
@click.option("--no-challenge", is_flag=True, help="Skip the challenge pass.")
@click.option("--no-explain", is_flag=True, help="Skip the explanation pass.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def review_cmd(
    ctx,
    path: str,
    mode: str,
    agents: tuple[str, ...],
    model: str | None,
    no_challenge: bool,
    no_explain: bool,
    as_json: bool,
):
    """Review the repository at PATH with concurrent AI investigators.

    Each investigator must gather evidence with its tools before it may
    report; findings are deduplicated against earlier runs, challenged by an
    independent validator and explained in plain language.

    \b
    Required environment variables:
      ANTHROPIC_API_KEY    Required when using --model anthropic
      OPENAI_API_KEY       Required when using --model openai
    Optional:
      BRAVE_SEARCH_API_KEY Enables the web_search tool
    """
    from repolens_core.providers.registry import create_model_client

    config = dict(ctx.obj["config"])
    if model:
        config["model"] = model
    if agents:
        config["agents"] = list(agents)
    if no_challenge:
        config["challenge"] = False
    if no_explain:
        config["explain"] = False

    try:
        validate_config(config)
    except ValueError as e:
        raise click.UsageError(str(e))

    if config["model"] == "anthropic" and not config.get("anthropic_api_key"):
        raise click.UsageError("ANTHROPIC_API_KEY environment variable is not set.")
    if config["model"] == "openai" and not config.get("openai_api_key"):
        raise click.UsageError("OPENAI_API_KEY environment variable is not set.")

    store = ctx.obj["store"]
    orchestrator = Orchestrator(
        store,
        create_model_client(config),
        config,
        emit=None if as_json else _print_progress,
    )

    if not as_json:
        console.print(f"\n[bold]Reviewing [cyan]{path}[/cyan] ({mode} mode)[/bold]\n")
    result = asyncio.run(orchestrator.run_review(path, mode=mode, agents=config["agents"]))

    if as_json:
        click.echo(
            json.dumps(
                {
                    "runId": result.run_id,
                    "status": result.status,
                    "error": result.error,
                    "cancelled": result.cancelled,
                    "warnings": result.warnings,
                    "duplicates": result.duplicates,
                    "findings": [_finding_dict(f) for f in result.findings],
                },
                indent=2,
            )
        )
        return

    console.print()
    print_findings(result.findings, f"Findings — run {result.run_id}")
    if result.duplicates:
        console.print(f"[dim]{result.duplicates} finding(s) already reported in earlier runs were skipped.[/dim]")
    if result.status == "error":
        console.print(f"[red]Review ended with an error: {result.error}[/red]")
        ctx.exit(1)


def _finding_dict(finding) -> dict:
    return {
        "id": finding.id,
        "agent": finding.agent,
        "category": finding.category,
        "severity": finding.severity,
        "title": finding.title,
        "description": finding.description,
        "confidence": finding.confidence,
        "status": finding.status,
        "fingerprint": finding.fingerprint,
        "evidence": [
            {"filePath": e.file_path, "startLine": e.start_line, "endLine": e.end_line, "snippet": e.snippet}
            for e in finding.evidence
        ],
    }
