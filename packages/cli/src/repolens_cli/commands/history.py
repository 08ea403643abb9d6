"""history command — list past review runs from the store."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_STATUS_STYLE = {"complete": "green", "running": "yellow", "error": "red"}


@click.command("history")
@click.option("--repo", "repo_path", default=None, help="Only runs of this repository path.")
@click.option("--limit", default=20, show_default=True, help="Maximum number of runs to show.")
@click.pass_context
def history_cmd(ctx, repo_path: str | None, limit: int):
    """Show past review runs, most recent first."""
    from repolens_core.lifecycle import repo_key

    store = ctx.obj["store"]
    runs = store.list_runs(repo_key(repo_path) if repo_path else None, limit=limit)
    if not runs:
        console.print("[yellow]No review runs found.[/yellow]")
        return

    table = Table(title="Review History", show_header=True, header_style="bold cyan")
    table.add_column("Run", style="bold", no_wrap=True)
    table.add_column("Repository", max_width=40)
    table.add_column("Mode", width=5)
    table.add_column("Status", width=9)
    table.add_column("Findings", justify="right", width=9)
    table.add_column("Started At", width=20)
    table.add_column("Error", max_width=30)

    for run in runs:
        style = _STATUS_STYLE.get(run.status, "white")
        table.add_row(
            run.id,
            run.repo_path,
            run.mode,
            f"[{style}]{run.status}[/{style}]",
            str(len(store.get_findings(run.id))),
            run.started_at[:19].replace("T", " "),
            run.error or "",
        )

    console.print(table)
