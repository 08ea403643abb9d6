"""stats command — aggregate findings across a repository's review history."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_SEVERITIES = ("critical", "high", "medium", "low", "info")
_SEV_STYLE = {"critical": "red", "high": "yellow", "medium": "blue", "low": "dim", "info": "dim"}


@click.command("stats")
@click.option("--repo", "repo_path", default=".", show_default=True, help="Repository path.")
@click.option("--top", default=10, show_default=True, help="Number of top entries to show per category.")
@click.pass_context
def stats_cmd(ctx, repo_path: str, top: int):
    """Show aggregated finding statistics for a repository.

    Reports the severity distribution, which investigators flag the most and
    the most frequently flagged files, useful for spotting systemic issues.
    """
    from repolens_core.lifecycle import repo_key, repository_stats

    key = repo_key(repo_path)
    stats = repository_stats(ctx.obj["store"], key)
    if not stats.total_runs:
        console.print("[yellow]No review runs found for this repository.[/yellow]")
        return

    # --- Summary ---
    console.print(f"\n[bold]Finding stats for [cyan]{key}[/cyan][/bold]")
    console.print(f"  Total runs:     {stats.total_runs}")
    console.print(f"  Total findings: {stats.total_findings}")
    console.print(f"  Avg per run:    {stats.total_findings / stats.total_runs:.1f}")
    if stats.by_status:
        console.print("  By status:      " + ", ".join(f"{s} {n}" for s, n in sorted(stats.by_status.items())))

    # --- Severity breakdown ---
    if stats.by_severity:
        sev_table = Table(title="Severity Breakdown", show_header=True)
        sev_table.add_column("Severity", style="bold")
        sev_table.add_column("Count", justify="right")
        sev_table.add_column("% of total", justify="right")
        for sev in _SEVERITIES:
            count = stats.by_severity.get(sev, 0)
            pct = f"{count / stats.total_findings * 100:.1f}%" if stats.total_findings else "0%"
            style = _SEV_STYLE.get(sev, "white")
            sev_table.add_row(f"[{style}]{sev}[/{style}]", str(count), pct)
        console.print(sev_table)

    # --- By agent ---
    if stats.by_agent:
        agent_table = Table(title="Findings by Agent", show_header=True)
        agent_table.add_column("Agent")
        agent_table.add_column("Findings", justify="right")
        for agent, count in stats.by_agent.most_common():
            agent_table.add_row(agent, str(count))
        console.print(agent_table)

    # --- Most flagged files ---
    if stats.by_file:
        file_table = Table(title=f"Top {top} Most Flagged Files", show_header=True)
        file_table.add_column("File")
        file_table.add_column("Findings", justify="right")
        for file_path, count in stats.by_file.most_common(top):
            file_table.add_row(file_path, str(count))
        console.print(file_table)
