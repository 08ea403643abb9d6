"""findings commands — list findings and move them through their lifecycle."""

from __future__ import annotations

import click
from rich.console import Console

from repolens_cli.commands.review import print_findings

console = Console()


@click.group("findings")
def findings_group():
    """List, dismiss or resolve findings."""


@findings_group.command("list")
@click.option("--repo", "repo_path", default=".", show_default=True, help="Repository path.")
@click.option("--run", "run_id", default=None, help="Only findings of this run.")
@click.option(
    "--status",
    type=click.Choice(["active", "dismissed", "resolved"]),
    default=None,
    help="Filter by status.",
)
@click.pass_context
def list_cmd(ctx, repo_path: str, run_id: str | None, status: str | None):
    """Show findings of a repository or of one run."""
    from repolens_core.lifecycle import repo_key

    store = ctx.obj["store"]
    if run_id:
        if store.get_run(run_id) is None:
            raise click.UsageError(f"Unknown run: {run_id}")
        findings = [f for f in store.get_findings(run_id) if status is None or f.status == status]
        title = f"Findings — run {run_id}"
    else:
        findings = store.list_findings(repo_key(repo_path), status=status)
        title = f"Findings — {repo_key(repo_path)}"
    print_findings(findings, title)


def _transition(ctx, finding_id: str, status: str) -> None:
    from repolens_core.lifecycle import set_finding_status

    try:
        finding = set_finding_status(ctx.obj["store"], finding_id, status)
    except ValueError as e:
        raise click.UsageError(str(e))
    console.print(f"[green]{finding.id} marked {status}:[/green] {finding.title}")


@findings_group.command("dismiss")
@click.argument("finding_id")
@click.pass_context
def dismiss_cmd(ctx, finding_id: str):
    """Dismiss a finding as a false positive or not worth fixing."""
    _transition(ctx, finding_id, "dismissed")


@findings_group.command("resolve")
@click.argument("finding_id")
@click.pass_context
def resolve_cmd(ctx, finding_id: str):
    """Mark a finding as fixed."""
    _transition(ctx, finding_id, "resolved")
