"""patch commands — propose, validate and apply fixes for findings."""

from __future__ import annotations

import click
from rich.console import Console
from rich.syntax import Syntax

console = Console()


def _engine(ctx, run_id: str):
    """Patch engine bound to the repository the run reviewed."""
    from repolens_core.patch import PatchEngine
    from repolens_core.session import open_repository

    store = ctx.obj["store"]
    run = store.get_run(run_id)
    if run is None:
        raise click.UsageError(f"Unknown run: {run_id}")
    return PatchEngine(open_repository(run.repo_path, store=store), store)


@click.group("patch")
def patch_group():
    """Propose, validate and apply patches."""


@patch_group.command("propose")
@click.argument("finding_id")
@click.argument("file")
@click.option(
    "--original",
    "original_file",
    required=True,
    type=click.File("r"),
    help="File holding the exact code to replace ('-' for stdin).",
)
@click.option(
    "--replacement",
    "replacement_file",
    required=True,
    type=click.File("r"),
    help="File holding the new code.",
)
@click.pass_context
def propose_cmd(ctx, finding_id: str, file: str, original_file, replacement_file):
    """Propose a patch for FINDING_ID that edits FILE."""
    from repolens_core.errors import RepolensError

    finding = ctx.obj["store"].get_finding(finding_id)
    if finding is None:
        raise click.UsageError(f"Unknown finding: {finding_id}")
    engine = _engine(ctx, finding.run_id)
    try:
        patch = engine.propose(finding_id, file, original_file.read(), replacement_file.read())
    except (RepolensError, ValueError, OSError) as e:
        raise click.ClickException(str(e))

    console.print(f"[green]Proposed patch {patch.id}[/green]")
    console.print(Syntax(patch.diff, "diff", theme="ansi_dark"))


@patch_group.command("validate")
@click.argument("patch_id")
@click.pass_context
def validate_cmd(ctx, patch_id: str):
    """Dry-run PATCH_ID against the current file and syntax-check the result."""
    patch = ctx.obj["store"].get_patch(patch_id)
    if patch is None:
        raise click.UsageError(f"Unknown patch: {patch_id}")
    result = _engine(ctx, patch.run_id).validate(patch_id)
    if result.validated:
        console.print(f"[green]Valid:[/green] {result.message}")
    else:
        console.print(f"[red]Invalid:[/red] {result.message}")
        ctx.exit(1)


@patch_group.command("apply")
@click.argument("patch_id")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def apply_cmd(ctx, patch_id: str, yes: bool):
    """Write validated PATCH_ID to disk."""
    patch = ctx.obj["store"].get_patch(patch_id)
    if patch is None:
        raise click.UsageError(f"Unknown patch: {patch_id}")
    if not yes:
        console.print(Syntax(patch.diff, "diff", theme="ansi_dark"))
        click.confirm("Apply this patch?", abort=True)
    result = _engine(ctx, patch.run_id).apply(patch_id)
    if result.success:
        console.print(f"[green]{result.message}[/green]")
    else:
        console.print(f"[red]{result.message}[/red]")
        ctx.exit(1)
