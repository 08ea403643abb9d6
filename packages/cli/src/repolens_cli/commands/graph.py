"""graph commands — query the code-intelligence engine directly."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_repo_option = click.option(
    "--repo", "repo_path", default=".", show_default=True, type=click.Path(exists=True, file_okay=False)
)


def _session(ctx, repo_path: str):
    from repolens_core.session import open_repository

    config = ctx.obj["config"]
    return open_repository(repo_path, store=ctx.obj["store"], exclude=config.get("exclude") or [])


def _print_stats(stats) -> None:
    console.print(
        f"[dim]{stats.total} file(s) indexed: {stats.cached} cached, {stats.reparsed} re-parsed, "
        f"{stats.unresolved_calls} unresolved call(s), {stats.parse_failures} parse failure(s)[/dim]"
    )


@click.group("graph")
def graph_group():
    """Query call graph, criticality, blast radius, symbols and imports."""


@graph_group.command("calls")
@_repo_option
@click.option("--subdir", default=None, help="Only edges touching this directory.")
@click.option("--top", default=20, show_default=True, help="Number of files to show.")
@click.pass_context
def calls_cmd(ctx, repo_path: str, subdir: str | None, top: int):
    """Per-file fan-in, fan-out and symbol counts, most depended-upon first."""
    from repolens_core.graph.callgraph import build_call_graph

    session = _session(ctx, repo_path)
    if subdir:
        session.resolve(subdir)
    graph = build_call_graph(session)
    metrics = graph.sorted_metrics()
    if subdir:
        prefix = subdir.rstrip("/") + "/"
        metrics = [m for m in metrics if m.file.startswith(prefix)]

    table = Table(title=f"Call graph — {session.name}", show_header=True, header_style="bold cyan")
    table.add_column("File")
    table.add_column("Fan-in", justify="right")
    table.add_column("Fan-out", justify="right")
    table.add_column("Symbols", justify="right")
    table.add_column("Exported", justify="right")
    for m in metrics[:top]:
        table.add_row(m.file, str(m.fan_in), str(m.fan_out), str(m.symbol_count), str(m.exported_symbol_count))
    console.print(table)
    console.print(f"[dim]{len(graph.cross_file_edges())} cross-file edge(s)[/dim]")
    _print_stats(graph.stats)


@graph_group.command("critical")
@_repo_option
@click.option("--limit", default=20, show_default=True, help="Number of files to show.")
@click.pass_context
def critical_cmd(ctx, repo_path: str, limit: int):
    """Files ranked by criticality score."""
    from repolens_core.graph.callgraph import build_call_graph
    from repolens_core.graph.impact import score_criticality

    session = _session(ctx, repo_path)
    ranked = score_criticality(build_call_graph(session), limit)
    if not ranked:
        console.print("[yellow]No cross-file dependencies found.[/yellow]")
        return

    table = Table(title=f"Critical files — {session.name}", show_header=True, header_style="bold cyan")
    table.add_column("File")
    table.add_column("Score", justify="right")
    table.add_column("Fan-in", justify="right")
    table.add_column("Fan-out", justify="right")
    table.add_column("Reason")
    for c in ranked:
        table.add_row(c.file, f"{c.score:.2f}", str(c.fan_in), str(c.fan_out), c.reason)
    console.print(table)


@graph_group.command("impact")
@click.argument("file")
@_repo_option
@click.option("--depth", default=3, show_default=True, help="Maximum number of hops.")
@click.pass_context
def impact_cmd(ctx, file: str, repo_path: str, depth: int):
    """Blast radius of changing FILE: every file that transitively calls into it."""
    from repolens_core.graph.callgraph import build_call_graph
    from repolens_core.graph.impact import analyze_impact

    session = _session(ctx, repo_path)
    target = session.relpath(file)
    impacted = analyze_impact(build_call_graph(session), target, depth)
    if not impacted:
        console.print(f"[green]Nothing in the repository calls into {target}.[/green]")
        return

    table = Table(title=f"Impact of {target}", show_header=True, header_style="bold cyan")
    table.add_column("Distance", justify="right")
    table.add_column("File")
    table.add_column("Fan-in", justify="right")
    table.add_column("Symbols used", max_width=50)
    for i in impacted:
        table.add_row(str(i.distance), i.file, str(i.fan_in), ", ".join(i.affected_symbols))
    console.print(table)


@graph_group.command("symbol")
@click.argument("name")
@_repo_option
@click.option("--file", "file_hint", default=None, help="File to search first.")
@click.pass_context
def symbol_cmd(ctx, name: str, repo_path: str, file_hint: str | None):
    """Definition and references of symbol NAME."""
    from repolens_core.graph.symbols import lookup_symbol

    lookup = lookup_symbol(_session(ctx, repo_path), name, file_hint)
    if lookup.definition is None and not lookup.references:
        console.print(f"[yellow]No occurrences of {name!r} found.[/yellow]")
        return

    d = lookup.definition
    if d is not None:
        visibility = "exported" if d.exported else "internal"
        console.print(f"[bold]{d.kind}[/bold] {name} defined at [cyan]{d.file}:{d.line}[/cyan] ({visibility})")
        console.print(f"  [dim]{d.text}[/dim]")
    else:
        console.print(f"[yellow]No definition of {name!r} found.[/yellow]")

    if lookup.references:
        header = f"\n{lookup.total_references} reference(s)"
        if lookup.total_references > len(lookup.references):
            header += f", showing {len(lookup.references)}"
        console.print(header)
        for ref in lookup.references:
            console.print(f"  {ref.file}:{ref.line}:{ref.column}  [dim]{ref.text}[/dim]")


@graph_group.command("imports")
@_repo_option
@click.pass_context
def imports_cmd(ctx, repo_path: str):
    """Import cycles and entry points."""
    from repolens_core.graph.imports import build_import_graph

    graph = build_import_graph(_session(ctx, repo_path))
    console.print(f"[bold]{len(graph.edges)}[/bold] file(s), [bold]{len(graph.cycles)}[/bold] import cycle(s)")
    for cycle in graph.cycles:
        console.print(f"  [red]{' -> '.join(cycle + cycle[:1])}[/red]")
    if graph.entry_points:
        console.print("\nEntry points:")
        for path in graph.entry_points:
            console.print(f"  {path}")
