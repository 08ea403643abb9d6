"""CLI entry point for repolens.

Commands:
  review    — run an evidence-gated review of a repository
  history   — list past review runs
  findings  — list, dismiss or resolve findings
  stats     — severity and file breakdown across a repository's findings
  graph     — query the code-intelligence engine (calls, critical, impact, symbol, imports)
  patch     — propose, validate and apply fixes for findings
  serve     — run the stdio protocol server
  init      — write a starter .repolens.yml
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from repolens_cli.commands.findings import findings_group
from repolens_cli.commands.graph import graph_group
from repolens_cli.commands.history import history_cmd
from repolens_cli.commands.init import init_cmd
from repolens_cli.commands.patch import patch_group
from repolens_cli.commands.review import review_cmd
from repolens_cli.commands.serve import serve_cmd
from repolens_cli.commands.stats import stats_cmd

console = Console()

# Subcommands that never touch the store.
_STORELESS_COMMANDS = {"init"}


def _build_store(config: dict):
    """Instantiate the SQLite store at the configured path.

    This factory lives in cli.py so neither repolens_core nor repolens_store
    know about the CLI config format.
    """
    from repolens_core.config import resolve_store_path
    from repolens_store.sqlite import SQLiteStore

    return SQLiteStore(db_path=resolve_store_path(config))


@click.group()
@click.version_option(
    version=importlib.metadata.version("repolens"),
    prog_name="repolens",
)
@click.option(
    "--config",
    "config_path",
    default=".repolens.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="REPOLENS_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Evidence-gated, repository-scale AI code review."""
    from repolens_core.config import load_config

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )

    ctx.ensure_object(dict)
    config = load_config(config_path)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path

    if ctx.invoked_subcommand not in _STORELESS_COMMANDS:
        store = _build_store(config)
        ctx.obj["store"] = store
        ctx.call_on_close(store.close)


main.add_command(review_cmd)
main.add_command(history_cmd)
main.add_command(findings_group)
main.add_command(stats_cmd)
main.add_command(graph_group)
main.add_command(patch_group)
main.add_command(serve_cmd)
main.add_command(init_cmd)
