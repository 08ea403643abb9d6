"""serve command — run the stdio protocol server."""

from __future__ import annotations

import asyncio

import click


@click.command("serve")
@click.pass_context
def serve_cmd(ctx):
    """Serve repolens over stdio for editor integrations.

    stdout carries the protocol; logs and review progress go to stderr.
    """
    from repolens_cli.server import serve

    asyncio.run(serve(ctx.obj["store"], ctx.obj["config"]))
