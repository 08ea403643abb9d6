"""Stdio protocol server exposing repolens to editors and other clients.

Every router tool is exposed under its own name and schema, plus the
review-level operations below. stdout carries the protocol only: logs go
to stderr, and review progress is streamed to stderr as single-line JSON
objects tagged ``"__repolens_stream": true``.

The server keeps one explicit ServerState (open repository session, store,
active orchestrator) instead of module globals.
"""

from __future__ import annotations

import dataclasses
import inspect
import json
import logging
import sys
from typing import Any, Optional

from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from repolens_core.errors import RepolensError
from repolens_core.lifecycle import repo_key, repository_stats, set_finding_status
from repolens_core.orchestrator import Orchestrator
from repolens_core.session import open_repository
from repolens_core.tools.router import ToolContext, build_default_router, to_jsonable

logger = logging.getLogger(__name__)

STREAM_MARKER = "__repolens_stream"


# ---------------------------------------------------------------------------
# Operation inputs
# ---------------------------------------------------------------------------


class _Input(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RepoOpenInput(_Input):
    path: str = Field(..., description="Repository directory")


class ReviewRunInput(_Input):
    repo_path: Optional[str] = Field(default=None, description="Repository to review; defaults to the open one")
    mode: str = Field(default="full", pattern="^(full|diff)$")
    agents: Optional[list[str]] = Field(default=None, description="Subset of architecture, security, bugs")


class ReviewCancelInput(_Input):
    pass


class FindingsListInput(_Input):
    repo_path: Optional[str] = None
    run_id: Optional[str] = None
    status: Optional[str] = Field(default=None, pattern="^(active|dismissed|resolved)$")


class FindingUpdateInput(_Input):
    finding_id: str
    status: str = Field(..., pattern="^(active|dismissed|resolved)$")


class RecordEventInput(_Input):
    run_id: str
    type: str = Field(..., min_length=1)
    agent: Optional[str] = None
    data: dict = Field(default_factory=dict)


class HistoryInput(_Input):
    repo_path: Optional[str] = None
    limit: int = Field(default=20, ge=1, le=500)


class StatsInput(_Input):
    repo_path: Optional[str] = None


def stream_line(payload: dict) -> None:
    sys.stderr.write(json.dumps({STREAM_MARKER: True, **payload}, default=to_jsonable) + "\n")
    sys.stderr.flush()


class ServerState:
    def __init__(self, store, config: dict, client_factory=None):
        self.store = store
        self.config = config
        self.router = build_default_router()
        self.session = None
        self.orchestrator: Orchestrator | None = None
        self._client_factory = client_factory

    # ------------------------------------------------------------------ #
    # Operations                                                           #
    # ------------------------------------------------------------------ #

    def _repo(self, repo_path: str | None) -> str:
        if repo_path:
            return repo_key(repo_path)
        if self.session is None:
            raise RepolensError("No repository is open; call repo_open first")
        return self.session.repo_key

    def repo_open(self, args: RepoOpenInput) -> dict:
        self.session = open_repository(args.path, store=self.store, exclude=self.config.get("exclude") or [])
        return {"name": self.session.name, "root": str(self.session.root), "branch": self.session.branch}

    async def review_run(self, args: ReviewRunInput) -> dict:
        if self.orchestrator is not None and self.orchestrator.active:
            raise RepolensError("A review is already running")
        path = args.repo_path or (str(self.session.root) if self.session is not None else None)
        if path is None:
            raise RepolensError("No repository is open; pass repo_path or call repo_open first")

        if self._client_factory is None:
            from repolens_core.providers.registry import create_model_client

            self._client_factory = create_model_client
        self.orchestrator = Orchestrator(
            self.store,
            self._client_factory(self.config),
            self.config,
            emit=stream_line,
            router=self.router,
        )
        result = await self.orchestrator.run_review(path, mode=args.mode, agents=args.agents)
        return {
            "runId": result.run_id,
            "status": result.status,
            "error": result.error,
            "cancelled": result.cancelled,
            "warnings": result.warnings,
            "findings": [dataclasses.asdict(f) for f in result.findings],
        }

    def review_cancel(self, args: ReviewCancelInput) -> dict:
        cancelled = self.orchestrator is not None and self.orchestrator.cancel()
        return {"cancelled": cancelled}

    def findings_list(self, args: FindingsListInput) -> dict:
        if args.run_id:
            findings = [f for f in self.store.get_findings(args.run_id) if args.status in (None, f.status)]
        else:
            findings = self.store.list_findings(self._repo(args.repo_path), status=args.status)
        return {"findings": [dataclasses.asdict(f) for f in findings], "total": len(findings)}

    def finding_update(self, args: FindingUpdateInput) -> dict:
        finding = set_finding_status(self.store, args.finding_id, args.status)
        return {"findingId": finding.id, "status": finding.status}

    def record_event(self, args: RecordEventInput) -> dict:
        if self.store.get_run(args.run_id) is None:
            raise ValueError(f"Unknown run: {args.run_id}")
        event = self.store.insert_event(args.run_id, args.type, agent=args.agent, data=args.data)
        return {"eventId": event.id, "timestamp": event.timestamp}

    def history(self, args: HistoryInput) -> dict:
        repo = self._repo(args.repo_path) if args.repo_path or self.session is not None else None
        runs = self.store.list_runs(repo, limit=args.limit)
        return {"runs": [dataclasses.asdict(r) for r in runs]}

    def stats(self, args: StatsInput) -> dict:
        return repository_stats(self.store, self._repo(args.repo_path)).to_dict()

    # ------------------------------------------------------------------ #
    # Dispatch                                                             #
    # ------------------------------------------------------------------ #

    def operations(self) -> dict[str, tuple[str, type[BaseModel], Any]]:
        return {
            "repo_open": ("Open a repository; later tool calls operate on it.", RepoOpenInput, self.repo_open),
            "review_run": (
                "Run a full review. Progress streams on stderr; returns the run's findings.",
                ReviewRunInput,
                self.review_run,
            ),
            "review_cancel": ("Cancel the active review.", ReviewCancelInput, self.review_cancel),
            "findings_list": ("List findings of a repository or a run.", FindingsListInput, self.findings_list),
            "finding_update": ("Dismiss, resolve or reopen a finding.", FindingUpdateInput, self.finding_update),
            "record_event": ("Append an audit event to a run.", RecordEventInput, self.record_event),
            "history": ("List past review runs.", HistoryInput, self.history),
            "stats": ("Severity and file breakdown of a repository's findings.", StatsInput, self.stats),
        }

    def list_tools(self) -> list[types.Tool]:
        tools = [
            types.Tool(name=name, description=description, inputSchema=model.model_json_schema())
            for name, (description, model, _) in self.operations().items()
        ]
        for schema in self.router.schemas():
            tools.append(
                types.Tool(name=schema["name"], description=schema["description"], inputSchema=schema["input_schema"])
            )
        return tools

    async def call(self, name: str, arguments: dict | None) -> Any:
        operations = self.operations()
        if name in operations:
            _, model, handler = operations[name]
            try:
                params = model.model_validate(arguments or {})
            except ValidationError as e:
                raise ValueError(f"Invalid arguments for {name}: {e}") from e
            result = handler(params)
            if inspect.isawaitable(result):
                result = await result
            return result

        if self.session is None:
            raise RepolensError("No repository is open; call repo_open first")
        ctx = ToolContext(session=self.session, store=self.store, config=self.config)
        return await self.router.execute(name, arguments, ctx)


def create_server(state: ServerState) -> Server:
    server = Server("repolens")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return state.list_tools()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        logger.info("Tool called: %s", name)
        try:
            result = await state.call(name, arguments)
        except (RepolensError, ValueError, OSError) as e:
            logger.info("Tool %s failed: %s", name, e)
            return [types.TextContent(type="text", text=json.dumps({"error": str(e)}))]
        except Exception as e:
            logger.error("Error calling tool %s: %s", name, e, exc_info=True)
            return [types.TextContent(type="text", text=json.dumps({"error": f"{type(e).__name__}: {e}"}))]
        return [types.TextContent(type="text", text=json.dumps(result, default=to_jsonable))]

    return server


async def serve(store, config: dict) -> None:
    state = ServerState(store, config)
    server = create_server(state)
    logger.info("Starting repolens server (stdio transport)")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())
