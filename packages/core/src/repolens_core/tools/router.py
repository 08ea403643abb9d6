"""Tool router: a typed registry from tool name to async handler.

Each ToolSpec pairs a name with a pydantic input model and a handler that
receives the validated model, so handlers never see raw dicts. Specs are
checked once, at registration.

Two entry points:
  execute()  -> the handler's result; raises on any failure.
                Used by the CLI and the protocol server.
  dispatch() -> a ToolResult; failures become ``is_error`` results so the
                agent can read the error and retry with other arguments.
                Only cancellation propagates.
"""

from __future__ import annotations

import dataclasses
import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from repolens_core.errors import RepolensError, RunCancelledError, ToolInputError, UnknownToolError
from repolens_core.graph.callgraph import build_call_graph
from repolens_core.graph.impact import analyze_impact, score_criticality
from repolens_core.graph.imports import build_import_graph
from repolens_core.graph.symbols import lookup_symbol
from repolens_core.patch import PatchEngine
from repolens_core.tools import schemas
from repolens_core.tools.exec import DEFAULT_TIMEOUT, exec_command
from repolens_core.tools.repo import git_diff, list_tree, read_file, search_text
from repolens_core.tools.scan import pattern_scan
from repolens_core.tools.web import web_search

if TYPE_CHECKING:
    from repolens_core.cancel import CancelToken
    from repolens_core.session import RepoSession
    from repolens_store.base import BaseStore

logger = logging.getLogger(__name__)

_TOOL_NAME_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


@dataclass
class ToolContext:
    session: RepoSession
    store: Optional[BaseStore] = None
    run_id: Optional[str] = None
    token: Optional[CancelToken] = None
    config: dict = field(default_factory=dict)
    # (run_id, event type, payload) -> None; defaults to writing to the store
    on_event: Optional[Callable[[str, str, dict], None]] = None

    def raise_if_cancelled(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()


Handler = Callable[[ToolContext, Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: Handler

    def schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


@dataclass
class ToolResult:
    content: str
    is_error: bool = False


def to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def render_result(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=to_jsonable, indent=1)


class ToolRouter:
    def __init__(self, specs: list[ToolSpec] | None = None):
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if not _TOOL_NAME_RE.match(spec.name):
            raise ValueError(f"Invalid tool name: {spec.name!r}")
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name}")
        if not (isinstance(spec.input_model, type) and issubclass(spec.input_model, BaseModel)):
            raise ValueError(f"Tool {spec.name}: input_model must be a pydantic model")
        if not inspect.iscoroutinefunction(spec.handler):
            raise ValueError(f"Tool {spec.name}: handler must be an async function")
        self._specs[spec.name] = spec

    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def schemas(self, names: list[str] | None = None) -> list[dict]:
        selected = names if names is not None else list(self._specs)
        return [self.get(n).schema() for n in selected]

    async def execute(self, name: str, args: dict | None, ctx: ToolContext) -> Any:
        spec = self.get(name)
        try:
            params = spec.input_model.model_validate(args or {})
        except ValidationError as e:
            raise ToolInputError(f"Invalid arguments for {name}: {e}") from e
        ctx.raise_if_cancelled()
        result = await spec.handler(ctx, params)
        ctx.raise_if_cancelled()
        return result

    async def dispatch(self, name: str, args: dict | None, ctx: ToolContext) -> ToolResult:
        try:
            result = await self.execute(name, args, ctx)
        except RunCancelledError:
            raise
        except (RepolensError, ValueError, OSError) as e:
            logger.info("Tool %s failed: %s", name, e)
            return ToolResult(content=f"Error: {e}", is_error=True)
        except Exception as e:
            logger.warning("Tool %s raised unexpectedly: %s", name, e, exc_info=True)
            return ToolResult(content=f"Error: {type(e).__name__}: {e}", is_error=True)
        return ToolResult(content=render_result(result))


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _read_file(ctx: ToolContext, args: schemas.ReadFileInput) -> dict:
    return read_file(ctx.session, args.path, args.start_line, args.end_line)


async def _list_tree(ctx: ToolContext, args: schemas.ListTreeInput) -> dict:
    return list_tree(ctx.session, args.max_depth, args.pattern)


async def _search_text(ctx: ToolContext, args: schemas.SearchTextInput) -> dict:
    return await search_text(ctx.session, args.pattern, args.glob, args.max_results, ctx.token)


async def _diff(ctx: ToolContext, args: schemas.DiffInput) -> dict:
    return await git_diff(ctx.session, args.ref1, args.ref2, args.staged, ctx.token)


# The graph handlers parse and index synchronously and hold the event loop
# while they run: other agents and the cancel waiter resume only afterwards.
# The index cache lives on the store's SQLite connection, which is bound to
# the loop thread, so this work is not moved to a worker thread.
async def _call_graph(ctx: ToolContext, args: schemas.CallGraphInput) -> dict:
    if args.subdirectory:
        ctx.session.resolve(args.subdirectory)
    return build_call_graph(ctx.session).to_dict(args.subdirectory)


async def _symbol_lookup(ctx: ToolContext, args: schemas.SymbolLookupInput) -> Any:
    return lookup_symbol(ctx.session, args.name, args.file_hint)


async def _impact_analysis(ctx: ToolContext, args: schemas.ImpactAnalysisInput) -> dict:
    target = ctx.session.relpath(args.file)
    graph = build_call_graph(ctx.session)
    impacted = analyze_impact(graph, target, args.max_depth)
    return {"file": target, "impacted": impacted, "total": len(impacted)}


async def _import_graph(ctx: ToolContext, args: schemas.ImportGraphInput) -> dict:
    return build_import_graph(ctx.session).to_dict()


async def _critical_files(ctx: ToolContext, args: schemas.CriticalFilesInput) -> dict:
    return {"files": score_criticality(build_call_graph(ctx.session), args.limit)}


async def _pattern_scan(ctx: ToolContext, args: schemas.PatternScanInput) -> dict:
    timeout = ctx.config.get("pattern_scan_timeout", 30)
    return await pattern_scan(ctx.session, args.config, args.pattern, timeout, ctx.token)


async def _exec_command(ctx: ToolContext, args: schemas.ExecCommandInput) -> dict:
    timeout = args.timeout if args.timeout is not None else ctx.config.get("exec_timeout", DEFAULT_TIMEOUT)
    return await exec_command(ctx.session, args.command, timeout, ctx.token)


async def _web_search(ctx: ToolContext, args: schemas.WebSearchInput) -> dict:
    return await web_search(args.query, ctx.config.get("brave_api_key"), args.count)


def _patch_engine(ctx: ToolContext) -> PatchEngine:
    if ctx.store is None:
        raise RepolensError("Patches require a configured store")
    return PatchEngine(ctx.session, ctx.store, ctx.on_event)


async def _propose_patch(ctx: ToolContext, args: schemas.ProposePatchInput) -> dict:
    patch = _patch_engine(ctx).propose(args.finding_id, args.file_path, args.original_code, args.replacement_code)
    return {"patchId": patch.id, "diff": patch.diff}


async def _validate_patch(ctx: ToolContext, args: schemas.PatchIdInput) -> dict:
    result = _patch_engine(ctx).validate(args.patch_id)
    return {"patchId": args.patch_id, "validated": result.validated, "message": result.message}


async def _apply_patch(ctx: ToolContext, args: schemas.PatchIdInput) -> dict:
    result = _patch_engine(ctx).apply(args.patch_id)
    return {"patchId": args.patch_id, "success": result.success, "message": result.message}


DEFAULT_TOOLS = [
    ToolSpec(
        "read_file",
        "Read a repository file, optionally a line range. Returns the content and total line count.",
        schemas.ReadFileInput,
        _read_file,
    ),
    ToolSpec(
        "list_tree",
        "List repository files (vendored and build directories excluded), optionally filtered by glob.",
        schemas.ListTreeInput,
        _list_tree,
    ),
    ToolSpec(
        "search_text",
        "Regex search across the repository. Returns file, line and text of each match.",
        schemas.SearchTextInput,
        _search_text,
    ),
    ToolSpec(
        "diff",
        "Unified git diff between two refs, of staged changes, or of the most recent changes.",
        schemas.DiffInput,
        _diff,
    ),
    ToolSpec(
        "call_graph",
        "Cross-file call edges plus per-file fan-in, fan-out and symbol counts.",
        schemas.CallGraphInput,
        _call_graph,
    ),
    ToolSpec(
        "symbol_lookup",
        "Find where a function, class or variable is defined and where it is referenced.",
        schemas.SymbolLookupInput,
        _symbol_lookup,
    ),
    ToolSpec(
        "impact_analysis",
        "Blast radius of changing a file: every file that transitively calls into it, nearest first.",
        schemas.ImpactAnalysisInput,
        _impact_analysis,
    ),
    ToolSpec(
        "import_graph",
        "File-level import graph with import cycles and entry points.",
        schemas.ImportGraphInput,
        _import_graph,
    ),
    ToolSpec(
        "critical_files",
        "Files ranked by criticality (weighted fan-in and fan-out) with a reason for each.",
        schemas.CriticalFilesInput,
        _critical_files,
    ),
    ToolSpec(
        "pattern_scan",
        "Run semgrep with a config or an ad-hoc pattern. Warns instead of failing if semgrep is unavailable.",
        schemas.PatternScanInput,
        _pattern_scan,
    ),
    ToolSpec(
        "exec_command",
        "Run a read-only shell command (wc, find, ls, cat, head, tail, grep, git log/show/blame, ...).",
        schemas.ExecCommandInput,
        _exec_command,
    ),
    ToolSpec(
        "web_search",
        "Search the web for advisories, CVEs or library documentation.",
        schemas.WebSearchInput,
        _web_search,
    ),
    ToolSpec(
        "propose_patch",
        "Propose a fix for a finding by replacing an exact snippet of a file. Returns the unified diff.",
        schemas.ProposePatchInput,
        _propose_patch,
    ),
    ToolSpec(
        "validate_patch",
        "Dry-run a proposed patch against the current file and syntax-check the result.",
        schemas.PatchIdInput,
        _validate_patch,
    ),
    ToolSpec(
        "apply_patch",
        "Write a validated patch to disk.",
        schemas.PatchIdInput,
        _apply_patch,
    ),
]

# Tools agents may call during an investigation; patch tools are driven by
# humans through the CLI or the protocol server.
INVESTIGATION_TOOLS = [
    "read_file",
    "list_tree",
    "search_text",
    "diff",
    "call_graph",
    "symbol_lookup",
    "impact_analysis",
    "import_graph",
    "critical_files",
    "pattern_scan",
    "exec_command",
    "web_search",
]


def build_default_router() -> ToolRouter:
    return ToolRouter(DEFAULT_TOOLS)
