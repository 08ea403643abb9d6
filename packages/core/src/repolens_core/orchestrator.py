"""Core review orchestration.

run_review() sequences one review run:
    open repository -> file tree -> import graph -> pattern scan -> diff
    -> call graph context -> investigators (concurrently)
    -> dedup + persist -> challenge pass -> explanation pass -> complete

Context steps are best-effort: a failure becomes a warning, not a failed
run. Investigators are isolated from each other: one agent raising does not
cancel or fail its siblings. One CancelToken is shared by every task of the
run; cancel() stops them all cooperatively and the run is closed as
``error`` with the cancellation message.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from repolens_core.agents.context import (
    ReviewContext,
    build_challenge_prompt,
    build_explain_prompt,
    build_investigation_prompt,
)
from repolens_core.agents.findings import EXPLANATIONS_CHANNEL, FindingDraft
from repolens_core.agents.loop import AgentConfig, AgentLoop
from repolens_core.agents.prompts import AGENT_PROMPTS, EXPLAINER_PROMPT, VALIDATOR_PROMPT
from repolens_core.cancel import CANCEL_MESSAGE, CancelToken
from repolens_core.errors import RepolensError, RunCancelledError
from repolens_core.graph.callgraph import build_call_graph
from repolens_core.graph.impact import analyze_impact, score_criticality
from repolens_core.graph.imports import build_import_graph
from repolens_core.session import open_repository
from repolens_core.tools.repo import changed_files, git_diff
from repolens_core.tools.router import ToolContext, build_default_router
from repolens_core.tools.scan import pattern_scan
from repolens_core.utils.code import is_source_file
from repolens_store.models import REVIEW_MODES, compute_fingerprint, normalize_title

if TYPE_CHECKING:
    from repolens_core.providers.base import BaseModelClient
    from repolens_core.session import RepoSession
    from repolens_core.tools.router import ToolRouter
    from repolens_store.base import BaseStore
    from repolens_store.models import Finding

logger = logging.getLogger(__name__)

# Upper bounds for the passes that run over the combined findings.
CHALLENGE_MAX_TURNS = 50
EXPLAIN_MAX_TURNS = 50
_CRITICAL_CONTEXT_FILES = 10
_BLAST_RADIUS_FILES = 10


@dataclass
class ReviewResult:
    """Outcome of one run. Findings are those persisted by this run."""

    run_id: str
    status: str  # "complete" | "error"
    findings: list[Finding] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False
    warnings: list[str] = field(default_factory=list)
    duplicates: int = 0


class Orchestrator:
    def __init__(
        self,
        store: BaseStore,
        client: BaseModelClient,
        config: dict,
        emit: Callable[[dict], None] | None = None,
        router: ToolRouter | None = None,
    ):
        self.store = store
        self.client = client
        self.config = config
        self.router = router or build_default_router()
        self._emit = emit
        self._token: CancelToken | None = None

    @property
    def active(self) -> bool:
        return self._token is not None

    def cancel(self, reason: str = CANCEL_MESSAGE) -> bool:
        """Cancel the active run. Returns False when no run is active."""
        if self._token is None:
            return False
        logger.info("Cancelling active review: %s", reason)
        self._token.cancel(reason)
        return True

    # ------------------------------------------------------------------ #
    # Pipeline                                                             #
    # ------------------------------------------------------------------ #

    async def run_review(self, repo_path: str, mode: str = "full", agents: list[str] | None = None) -> ReviewResult:
        if mode not in REVIEW_MODES:
            raise ValueError(f"Unknown review mode: {mode!r}. Choose 'full' or 'diff'.")
        agents = list(agents or self.config.get("agents") or AGENT_PROMPTS)
        unknown = [a for a in agents if a not in AGENT_PROMPTS]
        if unknown:
            raise ValueError(f"Unknown agent(s): {', '.join(unknown)}")
        if self._token is not None:
            raise RepolensError("A review is already running")

        session = open_repository(repo_path, store=self.store, exclude=self.config.get("exclude") or [])
        run = self.store.create_run(session.repo_key, mode)
        token = CancelToken()
        self._token = token
        result = ReviewResult(run_id=run.id, status="running")
        ctx = ToolContext(
            session=session,
            store=self.store,
            run_id=run.id,
            token=token,
            config=self.config,
            on_event=lambda run_id, type, data: self._event(run_id, type, None, data),
        )
        logger.info("Review %s started for %s (%s mode, agents: %s)", run.id, session.root, mode, ", ".join(agents))

        try:
            self._step(run.id, "repo_open", f"Opened {session.name} on branch {session.branch}")
            review_context = await self._collect_context(session, ctx, mode, result)
            await self._investigate(session, ctx, agents, build_investigation_prompt(review_context), result)
            token.raise_if_cancelled()

            if self.config.get("challenge", True) and result.findings:
                await self._challenge(ctx, result)
                token.raise_if_cancelled()

            if self.config.get("explain", True):
                await self._explain(ctx, result)
                token.raise_if_cancelled()

            self.store.complete_run(run.id, "complete")
            result.status = "complete"
        except RunCancelledError as e:
            logger.warning("Review %s cancelled", run.id)
            result.status = "error"
            result.error = e.reason
            result.cancelled = True
            self.store.complete_run(run.id, "error", e.reason)
            self._event(run.id, "run_cancelled", None, {"message": e.reason})
        except Exception as e:
            logger.error("Review %s failed: %s", run.id, e, exc_info=True)
            result.status = "error"
            result.error = str(e)
            self.store.complete_run(run.id, "error", str(e))
        finally:
            self._token = None

        # Pick up confidence changes made by the challenge pass.
        by_id = {f.id: f for f in self.store.get_findings(run.id)}
        result.findings = [by_id.get(f.id, f) for f in result.findings]
        return result

    async def _collect_context(
        self, session: RepoSession, ctx: ToolContext, mode: str, result: ReviewResult
    ) -> ReviewContext:
        run_id = ctx.run_id
        context = ReviewContext(repo_name=session.name, mode=mode)

        ctx.raise_if_cancelled()
        self._step(run_id, "file_tree", "Building file tree...")
        context.file_tree = session.list_files()

        ctx.raise_if_cancelled()
        self._step(run_id, "import_graph", "Extracting import graph...")
        try:
            context.import_cycles = build_import_graph(session).cycles
        except (RepolensError, OSError, ValueError) as e:
            self._warn(run_id, "import_graph", f"Import graph extraction failed: {e}", result)

        ctx.raise_if_cancelled()
        timeout = self.config.get("pattern_scan_timeout", 30)
        self._step(run_id, "pattern_scan", f"Running pattern scan ({timeout}s timeout)...")
        try:
            scan = await pattern_scan(session, timeout=timeout, token=ctx.token)
        except RepolensError as e:
            scan = {"results": [], "warning": str(e)}
        context.scan_results = scan["results"]
        if scan.get("warning"):
            self._warn(run_id, "pattern_scan", scan["warning"], result)
        elif context.scan_results:
            self._step(run_id, "pattern_scan", f"Pattern scan found {len(context.scan_results)} result(s)")

        if mode == "diff":
            ctx.raise_if_cancelled()
            self._step(run_id, "diff", "Getting diff...")
            try:
                context.diff = (await git_diff(session, token=ctx.token))["diff"]
            except (RepolensError, OSError) as e:
                self._warn(run_id, "diff", f"Diff extraction failed: {e}", result)

        ctx.raise_if_cancelled()
        self._step(run_id, "call_graph", "Building call graph...")
        # synchronous; blocks the loop until the index pass finishes
        try:
            graph = build_call_graph(session)
        except (RepolensError, OSError, ValueError) as e:
            self._warn(run_id, "call_graph", f"Call graph build failed: {e}", result)
        else:
            context.critical_files = score_criticality(graph, _CRITICAL_CONTEXT_FILES)
            changed = [f for f in changed_files(context.diff) if is_source_file(f)][:_BLAST_RADIUS_FILES]
            context.blast_radius = {f: analyze_impact(graph, f) for f in changed}
            stats = graph.stats
            self._step(
                run_id,
                "call_graph",
                f"Indexed {stats.total} file(s): {stats.cached} cached, {stats.reparsed} re-parsed, "
                f"{stats.unresolved_calls} unresolved call(s)",
            )

        context.known_findings = self.store.list_findings(session.repo_key, status="active")
        return context

    async def _investigate(
        self, session: RepoSession, ctx: ToolContext, agents: list[str], prompt: str, result: ReviewResult
    ) -> None:
        ctx.raise_if_cancelled()
        loops = []
        for name in agents:
            self._event(ctx.run_id, "agent_started", name, {"message": f"{name} agent starting"})
            config = AgentConfig.from_config(name, AGENT_PROMPTS[name], self.config)
            loops.append(AgentLoop(self.client, self.router, ctx, config, emit=self._agent_emitter(ctx.run_id)))

        outcomes = await asyncio.gather(*(loop.run(prompt) for loop in loops), return_exceptions=True)

        for name, outcome in zip(agents, outcomes):
            if isinstance(outcome, (RunCancelledError, asyncio.CancelledError)):
                continue
            if isinstance(outcome, BaseException):
                logger.warning("Agent %s failed: %s", name, outcome)
                result.warnings.append(f"{name} agent failed: {outcome}")
                self._event(ctx.run_id, "agent_failed", name, {"error": str(outcome)})
                continue
            self._event(
                ctx.run_id,
                "agent_completed",
                name,
                {
                    "findings": len(outcome.findings),
                    "toolCalls": outcome.tool_calls,
                    "turns": outcome.turns,
                    "confidenceRounds": outcome.confidence_rounds,
                    "structured": outcome.structured,
                },
            )
            self._persist(session, ctx.run_id, name, outcome.findings, result)

    def _persist(
        self, session: RepoSession, run_id: str, agent: str, drafts: list[FindingDraft], result: ReviewResult
    ) -> None:
        for draft in drafts:
            category = draft.category or agent
            evidence = draft.evidence_list()
            fingerprint = compute_fingerprint(agent, category, draft.title, evidence)
            if self.store.find_active_by_fingerprint(session.repo_key, fingerprint) is not None:
                logger.debug("Skipping duplicate finding %r (%s)", draft.title, fingerprint)
                result.duplicates += 1
                continue
            finding = self.store.insert_finding(
                run_id,
                agent=agent,
                category=category,
                severity=draft.severity,
                title=draft.title,
                description=draft.description,
                confidence=draft.confidence,
                evidence=evidence,
                fingerprint=fingerprint,
            )
            result.findings.append(finding)
            self._stream({"type": "finding", "finding": dataclasses.asdict(finding)})
            self._event(
                run_id,
                "finding_emitted",
                agent,
                {
                    "findingId": finding.id,
                    "title": finding.title,
                    "severity": finding.severity,
                    "confidence": finding.confidence,
                },
            )

    async def _challenge(self, ctx: ToolContext, result: ReviewResult) -> None:
        self._event(ctx.run_id, "agent_started", "validator", {"message": "Challenging findings"})
        config = AgentConfig.from_config(
            "validator", VALIDATOR_PROMPT, self.config, max_turns=CHALLENGE_MAX_TURNS, confidence_rounds=0
        )
        loop = AgentLoop(self.client, self.router, ctx, config, emit=self._agent_emitter(ctx.run_id))
        try:
            outcome = await loop.run(build_challenge_prompt(result.findings))
        except RunCancelledError:
            raise
        except Exception as e:
            logger.warning("Challenge pass failed: %s", e)
            result.warnings.append(f"validator agent failed: {e}")
            self._event(ctx.run_id, "agent_failed", "validator", {"error": str(e)})
            return

        by_id = {f.id: f for f in result.findings}
        by_title = {normalize_title(f.title): f for f in result.findings}
        for draft in outcome.findings:
            original = by_id.get(draft.id or "") or by_title.get(normalize_title(draft.title))
            if original is None or draft.confidence == original.confidence:
                continue
            self.store.update_finding_confidence(original.id, draft.confidence)
            self._event(
                ctx.run_id,
                "finding_validated",
                "validator",
                {
                    "findingId": original.id,
                    "originalConfidence": original.confidence,
                    "validatedConfidence": draft.confidence,
                    "rejected": draft.confidence == 0,
                },
            )
        self._event(ctx.run_id, "agent_completed", "validator", {"findings": len(outcome.findings)})

    async def _explain(self, ctx: ToolContext, result: ReviewResult) -> None:
        current = {f.id: f for f in self.store.get_findings(ctx.run_id)}
        # Rejected findings are not worth explaining.
        targets = [current[f.id] for f in result.findings if f.id in current and current[f.id].confidence > 0]
        if not targets:
            return

        self._event(ctx.run_id, "agent_started", "explainer", {"message": f"Explaining {len(targets)} finding(s)"})
        config = AgentConfig.from_config(
            "explainer",
            EXPLAINER_PROMPT,
            self.config,
            max_turns=EXPLAIN_MAX_TURNS,
            forced_tool_turns=0,
            confidence_rounds=0,
            channel=EXPLANATIONS_CHANNEL,
        )
        loop = AgentLoop(self.client, self.router, ctx, config, emit=self._agent_emitter(ctx.run_id))
        try:
            outcome = await loop.run(build_explain_prompt(targets))
        except RunCancelledError:
            raise
        except Exception as e:
            logger.warning("Explanation pass failed: %s", e)
            result.warnings.append(f"explainer agent failed: {e}")
            self._event(ctx.run_id, "agent_failed", "explainer", {"error": str(e)})
            return

        known = {f.id for f in targets}
        explained = 0
        for explanation in outcome.items:
            if explanation.finding_id not in known:
                continue
            explained += 1
            self._event(
                ctx.run_id,
                "finding_explained",
                "explainer",
                {
                    "findingId": explanation.finding_id,
                    "summary": explanation.summary,
                    "whyItMatters": explanation.why_it_matters,
                    "suggestedFix": explanation.suggested_fix,
                },
            )
        self._event(ctx.run_id, "agent_completed", "explainer", {"explanations": explained})

    # ------------------------------------------------------------------ #
    # Events                                                               #
    # ------------------------------------------------------------------ #

    def _event(self, run_id: str, type: str, agent: str | None, data: dict) -> None:
        event = self.store.insert_event(run_id, type, agent=agent, data=data)
        self._stream({"type": "event", "event": dataclasses.asdict(event)})

    def _agent_emitter(self, run_id: str):
        def emit(type: str, agent: str | None, data: dict) -> None:
            self._event(run_id, type, agent, data)

        return emit

    def _step(self, run_id: str, step: str, message: str) -> None:
        self._event(run_id, "evidence_collected", None, {"kind": "pipeline_step", "step": step, "message": message})

    def _warn(self, run_id: str, step: str, warning: str, result: ReviewResult) -> None:
        logger.warning("%s: %s", step, warning)
        result.warnings.append(warning)
        self._event(run_id, "evidence_collected", None, {"kind": "pipeline_step", "step": step, "warning": warning})

    def _stream(self, payload: dict) -> None:
        if self._emit is not None:
            self._emit(payload)
