"""Tests for review orchestration: persistence, dedup, passes and cancellation."""

from __future__ import annotations

import asyncio
import re

import pytest

from repolens_core.agents.prompts import AGENT_PROMPTS, EXPLAINER_PROMPT, VALIDATOR_PROMPT
from repolens_core.errors import RepolensError
from repolens_core.orchestrator import Orchestrator
from repolens_core.providers.base import BaseModelClient
from repolens_core.providers.types import ModelResponse, TextBlock, ToolUseBlock
from repolens_store.sqlite import SQLiteStore

DIVISION = {
    "category": "bugs",
    "severity": "high",
    "title": "Division by zero in average",
    "description": "average() divides by len(items) without checking for an empty list",
    "confidence": 0.9,
    "evidence": [{"file_path": "app/stats.py", "start_line": 2, "end_line": 2}],
}
SHELL = {
    "category": "injection",
    "severity": "critical",
    "title": "Shell command built from user input",
    "description": "run() passes the request argument to os.system",
    "confidence": 0.8,
    "evidence": [{"file_path": "app/stats.py", "start_line": 5, "end_line": 5}],
}

_PROMPT_NAMES = {prompt: name for name, prompt in AGENT_PROMPTS.items()}
_PROMPT_NAMES[VALIDATOR_PROMPT] = "validator"
_PROMPT_NAMES[EXPLAINER_PROMPT] = "explainer"


class _RoutedClient(BaseModelClient):
    """Scripted client that keeps one response queue per agent.

    Agents are told apart by their system prompt. A scripted entry may be a
    callable taking the request, for responses that depend on ids only known
    at run time. Agents listed in ``failing`` always raise; agents listed in
    ``hanging`` block until cancelled.
    """

    RETRY_BASE_DELAY = 0

    def __init__(self, scripts=None, failing=(), hanging=()):
        super().__init__("routed")
        self.scripts = {name: list(responses) for name, responses in (scripts or {}).items()}
        self.failing = set(failing)
        self.hanging = set(hanging)
        self.seen = []

    async def _call_api(self, request):
        agent = _PROMPT_NAMES.get(request.system, "unknown")
        self.seen.append(agent)
        if agent in self.failing:
            raise RuntimeError(f"{agent} backend unavailable")
        if agent in self.hanging:
            await asyncio.sleep(30)
        queue = self.scripts.get(agent) or []
        if not queue:
            return ModelResponse([TextBlock("Done.")], "end_turn")
        entry = queue.pop(0)
        return entry(request) if callable(entry) else entry


def _report(channel, key, items):
    return ModelResponse([ToolUseBlock(f"tu_{channel}", channel, {key: items})], "tool_use")


def _findings(*items):
    return _report("report_findings", "findings", list(items))


def _finding_ids(request):
    text = " ".join(b.text for m in request.messages for b in m.content if isinstance(b, TextBlock))
    return re.findall(r"id=(finding-[0-9a-f]+)", text)


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(db_path=str(tmp_path / "reviews.db"))
    yield s
    s.close()


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    (root / "app").mkdir(parents=True)
    (root / "app" / "__init__.py").write_text("")
    (root / "app" / "stats.py").write_text(
        "import os\n"
        "def average(items):\n"
        "    return sum(items) / len(items)\n"
        "def run(arg):\n"
        "    os.system('ls ' + arg)\n"
    )
    return str(root)


@pytest.fixture(autouse=True)
def no_pattern_scan(mocker):
    return mocker.patch(
        "repolens_core.orchestrator.pattern_scan",
        return_value={"results": [], "warning": "semgrep is not installed; pattern scan skipped"},
    )


def _config(**overrides):
    config = {
        "agents": ["bugs"],
        "exclude": [],
        "max_turns": 10,
        "forced_tool_turns": 0,
        "thinking": False,
        "confidence_rounds": 0,
        "pattern_scan_timeout": 5,
        "challenge": False,
        "explain": False,
    }
    config.update(overrides)
    return config


def _event_types(store, run_id):
    return [e.type for e in store.get_events(run_id)]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestRunReview:
    @pytest.mark.asyncio
    async def test_persists_findings(self, store, repo):
        client = _RoutedClient({"bugs": [_findings(DIVISION)]})
        result = await Orchestrator(store, client, _config()).run_review(repo)

        assert result.status == "complete"
        assert [f.title for f in result.findings] == ["Division by zero in average"]
        stored = store.get_findings(result.run_id)
        assert stored[0].agent == "bugs"
        assert stored[0].fingerprint
        assert stored[0].evidence[0].file_path == "app/stats.py"
        assert store.get_run(result.run_id).status == "complete"

    @pytest.mark.asyncio
    async def test_events_recorded_in_order(self, store, repo):
        client = _RoutedClient({"bugs": [_findings(DIVISION)]})
        result = await Orchestrator(store, client, _config()).run_review(repo)
        types = _event_types(store, result.run_id)
        assert types.index("agent_started") < types.index("finding_emitted") < types.index("agent_completed")
        steps = [e.data.get("step") for e in store.get_events(result.run_id) if e.data.get("kind") == "pipeline_step"]
        assert steps[:4] == ["repo_open", "file_tree", "import_graph", "pattern_scan"]
        assert "diff" not in steps
        assert "call_graph" in steps

    @pytest.mark.asyncio
    async def test_scan_warning_is_not_a_failure(self, store, repo, no_pattern_scan):
        result = await Orchestrator(store, _RoutedClient(), _config()).run_review(repo)
        assert result.status == "complete"
        assert "semgrep is not installed; pattern scan skipped" in result.warnings
        assert no_pattern_scan.call_args.kwargs["timeout"] == 5

    @pytest.mark.asyncio
    async def test_stream_receives_findings_and_events(self, store, repo):
        streamed = []
        client = _RoutedClient({"bugs": [_findings(DIVISION)]})
        await Orchestrator(store, client, _config(), emit=streamed.append).run_review(repo)
        kinds = {payload["type"] for payload in streamed}
        assert kinds == {"event", "finding"}
        [finding] = [p["finding"] for p in streamed if p["type"] == "finding"]
        assert finding["title"] == "Division by zero in average"

    @pytest.mark.asyncio
    async def test_duplicates_skipped_across_runs(self, store, repo):
        orchestrator = Orchestrator(store, _RoutedClient({"bugs": [_findings(DIVISION)]}), _config())
        first = await orchestrator.run_review(repo)
        orchestrator.client = _RoutedClient({"bugs": [_findings(DIVISION, SHELL)]})
        second = await orchestrator.run_review(repo)

        assert len(first.findings) == 1
        assert second.duplicates == 1
        assert [f.title for f in second.findings] == ["Shell command built from user input"]

    @pytest.mark.asyncio
    async def test_dismissed_finding_is_reported_again(self, store, repo):
        orchestrator = Orchestrator(store, _RoutedClient({"bugs": [_findings(DIVISION)]}), _config())
        first = await orchestrator.run_review(repo)
        store.update_finding_status(first.findings[0].id, "dismissed")
        orchestrator.client = _RoutedClient({"bugs": [_findings(DIVISION)]})
        second = await orchestrator.run_review(repo)
        assert second.duplicates == 0
        assert len(second.findings) == 1

    @pytest.mark.asyncio
    async def test_failed_agent_does_not_fail_siblings(self, store, repo):
        client = _RoutedClient({"bugs": [_findings(DIVISION)]}, failing={"security"})
        result = await Orchestrator(store, client, _config(agents=["bugs", "security"])).run_review(repo)

        assert result.status == "complete"
        assert [f.agent for f in result.findings] == ["bugs"]
        assert any(w.startswith("security agent failed") for w in result.warnings)
        failed = [e for e in store.get_events(result.run_id) if e.type == "agent_failed"]
        assert [e.agent for e in failed] == ["security"]

    @pytest.mark.asyncio
    async def test_agents_argument_overrides_config(self, store, repo):
        client = _RoutedClient()
        await Orchestrator(store, client, _config(agents=["bugs", "security"])).run_review(repo, agents=["security"])
        assert set(client.seen) == {"security"}

    @pytest.mark.asyncio
    async def test_diff_mode_collects_diff(self, store, repo, mocker):
        git_diff = mocker.patch(
            "repolens_core.orchestrator.git_diff",
            return_value={"diff": "diff --git a/app/stats.py b/app/stats.py\n+++ b/app/stats.py\n"},
        )
        result = await Orchestrator(store, _RoutedClient(), _config()).run_review(repo, mode="diff")
        assert result.status == "complete"
        git_diff.assert_awaited_once()
        assert store.get_run(result.run_id).mode == "diff"


class TestArguments:
    @pytest.mark.asyncio
    async def test_unknown_mode(self, store, repo):
        with pytest.raises(ValueError, match="Unknown review mode"):
            await Orchestrator(store, _RoutedClient(), _config()).run_review(repo, mode="partial")
        assert store.list_runs() == []

    @pytest.mark.asyncio
    async def test_unknown_agent(self, store, repo):
        with pytest.raises(ValueError, match="Unknown agent"):
            await Orchestrator(store, _RoutedClient(), _config()).run_review(repo, agents=["style"])

    @pytest.mark.asyncio
    async def test_missing_repository(self, store, tmp_path):
        with pytest.raises(NotADirectoryError):
            await Orchestrator(store, _RoutedClient(), _config()).run_review(str(tmp_path / "missing"))


# ---------------------------------------------------------------------------
# Challenge and explanation passes
# ---------------------------------------------------------------------------


class TestChallengePass:
    @pytest.mark.asyncio
    async def test_rescores_by_id(self, store, repo):
        def rescore(request):
            [finding_id] = _finding_ids(request)
            return _findings({"id": finding_id, "title": "renamed by validator", "confidence": 0.4})

        client = _RoutedClient({"bugs": [_findings(DIVISION)], "validator": [rescore]})
        result = await Orchestrator(store, client, _config(challenge=True)).run_review(repo)

        assert result.findings[0].confidence == 0.4
        [validated] = [e for e in store.get_events(result.run_id) if e.type == "finding_validated"]
        assert validated.data["originalConfidence"] == 0.9
        assert validated.data["validatedConfidence"] == 0.4
        assert validated.data["rejected"] is False

    @pytest.mark.asyncio
    async def test_rejects_by_title(self, store, repo):
        client = _RoutedClient(
            {
                "bugs": [_findings(DIVISION)],
                "validator": [_findings({"title": "division by zero in AVERAGE!", "confidence": 0})],
            }
        )
        result = await Orchestrator(store, client, _config(challenge=True)).run_review(repo)
        assert result.findings[0].confidence == 0
        assert result.findings[0].status == "active"
        [validated] = [e for e in store.get_events(result.run_id) if e.type == "finding_validated"]
        assert validated.data["rejected"] is True

    @pytest.mark.asyncio
    async def test_skipped_without_findings(self, store, repo):
        client = _RoutedClient()
        await Orchestrator(store, client, _config(challenge=True)).run_review(repo)
        assert "validator" not in client.seen

    @pytest.mark.asyncio
    async def test_failure_keeps_original_scores(self, store, repo):
        client = _RoutedClient({"bugs": [_findings(DIVISION)]}, failing={"validator"})
        result = await Orchestrator(store, client, _config(challenge=True)).run_review(repo)
        assert result.status == "complete"
        assert result.findings[0].confidence == 0.9
        assert "validator agent failed" in result.warnings[-1]


class TestExplainPass:
    @pytest.mark.asyncio
    async def test_explanations_recorded_as_events(self, store, repo):
        def explain(request):
            return _report(
                "report_explanations",
                "explanations",
                [
                    {
                        "finding_id": finding_id,
                        "summary": "Empty input crashes average()",
                        "why_it_matters": "Callers pass filtered lists that can be empty",
                        "suggested_fix": "Return 0.0 when items is empty",
                    }
                    for finding_id in _finding_ids(request)
                ]
                + [{"finding_id": "finding-000000000000", "summary": "unknown"}],
            )

        client = _RoutedClient({"bugs": [_findings(DIVISION)], "explainer": [explain]})
        result = await Orchestrator(store, client, _config(explain=True)).run_review(repo)

        explained = [e for e in store.get_events(result.run_id) if e.type == "finding_explained"]
        assert [e.data["findingId"] for e in explained] == [result.findings[0].id]
        assert explained[0].data["suggestedFix"] == "Return 0.0 when items is empty"
        [completed] = [
            e for e in store.get_events(result.run_id) if e.type == "agent_completed" and e.agent == "explainer"
        ]
        assert completed.data["explanations"] == 1

    @pytest.mark.asyncio
    async def test_rejected_findings_not_explained(self, store, repo):
        client = _RoutedClient(
            {"bugs": [_findings(DIVISION)], "validator": [_findings({"title": DIVISION["title"], "confidence": 0})]}
        )
        await Orchestrator(store, client, _config(challenge=True, explain=True)).run_review(repo)
        assert "explainer" not in client.seen


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_closes_run_as_error(self, store, repo):
        orchestrator = Orchestrator(store, _RoutedClient(hanging={"bugs"}), _config())
        asyncio.get_running_loop().call_later(0.1, orchestrator.cancel)
        result = await asyncio.wait_for(orchestrator.run_review(repo), timeout=10)

        assert result.status == "error"
        assert result.cancelled is True
        assert result.error == "Review cancelled by user"
        run = store.get_run(result.run_id)
        assert run.status == "error"
        assert run.error == "Review cancelled by user"
        assert _event_types(store, result.run_id)[-1] == "run_cancelled"
        assert orchestrator.active is False

    @pytest.mark.asyncio
    async def test_completed_agents_keep_their_findings(self, store, repo):
        client = _RoutedClient({"bugs": [_findings(DIVISION)]}, hanging={"security"})
        orchestrator = Orchestrator(store, client, _config(agents=["bugs", "security"]))
        asyncio.get_running_loop().call_later(0.2, orchestrator.cancel, "user pressed stop")
        result = await asyncio.wait_for(orchestrator.run_review(repo), timeout=10)

        assert result.cancelled is True
        assert result.error == "user pressed stop"
        assert [f.title for f in result.findings] == ["Division by zero in average"]

    def test_cancel_without_active_run(self, store):
        assert Orchestrator(store, _RoutedClient(), _config()).cancel() is False

    @pytest.mark.asyncio
    async def test_second_run_rejected_while_active(self, store, repo):
        orchestrator = Orchestrator(store, _RoutedClient(hanging={"bugs"}), _config())
        first = asyncio.ensure_future(orchestrator.run_review(repo))
        for _ in range(100):
            if orchestrator.active:
                break
            await asyncio.sleep(0.01)

        with pytest.raises(RepolensError, match="already running"):
            await orchestrator.run_review(repo)

        orchestrator.cancel()
        result = await asyncio.wait_for(first, timeout=10)
        assert result.cancelled is True
