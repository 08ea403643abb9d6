"""Tests for the agent loop runtime, driven by a scripted model client."""

from __future__ import annotations

import asyncio

import pytest

from repolens_core.agents.findings import EXPLANATIONS_CHANNEL
from repolens_core.agents.loop import AgentConfig, AgentLoop
from repolens_core.agents.prompts import FORCED_TOOL_NUDGE
from repolens_core.cancel import CancelToken
from repolens_core.errors import RunCancelledError
from repolens_core.providers.base import BaseModelClient
from repolens_core.providers.types import ModelResponse, TextBlock, ThinkingBlock, ToolResultBlock, ToolUseBlock
from repolens_core.session import RepoSession
from repolens_core.tools.router import ToolContext, build_default_router

GOOD_FINDING = {
    "category": "bugs",
    "severity": "high",
    "title": "Division by zero in average",
    "description": "average() divides by len(items) without checking for an empty list",
    "confidence": 0.9,
    "evidence": [{"file_path": "app/stats.py", "start_line": 2, "end_line": 2, "snippet": "return sum(items) / len(items)"}],
}
WEAK_FINDING = {"title": "Maybe a bug", "confidence": 0.2}


class _ScriptedClient(BaseModelClient):
    """Returns the scripted responses in order and records each request."""

    RETRY_BASE_DELAY = 0

    def __init__(self, responses):
        super().__init__("scripted")
        self.responses = list(responses)
        self.calls = []

    async def _call_api(self, request):
        self.calls.append(
            {
                "force_tool": request.force_tool,
                "thinking": request.thinking,
                "tools": [t["name"] for t in request.tools],
                "messages": len(request.messages),
            }
        )
        if not self.responses:
            return ModelResponse([TextBlock("done")])
        return self.responses.pop(0)


def _tool(name, input=None, id=None):
    _tool.counter += 1
    return ModelResponse([ToolUseBlock(id or f"tu_{_tool.counter}", name, input or {})], "tool_use")


_tool.counter = 0


def _text(text):
    return ModelResponse([TextBlock(text)], "end_turn")


def _report(*findings):
    return _tool("report_findings", {"findings": list(findings)})


def _tool_results(spy):
    """Every tool result block sent to the model, in order."""
    messages = spy.call_args_list[-1].args[1]
    return [b for m in messages for b in m.content if isinstance(b, ToolResultBlock)]


def _loop(tmp_path, responses, token=None, events=None, **overrides):
    root = tmp_path / "repo"
    (root / "app").mkdir(parents=True, exist_ok=True)
    (root / "app" / "stats.py").write_text("def average(items):\n    return sum(items) / len(items)\n")
    ctx = ToolContext(session=RepoSession(root), token=token or CancelToken())
    settings = {"forced_tool_turns": 0, "confidence_rounds": 0, "max_turns": 20, **overrides}
    config = AgentConfig(name="bugs", system_prompt="You are a bug hunter.", **settings)
    client = _ScriptedClient(responses)
    emit = (lambda type, agent, data: events.append((type, agent, data))) if events is not None else None
    return AgentLoop(client, build_default_router(), ctx, config, emit=emit), client


# ---------------------------------------------------------------------------
# Turn loop
# ---------------------------------------------------------------------------


class TestForcedPhase:
    @pytest.mark.asyncio
    async def test_first_turns_force_tool_use(self, tmp_path):
        loop, client = _loop(
            tmp_path,
            [
                _tool("read_file", {"path": "app/stats.py"}),
                _tool("list_tree"),
                _report(GOOD_FINDING),
                _text("Done."),
            ],
            forced_tool_turns=2,
        )
        result = await loop.run("Review the repository.")

        assert [c["force_tool"] for c in client.calls] == [True, True, False, False]
        assert [c["thinking"] for c in client.calls] == [False, False, True, True]
        assert result.turns == 4
        assert result.tool_calls == 2
        assert result.structured is True
        assert [f.title for f in result.findings] == ["Division by zero in average"]

    @pytest.mark.asyncio
    async def test_nudges_when_forced_turn_has_no_tool_use(self, tmp_path):
        loop, client = _loop(
            tmp_path,
            [_text("I already know the answer."), _tool("read_file", {"path": "app/stats.py"}), _text("Done.")],
            forced_tool_turns=1,
        )
        result = await loop.run("Review.")
        assert len(client.calls) == 3
        assert result.turns == 3
        assert result.tool_calls == 1

    @pytest.mark.asyncio
    async def test_nudge_text_reaches_the_model(self, tmp_path, mocker):
        loop, client = _loop(tmp_path, [_text("no tools"), _text("Done.")], forced_tool_turns=1)
        spy = mocker.spy(client, "complete")
        await loop.run("Review.")
        messages = spy.call_args_list[-1].args[1]
        texts = [b.text for m in messages for b in m.content if isinstance(b, TextBlock)]
        assert FORCED_TOOL_NUDGE in texts


class TestToolDispatch:
    @pytest.mark.asyncio
    async def test_tool_results_fed_back(self, tmp_path, mocker):
        loop, client = _loop(tmp_path, [_tool("read_file", {"path": "app/stats.py"}, id="tu_read"), _text("Done.")])
        spy = mocker.spy(client, "complete")
        await loop.run("Review.")
        [result] = _tool_results(spy)
        assert result.tool_use_id == "tu_read"
        assert "sum(items)" in result.content
        assert result.is_error is False

    @pytest.mark.asyncio
    async def test_tool_errors_are_results_not_failures(self, tmp_path, mocker):
        loop, client = _loop(tmp_path, [_tool("read_file", {"path": "../../etc/passwd"}), _text("Done.")])
        spy = mocker.spy(client, "complete")
        result = await loop.run("Review.")
        [tool_result] = _tool_results(spy)
        assert tool_result.is_error is True
        assert result.tool_calls == 1

    @pytest.mark.asyncio
    async def test_tools_outside_the_agent_set_are_refused(self, tmp_path, mocker):
        loop, client = _loop(tmp_path, [_tool("apply_patch", {"patch_id": "patch-1"}), _text("Done.")])
        spy = mocker.spy(client, "complete")
        await loop.run("Review.")
        [tool_result] = _tool_results(spy)
        assert tool_result.is_error is True
        assert "Unknown tool: apply_patch" in tool_result.content
        assert "apply_patch" not in client.calls[0]["tools"]
        assert "report_findings" in client.calls[0]["tools"]

    @pytest.mark.asyncio
    async def test_stops_at_turn_ceiling(self, tmp_path):
        loop, client = _loop(tmp_path, [_tool("list_tree") for _ in range(10)], max_turns=3)
        result = await loop.run("Review.")
        assert result.turns == 3
        assert len(client.calls) == 3

    @pytest.mark.asyncio
    async def test_events_emitted(self, tmp_path):
        events = []
        loop, _ = _loop(
            tmp_path,
            [
                ModelResponse([ThinkingBlock("Let me check stats.py"), ToolUseBlock("t1", "read_file", {"path": "app/stats.py"})]),
                _text("Done."),
            ],
            events=events,
        )
        await loop.run("Review.")
        kinds = [data["kind"] for type, agent, data in events if type == "evidence_collected"]
        assert kinds == ["agent_thinking", "tool_call_start", "tool_call_end", "agent_text"]
        assert all(agent == "bugs" for _, agent, _ in events)


# ---------------------------------------------------------------------------
# Result collection
# ---------------------------------------------------------------------------


class TestResultCollection:
    @pytest.mark.asyncio
    async def test_invalid_report_is_an_error_result(self, tmp_path, mocker):
        loop, client = _loop(
            tmp_path,
            [_tool("report_findings", {"findings": [{"severity": "high"}]}), _report(GOOD_FINDING), _text("Done.")],
        )
        spy = mocker.spy(client, "complete")
        result = await loop.run("Review.")
        first_result = _tool_results(spy)[0]
        assert first_result.is_error is True
        assert [f.title for f in result.findings] == ["Division by zero in average"]

    @pytest.mark.asyncio
    async def test_later_report_replaces_earlier(self, tmp_path):
        loop, _ = _loop(tmp_path, [_report(WEAK_FINDING), _report(GOOD_FINDING), _text("Done.")])
        result = await loop.run("Review.")
        assert [f.title for f in result.findings] == ["Division by zero in average"]

    @pytest.mark.asyncio
    async def test_legacy_extraction_when_report_tool_unused(self, tmp_path):
        text = (
            "Investigation complete.\n<findings>[{\"title\": \"Unchecked division\", \"severity\": \"medium\", "
            "\"confidence\": 0.7, \"evidence\": [{\"filePath\": \"app/stats.py\", \"startLine\": 2}]}]</findings>"
        )
        loop, _ = _loop(tmp_path, [_text(text)])
        result = await loop.run("Review.")
        assert result.structured is False
        assert [f.title for f in result.findings] == ["Unchecked division"]
        assert result.findings[0].evidence[0].file_path == "app/stats.py"

    @pytest.mark.asyncio
    async def test_no_findings(self, tmp_path):
        loop, _ = _loop(tmp_path, [_text("Nothing to report.")])
        result = await loop.run("Review.")
        assert result.findings == []
        assert result.text == "Nothing to report."

    @pytest.mark.asyncio
    async def test_explanation_channel(self, tmp_path):
        loop, client = _loop(
            tmp_path,
            [
                _tool(
                    "report_explanations",
                    {"explanations": [{"finding_id": "finding-1", "summary": "s", "why_it_matters": "w"}]},
                ),
                _text("Done."),
            ],
            channel=EXPLANATIONS_CHANNEL,
            confidence_rounds=2,
        )
        result = await loop.run("Explain.")
        assert [e.finding_id for e in result.items] == ["finding-1"]
        assert result.confidence_rounds == 0
        assert "report_explanations" in client.calls[0]["tools"]
        assert "report_findings" not in client.calls[0]["tools"]


# ---------------------------------------------------------------------------
# Confidence rounds
# ---------------------------------------------------------------------------


class TestConfidenceRounds:
    @pytest.mark.asyncio
    async def test_thin_investigation_gets_a_corrective_round(self, tmp_path):
        events = []
        loop, client = _loop(
            tmp_path,
            [
                _report(WEAK_FINDING),
                _text("Done."),
                # round 1
                _tool("read_file", {"path": "app/stats.py"}),
                _tool("search_text", {"pattern": "average"}),
                _tool("symbol_lookup", {"name": "average"}),
                _report(GOOD_FINDING),
                _text("Verified."),
            ],
            events=events,
            confidence_rounds=2,
        )
        result = await loop.run("Review.")

        assert result.confidence_rounds == 1
        assert result.tool_calls == 3
        assert result.turns == 7
        assert [f.title for f in result.findings] == ["Division by zero in average"]
        assert client.calls[2]["force_tool"] is True
        rounds = [data for type, _, data in events if data.get("kind") == "confidence_round"]
        assert len(rounds) == 1
        assert rounds[0]["round"] == 1

    @pytest.mark.asyncio
    async def test_round_without_new_findings_keeps_originals(self, tmp_path):
        loop, _ = _loop(
            tmp_path,
            [_report(WEAK_FINDING), _text("Done."), _text("Still sure."), _text("Final.")],
            confidence_rounds=1,
        )
        result = await loop.run("Review.")
        assert result.confidence_rounds == 1
        assert [f.title for f in result.findings] == ["Maybe a bug"]

    @pytest.mark.asyncio
    async def test_thorough_investigation_skips_rounds(self, tmp_path):
        loop, client = _loop(
            tmp_path,
            [
                _tool("read_file", {"path": "app/stats.py"}),
                _tool("list_tree"),
                _tool("search_text", {"pattern": "len"}),
                _report(GOOD_FINDING),
                _text("Done."),
            ],
            confidence_rounds=2,
        )
        result = await loop.run("Review.")
        assert result.confidence_rounds == 0
        assert len(client.calls) == 5


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class _HangingClient(BaseModelClient):
    async def _call_api(self, request):
        await asyncio.sleep(30)
        return ModelResponse([TextBlock("too late")])


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, tmp_path):
        token = CancelToken()
        token.cancel()
        loop, client = _loop(tmp_path, [_text("never")], token=token)
        with pytest.raises(RunCancelledError):
            await loop.run("Review.")
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_cancel_interrupts_in_flight_model_call(self, tmp_path):
        token = CancelToken()
        loop, _ = _loop(tmp_path, [], token=token)
        loop.client = _HangingClient()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "stop now")
        with pytest.raises(RunCancelledError, match="stop now"):
            await asyncio.wait_for(loop.run("Review."), timeout=5)
