"""Agent loop runtime: one tool-using investigation against the model.

Per turn:
    complete(conversation, tool schemas) -> dispatch every tool use
                                         -> feed results back as the next turn

The first ``forced_tool_turns`` turns require tool use, so an agent gathers
evidence before it can answer. The loop ends on a turn without tool use
(once the forced phase is over), at the turn ceiling, or on cancellation.

Results come back through the agent's report channel (a loop-local tool,
schema-validated). When the agent never calls it, the legacy extraction
path scrapes tagged JSON blocks out of the accumulated text.

Findings agents then get up to ``confidence_rounds`` short corrective
rounds when ``assess_investigation`` judges the work thin.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from pydantic import ValidationError

from repolens_core.agents.extract import extract_tagged_json, validate_items
from repolens_core.agents.findings import FINDINGS_CHANNEL, FindingDraft, ReportChannel
from repolens_core.agents.prompts import CONFIDENCE_ROUND_PROMPT, FORCED_TOOL_NUDGE, TEXT_FALLBACK_INSTRUCTIONS
from repolens_core.errors import RunCancelledError
from repolens_core.providers.types import (
    Message,
    ModelResponse,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    unexpected_block,
)
from repolens_core.tools.router import INVESTIGATION_TOOLS, ToolResult

if TYPE_CHECKING:
    from repolens_core.providers.base import BaseModelClient
    from repolens_core.tools.router import ToolContext, ToolRouter

logger = logging.getLogger(__name__)

# (event type, agent, payload) -> None
Emit = Callable[[str, Optional[str], dict], None]

MIN_TOOL_CALLS = 3
MIN_AVERAGE_CONFIDENCE = 0.5


def _no_emit(type: str, agent: str | None, data: dict) -> None:
    pass


@dataclass
class AgentConfig:
    name: str
    system_prompt: str
    max_turns: int = 200
    forced_tool_turns: int = 3
    thinking: bool = True
    confidence_rounds: int = 2
    confidence_round_turns: int = 10
    tools: list[str] = field(default_factory=lambda: list(INVESTIGATION_TOOLS))
    channel: ReportChannel = FINDINGS_CHANNEL

    @classmethod
    def from_config(cls, name: str, system_prompt: str, config: dict, **overrides) -> AgentConfig:
        values = {
            "max_turns": config.get("max_turns", 200),
            "forced_tool_turns": config.get("forced_tool_turns", 3),
            "thinking": config.get("thinking", True),
            "confidence_rounds": config.get("confidence_rounds", 2),
            "confidence_round_turns": config.get("confidence_round_turns", 10),
        }
        values.update(overrides)
        return cls(name=name, system_prompt=system_prompt, **values)


@dataclass
class AgentRunResult:
    agent: str
    items: list = field(default_factory=list)
    text: str = ""
    turns: int = 0
    tool_calls: int = 0
    confidence_rounds: int = 0
    structured: bool = False

    @property
    def findings(self) -> list[FindingDraft]:
        return self.items


@dataclass
class _LoopState:
    text: list[str] = field(default_factory=list)
    reported: list | None = None
    tool_calls: int = 0
    turns: int = 0


def assess_investigation(tool_calls: int, findings: list[FindingDraft]) -> list[str]:
    """Reasons the investigation looks insufficient; empty when it looks fine."""
    reasons = []
    if tool_calls < MIN_TOOL_CALLS:
        reasons.append(f"- Only {tool_calls} tool call(s) were made; investigate with at least {MIN_TOOL_CALLS}.")
    if findings:
        average = sum(f.confidence for f in findings) / len(findings)
        if average < MIN_AVERAGE_CONFIDENCE:
            reasons.append(f"- Average confidence is {average:.2f}; verify findings until you are sure of them.")
        missing = sum(1 for f in findings if not f.evidence)
        if missing * 2 > len(findings):
            reasons.append(f"- {missing} of {len(findings)} finding(s) have no evidence; cite the exact code.")
    return reasons


class AgentLoop:
    def __init__(
        self,
        client: BaseModelClient,
        router: ToolRouter,
        ctx: ToolContext,
        config: AgentConfig,
        emit: Emit | None = None,
    ):
        self.client = client
        self.router = router
        self.ctx = ctx
        self.config = config
        self._emit = emit or _no_emit
        self._tools = router.schemas(config.tools) + [config.channel.schema()]

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def run(self, user_prompt: str) -> AgentRunResult:
        """Run the investigation. Raises RunCancelledError when the run is cancelled."""
        channel = self.config.channel
        fallback = TEXT_FALLBACK_INSTRUCTIONS.format(tool=channel.tool_name, tag=channel.tag)
        messages = [Message("user", [TextBlock(user_prompt + fallback)])]
        state = _LoopState()

        await self._drive(messages, state, self.config.max_turns, self.config.forced_tool_turns)
        items, structured = self._collect(state)
        result = AgentRunResult(agent=self.config.name, items=items, structured=structured)

        if channel is FINDINGS_CHANNEL:
            for round_number in range(1, self.config.confidence_rounds + 1):
                reasons = assess_investigation(state.tool_calls, items)
                if not reasons:
                    break
                self.ctx.raise_if_cancelled()
                logger.info("%s: confidence round %d (%s)", self.config.name, round_number, "; ".join(reasons))
                self._emit(
                    "evidence_collected",
                    self.config.name,
                    {"kind": "confidence_round", "round": round_number, "reasons": reasons},
                )
                _append_user_text(messages, CONFIDENCE_ROUND_PROMPT.format(reasons="\n".join(reasons)))

                round_state = _LoopState(tool_calls=state.tool_calls)
                await self._drive(messages, round_state, self.config.confidence_round_turns, forced_turns=1)
                state.turns += round_state.turns
                state.tool_calls = round_state.tool_calls
                state.text.extend(round_state.text)
                result.confidence_rounds = round_number

                new_items, new_structured = self._collect(round_state)
                if new_items:
                    items, structured = new_items, new_structured

        result.items = items
        result.structured = structured
        result.text = "".join(state.text)
        result.turns = state.turns
        result.tool_calls = state.tool_calls
        return result

    # ------------------------------------------------------------------ #
    # Turn loop                                                            #
    # ------------------------------------------------------------------ #

    async def _drive(self, messages: list[Message], state: _LoopState, max_turns: int, forced_turns: int) -> None:
        for turn in range(max_turns):
            self.ctx.raise_if_cancelled()
            forced = turn < forced_turns
            response = await self._complete(messages, forced)
            self.ctx.raise_if_cancelled()
            state.turns += 1

            if response.blocks:
                messages.append(Message("assistant", list(response.blocks)))
            self._observe(response, state)

            tool_uses = response.tool_uses
            if not tool_uses:
                if forced:
                    # The provider did not honour the forced tool choice.
                    _append_user_text(messages, FORCED_TOOL_NUDGE)
                    continue
                return

            results = []
            for tool_use in tool_uses:
                result = await self._run_tool(tool_use, state)
                results.append(ToolResultBlock(tool_use.id, result.content, result.is_error))
            messages.append(Message("user", results))

        logger.warning("%s: stopped at the %d-turn ceiling", self.config.name, max_turns)

    async def _complete(self, messages: list[Message], forced: bool) -> ModelResponse:
        """Call the model, abandoning the call as soon as the run is cancelled."""
        call = asyncio.ensure_future(
            self.client.complete(
                self.config.system_prompt,
                messages,
                self._tools,
                force_tool=forced,
                thinking=self.config.thinking and not forced,
            )
        )
        token = self.ctx.token
        if token is None:
            return await call

        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            waiter.cancel()
        if not call.done():
            call.cancel()
            raise RunCancelledError(token.reason or "Review cancelled by user")
        return call.result()

    def _observe(self, response: ModelResponse, state: _LoopState) -> None:
        for block in response.blocks:
            if isinstance(block, TextBlock):
                state.text.append(block.text)
                self._emit("evidence_collected", self.config.name, {"kind": "agent_text", "text": block.text[:500]})
            elif isinstance(block, ThinkingBlock):
                self._emit(
                    "evidence_collected",
                    self.config.name,
                    {"kind": "agent_thinking", "text": block.thinking[:1000]},
                )
            elif isinstance(block, ToolUseBlock):
                continue
            else:
                raise unexpected_block(block)

    async def _run_tool(self, tool_use: ToolUseBlock, state: _LoopState) -> ToolResult:
        channel = self.config.channel
        if tool_use.name == channel.tool_name:
            return self._report(tool_use, state)

        state.tool_calls += 1
        self._emit(
            "evidence_collected",
            self.config.name,
            {"kind": "tool_call_start", "tool": tool_use.name, "args": tool_use.input},
        )
        if tool_use.name in self.config.tools:
            result = await self.router.dispatch(tool_use.name, tool_use.input, self.ctx)
        else:
            result = ToolResult(f"Error: Unknown tool: {tool_use.name}", is_error=True)
        self._emit(
            "evidence_collected",
            self.config.name,
            {
                "kind": "tool_call_end",
                "tool": tool_use.name,
                "isError": result.is_error,
                "resultSummary": result.content[:200],
            },
        )
        return result

    def _report(self, tool_use: ToolUseBlock, state: _LoopState) -> ToolResult:
        channel = self.config.channel
        try:
            report = channel.input_model.model_validate(tool_use.input)
        except ValidationError as e:
            return ToolResult(f"Error: Invalid {channel.tool_name} input: {e}", is_error=True)
        state.reported = list(getattr(report, channel.field))
        return ToolResult(f"Recorded {len(state.reported)} {channel.field}.")

    def _collect(self, state: _LoopState) -> tuple[list, bool]:
        if state.reported is not None:
            return state.reported, True
        channel = self.config.channel
        raw = extract_tagged_json("".join(state.text), channel.tag)
        items = validate_items(raw, channel.item_model)
        if items:
            logger.info("%s: used legacy extraction for %d %s", self.config.name, len(items), channel.field)
        return items, False


def _append_user_text(messages: list[Message], text: str) -> None:
    if messages and messages[-1].role == "user":
        messages[-1].content.append(TextBlock(text))
    else:
        messages.append(Message("user", [TextBlock(text)]))
