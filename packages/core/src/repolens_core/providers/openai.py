from __future__ import annotations

import json
import logging

from openai import AsyncOpenAI

from repolens_core.providers.base import BaseModelClient
from repolens_core.providers.types import (
    Message,
    ModelRequest,
    ModelResponse,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    unexpected_block,
)

logger = logging.getLogger(__name__)


class OpenAIClient(BaseModelClient):
    MODEL = "gpt-4o"
    TEMPERATURE = 0.2
    MAX_TOKENS = 8192

    def __init__(self, api_key: str | None, model: str | None = None):
        super().__init__(model)
        self.client = AsyncOpenAI(api_key=api_key)

    async def _call_api(self, request: ModelRequest) -> ModelResponse:
        # Chat completions have no reasoning trace to request; thinking is ignored.
        kwargs: dict = {
            "model": self.model,
            "messages": _to_openai(request.system, request.messages),
            "temperature": self.TEMPERATURE,
            "max_tokens": self.MAX_TOKENS,
        }
        if request.tools:
            kwargs["tools"] = [_to_function_tool(t) for t in request.tools]
            kwargs["tool_choice"] = "required" if request.force_tool else "auto"

        response = await self.client.chat.completions.create(**kwargs)
        choice = response.choices[0]
        message = choice.message

        blocks: list = []
        if message.content:
            blocks.append(TextBlock(text=message.content))
        for call in message.tool_calls or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                logger.warning("Tool call %s had malformed arguments", call.function.name)
                arguments = {}
            if not isinstance(arguments, dict):
                arguments = {}
            blocks.append(ToolUseBlock(id=call.id, name=call.function.name, input=arguments))
        return ModelResponse(blocks=blocks, stop_reason=choice.finish_reason or "")


def _to_function_tool(tool: dict) -> dict:
    return {
        "type": "function",
        "function": {
            "name": tool["name"],
            "description": tool.get("description", ""),
            "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
        },
    }


def _to_openai(system: str, messages: list[Message]) -> list[dict]:
    out: list[dict] = [{"role": "system", "content": system}]
    for message in messages:
        if message.role == "assistant":
            text = []
            tool_calls = []
            for block in message.content:
                if isinstance(block, TextBlock):
                    text.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    tool_calls.append(
                        {
                            "id": block.id,
                            "type": "function",
                            "function": {"name": block.name, "arguments": json.dumps(block.input)},
                        }
                    )
                elif isinstance(block, ThinkingBlock):
                    continue
                else:
                    raise unexpected_block(block)
            entry: dict = {"role": "assistant", "content": "".join(text) or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            out.append(entry)
            continue

        # Tool results become separate "tool" messages; any text follows them.
        text = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                out.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": block.content})
            elif isinstance(block, TextBlock):
                text.append(block.text)
            else:
                raise unexpected_block(block)
        if text:
            out.append({"role": "user", "content": "\n\n".join(text)})
    return out
