from __future__ import annotations

from anthropic import AsyncAnthropic

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

THINKING_BUDGET = 4096


class AnthropicClient(BaseModelClient):
    MODEL = "claude-sonnet-4-20250514"
    MAX_TOKENS = 8192
    MAX_TOKENS_THINKING = 16000
    # Only sent without thinking; extended thinking requires the default.
    TEMPERATURE = 0.2

    def __init__(self, api_key: str | None, model: str | None = None):
        super().__init__(model)
        self.client = AsyncAnthropic(api_key=api_key)

    async def _call_api(self, request: ModelRequest) -> ModelResponse:
        thinking = request.thinking and _thinking_compatible(request.messages)
        kwargs: dict = {
            "model": self.model,
            "system": request.system,
            "messages": [_to_anthropic(m) for m in request.messages],
        }
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = {"type": "any"} if request.force_tool else {"type": "auto"}
        if thinking:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET}
            kwargs["max_tokens"] = self.MAX_TOKENS_THINKING
        else:
            kwargs["max_tokens"] = self.MAX_TOKENS
            kwargs["temperature"] = self.TEMPERATURE

        response = await self.client.messages.create(**kwargs)

        blocks = []
        for block in response.content:
            if block.type == "text":
                blocks.append(TextBlock(text=block.text))
            elif block.type == "thinking":
                blocks.append(ThinkingBlock(thinking=block.thinking, signature=block.signature))
            elif block.type == "tool_use":
                blocks.append(ToolUseBlock(id=block.id, name=block.name, input=dict(block.input or {})))
            # redacted_thinking carries nothing the loop can use
        return ModelResponse(blocks=blocks, stop_reason=response.stop_reason or "")


def _thinking_compatible(messages: list[Message]) -> bool:
    """Thinking can only be enabled mid-conversation if every earlier
    assistant tool-use turn opened with a thinking block."""
    for message in messages:
        if message.role != "assistant":
            continue
        has_tool_use = any(isinstance(b, ToolUseBlock) for b in message.content)
        if has_tool_use and not (message.content and isinstance(message.content[0], ThinkingBlock)):
            return False
    return True


def _to_anthropic(message: Message) -> dict:
    content = []
    for block in message.content:
        if isinstance(block, TextBlock):
            content.append({"type": "text", "text": block.text})
        elif isinstance(block, ThinkingBlock):
            content.append({"type": "thinking", "thinking": block.thinking, "signature": block.signature})
        elif isinstance(block, ToolUseBlock):
            content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input})
        elif isinstance(block, ToolResultBlock):
            content.append(
                {
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.content,
                    "is_error": block.is_error,
                }
            )
        else:
            raise unexpected_block(block)
    return {"role": message.role, "content": content}
