"""Provider-neutral conversation types.

Response content is a closed set of block kinds. Consumers dispatch on the
concrete class and treat anything else as a programming error, so adding a
block kind forces every consumer to be updated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str
    signature: str = ""


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class Message:
    role: str  # "user" | "assistant"
    content: list[ContentBlock] = field(default_factory=list)


@dataclass
class ModelRequest:
    system: str
    messages: list[Message]
    tools: list[dict]
    force_tool: bool = False
    thinking: bool = False


@dataclass
class ModelResponse:
    blocks: list[ContentBlock]
    stop_reason: str = ""

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]


def unexpected_block(block: object) -> TypeError:
    return TypeError(f"Unhandled content block type: {type(block).__name__}")
