"""Conversation data model: messages, content blocks, tool calls and results."""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class TextBlock:
    text: str


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    name: str = ""
    is_error: bool = False
    truncated: bool = False


@dataclass
class ImageBlock:
    media_type: str
    data: str


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ImageBlock]


@dataclass
class Message:
    role: str  # "user" | "assistant"
    content: Union[str, List[ContentBlock]]

    def copy(self) -> "Message":
        return copy.deepcopy(self)


@dataclass
class ToolCall:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ImagePayload:
    """Image returned by a tool for multimodal delivery to the model."""
    media_type: str
    data: str
    question: str = ""


@dataclass
class ToolResult:
    tool_use_id: str
    content: str
    is_error: bool = False
    image: Optional[ImagePayload] = None


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    @property
    def properties(self) -> Dict[str, Any]:
        return self.input_schema.get("properties") or {}

    @property
    def required(self) -> List[str]:
        return list(self.input_schema.get("required") or [])

    def to_schema(self) -> Dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


def block_text(block: ContentBlock) -> str:
    """Flatten a single content block to text."""
    if isinstance(block, TextBlock):
        return block.text
    if isinstance(block, ToolUseBlock):
        return f"{block.name} {json.dumps(block.input, ensure_ascii=False, default=str)}"
    if isinstance(block, ToolResultBlock):
        return block.content
    if isinstance(block, ImageBlock):
        return ""
    raise TypeError(f"Unknown content block: {type(block).__name__}")


def message_text(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    parts = [block_text(block) for block in message.content]
    return "\n".join(part for part in parts if part)


def tool_use_ids(message: Message) -> List[str]:
    if message.role != "assistant" or isinstance(message.content, str):
        return []
    return [b.id for b in message.content if isinstance(b, ToolUseBlock)]


def tool_result_ids(message: Message) -> List[str]:
    if message.role != "user" or isinstance(message.content, str):
        return []
    return [b.tool_use_id for b in message.content if isinstance(b, ToolResultBlock)]


def has_tool_use(message: Message) -> bool:
    return bool(tool_use_ids(message))


def has_tool_result(message: Message) -> bool:
    return bool(tool_result_ids(message))


def to_openai_messages(
    messages: List[Message], system_prompt: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Convert the block model into OpenAI-style chat messages for litellm.

    Tool results become ``role: tool`` messages placed directly after the
    assistant turn; any text or image blocks riding along in the same user
    message follow as one multimodal user message.
    """
    out: List[Dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if isinstance(msg.content, str):
            out.append({"role": msg.role, "content": msg.content})
            continue

        if msg.role == "assistant":
            text = "\n".join(b.text for b in msg.content if isinstance(b, TextBlock))
            entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
            tool_calls = [
                {
                    "id": b.id,
                    "type": "function",
                    "function": {
                        "name": b.name,
                        "arguments": json.dumps(b.input, ensure_ascii=False),
                    },
                }
                for b in msg.content
                if isinstance(b, ToolUseBlock)
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            out.append(entry)
            continue

        parts: List[Dict[str, Any]] = []
        for block in msg.content:
            if isinstance(block, ToolResultBlock):
                out.append({
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": block.content,
                })
            elif isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
                })
            elif isinstance(block, ToolUseBlock):
                raise TypeError("tool_use block in a user message")
            else:
                raise TypeError(f"Unknown content block: {type(block).__name__}")
        if parts:
            out.append({"role": "user", "content": parts})

    return out
