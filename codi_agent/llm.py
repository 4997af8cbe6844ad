"""Model provider contract and the litellm-backed implementation."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import litellm

from .errors import ProviderUnavailableError
from .logger import get_logger
from .messages import Message, ToolCall, ToolDefinition, to_openai_messages

litellm.suppress_debug_info = True

_log = get_logger(__name__)

TextCallback = Callable[[str], None]

_STOP_REASONS = {"stop": "end_turn", "length": "max_tokens", "tool_calls": "tool_use"}


@dataclass
class ProviderResponse:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"
    usage: Optional[Dict[str, int]] = None
    reasoning_content: Optional[str] = None

    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class BaseProvider(ABC):
    """What the agent loop needs from a model backend."""

    context_window: int = 128000

    @abstractmethod
    def chat(self, messages: List[Message], tools: Optional[List[ToolDefinition]] = None,
             system_prompt: Optional[str] = None) -> ProviderResponse:
        ...

    def stream_chat(self, messages: List[Message], tools: Optional[List[ToolDefinition]] = None,
                    on_text: Optional[TextCallback] = None,
                    system_prompt: Optional[str] = None,
                    on_reasoning: Optional[TextCallback] = None) -> ProviderResponse:
        """Default: one non-streamed call, text delivered in a single chunk."""
        response = self.chat(messages, tools, system_prompt)
        if on_reasoning and response.reasoning_content:
            on_reasoning(response.reasoning_content)
        if on_text and response.content:
            on_text(response.content)
        return response

    def supports_tool_use(self) -> bool:
        return True

    @abstractmethod
    def get_name(self) -> str:
        ...

    @abstractmethod
    def get_model(self) -> str:
        ...


def _parse_arguments(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return args if isinstance(args, dict) else {"_raw": raw}


def _usage_dict(usage) -> Optional[Dict[str, int]]:
    if not usage:
        return None
    return {"prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens}


class LiteLLMProvider(BaseProvider):
    """Any litellm-routable model. Passes api_key/api_base per call instead of
    through environment variables so presets can be switched freely."""

    def __init__(self, model: str, temperature: float = 0.0,
                 max_tokens: int = 4096, api_base: Optional[str] = None,
                 api_key: Optional[str] = None, context_window: int = 128000,
                 tool_use: Optional[bool] = None):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.context_window = context_window
        self._tool_use = tool_use

    def get_name(self) -> str:
        return self.model.split("/", 1)[0] if "/" in self.model else "openai"

    def get_model(self) -> str:
        return self.model

    def supports_tool_use(self) -> bool:
        if self._tool_use is not None:
            return self._tool_use
        try:
            return bool(litellm.supports_function_calling(model=self.model))
        except Exception:
            # Unknown to litellm's model map (local servers); assume OpenAI-compatible
            return True

    def _kwargs(self, messages, tools, system_prompt, stream: bool) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages, system_prompt),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if stream:
            kwargs["stream"] = True
        if tools:
            kwargs["tools"] = [t.to_schema() for t in tools]
            kwargs["tool_choice"] = "auto"
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs

    def _completion(self, kwargs: Dict[str, Any]):
        try:
            return litellm.completion(**kwargs)
        except litellm.exceptions.AuthenticationError as e:
            raise ProviderUnavailableError(f"Auth failed. Check API key.\n{e}")
        except litellm.exceptions.APIConnectionError as e:
            raise ProviderUnavailableError(
                f"Cannot connect: model={self.model}, base={self.api_base or 'default'}\n{e}"
            )

    def chat(self, messages, tools=None, system_prompt=None) -> ProviderResponse:
        response = self._completion(self._kwargs(messages, tools, system_prompt, stream=False))
        choice = response.choices[0]
        msg = choice.message

        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, input=_parse_arguments(tc.function.arguments))
            for tc in (msg.tool_calls or [])
        ]
        stop = "tool_use" if tool_calls else _STOP_REASONS.get(choice.finish_reason or "stop", "end_turn")
        return ProviderResponse(
            content=msg.content or "",
            tool_calls=tool_calls,
            stop_reason=stop,
            usage=_usage_dict(getattr(response, "usage", None)),
            reasoning_content=getattr(msg, "reasoning_content", None),
        )

    def stream_chat(self, messages, tools=None, on_text=None, system_prompt=None,
                    on_reasoning=None) -> ProviderResponse:
        stream = self._completion(self._kwargs(messages, tools, system_prompt, stream=True))

        content = ""
        reasoning = ""
        tc_data: Dict[int, Dict[str, str]] = {}
        usage = None
        finish_reason = None

        try:
            for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = _usage_dict(chunk.usage)
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                finish_reason = getattr(choice, "finish_reason", None) or finish_reason
                delta = choice.delta

                if getattr(delta, "content", None):
                    content += delta.content
                    if on_text:
                        on_text(delta.content)

                rc = getattr(delta, "reasoning_content", None)
                if rc:
                    reasoning += rc
                    if on_reasoning:
                        on_reasoning(rc)

                # Tool call fragments arrive spread over many chunks
                for tc_delta in getattr(delta, "tool_calls", None) or []:
                    slot = tc_data.setdefault(tc_delta.index, {"id": "", "name": "", "args": ""})
                    if tc_delta.id:
                        slot["id"] = tc_delta.id
                    if tc_delta.function:
                        if tc_delta.function.name:
                            slot["name"] = tc_delta.function.name
                        if tc_delta.function.arguments:
                            slot["args"] += tc_delta.function.arguments
        except litellm.exceptions.APIConnectionError as e:
            raise ProviderUnavailableError(f"Stream interrupted: {e}")

        tool_calls = [
            ToolCall(id=tc["id"] or f"call_{idx}", name=tc["name"], input=_parse_arguments(tc["args"]))
            for idx, tc in sorted(tc_data.items())
        ]
        stop = "tool_use" if tool_calls else _STOP_REASONS.get(finish_reason or "stop", "end_turn")
        _log.debug("Stream finished: %d chars, %d tool calls, stop=%s", len(content), len(tool_calls), stop)
        return ProviderResponse(
            content=content,
            tool_calls=tool_calls,
            stop_reason=stop,
            usage=usage,
            reasoning_content=reasoning or None,
        )
