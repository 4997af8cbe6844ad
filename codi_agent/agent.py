"""Core agent loop: model turns, tool dispatch, confirmation and context budget."""

import json
import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .approvals import (
    FILE_MUTATING_TOOLS, ApprovalPolicy, assess_danger, compile_patterns,
)
from .config import MAX_CONSECUTIVE_ERRORS, MAX_ITERATIONS, MAX_MESSAGES, compute_context_config
from .confirmation import ConfirmationGate, ConfirmationResult, ConfirmCallback, ToolConfirmation
from .context_window import ContextBudgeter, build_continuation_prompt
from .diff_utils import build_diff_preview
from .llm import BaseProvider, ProviderResponse
from .logger import get_logger
from .messages import (
    ImageBlock, Message, TextBlock, ToolCall, ToolDefinition, ToolResult,
    ToolResultBlock, ToolUseBlock, has_tool_result,
)
from .tokenizer import estimate_tokens
from .tool_extraction import extract_tool_calls
from .tools import ToolRegistry

_log = get_logger(__name__)

__all__ = [
    "Agent", "ChatOutcome", "LoopState",
    "FinalAnswer", "NativeToolUse", "ExtractedToolUse", "interpret_response",
]

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI coding assistant working inside the user's project.

When helping with coding tasks:
- Read relevant files to understand the codebase before making changes
- Make targeted, minimal changes to accomplish the task
- Prefer the provided tools over asking the user to run commands
- When the task is done, reply with a short summary instead of calling more tools"""

DENIED_MESSAGE = "User denied this operation"
ABORTED_MESSAGE = "User aborted the operation"
CONTEXT_ACK = "I've noted this background context and will take it into account."

_SHELLS = {"bash", "sh", "zsh"}
_SHELL_FLAGS = {"-c", "-lc", "-ic"}


class LoopState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    INTERPRETING_RESPONSE = "interpreting_response"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DONE = "done"
    ABORTED = "aborted"


class ChatOutcome(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR_LIMIT = "error_limit"
    ITERATION_LIMIT = "iteration_limit"


TRAILERS = {
    ChatOutcome.ABORTED: "(Operation aborted by user)",
    ChatOutcome.ERROR_LIMIT: "(Stopping due to repeated errors)",
    ChatOutcome.ITERATION_LIMIT: "(Reached maximum iterations, stopping)",
}


# ── Response interpretation ──


@dataclass(frozen=True)
class FinalAnswer:
    text: str


@dataclass(frozen=True)
class NativeToolUse:
    text: str
    calls: List[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractedToolUse:
    text: str
    calls: List[ToolCall] = field(default_factory=list)


Interpretation = Union[FinalAnswer, NativeToolUse, ExtractedToolUse]


def interpret_response(response: ProviderResponse, available_tools: Sequence[str],
                       extract_from_text: bool = True) -> Interpretation:
    """Classify a model turn. Text is only mined for tool calls when the
    provider reported none natively."""
    text = response.content or ""
    if response.tool_calls:
        return NativeToolUse(text, list(response.tool_calls))
    if extract_from_text and text:
        calls = extract_tool_calls(text, available_tools)
        if calls:
            return ExtractedToolUse(text, calls)
    return FinalAnswer(text)


def normalize_bash_input(arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Accept ``cmd`` (string or argv list) in place of ``command``.

    ``["bash", "-lc", "ls -la"]`` unwraps to ``"ls -la"``; any other argv is
    shell-quoted back into one command line.
    """
    if "command" in arguments or "cmd" not in arguments:
        return arguments
    normalized = {k: v for k, v in arguments.items() if k != "cmd"}
    cmd = arguments["cmd"]
    if isinstance(cmd, list):
        argv = [str(part) for part in cmd]
        if (len(argv) >= 3 and os.path.basename(argv[0]) in _SHELLS
                and argv[1] in _SHELL_FLAGS):
            normalized["command"] = argv[2]
        else:
            normalized["command"] = shlex.join(argv)
    else:
        normalized["command"] = str(cmd)
    return normalized


TextCallback = Callable[[str], None]
ToolCallCallback = Callable[[str, Dict[str, Any]], None]
ToolResultCallback = Callable[[str, str, bool], None]


class Agent:
    """Drives one conversation until the model stops asking for tools.

    Each ``chat()`` call runs model turns until the model answers without
    tool calls, the user aborts a confirmation, ``max_consecutive_errors``
    tool calls fail in a row, or ``max_iterations`` turns have been used.
    The last three end with a trailer on the returned text and are also
    reported through ``last_outcome``.
    """

    def __init__(self, provider: BaseProvider, registry: ToolRegistry,
                 system_prompt: Optional[str] = None,
                 use_tools: bool = True,
                 extract_tools_from_text: bool = True,
                 max_iterations: int = MAX_ITERATIONS,
                 max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
                 max_context_tokens: Optional[int] = None,
                 recent_messages_to_keep: Optional[int] = None,
                 recent_tool_results_to_keep: Optional[int] = None,
                 max_immediate_tool_result: Optional[int] = None,
                 max_messages: int = MAX_MESSAGES,
                 auto_approve: Union[bool, Sequence[str]] = False,
                 custom_dangerous_patterns: Optional[Sequence[Any]] = None,
                 on_confirm: Optional[ConfirmCallback] = None,
                 confirm_timeout: Optional[float] = None,
                 on_text: Optional[TextCallback] = None,
                 on_reasoning: Optional[TextCallback] = None,
                 on_tool_call: Optional[ToolCallCallback] = None,
                 on_tool_result: Optional[ToolResultCallback] = None,
                 project_root: str = ".",
                 token_model: Optional[str] = None):
        self.provider = provider
        self.registry = registry
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.use_tools = use_tools
        self.extract_tools_from_text = extract_tools_from_text
        self.max_iterations = max(1, int(max_iterations))
        self.max_consecutive_errors = max(1, int(max_consecutive_errors))
        self.project_root = project_root
        self.token_model = token_model

        self.approval = ApprovalPolicy(auto_approve)
        self.dangerous_patterns = compile_patterns(custom_dangerous_patterns)
        self._gate = ConfirmationGate(on_confirm, confirm_timeout) if on_confirm else None

        self.on_text = on_text
        self.on_reasoning = on_reasoning
        self.on_tool_call = on_tool_call
        self.on_tool_result = on_tool_result

        self._overrides = {
            "max_context_tokens": max_context_tokens,
            "recent_messages_to_keep": recent_messages_to_keep,
            "recent_tool_results_to_keep": recent_tool_results_to_keep,
            "max_immediate_tool_result": max_immediate_tool_result,
        }
        self._max_messages = max_messages
        self._configure_context()

        self.messages: List[Message] = []
        self.summary: Optional[str] = None
        self.state = LoopState.IDLE
        self.last_outcome: Optional[ChatOutcome] = None
        self.total_tokens = 0
        self._task = ""
        self._consecutive_errors = 0

    # ── Context limits ──

    def _configure_context(self) -> None:
        self.context_limits = compute_context_config(
            int(getattr(self.provider, "context_window", 128000) or 128000)
        )
        for name, value in self._overrides.items():
            if value is not None:
                setattr(self.context_limits, name, int(value))
        self.budgeter = ContextBudgeter.from_limits(
            self.context_limits, max_messages=self._max_messages, model=self.token_model
        )

    def _compose_system_prompt(self) -> str:
        if not self.summary:
            return self.system_prompt
        return f"{self.system_prompt}\n\n## Previous Conversation Summary\n{self.summary}"

    def _tool_definitions(self) -> Optional[List[ToolDefinition]]:
        if self.use_tools and self.provider.supports_tool_use():
            return self.registry.get_definitions()
        return None

    def _compact_if_needed(self) -> None:
        if not self.budgeter.should_compact(self.messages):
            return
        # One slot stays free for the reply to this turn
        result = self.budgeter.compact(self.messages, self.summary, self.provider, reserve=1)
        self.messages = result.messages
        self.summary = result.summary

    def _after_turn(self) -> None:
        self.budgeter.truncate_tool_results_in_place(self.messages)
        self.messages, self.summary = self.budgeter.enforce_message_limit(self.messages, self.summary)

    # ── Main loop ──

    def chat(self, user_message: str) -> str:
        self.messages.append(Message(role="user", content=user_message))
        self._task = user_message
        self._consecutive_errors = 0
        self.last_outcome = None
        final_text = ""
        outcome = ChatOutcome.ITERATION_LIMIT

        try:
            for _ in range(self.max_iterations):
                self._compact_if_needed()

                self.state = LoopState.AWAITING_MODEL
                response = self.provider.stream_chat(
                    list(self.messages),
                    tools=self._tool_definitions(),
                    on_text=self.on_text,
                    system_prompt=self._compose_system_prompt(),
                    on_reasoning=self.on_reasoning,
                )
                if response.usage:
                    self.total_tokens += response.usage.get("total_tokens", 0)

                self.state = LoopState.INTERPRETING_RESPONSE
                turn = interpret_response(
                    response, self.registry.list_tools(), self.extract_tools_from_text
                )
                if turn.text:
                    final_text = turn.text

                if isinstance(turn, FinalAnswer):
                    if turn.text:
                        self.messages.append(Message(role="assistant", content=turn.text))
                    self._after_turn()
                    outcome = ChatOutcome.COMPLETED
                    break

                if isinstance(turn, NativeToolUse):
                    blocks: List[Any] = [TextBlock(turn.text)] if turn.text else []
                    blocks.extend(ToolUseBlock(c.id, c.name, dict(c.input)) for c in turn.calls)
                    self.messages.append(Message(role="assistant", content=blocks))
                    executed, stop = self._execute_calls(turn.calls)
                    self.messages.append(self._native_results(turn.calls, executed, stop))
                elif isinstance(turn, ExtractedToolUse):
                    self.messages.append(Message(role="assistant", content=turn.text))
                    executed, stop = self._execute_calls(turn.calls)
                    self.messages.append(self._extracted_results(executed))
                else:
                    raise TypeError(f"Unknown interpretation: {type(turn).__name__}")

                self._after_turn()
                if stop is not None:
                    outcome = stop
                    break
        except BaseException:
            self.state = LoopState.IDLE
            raise

        self.last_outcome = outcome
        self.state = LoopState.ABORTED if outcome is ChatOutcome.ABORTED else LoopState.DONE
        if outcome is not ChatOutcome.COMPLETED:
            _log.info("Chat ended: %s", outcome.value)

        trailer = TRAILERS.get(outcome)
        if trailer is None:
            return final_text
        return f"{final_text}\n\n{trailer}" if final_text else trailer

    # ── Tool execution ──

    def _execute_calls(self, calls: List[ToolCall]
                       ) -> Tuple[List[Tuple[ToolCall, ToolResult]], Optional[ChatOutcome]]:
        """Run calls strictly in order. Stops early on abort or when the
        consecutive-error limit is hit; later calls are not executed."""
        self.state = LoopState.EXECUTING_TOOLS
        executed: List[Tuple[ToolCall, ToolResult]] = []

        for call in calls:
            if call.name == "bash" or self.registry.resolve_name(call.name) == "bash":
                call = ToolCall(call.id, call.name, normalize_bash_input(call.input or {}))
            if self.on_tool_call:
                self.on_tool_call(call.name, call.input)

            answer = self._authorize(call)
            if answer is ConfirmationResult.ABORT:
                result = ToolResult(call.id, ABORTED_MESSAGE, is_error=True)
                executed.append((call, result))
                self._report(call, result)
                return executed, ChatOutcome.ABORTED

            if answer is ConfirmationResult.DENY:
                result = ToolResult(call.id, DENIED_MESSAGE, is_error=True)
            else:
                result = self.registry.execute(call)
                if len(result.content) > self.budgeter.max_immediate_tool_result:
                    result.content = self.budgeter.truncate_for_delivery(result.content)
                if result.is_error:
                    self._consecutive_errors += 1
                else:
                    self._consecutive_errors = 0

            executed.append((call, result))
            self._report(call, result)

            if self._consecutive_errors >= self.max_consecutive_errors:
                _log.warning("%d consecutive tool errors, stopping", self._consecutive_errors)
                return executed, ChatOutcome.ERROR_LIMIT

        return executed, None

    def _tool_name(self, call: ToolCall) -> str:
        return self.registry.resolve_name(call.name) or call.name

    def _report(self, call: ToolCall, result: ToolResult) -> None:
        if self.on_tool_result:
            self.on_tool_result(self._tool_name(call), result.content, result.is_error)

    def _authorize(self, call: ToolCall) -> Optional[ConfirmationResult]:
        """``None`` when the call may run without asking, else the answer."""
        if self._gate is None:
            return None

        name = self._tool_name(call)
        danger = assess_danger(name, call.input, self.dangerous_patterns)
        if not self.approval.requires_confirmation(name, danger):
            return None

        diff_preview = None
        if name in FILE_MUTATING_TOOLS:
            diff_preview = build_diff_preview(name, call.input, self.project_root)

        self.state = LoopState.AWAITING_CONFIRMATION
        answer = self._gate.request(ToolConfirmation(
            tool_name=name,
            input=call.input,
            is_dangerous=danger.is_dangerous,
            danger_reason=danger.reason,
            diff_preview=diff_preview,
        ))
        self.state = LoopState.EXECUTING_TOOLS
        _log.debug("Confirmation for %s: %s", name, answer.value)
        return None if answer is ConfirmationResult.APPROVE else answer

    def cancel_confirmation(self) -> bool:
        """Resolve a pending confirmation as abort (e.g. from a UI stop button)."""
        return self._gate.cancel() if self._gate else False

    # ── Result assembly ──

    def _native_results(self, calls: List[ToolCall],
                        executed: List[Tuple[ToolCall, ToolResult]],
                        stop: Optional[ChatOutcome]) -> Message:
        blocks: List[Any] = []
        images: List[Any] = []
        for call, result in executed:
            name = self._tool_name(call)
            blocks.append(ToolResultBlock(
                tool_use_id=call.id, content=result.content,
                name=name, is_error=result.is_error,
            ))
            if result.image is not None:
                question = result.image.question or "Describe what you see."
                images.append(TextBlock(f"[Image from {name}] {question}"))
                images.append(ImageBlock(result.image.media_type, result.image.data))

        # Every tool_use needs a result, including the ones never run
        reason = "operation aborted" if stop is ChatOutcome.ABORTED else "stopped after repeated errors"
        for call in calls[len(executed):]:
            blocks.append(ToolResultBlock(
                tool_use_id=call.id, content=f"Skipped: {reason}",
                name=self._tool_name(call), is_error=True,
            ))
        return Message(role="user", content=blocks + images)

    def _extracted_results(self, executed: List[Tuple[ToolCall, ToolResult]]) -> Message:
        sections = []
        images: List[Any] = []
        for call, result in executed:
            label = "Error from" if result.is_error else "Result from"
            sections.append(f"[{label} {self._tool_name(call)}]:\n{result.content}")
            if result.image is not None:
                images.append(ImageBlock(result.image.media_type, result.image.data))
        text = "\n\n".join(sections) + build_continuation_prompt(self._task)
        if images:
            return Message(role="user", content=[TextBlock(text)] + images)
        return Message(role="user", content=text)

    # ── Session API ──

    def get_history(self) -> List[Message]:
        return [m.copy() for m in self.messages]

    def set_history(self, messages: List[Message]) -> None:
        self.messages = [m.copy() for m in messages]

    def clear_history(self) -> None:
        self.messages = []
        self.summary = None

    def clear_context(self) -> None:
        self.clear_history()

    def get_summary(self) -> Optional[str]:
        return self.summary

    def set_summary(self, summary: Optional[str]) -> None:
        self.summary = summary

    def load_session(self, messages: List[Message], summary: Optional[str] = None) -> None:
        self.set_history(messages)
        self.summary = summary

    def set_provider(self, provider: BaseProvider) -> None:
        """Swap the backend; context limits follow its window unless they
        were given explicitly."""
        self.provider = provider
        self._configure_context()

    def inject_context(self, text: str) -> None:
        if not text or not text.strip():
            return
        self.messages.append(Message(role="user", content=f"## Background Context\n\n{text}"))
        self.messages.append(Message(role="assistant", content=CONTEXT_ACK))

    def get_context_info(self) -> Dict[str, Any]:
        message_tokens = self.budgeter.count_tokens(self.messages)
        system_prompt_tokens = estimate_tokens(self._compose_system_prompt(), self.token_model)
        definitions = self._tool_definitions() or []
        tool_definition_tokens = estimate_tokens(
            json.dumps([d.to_schema() for d in definitions]), self.token_model
        ) if definitions else 0

        tool_result_messages = sum(1 for m in self.messages if has_tool_result(m))
        return {
            "tokens": message_tokens + system_prompt_tokens + tool_definition_tokens,
            "message_tokens": message_tokens,
            "system_prompt_tokens": system_prompt_tokens,
            "tool_definition_tokens": tool_definition_tokens,
            "max_tokens": self.budgeter.max_context_tokens,
            "context_window": self.context_limits.context_window,
            "output_reserve": self.context_limits.max_output_tokens,
            "safety_buffer": self.context_limits.safety_buffer,
            "tier_name": self.context_limits.tier_name,
            "messages": len(self.messages),
            "user_messages": sum(1 for m in self.messages if m.role == "user") - tool_result_messages,
            "assistant_messages": sum(1 for m in self.messages if m.role == "assistant"),
            "tool_result_messages": tool_result_messages,
            "has_summary": bool(self.summary),
        }

    def force_compact(self) -> Dict[str, Any]:
        result = self.budgeter.force_compact(self.messages, self.summary, self.provider)
        self.messages = result.messages
        self.summary = result.summary
        return {"before": result.tokens_before, "after": result.tokens_after, "summary": result.summary}
