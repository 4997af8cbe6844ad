"""Context budget: token accounting, summarization compaction and tool-result digests."""

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Tuple

from .config import ContextLimits
from .logger import get_logger
from .messages import (
    Message, ToolResultBlock, has_tool_result, has_tool_use, message_text,
)
from .tokenizer import count_message_tokens

if TYPE_CHECKING:
    from .llm import BaseProvider

__all__ = [
    "CompactionResult", "ContextBudgeter",
    "build_continuation_prompt", "extract_file_paths", "find_safe_start_index",
    "summarize_tool_result",
]

_log = get_logger(__name__)

MAX_DIGEST_CHARS = 40_000
DIGEST_MESSAGE_CHARS = 500
CONTINUATION_TASK_CHARS = 150
MESSAGE_LIMIT_RATIO = 0.8

SUMMARY_PROMPT = """Create a concise summary of this conversation for context preservation.

## What to Include
- **Goal**: What task is the user trying to accomplish?
- **Progress**: What has been done so far?
- **Files Modified**: List any files that were created, edited, or deleted
- **Key Decisions**: Any important choices made during the conversation
- **Current State**: Where did the conversation leave off?

## Format
Write 3-5 short paragraphs. Use bullet points for file lists. Be factual and specific.
{files_context}

## Conversation to Summarize
{content}"""

# src/foo/bar.py, ./pkg/mod.py, /abs/path/file.txt
_FILE_PATH_RE = re.compile(
    r"(?:^|[\s\"'`(])(?:\./)?((?:[@\w.-]+/)+[\w.-]+\.[a-zA-Z]{1,10})(?=[\s\"'`),:;]|$)",
    re.MULTILINE,
)

_LINE_COUNT_TOOLS = {"read_file", "list_directory"}
_MATCH_COUNT_TOOLS = {"glob", "grep"}
_WRITE_TOOLS = {"write_file", "edit_file", "insert_line", "patch_file"}


@dataclass
class CompactionResult:
    messages: List[Message]
    summary: Optional[str]
    tokens_before: int
    tokens_after: int
    messages_before: int
    messages_after: int
    summarized: bool = False


def extract_file_paths(text: str) -> List[str]:
    seen = {}
    for match in _FILE_PATH_RE.finditer(text):
        seen.setdefault(match.group(1), None)
    return list(seen)


def summarize_tool_result(tool_name: str, content: str, is_error: bool = False) -> str:
    """Short stand-in for an old tool result, e.g. ``[grep: 12 matches]``."""
    lines = content.count("\n") + 1
    chars = len(content)

    if is_error:
        first_line = content.split("\n", 1)[0]
        summary = f"ERROR: {first_line[:100]}"
    elif tool_name in _LINE_COUNT_TOOLS:
        summary = f"{lines} lines, {chars} chars"
    elif tool_name in _MATCH_COUNT_TOOLS:
        matches = sum(1 for line in content.splitlines() if line.strip())
        summary = f"{matches} matches"
    elif tool_name == "bash":
        preview = content[:80].replace("\n", " ").strip()
        summary = f"{preview}{'...' if chars > 80 else ''} ({lines} lines)"
    elif tool_name in _WRITE_TOOLS:
        summary = "success"
    else:
        summary = f"{lines} lines, {chars} chars"

    return f"[{tool_name or 'tool'}: {summary}]"


def find_safe_start_index(messages: List[Message]) -> int:
    """First index where a conversation can start without orphaning a
    tool-use/tool-result pair. ``len(messages)`` when there is none."""
    for i, msg in enumerate(messages):
        if msg.role == "user" and not has_tool_result(msg):
            return i
        if msg.role == "assistant":
            if not has_tool_use(msg):
                return i
            if i + 1 < len(messages) and has_tool_result(messages[i + 1]):
                return i
    return len(messages)


def build_continuation_prompt(task: str) -> str:
    """Reminder appended after text-extracted tool results so the model
    does not keep calling tools once the request is done."""
    preview = task if len(task) <= CONTINUATION_TASK_CHARS else task[:CONTINUATION_TASK_CHARS] + "..."
    return (
        f'\n\nOriginal request: "{preview}"\n\n'
        "If you have completed the user's request, respond with your final answer. "
        "Do NOT continue calling tools unless the task is incomplete."
    )


class ContextBudgeter:
    """Keeps a conversation under its token ceiling.

    ``compact`` summarizes everything but a recent tail through a
    tools-disabled model call. ``truncate_tool_results_in_place`` shrinks
    old tool results every iteration regardless of the ceiling.
    """

    def __init__(self, max_context_tokens: int, recent_messages_to_keep: int = 15,
                 recent_tool_results_to_keep: int = 20,
                 max_immediate_tool_result: int = 200_000,
                 max_messages: int = 500, model: Optional[str] = None):
        self.max_context_tokens = max_context_tokens
        self.recent_messages_to_keep = max(1, recent_messages_to_keep)
        self.recent_tool_results_to_keep = max(0, recent_tool_results_to_keep)
        self.max_immediate_tool_result = max_immediate_tool_result
        self.max_messages = max_messages
        self.model = model

    @classmethod
    def from_limits(cls, limits: ContextLimits, max_messages: int = 500,
                    model: Optional[str] = None) -> "ContextBudgeter":
        return cls(
            max_context_tokens=limits.max_context_tokens,
            recent_messages_to_keep=limits.recent_messages_to_keep,
            recent_tool_results_to_keep=limits.recent_tool_results_to_keep,
            max_immediate_tool_result=limits.max_immediate_tool_result,
            max_messages=max_messages,
            model=model,
        )

    # ── Token accounting ──

    def count_tokens(self, messages: List[Message]) -> int:
        return count_message_tokens(messages, self.model)

    def should_compact(self, messages: List[Message]) -> bool:
        return self.count_tokens(messages) > self.max_context_tokens

    # ── Compaction ──

    def _tail_bounds(self, messages: List[Message], reserve: int = 0) -> Tuple[int, int]:
        """[start, end) of the tail that survives compaction. ``reserve``
        slots of the recent window are left free for messages still to come."""
        total = len(messages)
        keep = max(1, self.recent_messages_to_keep - max(0, reserve))
        start = max(0, total - keep)

        idx = start
        while idx < total and has_tool_result(messages[idx]):
            idx += 1
        if idx >= total:
            # Tail is nothing but tool results; pull their assistant turn in.
            idx = start
            while idx > 0 and has_tool_result(messages[idx]):
                idx -= 1

        end = total
        if end > idx and has_tool_use(messages[end - 1]):
            end -= 1
        return idx, end

    def build_digest(self, head: List[Message], summary: Optional[str] = None) -> str:
        """``[role]: text`` per message, newest kept when over the cap."""
        parts: List[str] = []
        used = 0
        omitted = 0
        for msg in reversed(head):
            entry = f"[{msg.role}]: {message_text(msg)[:DIGEST_MESSAGE_CHARS]}"
            if used + len(entry) > MAX_DIGEST_CHARS:
                omitted += 1
                continue
            parts.append(entry)
            used += len(entry) + 2
        parts.reverse()
        if omitted:
            parts.insert(0, f"[{omitted} earlier messages omitted]")

        content = "\n\n".join(parts)
        if summary:
            content = f"Previous summary:\n{summary}\n\nNew messages:\n{content}"
        return content

    def _summarize(self, provider: "BaseProvider", head: List[Message],
                   summary: Optional[str]) -> str:
        files = []
        for msg in head:
            for path in extract_file_paths(message_text(msg)):
                if path not in files:
                    files.append(path)
        files_context = f"\n\nFiles discussed: {', '.join(files)}" if files else ""
        prompt = SUMMARY_PROMPT.format(
            files_context=files_context, content=self.build_digest(head, summary)
        )
        response = provider.chat([Message(role="user", content=prompt)], tools=None)
        return (response.content or "").strip()

    def compact(self, messages: List[Message], summary: Optional[str],
                provider: "BaseProvider", reserve: int = 0) -> CompactionResult:
        """Summarize the head of ``messages`` and keep a pair-safe tail.

        ``reserve`` shrinks the tail so that many messages can be appended
        afterwards without exceeding ``recent_messages_to_keep``.

        Never raises: when the summary call fails or comes back empty the
        head is dropped and ``summary`` is returned unchanged.
        """
        tokens_before = self.count_tokens(messages)
        start, end = self._tail_bounds(messages, reserve)
        head, tail = messages[:start], messages[start:end]

        if not head:
            return CompactionResult(
                messages=tail, summary=summary,
                tokens_before=tokens_before, tokens_after=self.count_tokens(tail),
                messages_before=len(messages), messages_after=len(tail),
            )

        new_summary = summary
        summarized = False
        try:
            text = self._summarize(provider, head, summary)
        except Exception as e:
            _log.warning("Summarization failed, dropping %d messages without a summary: %s", len(head), e)
        else:
            if text:
                new_summary = text
                summarized = True
            else:
                _log.warning("Summarization returned nothing, dropping %d messages", len(head))

        tokens_after = self.count_tokens(tail)
        _log.info(
            "Compacted %d -> %d messages (%d -> %d tokens)",
            len(messages), len(tail), tokens_before, tokens_after,
        )
        return CompactionResult(
            messages=tail, summary=new_summary,
            tokens_before=tokens_before, tokens_after=tokens_after,
            messages_before=len(messages), messages_after=len(tail),
            summarized=summarized,
        )

    def force_compact(self, messages: List[Message], summary: Optional[str],
                      provider: "BaseProvider") -> CompactionResult:
        """Compact regardless of the token ceiling. A conversation that
        already fits in the tail is returned untouched."""
        if len(messages) <= self.recent_messages_to_keep:
            tokens = self.count_tokens(messages)
            return CompactionResult(
                messages=list(messages), summary=summary,
                tokens_before=tokens, tokens_after=tokens,
                messages_before=len(messages), messages_after=len(messages),
            )
        return self.compact(messages, summary, provider)

    # ── Tool results ──

    def truncate_tool_results_in_place(self, messages: List[Message],
                                       keep_recent: Optional[int] = None) -> int:
        keep = self.recent_tool_results_to_keep if keep_recent is None else max(0, keep_recent)
        blocks = [
            block
            for msg in messages if not isinstance(msg.content, str)
            for block in msg.content if isinstance(block, ToolResultBlock)
        ]
        candidates = blocks[:len(blocks) - keep] if keep else blocks

        replaced = 0
        for block in candidates:
            if block.truncated:
                continue
            digest = summarize_tool_result(block.name, block.content, block.is_error)
            if len(digest) >= len(block.content):
                continue
            block.content = digest
            block.truncated = True
            replaced += 1
        if replaced:
            _log.debug("Digested %d old tool results", replaced)
        return replaced

    def truncate_for_delivery(self, content: str) -> str:
        limit = self.max_immediate_tool_result
        if len(content) <= limit:
            return content
        half = limit // 2
        if half == 0:
            return content[:limit]
        dropped = len(content) - 2 * half
        return (content[:half]
                + f"\n\n... [{dropped} characters truncated] ...\n\n"
                + content[-half:])

    # ── Message cap ──

    def enforce_message_limit(self, messages: List[Message],
                              summary: Optional[str]) -> Tuple[List[Message], Optional[str]]:
        if len(messages) <= self.max_messages:
            return messages, summary

        target = int(self.max_messages * MESSAGE_LIMIT_RATIO)
        remove = len(messages) - target
        remove += find_safe_start_index(messages[remove:])
        if remove <= 0 or remove >= len(messages):
            return messages, summary

        note = f"[Note: {remove} older messages were automatically pruned to stay within memory limits]"
        _log.info("Pruned %d messages (limit %d)", remove, self.max_messages)
        return messages[remove:], (f"{note}\n\n{summary}" if summary else note)
