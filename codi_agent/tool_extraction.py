"""Recover tool calls that a model wrote as JSON prose instead of native calls."""

import json
import re
import uuid
from typing import Any, Iterable, Iterator, List, Optional

from .messages import ToolCall

_CALLING_RE = re.compile(r"\[Calling\s+([a-z_][a-z0-9_]*)\]\s*:\s*", re.IGNORECASE)
_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_SINGLE_QUOTED_VALUE_RE = re.compile(r":(\s*)'((?:[^'\\]|\\.)*)'", re.DOTALL)
_ARGUMENT_KEYS = ("arguments", "parameters", "input")
_JSON_START_RE = re.compile(r"[\[{]")

_decoder = json.JSONDecoder()


def fix_json(text: str) -> str:
    """Turn single-quoted values (``"path": 'a.py'``) into JSON strings."""
    return _SINGLE_QUOTED_VALUE_RE.sub(r':\1"\2"', text)


def parse_json_lenient(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(fix_json(text))
    except json.JSONDecodeError:
        return None


def _decode_at(text: str, pos: int) -> Optional[Any]:
    if pos < 0:
        return None
    try:
        value, _ = _decoder.raw_decode(text, pos)
    except json.JSONDecodeError:
        return None
    return value


def _iter_json_values(text: str) -> Iterator[Any]:
    """Every top-level JSON object or array embedded in free text."""
    idx = 0
    while idx < len(text):
        match = _JSON_START_RE.search(text, idx)
        if match is None:
            return
        pos = match.start()
        try:
            value, end = _decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            idx = pos + 1
            continue
        yield value
        idx = end


def _new_id(n: int) -> str:
    return f"extracted_{uuid.uuid4().hex[:8]}_{n}"


def extract_tool_calls(text: str, available_tools: Iterable[str]) -> List[ToolCall]:
    """Find tool calls naming registered tools in ``text``.

    Recognized shapes, tried in order until one yields calls:
      1. ``[Calling read_file]: {"path": "a.py"}``
      2. ``{"name": "read_file", "arguments"|"parameters"|"input": {...}}``
         anywhere in the text, alone or inside a JSON array
      3. the same inside a fenced code block that only parses after
         repairing single-quoted values
    """
    if not text:
        return []
    available = set(available_tools)
    calls: List[ToolCall] = []

    def add(name: Any, arguments: Any) -> None:
        if isinstance(name, str) and name in available and isinstance(arguments, dict):
            calls.append(ToolCall(id=_new_id(len(calls)), name=name, input=arguments))

    def add_object(obj: Any) -> None:
        if not isinstance(obj, dict) or "name" not in obj:
            return
        arguments = next((obj[k] for k in _ARGUMENT_KEYS if isinstance(obj.get(k), dict)), {})
        add(obj["name"], arguments)

    for match in _CALLING_RE.finditer(text):
        add(match.group(1), _decode_at(text, text.find("{", match.end())))
    if calls:
        return calls

    for value in _iter_json_values(text):
        for item in value if isinstance(value, list) else [value]:
            add_object(item)
    if calls:
        return calls

    for block in _CODE_BLOCK_RE.findall(text):
        parsed = parse_json_lenient(block.strip())
        for item in parsed if isinstance(parsed, list) else [parsed]:
            add_object(item)
    return calls
