"""Tool registry: dict-based dispatch with fuzzy name and parameter recovery."""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

from ..errors import ToolRegistrationError
from ..logger import get_logger
from ..messages import ToolCall, ToolDefinition, ToolResult
from .base import BaseTool
from .fallback import (
    FallbackConfig,
    find_best_tool_match,
    format_fallback_error,
    format_mapping_info,
    map_parameters,
)

_log = get_logger(__name__)


class ToolRegistry:
    """Owns tool instances by name and dispatches calls to them.

    One registry per agent; nothing here is process-global.
    """

    def __init__(self, fallback_config: Optional[FallbackConfig] = None,
                 max_workers: int = 4):
        self._tools: Dict[str, BaseTool] = {}
        self._fallback = fallback_config or FallbackConfig()
        self.max_workers = max_workers

    def register(self, tool: BaseTool) -> None:
        name = tool.get_name()
        if name in self._tools:
            raise ToolRegistrationError(name)
        self._tools[name] = tool

    def register_all(self, tools: Iterable[BaseTool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> List[str]:
        return list(self._tools)

    def get_definitions(self) -> List[ToolDefinition]:
        return [tool.get_definition() for tool in self._tools.values()]

    def get_schemas(self) -> List[dict]:
        """OpenAI function schemas for every registered tool."""
        return [d.to_schema() for d in self.get_definitions()]

    def set_fallback_config(self, config: FallbackConfig) -> None:
        self._fallback = config

    def resolve_name(self, name: str) -> Optional[str]:
        """The tool ``execute`` would actually run for ``name``, if any."""
        if name in self._tools:
            return name
        if not self._fallback.enabled:
            return None
        match = find_best_tool_match(name, self.get_definitions(), self._fallback)
        return match.matched_name if match.should_auto_correct else None

    def execute(self, call: ToolCall) -> ToolResult:
        """Dispatch one call. Never raises; failures come back as error results."""
        tool = self._tools.get(call.name)
        correction = None

        if tool is None and self._fallback.enabled:
            match = find_best_tool_match(call.name, self.get_definitions(), self._fallback)
            if match.should_auto_correct and match.matched_name:
                tool = self._tools[match.matched_name]
                correction = (call.name, match.matched_name)
                _log.info("Auto-corrected tool %r -> %r (%.2f)", call.name, match.matched_name, match.score)
            else:
                _log.info("Unknown tool %r (best score %.2f)", call.name, match.score)
                return ToolResult(call.id, format_fallback_error(call.name, match), is_error=True)

        if tool is None:
            return ToolResult(call.id, f'Error: Unknown tool "{call.name}"', is_error=True)

        arguments = call.input or {}
        mappings = []
        if self._fallback.parameter_aliasing:
            mapping = map_parameters(arguments, list(tool.get_definition().properties), self._fallback)
            arguments = mapping.mapped_input
            mappings = mapping.mappings

        result = tool.run(call.id, arguments)

        note = format_mapping_info(correction, mappings)
        if note and not result.is_error:
            result.content = f"{note}\n\n{result.content}"
        return result

    def execute_all(self, calls: List[ToolCall]) -> List[ToolResult]:
        """Run calls concurrently. Results line up with ``calls``; side effects
        may happen in any order."""
        if not calls:
            return []
        workers = max(1, min(self.max_workers, len(calls)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self.execute, calls))
