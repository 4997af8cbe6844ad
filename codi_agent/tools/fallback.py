"""Tool fallback: recover from misspelled tool names and aliased parameter keys.

Models routinely call ``bah`` instead of ``bash`` or pass ``query`` where the
schema says ``pattern``. Name recovery scores every registered tool with a
case-insensitive ``difflib`` ratio; a single clear winner above the
auto-correct threshold is substituted, anything more ambiguous is reported
back to the model as ranked suggestions. Parameter recovery maps unknown keys
onto schema keys through a global alias table.
"""

from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..messages import ToolDefinition

TIE_MARGIN = 0.05
PARAMETER_SIMILARITY_THRESHOLD = 0.7
DESCRIPTION_PREVIEW_CHARS = 80
MAX_SUGGESTIONS = 3


@dataclass
class FallbackConfig:
    enabled: bool = True
    auto_correct_threshold: float = 0.85
    suggestion_threshold: float = 0.6
    parameter_aliasing: bool = True


@dataclass
class ToolSuggestion:
    name: str
    score: float
    description: str


@dataclass
class FallbackMatch:
    exact_match: bool
    matched_name: Optional[str]
    score: float
    suggestions: List[ToolSuggestion] = field(default_factory=list)
    should_auto_correct: bool = False


@dataclass
class ParameterMapping:
    mapped_input: Dict[str, Any]
    mappings: List[Tuple[str, str]] = field(default_factory=list)
    unmapped: List[str] = field(default_factory=list)


# canonical schema key -> keys models use instead
GLOBAL_PARAMETER_ALIASES: Dict[str, Tuple[str, ...]] = {
    "pattern": ("query", "search", "search_term", "search_query", "regex", "expression", "search_pattern"),
    "path": ("file", "file_path", "filepath", "directory", "dir", "folder", "location"),
    "head_limit": ("max_results", "max", "limit", "count", "num_results", "top_k", "k", "n"),
    "depth": ("max_depth", "level", "levels"),
    "ignore_case": ("case_insensitive", "i", "insensitive", "no_case"),
    "recursive": ("recurse", "r"),
    "show_hidden": ("hidden", "all", "include_hidden", "show_all"),
    "show_files": ("include_files", "files"),
    "content": ("text", "body", "data", "value"),
    "new_content": ("replacement", "replace_with", "new_text", "new_value"),
    "old_content": ("original", "old_text", "find", "search"),
    "file_pattern": ("glob", "include", "glob_pattern", "filter"),
    "command": ("cmd", "script", "shell_command", "exec"),
}


def string_similarity(a: str, b: str) -> float:
    """Normalized similarity in [0, 1], case-insensitive."""
    if not a and not b:
        return 1.0
    return SequenceMatcher(None, a.lower(), b.lower()).ratio()


def _preview(description: str) -> str:
    if len(description) > DESCRIPTION_PREVIEW_CHARS:
        return description[:DESCRIPTION_PREVIEW_CHARS] + "..."
    return description


def find_best_tool_match(
    requested: str,
    definitions: Sequence[ToolDefinition],
    config: Optional[FallbackConfig] = None,
) -> FallbackMatch:
    """Rank registered tools against ``requested``.

    Auto-correction requires the best score to clear the threshold *and* to
    be the only candidate within ``TIE_MARGIN`` of it; two equally close
    names are never guessed between.
    """
    config = config or FallbackConfig()

    if any(d.name == requested for d in definitions):
        return FallbackMatch(exact_match=True, matched_name=requested, score=1.0)

    if not config.enabled or not definitions:
        return FallbackMatch(exact_match=False, matched_name=None, score=0.0)

    scored = sorted(
        (
            ToolSuggestion(d.name, string_similarity(requested, d.name), _preview(d.description))
            for d in definitions
        ),
        key=lambda s: s.score,
        reverse=True,
    )
    best = scored[0]
    suggestions = [s for s in scored if s.score >= config.suggestion_threshold]

    should_auto_correct = False
    if best.score >= config.auto_correct_threshold:
        contenders = [s for s in scored if s.score >= best.score - TIE_MARGIN]
        should_auto_correct = len(contenders) == 1

    return FallbackMatch(
        exact_match=False,
        matched_name=best.name if should_auto_correct else None,
        score=best.score,
        suggestions=suggestions,
        should_auto_correct=should_auto_correct,
    )


def map_parameters(
    arguments: Dict[str, Any],
    schema_properties: Sequence[str],
    config: Optional[FallbackConfig] = None,
) -> ParameterMapping:
    """Rename caller keys onto schema keys.

    Keys already in the schema are copied first, so an explicit canonical
    value always wins over an alias for the same key. Keys that map nowhere
    are passed through untouched.
    """
    config = config or FallbackConfig()
    if not config.parameter_aliasing:
        return ParameterMapping(mapped_input=dict(arguments))

    props = list(schema_properties)
    mapped: Dict[str, Any] = {k: v for k, v in arguments.items() if k in props}
    result = ParameterMapping(mapped_input=mapped)

    for key, value in arguments.items():
        if key in props:
            continue

        target = _alias_target(key, props)
        if target is None:
            target = _similar_parameter(key, props)

        if target is not None and target not in mapped:
            mapped[target] = value
            result.mappings.append((key, target))
        else:
            result.unmapped.append(key)
            mapped[key] = value

    return result


def _alias_target(key: str, props: Sequence[str]) -> Optional[str]:
    lowered = key.lower()
    for canonical, aliases in GLOBAL_PARAMETER_ALIASES.items():
        if canonical in props and lowered in aliases:
            return canonical
    return None


def _similar_parameter(key: str, props: Sequence[str]) -> Optional[str]:
    best_name, best_score = None, 0.0
    for prop in props:
        score = string_similarity(key, prop)
        if score > best_score:
            best_name, best_score = prop, score
    if best_score >= PARAMETER_SIMILARITY_THRESHOLD:
        return best_name
    return None


def format_fallback_error(requested: str, match: FallbackMatch) -> str:
    lines = [f'Error: Unknown tool "{requested}"']
    if match.suggestions:
        lines.append("")
        lines.append("Did you mean:")
        for s in match.suggestions[:MAX_SUGGESTIONS]:
            lines.append(f"  - {s.name} ({round(s.score * 100)}% match): {s.description}")
    return "\n".join(lines)


def format_mapping_info(
    correction: Optional[Tuple[str, str]],
    mappings: Sequence[Tuple[str, str]],
) -> Optional[str]:
    parts = []
    if correction:
        parts.append(f'Tool: "{correction[0]}" → "{correction[1]}"')
    if mappings:
        parts.append("Params: " + ", ".join(f"{src}→{dst}" for src, dst in mappings))
    if not parts:
        return None
    return f"(Mapped: {'; '.join(parts)})"
