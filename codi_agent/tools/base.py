"""Tool contract and the function-backed tool used by the built-ins."""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Union, get_type_hints
from urllib.parse import quote, unquote

from ..logger import get_logger
from ..messages import ImagePayload, ToolDefinition, ToolResult

_log = get_logger(__name__)

IMAGE_SENTINEL = "__IMAGE__:"
IMAGE_PLACEHOLDER = "Image loaded for analysis."

# Python type -> JSON Schema type
_TYPE_MAP = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}

ToolOutput = Union[str, ImagePayload]


def format_image_result(image: ImagePayload) -> str:
    """Encode an image as the sentinel string any tool may return."""
    return f"{IMAGE_SENTINEL}{image.media_type}:{quote(image.question, safe='')}:{image.data}"


def parse_image_result(text: str) -> Optional[ImagePayload]:
    """Decode ``__IMAGE__:<media_type>:<question>:<base64>``, else ``None``."""
    if not text.startswith(IMAGE_SENTINEL):
        return None
    parts = text[len(IMAGE_SENTINEL):].split(":", 2)
    if len(parts) != 3 or not parts[0] or not parts[2]:
        return None
    media_type, question, data = parts
    return ImagePayload(media_type=media_type, data=data, question=unquote(question))


class BaseTool(ABC):
    """A model-callable tool.

    Subclasses describe themselves with ``get_definition`` and do their work
    in ``execute``, raising on failure. ``run`` is what the registry calls:
    it validates required parameters and turns exceptions into error results
    so a failing tool never takes the loop down with it.
    """

    @abstractmethod
    def get_definition(self) -> ToolDefinition:
        ...

    @abstractmethod
    def execute(self, arguments: Dict[str, Any]) -> ToolOutput:
        ...

    def get_name(self) -> str:
        return self.get_definition().name

    def run(self, tool_use_id: str, arguments: Dict[str, Any]) -> ToolResult:
        definition = self.get_definition()
        missing = [key for key in definition.required if key not in arguments]
        if missing:
            expected = ", ".join(definition.properties) or "(none)"
            return ToolResult(
                tool_use_id=tool_use_id,
                content=(
                    f'Error: Missing required parameter "{missing[0]}" for tool '
                    f'"{definition.name}". Expected parameters: {expected}'
                ),
                is_error=True,
            )

        try:
            output = self.execute(arguments)
        except Exception as e:
            _log.debug("Tool %s failed: %s", definition.name, e)
            return ToolResult(tool_use_id=tool_use_id, content=f"Error: {e}", is_error=True)

        if isinstance(output, ImagePayload):
            return ToolResult(tool_use_id=tool_use_id, content=IMAGE_PLACEHOLDER, image=output)

        text = "" if output is None else str(output)
        image = parse_image_result(text)
        if image is not None:
            return ToolResult(tool_use_id=tool_use_id, content=IMAGE_PLACEHOLDER, image=image)
        return ToolResult(tool_use_id=tool_use_id, content=text)


class FunctionTool(BaseTool):
    """Wrap a plain callable; the input schema is derived from its signature.

    Parameter descriptions come from ``name: text`` lines in the docstring.
    """

    def __init__(self, func: Callable[..., ToolOutput], description: str,
                 name: Optional[str] = None):
        self.func = func
        self._definition = ToolDefinition(
            name=name or func.__name__,
            description=description,
            input_schema=_build_input_schema(func),
        )
        self._accepts = set(self._definition.properties)

    def get_definition(self) -> ToolDefinition:
        return self._definition

    def execute(self, arguments: Dict[str, Any]) -> ToolOutput:
        extra = [k for k in arguments if k not in self._accepts]
        if extra:
            _log.debug("%s: ignoring unknown parameters %s", self._definition.name, extra)
        return self.func(**{k: v for k, v in arguments.items() if k in self._accepts})


def _build_input_schema(func: Callable) -> dict:
    sig = inspect.signature(func)
    try:
        hints = get_type_hints(func)
    except (NameError, TypeError):
        hints = {}

    properties: Dict[str, Dict[str, Any]] = {}
    required = []

    for param_name, param in sig.parameters.items():
        if param_name == "self" or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue

        hint = hints.get(param_name)
        args = getattr(hint, "__args__", None)
        if args and type(None) in args:
            # Optional[X] -> X
            hint = next((a for a in args if a is not type(None)), None)

        prop: Dict[str, Any] = {"type": _TYPE_MAP.get(hint, "string")}
        doc_desc = _extract_param_doc(func, param_name)
        if doc_desc:
            prop["description"] = doc_desc

        if param.default is inspect.Parameter.empty:
            required.append(param_name)
        elif param.default is not None:
            prop["default"] = param.default

        properties[param_name] = prop

    return {"type": "object", "properties": properties, "required": required}


def _extract_param_doc(func: Callable, param_name: str) -> str:
    doc = func.__doc__
    if not doc:
        return ""
    for line in doc.splitlines():
        stripped = line.strip()
        if stripped.startswith(f"{param_name}:"):
            return stripped.partition(":")[2].strip()
    return ""
