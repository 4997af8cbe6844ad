from typing import List, Optional

from .base import BaseTool, FunctionTool, IMAGE_PLACEHOLDER, format_image_result, parse_image_result
from .fallback import FallbackConfig
from .file_ops import FileOps, create_file_tools
from .registry import ToolRegistry
from .shell import BashTool, ShellExecutor

__all__ = [
    "BaseTool", "FunctionTool", "FallbackConfig", "ToolRegistry", "FileOps",
    "ShellExecutor", "BashTool", "IMAGE_PLACEHOLDER", "format_image_result",
    "parse_image_result", "create_default_registry",
]


def create_default_registry(project_root: str = ".", command_timeout: int = 120,
                            blocked_commands: Optional[List[str]] = None,
                            fallback_config: Optional[FallbackConfig] = None) -> ToolRegistry:
    """A fresh registry holding the built-in file and shell tools."""
    registry = ToolRegistry(fallback_config=fallback_config)
    registry.register_all(create_file_tools(FileOps(project_root)))
    registry.register(BashTool(ShellExecutor(project_root, blocked_commands, command_timeout)))
    return registry
