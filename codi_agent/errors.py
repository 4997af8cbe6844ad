"""Structured error types for the agent system."""


class AgentError(Exception):
    """Base error for all agent operations."""
    pass


class ToolError(AgentError):
    """Error raised during tool execution."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name} error: {message}")


class ToolRegistrationError(AgentError):
    """Raised when a tool name is registered twice."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Tool "{name}" is already registered')


class ProviderUnavailableError(AgentError, ConnectionError):
    """Raised when the model backend cannot be reached or rejects credentials."""
    pass


class PathOutsideProjectError(AgentError):
    """Raised when a tool path resolves outside the project root."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Path escapes project root: {path}")


class ShellBlockedError(AgentError):
    """Raised when a shell command is blocked by safety guards."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Blocked: {reason}")


class ShellTimeoutError(AgentError):
    """Raised when a shell command exceeds its timeout."""

    def __init__(self, timeout: int):
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s")
