"""codi-agent: orchestration core for an autonomous coding assistant."""

__version__ = "0.1.0"
