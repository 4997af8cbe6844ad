"""Shared fixtures for codi-agent tests."""

import os
from unittest.mock import MagicMock

import pytest
import yaml


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture(autouse=True)
def _clean_agent_env(monkeypatch):
    """Keep AGENT_* variables from the developer's shell out of config tests."""
    for var in ("AGENT_MODEL", "AGENT_AUTO_APPROVE", "AGENT_VERBOSE"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def sample_config_data():
    """Minimal .agent.conf.yml data dict."""
    return {
        "active-model": "local",
        "max-iterations": 50,
        "max-consecutive-errors": 5,
        "max-context-tokens": 20000,
        "recent-messages-to-keep": 6,
        "max-messages": 200,
        "auto-approve": ["read_file", "glob"],
        "dangerous-patterns": [
            {"pattern": r"\bnpm\s+publish\b", "description": "publishes a package"},
        ],
        "fallback": {
            "enabled": True,
            "auto-correct-threshold": 0.9,
            "suggestion-threshold": 0.5,
            "parameter-aliasing": False,
        },
        "use-tools": True,
        "extract-tools-from-text": False,
        "command-timeout": 30,
        "verbose": False,
        "models": {
            "local": {
                "provider": "local",
                "model": "openai/model",
                "description": "Local test model",
                "temperature": 0.0,
                "max-tokens": 8192,
                "context-window": 32000,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            }
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".agent.conf.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


@pytest.fixture
def mock_console():
    """A mock Rich Console that silently accepts all print calls."""
    c = MagicMock()
    c.print = MagicMock()
    c.input = MagicMock(return_value="n")
    return c
