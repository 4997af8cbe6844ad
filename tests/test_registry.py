"""Tests for ToolRegistry dispatch and FunctionTool schemas."""

from typing import Optional

import pytest

from codi_agent.errors import ToolRegistrationError
from codi_agent.messages import ImagePayload, ToolCall
from codi_agent.tools import (
    IMAGE_PLACEHOLDER,
    FallbackConfig,
    FunctionTool,
    ToolRegistry,
    create_default_registry,
    format_image_result,
    parse_image_result,
)


def greet(name: str, times: int = 1, loud: Optional[bool] = None) -> str:
    """Say hello.

    name: Who to greet
    times: How many times
    """
    text = " ".join([f"hello {name}"] * times)
    return text.upper() if loud else text


def grep(pattern: str, path: str = ".") -> str:
    return f"searched {path} for {pattern}"


def explode(reason: str) -> str:
    raise ValueError(reason)


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register_all([
        FunctionTool(greet, "Greet someone"),
        FunctionTool(grep, "Search"),
        FunctionTool(explode, "Always fails"),
    ])
    return reg


class TestFunctionTool:
    def test_schema_from_signature(self):
        definition = FunctionTool(greet, "Greet someone").get_definition()
        assert definition.name == "greet"
        assert definition.required == ["name"]
        assert definition.properties["name"] == {"type": "string", "description": "Who to greet"}
        assert definition.properties["times"] == {
            "type": "integer", "description": "How many times", "default": 1,
        }
        assert definition.properties["loud"] == {"type": "boolean"}

    def test_custom_name(self):
        tool = FunctionTool(greet, "Greet", name="hello")
        assert tool.get_name() == "hello"

    def test_unknown_arguments_ignored(self):
        result = FunctionTool(greet, "Greet").run("c1", {"name": "bob", "colour": "red"})
        assert result.content == "hello bob"
        assert not result.is_error

    def test_missing_required_parameter(self):
        result = FunctionTool(greet, "Greet").run("c1", {"times": 2})
        assert result.is_error
        assert result.content == (
            'Error: Missing required parameter "name" for tool "greet". '
            "Expected parameters: name, times, loud"
        )

    def test_image_payload_output(self):
        tool = FunctionTool(lambda path: ImagePayload("image/png", "AAAA", "what?"), "img", name="img")
        result = tool.run("c1", {"path": "a.png"})
        assert result.content == IMAGE_PLACEHOLDER
        assert result.image.data == "AAAA"


class TestImageSentinel:
    def test_round_trip_preserves_question_with_colons(self):
        encoded = format_image_result(ImagePayload("image/png", "QUJD", "what: is this?"))
        decoded = parse_image_result(encoded)
        assert decoded == ImagePayload("image/png", "QUJD", "what: is this?")

    def test_plain_text_is_not_an_image(self):
        assert parse_image_result("hello") is None
        assert parse_image_result("__IMAGE__:broken") is None


class TestRegistry:
    def test_duplicate_registration_rejected(self, registry):
        with pytest.raises(ToolRegistrationError):
            registry.register(FunctionTool(greet, "again"))

    def test_listing(self, registry):
        assert registry.list_tools() == ["greet", "grep", "explode"]
        assert registry.has("grep")
        assert registry.get("nope") is None
        schemas = registry.get_schemas()
        assert schemas[0]["type"] == "function"
        assert schemas[0]["function"]["name"] == "greet"

    def test_execute(self, registry):
        result = registry.execute(ToolCall("c1", "greet", {"name": "ann", "times": 2}))
        assert result.tool_use_id == "c1"
        assert result.content == "hello ann hello ann"

    def test_tool_exception_becomes_error_result(self, registry):
        result = registry.execute(ToolCall("c1", "explode", {"reason": "kaboom"}))
        assert result.is_error
        assert result.content == "Error: kaboom"

    def test_name_auto_corrected_with_note(self, registry):
        result = registry.execute(ToolCall("c1", "gret", {"name": "ann"}))
        assert not result.is_error
        assert result.content == '(Mapped: Tool: "gret" → "greet")\n\nhello ann'

    def test_parameter_alias_with_note(self, registry):
        result = registry.execute(ToolCall("c1", "grep", {"query": "TODO"}))
        assert result.content == "(Mapped: Params: query→pattern)\n\nsearched . for TODO"

    def test_note_not_added_to_errors(self, registry):
        result = registry.execute(ToolCall("c1", "explod", {"reason": "bad"}))
        assert result.is_error
        assert result.content == "Error: bad"

    def test_unknown_tool(self, registry):
        result = registry.execute(ToolCall("c1", "deploy", {}))
        assert result.is_error
        assert result.content.startswith('Error: Unknown tool "deploy"')

    def test_fallback_disabled(self):
        reg = ToolRegistry(FallbackConfig(enabled=False))
        reg.register(FunctionTool(greet, "Greet"))
        result = reg.execute(ToolCall("c1", "gret", {"name": "x"}))
        assert result.content == 'Error: Unknown tool "gret"'
        assert reg.resolve_name("gret") is None

    def test_set_fallback_config_disables_correction(self, registry):
        assert registry.execute(ToolCall("c1", "gret", {"name": "x"})).content.endswith("hello x")
        registry.set_fallback_config(FallbackConfig(enabled=False))
        result = registry.execute(ToolCall("c2", "gret", {"name": "x"}))
        assert result.content == 'Error: Unknown tool "gret"'

    def test_resolve_name(self, registry):
        assert registry.resolve_name("greet") == "greet"
        assert registry.resolve_name("gret") == "greet"
        assert registry.resolve_name("deploy") is None

    def test_execute_all_keeps_order(self, registry):
        calls = [ToolCall(f"c{i}", "greet", {"name": str(i)}) for i in range(6)]
        results = registry.execute_all(calls)
        assert [r.tool_use_id for r in results] == [c.id for c in calls]
        assert results[3].content == "hello 3"

    def test_registries_are_independent(self):
        a, b = ToolRegistry(), ToolRegistry()
        a.register(FunctionTool(greet, "Greet"))
        assert not b.has("greet")


class TestDefaultRegistry:
    def test_builtin_tools(self, tmp_path):
        reg = create_default_registry(str(tmp_path))
        assert set(reg.list_tools()) == {
            "read_file", "write_file", "edit_file", "list_directory",
            "glob", "grep", "analyze_image", "bash",
        }
