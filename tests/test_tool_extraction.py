"""Tests for recovering tool calls written as text."""

from codi_agent.tool_extraction import extract_tool_calls, fix_json, parse_json_lenient

TOOLS = ["read_file", "write_file", "bash"]


class TestExtractToolCalls:
    def test_calling_marker(self):
        calls = extract_tool_calls('[Calling read_file]: {"path": "src/app.py"}', TOOLS)
        assert len(calls) == 1
        assert calls[0].name == "read_file"
        assert calls[0].input == {"path": "src/app.py"}

    def test_multiple_calling_markers(self):
        text = (
            'First [Calling read_file]: {"path": "a.py"}\n'
            'then [Calling bash]: {"command": "pytest -q"}'
        )
        calls = extract_tool_calls(text, TOOLS)
        assert [c.name for c in calls] == ["read_file", "bash"]
        assert calls[1].input == {"command": "pytest -q"}

    def test_inline_json_object(self):
        text = 'Let me check.\n{"name": "read_file", "arguments": {"path": "a.py"}}\nOK?'
        calls = extract_tool_calls(text, TOOLS)
        assert [(c.name, c.input) for c in calls] == [("read_file", {"path": "a.py"})]

    def test_parameters_and_input_keys(self):
        text = (
            '{"name": "bash", "parameters": {"command": "ls"}} '
            '{"name": "read_file", "input": {"path": "b.py"}}'
        )
        calls = extract_tool_calls(text, TOOLS)
        assert [c.input for c in calls] == [{"command": "ls"}, {"path": "b.py"}]

    def test_json_array(self):
        text = '[{"name": "read_file", "arguments": {"path": "a.py"}}, {"name": "bash", "arguments": {"command": "ls"}}]'
        assert [c.name for c in extract_tool_calls(text, TOOLS)] == ["read_file", "bash"]

    def test_code_block_with_single_quoted_values(self):
        text = "```json\n{\"name\": \"read_file\", \"arguments\": {\"path\": 'a.py'}}\n```"
        calls = extract_tool_calls(text, TOOLS)
        assert len(calls) == 1
        assert calls[0].input == {"path": "a.py"}

    def test_missing_arguments_means_empty(self):
        calls = extract_tool_calls('{"name": "bash"}', TOOLS)
        assert calls[0].input == {}

    def test_unregistered_tools_ignored(self):
        assert extract_tool_calls('{"name": "deploy", "arguments": {}}', TOOLS) == []

    def test_plain_prose(self):
        assert extract_tool_calls("The function returns {x} when done.", TOOLS) == []
        assert extract_tool_calls("", TOOLS) == []

    def test_ids_unique(self):
        text = '{"name": "bash", "arguments": {"command": "a"}} {"name": "bash", "arguments": {"command": "b"}}'
        calls = extract_tool_calls(text, TOOLS)
        assert len({c.id for c in calls}) == 2
        assert all(c.id.startswith("extracted_") for c in calls)


class TestLenientJson:
    def test_fix_json(self):
        assert fix_json("{\"a\": 'b'}") == '{"a": "b"}'

    def test_valid_json(self):
        assert parse_json_lenient('{"a": 1}') == {"a": 1}

    def test_repaired(self):
        assert parse_json_lenient("{\"a\": 'x y'}") == {"a": "x y"}

    def test_hopeless(self):
        assert parse_json_lenient("not json") is None
