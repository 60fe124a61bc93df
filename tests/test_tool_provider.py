"""Tests for tool safety filtering, suggestions and server configuration."""

import json

import pytest

from subagent_orchestrator.tools.provider import (
	MCPToolProvider,
	NullToolProvider,
	ToolSpec,
	format_tool_error,
	is_tool_safe,
	is_worker_visible,
	load_tool_servers,
	suggest_tools,
)

from .helpers import make_config


class TestToolSafety:
	"""Which tools workers may see."""

	@pytest.mark.parametrize("name", [
		"read_file", "list_dir", "grep_search", "git_status", "git_diff",
		"fetch_url", "get_weather", "read_graph",
	])
	def test_read_only_tools_are_safe(self, name):
		assert is_tool_safe(name)

	@pytest.mark.parametrize("name", [
		"write_file", "delete_file", "git_commit", "git_push", "run_command",
		"execute_sql", "drop_table", "upload_artifact", "mkdir",
	])
	def test_mutating_tools_are_unsafe(self, name):
		assert not is_tool_safe(name)

	def test_safe_pattern_wins(self):
		# "list" marks it safe even though "delete" appears too
		assert is_tool_safe("list_deleted_items")

	def test_unknown_names_allowed(self):
		assert is_tool_safe("summarize")

	def test_engine_tools_hidden(self):
		assert not is_worker_visible("spawn_agent")
		assert not is_worker_visible("validate_output")
		assert not is_worker_visible("get_session_stats")
		assert is_worker_visible("read_file")


class TestSuggestions:
	"""Near-miss tool names."""

	def test_similar_names(self):
		available = ["read_file", "list_dir", "grep_search"]
		assert suggest_tools("read_files", available)[0] == "read_file"
		assert suggest_tools("grep", available) == ["grep_search"]

	def test_no_suggestions(self):
		assert suggest_tools("zzz", ["read_file"]) == []

	def test_error_message(self):
		message = format_tool_error("readfile", ["read_file", "list_dir"])
		assert message.startswith("Tool readfile is not available.")
		assert "Did you mean: read_file?" in message
		assert "Available tools: list_dir, read_file" in message

	def test_error_message_without_tools(self):
		message = format_tool_error("read_file", [])
		assert "No tools are available" in message


class TestLoadToolServers:
	"""Server definitions from config and file."""

	def test_inline_servers(self, tmp_path):
		config = make_config(tmp_path, tool_servers={
			"files": {"command": "file-server", "args": ["."]},
			"off": {"command": "x", "disabled": True},
			"broken": {"args": []},
		})
		assert load_tool_servers(config) == {"files": {"command": "file-server", "args": ["."]}}

	def test_servers_file_merged_under_inline(self, tmp_path):
		servers_file = tmp_path / "servers.json"
		servers_file.write_text(json.dumps({"mcpServers": {
			"files": {"command": "from-file"},
			"git": {"command": "git-server"},
		}}))
		config = make_config(
			tmp_path,
			tool_servers={"files": {"command": "inline"}},
			tool_servers_file=str(servers_file),
		)
		servers = load_tool_servers(config)
		assert servers["files"]["command"] == "inline"
		assert servers["git"]["command"] == "git-server"

	def test_unreadable_file(self, tmp_path):
		config = make_config(tmp_path, tool_servers_file=str(tmp_path / "missing.json"))
		assert load_tool_servers(config) == {}


class TestProviders:
	"""Provider behaviour without live servers."""

	@pytest.mark.asyncio
	async def test_null_provider(self):
		provider = NullToolProvider()
		assert await provider.list_safe_tools() == []
		result = await provider.call_tool("read_file", {})
		assert not result.success
		assert "not available" in result.error

	@pytest.mark.asyncio
	async def test_mcp_provider_without_servers(self):
		provider = MCPToolProvider({})
		assert await provider.list_safe_tools() == []
		result = await provider.call_tool("read_file", {"path": "a.py"})
		assert not result.success
		await provider.aclose()

	def test_tool_spec_openai_declaration(self):
		spec = ToolSpec(name="read_file", input_schema={"type": "object", "properties": {"path": {"type": "string"}}})
		declaration = spec.to_openai()
		assert declaration["type"] == "function"
		assert declaration["function"]["name"] == "read_file"
		assert declaration["function"]["description"] == "No description available"
		assert declaration["function"]["parameters"]["properties"]["path"] == {"type": "string"}
