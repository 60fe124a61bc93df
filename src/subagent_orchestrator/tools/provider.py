"""
Tool layer - What workers may call, and how calls reach MCP servers.

Workers never see the orchestration engine's own tools (they cannot
spawn or validate) nor tools whose names look like they mutate state.
"""

import asyncio
import difflib
import json
import logging
import os
import re
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

logger = logging.getLogger(__name__)

# The engine's own operations; never offered to a worker
ENGINE_TOOL_NAMES = frozenset({
	"spawn_agent",
	"spawn_agents_parallel",
	"validate_output",
	"get_session_stats",
	"list_roles",
})

SAFE_TOOL_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
	r"read", r"list", r"search", r"get", r"show", r"view", r"analyze",
	r"validate", r"check", r"inspect", r"browse", r"query", r"fetch",
	r"status", r"info", r"log", r"diff", r"history",
))

UNSAFE_TOOL_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
	# files and directories
	r"create.*file", r"write.*file", r"delete.*file", r"remove.*file",
	r"move.*file", r"copy.*file", r"rename.*file",
	r"create.*dir", r"mkdir", r"rmdir", r"delete.*dir", r"remove.*dir",
	# version control
	r"git.*commit", r"git.*push", r"git.*merge", r"git.*rebase",
	r"git.*reset", r"git.*checkout", r"git.*branch", r"git.*tag",
	# data stores
	r"insert", r"update", r"delete", r"drop", r"create.*table", r"alter.*table",
	# processes
	r"execute", r"run.*command", r"shell", r"system", r"process",
	# network
	r"upload", r"download", r"post", r"put", r"patch", r"delete.*request",
	# memory
	r"delete.*memory", r"clear.*memory", r"reset.*memory",
))


def is_tool_safe(name: str) -> bool:
	"""Safe patterns win; names matching neither list are allowed."""
	if any(p.search(name) for p in SAFE_TOOL_PATTERNS):
		return True
	return not any(p.search(name) for p in UNSAFE_TOOL_PATTERNS)


def is_worker_visible(name: str) -> bool:
	return name not in ENGINE_TOOL_NAMES and is_tool_safe(name)


@dataclass(frozen=True)
class ToolSpec:
	"""A tool a worker may call."""
	name: str
	description: str = ""
	input_schema: dict[str, Any] = field(default_factory=dict)
	server_id: str = ""

	def to_openai(self) -> dict[str, Any]:
		"""OpenAI function-calling declaration."""
		return {
			"type": "function",
			"function": {
				"name": self.name,
				"description": self.description or "No description available",
				"parameters": self.input_schema or {"type": "object", "properties": {}},
			},
		}


@dataclass
class ToolResult:
	"""Outcome of one tool call."""
	success: bool
	content: str = ""
	error: Optional[str] = None
	server_id: str = ""


@runtime_checkable
class ToolProvider(Protocol):
	"""What the spawn controller needs from a tool layer."""

	async def list_safe_tools(self) -> list[ToolSpec]:
		...

	async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
		...


def suggest_tools(name: str, available: list[str], limit: int = 3) -> list[str]:
	"""Available names similar to name (ratio > 0.5, or substring match)."""
	wanted = name.lower()
	scored = []
	for candidate in available:
		lowered = candidate.lower()
		ratio = difflib.SequenceMatcher(None, wanted, lowered).ratio()
		if ratio > 0.5 or wanted in lowered or lowered in wanted:
			scored.append((ratio, candidate))
	scored.sort(key=lambda pair: (-pair[0], pair[1]))
	return [candidate for _, candidate in scored[:limit]]


def format_tool_error(name: str, available: list[str]) -> str:
	"""Corrective message steering a worker toward a valid tool."""
	message = f"Tool {name} is not available."
	suggestions = suggest_tools(name, available)
	if suggestions:
		message += f" Did you mean: {', '.join(suggestions)}?"
	if available:
		message += f" Available tools: {', '.join(sorted(available))}"
	else:
		message += " No tools are available; answer from the task context."
	return message


class NullToolProvider:
	"""Provider with no tools, for running workers without tool servers."""

	async def list_safe_tools(self) -> list[ToolSpec]:
		return []

	async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
		return ToolResult(success=False, error=format_tool_error(name, []))

	async def aclose(self) -> None:
		return None


def load_tool_servers(config) -> dict[str, dict[str, Any]]:
	"""
	Server definitions from config.tool_servers plus an optional JSON file.

	The file may use {"mcpServers": {...}} or {"servers": {...}}.
	Inline definitions win on id clashes.
	"""
	servers: dict[str, dict[str, Any]] = {}
	servers_file = getattr(config, "tool_servers_file", "")
	if servers_file:
		path = Path(os.path.expanduser(servers_file))
		try:
			data = json.loads(path.read_text())
			servers.update(data.get("mcpServers") or data.get("servers") or {})
		except (OSError, json.JSONDecodeError, AttributeError) as e:
			logger.error(f"Could not read tool servers file {path}: {e}")
	servers.update(config.tool_servers or {})
	return {
		server_id: spec for server_id, spec in servers.items()
		if isinstance(spec, dict) and spec.get("command") and not spec.get("disabled", False)
	}


class MCPToolProvider:
	"""
	Tool provider backed by stdio MCP servers.

	Connects lazily on first use; one ClientSession per server.
	"""

	def __init__(self, servers: dict[str, dict[str, Any]]):
		self.servers = servers
		self._exit_stack = AsyncExitStack()
		self._sessions: dict[str, ClientSession] = {}
		self._tools: dict[str, ToolSpec] = {}
		self._connected = False
		self._connect_lock = asyncio.Lock()

	async def connect(self) -> None:
		"""Connect to every configured server. Failing servers are skipped."""
		async with self._connect_lock:
			if self._connected:
				return
			for server_id, spec in self.servers.items():
				try:
					await self._connect_server(server_id, spec)
				except Exception as e:
					logger.error(f"Failed to connect to tool server {server_id}: {e}")
			self._connected = True
			logger.info(
				f"Connected to {len(self._sessions)}/{len(self.servers)} tool servers, "
				f"{len(self._tools)} worker-visible tools"
			)

	async def _connect_server(self, server_id: str, spec: dict[str, Any]) -> None:
		params = StdioServerParameters(
			command=spec["command"],
			args=list(spec.get("args", [])),
			env={**os.environ, **spec.get("env", {})},
		)
		read, write = await self._exit_stack.enter_async_context(stdio_client(params))
		session = await self._exit_stack.enter_async_context(ClientSession(read, write))
		await session.initialize()
		self._sessions[server_id] = session

		response = await session.list_tools()
		hidden = 0
		for tool in response.tools:
			if not is_worker_visible(tool.name):
				hidden += 1
				continue
			if tool.name in self._tools:
				logger.warning(f"Tool {tool.name} from {server_id} shadows one from {self._tools[tool.name].server_id}")
			self._tools[tool.name] = ToolSpec(
				name=tool.name,
				description=tool.description or "",
				input_schema=dict(tool.inputSchema or {}),
				server_id=server_id,
			)
		logger.debug(f"Tool server {server_id}: {len(response.tools)} tools, {hidden} hidden from workers")

	async def list_safe_tools(self) -> list[ToolSpec]:
		await self.connect()
		return sorted(self._tools.values(), key=lambda t: t.name)

	async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
		await self.connect()
		spec = self._tools.get(name)
		if spec is None:
			return ToolResult(success=False, error=format_tool_error(name, list(self._tools)))

		session = self._sessions[spec.server_id]
		try:
			result = await session.call_tool(name, arguments)
		except Exception as e:
			logger.warning(f"Tool {name} on {spec.server_id} raised: {e}")
			return ToolResult(success=False, error=str(e), server_id=spec.server_id)

		text = "\n".join(
			item.text for item in result.content
			if getattr(item, "text", None)
		)
		if result.isError:
			return ToolResult(success=False, error=text or f"Tool {name} failed", server_id=spec.server_id)
		return ToolResult(success=True, content=text, server_id=spec.server_id)

	async def aclose(self) -> None:
		await self._exit_stack.aclose()
		self._sessions.clear()
		self._tools.clear()
		self._connected = False
