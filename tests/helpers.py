"""Shared test fixtures and helpers for subagent-orchestrator tests."""

import json
from pathlib import Path
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

from subagent_orchestrator.config import Config
from subagent_orchestrator.llm.client import ChatMessage, CompletionMessage, ToolCall
from subagent_orchestrator.tools.provider import ToolResult, ToolSpec

SECURITY_ANALYSIS = (
	"The login handler in src/auth/login.py builds its SQL query by string "
	"concatenation at line 42, which allows SQL injection through the username "
	"parameter. The session middleware in src/middleware/session.py stores the JWT "
	"without validation, and the service layer in src/services/user_service.py "
	"passes the raw request variable to the repository query method. "
	"The password reset controller in src/controllers/reset.py also accepts form posts "
	"without a CSRF token. "
	"Use a parameterized query: `cursor.execute(\"SELECT id FROM users WHERE name = ?\", (name,))`."
)
SECURITY_REQUIREMENTS = "Analyze the login handler, session middleware and repository query for injection"


def make_config(tmp_path: Path, **overrides) -> Config:
	"""Config rooted in tmp_path with a dummy API key."""
	values: dict[str, Any] = {
		"config_dir": tmp_path / "config",
		"data_dir": tmp_path / "data",
		"api_key": "test-key",
	}
	values.update(overrides)
	return Config(**values)


def worker_json(
	analysis: str = SECURITY_ANALYSIS,
	recommendations: Optional[list[str]] = None,
	role: str = "Security Engineer",
	status: str = "complete",
	confidence: str = "high",
	memory_operations: Optional[list[dict]] = None,
	**extra,
) -> str:
	"""A well-formed worker response as JSON text."""
	payload: dict[str, Any] = {
		"deliverables": {
			"analysis": analysis,
			"recommendations": recommendations if recommendations is not None else [
				"Fix query in src/auth/login.py line 42 with a parameterized statement",
				"Add validation for the JWT signature in src/middleware/session.py",
				"Update configuration to rotate the signing key",
			],
			"documents": [],
		},
		"memory_operations": memory_operations if memory_operations is not None else [
			{"operation": "create_entities", "data": {"entities": [{"name": "login.py", "entityType": "file"}]}},
		],
		"metadata": {
			"role": role,
			"completion_status": status,
			"confidence_level": confidence,
			"processing_time_ms": 1200,
		},
	}
	payload.update(extra)
	return json.dumps(payload)


def tool_call(name: str, arguments: Optional[dict] = None, call_id: str = "call_1") -> CompletionMessage:
	"""A reply requesting one native tool call."""
	return CompletionMessage(content="", tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments or {})])


def answer(text: str) -> CompletionMessage:
	return CompletionMessage(content=text)


class FakeCompletionClient:
	"""
	Scripted CompletionClient.

	Either replays `script` in order (items may be CompletionMessages or
	exceptions to raise), or calls `responder(messages)` for every turn.
	"""

	def __init__(
		self,
		script: Optional[list[Any]] = None,
		responder: Optional[Callable[[list[ChatMessage]], Any]] = None,
	):
		self.script = list(script or [])
		self.responder = responder
		self.calls: list[list[ChatMessage]] = []
		self.tools_seen: list[Optional[list[ToolSpec]]] = []
		self.closed = False

	async def complete(self, messages, tools=None):
		self.calls.append(list(messages))
		self.tools_seen.append(tools)
		if self.responder is not None:
			reply = self.responder(list(messages))
			if hasattr(reply, "__await__"):
				reply = await reply
		else:
			if not self.script:
				raise AssertionError("FakeCompletionClient script exhausted")
			reply = self.script.pop(0)
		if isinstance(reply, Exception):
			raise reply
		return reply

	async def aclose(self):
		self.closed = True


class FakeToolProvider:
	"""ToolProvider double; handlers map tool name -> ToolResult or callable(arguments)."""

	def __init__(self, handlers: Optional[dict[str, Any]] = None, specs: Optional[list[ToolSpec]] = None):
		self.handlers = handlers or {}
		self.specs = specs if specs is not None else [
			ToolSpec(
				name=name,
				description=f"{name} tool",
				input_schema={"type": "object", "properties": {"path": {"type": "string"}}},
				server_id="fake",
			)
			for name in self.handlers
		]
		self.calls: list[tuple[str, dict]] = []

	async def list_safe_tools(self):
		return list(self.specs)

	async def call_tool(self, name, arguments):
		self.calls.append((name, arguments))
		handler = self.handlers.get(name)
		if handler is None:
			return ToolResult(success=False, error=f"Tool {name} is not available.")
		if callable(handler):
			result = handler(arguments)
			if hasattr(result, "__await__"):
				result = await result
			return result
		return handler


def capture_tools(config: MagicMock, register_fn: Callable, *args) -> dict:
	"""Register tools on a mock MCP and return the captured tool functions.

	Args:
		config: Config object to pass to the registration function
		register_fn: The registration function (e.g., register_delegation_tools)
		args: Extra positional arguments for register_fn

	Returns:
		Dict mapping tool name to the tool function
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

	register_fn(MockMCP(), config, *args)
	return captured
