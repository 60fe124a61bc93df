"""Delegation tools - spawn, batch, validate and inspect sub-agents."""

import json
import logging
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..errors import CompletionError, InvalidTaskSpecification, OrchestratorError
from ..orchestrator.facade import Orchestrator, build_orchestrator

logger = logging.getLogger(__name__)


def _error_response(error: Exception) -> str:
	if isinstance(error, OrchestratorError):
		detail = error.to_dict()
	else:
		detail = {
			"type": type(error).__name__,
			"message": str(error),
			"session_id": None,
			"details": {},
			"remediation": "",
		}
	return json.dumps({"success": False, "error": detail}, indent=2)


def register_delegation_tools(mcp: FastMCP, config: Config, orchestrator: Optional[Orchestrator] = None) -> None:
	"""Register the delegation tools on an MCP server."""
	state: dict[str, Any] = {"orchestrator": orchestrator}

	def get_orchestrator() -> Orchestrator:
		# Built on first use so the server starts without an API key
		if state["orchestrator"] is None:
			state["orchestrator"] = build_orchestrator(config)
		return state["orchestrator"]

	@mcp.tool()
	async def spawn_agent(
		role: str,
		task: str,
		context: str = "",
		expected_deliverables: str = "",
		session_id: str = "",
		refinement: bool = False,
	) -> str:
		"""
		Delegate a task to a specialized sub-agent.

		Describe WHAT the agent should achieve, not which tools to call.

		Args:
			role: Role name (see list_roles), e.g. "Security Engineer"
			task: The work to do
			context: Background the agent needs
			expected_deliverables: What the answer should contain
			session_id: Existing delegation session to charge (default: new session)
			refinement: True when retrying after validate_output asked for refinement
		"""
		try:
			result = await get_orchestrator().spawn_agent(
				role=role,
				task=task,
				context=context,
				expected_deliverables=expected_deliverables,
				session_id=session_id or None,
				refinement=refinement,
			)
		except (OrchestratorError, CompletionError) as e:
			logger.warning(f"spawn_agent failed: {e}")
			return _error_response(e)
		return json.dumps(result.to_dict(), indent=2)

	@mcp.tool()
	async def spawn_agents_parallel(agents: str, coordination_context: str = "") -> str:
		"""
		Run several sub-agents concurrently and join their results.

		Args:
			agents: JSON array of {"agent_id", "role", "task", "context", "expected_deliverables"}
			coordination_context: Shared context given to every agent in the batch
		"""
		try:
			try:
				specs = json.loads(agents)
			except json.JSONDecodeError as e:
				raise InvalidTaskSpecification(
					f"agents is not valid JSON: {e}",
					details={"field": "agents"},
					remediation="Pass a JSON array of agent objects.",
				) from e
			if not isinstance(specs, list):
				raise InvalidTaskSpecification(
					"agents must be a JSON array",
					details={"field": "agents", "got": type(specs).__name__},
				)
			result = await get_orchestrator().spawn_agents_parallel(specs, coordination_context)
		except (OrchestratorError, CompletionError) as e:
			logger.warning(f"spawn_agents_parallel failed: {e}")
			return _error_response(e)
		return json.dumps(result.to_dict(), indent=2)

	@mcp.tool()
	async def validate_output(
		agent_output: str,
		requirements: str,
		quality_criteria: str = "",
		role: str = "",
		session_id: str = "",
		enable_refinement: bool = True,
		expected_deliverables: str = "",
		original_task: str = "",
	) -> str:
		"""
		Score a sub-agent's output and get a refinement prompt if it falls short.

		Args:
			agent_output: The agent's raw output
			requirements: What the output must address
			quality_criteria: Additional quality expectations
			role: Role that produced the output (sets the threshold)
			session_id: Delegation session for refinement tracking (default: new session)
			enable_refinement: Whether to evaluate and track refinement
			expected_deliverables: Deliverables the output should contain
			original_task: Task text quoted back in the refinement prompt
		"""
		try:
			orchestrator = get_orchestrator()
			result = orchestrator.validate_output(
				agent_output,
				requirements,
				quality_criteria,
				role=role or None,
				session_id=session_id or None,
				enable_refinement=enable_refinement,
				expected_deliverables=expected_deliverables,
				original_task=original_task,
			)
		except (OrchestratorError, CompletionError) as e:
			return _error_response(e)
		await orchestrator.flush_snapshots()
		return json.dumps(result.to_dict(), indent=2)

	@mcp.tool()
	async def get_session_stats(session_id: str = "") -> str:
		"""
		Get delegation limits and usage for a session, or global stats.

		Args:
			session_id: Session to inspect (default: global stats)
		"""
		try:
			stats = get_orchestrator().get_session_stats(session_id or None)
		except (OrchestratorError, CompletionError) as e:
			return _error_response(e)
		return json.dumps(stats, indent=2)

	@mcp.tool()
	async def list_roles() -> str:
		"""
		List the sub-agent roles available for delegation.

		Returns JSON with name, description, tools and quality threshold per role.
		"""
		try:
			roles = get_orchestrator().list_roles()
		except (OrchestratorError, CompletionError) as e:
			return _error_response(e)
		return json.dumps({"roles": roles, "total": len(roles)}, indent=2)
