"""
Spawn Controller - Runs one worker invocation end to end.

A worker is a role's instructions plus a task, driven through a
tool-calling conversation with the completion API:

1. Compose instructions (fatal on failure; never retried)
2. Converse: each turn either requests tools or answers
   - requested tools run concurrently, each under a timeout
   - failures are fed back with suggestions; success resets the
     consecutive-failure counter
   - too many consecutive failures trips the circuit breaker
3. Parse the final answer into a WorkerResponse

Running out of turns raises IterationLimitExceeded.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import Config
from ..errors import (
	CircuitBreakerTripped,
	CompletionError,
	IterationLimitExceeded,
	ParseRecoveryExhausted,
	ToolExecutionFailed,
	WorkerExecutionFailed,
)
from ..llm.client import ChatMessage, CompletionClient, ToolCall
from ..models import WorkerResponse
from ..parsing import extract_tool_request, parse_worker_response
from ..roles import Role, RoleRegistry
from ..tools.provider import ToolProvider, ToolResult, ToolSpec, format_tool_error, is_worker_visible
from .ledger import SessionLedger
from .prompts import check_task_specification, compose_instructions

logger = logging.getLogger(__name__)

START_MESSAGE = (
	"Begin the task. Call tools as needed, then reply with the final JSON response only."
)


@dataclass
class SpawnRequest:
	"""One delegated unit of work."""
	role: str
	task: str
	context: str = ""
	expected_deliverables: str = ""
	coordination_context: str = ""

	@property
	def fingerprint(self) -> str:
		return SessionLedger.generate_task_hash(self.task, self.context, self.role)


def _elapsed_ms(started: float) -> int:
	return int((time.monotonic() - started) * 1000)


class SpawnController:
	"""
	Turns (role, task, session) into a WorkerResponse.

	Ledger checks happen in run(); execute() drives the conversation for
	an already-admitted worker session.
	"""

	def __init__(
		self,
		config: Config,
		ledger: SessionLedger,
		roles: RoleRegistry,
		completion: Optional[CompletionClient],
		tools: ToolProvider,
	):
		self.config = config
		self.ledger = ledger
		self.roles = roles
		self.completion = completion
		self.tools = tools

	async def run(
		self,
		request: SpawnRequest,
		session_id: str,
		is_refinement: bool = False,
	) -> tuple[WorkerResponse, str]:
		"""
		Admit a spawn against session_id and execute it in a child session.

		Returns:
			Tuple of (response, worker session id)

		Raises:
			InvalidTaskSpecification: If the task names tools
			RoleNotFound: If the role is unknown
			DepthExceeded, CallLimitExceeded, DelegationLoopDetected:
				If the session may not spawn
		"""
		check_task_specification(request.task, request.context)
		role = self.roles.get(request.role)

		block = self.ledger.spawn_block_reason(session_id)
		if block is not None:
			logger.warning(f"Spawn of {role.name} blocked in {session_id}: {block.message}")
			raise block

		self.ledger.track_agent_call(session_id, role.name, request.fingerprint, is_refinement)
		worker_session = self.ledger.create_session(is_sub_agent=True, parent_id=session_id)
		response = await self.execute(request, worker_session, role=role)
		return response, worker_session

	async def _visible_tools(self, role: Role) -> list[ToolSpec]:
		available = [t for t in await self.tools.list_safe_tools() if is_worker_visible(t.name)]
		if role.tools:
			declared = [t for t in available if t.name in role.tools]
			if declared:
				return declared
			logger.debug(f"None of {role.name}'s declared tools are available; offering all safe tools")
		return available

	async def execute(self, request: SpawnRequest, session_id: str, role: Optional[Role] = None) -> WorkerResponse:
		"""
		Drive one worker conversation to a terminal state.

		Returns:
			The parsed response, or a failed-status response if the
			circuit breaker trips

		Raises:
			TemplateRenderingFailed: If instructions cannot be composed
			WorkerExecutionFailed: If the completion API fails
			IterationLimitExceeded: If no final answer arrives in max_iterations turns
		"""
		if self.completion is None:
			raise WorkerExecutionFailed(
				"No completion client is configured",
				session_id=session_id,
				remediation="Set OPENAI_API_KEY or SUBAGENT_ORCHESTRATOR_API_KEY and restart.",
			)
		role = role or self.roles.get(request.role)
		started = time.monotonic()
		max_iterations = self.config.max_iterations
		max_failures = self.config.max_consecutive_tool_failures

		tools = await self._visible_tools(role)
		tool_names = [t.name for t in tools]
		instructions = compose_instructions(
			role=role,
			task=request.task,
			context=request.context,
			expected_deliverables=request.expected_deliverables,
			tools=tools,
			session_id=session_id,
			max_iterations=max_iterations,
			max_failures=max_failures,
			coordination_context=request.coordination_context,
		)
		messages = [
			ChatMessage(role="system", content=instructions),
			ChatMessage(role="user", content=START_MESSAGE),
		]
		logger.info(f"Worker {role.name} started in {session_id} with {len(tools)} tools")

		consecutive_failures = 0
		tool_failures: list[dict[str, Any]] = []

		for iteration in range(1, max_iterations + 1):
			try:
				reply = await self.completion.complete(messages, tools or None)
			except (CompletionError, httpx.HTTPError) as e:
				raise WorkerExecutionFailed(
					f"Completion API failed for {role.name}: {e}",
					session_id=session_id,
					details={"role": role.name, "iteration": iteration, "error_type": type(e).__name__},
				) from e

			calls = list(reply.tool_calls)
			inline = False
			if not calls:
				tool_request = extract_tool_request(reply.content)
				if tool_request is not None:
					inline = True
					calls = [ToolCall(
						id=f"inline-{iteration}",
						name=tool_request.tool,
						arguments=dict(tool_request.arguments),
					)]

			if not calls:
				return self._finalize(reply.content, role, session_id, started, tool_failures)

			if inline:
				messages.append(ChatMessage(role="assistant", content=reply.content))
			else:
				messages.append(ChatMessage(role="assistant", content=reply.content, tool_calls=calls))

			results = await asyncio.gather(*(self._call_tool(call, tool_names) for call in calls))

			for call, result in zip(calls, results):
				if result.success:
					consecutive_failures = 0
					content = result.content or "(no output)"
				else:
					consecutive_failures += 1
					failure = ToolExecutionFailed(
						f"Tool {call.name} failed: {result.error}",
						session_id=session_id,
						details={
							"tool": call.name,
							"arguments": call.arguments,
							"iteration": iteration,
							"server_id": result.server_id,
						},
					)
					tool_failures.append(failure.to_dict())
					logger.warning(f"{role.name} in {session_id}: {failure.message}")
					content = f"Error: {result.error}"

				if inline:
					messages.append(ChatMessage(role="user", content=f"Result of tool {call.name}:\n{content}"))
				else:
					messages.append(ChatMessage(role="tool", content=content, tool_call_id=call.id))

			if consecutive_failures >= max_failures:
				tripped = CircuitBreakerTripped(
					f"Aborted after {consecutive_failures} consecutive tool failures",
					session_id=session_id,
					details={
						"consecutive_failures": consecutive_failures,
						"max_consecutive_tool_failures": max_failures,
						"iteration": iteration,
						"last_tool": calls[-1].name,
					},
				)
				logger.warning(f"Circuit breaker tripped for {role.name} in {session_id}")
				return WorkerResponse.failed(
					role=role.name,
					error=tripped.to_dict(),
					processing_time_ms=_elapsed_ms(started),
					tool_failures=tool_failures,
				)

		raise IterationLimitExceeded(
			f"{role.name} did not produce a final answer within {max_iterations} turns",
			session_id=session_id,
			details={
				"session_id": session_id,
				"iterations": max_iterations,
				"consecutive_failures": consecutive_failures,
			},
		)

	async def _call_tool(self, call: ToolCall, available: list[str]) -> ToolResult:
		if call.name not in available:
			return ToolResult(success=False, error=format_tool_error(call.name, available))

		timeout = self.config.tool_timeout_seconds
		try:
			result = await asyncio.wait_for(self.tools.call_tool(call.name, call.arguments), timeout=timeout)
		except asyncio.TimeoutError:
			result = ToolResult(success=False, error=f"Tool {call.name} timed out after {timeout}s")
		except Exception as e:
			result = ToolResult(success=False, error=f"{type(e).__name__}: {e}")

		if result.success:
			return result
		return ToolResult(
			success=False,
			error=(
				f"{result.error or 'unknown error'}. Check the arguments against the "
				f"tool's schema. Available tools: {', '.join(sorted(available))}"
			),
			server_id=result.server_id,
		)

	def _finalize(
		self,
		text: str,
		role: Role,
		session_id: str,
		started: float,
		tool_failures: list[dict[str, Any]],
	) -> WorkerResponse:
		elapsed = _elapsed_ms(started)
		try:
			outcome = parse_worker_response(text, role=role.name, processing_time_ms=elapsed)
		except ParseRecoveryExhausted as e:
			e.session_id = session_id
			logger.warning(f"{role.name} in {session_id} returned no usable output")
			return WorkerResponse.failed(
				role=role.name,
				error=e.to_dict(),
				processing_time_ms=elapsed,
				tool_failures=tool_failures,
			)

		logger.info(
			f"Worker {role.name} finished in {session_id} ({elapsed}ms, "
			f"status={outcome.response.metadata.completion_status.value})"
		)
		return outcome.response.with_execution_info(role.name, elapsed, tool_failures)
