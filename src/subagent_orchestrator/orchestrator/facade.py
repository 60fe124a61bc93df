"""
Orchestrator - The externally visible delegation operations.

One Orchestrator per process holds the ledger, role registry and the two
external collaborators (completion API and tool layer). Nothing here is
module-global; callers build it with build_orchestrator() or pass their
own collaborators (tests do).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import Config
from ..errors import DuplicateAgentId, InvalidTaskSpecification, RefinementCapExceeded
from ..llm.client import CompletionClient, OpenAICompatibleClient
from ..models import WorkerResponse
from ..parsing import parse_worker_response
from ..roles import RoleRegistry, get_role_registry
from ..tools.provider import MCPToolProvider, NullToolProvider, ToolProvider, load_tool_servers
from .batch import BatchItem, BatchProcessor, BatchStatus
from .ledger import SessionLedger
from .quality import QualityAssessment, QualityValidator, ValidationContext
from .refinement import RefinementManager, RefinementStatus
from .spawner import SpawnController, SpawnRequest
from .store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SpawnResult:
	"""Outcome of a single delegation."""
	response: WorkerResponse
	session_id: str
	agent_session_id: str
	elapsed_ms: int

	@property
	def success(self) -> bool:
		return not self.response.is_failed

	def to_dict(self) -> dict[str, Any]:
		return {
			"success": self.success,
			"session_id": self.session_id,
			"agent_session_id": self.agent_session_id,
			"elapsed_ms": self.elapsed_ms,
			"response": self.response.to_dict(),
		}


@dataclass
class AgentResult:
	"""One member of a parallel batch."""
	agent_id: str
	role: str
	success: bool
	elapsed_ms: int
	agent_session_id: Optional[str] = None
	response: Optional[WorkerResponse] = None
	error: Optional[dict[str, Any]] = None

	def to_dict(self) -> dict[str, Any]:
		data: dict[str, Any] = {
			"agent_id": self.agent_id,
			"role": self.role,
			"success": self.success,
			"elapsed_ms": self.elapsed_ms,
			"agent_session_id": self.agent_session_id,
		}
		if self.response is not None:
			data["response"] = self.response.to_dict()
		if self.error is not None:
			data["error"] = self.error
		return data


@dataclass
class ParallelBatchResult:
	"""Joined result of a parallel batch."""
	coordinator_session_id: str
	total_agents: int
	successful: int
	failed: int
	total_execution_time_ms: int
	results: list[AgentResult] = field(default_factory=list)
	fastest_ms: int = 0
	slowest_ms: int = 0
	average_ms: float = 0.0

	@property
	def all_successful(self) -> bool:
		return self.failed == 0

	@property
	def partial_success(self) -> bool:
		return self.successful > 0 and self.failed > 0

	@property
	def total_failure(self) -> bool:
		return self.successful == 0

	def to_dict(self) -> dict[str, Any]:
		return {
			"coordinator_session_id": self.coordinator_session_id,
			"total_agents": self.total_agents,
			"successful": self.successful,
			"failed": self.failed,
			"total_execution_time_ms": self.total_execution_time_ms,
			"results": [r.to_dict() for r in self.results],
			"summary": {
				"all_successful": self.all_successful,
				"partial_success": self.partial_success,
				"total_failure": self.total_failure,
				"fastest_ms": self.fastest_ms,
				"slowest_ms": self.slowest_ms,
				"average_ms": self.average_ms,
			},
		}


@dataclass
class ValidationResult:
	"""Scoring detail for one raw worker output."""
	session_id: str
	response: WorkerResponse
	assessment: QualityAssessment
	format_validation: dict[str, Any]
	refinement: dict[str, Any]

	def to_dict(self) -> dict[str, Any]:
		return {
			"session_id": self.session_id,
			"passed": self.assessment.passed,
			"assessment": self.assessment.to_dict(),
			"format_validation": self.format_validation,
			"refinement": self.refinement,
			"response": self.response.to_dict(),
		}


class Orchestrator:
	"""
	Delegation entry points: spawn one, spawn a batch, validate output.

	Every operation either returns its result type or raises an
	OrchestratorError subclass; batch members never raise into the batch.
	"""

	def __init__(
		self,
		config: Config,
		roles: RoleRegistry,
		completion: Optional[CompletionClient],
		tools: ToolProvider,
		ledger: Optional[SessionLedger] = None,
	):
		self.config = config
		self.roles = roles
		self.completion = completion
		self.tools = tools
		self.ledger = ledger or SessionLedger(config)
		self.controller = SpawnController(config, self.ledger, roles, completion, tools)
		self.validator = QualityValidator(roles, default_threshold=config.quality_threshold)
		self.refinements = RefinementManager(self.ledger, roles, config.max_refinement_attempts)

	async def spawn_agent(
		self,
		role: str,
		task: str,
		context: str = "",
		expected_deliverables: str = "",
		session_id: Optional[str] = None,
		refinement: bool = False,
	) -> SpawnResult:
		"""
		Delegate one task to one worker.

		Args:
			role: Role name
			task: What the worker should achieve
			context: Background the worker needs
			expected_deliverables: What the answer should contain
			session_id: Delegation chain to charge; a new one is created if omitted
			refinement: Whether this call retries an earlier attempt

		Raises:
			OrchestratorError: Any limit, specification or execution failure
		"""
		self.ledger.cleanup_expired()
		if session_id is None:
			session_id = self.ledger.create_session(is_sub_agent=False)

		request = SpawnRequest(
			role=role,
			task=task,
			context=context,
			expected_deliverables=expected_deliverables,
		)
		started = time.monotonic()
		try:
			with self.ledger.reserve_agents(1, session_id=session_id):
				response, agent_session = await self.controller.run(request, session_id, is_refinement=refinement)
		finally:
			await self.flush_snapshots()

		return SpawnResult(
			response=response,
			session_id=session_id,
			agent_session_id=agent_session,
			elapsed_ms=int((time.monotonic() - started) * 1000),
		)

	async def spawn_agents_parallel(
		self,
		agents: list[dict[str, Any]],
		coordination_context: str = "",
	) -> ParallelBatchResult:
		"""
		Run up to max_parallel_agents workers concurrently.

		Each agent is {"agent_id", "role", "task", "context", "expected_deliverables"}.
		A coordinator session owns the batch; each member runs in its own
		child session so members never share quota or loop counters.

		Raises:
			ParallelQuotaExceeded: If the batch size is out of range or
				global capacity is exhausted
			DuplicateAgentId: If agent ids repeat
			InvalidTaskSpecification: If an entry is not an object
		"""
		block = self.ledger.parallel_block_reason(len(agents))
		if block is not None:
			raise block

		requests: list[tuple[str, SpawnRequest]] = []
		seen: set[str] = set()
		for index, spec in enumerate(agents):
			if not isinstance(spec, dict):
				raise InvalidTaskSpecification(
					f"Agent entry {index} is not an object",
					details={"index": index},
				)
			agent_id = str(spec.get("agent_id") or f"agent_{index + 1}")
			if agent_id in seen:
				raise DuplicateAgentId(
					f"Duplicate agent_id: {agent_id}",
					details={"agent_id": agent_id, "agent_ids": [str(a.get("agent_id")) for a in agents if isinstance(a, dict)]},
				)
			seen.add(agent_id)
			requests.append((agent_id, SpawnRequest(
				role=str(spec.get("role", "")),
				task=str(spec.get("task", "")),
				context=str(spec.get("context", "")),
				expected_deliverables=str(spec.get("expected_deliverables", "")),
				coordination_context=coordination_context,
			)))

		self.ledger.cleanup_expired()
		coordinator = self.ledger.create_session(is_sub_agent=False)
		logger.info(f"Parallel batch of {len(requests)} agents in {coordinator}")

		async def run_member(item: BatchItem[SpawnRequest]) -> tuple[WorkerResponse, str]:
			member_session = self.ledger.create_session(is_sub_agent=True, parent_id=coordinator)
			return await self.controller.run(item.data, member_session)

		processor: BatchProcessor[SpawnRequest, tuple[WorkerResponse, str]] = BatchProcessor(
			max_concurrency=self.config.max_parallel_agents,
		)
		try:
			with self.ledger.reserve_agents(len(requests), session_id=coordinator):
				summary = await processor.execute(
					[BatchItem(id=agent_id, data=request) for agent_id, request in requests],
					run_member,
					is_success=lambda result: not result[0].is_failed,
				)
		finally:
			await self.flush_snapshots()

		results = []
		for (agent_id, request), member in zip(requests, summary.results):
			response, agent_session = member.result if member.result is not None else (None, None)
			error = member.error
			if error is None and response is not None and response.is_failed:
				error = response.error
			results.append(AgentResult(
				agent_id=agent_id,
				role=request.role,
				success=member.success,
				elapsed_ms=member.elapsed_ms,
				agent_session_id=agent_session,
				response=response,
				error=error,
			))

		batch = ParallelBatchResult(
			coordinator_session_id=coordinator,
			total_agents=summary.total,
			successful=summary.succeeded,
			failed=summary.failed,
			total_execution_time_ms=summary.total_elapsed_ms,
			results=results,
			fastest_ms=summary.fastest_ms,
			slowest_ms=summary.slowest_ms,
			average_ms=summary.average_ms,
		)
		log = logger.info if summary.status == BatchStatus.COMPLETED else logger.warning
		log(
			f"Batch {coordinator} finished: {summary.succeeded}/{summary.total} succeeded "
			f"in {summary.total_elapsed_ms}ms"
		)
		return batch

	def validate_output(
		self,
		raw: str,
		requirements: str,
		quality_criteria: str,
		role: Optional[str] = None,
		session_id: Optional[str] = None,
		enable_refinement: bool = True,
		expected_deliverables: str = "",
		original_task: str = "",
	) -> ValidationResult:
		"""
		Parse raw worker output, score it and decide on refinement.

		Raises:
			ParseRecoveryExhausted: If raw is not text or is blank
			SessionNotFound: If session_id is given but unknown
		"""
		if session_id is None:
			session_id = self.ledger.create_session(is_sub_agent=False)
		else:
			self.ledger.get_session(session_id)

		outcome = parse_worker_response(raw, role=role or "")
		response = outcome.response
		role_name = role or response.metadata.role
		ctx = ValidationContext(
			requirements=requirements,
			quality_criteria=quality_criteria,
			role=role_name,
			expected_deliverables=expected_deliverables,
			missing_sections=frozenset(outcome.filled_defaults),
			session_id=session_id,
		)
		assessment = self.validator.validate(response, ctx)

		format_validation = {
			"deliverables_present": "deliverables" not in outcome.filled_defaults,
			"metadata_complete": "metadata" not in outcome.filled_defaults,
			"memory_operations_present": "memory_operations" not in outcome.filled_defaults,
			"strategies": list(outcome.strategies),
			"filled_defaults": list(outcome.filled_defaults),
			"recovered": outcome.recovered,
		}

		refinement = self._refinement_decision(
			assessment, ctx, session_id, enable_refinement, original_task, response,
		)
		return ValidationResult(
			session_id=session_id,
			response=response,
			assessment=assessment,
			format_validation=format_validation,
			refinement=refinement,
		)

	def _refinement_decision(
		self,
		assessment: QualityAssessment,
		ctx: ValidationContext,
		session_id: str,
		enabled: bool,
		original_task: str,
		response: WorkerResponse,
	) -> dict[str, Any]:
		if not enabled:
			return {"enabled": False, "status": "disabled", "needs_refinement": False}

		status = self.refinements.status(assessment, session_id, ctx.role)
		decision: dict[str, Any] = {
			"enabled": True,
			"status": status.value,
			"needs_refinement": status == RefinementStatus.NEEDS_REFINEMENT,
			"max_attempts": self.refinements.refinement_cap(ctx.role),
		}
		if status == RefinementStatus.NEEDS_REFINEMENT:
			reason = "; ".join(r.rule for r in assessment.failed_rules) or "below threshold"
			try:
				state = self.refinements.track_refinement_attempt(
					session_id, ctx.role, assessment.overall_score, reason,
				)
			except RefinementCapExceeded as e:
				decision.update(status=RefinementStatus.EXHAUSTED.value, needs_refinement=False, error=e.to_dict())
			else:
				decision["prompt"] = self.refinements.generate_refinement_prompt(
					assessment, ctx, original_task=original_task, prior_response=response,
				)
				decision["state"] = state.to_dict()
		else:
			state = self.ledger.get_refinement_state(session_id, ctx.role)
			if state is not None:
				decision["state"] = state.to_dict()
		return decision

	def get_session_stats(self, session_id: Optional[str] = None) -> dict[str, Any]:
		"""
		Stats for one session, or global stats when session_id is omitted.

		Raises:
			SessionNotFound: If session_id is unknown
		"""
		if session_id:
			return self.ledger.get_session_stats(session_id)
		return self.ledger.get_global_stats()

	def list_roles(self) -> list[dict[str, Any]]:
		return self.roles.list_roles()

	async def flush_snapshots(self) -> None:
		"""Write queued session snapshots without blocking the event loop."""
		if self.ledger.store is not None:
			await asyncio.to_thread(self.ledger.flush_snapshots)

	async def aclose(self) -> None:
		"""Close collaborators that hold connections."""
		await self.flush_snapshots()
		for collaborator in (self.tools, self.completion):
			close = getattr(collaborator, "aclose", None)
			if close is None:
				continue
			try:
				await close()
			except Exception as e:
				logger.warning(f"Error closing {type(collaborator).__name__}: {e}")


def build_orchestrator(config: Config) -> Orchestrator:
	"""
	Wire the production collaborators from config.

	Without an API key the orchestrator still validates output and reports
	stats; spawns fail with WorkerExecutionFailed.
	"""
	roles = get_role_registry(config)
	servers = load_tool_servers(config)
	tools: ToolProvider = MCPToolProvider(servers) if servers else NullToolProvider()
	store = SessionStore(config.sessions_db_path) if config.persist_sessions else None
	completion: Optional[CompletionClient] = None
	if config.api_key:
		completion = OpenAICompatibleClient.from_config(config)
	else:
		logger.warning("No API key configured; spawn_agent and spawn_agents_parallel will fail until one is set")
	return Orchestrator(
		config=config,
		roles=roles,
		completion=completion,
		tools=tools,
		ledger=SessionLedger(config, store=store),
	)
