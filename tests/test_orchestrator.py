"""Tests for the Orchestrator delegation operations."""

import asyncio
import time

import pytest

from subagent_orchestrator.errors import (
	DuplicateAgentId,
	InvalidTaskSpecification,
	ParallelQuotaExceeded,
	ParseRecoveryExhausted,
	SessionNotFound,
	WorkerExecutionFailed,
)
from subagent_orchestrator.llm.client import OpenAICompatibleClient
from subagent_orchestrator.orchestrator import Orchestrator, build_orchestrator
from subagent_orchestrator.orchestrator.ledger import SessionLedger
from subagent_orchestrator.orchestrator.store import SessionStore
from subagent_orchestrator.roles import get_role_registry
from subagent_orchestrator.tools.provider import NullToolProvider

from .helpers import SECURITY_REQUIREMENTS, FakeCompletionClient, answer, make_config, worker_json

VAGUE = worker_json(
	analysis=(
		"The application may have security vulnerabilities and could be affected by "
		"common issues. It generally follows best practices."
	),
	recommendations=["Follow best practices"],
)


def _orchestrator(tmp_path, completion=None, **overrides) -> Orchestrator:
	config = make_config(tmp_path, **overrides)
	return Orchestrator(
		config=config,
		roles=get_role_registry(config),
		completion=completion,
		tools=NullToolProvider(),
	)


async def _slow_answer(messages):
	await asyncio.sleep(0.3)
	return answer(worker_json())


class TestSpawnAgent:
	"""Single delegation."""

	@pytest.mark.asyncio
	async def test_new_session(self, tmp_path):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient([answer(worker_json())]))
		result = await orchestrator.spawn_agent(
			"Security Engineer",
			"Review the login flow for injection",
			context="Flask application",
		)

		assert result.success
		assert result.session_id != result.agent_session_id
		stats = orchestrator.get_session_stats(result.session_id)
		assert stats["total_calls"] == 1
		assert stats["agent_type_calls"] == {"Security Engineer": 1}
		assert orchestrator.get_session_stats(result.agent_session_id)["parent_id"] == result.session_id
		assert result.to_dict()["response"]["metadata"]["role"] == "Security Engineer"

	@pytest.mark.asyncio
	async def test_existing_session_is_charged(self, tmp_path):
		completion = FakeCompletionClient(responder=lambda messages: answer(worker_json()))
		orchestrator = _orchestrator(tmp_path, completion)
		first = await orchestrator.spawn_agent("Security Engineer", "Review the login flow")
		second = await orchestrator.spawn_agent("Test Engineer", "Find untested login paths", session_id=first.session_id)
		assert second.session_id == first.session_id
		assert orchestrator.get_session_stats(first.session_id)["total_calls"] == 2

	@pytest.mark.asyncio
	async def test_unknown_session(self, tmp_path):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient())
		with pytest.raises(SessionNotFound):
			await orchestrator.spawn_agent("Security Engineer", "Review the login flow", session_id="session-missing")

	@pytest.mark.asyncio
	async def test_capacity_released_after_spawn(self, tmp_path):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient([answer(worker_json())]))
		await orchestrator.spawn_agent("Security Engineer", "Review the login flow")
		assert orchestrator.get_session_stats()["active_agents"] == 0


class TestSpawnAgentsParallel:
	"""Parallel batches."""

	@pytest.mark.asyncio
	async def test_partial_success_runs_concurrently(self, tmp_path):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient(responder=_slow_answer))
		started = time.monotonic()
		batch = await orchestrator.spawn_agents_parallel([
			{"agent_id": "security", "role": "Security Engineer", "task": "Review the login flow"},
			{"agent_id": "tests", "role": "Test Engineer", "task": "Find untested login paths"},
			{"agent_id": "wizard", "role": "Wizard", "task": "Cast a spell on the login flow"},
		], coordination_context="Three reviewers share one codebase")
		elapsed = time.monotonic() - started

		assert batch.total_agents == 3
		assert batch.successful == 2
		assert batch.failed == 1
		assert batch.partial_success
		assert not batch.all_successful
		assert not batch.total_failure
		# Two members take 0.3s each; run serially they would take 0.6s
		assert elapsed < 0.55
		assert batch.slowest_ms >= 290

		by_id = {r.agent_id: r for r in batch.results}
		assert [r.agent_id for r in batch.results] == ["security", "tests", "wizard"]
		assert by_id["wizard"].success is False
		assert by_id["wizard"].error["type"] == "role_not_found"
		assert by_id["security"].response.metadata.role == "Security Engineer"

		summary = batch.to_dict()["summary"]
		assert summary["partial_success"] is True
		assert summary["all_successful"] is False

	@pytest.mark.asyncio
	async def test_members_get_separate_sessions(self, tmp_path):
		completion = FakeCompletionClient(responder=lambda messages: answer(worker_json()))
		orchestrator = _orchestrator(tmp_path, completion)
		batch = await orchestrator.spawn_agents_parallel([
			{"role": "Security Engineer", "task": "Review the login flow"},
			{"role": "Security Engineer", "task": "Review the login flow"},
			{"role": "Security Engineer", "task": "Review the login flow"},
		])

		assert [r.agent_id for r in batch.results] == ["agent_1", "agent_2", "agent_3"]
		# Identical tasks in one batch are not a delegation loop
		assert batch.all_successful
		sessions = {r.agent_session_id for r in batch.results}
		assert len(sessions) == 3
		for result in batch.results:
			worker = orchestrator.ledger.get_session(result.agent_session_id)
			member = orchestrator.ledger.get_session(worker.parent_id)
			assert worker.depth == 2
			assert member.parent_id == batch.coordinator_session_id

	@pytest.mark.asyncio
	async def test_coordination_context_reaches_workers(self, tmp_path):
		completion = FakeCompletionClient(responder=lambda messages: answer(worker_json()))
		orchestrator = _orchestrator(tmp_path, completion)
		await orchestrator.spawn_agents_parallel(
			[{"role": "Security Engineer", "task": "Review the login flow"}],
			coordination_context="Another agent covers the payment flow",
		)
		assert "Another agent covers the payment flow" in completion.calls[0][0].content

	@pytest.mark.asyncio
	async def test_duplicate_agent_ids(self, tmp_path):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient())
		with pytest.raises(DuplicateAgentId) as exc_info:
			await orchestrator.spawn_agents_parallel([
				{"agent_id": "a", "role": "Security Engineer", "task": "Review auth"},
				{"agent_id": "a", "role": "Test Engineer", "task": "Review tests"},
			])
		assert exc_info.value.details["agent_id"] == "a"

	@pytest.mark.asyncio
	@pytest.mark.parametrize("count", [0, 6])
	async def test_batch_size_limits(self, tmp_path, count):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient())
		agents = [{"role": "Security Engineer", "task": f"Review module {i}"} for i in range(count)]
		with pytest.raises(ParallelQuotaExceeded):
			await orchestrator.spawn_agents_parallel(agents)

	@pytest.mark.asyncio
	async def test_global_capacity(self, tmp_path):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient(), max_concurrent_agents=2)
		agents = [{"role": "Security Engineer", "task": f"Review module {i}"} for i in range(3)]
		with pytest.raises(ParallelQuotaExceeded) as exc_info:
			await orchestrator.spawn_agents_parallel(agents)
		assert exc_info.value.details["max_concurrent_agents"] == 2

	@pytest.mark.asyncio
	async def test_non_object_entry(self, tmp_path):
		orchestrator = _orchestrator(tmp_path, FakeCompletionClient())
		with pytest.raises(InvalidTaskSpecification):
			await orchestrator.spawn_agents_parallel(["Review auth"])


class TestValidateOutput:
	"""Scoring and refinement decisions for raw output."""

	def test_missing_metadata_still_assessed(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		result = orchestrator.validate_output('{"deliverables":{"analysis":"x"}}', "req", "criteria")

		assert result.format_validation["metadata_complete"] is False
		assert result.format_validation["deliverables_present"] is True
		assert result.format_validation["memory_operations_present"] is False
		assert result.format_validation["strategies"] == ["direct"]
		assert not result.assessment.passed
		assert result.to_dict()["passed"] is False

	def test_passing_output(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		result = orchestrator.validate_output(worker_json(), SECURITY_REQUIREMENTS, "Cite evidence")
		assert result.assessment.passed
		assert result.refinement["status"] == "passed"
		assert result.refinement["needs_refinement"] is False
		assert "prompt" not in result.refinement

	def test_refinement_until_cap(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		first = orchestrator.validate_output(VAGUE, SECURITY_REQUIREMENTS, "Cite evidence", role="Security Engineer")
		session_id = first.session_id

		assert first.refinement["needs_refinement"] is True
		assert first.refinement["max_attempts"] == 3
		assert first.refinement["state"]["attempt_number"] == 1
		assert first.refinement["prompt"].startswith("REFINEMENT REQUEST")

		for attempt in (2, 3):
			result = orchestrator.validate_output(
				VAGUE, SECURITY_REQUIREMENTS, "Cite evidence", role="Security Engineer", session_id=session_id,
			)
			assert result.refinement["state"]["attempt_number"] == attempt

		exhausted = orchestrator.validate_output(
			VAGUE, SECURITY_REQUIREMENTS, "Cite evidence", role="Security Engineer", session_id=session_id,
		)
		assert exhausted.refinement["status"] == "exhausted"
		assert exhausted.refinement["needs_refinement"] is False
		assert orchestrator.get_session_stats(session_id)["refinement_counts"] == {"Security Engineer": 3}

	def test_refinement_disabled(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		result = orchestrator.validate_output(VAGUE, SECURITY_REQUIREMENTS, "", enable_refinement=False)
		assert result.refinement == {"enabled": False, "status": "disabled", "needs_refinement": False}

	def test_role_taken_from_output(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		result = orchestrator.validate_output(worker_json(role="Test Engineer"), "Find untested paths", "")
		assert result.assessment.role == "Test Engineer"
		assert result.assessment.threshold == 0.75

	def test_unknown_session(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		with pytest.raises(SessionNotFound):
			orchestrator.validate_output(worker_json(), "req", "", session_id="session-missing")

	def test_blank_output(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		with pytest.raises(ParseRecoveryExhausted):
			orchestrator.validate_output("  ", "req", "")


class TestLifecycle:
	"""Stats, roles and wiring."""

	def test_global_stats(self, tmp_path):
		orchestrator = _orchestrator(tmp_path)
		orchestrator.validate_output(worker_json(), "req", "")
		stats = orchestrator.get_session_stats()
		assert stats["active_sessions"] == 1
		assert stats["active_agents"] == 0

	def test_list_roles(self, tmp_path):
		names = [r["name"] for r in _orchestrator(tmp_path).list_roles()]
		assert "Security Engineer" in names

	@pytest.mark.asyncio
	async def test_aclose(self, tmp_path):
		completion = FakeCompletionClient()
		orchestrator = _orchestrator(tmp_path, completion)
		await orchestrator.aclose()
		assert completion.closed

	@pytest.mark.asyncio
	async def test_build_orchestrator(self, tmp_path):
		config = make_config(tmp_path, persist_sessions=True)
		orchestrator = build_orchestrator(config)
		try:
			assert isinstance(orchestrator.completion, OpenAICompatibleClient)
			assert isinstance(orchestrator.tools, NullToolProvider)
			assert isinstance(orchestrator.ledger.store, SessionStore)
		finally:
			await orchestrator.aclose()

	@pytest.mark.asyncio
	async def test_snapshots_flushed_after_spawn(self, tmp_path):
		config = make_config(tmp_path)
		store = SessionStore(tmp_path / "sessions.db")
		orchestrator = Orchestrator(
			config=config,
			roles=get_role_registry(config),
			completion=FakeCompletionClient([answer(worker_json())]),
			tools=NullToolProvider(),
			ledger=SessionLedger(config, store=store),
		)
		result = await orchestrator.spawn_agent("Security Engineer", "Review the login flow")

		snapshot = store.get(result.session_id)
		assert snapshot is not None
		assert snapshot.call_count == 1
		assert store.get(result.agent_session_id).parent_id == result.session_id

	@pytest.mark.asyncio
	async def test_build_orchestrator_without_api_key(self, tmp_path):
		orchestrator = build_orchestrator(make_config(tmp_path, api_key=""))
		assert orchestrator.completion is None
		with pytest.raises(WorkerExecutionFailed) as exc_info:
			await orchestrator.spawn_agent("Security Engineer", "Review the login flow")
		assert exc_info.value.remediation
