"""Tests for refinement decisions and prompts."""

import pytest

from subagent_orchestrator.errors import RefinementCapExceeded
from subagent_orchestrator.orchestrator.ledger import SessionLedger
from subagent_orchestrator.orchestrator.quality import QualityAssessment, QualityValidator, ValidationContext
from subagent_orchestrator.orchestrator.refinement import RefinementManager, RefinementStatus
from subagent_orchestrator.parsing import parse_worker_response
from subagent_orchestrator.roles import get_role_registry

from .helpers import SECURITY_REQUIREMENTS, make_config, worker_json

VAGUE = worker_json(
	analysis=(
		"The application may have security vulnerabilities and could be affected by "
		"common issues. It generally follows best practices."
	),
	recommendations=["Follow best practices"],
)


def _assess(raw: str, role: str = "Security Engineer"):
	outcome = parse_worker_response(raw)
	ctx = ValidationContext(
		requirements=SECURITY_REQUIREMENTS,
		quality_criteria="Cite evidence for every finding",
		role=role,
		missing_sections=frozenset(outcome.filled_defaults),
	)
	return QualityValidator().validate(outcome.response, ctx), ctx, outcome.response


@pytest.fixture
def ledger(tmp_path) -> SessionLedger:
	return SessionLedger(make_config(tmp_path))


class TestRefinementDecisions:
	"""Status transitions for a (session, role) pair."""

	def test_passing_response(self, ledger):
		manager = RefinementManager(ledger)
		assessment, ctx, _ = _assess(worker_json())
		sid = ledger.create_session()
		assert manager.status(assessment, sid, ctx.role) == RefinementStatus.PASSED
		assert not manager.needs_refinement(assessment, ctx, sid)

	def test_failing_response_needs_refinement(self, ledger):
		manager = RefinementManager(ledger)
		assessment, ctx, _ = _assess(VAGUE)
		sid = ledger.create_session()
		assert not assessment.passed
		assert assessment.can_refine
		assert manager.needs_refinement(assessment, ctx, sid)

	def test_never_true_after_cap(self, ledger):
		manager = RefinementManager(ledger, default_cap=2)
		assessment, ctx, _ = _assess(VAGUE)
		sid = ledger.create_session()
		manager.track_refinement_attempt(sid, ctx.role, 0.40, "vague")
		manager.track_refinement_attempt(sid, ctx.role, 0.50, "vague")
		assert manager.status(assessment, sid, ctx.role) == RefinementStatus.EXHAUSTED
		assert not manager.needs_refinement(assessment, ctx, sid)
		with pytest.raises(RefinementCapExceeded):
			manager.track_refinement_attempt(sid, ctx.role, 0.55, "vague")

	def test_degrading_trend_stops_refinement(self, ledger):
		manager = RefinementManager(ledger)
		assessment, ctx, _ = _assess(VAGUE)
		sid = ledger.create_session()
		manager.track_refinement_attempt(sid, ctx.role, 0.60, "first")
		manager.track_refinement_attempt(sid, ctx.role, 0.45, "second")
		assert manager.status(assessment, sid, ctx.role) == RefinementStatus.DEGRADING
		assert not manager.needs_refinement(assessment, ctx, sid)

	def test_not_refinable(self, ledger):
		manager = RefinementManager(ledger)
		assessment = QualityAssessment(
			overall_score=0.1,
			threshold=0.7,
			passed=False,
			category_scores={},
			rule_results=[],
			can_refine=False,
		)
		sid = ledger.create_session()
		assert manager.status(assessment, sid, "Software Engineer") == RefinementStatus.NOT_REFINABLE

	def test_role_cap_from_frontmatter(self, tmp_path):
		config = make_config(tmp_path)
		manager = RefinementManager(SessionLedger(config), get_role_registry(config))
		assert manager.refinement_cap("Test Engineer") == 2
		assert manager.refinement_cap("Security Engineer") == 3


class TestRefinementPrompt:
	"""Targeted refinement instructions."""

	def test_prompt_sections(self, ledger):
		manager = RefinementManager(ledger)
		assessment, ctx, response = _assess(VAGUE)
		prompt = manager.generate_refinement_prompt(
			assessment,
			ctx,
			original_task="Review the login flow for injection",
			prior_response=response,
		)
		assert prompt.startswith("REFINEMENT REQUEST")
		assert "required threshold of 0.80" in prompt
		assert "AREAS NEEDING IMPROVEMENT:" in prompt
		assert "- specificity (score" in prompt
		assert "SPECIFIC FEEDBACK:" in prompt
		assert "file_path_specificity" in prompt
		assert "needs significant improvement" in prompt
		assert "CRITICAL ISSUES (must be fixed):" in prompt
		assert "Provide concrete evidence" in prompt
		assert "ORIGINAL TASK:\nReview the login flow for injection" in prompt
		assert "PREVIOUS ANALYSIS:\nThe application may have security vulnerabilities" in prompt
		assert f"- Requirements: {SECURITY_REQUIREMENTS}" in prompt
		assert "- Quality criteria: Cite evidence for every finding" in prompt
		assert prompt.endswith("- Minimum score: 0.80")

	def test_format_failure_asks_for_json(self, ledger):
		manager = RefinementManager(ledger)
		assessment, ctx, _ = _assess('{"deliverables":{"analysis":"x"}}', role="Software Engineer")
		prompt = manager.generate_refinement_prompt(assessment, ctx)
		assert "Return a single JSON object" in prompt
		assert "ORIGINAL TASK:" not in prompt
		assert "PREVIOUS ANALYSIS:" not in prompt
