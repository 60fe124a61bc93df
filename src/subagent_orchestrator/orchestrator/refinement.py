"""
Refinement Manager - Decides whether to retry a worker and how to ask.

A (session, role) pair moves through:

	scored -> passed
	scored -> needs_refinement -> (refining) -> scored ...
	scored -> exhausted | degrading | not_refinable

Attempts and score trends live in the session ledger; this module only
reads them and builds the refinement instruction.
"""

import logging
from enum import Enum
from typing import Optional

from ..models import WorkerResponse
from .ledger import RefinementState, SessionLedger, Trend
from .quality import QualityAssessment, Severity, ValidationContext

logger = logging.getLogger(__name__)

WEAK_CATEGORY_SCORE = 0.7


class RefinementStatus(str, Enum):
	PASSED = "passed"
	NEEDS_REFINEMENT = "needs_refinement"
	EXHAUSTED = "exhausted"
	DEGRADING = "degrading"
	NOT_REFINABLE = "not_refinable"


class RefinementManager:
	"""Bounded refinement decisions over a SessionLedger."""

	def __init__(self, ledger: SessionLedger, roles=None, default_cap: Optional[int] = None):
		self.ledger = ledger
		self.roles = roles
		self.default_cap = (
			default_cap if default_cap is not None else ledger.config.max_refinement_attempts
		)

	def refinement_cap(self, role: str) -> int:
		if self.roles is not None:
			return self.roles.refinement_cap_for(role, self.default_cap)
		return self.default_cap

	def status(self, assessment: QualityAssessment, session_id: str, role: str) -> RefinementStatus:
		"""Where this (session, role) pair stands after an assessment."""
		if assessment.passed:
			return RefinementStatus.PASSED
		if not assessment.can_refine:
			return RefinementStatus.NOT_REFINABLE
		state = self.ledger.get_refinement_state(session_id, role)
		if state is not None:
			if state.exhausted or state.attempt_number >= self.refinement_cap(role):
				return RefinementStatus.EXHAUSTED
			if state.trend == Trend.DEGRADING:
				return RefinementStatus.DEGRADING
		return RefinementStatus.NEEDS_REFINEMENT

	def needs_refinement(self, assessment: QualityAssessment, ctx: ValidationContext, session_id: str) -> bool:
		"""
		True iff the response failed, is refinable, the pair is under its
		attempt cap and scores are not degrading.
		"""
		role = ctx.role or assessment.role
		return self.status(assessment, session_id, role) == RefinementStatus.NEEDS_REFINEMENT

	def track_refinement_attempt(
		self,
		session_id: str,
		role: str,
		score: float,
		reason: str,
	) -> RefinementState:
		"""
		Record an attempt in the ledger.

		Raises:
			RefinementCapExceeded: If the pair is already at its cap
		"""
		return self.ledger.track_refinement_attempt(
			session_id, role, score, reason, max_attempts=self.refinement_cap(role)
		)

	def generate_refinement_prompt(
		self,
		assessment: QualityAssessment,
		ctx: ValidationContext,
		original_task: str = "",
		prior_response: Optional[WorkerResponse] = None,
	) -> str:
		"""
		Build a targeted refinement instruction.

		Quotes every failing rule, restates the requirements and asks for
		the specific missing evidence.
		"""
		failed = assessment.failed_rules
		lines = [
			"REFINEMENT REQUEST",
			f"Your previous response scored {assessment.overall_score:.2f} against a "
			f"required threshold of {assessment.threshold:.2f}. Revise it to address "
			"the issues below. Keep what was correct; fix what was not.",
			"",
		]

		weak = {c for c, score in assessment.category_scores.items() if score < WEAK_CATEGORY_SCORE}
		weak.update(r.category for r in failed if r.severity != Severity.CRITICAL)
		if weak:
			lines.append("AREAS NEEDING IMPROVEMENT:")
			for category in sorted(weak):
				score = assessment.category_scores.get(category, 0.0)
				lines.append(f"- {category} (score {score:.2f})")
			lines.append("")

		if failed:
			lines.append("SPECIFIC FEEDBACK:")
			for rule in failed:
				note = ""
				if rule.score < 0.5:
					note = " - needs significant improvement"
				elif rule.score < assessment.threshold:
					note = " - close to threshold"
				lines.append(f"- [{rule.severity.value}] {rule.rule}: {rule.feedback}{note}")
			lines.append("")

		if assessment.critical_issues:
			lines.append("CRITICAL ISSUES (must be fixed):")
			lines.extend(f"- {issue}" for issue in assessment.critical_issues)
			lines.append("")

		suggestions = list(assessment.refinement_suggestions)
		if any(r.category == "specificity" for r in failed):
			suggestions.append(
				"Provide concrete evidence: exact file paths with line numbers, the relevant "
				"code quoted verbatim, and the specific change each finding needs."
			)
		if any(r.category == "format" for r in failed):
			suggestions.append(
				"Return a single JSON object with deliverables, memory_operations and metadata sections."
			)
		if suggestions:
			lines.append("REFINEMENT SUGGESTIONS:")
			lines.extend(f"- {s}" for s in suggestions)
			lines.append("")

		if original_task.strip():
			lines.extend(["ORIGINAL TASK:", original_task.strip(), ""])

		if prior_response is not None and prior_response.deliverables.analysis.strip():
			excerpt = prior_response.deliverables.analysis.strip()
			if len(excerpt) > 1000:
				excerpt = excerpt[:1000] + "..."
			lines.extend(["PREVIOUS ANALYSIS:", excerpt, ""])

		lines.append("QUALITY REQUIREMENTS:")
		lines.append(f"- Requirements: {ctx.requirements.strip() or 'As stated in the original task.'}")
		if ctx.quality_criteria.strip():
			lines.append(f"- Quality criteria: {ctx.quality_criteria.strip()}")
		if ctx.expected_deliverables.strip():
			lines.append(f"- Expected deliverables: {ctx.expected_deliverables.strip()}")
		lines.append(f"- Minimum score: {assessment.threshold:.2f}")

		return "\n".join(lines)
