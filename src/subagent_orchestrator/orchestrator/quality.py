"""
Quality Validator - Rule-based scoring of worker responses.

Each rule scores one aspect of a response on a 0-100 scale against its
own pass mark; results are reported on a 0-1 scale. Rules are grouped
into categories, category scores are the mean of their rules, and the
overall score is the category scores weighted by their rules' weights.

A response passes when the overall score meets the role's threshold and
no critical rule failed.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ..models import CompletionStatus, ConfidenceLevel, WorkerResponse
from ..roles import ROLE_THRESHOLDS

logger = logging.getLogger(__name__)


class Severity(str, Enum):
	"""How much a failed rule matters."""
	CRITICAL = "critical"
	IMPORTANT = "important"
	MINOR = "minor"


@dataclass
class RuleResult:
	"""Outcome of one quality rule."""
	rule: str
	category: str
	passed: bool
	score: float
	severity: Severity
	feedback: str
	weight: float = 0.0

	def to_dict(self) -> dict[str, Any]:
		return {
			"rule": self.rule,
			"category": self.category,
			"passed": self.passed,
			"score": round(self.score, 3),
			"severity": self.severity.value,
			"feedback": self.feedback,
		}


@dataclass
class ValidationContext:
	"""What a response is judged against."""
	requirements: str = ""
	quality_criteria: str = ""
	role: str = ""
	expected_deliverables: str = ""
	# Sections absent from the raw output and filled with defaults by the parser
	missing_sections: frozenset[str] = frozenset()
	session_id: Optional[str] = None


@dataclass
class QualityAssessment:
	"""Scored evaluation of one response."""
	overall_score: float
	threshold: float
	passed: bool
	category_scores: dict[str, float]
	rule_results: list[RuleResult]
	critical_issues: list[str] = field(default_factory=list)
	recommendations: list[str] = field(default_factory=list)
	refinement_suggestions: list[str] = field(default_factory=list)
	can_refine: bool = False
	confidence: str = "low"
	role: str = ""

	@property
	def failed_rules(self) -> list[RuleResult]:
		return [r for r in self.rule_results if not r.passed]

	def to_dict(self) -> dict[str, Any]:
		return {
			"overall_score": round(self.overall_score, 3),
			"threshold": self.threshold,
			"passed": self.passed,
			"category_scores": {k: round(v, 3) for k, v in self.category_scores.items()},
			"rule_results": [r.to_dict() for r in self.rule_results],
			"critical_issues": list(self.critical_issues),
			"recommendations": list(self.recommendations),
			"refinement_suggestions": list(self.refinement_suggestions),
			"can_refine": self.can_refine,
			"confidence": self.confidence,
			"role": self.role,
		}


# (score 0-100, passed, severity, feedback)
RuleOutcome = tuple[int, bool, Severity, str]


@dataclass(frozen=True)
class QualityRule:
	name: str
	category: str
	weight: float
	check: Callable[[WorkerResponse, ValidationContext], RuleOutcome]


# Roles whose output is expected to point at concrete code
FILE_REFERENCE_ROLES = frozenset({
	"Security Engineer",
	"Software Engineer",
	"DevOps Engineer",
	"Database Architect",
	"Test Engineer",
})
CODE_SNIPPET_ROLES = frozenset({
	"Security Engineer",
	"Software Engineer",
	"DevOps Engineer",
	"Database Architect",
})

ROLE_GUIDANCE = {
	"Security Engineer": "Tie each finding to a vulnerable file and line, with a CWE or OWASP reference where one applies.",
	"Software Engineer": "Reference the functions and modules involved and show the proposed code change.",
	"Software Architect": "Name the components and interfaces affected and the trade-offs of each option.",
	"Database Architect": "Include the schema, index or query changes as SQL.",
	"Test Engineer": "Name the untested code paths and the test cases that would cover them.",
	"DevOps Engineer": "Reference the pipeline or infrastructure files and the exact configuration changes.",
	"Technical Writer": "Point to the documents and sections that need to change.",
}

FILE_PATH_PATTERNS = tuple(re.compile(p) for p in (
	r"[a-zA-Z0-9_-]+/[a-zA-Z0-9_/-]+\.[a-zA-Z0-9]+",
	r"src/[a-zA-Z0-9_/-]+",
	r"config/[a-zA-Z0-9_/-]+",
	r"\./[a-zA-Z0-9_/.-]+",
	r"/[a-zA-Z0-9_/-]+\.[a-zA-Z0-9]+",
))
LINE_REFERENCE_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
	r"line\s+\d+",
	r"lines?\s+\d+(?:-\d+)?",
	r":\d+\b",
))
DIRECTORY_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
	r"\bsrc/",
	r"\bcomponents?/",
	r"\butils?/",
	r"\bservices?/",
))
CODE_PATTERNS = tuple(re.compile(p, re.IGNORECASE | re.DOTALL) for p in (
	r"```.*?```",
	r"`[^`\n]+`",
	r"\{[^{}\n]*\}",
	r"\b(?:function|class|const|def|if)\s+\w+",
	r"\bSELECT\b.+?\bFROM\b",
	r"\bCREATE\s+TABLE\b",
))
GENERIC_CODE_TERMS = ("example", "pseudo", "sample", "template", "placeholder")
VAGUE_TERMS = (
	"security vulnerabilities", "performance issues", "best practices",
	"code quality", "optimization opportunities", "potential problems",
	"may have", "could be", "might contain", "generally", "typically",
	"standard practices", "common issues", "usual problems",
)
TECHNICAL_TERMS = (
	"algorithm", "function", "method", "variable", "parameter", "injection",
	"xss", "csrf", "jwt", "sql", "nosql", "middleware", "controller",
	"service", "repository", "index", "query", "schema", "migration",
	"constraint", "dependency", "import", "export", "configuration",
)
ACTIONABLE_INDICATORS = (
	"change line", "modify function", "update configuration", "add validation",
	"remove code", "refactor method", "fix query", "update schema", "install package",
)


def _response_text(response: WorkerResponse) -> str:
	d = response.deliverables
	return "\n".join([d.analysis, *d.recommendations, d.technical_details])


def _requirement_words(ctx: ValidationContext) -> set[str]:
	return {w for w in re.findall(r"[a-z0-9_]+", ctx.requirements.lower()) if len(w) > 3}


# Rules

def check_format_compliance(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	score = 0
	missing = []
	for section, points in (("deliverables", 40), ("memory_operations", 30), ("metadata", 30)):
		if section in ctx.missing_sections:
			missing.append(section)
		else:
			score += points
	passed = score >= 80
	severity = Severity.CRITICAL if score < 50 else Severity.IMPORTANT
	feedback = (
		"Response follows the required structure" if not missing
		else f"Response is missing required sections: {', '.join(missing)}"
	)
	return score, passed, severity, feedback


def check_deliverables_completeness(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	d = response.deliverables
	score = 0
	gaps = []
	if len(d.analysis.strip()) > 100:
		score += 40
	else:
		gaps.append("a substantive analysis (over 100 characters)")
	if d.recommendations:
		score += 30
	else:
		gaps.append("recommendations")
	if d.documents or "documents" not in ctx.expected_deliverables.lower():
		score += 30
	else:
		gaps.append("the expected documents")
	passed = score >= 70
	severity = Severity.CRITICAL if score < 40 else Severity.IMPORTANT
	feedback = "All deliverables are present" if not gaps else f"Deliverables lack {', '.join(gaps)}"
	return score, passed, severity, feedback


def check_memory_operations(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	ops = response.memory_operations
	if not ops:
		return 20, False, Severity.MINOR, "No memory operations proposed; record key findings as entities"
	valid = sum(1 for op in ops if op.is_valid)
	score = round(valid / len(ops) * 100)
	passed = score >= 80
	severity = Severity.IMPORTANT if score < 50 else Severity.MINOR
	invalid = [op.operation or "<empty>" for op in ops if not op.is_valid]
	feedback = (
		f"All {len(ops)} memory operations are valid" if not invalid
		else f"{len(invalid)} of {len(ops)} memory operations are invalid: {', '.join(invalid)}"
	)
	return score, passed, severity, feedback


def check_task_completion(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	meta = response.metadata
	score = {CompletionStatus.COMPLETE: 50, CompletionStatus.PARTIAL: 30}.get(meta.completion_status, 0)
	score += {
		ConfidenceLevel.HIGH: 30,
		ConfidenceLevel.MEDIUM: 20,
		ConfidenceLevel.LOW: 10,
	}.get(meta.confidence_level, 0)
	if 0 < meta.processing_time_ms < 300_000:
		score += 20
	passed = score >= 70
	severity = Severity.IMPORTANT if score < 40 else Severity.MINOR
	feedback = (
		f"Task reported {meta.completion_status.value} with "
		f"{meta.confidence_level.value} confidence"
	)
	return score, passed, severity, feedback


def check_response_quality(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	d = response.deliverables
	score = 0
	if len(d.analysis) > 500:
		score += 30
	elif len(d.analysis) > 200:
		score += 20

	if len(d.recommendations) >= 3:
		score += 25
	elif d.recommendations:
		score += 15

	words = _requirement_words(ctx)
	if words:
		text = (d.analysis + " " + " ".join(d.recommendations)).lower()
		alignment = sum(1 for w in words if w in text) / len(words)
	else:
		alignment = 1.0
	score += round(alignment * 45)

	passed = score >= 70
	if passed:
		feedback = "Content is detailed and addresses the requirements"
	elif alignment < 0.5:
		feedback = f"Content addresses only {alignment:.0%} of the stated requirements"
	else:
		feedback = "Content needs more depth: expand the analysis and give at least 3 recommendations"
	return score, passed, Severity.IMPORTANT, feedback


def check_file_path_specificity(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	if ctx.role not in FILE_REFERENCE_ROLES:
		return 100, True, Severity.MINOR, "File references not required for this role"

	text = _response_text(response)
	paths = set()
	for pattern in FILE_PATH_PATTERNS:
		paths.update(pattern.findall(text))
	score = 0
	if len(paths) >= 3:
		score += 50
	elif paths:
		score += 25
	has_lines = any(p.search(text) for p in LINE_REFERENCE_PATTERNS)
	if has_lines:
		score += 30
	if any(p.search(text) for p in DIRECTORY_PATTERNS):
		score += 20

	passed = score >= 50
	severity = Severity.CRITICAL if score < 25 else Severity.IMPORTANT
	if passed:
		feedback = f"References {len(paths)} specific files"
	elif not paths:
		feedback = "No file paths referenced; cite the exact files (e.g. src/auth/login.py) behind each finding"
	else:
		feedback = "Add line numbers and more file references to locate each finding"
	return score, passed, severity, feedback


def check_code_snippets(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	if ctx.role not in CODE_SNIPPET_ROLES:
		return 100, True, Severity.MINOR, "Code snippets not required for this role"

	text = _response_text(response)
	matches = sum(len(p.findall(text)) for p in CODE_PATTERNS)
	score = 0
	if matches >= 3:
		score += 60
	elif matches:
		score += 30
	lowered = text.lower()
	generic = [t for t in GENERIC_CODE_TERMS if t in lowered]
	score += 20 if generic else 40

	passed = score >= 50
	severity = Severity.CRITICAL if score < 30 else Severity.IMPORTANT
	if passed:
		feedback = "Includes concrete code"
	elif not matches:
		feedback = "No code included; show the actual vulnerable or proposed code"
	else:
		feedback = f"Code reads as illustrative ({', '.join(generic)}); quote the actual code"
	return score, passed, severity, feedback


def check_analysis_depth(response: WorkerResponse, ctx: ValidationContext) -> RuleOutcome:
	if ctx.role not in FILE_REFERENCE_ROLES:
		return 100, True, Severity.MINOR, "Technical depth not assessed for this role"

	text = _response_text(response).lower()
	vague = [t for t in VAGUE_TERMS if t in text]
	technical = [t for t in TECHNICAL_TERMS if re.search(rf"\b{re.escape(t)}\b", text)]
	actionable = [t for t in ACTIONABLE_INDICATORS if t in text]

	score = 0
	if len(vague) <= 2:
		score += 40
	elif len(vague) <= 5:
		score += 20
	if len(technical) >= 5:
		score += 40
	elif len(technical) >= 3:
		score += 25
	if len(actionable) >= 2:
		score += 20
	elif actionable:
		score += 10

	passed = score >= 60
	severity = Severity.CRITICAL if score < 40 else Severity.IMPORTANT
	if passed:
		feedback = "Analysis is concrete and actionable"
	elif len(vague) > 2:
		feedback = f"Replace vague wording ({', '.join(vague[:3])}) with specific findings"
	else:
		feedback = "Name the specific functions, queries or settings involved and the change each needs"
	return score, passed, severity, feedback


DEFAULT_RULES: tuple[QualityRule, ...] = (
	QualityRule("format_compliance", "format", 0.2, check_format_compliance),
	QualityRule("deliverables_completeness", "completeness", 0.25, check_deliverables_completeness),
	QualityRule("memory_operations_validity", "memory", 0.15, check_memory_operations),
	QualityRule("task_completion_assessment", "completion", 0.2, check_task_completion),
	QualityRule("response_quality", "content", 0.2, check_response_quality),
	QualityRule("file_path_specificity", "specificity", 0.25, check_file_path_specificity),
	QualityRule("code_snippet_presence", "specificity", 0.25, check_code_snippets),
	QualityRule("concrete_analysis_depth", "specificity", 0.3, check_analysis_depth),
)


class QualityValidator:
	"""
	Scores WorkerResponses against a rule set.

	Thresholds come from the role registry when one is given, else from
	the built-in role table and the default threshold.
	"""

	def __init__(
		self,
		roles=None,
		default_threshold: float = 0.7,
		rules: tuple[QualityRule, ...] = DEFAULT_RULES,
	):
		self.roles = roles
		self.default_threshold = default_threshold
		self.rules = rules

	def threshold_for(self, role: str) -> float:
		if self.roles is not None:
			return self.roles.threshold_for(role)
		return ROLE_THRESHOLDS.get(role, self.default_threshold)

	def _run_rule(self, rule: QualityRule, response: WorkerResponse, ctx: ValidationContext) -> RuleResult:
		try:
			score, passed, severity, feedback = rule.check(response, ctx)
		except Exception as e:
			logger.warning(f"Quality rule {rule.name} raised: {e}")
			return RuleResult(
				rule=rule.name,
				category=rule.category,
				passed=False,
				score=0.0,
				severity=Severity.MINOR,
				feedback=f"Rule could not be evaluated: {e}",
				weight=rule.weight,
			)
		return RuleResult(
			rule=rule.name,
			category=rule.category,
			passed=passed,
			score=max(0.0, min(1.0, score / 100)),
			severity=severity,
			feedback=feedback,
			weight=rule.weight,
		)

	def validate(self, response: WorkerResponse, ctx: ValidationContext) -> QualityAssessment:
		"""
		Evaluate every rule and aggregate.

		Args:
			response: Parsed worker response
			ctx: Requirements, criteria, role and parser diagnostics

		Returns:
			QualityAssessment; passed only if the overall score meets the
			threshold and no critical rule failed
		"""
		role = ctx.role or response.metadata.role
		if role != ctx.role:
			ctx = ValidationContext(
				requirements=ctx.requirements,
				quality_criteria=ctx.quality_criteria,
				role=role,
				expected_deliverables=ctx.expected_deliverables,
				missing_sections=ctx.missing_sections,
				session_id=ctx.session_id,
			)
		threshold = self.threshold_for(role)
		results = [self._run_rule(rule, response, ctx) for rule in self.rules]

		by_category: dict[str, list[RuleResult]] = {}
		for result in results:
			by_category.setdefault(result.category, []).append(result)
		category_scores = {
			category: sum(r.score for r in members) / len(members)
			for category, members in by_category.items()
		}
		category_weights = {
			category: sum(r.weight for r in members)
			for category, members in by_category.items()
		}
		total_weight = sum(category_weights.values())
		overall = (
			sum(category_scores[c] * category_weights[c] for c in category_scores) / total_weight
			if total_weight else 0.0
		)

		failed = [r for r in results if not r.passed]
		critical = [r for r in failed if r.severity == Severity.CRITICAL]
		passed = overall >= threshold and not critical

		recommendations = [r.feedback for r in failed]
		if role in ROLE_GUIDANCE and not passed:
			recommendations.append(ROLE_GUIDANCE[role])

		success_rate = (len(results) - len(failed)) / len(results) if results else 0.0
		if overall >= 0.85 and success_rate >= 0.9:
			confidence = "high"
		elif overall >= 0.6 and success_rate >= 0.7:
			confidence = "medium"
		else:
			confidence = "low"

		assessment = QualityAssessment(
			overall_score=overall,
			threshold=threshold,
			passed=passed,
			category_scores=category_scores,
			rule_results=results,
			critical_issues=[r.feedback for r in critical],
			recommendations=recommendations,
			refinement_suggestions=[f"Improve {r.category}: {r.feedback}" for r in failed],
			can_refine=(
				any(r.severity != Severity.CRITICAL for r in failed)
				or overall > threshold * 0.8
			),
			confidence=confidence,
			role=role,
		)
		logger.info(
			f"Quality assessment for {role or 'unknown role'}: score={overall:.2f} "
			f"threshold={threshold:.2f} passed={passed} failed_rules={len(failed)}"
		)
		return assessment
