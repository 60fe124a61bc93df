"""
Error taxonomy for delegation, execution and validation failures.

Every error carries the session it happened in, the counters relevant to
the limit that was hit, and a remediation hint, so the primary agent can
act on it without seeing worker internals.
"""

from typing import Any, Optional


class OrchestratorError(Exception):
	"""Base class for all orchestration errors."""

	code = "orchestrator_error"
	default_remediation = ""

	def __init__(
		self,
		message: str,
		session_id: Optional[str] = None,
		details: Optional[dict[str, Any]] = None,
		remediation: Optional[str] = None,
	):
		super().__init__(message)
		self.message = message
		self.session_id = session_id
		self.details = details or {}
		self.remediation = remediation or self.default_remediation

	def to_dict(self) -> dict[str, Any]:
		"""Serialize for JSON responses."""
		return {
			"type": self.code,
			"message": self.message,
			"session_id": self.session_id,
			"details": self.details,
			"remediation": self.remediation,
		}


# Limits

class DepthExceeded(OrchestratorError):
	code = "depth_exceeded"
	default_remediation = "Flatten the delegation chain or increase the configured max_depth."


class CallLimitExceeded(OrchestratorError):
	code = "call_limit_exceeded"
	default_remediation = "Start a new session or increase the configured max_total_calls."


class DelegationLoopDetected(OrchestratorError):
	code = "delegation_loop_detected"
	default_remediation = "Change the task or context instead of repeating the same delegation."


class ParallelQuotaExceeded(OrchestratorError):
	code = "parallel_quota_exceeded"
	default_remediation = "Split the batch or increase the configured parallel-agent limit."


class DuplicateAgentId(OrchestratorError):
	code = "duplicate_agent_id"
	default_remediation = "Give every agent in the batch a unique agent_id."


class RefinementCapExceeded(OrchestratorError):
	code = "refinement_cap_exceeded"
	default_remediation = "Accept the best response so far or rephrase the task."


# Specification

class InvalidTaskSpecification(OrchestratorError):
	code = "invalid_task_specification"
	default_remediation = (
		"Describe what the agent should achieve, not which tools to call. "
		"Workers choose their own tools."
	)


class TemplateRenderingFailed(OrchestratorError):
	code = "template_rendering_failed"
	default_remediation = "Check the role definition file; its instructions could not be composed."


class RoleNotFound(OrchestratorError):
	code = "role_not_found"
	default_remediation = "Use list_roles to see available roles."


class SessionNotFound(OrchestratorError):
	code = "session_not_found"
	default_remediation = "Omit session_id to start a new session; it may have expired."


# Execution

class ToolExecutionFailed(OrchestratorError):
	code = "tool_execution_failed"
	default_remediation = "Check the tool name and arguments against the available tool list."


class CircuitBreakerTripped(OrchestratorError):
	code = "circuit_breaker_tripped"
	default_remediation = "A tool kept failing. Simplify the task or check the tool servers."


class IterationLimitExceeded(OrchestratorError):
	code = "iteration_limit_exceeded"
	default_remediation = "Simplify the task or increase the configured max_iterations."


class WorkerExecutionFailed(OrchestratorError):
	code = "worker_execution_failed"
	default_remediation = "Check the completion API configuration and retry."


class ParseRecoveryExhausted(OrchestratorError):
	code = "parse_recovery_exhausted"
	default_remediation = "Pass the worker's raw text output."


# Completion API

class CompletionError(Exception):
	"""Base for all completion client errors."""


class CompletionConfigError(CompletionError):
	"""Missing or invalid completion configuration (e.g., no API key)."""


class CompletionAuthError(CompletionError):
	"""Authentication failed (401/403)."""


class CompletionRateLimitError(CompletionError):
	"""Rate limited by the API (429)."""

	def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
		self.retry_after = retry_after
		if retry_after is not None:
			message = f"{message} (retry after {retry_after}s)"
		super().__init__(message)


class CompletionResponseError(CompletionError):
	"""Unexpected response format from the completion API."""
