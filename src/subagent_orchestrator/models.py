"""
Worker Response Models - Pydantic schemas for structured worker output.

Every worker invocation ends in a WorkerResponse. Input recovered from
free text is often loose (a single string where a list is expected,
legacy key names, "1500ms" as a processing time), so the models
normalize before validating instead of rejecting.
"""

import json
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CompletionStatus(str, Enum):
	"""How much of the delegated task the worker finished."""
	COMPLETE = "complete"
	PARTIAL = "partial"
	FAILED = "failed"


class ConfidenceLevel(str, Enum):
	"""Worker's own confidence in its answer."""
	LOW = "low"
	MEDIUM = "medium"
	HIGH = "high"


VALID_MEMORY_OPERATIONS = frozenset({
	"create_entities",
	"add_observations",
	"create_relations",
	"delete_entities",
	"delete_observations",
	"delete_relations",
})


def _as_text(value: Any) -> str:
	if value is None:
		return ""
	if isinstance(value, str):
		return value
	if isinstance(value, (dict, list)):
		return json.dumps(value)
	return str(value)


def _as_text_list(value: Any) -> list[str]:
	if value is None:
		return []
	if isinstance(value, str):
		return [value] if value.strip() else []
	if isinstance(value, (list, tuple)):
		items = []
		for item in value:
			if isinstance(item, dict):
				# {"description": ...} or {"recommendation": ...} shaped entries
				text = item.get("description") or item.get("recommendation") or item.get("title")
				items.append(_as_text(text) if text else json.dumps(item))
			elif item is not None:
				items.append(_as_text(item))
		return [i for i in items if i.strip()]
	return [_as_text(value)]


class Deliverables(BaseModel):
	"""The worker's answer: analysis, recommendations and documents."""
	model_config = ConfigDict(frozen=True, extra="ignore")

	analysis: str = Field(default="", description="Primary domain-specific analysis")
	recommendations: tuple[str, ...] = Field(default=(), description="Actionable recommendations")
	documents: tuple[str, ...] = Field(default=(), description="Documents created or referenced")
	technical_details: str = Field(default="", description="Specific technical insights")

	@field_validator("analysis", "technical_details", mode="before")
	@classmethod
	def _coerce_text(cls, value: Any) -> str:
		return _as_text(value)

	@field_validator("recommendations", "documents", mode="before")
	@classmethod
	def _coerce_list(cls, value: Any) -> list[str]:
		return _as_text_list(value)


class MemoryOperation(BaseModel):
	"""A proposed knowledge write. Workers propose; they never apply."""
	model_config = ConfigDict(frozen=True, extra="ignore")

	operation: str = Field(default="", description="One of VALID_MEMORY_OPERATIONS")
	data: dict[str, Any] = Field(default_factory=dict)

	@field_validator("operation", mode="before")
	@classmethod
	def _coerce_operation(cls, value: Any) -> str:
		return _as_text(value)

	@field_validator("data", mode="before")
	@classmethod
	def _coerce_data(cls, value: Any) -> dict[str, Any]:
		return value if isinstance(value, dict) else {}

	@property
	def is_valid(self) -> bool:
		return self.operation in VALID_MEMORY_OPERATIONS


class ResponseMetadata(BaseModel):
	"""Bookkeeping about the invocation that produced a response."""
	model_config = ConfigDict(frozen=True, extra="ignore")

	role: str = ""
	completion_status: CompletionStatus = CompletionStatus.PARTIAL
	confidence_level: ConfidenceLevel = ConfidenceLevel.LOW
	processing_time_ms: int = 0

	@model_validator(mode="before")
	@classmethod
	def _legacy_keys(cls, data: Any) -> Any:
		if not isinstance(data, dict):
			return data
		aliases = {
			"chatmode": "role",
			"subagent": "role",
			"task_completion_status": "completion_status",
			"processing_time": "processing_time_ms",
		}
		data = dict(data)
		for legacy, current in aliases.items():
			if legacy in data and current not in data:
				data[current] = data.pop(legacy)
		return data

	@field_validator("role", mode="before")
	@classmethod
	def _coerce_role(cls, value: Any) -> str:
		return _as_text(value)

	@field_validator("completion_status", mode="before")
	@classmethod
	def _coerce_status(cls, value: Any) -> str:
		text = _as_text(value).strip().lower()
		valid = {s.value for s in CompletionStatus}
		return text if text in valid else CompletionStatus.PARTIAL.value

	@field_validator("confidence_level", mode="before")
	@classmethod
	def _coerce_confidence(cls, value: Any) -> str:
		text = _as_text(value).strip().lower()
		valid = {c.value for c in ConfidenceLevel}
		return text if text in valid else ConfidenceLevel.LOW.value

	@field_validator("processing_time_ms", mode="before")
	@classmethod
	def _coerce_processing_time(cls, value: Any) -> int:
		if isinstance(value, bool):
			return 0
		if isinstance(value, (int, float)):
			return max(0, int(value))
		match = re.search(r"\d+", _as_text(value))
		return int(match.group(0)) if match else 0


class ToolRequest(BaseModel):
	"""A worker asking to act rather than answer."""
	model_config = ConfigDict(frozen=True)

	tool: str
	arguments: dict[str, Any] = Field(default_factory=dict)

	@field_validator("arguments", mode="before")
	@classmethod
	def _coerce_arguments(cls, value: Any) -> dict[str, Any]:
		if isinstance(value, str):
			try:
				value = json.loads(value)
			except json.JSONDecodeError:
				return {}
		return value if isinstance(value, dict) else {}


class WorkerResponse(BaseModel):
	"""
	Normalized structured output of one worker invocation.

	deliverables and metadata are always present; recovered input fills
	missing sections with low-confidence defaults.
	"""
	model_config = ConfigDict(frozen=True, extra="ignore")

	deliverables: Deliverables = Field(default_factory=Deliverables)
	memory_operations: tuple[MemoryOperation, ...] = Field(default=())
	metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)
	tool_request: Optional[ToolRequest] = None

	# Execution diagnostics filled in by the spawn controller
	error: Optional[dict[str, Any]] = None
	tool_failures: tuple[dict[str, Any], ...] = Field(default=())

	@field_validator("deliverables", "metadata", mode="before")
	@classmethod
	def _coerce_section(cls, value: Any) -> Any:
		return value if isinstance(value, (dict, BaseModel)) else {}

	@field_validator("memory_operations", mode="before")
	@classmethod
	def _coerce_memory_operations(cls, value: Any) -> list[Any]:
		if isinstance(value, dict):
			value = [value]
		if not isinstance(value, (list, tuple)):
			return []
		return [op for op in value if isinstance(op, (dict, MemoryOperation))]

	@field_validator("tool_request", mode="before")
	@classmethod
	def _coerce_tool_request(cls, value: Any) -> Any:
		if isinstance(value, dict) and not value.get("tool"):
			return None
		return value

	@classmethod
	def failed(
		cls,
		role: str,
		error: dict[str, Any],
		analysis: str = "",
		processing_time_ms: int = 0,
		tool_failures: Optional[list[dict[str, Any]]] = None,
	) -> "WorkerResponse":
		"""Build a failed-status response carrying error detail."""
		return cls(
			deliverables=Deliverables(analysis=analysis or error.get("message", "")),
			metadata=ResponseMetadata(
				role=role,
				completion_status=CompletionStatus.FAILED,
				confidence_level=ConfidenceLevel.LOW,
				processing_time_ms=processing_time_ms,
			),
			error=error,
			tool_failures=tuple(tool_failures or ()),
		)

	@property
	def is_failed(self) -> bool:
		return self.metadata.completion_status == CompletionStatus.FAILED

	def with_execution_info(
		self,
		role: str,
		processing_time_ms: int,
		tool_failures: Optional[list[dict[str, Any]]] = None,
	) -> "WorkerResponse":
		"""Return a copy stamped with role, elapsed time and tool failures."""
		metadata = self.metadata.model_copy(update={
			"role": role,
			"processing_time_ms": max(0, int(processing_time_ms)),
		})
		update: dict[str, Any] = {"metadata": metadata}
		if tool_failures:
			update["tool_failures"] = tuple(tool_failures)
		return self.model_copy(update=update)

	def to_dict(self) -> dict[str, Any]:
		return self.model_dump(mode="json", exclude_none=True)
