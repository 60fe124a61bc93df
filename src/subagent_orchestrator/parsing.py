"""
Resilient Parser - Recovers structured worker responses from free text.

Models rarely return clean JSON. The parser runs a cascade of
progressively more aggressive strategies and stops at the first one
that yields an object:

1. direct: the whole text is JSON
2. extract_object: the outermost {...} embedded in prose or a code fence
3. repairs, applied cumulatively with a parse attempt after each:
   remove_trailing_commas, quote_bare_keys, single_to_double_quotes,
   balance_brackets, escape_newlines
4. partial_fields: regex extraction of recognizable "key": value pairs
5. fallback: a minimal partial/low-confidence response built from prose

The parser never raises for malformed text. It raises
ParseRecoveryExhausted only when given something that is not text.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .errors import ParseRecoveryExhausted
from .models import ToolRequest, WorkerResponse

logger = logging.getLogger(__name__)

DELIVERABLE_KEYS = ("analysis", "recommendations", "documents", "technical_details")
METADATA_KEYS = (
	"role",
	"chatmode",
	"completion_status",
	"task_completion_status",
	"confidence_level",
	"processing_time",
	"processing_time_ms",
)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_SINGLE_QUOTED_RE = re.compile(r"([{\[,:]\s*)'((?:[^'\\]|\\.)*)'")
_PAIR_RE = re.compile(r'"([^"]+)"\s*:\s*("(?:[^"\\]|\\.)*"|[^,}\]\[{]+)')
_ARRAY_PAIR_RE = re.compile(r'"([^"]+)"\s*:\s*\[(.*?)\]', re.DOTALL)
_QUOTED_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')
_ANALYSIS_RE = re.compile(r'"analysis"\s*:\s*"((?:[^"\\]|\\.)*)', re.DOTALL)
_ROLE_RE = re.compile(r'"(?:role|chatmode)"\s*:\s*"([^"]+)"')
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$", re.MULTILINE)
_TOOL_START_RE = re.compile(r'\{\s*"tool"\s*:\s*"')


@dataclass(frozen=True)
class ParseOutcome:
	"""A parsed response plus how it was recovered."""
	response: WorkerResponse
	strategies: tuple[str, ...]
	filled_defaults: tuple[str, ...] = ()

	@property
	def recovered(self) -> bool:
		"""True when anything beyond a direct parse was needed."""
		return self.strategies != ("direct",)

	@property
	def used_fallback(self) -> bool:
		return "fallback" in self.strategies


# Structural helpers

def _loads_object(text: str) -> Optional[dict[str, Any]]:
	try:
		data = json.loads(text)
	except (json.JSONDecodeError, ValueError, RecursionError):
		return None
	return data if isinstance(data, dict) else None


def _decode_fragment(fragment: str) -> str:
	try:
		return json.loads(f'"{fragment}"')
	except (json.JSONDecodeError, ValueError):
		return fragment.replace('\\"', '"').replace("\\n", "\n")


def _scan_strings(text: str):
	"""Yield (index, char, in_string) while tracking JSON string state."""
	in_string = False
	escaped = False
	for i, ch in enumerate(text):
		if in_string:
			if escaped:
				escaped = False
			elif ch == "\\":
				escaped = True
			elif ch == '"':
				in_string = False
				yield i, ch, True
				continue
			yield i, ch, True
		else:
			if ch == '"':
				in_string = True
				yield i, ch, True
				continue
			yield i, ch, False


def _balanced_end(text: str, start: int) -> Optional[int]:
	"""Index just past the bracket closing the one opened at start."""
	depth = 0
	for i, ch, in_string in _scan_strings(text[start:]):
		if in_string:
			continue
		if ch in "{[":
			depth += 1
		elif ch in "}]":
			depth -= 1
			if depth == 0:
				return start + i + 1
	return None


# Strategies: each is a pure text -> text transformation

def extract_object(text: str) -> str:
	"""Pull the outermost {...} out of surrounding prose or a code fence."""
	fence = _FENCE_RE.search(text)
	if fence and "{" in fence.group(1):
		text = fence.group(1)
	start = text.find("{")
	if start == -1:
		return text
	end = text.rfind("}")
	if end <= start:
		# Truncated output: keep everything after the opener
		return text[start:]
	return text[start:end + 1]


def remove_trailing_commas(text: str) -> str:
	return _TRAILING_COMMA_RE.sub(r"\1", text)


def quote_bare_keys(text: str) -> str:
	return _BARE_KEY_RE.sub(r'\1"\2"\3', text)


def single_to_double_quotes(text: str) -> str:
	def _requote(match: re.Match) -> str:
		inner = match.group(2).replace("\\'", "'").replace('"', '\\"')
		return f'{match.group(1)}"{inner}"'
	return _SINGLE_QUOTED_RE.sub(_requote, text)


def balance_brackets(text: str) -> str:
	"""Close any unterminated string and unmatched openers, innermost first."""
	stack: list[str] = []
	in_string = False
	escaped = False
	for ch in text:
		if in_string:
			if escaped:
				escaped = False
			elif ch == "\\":
				escaped = True
			elif ch == '"':
				in_string = False
			continue
		if ch == '"':
			in_string = True
		elif ch in "{[":
			stack.append("}" if ch == "{" else "]")
		elif ch in "}]" and stack and stack[-1] == ch:
			stack.pop()
	if in_string:
		return text + '"' + "".join(reversed(stack))
	return text.rstrip().rstrip(",") + "".join(reversed(stack))


def escape_newlines(text: str) -> str:
	"""Replace raw newlines inside string literals with \\n escapes."""
	out = []
	for _, ch, in_string in _scan_strings(text):
		if in_string and ch == "\n":
			out.append("\\n")
		elif in_string and ch == "\r":
			continue
		elif in_string and ch == "\t":
			out.append("\\t")
		else:
			out.append(ch)
	return "".join(out)


REPAIRS: tuple[tuple[str, Callable[[str], str]], ...] = (
	("remove_trailing_commas", remove_trailing_commas),
	("quote_bare_keys", quote_bare_keys),
	("single_to_double_quotes", single_to_double_quotes),
	("balance_brackets", balance_brackets),
	("escape_newlines", escape_newlines),
)


def extract_partial_fields(text: str) -> Optional[dict[str, Any]]:
	"""Assemble whatever "key": value pairs are recognizable."""
	flat: dict[str, Any] = {}
	for key, body in _ARRAY_PAIR_RE.findall(text):
		flat.setdefault(key, [_decode_fragment(s) for s in _QUOTED_RE.findall(body)])
	for key, raw_value in _PAIR_RE.findall(text):
		if key in flat:
			continue
		raw_value = raw_value.strip()
		if raw_value.startswith('"'):
			flat[key] = _decode_fragment(raw_value[1:-1])
		else:
			try:
				flat[key] = json.loads(raw_value)
			except (json.JSONDecodeError, ValueError, RecursionError):
				flat[key] = raw_value

	deliverables = {k: flat[k] for k in DELIVERABLE_KEYS if k in flat}
	metadata = {k: flat[k] for k in METADATA_KEYS if k in flat}
	if not deliverables and not metadata:
		return None

	data: dict[str, Any] = {}
	if deliverables:
		data["deliverables"] = deliverables
	if metadata:
		data["metadata"] = metadata
	return data


def fallback_structure(text: str) -> dict[str, Any]:
	"""Best-effort fragments from raw text; never fails."""
	match = _ANALYSIS_RE.search(text)
	if match:
		analysis = _decode_fragment(match.group(1)).strip()
	else:
		prose = [
			line.strip() for line in text.splitlines()
			if len(line.strip()) > 30 and not _BULLET_RE.match(line)
		]
		analysis = "\n".join(prose[:10]) if prose else text.strip()[:2000]

	recommendations = [
		item for item in _BULLET_RE.findall(text)
		if len(item) > 10
	][:5]

	data: dict[str, Any] = {
		"deliverables": {"analysis": analysis, "recommendations": recommendations},
	}
	role = _ROLE_RE.search(text)
	if role:
		# Only the role is trusted; status and confidence stay at defaults
		data["metadata"] = {"role": role.group(1)}
	return data


def recover_structure(text: str) -> tuple[Optional[dict[str, Any]], list[str]]:
	"""
	Run the structural cascade.

	Returns:
		Tuple of (object or None, names of the strategies that fired)
	"""
	data = _loads_object(text)
	if data is not None:
		return data, ["direct"]

	strategies: list[str] = []
	candidate = extract_object(text)
	if candidate != text:
		strategies.append("extract_object")
		data = _loads_object(candidate)
		if data is not None:
			return data, strategies

	if "{" not in candidate:
		data = extract_partial_fields(candidate)
		if data is not None:
			strategies.append("partial_fields")
		return data, strategies

	for name, repair in REPAIRS:
		repaired = repair(candidate)
		if repaired == candidate:
			continue
		strategies.append(name)
		candidate = repaired
		data = _loads_object(candidate)
		if data is not None:
			return data, strategies

	data = extract_partial_fields(candidate)
	if data is not None:
		strategies.append("partial_fields")
		return data, strategies

	return None, strategies


def _normalize(data: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
	"""Reshape a recovered object into WorkerResponse fields."""
	payload = dict(data)
	filled: list[str] = []

	if "tool" in payload and "deliverables" not in payload:
		payload["tool_request"] = {
			"tool": payload.get("tool"),
			"arguments": payload.get("arguments") or payload.get("args") or {},
		}

	if not isinstance(payload.get("deliverables"), dict):
		lifted = {k: payload[k] for k in DELIVERABLE_KEYS if k in payload and not isinstance(payload[k], dict)}
		payload["deliverables"] = lifted
		if not lifted:
			filled.append("deliverables")

	if not isinstance(payload.get("memory_operations"), list):
		filled.append("memory_operations")

	if not isinstance(payload.get("metadata"), dict):
		filled.append("metadata")
		payload["metadata"] = {}

	return payload, filled


def _stamp(response: WorkerResponse, role: str, processing_time_ms: int) -> WorkerResponse:
	update: dict[str, Any] = {}
	if role and not response.metadata.role:
		update["role"] = role
	if processing_time_ms > 0:
		update["processing_time_ms"] = processing_time_ms
	if not update:
		return response
	return response.model_copy(update={"metadata": response.metadata.model_copy(update=update)})


def parse_worker_response(
	raw: Any,
	role: str = "",
	processing_time_ms: int = 0,
) -> ParseOutcome:
	"""
	Parse raw worker output into a WorkerResponse.

	Args:
		raw: The worker's final text
		role: Role name stamped into metadata when the text carries none
		processing_time_ms: Elapsed time stamped into metadata when > 0

	Returns:
		ParseOutcome with the response, strategies that fired and the
		sections that had to be defaulted

	Raises:
		ParseRecoveryExhausted: If raw is not a string or is blank
	"""
	if not isinstance(raw, str):
		raise ParseRecoveryExhausted(
			f"Worker output is not text (got {type(raw).__name__})",
			details={"input_type": type(raw).__name__},
		)
	if not raw.strip():
		raise ParseRecoveryExhausted("Worker output is empty", details={"input_length": len(raw)})

	data, strategies = recover_structure(raw.strip())
	response = None
	filled: list[str] = []

	if data is not None:
		payload, filled = _normalize(data)
		try:
			response = WorkerResponse.model_validate(payload)
		except (ValidationError, RecursionError) as e:
			logger.warning(f"Recovered object failed validation, using fallback: {type(e).__name__}")
			response = None

	if response is None:
		strategies.append("fallback")
		payload, filled = _normalize(fallback_structure(raw))
		response = WorkerResponse.model_validate(payload)

	if strategies != ["direct"]:
		logger.info(f"Worker output recovered via: {', '.join(strategies)}")

	return ParseOutcome(
		response=_stamp(response, role, processing_time_ms),
		strategies=tuple(strategies),
		filled_defaults=tuple(filled),
	)


def extract_tool_request(text: str) -> Optional[ToolRequest]:
	"""
	Detect the inline {"tool": ..., "arguments": {...}} convention.

	Accepts a bare object, one inside a code fence, or one embedded in prose.
	"""
	if not isinstance(text, str) or '"tool"' not in text:
		return None

	candidates = [text.strip()]
	candidates.extend(m.group(1).strip() for m in _FENCE_RE.finditer(text))
	for match in _TOOL_START_RE.finditer(text):
		end = _balanced_end(text, match.start())
		if end is not None:
			candidates.append(text[match.start():end])

	for candidate in candidates:
		data = _loads_object(candidate)
		if data is None:
			data = _loads_object(remove_trailing_commas(candidate))
		if not data or not isinstance(data.get("tool"), str) or not data["tool"].strip():
			continue
		if "deliverables" in data:
			continue
		arguments = data.get("arguments", data.get("args", {}))
		try:
			return ToolRequest(tool=data["tool"].strip(), arguments=arguments)
		except (ValidationError, RecursionError):
			continue
	return None
