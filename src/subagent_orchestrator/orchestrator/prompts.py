"""
Prompt composition for workers, plus task pre-flight checks.

A worker's instructions are its role text, the tools it may call, the
delegated task and the response schema it must answer in.
"""

import json
import logging
import re
from string import Template
from typing import Any

from ..errors import InvalidTaskSpecification, TemplateRenderingFailed
from ..roles import Role
from ..tools.provider import ENGINE_TOOL_NAMES, ToolSpec

logger = logging.getLogger(__name__)

_NAME = r"([a-zA-Z_][a-zA-Z0-9_]*)"

TOOL_MENTION_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
	# Direct tool mentions
	rf"use\s+the\s+{_NAME}\s+tool",
	rf"call\s+the\s+{_NAME}\s+(?:tool|function)",
	rf"execute\s+the\s+{_NAME}\s+(?:tool|function)",
	rf"run\s+the\s+{_NAME}\s+tool",
	# Function-style mentions
	rf"call\s+{_NAME}\(",
	rf"execute\s+{_NAME}\(",
	rf"use\s+{_NAME}\(",
	# Tool-specific phrasing
	rf"use\s+{_NAME}\s+to\s+(?:read|write|search|find|analyze)",
	rf"with\s+the\s+{_NAME}\s+tool",
	rf"via\s+the\s+{_NAME}\s+tool",
	# Names that never belong in a task description
	r"\b(?:read_file|write_file|list_dir|file_search|grep_search|git_diff|git_status|memory_search|"
	+ "|".join(sorted(ENGINE_TOOL_NAMES)) + r")\b",
))


def check_task_specification(task: str, context: str = "") -> None:
	"""
	Reject tasks that tell the worker which tools to call.

	Workers may have a different tool set than the caller assumes, so a
	task must say what to achieve, not how.

	Raises:
		InvalidTaskSpecification: Listing every offending phrase
	"""
	if not task or not task.strip():
		raise InvalidTaskSpecification(
			"Task is empty",
			details={"field": "task"},
			remediation="Describe the work the agent should do.",
		)

	text = f"{task} {context or ''}"
	found: list[str] = []
	for pattern in TOOL_MENTION_PATTERNS:
		for match in pattern.finditer(text):
			phrase = match.group(0)
			if phrase not in found:
				found.append(phrase)

	if found:
		raise InvalidTaskSpecification(
			f"Task description contains tool call mentions: {', '.join(found)}",
			details={"detected_patterns": found},
			remediation=(
				'Describe WHAT needs to be done, not HOW. Instead of "Use the read_file '
				'tool to analyze code", say "Analyze the code structure and identify issues".'
			),
		)


RESPONSE_SCHEMA = """{
  "deliverables": {
    "analysis": "Primary domain-specific analysis",
    "recommendations": ["Actionable recommendations"],
    "documents": ["Documents created or referenced"],
    "technical_details": "Specific technical insights"
  },
  "memory_operations": [
    {"operation": "create_entities", "data": {"entities": [{"name": "...", "entityType": "...", "observations": ["..."]}]}}
  ],
  "metadata": {
    "role": "$role",
    "completion_status": "complete | partial | failed",
    "confidence_level": "high | medium | low"
  }
}"""

WORKER_TEMPLATE = Template("""You are operating as a specialized sub-agent delegated by a primary agent.
Role: $role
Session: $session_id

REQUIREMENTS:
1. You cannot delegate to other agents or validate output; the primary agent does that.
2. Use only the tools listed below.
3. Propose memory operations; do not execute them.
4. Finish with a single JSON object in the response format below.

EXECUTION LIMITS:
- At most $max_iterations conversation turns. Plan tool use to finish well within this.
- After $max_failures consecutive failed tool calls the task is aborted.

$tool_section

ROLE INSTRUCTIONS:
$instructions
$coordination_section
TASK:
$task

CONTEXT:
$context

EXPECTED DELIVERABLES:
$expected_deliverables

RESPONSE FORMAT (final answer only):
$response_schema
""")

TOOL_SECTION = Template("""AVAILABLE TOOLS:
To call a tool, use native tool calling or reply with ONLY this JSON:
{"tool": "tool_name", "arguments": {...}}
Results come back in the next message. Use exact tool names.
$tool_docs""")

NO_TOOLS_SECTION = "AVAILABLE TOOLS:\nNone. Answer from the task and context alone."


def example_arguments(schema: dict[str, Any]) -> dict[str, Any]:
	"""Placeholder arguments for a tool's JSON schema."""
	placeholders = {
		"string": "<string>",
		"integer": 0,
		"number": 0,
		"boolean": False,
		"array": [],
		"object": {},
	}
	example: dict[str, Any] = {}
	for name, prop in (schema.get("properties") or {}).items():
		prop_type = prop.get("type") if isinstance(prop, dict) else None
		if isinstance(prop_type, list):
			prop_type = prop_type[0] if prop_type else None
		example[name] = placeholders.get(prop_type, "<value>")
	return example


def describe_tools(tools: list[ToolSpec]) -> str:
	lines = []
	for tool in tools:
		lines.append(f"- {tool.name}: {tool.description or 'No description available'}")
		if tool.input_schema.get("properties"):
			call = {"tool": tool.name, "arguments": example_arguments(tool.input_schema)}
			lines.append(f"  Example: {json.dumps(call)}")
	return "\n".join(lines)


def compose_instructions(
	role: Role,
	task: str,
	context: str,
	expected_deliverables: str,
	tools: list[ToolSpec],
	session_id: str,
	max_iterations: int,
	max_failures: int,
	coordination_context: str = "",
) -> str:
	"""
	Build the full instruction text for one worker invocation.

	Raises:
		TemplateRenderingFailed: If the role has no instructions or the
			template cannot be rendered
	"""
	if not role.instructions.strip():
		raise TemplateRenderingFailed(
			f"Role {role.name} has no instructions",
			session_id=session_id,
			details={"role": role.name, "source_path": role.source_path},
		)

	visible = [t for t in tools if t.name not in ENGINE_TOOL_NAMES]
	coordination_section = ""
	if coordination_context.strip():
		coordination_section = f"\nCOORDINATION:\n{coordination_context.strip()}\n"

	try:
		tool_section = (
			TOOL_SECTION.substitute(tool_docs=describe_tools(visible))
			if visible else NO_TOOLS_SECTION
		)
		return WORKER_TEMPLATE.substitute(
			role=role.name,
			session_id=session_id,
			max_iterations=max_iterations,
			max_failures=max_failures,
			tool_section=tool_section,
			instructions=role.instructions.strip(),
			coordination_section=coordination_section,
			task=task.strip(),
			context=(context or "").strip() or "None provided.",
			expected_deliverables=(expected_deliverables or "").strip() or "Analysis and recommendations.",
			response_schema=Template(RESPONSE_SCHEMA).substitute(role=role.name),
		)
	except (KeyError, ValueError) as e:
		raise TemplateRenderingFailed(
			f"Could not compose instructions for {role.name}: {e}",
			session_id=session_id,
			details={"role": role.name, "error": str(e)},
		) from e
