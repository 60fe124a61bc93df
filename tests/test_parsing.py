"""Tests for the resilient worker-response parser."""

import json

import pytest

from subagent_orchestrator.errors import ParseRecoveryExhausted
from subagent_orchestrator.models import CompletionStatus, ConfidenceLevel
from subagent_orchestrator.parsing import (
	balance_brackets,
	escape_newlines,
	extract_object,
	extract_tool_request,
	parse_worker_response,
	quote_bare_keys,
	remove_trailing_commas,
)

from .helpers import worker_json


class TestStrategies:
	"""Each repair is a pure text transformation."""

	def test_extract_object_from_prose(self):
		text = 'Sure, here it is: {"a": 1} hope that helps'
		assert extract_object(text) == '{"a": 1}'

	def test_extract_object_from_code_fence(self):
		text = 'Result:\n```json\n{"a": {"b": 2}}\n```\nDone.'
		assert extract_object(text) == '{"a": {"b": 2}}'

	def test_remove_trailing_commas(self):
		assert remove_trailing_commas('{"a": [1, 2,], "b": 3,}') == '{"a": [1, 2], "b": 3}'

	def test_quote_bare_keys(self):
		assert quote_bare_keys('{analysis: "x", role: "y"}') == '{"analysis": "x", "role": "y"}'

	def test_balance_brackets_closes_openers(self):
		assert json.loads(balance_brackets('{"a": [1, 2')) == {"a": [1, 2]}

	def test_balance_brackets_closes_unterminated_string(self):
		assert json.loads(balance_brackets('{"a": "cut off')) == {"a": "cut off"}

	def test_balance_brackets_ignores_brackets_in_strings(self):
		assert json.loads(balance_brackets('{"a": "x { [ y"')) == {"a": "x { [ y"}

	def test_escape_newlines_only_inside_strings(self):
		text = '{\n"a": "one\ntwo"\n}'
		assert json.loads(escape_newlines(text)) == {"a": "one\ntwo"}


class TestParseWorkerResponse:
	"""The cascade records which strategies fired."""

	def test_direct_parse(self):
		outcome = parse_worker_response(worker_json())
		assert outcome.strategies == ("direct",)
		assert outcome.filled_defaults == ()
		assert not outcome.recovered
		assert outcome.response.metadata.completion_status == CompletionStatus.COMPLETE
		assert len(outcome.response.deliverables.recommendations) == 3

	def test_object_embedded_in_prose(self):
		outcome = parse_worker_response(f"Here is my analysis:\n{worker_json()}\nLet me know.")
		assert outcome.strategies == ("extract_object",)
		assert outcome.response.metadata.role == "Security Engineer"

	def test_trailing_commas(self):
		text = '{"deliverables": {"analysis": "a", "recommendations": ["x",],}, "metadata": {"role": "r"},}'
		outcome = parse_worker_response(text)
		assert outcome.strategies == ("remove_trailing_commas",)
		assert outcome.response.deliverables.recommendations == ("x",)
		assert outcome.filled_defaults == ("memory_operations",)

	def test_bare_keys_and_single_quotes(self):
		outcome = parse_worker_response("{deliverables: {analysis: 'Cache is unbounded'}}")
		assert outcome.strategies == ("quote_bare_keys", "single_to_double_quotes")
		assert outcome.response.deliverables.analysis == "Cache is unbounded"

	def test_truncated_output(self):
		outcome = parse_worker_response('{"deliverables": {"analysis": "Truncated output')
		assert outcome.strategies == ("balance_brackets",)
		assert outcome.response.deliverables.analysis == "Truncated output"

	def test_raw_newlines_in_strings(self):
		outcome = parse_worker_response('{"deliverables": {"analysis": "line one\nline two"}}')
		assert outcome.strategies == ("escape_newlines",)
		assert outcome.response.deliverables.analysis == "line one\nline two"

	def test_partial_fields_without_braces(self):
		text = '"analysis": "The cache layer leaks memory", "completion_status": "complete"'
		outcome = parse_worker_response(text)
		assert outcome.strategies == ("partial_fields",)
		assert outcome.response.deliverables.analysis == "The cache layer leaks memory"
		assert outcome.response.metadata.completion_status == CompletionStatus.COMPLETE
		assert outcome.response.metadata.confidence_level == ConfidenceLevel.LOW

	def test_fallback_for_prose(self):
		text = (
			"I could not finish the review because the repository was not accessible.\n"
			"- Grant read access to the repository\n"
			"- Retry the review afterwards\n"
		)
		outcome = parse_worker_response(text)
		assert outcome.used_fallback
		response = outcome.response
		assert response.deliverables.analysis.startswith("I could not finish the review")
		assert response.deliverables.recommendations == (
			"Grant read access to the repository",
			"Retry the review afterwards",
		)
		assert response.metadata.completion_status == CompletionStatus.PARTIAL
		assert response.metadata.confidence_level == ConfidenceLevel.LOW
		assert "metadata" in outcome.filled_defaults

	def test_garbage_still_yields_structure(self):
		outcome = parse_worker_response("}}}{{{ ::: ]]")
		assert outcome.used_fallback
		assert outcome.response.deliverables is not None
		assert outcome.response.metadata is not None

	@pytest.mark.parametrize("raw", [
		'{"deliverables": {"analysis": ' + "[" * 5000 + "]" * 5000 + "}}",
		'{"deliverables": {"analysis": ' + "[" * 5000,
	])
	def test_deeply_nested_input_is_recovered(self, raw):
		outcome = parse_worker_response(raw, role="Security Engineer")
		assert "direct" not in outcome.strategies
		assert outcome.response.metadata.role == "Security Engineer"
		assert outcome.response.deliverables is not None

	def test_missing_metadata_is_reported(self):
		outcome = parse_worker_response('{"deliverables":{"analysis":"x"}}')
		assert outcome.strategies == ("direct",)
		assert outcome.filled_defaults == ("memory_operations", "metadata")
		assert outcome.response.metadata.completion_status == CompletionStatus.PARTIAL

	def test_legacy_metadata_keys(self):
		text = json.dumps({
			"deliverables": {"analysis": "ok", "recommendations": "Add an index"},
			"metadata": {
				"chatmode": "Database Architect",
				"task_completion_status": "complete",
				"processing_time": "1500ms",
			},
		})
		response = parse_worker_response(text).response
		assert response.metadata.role == "Database Architect"
		assert response.metadata.completion_status == CompletionStatus.COMPLETE
		assert response.metadata.processing_time_ms == 1500
		assert response.deliverables.recommendations == ("Add an index",)

	def test_role_and_time_are_stamped(self):
		outcome = parse_worker_response(
			"Plain prose answer that is long enough to become the analysis.",
			role="Test Engineer",
			processing_time_ms=50,
		)
		assert outcome.response.metadata.role == "Test Engineer"
		assert outcome.response.metadata.processing_time_ms == 50

	def test_text_role_is_kept(self):
		outcome = parse_worker_response(worker_json(role="Security Engineer"), role="Other")
		assert outcome.response.metadata.role == "Security Engineer"

	def test_tool_request_object(self):
		outcome = parse_worker_response('{"tool": "read_file", "arguments": {"path": "a.py"}}')
		assert outcome.response.tool_request is not None
		assert outcome.response.tool_request.tool == "read_file"
		assert outcome.response.tool_request.arguments == {"path": "a.py"}

	@pytest.mark.parametrize("raw", [None, 42, "", "   \n"])
	def test_rejects_non_text_or_blank(self, raw):
		with pytest.raises(ParseRecoveryExhausted):
			parse_worker_response(raw)


class TestExtractToolRequest:
	"""Inline {"tool": ...} convention."""

	def test_bare_object(self):
		request = extract_tool_request('{"tool": "grep_search", "arguments": {"query": "password"}}')
		assert request.tool == "grep_search"
		assert request.arguments == {"query": "password"}

	def test_embedded_in_prose(self):
		text = 'I need to look at the file first.\n{"tool": "read_file", "arguments": {"path": "src/app.py"}}'
		request = extract_tool_request(text)
		assert request.tool == "read_file"
		assert request.arguments == {"path": "src/app.py"}

	def test_in_code_fence_with_string_arguments(self):
		text = '```json\n{"tool": "read_file", "arguments": "{\\"path\\": \\"x.py\\"}"}\n```'
		request = extract_tool_request(text)
		assert request.tool == "read_file"
		assert request.arguments == {"path": "x.py"}

	def test_final_answer_is_not_a_tool_request(self):
		assert extract_tool_request(worker_json()) is None

	def test_plain_text(self):
		assert extract_tool_request("No tools needed, here is my answer.") is None
