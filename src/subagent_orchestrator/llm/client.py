"""Async OpenAI-compatible completion client with tenacity retry.

Workers talk to the model through the CompletionClient protocol; this
module provides the httpx implementation used in production. Native
tool calls are normalized to ToolCall values so the spawn controller
never sees provider-specific shapes.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import httpx
import tenacity

from ..errors import (
	CompletionAuthError,
	CompletionConfigError,
	CompletionRateLimitError,
	CompletionResponseError,
)
from ..tools.provider import ToolSpec

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_AUTH_ERROR_STATUS_CODES = {401, 403}


@dataclass
class ToolCall:
	"""A tool invocation requested by the model."""
	id: str
	name: str
	arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatMessage:
	"""One entry in a worker conversation."""
	role: str
	content: str = ""
	tool_calls: list[ToolCall] = field(default_factory=list)
	tool_call_id: Optional[str] = None

	def to_openai(self) -> dict[str, Any]:
		message: dict[str, Any] = {"role": self.role, "content": self.content}
		if self.tool_calls:
			message["content"] = self.content or None
			message["tool_calls"] = [
				{
					"id": call.id,
					"type": "function",
					"function": {"name": call.name, "arguments": json.dumps(call.arguments)},
				}
				for call in self.tool_calls
			]
		if self.tool_call_id:
			message["tool_call_id"] = self.tool_call_id
		return message


@dataclass
class CompletionMessage:
	"""The model's reply for one turn."""
	content: str = ""
	tool_calls: list[ToolCall] = field(default_factory=list)


@runtime_checkable
class CompletionClient(Protocol):
	"""What the spawn controller needs from a language model."""

	async def complete(
		self,
		messages: list[ChatMessage],
		tools: Optional[list[ToolSpec]] = None,
	) -> CompletionMessage:
		...


def _is_retryable(exc: BaseException) -> bool:
	"""Check if an exception is retryable.

	Retryable: 429, 500, 502, 503, 504, connection errors and timeouts.
	Not retryable: 401, 403, 400, other client errors.
	"""
	if isinstance(exc, CompletionAuthError):
		return False
	if isinstance(exc, CompletionRateLimitError):
		return True
	if isinstance(exc, httpx.HTTPStatusError):
		return exc.response.status_code in _RETRYABLE_STATUS_CODES
	return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout))


class OpenAICompatibleClient:
	"""Async httpx client for OpenAI-compatible chat completions.

	Retries transient errors (429, 5xx, connection failures) with
	exponential backoff and jitter; fails immediately on 401/403.

	Usage::

		async with OpenAICompatibleClient(api_key="sk-...") as client:
			reply = await client.complete([ChatMessage(role="user", content="Hello")])
	"""

	def __init__(
		self,
		api_key: str,
		base_url: str = "https://api.openai.com/v1",
		model: str = "gpt-4o-mini",
		timeout: float = 120.0,
		max_retries: int = 3,
		temperature: Optional[float] = None,
		max_tokens: Optional[int] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		"""Initialize the client.

		Args:
			api_key: API key sent as a bearer token.
			base_url: API base URL.
			model: Model for every request.
			timeout: Request timeout in seconds.
			max_retries: Maximum attempts for retryable errors.
			temperature: Sampling temperature, omitted when None.
			max_tokens: Completion length cap, omitted when None.
			transport: Optional httpx transport (tests use httpx.MockTransport).

		Raises:
			CompletionConfigError: If no API key is provided.
		"""
		if not api_key:
			raise CompletionConfigError(
				"No API key provided. Set OPENAI_API_KEY or SUBAGENT_ORCHESTRATOR_API_KEY."
			)
		self._base_url = base_url.rstrip("/")
		self._model = model
		self._max_retries = max_retries
		self._temperature = temperature
		self._max_tokens = max_tokens
		self._client = httpx.AsyncClient(
			timeout=timeout,
			transport=transport,
			headers={
				"Content-Type": "application/json",
				"Authorization": f"Bearer {api_key}",
			},
		)

	@classmethod
	def from_config(cls, config) -> OpenAICompatibleClient:
		return cls(
			api_key=config.api_key,
			base_url=config.api_base,
			model=config.model,
			timeout=config.request_timeout,
			max_retries=config.max_retries,
			temperature=config.temperature,
			max_tokens=config.max_tokens,
		)

	async def complete(
		self,
		messages: list[ChatMessage],
		tools: Optional[list[ToolSpec]] = None,
	) -> CompletionMessage:
		"""Send one chat completion request with retry.

		Raises:
			CompletionAuthError: On 401/403 (no retry).
			CompletionRateLimitError: On 429 after all retries are exhausted.
			CompletionResponseError: On an unexpected response format.
			httpx.HTTPError: On other HTTP failures.
		"""
		payload: dict[str, Any] = {
			"model": self._model,
			"messages": [m.to_openai() for m in messages],
		}
		if tools:
			payload["tools"] = [t.to_openai() for t in tools]
		if self._temperature is not None:
			payload["temperature"] = self._temperature
		if self._max_tokens is not None:
			payload["max_tokens"] = self._max_tokens

		retryer = tenacity.AsyncRetrying(
			retry=tenacity.retry_if_exception(_is_retryable),
			wait=(
				tenacity.wait_exponential(multiplier=1, min=1, max=30)
				+ tenacity.wait_random(0, 2)
			),
			stop=tenacity.stop_after_attempt(self._max_retries),
			before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
			reraise=True,
		)
		data = await retryer(self._do_complete, payload)
		return self.parse_message(data)

	async def _do_complete(self, payload: dict[str, Any]) -> dict[str, Any]:
		"""Execute a single request (no retry)."""
		response = await self._client.post(f"{self._base_url}/chat/completions", json=payload)

		if response.status_code in _AUTH_ERROR_STATUS_CODES:
			raise CompletionAuthError(
				f"Authentication failed: HTTP {response.status_code} - {response.text}"
			)

		if response.status_code == 429:
			retry_after: float | None = None
			try:
				retry_after = float(response.headers.get("Retry-After", ""))
			except ValueError:
				pass
			raise CompletionRateLimitError(
				f"Rate limited: HTTP 429 - {response.text}",
				retry_after=retry_after,
			)

		response.raise_for_status()
		data = response.json()
		if "choices" not in data:
			raise CompletionResponseError(
				f"Unexpected response format: missing 'choices' key. Response: {data}"
			)
		return data

	@staticmethod
	def parse_message(data: dict[str, Any]) -> CompletionMessage:
		"""Normalize the first choice into a CompletionMessage.

		Raises:
			CompletionResponseError: If the response has no message.
		"""
		try:
			message = data["choices"][0]["message"]
		except (KeyError, IndexError, TypeError) as exc:
			raise CompletionResponseError(
				f"Cannot extract message from response: {exc}. Response: {data}"
			) from exc

		calls = []
		for raw in message.get("tool_calls") or []:
			function = raw.get("function") or {}
			name = function.get("name")
			if not name:
				continue
			arguments = function.get("arguments") or {}
			if isinstance(arguments, str):
				try:
					arguments = json.loads(arguments) if arguments.strip() else {}
				except json.JSONDecodeError:
					logger.warning(f"Model sent unparseable arguments for {name}: {arguments[:200]}")
					arguments = {}
			calls.append(ToolCall(
				id=raw.get("id") or f"call_{uuid.uuid4().hex[:12]}",
				name=name,
				arguments=arguments if isinstance(arguments, dict) else {},
			))

		return CompletionMessage(content=message.get("content") or "", tool_calls=calls)

	async def aclose(self) -> None:
		"""Close the underlying httpx client."""
		await self._client.aclose()

	async def __aenter__(self) -> OpenAICompatibleClient:
		return self

	async def __aexit__(self, *args: object) -> None:
		await self.aclose()
