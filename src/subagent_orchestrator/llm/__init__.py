"""Completion API client."""

from .client import ChatMessage, CompletionClient, CompletionMessage, OpenAICompatibleClient, ToolCall

__all__ = [
	"ChatMessage",
	"CompletionClient",
	"CompletionMessage",
	"OpenAICompatibleClient",
	"ToolCall",
]
