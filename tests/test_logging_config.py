"""Tests for logging setup and credential redaction."""

import logging

from subagent_orchestrator.logging_config import LOGGER_NAME, SensitiveDataFilter, setup_logging


def _redact(message: str) -> str:
	record = logging.LogRecord("test", logging.INFO, __file__, 1, message, None, None)
	SensitiveDataFilter().filter(record)
	return record.msg


def test_redacts_bearer_token():
	assert _redact("Authorization: Bearer abc.def-123") == "Authorization: Bearer [REDACTED_TOKEN]"


def test_redacts_api_key():
	redacted = _redact("using key sk-abcdef1234567890")
	assert "sk-abcdef" not in redacted
	assert "[REDACTED_API_KEY]" in redacted


def test_redacts_key_value_pairs():
	assert _redact("api_key=hunter2 model=gpt") == "api_key=[REDACTED] model=gpt"


def test_leaves_plain_messages():
	assert _redact("Worker Security Engineer started") == "Worker Security Engineer started"


def test_setup_logging_is_idempotent(tmp_path):
	logger = logging.getLogger(LOGGER_NAME)
	saved = list(logger.handlers)
	saved_level = logger.level
	for handler in saved:
		logger.removeHandler(handler)
	try:
		setup_logging(level="DEBUG", log_dir=tmp_path / "logs")
		setup_logging(level="DEBUG", log_dir=tmp_path / "logs")
		assert logger.level == logging.DEBUG
		assert len(logger.handlers) == 2
		assert (tmp_path / "logs").is_dir()
	finally:
		for handler in list(logger.handlers):
			handler.close()
			logger.removeHandler(handler)
		logger.setLevel(saved_level)
		for handler in saved:
			logger.addHandler(handler)
