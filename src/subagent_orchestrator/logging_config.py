"""Centralized logging configuration for subagent-orchestrator."""

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "subagent_orchestrator"


class SensitiveDataFilter(logging.Filter):
	"""Filter to redact credentials from log records."""

	SENSITIVE_PATTERNS = [
		(re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE), r"\1[REDACTED_TOKEN]"),
		(re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "[REDACTED_API_KEY]"),
		(re.compile(r"((?:api[_-]?key|password|secret|token)\s*[=:]\s*)\S+", re.IGNORECASE), r"\1[REDACTED]"),
	]

	def filter(self, record: logging.LogRecord) -> bool:
		if isinstance(record.msg, str):
			msg = record.msg
			for pattern, replacement in self.SENSITIVE_PATTERNS:
				msg = pattern.sub(replacement, msg)
			record.msg = msg
		return True


def setup_logging(
	level: str | None = None,
	log_dir: Path | None = None,
) -> logging.Logger:
	"""
	Set up package logging with console and rotating file handlers.

	Console output goes to stderr because stdout carries the MCP stdio
	transport when running as a server.

	Args:
		level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env var or INFO.
		log_dir: Directory for log files. No file handler when omitted.

	Returns:
		Configured package logger
	"""
	level = level or os.getenv("SUBAGENT_ORCHESTRATOR_LOG_LEVEL", "INFO")
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(LOGGER_NAME)
	logger.setLevel(log_level)

	# Avoid duplicate handlers
	if logger.handlers:
		return logger

	redactor = SensitiveDataFilter()

	console_handler = logging.StreamHandler(sys.stderr)
	console_handler.setLevel(log_level)
	console_handler.setFormatter(logging.Formatter(
		"%(asctime)s [%(levelname)s] %(message)s",
		datefmt="%H:%M:%S",
	))
	console_handler.addFilter(redactor)
	logger.addHandler(console_handler)

	if log_dir is not None:
		log_dir.mkdir(parents=True, exist_ok=True)
		file_handler = RotatingFileHandler(
			log_dir / f"{LOGGER_NAME}.log",
			maxBytes=10 * 1024 * 1024,  # 10 MB
			backupCount=5,
		)
		file_handler.setLevel(logging.DEBUG)
		file_handler.setFormatter(logging.Formatter(
			"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		))
		file_handler.addFilter(redactor)
		logger.addHandler(file_handler)

	return logger