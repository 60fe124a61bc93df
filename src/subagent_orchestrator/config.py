"""Configuration system using platformdirs for cross-platform paths."""

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import platformdirs
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

APP_NAME = "subagent-orchestrator"
APP_AUTHOR = "subagent-orchestrator"
ENV_PREFIX = "SUBAGENT_ORCHESTRATOR_"


@dataclass
class Config:
	"""Central configuration: paths, delegation limits and model settings."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	log_dir: Path = field(init=False)
	roles_dir: Path = field(init=False)
	sessions_db_path: Path = field(init=False)

	# Delegation limits
	max_total_calls: int = 50
	max_depth: int = 2
	max_parallel_agents: int = 5
	max_concurrent_agents: int = 10
	loop_repeat_threshold: int = 2
	session_ttl_minutes: int = 30
	max_sessions: int = 1000
	persist_sessions: bool = False

	# Quality and refinement
	quality_threshold: float = 0.7
	max_refinement_attempts: int = 3
	trend_min_delta: float = 0.05

	# Worker conversation
	max_iterations: int = 30
	max_consecutive_tool_failures: int = 5
	tool_timeout_seconds: float = 60.0

	# Completion API
	model: str = "gpt-4o-mini"
	api_base: str = "https://api.openai.com/v1"
	api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
	request_timeout: float = 120.0
	max_retries: int = 3
	temperature: float = 0.2
	max_tokens: int = 4000

	# {server_id: {"command": ..., "args": [...], "env": {...}}}
	tool_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
	# JSON file in {"mcpServers": {...}} form, merged under tool_servers
	tool_servers_file: str = ""

	def __post_init__(self) -> None:
		self.log_dir = self.data_dir / "logs"
		self.roles_dir = self.config_dir / "roles"
		self.sessions_db_path = self.data_dir / "sessions.db"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {"config_dir", "data_dir"}


def _coerce(attr: str, raw: Any, current: Any) -> Any:
	"""Convert a raw override to the type of the field's current value."""
	if attr in PATH_FIELDS:
		return Path(os.path.expanduser(str(raw)))
	if isinstance(current, bool):
		if isinstance(raw, bool):
			return raw
		return str(raw).strip().lower() in ("1", "true", "yes", "on")
	if isinstance(current, int):
		return int(raw)
	if isinstance(current, float):
		return float(raw)
	return raw


def _overridable_fields() -> dict[str, str]:
	"""Map env var names to Config attributes (every init field is overridable)."""
	return {
		f"{ENV_PREFIX}{f.name.upper()}": f.name
		for f in fields(Config)
		if f.init and f.name != "tool_servers"
	}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply SUBAGENT_ORCHESTRATOR_* environment variable overrides."""
	for env_key, attr in _overridable_fields().items():
		val = os.getenv(env_key)
		if not val:
			continue
		try:
			setattr(config, attr, _coerce(attr, val, getattr(config, attr)))
		except ValueError:
			logger.warning(f"Ignoring invalid value for {env_key}: {val!r}")
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	known = {f.name for f in fields(Config) if f.init}
	for key, val in data.items():
		if key not in known:
			logger.warning(f"Unknown config.toml key ignored: {key}")
			continue
		try:
			setattr(config, key, _coerce(key, val, getattr(config, key)))
		except (TypeError, ValueError):
			logger.warning(f"Ignoring invalid config.toml value for {key}: {val!r}")

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	load_dotenv()
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
