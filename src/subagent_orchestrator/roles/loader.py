"""
Role Loader - Discovers and parses worker roles from chatmode files.

Roles are discovered from, in order (later wins on name clashes):
- Built-in: subagent_orchestrator/roles/builtin/
- User: <config_dir>/roles/

A role file is markdown with YAML frontmatter:

	---
	name: Security Engineer
	description: Reviews code and infrastructure for vulnerabilities
	tools: read_file, grep_search
	quality_threshold: 0.8
	---

	# Instructions...

The registry is read-only once loaded.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import yaml

from ..errors import RoleNotFound

logger = logging.getLogger(__name__)

BUILTIN_ROLES_DIR = Path(__file__).parent / "builtin"
ROLE_SUFFIXES = (".chatmode.md", ".subagent.md")

# Stricter thresholds for roles whose output carries higher risk
ROLE_THRESHOLDS = {
	"Security Engineer": 0.80,
	"Software Architect": 0.75,
	"Database Architect": 0.75,
	"Test Engineer": 0.75,
}


@dataclass(frozen=True)
class Role:
	"""A parsed worker role definition."""
	name: str
	description: str
	instructions: str
	tools: tuple[str, ...] = field(default_factory=tuple)
	quality_threshold: Optional[float] = None
	max_refinement_attempts: Optional[int] = None
	source_path: str = ""


def _split_list(raw) -> tuple[str, ...]:
	if isinstance(raw, str):
		return tuple(t.strip() for t in raw.strip("[]").split(",") if t.strip())
	if isinstance(raw, list):
		return tuple(str(t).strip() for t in raw if str(t).strip())
	return ()


def _normalize_threshold(raw) -> Optional[float]:
	if raw is None:
		return None
	try:
		value = float(raw)
	except (TypeError, ValueError):
		return None
	# Accept 0-100 as well as 0-1
	if value > 1:
		value /= 100
	return min(max(value, 0.0), 1.0)


def parse_role_file(content: str, source_path: str) -> Role | None:
	"""
	Parse a role file.

	Args:
		content: File content
		source_path: Path to the source file (its stem is the default name)

	Returns:
		Role object or None if the file is not a valid role
	"""
	frontmatter_match = re.match(
		r"^---\s*\n(.*?)\n---\s*\n(.*)$",
		content,
		re.DOTALL
	)

	if not frontmatter_match:
		logger.warning(f"No frontmatter found in {source_path}")
		return None

	try:
		frontmatter = yaml.safe_load(frontmatter_match.group(1))
	except yaml.YAMLError as e:
		logger.error(f"Invalid YAML frontmatter in {source_path}: {e}")
		return None

	if not isinstance(frontmatter, dict):
		logger.warning(f"Empty frontmatter in {source_path}")
		return None

	description = frontmatter.get("description")
	if not description:
		logger.warning(f"Missing 'description' in {source_path}")
		return None

	filename = Path(source_path).name
	default_name = filename
	for suffix in ROLE_SUFFIXES:
		if filename.endswith(suffix):
			default_name = filename[:-len(suffix)]
			break

	attempts = frontmatter.get("max_refinement_attempts")
	return Role(
		name=str(frontmatter.get("name") or default_name).strip(),
		description=str(description).strip(),
		instructions=frontmatter_match.group(2).strip(),
		tools=_split_list(frontmatter.get("tools", [])),
		quality_threshold=_normalize_threshold(frontmatter.get("quality_threshold")),
		max_refinement_attempts=int(attempts) if isinstance(attempts, int) else None,
		source_path=source_path,
	)


class RoleRegistry:
	"""
	Immutable lookup of role name -> Role, populated once by load().

	Lookups before load() trigger it. No locking is needed afterwards.
	"""

	def __init__(self, search_paths: Iterable[Path], default_threshold: float = 0.7):
		self.search_paths = [Path(p) for p in search_paths]
		self.default_threshold = default_threshold
		self._roles: Mapping[str, Role] = MappingProxyType({})
		self._loaded = False

	def load(self) -> Mapping[str, Role]:
		"""Discover all role files. Later search paths override earlier ones."""
		roles: dict[str, Role] = {}
		for directory in self.search_paths:
			if not directory.is_dir():
				continue
			for path in sorted(directory.iterdir()):
				if not path.name.endswith(ROLE_SUFFIXES):
					continue
				try:
					role = parse_role_file(path.read_text(encoding="utf-8"), str(path))
				except OSError as e:
					logger.error(f"Failed to read role file {path}: {e}")
					continue
				if role is None:
					continue
				if role.name in roles:
					logger.info(f"Role '{role.name}' from {path} overrides {roles[role.name].source_path}")
				roles[role.name] = role

		self._roles = MappingProxyType(roles)
		self._loaded = True
		logger.info(f"Loaded {len(roles)} roles")
		return self._roles

	def _ensure_loaded(self) -> None:
		if not self._loaded:
			self.load()

	def __contains__(self, name: str) -> bool:
		self._ensure_loaded()
		return name in self._roles

	def get(self, name: str) -> Role:
		"""
		Get a role by name.

		Raises:
			RoleNotFound: If no role has that name
		"""
		self._ensure_loaded()
		role = self._roles.get(name)
		if role is None:
			raise RoleNotFound(
				f"Unknown role: {name}",
				details={"role": name, "available_roles": self.names()},
			)
		return role

	def names(self) -> list[str]:
		self._ensure_loaded()
		return sorted(self._roles)

	def list_roles(self) -> list[dict]:
		"""List all roles with basic info, sorted by name."""
		self._ensure_loaded()
		return [
			{
				"name": role.name,
				"description": role.description,
				"tools": list(role.tools),
				"quality_threshold": self.threshold_for(role.name),
				"source": "builtin" if Path(role.source_path).parent == BUILTIN_ROLES_DIR else "user",
			}
			for role in sorted(self._roles.values(), key=lambda r: r.name)
		]

	def threshold_for(self, name: str) -> float:
		"""Quality threshold: role file, then built-in table, then default."""
		self._ensure_loaded()
		role = self._roles.get(name)
		if role is not None and role.quality_threshold is not None:
			return role.quality_threshold
		return ROLE_THRESHOLDS.get(name, self.default_threshold)

	def refinement_cap_for(self, name: str, default: int) -> int:
		self._ensure_loaded()
		role = self._roles.get(name)
		if role is not None and role.max_refinement_attempts is not None:
			return role.max_refinement_attempts
		return default


def get_role_registry(config) -> RoleRegistry:
	"""Build a registry over the built-in roles and the user's roles_dir."""
	registry = RoleRegistry(
		[BUILTIN_ROLES_DIR, config.roles_dir],
		default_threshold=config.quality_threshold,
	)
	registry.load()
	return registry
