"""Roles module - Worker role discovery."""

from .loader import BUILTIN_ROLES_DIR, ROLE_THRESHOLDS, Role, RoleRegistry, get_role_registry, parse_role_file

__all__ = [
	"BUILTIN_ROLES_DIR",
	"ROLE_THRESHOLDS",
	"Role",
	"RoleRegistry",
	"get_role_registry",
	"parse_role_file",
]
