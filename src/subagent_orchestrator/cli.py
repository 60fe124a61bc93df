"""CLI for subagent-orchestrator: serve, doctor, roles, validate and sessions commands."""

import argparse
import json
import platform
import sys
from importlib.metadata import version as pkg_version
from pathlib import Path

from rich.console import Console

from .config import load_config
from .errors import OrchestratorError
from .logging_config import setup_logging
from .roles import get_role_registry

CORE_DEPS = ["mcp", "httpx", "tenacity", "pydantic", "pyyaml", "platformdirs", "python-dotenv", "rich"]


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	from .server import mcp
	mcp.run()


def _check_config_toml(config_dir: Path) -> tuple[str, str | None]:
	"""Validate config.toml. Returns (status, issue_or_none)."""
	import tomllib

	toml_path = config_dir / "config.toml"
	if not toml_path.exists():
		return "not found (optional)", None
	try:
		with open(toml_path, "rb") as f:
			tomllib.load(f)
		return "valid", None
	except tomllib.TOMLDecodeError as e:
		return f"INVALID ({e})", f"config.toml parse error: {e}"


def _check_tool_servers(config) -> tuple[str, str | None]:
	"""Count configured tool servers. Returns (status, issue_or_none)."""
	from .tools.provider import load_tool_servers

	if config.tool_servers_file and not Path(config.tool_servers_file).expanduser().exists():
		return "file missing", f"tool_servers_file not found: {config.tool_servers_file}"
	servers = load_tool_servers(config)
	if not servers:
		return "none (workers answer without tools)", None
	return f"{len(servers)} configured ({', '.join(sorted(servers))})", None


def _check_server_startup() -> tuple[str, str | None]:
	"""Try importing and counting registered tools. Returns (status, issue_or_none)."""
	try:
		from .server import mcp as server_instance
		tools = server_instance._tool_manager._tools
		return f"OK ({len(tools)} tools registered)", None
	except Exception as e:
		return f"FAILED ({e})", f"Server startup failed: {e}"


def cmd_doctor(args: argparse.Namespace) -> None:
	"""Health check - verify installation and configuration."""
	print("subagent-orchestrator doctor")
	print(f"{'=' * 40}")

	config = load_config()
	issues: list[str] = []

	py_ver = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
	print(f"  Python:       {py_ver}")
	print(f"  Platform:     {platform.system()} {platform.machine()}")
	print()

	print("  Core deps:")
	for dep in CORE_DEPS:
		try:
			print(f"    {dep:22s} {pkg_version(dep)}")
		except Exception:
			print(f"    {dep:22s} NOT INSTALLED")
			issues.append(f"{dep} package not installed")
	print()

	print("  Config:")
	toml_status, toml_issue = _check_config_toml(config.config_dir)
	print(f"    config.toml:         {toml_status}")
	if toml_issue:
		issues.append(toml_issue)

	print(f"    model:               {config.model} @ {config.api_base}")
	if config.api_key:
		print("    API key:             set")
	else:
		print("    API key:             NOT SET")
		issues.append("No API key: set OPENAI_API_KEY or SUBAGENT_ORCHESTRATOR_API_KEY")

	servers_status, servers_issue = _check_tool_servers(config)
	print(f"    tool servers:        {servers_status}")
	if servers_issue:
		issues.append(servers_issue)
	print()

	print("  Roles:")
	roles = get_role_registry(config)
	names = roles.names()
	print(f"    {len(names)} loaded from built-ins and {config.roles_dir}")
	if not names:
		issues.append("No roles loaded")
	print()

	print("  Server:")
	server_status, server_issue = _check_server_startup()
	print(f"    {server_status}")
	if server_issue:
		issues.append(server_issue)
	print()

	if issues:
		print(f"  {len(issues)} issue(s) found:")
		for issue in issues:
			print(f"    - {issue}")
		sys.exit(1)
	else:
		print("  All checks passed.")


def cmd_roles(args: argparse.Namespace) -> None:
	"""List the roles available for delegation."""
	from .views import render_roles

	config = load_config()
	roles = get_role_registry(config).list_roles()
	if args.json:
		print(json.dumps(roles, indent=2))
		return
	render_roles(roles, Console())


def cmd_validate(args: argparse.Namespace) -> None:
	"""Score a saved worker output without calling the completion API."""
	from .orchestrator.facade import Orchestrator
	from .tools.provider import NullToolProvider
	from .views import render_assessment

	if args.file == "-":
		raw = sys.stdin.read()
	else:
		path = Path(args.file).expanduser()
		if not path.exists():
			print(f"Error: file not found: {path}", file=sys.stderr)
			sys.exit(2)
		raw = path.read_text(encoding="utf-8")

	config = load_config()
	orchestrator = Orchestrator(
		config=config,
		roles=get_role_registry(config),
		completion=None,
		tools=NullToolProvider(),
	)
	try:
		result = orchestrator.validate_output(
			raw,
			args.requirements,
			args.criteria,
			role=args.role or None,
			expected_deliverables=args.deliverables,
			original_task=args.task,
		)
	except OrchestratorError as e:
		print(f"Error: {e.message}", file=sys.stderr)
		if e.remediation:
			print(f"  {e.remediation}", file=sys.stderr)
		sys.exit(2)

	if args.json:
		print(json.dumps(result.to_dict(), indent=2))
	else:
		render_assessment(result, Console())

	if not result.assessment.passed:
		sys.exit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
	"""Show persisted session snapshots."""
	from .orchestrator.store import SessionStore
	from .views import render_sessions

	config = load_config()
	console = Console()
	if not config.sessions_db_path.exists():
		console.print("[dim]No session database yet. Set persist_sessions = true in config.toml.[/dim]")
		return

	store = SessionStore(config.sessions_db_path)
	if args.session_id:
		snapshot = store.get(args.session_id)
		if snapshot is None:
			print(f"Error: session not found: {args.session_id}", file=sys.stderr)
			sys.exit(1)
		print(json.dumps(snapshot.state, indent=2))
		return
	render_sessions(store.list_recent(limit=args.limit), console)


def main() -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="subagent-orchestrator",
		description="MCP server for delegating tasks to specialized sub-agents",
	)
	parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING or ERROR")
	subparsers = parser.add_subparsers(dest="command")

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	# doctor
	doctor_parser = subparsers.add_parser("doctor", help="Health check")
	doctor_parser.set_defaults(func=cmd_doctor)

	# roles
	roles_parser = subparsers.add_parser("roles", help="List available roles")
	roles_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
	roles_parser.set_defaults(func=cmd_roles)

	# validate
	validate_parser = subparsers.add_parser("validate", help="Score a saved agent output")
	validate_parser.add_argument("file", help="File with the agent's raw output ('-' for stdin)")
	validate_parser.add_argument("--requirements", required=True, help="What the output must address")
	validate_parser.add_argument("--criteria", default="", help="Additional quality criteria")
	validate_parser.add_argument("--role", default="", help="Role that produced the output")
	validate_parser.add_argument("--deliverables", default="", help="Expected deliverables")
	validate_parser.add_argument("--task", default="", help="Original task, quoted in the refinement prompt")
	validate_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
	validate_parser.set_defaults(func=cmd_validate)

	# sessions
	sessions_parser = subparsers.add_parser("sessions", help="Show persisted session snapshots")
	sessions_parser.add_argument("session_id", nargs="?", default=None, help="Session ID for detail view")
	sessions_parser.add_argument("--limit", type=int, default=50, help="Max sessions")
	sessions_parser.set_defaults(func=cmd_sessions)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	if args.command != "serve":
		setup_logging(level=args.log_level or "WARNING")
	args.func(args)
