"""subagent-orchestrator MCP server."""

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .logging_config import setup_logging
from .tools.delegation import register_delegation_tools

mcp = FastMCP("subagent-orchestrator")
config = load_config()
setup_logging(log_dir=config.log_dir)
register_delegation_tools(mcp, config)
