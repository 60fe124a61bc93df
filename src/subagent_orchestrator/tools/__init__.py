"""Tools module - the worker tool layer and the MCP delegation tools."""
