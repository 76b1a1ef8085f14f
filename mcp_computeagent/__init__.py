"""MCP tools for the local compute agent."""
