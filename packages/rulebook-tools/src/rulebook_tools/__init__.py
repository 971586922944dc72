"""Rulebook MCP tool servers."""
