"""MCP tool server (stdio and protected HTTP)."""
