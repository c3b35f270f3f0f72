"""MCP SSH broker: persistent SSH sessions, async commands and port forwards for MCP agents."""

__version__ = "0.1.0"
