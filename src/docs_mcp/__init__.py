"""docs-mcp: grounded documentation search for coding agents."""

__version__ = "0.1.0"
