"""Branch Graph MCP - branching reasoning graph with semantic evaluation."""

__version__ = "0.1.0"
