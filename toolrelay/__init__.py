"""toolrelay -- streaming LLM exchanges extended with MCP tool servers."""

__version__ = "0.1.0"
