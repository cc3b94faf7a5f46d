"""
OpenLens - Auditable tool-calling agent for the page in front of you.

An LLM picks tools; every tool runs behind a scoped permission guard and
every action lands in an append-only session ledger.

Architecture:
- LLM gateway negotiates native or prompt-based tool calling per backend
- Built-in page tools plus tools discovered on remote MCP servers
- Grants, MCP servers and the last session live in .openlens/state/
- Processing location (local or cloud) is tracked for every call
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

__all__ = ["__version__"]
