"""
OpenLens state management module.

This module provides whole-document persistence for session snapshots,
permission grants and the MCP server registry.
"""

from openlens.state.store import StateStore

__all__ = ["StateStore"]
