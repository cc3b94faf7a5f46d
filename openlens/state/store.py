"""
OpenLens State Store - Whole-document persistence of session state.

This module provides the StateStore class, which keeps the session snapshot,
the permission-grant list and the MCP server registry as YAML documents.
Every write replaces the whole document.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class StateStore:
    """
    Filesystem store for OpenLens state.

    State files are stored in ``.openlens/state/``:
    - session.yaml      - last session snapshot
    - grants.yaml       - permission grants
    - mcp_servers.yaml  - registered MCP servers

    Example:
        >>> store = StateStore(Path(".openlens/state"))
        >>> store.save_document("grants", [{"type": "read", ...}])
        >>> store.load_document("grants")
    """

    SESSION = "session"
    GRANTS = "grants"
    MCP_SERVERS = "mcp_servers"

    def __init__(self, state_dir: Optional[Path] = None):
        """
        Initialize the StateStore.

        Args:
            state_dir: Directory for state files. Defaults to ./.openlens/state.
        """
        self.state_dir = Path(state_dir) if state_dir else Path.cwd() / ".openlens" / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self.state_dir / f"{name}.yaml"

    def load_document(self, name: str) -> Any:
        """Load a document, or None if it was never written."""
        path = self._path(name)
        if not path.exists():
            return None

        with open(path) as f:
            return yaml.safe_load(f)

    def save_document(self, name: str, data: Any) -> Path:
        """Replace a document with ``data``."""
        path = self._path(name)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        tmp.replace(path)
        return path

    def delete_document(self, name: str) -> bool:
        path = self._path(name)
        if path.exists():
            path.unlink()
            return True
        return False

    # ── Typed helpers ─────────────────────────────────────────────────────

    def load_session(self) -> Optional[Dict[str, Any]]:
        return self.load_document(self.SESSION)

    def save_session(self, session: Dict[str, Any]) -> Path:
        return self.save_document(self.SESSION, session)

    def load_grants(self) -> List[Dict[str, Any]]:
        return self.load_document(self.GRANTS) or []

    def save_grants(self, grants: List[Dict[str, Any]]) -> Path:
        return self.save_document(self.GRANTS, grants)

    def load_servers(self) -> List[Dict[str, Any]]:
        return self.load_document(self.MCP_SERVERS) or []

    def save_servers(self, servers: List[Dict[str, Any]]) -> Path:
        return self.save_document(self.MCP_SERVERS, servers)
