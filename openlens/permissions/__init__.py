"""
OpenLens permissions module.

Scoped capability grants and the consent gate in front of every tool call.
"""

from openlens.permissions.guard import (
    GRANT_TTL,
    Decision,
    DecisionSurface,
    DecisionSurfaceError,
    PermissionGrant,
    PermissionGuard,
    Scope,
)

__all__ = [
    "GRANT_TTL",
    "Decision",
    "DecisionSurface",
    "DecisionSurfaceError",
    "PermissionGrant",
    "PermissionGuard",
    "Scope",
]
