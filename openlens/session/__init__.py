"""
OpenLens session module.

The append-only session ledger and the views derived from it.
"""

from openlens.session.cross_origin import CrossOriginMonitor, StepOrigin
from openlens.session.ledger import AuditEvent, DataEntry, EventType, Session, SessionLedger
from openlens.session.sensitivity import classify_sensitivity

__all__ = [
    "AuditEvent",
    "CrossOriginMonitor",
    "DataEntry",
    "EventType",
    "Session",
    "SessionLedger",
    "StepOrigin",
    "classify_sensitivity",
]
