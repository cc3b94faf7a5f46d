"""
OpenLens host module.

The host executor interface and an HTTP page host.
"""

from openlens.host.base import HostError, HostExecutor, HostRequest, HostResponse
from openlens.host.http import HttpPageHost

__all__ = ["HostError", "HostExecutor", "HostRequest", "HostResponse", "HttpPageHost"]
