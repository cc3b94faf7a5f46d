"""Host executor - the opaque capability that reaches a page or content host."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

READ_CONTENT = "read-content"
FIND_TEXT = "find-text"
CLICK = "click"
FILL_FIELDS = "fill-fields"
NAVIGATE = "navigate"


class HostError(Exception):
    """Raised when the host executor cannot be reached."""


class HostRequest(BaseModel):
    """An opaque command plus constraints."""

    command: str
    params: Dict[str, Any] = Field(default_factory=dict)
    max_tokens: Optional[int] = None


class HostResponse(BaseModel):
    """What the host sent back."""

    success: bool = False
    data: Any = None
    summary: str = ""
    url: str = ""
    title: str = ""
    error: Optional[str] = None


class HostExecutor(ABC):
    """Stands in for a browser tab: ``invoke(handle, request) -> response``."""

    @abstractmethod
    def invoke(self, handle: str, request: HostRequest) -> HostResponse:
        """
        Run one command against the content behind ``handle``.

        Raises:
            HostError: If the host cannot be reached.
        """
        pass

    @abstractmethod
    def current_url(self, handle: str) -> Optional[str]:
        """URL currently shown behind ``handle``, if known."""
        pass

    def origin(self, handle: str) -> str:
        """Hostname the content behind ``handle`` is attributed to."""
        url = self.current_url(handle)
        if not url:
            return "unknown"
        return urlparse(url).hostname or "unknown"
