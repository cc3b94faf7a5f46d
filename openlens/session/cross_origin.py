"""Cross-origin monitor - flags data from several origins merging in one context."""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from openlens.session.sensitivity import HIGH


@dataclass
class StepOrigin:
    """What the monitor needs to know about a completed step."""

    origin: Optional[str]
    sensitivity: Optional[str] = None


class CrossOriginMonitor:
    """
    Advisory check run once per step in plan-execution mode.

    Returns a warning when the current step's origin is new and at least one
    other origin is already in context. Never blocks execution.
    """

    def __init__(self, provider_name: str, is_local: bool):
        self.provider_name = provider_name
        self.is_local = is_local

    def check(self, completed: Iterable[StepOrigin], current_origin: Optional[str]) -> Optional[str]:
        completed = list(completed)
        origins: List[str] = []
        for step in completed:
            if step.origin and step.origin not in origins:
                origins.append(step.origin)

        if not current_origin or not origins or current_origin in origins:
            return None

        merged = " + ".join(origins + [current_origin])
        if self.is_local:
            location_note = " Processing is local, data stays on device."
        else:
            location_note = f" All this data is being sent to {self.provider_name} cloud servers."

        if any(step.sensitivity == HIGH for step in completed):
            return f"Data from {merged} is merging in the AI context. This includes sensitive data.{location_note}"
        return f"Data from {merged} is merging in the AI context.{location_note}"
