"""
Call records and the state classes the relay reasons about.

The platform reports free-form state strings. The relay only cares whether a
state is terminal, and whether a live call may still be commanded.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


TERMINAL_STATES = frozenset({"ended", "ending", "completed", "busy", "failed", "canceled"})

# Live states in which answer/hangup may be sent to the platform.
COMMANDABLE_STATES = frozenset({"created", "ringing", "answered", "active"})


def is_terminal_state(state: Optional[str]) -> bool:
    """Anything not explicitly terminal (including unknown states) is live."""
    return state is not None and state.lower() in TERMINAL_STATES


def is_commandable_state(state: Optional[str]) -> bool:
    return state is not None and state.lower() in COMMANDABLE_STATES


class CallSource(str, Enum):
    """Ingestion path that produced a call record."""
    REALTIME = "realtime"
    WEBHOOK = "webhook"


@dataclass
class Call:
    """One call known to this process."""

    call_id: str
    source: CallSource
    state: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Monotonic clock reading of the last event that referenced this call
    last_seen: float = 0.0

    # Live platform object; realtime records only, never shared
    capability: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.call_id:
            raise ValueError("call_id is required")

    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)

    def is_commandable(self) -> bool:
        """True when answer/hangup may be sent to the platform."""
        return (
            self.source == CallSource.REALTIME
            and self.capability is not None
            and not self.is_terminal()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "source": self.source.value,
            "state": self.state,
            "from": self.from_number,
            "to": self.to_number,
            "created_at": self.created_at.isoformat(),
            "commandable": self.is_commandable(),
        }
