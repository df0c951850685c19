"""
Bounded in-memory history of call events.

The control API reads a call's history from here, including after the call
has been retired. Nothing is persisted: history lives as long as the process,
and the oldest events are dropped once the store is full.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


DEFAULT_MAX_EVENTS = 10000


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StoredEvent:
    """One event envelope plus the fields queries filter on."""

    ts: datetime
    call_id: str
    event_type: str
    component: str
    envelope: Dict[str, Any]

    @classmethod
    def from_envelope(cls, event: Dict[str, Any]) -> "StoredEvent":
        envelope = dict(event)
        envelope.setdefault("call_id", "")
        envelope.setdefault("component", "unknown")
        envelope.setdefault("event_type", "unknown")
        envelope.setdefault("severity", "info")
        envelope.setdefault("correlation_id", envelope["call_id"])
        envelope.setdefault("pii", {"contains_pii": False, "fields": [], "handling": "none"})

        ts = _parse_ts(envelope.get("ts"))
        envelope["ts"] = ts.isoformat()

        return cls(
            ts=ts,
            call_id=envelope["call_id"],
            event_type=envelope["event_type"],
            component=envelope["component"],
            envelope=envelope,
        )

    def matches(
        self,
        call_id: Optional[str],
        event_type: Optional[str],
        component: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> bool:
        if call_id and self.call_id != call_id:
            return False
        if event_type and self.event_type != event_type:
            return False
        if component and self.component != component:
            return False
        if since and self.ts < since:
            return False
        if until and self.ts > until:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.envelope)


class EventStore:
    """FIFO of the most recent `max_events` call events."""

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        self.max_events = max_events
        self._events: deque[StoredEvent] = deque(maxlen=max_events)

    def store(self, event: Dict[str, Any]) -> None:
        self._events.append(StoredEvent.from_envelope(event))

    def query(
        self,
        call_id: Optional[str] = None,
        event_type: Optional[str] = None,
        component: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Matching events, oldest first.

        `since` and `until` are inclusive; `limit` keeps the oldest matches.
        """
        found: List[Dict[str, Any]] = []
        for event in self._events:
            if not event.matches(call_id, event_type, component, since, until):
                continue
            found.append(event.to_dict())
            if limit is not None and len(found) >= limit:
                break
        return found

    def clear(self) -> None:
        self._events.clear()

    def get_stats(self) -> Dict[str, Any]:
        oldest = self._events[0].ts.isoformat() if self._events else None
        newest = self._events[-1].ts.isoformat() if self._events else None
        return {
            "total_events": len(self._events),
            "max_events": self.max_events,
            "calls": len({e.call_id for e in self._events}),
            "oldest_event_ts": oldest,
            "newest_event_ts": newest,
        }


# Process-wide store fed by EventEmitter
event_store = EventStore()
