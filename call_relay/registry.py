"""
Authoritative in-memory table of known calls.

Both ingestion paths write into the same table, keyed by call id. All access
happens on the event loop thread, so no lock is taken.
"""
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from logging_setup import get_logger, Component

from .call import Call, CallSource


logger = get_logger(Component.REGISTRY)


class CallRegistry:
    """Merges realtime and webhook sightings into one record per call id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._calls: Dict[str, Call] = {}
        self.clock = clock

    def upsert(
        self,
        call_id: str,
        source: CallSource,
        state: Optional[str] = None,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
        capability: Any = None,
    ) -> Tuple[Call, bool]:
        """
        Insert or merge fields into the record for `call_id`.

        A realtime sighting takes ownership of the record (source and
        capability); a webhook sighting never downgrades a realtime record.
        `from`/`to` are only filled while still unset. Returns the record and
        whether it was created.
        """
        now = self.clock()
        call = self._calls.get(call_id)
        created = call is None

        if call is None:
            call = Call(call_id=call_id, source=source, last_seen=now)
            self._calls[call_id] = call
        elif source == CallSource.REALTIME and call.source != CallSource.REALTIME:
            logger.info("Webhook call promoted to realtime", call_id=call_id)
            call.source = CallSource.REALTIME

        if state is not None:
            call.state = state
        if from_number and not call.from_number:
            call.from_number = from_number
        if to_number and not call.to_number:
            call.to_number = to_number
        if capability is not None and source == CallSource.REALTIME:
            call.capability = capability

        call.last_seen = now
        return call, created

    def get(self, call_id: str) -> Optional[Call]:
        return self._calls.get(call_id)

    def remove(self, call_id: str) -> bool:
        """Delete the record; False when there was nothing to delete."""
        return self._calls.pop(call_id, None) is not None

    def list_calls(
        self,
        source: Optional[CallSource] = None,
        state: Optional[str] = None,
    ) -> List[Call]:
        """Snapshot of current records with optional filters."""
        calls = list(self._calls.values())

        if source:
            calls = [c for c in calls if c.source == source]
        if state:
            calls = [c for c in calls if c.state == state]

        return calls

    def clear(self) -> None:
        self._calls.clear()

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    def __iter__(self) -> Iterator[Call]:
        return iter(list(self._calls.values()))


# Global call registry
call_registry = CallRegistry()
