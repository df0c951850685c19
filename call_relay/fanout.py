"""
Notification fanout to connected observers.

Delivery is synchronous enqueueing: `broadcast` hands the message to every
observer's outbox before returning, so the engine can decide, mutate and
notify without yielding to the loop. Each observer drains its own outbox in
order, which keeps per-call ordering identical for every observer.
"""
from typing import Any, Dict, List, Optional, Protocol

from logging_setup import get_logger, Component


logger = get_logger(Component.FANOUT)


INCOMING_CALL = "incomingCall"
CALL_ACTIVE = "callActive"
CALL_ANSWERED = "callAnswered"
CALL_ENDED = "callEnded"
CALL_ERROR = "callError"
CALL_STATUS = "callStatus"
MEDIA_CHANGES = "mediaChanges"
ENABLE_AUDIO_OUTPUT = "enableAudioOutput"
PONG = "pong"


class Observer(Protocol):
    """Anything that can receive notifications."""

    observer_id: str

    def deliver(self, event: str, data: Dict[str, Any]) -> None:
        ...


class Fanout:
    """Broadcasts lifecycle notifications to every registered observer."""

    def __init__(self):
        self._observers: Dict[str, Observer] = {}

    def register(self, observer: Observer) -> None:
        self._observers[observer.observer_id] = observer
        logger.info("Observer connected", observer_id=observer.observer_id, observers=len(self._observers))

    def unregister(self, observer: Observer) -> None:
        if self._observers.pop(observer.observer_id, None) is not None:
            logger.info("Observer disconnected", observer_id=observer.observer_id, observers=len(self._observers))

    @property
    def observers(self) -> List[Observer]:
        return list(self._observers.values())

    def broadcast(self, event: str, data: Dict[str, Any]) -> None:
        logger.debug("Broadcast", event=event, call_id=data.get("callId"), observers=len(self._observers))
        for observer in list(self._observers.values()):
            self._deliver(observer, event, data)

    def send(self, observer: Optional[Observer], event: str, data: Dict[str, Any]) -> None:
        """Deliver to a single observer (command responses)."""
        if observer is None:
            return
        self._deliver(observer, event, data)

    def incoming(self, call_id: str, from_number: Optional[str], to_number: Optional[str]) -> None:
        self.broadcast(INCOMING_CALL, {"callId": call_id, "from": from_number, "to": to_number})

    def active(self, call_id: str, state: Optional[str]) -> None:
        self.broadcast(CALL_ACTIVE, {"callId": call_id, "state": state})

    def ended(self, call_id: str) -> None:
        self.broadcast(CALL_ENDED, {"callId": call_id})

    def clear(self) -> None:
        self._observers.clear()

    def _deliver(self, observer: Observer, event: str, data: Dict[str, Any]) -> None:
        try:
            observer.deliver(event, dict(data))
        except Exception as e:
            # One broken observer must not starve the others.
            logger.warning(
                "Observer delivery failed",
                observer_id=observer.observer_id,
                event=event,
                error=str(e),
                error_type=type(e).__name__,
            )


# Global fanout
fanout = Fanout()
