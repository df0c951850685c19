"""
Per-browser observer sessions on the bidirectional channel.

Frames are JSON `{"event": name, "data": {...}}` both ways. Outbound
messages go through a per-session outbox drained by one pump task, so a slow
browser never blocks the engine and every browser sees a call's
notifications in the order they were produced.
"""
import asyncio
import json
import time
import uuid
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from logging_setup import get_logger, Component
from observability.events import Component as EventComponent, EventEmitter, new_correlation_id

from .engine import ReconciliationEngine, engine
from .errors import RelayError
from .fanout import (
    CALL_ANSWERED,
    CALL_ENDED,
    CALL_ERROR,
    INCOMING_CALL,
    PONG,
    Fanout,
    fanout,
)


logger = get_logger(Component.OBSERVER)
emitter = EventEmitter(EventComponent.OBSERVER)

ANSWER_CALL = "answerCall"
HANGUP_CALL = "hangupCall"
CHECK_CALL_STATUS = "checkCallStatus"
PING = "ping"

ANSWERED_STATUS = "Call Active"


class Channel(Protocol):
    async def send_json(self, data: Any) -> None:
        ...


class ObserverSession:
    """One connected browser and the call it is currently showing."""

    def __init__(
        self,
        channel: Channel,
        engine: ReconciliationEngine = engine,
        fanout: Fanout = fanout,
        observer_id: Optional[str] = None,
    ):
        self.observer_id = observer_id or uuid.uuid4().hex
        self.channel = channel
        self.engine = engine
        self.fanout = fanout
        self.current_call_id: Optional[str] = None
        self._outbox: "asyncio.Queue[Tuple[str, Dict[str, Any]]]" = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            ANSWER_CALL: self._on_answer,
            HANGUP_CALL: self._on_hangup,
            CHECK_CALL_STATUS: self._on_check_status,
            PING: self._on_ping,
        }

    # --- outbound ---

    def deliver(self, event: str, data: Dict[str, Any]) -> None:
        self._track(event, data)
        self._outbox.put_nowait((event, data))

    def _track(self, event: str, data: Dict[str, Any]) -> None:
        call_id = data.get("callId")
        if event == INCOMING_CALL and self.current_call_id is None:
            self.current_call_id = call_id
        elif event == CALL_ENDED and call_id == self.current_call_id:
            self.current_call_id = None

    async def _pump(self) -> None:
        while True:
            event, data = await self._outbox.get()
            try:
                await self.channel.send_json({"event": event, "data": data})
            except Exception as e:
                logger.warning(
                    "Observer send failed, stopping delivery",
                    observer_id=self.observer_id,
                    event=event,
                    error=str(e),
                )
                self.fanout.unregister(self)
                return
            finally:
                self._outbox.task_done()

    def start(self) -> None:
        self.fanout.register(self)
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def close(self) -> None:
        self.fanout.unregister(self)
        if self._pump_task is not None:
            self._pump_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

    @property
    def running(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    # --- inbound ---

    async def handle_text(self, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON frame", observer_id=self.observer_id, size=len(text))
            return
        await self.handle_message(message)

    async def handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning("Ignoring frame without event envelope", observer_id=self.observer_id)
            return

        event = message.get("event")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        handler = self._handlers.get(event)
        if handler is None:
            logger.warning("Unknown observer event", observer_id=self.observer_id, event=event)
            return

        await handler(data)

    def _require_call_id(self, data: Dict[str, Any], command: str) -> Optional[str]:
        call_id = data.get("callId")
        if isinstance(call_id, str) and call_id:
            return call_id
        logger.warning("Command without callId", observer_id=self.observer_id, command=command)
        self.deliver(CALL_ERROR, {"callId": None, "error": "callId is required"})
        return None

    async def _on_answer(self, data: Dict[str, Any]) -> None:
        call_id = self._require_call_id(data, ANSWER_CALL)
        if call_id is None:
            return

        correlation_id = new_correlation_id()
        emitter.command_received(call_id, ANSWER_CALL, correlation_id)

        try:
            result = await self.engine.answer(call_id)
        except RelayError as e:
            logger.error("Error answering call", call_id=call_id, error=str(e), error_type=type(e).__name__)
            emitter.command_applied(call_id, ANSWER_CALL, correlation_id, result="error", error_class=type(e).__name__)
            self.deliver(CALL_ERROR, {"callId": call_id, "error": str(e)})
            return

        self.current_call_id = call_id
        emitter.command_applied(call_id, ANSWER_CALL, correlation_id, result="ok")
        self.deliver(CALL_ANSWERED, {
            "callId": call_id,
            "status": ANSWERED_STATUS,
            "remoteStream": result.remote_stream,
        })

    async def _on_hangup(self, data: Dict[str, Any]) -> None:
        call_id = self._require_call_id(data, HANGUP_CALL)
        if call_id is None:
            return

        correlation_id = new_correlation_id()
        emitter.command_received(call_id, HANGUP_CALL, correlation_id)
        await self.engine.hangup(call_id, requester=self)
        emitter.command_applied(call_id, HANGUP_CALL, correlation_id, result="ok")

    async def _on_check_status(self, data: Dict[str, Any]) -> None:
        call_id = self._require_call_id(data, CHECK_CALL_STATUS)
        if call_id is None:
            return
        self.engine.status_check(call_id, requester=self)

    async def _on_ping(self, data: Dict[str, Any]) -> None:
        self.deliver(PONG, {
            "callId": data.get("callId"),
            "originalTimestamp": data.get("timestamp"),
            "serverTimestamp": int(time.time() * 1000),
        })
