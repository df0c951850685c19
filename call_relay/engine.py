"""
Call-state reconciliation.

Every observation about a call (incoming push, state push, webhook, observer
command, status poll, staleness sweep) goes through this module, which
decides the transition, mutates the registry and emits notifications in one
uninterrupted step. Per call the states are: unknown (not in the registry),
live, and terminal, which is retired immediately.

Retirement is the only path that emits `callEnded`, and it is keyed on the
registry removal succeeding, so at most one `callEnded` goes out per call.
"""
import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from logging_setup import get_logger, Component
from observability.events import Component as EventComponent, EventEmitter

from .call import Call, CallSource, is_commandable_state, is_terminal_state
from .config import get_config
from .errors import CallNotFound, PlatformCommandFailure, ProviderErrorHandler
from .fanout import Fanout, Observer, CALL_ENDED, CALL_STATUS, ENABLE_AUDIO_OUTPUT, MEDIA_CHANGES, fanout
from .media import describe_remote_stream, media_change
from .platform import (
    PlatformEvent,
    PlatformEventKind,
    read_field,
    subscribe,
    subscribe_media,
)
from .registry import CallRegistry, call_registry


logger = get_logger(Component.ENGINE)
emitter = EventEmitter(EventComponent.ENGINE)

ANSWER_MEDIA = {"audio": True, "video": False}

# States an SDK may still report right after answer() resolves
PRE_ANSWER_STATES = frozenset({"created", "ringing"})

MEDIA_KINDS = frozenset({
    PlatformEventKind.MEDIA_STREAMING,
    PlatformEventKind.TRACK,
    PlatformEventKind.MEDIA_SDP,
})


@dataclass
class AnswerResult:
    call_id: str
    state: Optional[str]
    remote_stream: Optional[Dict[str, Any]] = None


class ReconciliationEngine:
    """Owns the registry and is the only writer to it."""

    def __init__(
        self,
        registry: CallRegistry,
        fanout: Fanout,
        ended_memory: int = 1000,
        audio_output_delay: float = 1.0,
    ):
        self.registry = registry
        self.fanout = fanout
        self.audio_output_delay = audio_output_delay
        self._ended_memory = ended_memory
        # Ids already announced as ended, oldest first
        self._ended: "OrderedDict[str, None]" = OrderedDict()
        # Ids whose platform hangup is being awaited
        self._hangups_in_flight: Set[str] = set()

    # --- platform ingestion ---

    def on_incoming_call(self, capability: Any) -> Optional[Call]:
        """
        Incoming-call push from the platform (unknown -> live, realtime).
        Returns the registered call, or None if it was already terminal.
        """
        call_id = read_field(capability, "id")
        if not call_id:
            logger.warning("Incoming call without id ignored")
            return None

        state = read_field(capability, "state")
        from_number = read_field(capability, "from_number", "from")
        to_number = read_field(capability, "to_number", "to")
        log = logger.with_call(call_id)
        log.info("Incoming call received", state=state)

        if call_id in self._ended:
            if is_terminal_state(state):
                log.info("Terminal incoming push for ended call ignored", state=state)
                return None
            del self._ended[call_id]
            log.warning("Incoming call reuses an ended call id, starting a new lifecycle")

        existing = self.registry.get(call_id)
        already_realtime = existing is not None and existing.source == CallSource.REALTIME

        call, _ = self.registry.upsert(
            call_id,
            CallSource.REALTIME,
            state=state,
            from_number=from_number,
            to_number=to_number,
            capability=capability,
        )

        if call.is_terminal():
            self.retire(call_id, reason="terminal_on_arrival")
            return None

        if already_realtime:
            log.debug("Duplicate incoming push merged")
            return call

        subscribe(capability, self.dispatch)
        emitter.call_incoming(call_id, CallSource.REALTIME.value, call.from_number, call.to_number)
        self.fanout.incoming(call_id, call.from_number, call.to_number)
        return call

    def dispatch(self, event: PlatformEvent) -> None:
        """Single entry point for per-call platform push events."""
        if event.kind in MEDIA_KINDS:
            self._forward_media(event)
            return

        if event.kind == PlatformEventKind.ANSWERED:
            logger.info("Platform reports call answered", call_id=event.call_id)
        elif event.kind in (PlatformEventKind.FAILED, PlatformEventKind.ENDED):
            logger.info("Platform reports call terminated", call_id=event.call_id, kind=event.kind)

        self.observe(event.call_id, event.state, CallSource.REALTIME, reason=event.kind)

    def observe(
        self,
        call_id: str,
        state: Optional[str],
        source: CallSource,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[Call]:
        """
        Apply one state observation from either source.

        Terminal states retire the call (or announce the end of an unknown
        id once). Non-terminal states create webhook records on first
        sighting and broadcast `callActive` only when the state changed.
        """
        existing = self.registry.get(call_id)

        if is_terminal_state(state):
            if existing is None:
                self.end_unregistered(call_id, reason=reason or f"{source.value}_{state}")
            else:
                self.registry.upsert(call_id, source, state=state)
                self.retire(call_id, reason=reason or f"{source.value}_{state}")
            return None

        if existing is None:
            if source == CallSource.REALTIME:
                logger.debug("State push for unregistered call ignored", call_id=call_id, state=state)
                return None
            if call_id in self._ended:
                logger.info("Late webhook for ended call ignored", call_id=call_id, state=state)
                return None

        previous = existing.state if existing else None
        if existing is not None and existing.source == CallSource.REALTIME and source == CallSource.WEBHOOK:
            # Realtime pushes own the state of realtime calls.
            state = None

        call, created = self.registry.upsert(
            call_id,
            source,
            state=state,
            from_number=from_number,
            to_number=to_number,
        )

        if created:
            logger.info("Tracking webhook call", call_id=call_id, state=state)
            emitter.call_incoming(call_id, source.value, call.from_number, call.to_number)
            return call

        if state is not None and state != previous:
            emitter.call_state_changed(call_id, previous, state, source.value)
            self.fanout.active(call_id, state)

        return call

    # --- retirement ---

    def retire(self, call_id: str, reason: str) -> bool:
        """
        Remove the call and broadcast `callEnded`.
        False (and nothing emitted) when the call was already gone.
        """
        call = self.registry.get(call_id)
        if not self.registry.remove(call_id):
            return False

        self._remember_ended(call_id)
        last_state = call.state if call else None
        logger.info("Call retired", call_id=call_id, reason=reason, last_state=last_state)
        emitter.call_ended(call_id, reason=reason, last_state=last_state)
        self.fanout.ended(call_id)
        return True

    def end_unregistered(
        self,
        call_id: str,
        reason: str,
        requester: Optional[Observer] = None,
    ) -> bool:
        """
        Treat an id this process does not track as already ended.

        The first time, every observer is told. After that only the observer
        asking gets `callEnded`, so its cleanup can proceed.
        """
        if call_id in self._ended:
            self.fanout.send(requester, CALL_ENDED, {"callId": call_id})
            return False

        self._remember_ended(call_id)
        logger.info("Unknown call treated as ended", call_id=call_id, reason=reason)
        emitter.call_ended(call_id, reason=reason)
        self.fanout.ended(call_id)
        return True

    def end(self, call_id: str, reason: str, requester: Optional[Observer] = None) -> bool:
        if call_id in self.registry:
            return self.retire(call_id, reason)
        return self.end_unregistered(call_id, reason, requester)

    def was_ended(self, call_id: str) -> bool:
        return call_id in self._ended

    def reset(self) -> None:
        self.registry.clear()
        self._ended.clear()
        self._hangups_in_flight.clear()

    def _remember_ended(self, call_id: str) -> None:
        """
        Remember an announced end, evicting the oldest beyond `ended_memory`.

        An evicted id is unknown again: a terminal event arriving for it later
        is announced as a new end, so the guarantee of one `callEnded` per id
        only covers the most recent `ended_memory` ends.
        """
        self._ended[call_id] = None
        self._ended.move_to_end(call_id)
        while len(self._ended) > self._ended_memory:
            self._ended.popitem(last=False)

    # --- observer commands ---

    async def answer(self, call_id: str) -> AnswerResult:
        """
        Answer a realtime call with audio only.

        Raises CallNotFound when the call is unknown or ended, and
        PlatformCommandFailure when the platform refuses; the call stays live
        in that case so the observer can retry.
        """
        call = self.registry.get(call_id)
        if call is None:
            raise CallNotFound(call_id)

        if call.is_terminal():
            self.retire(call_id, reason="terminal_on_answer")
            raise CallNotFound(call_id, "Call already ended")

        if not call.is_commandable():
            raise PlatformCommandFailure(call_id, "answer")

        capability = call.capability
        log = logger.with_call(call_id)
        log.info("Answering call", state=call.state)

        try:
            answer_result = await capability.answer(media=dict(ANSWER_MEDIA))
        except Exception as e:
            ProviderErrorHandler.handle_error(call_id, e, "answer")
            raise PlatformCommandFailure(call_id, "answer", e) from e

        # Other events may have been processed while answering.
        call = self.registry.get(call_id)
        if call is None or call.capability is not capability:
            raise CallNotFound(call_id, "Call ended while answering")

        reported = read_field(capability, "state")
        if is_terminal_state(reported):
            self.retire(call_id, reason="terminal_after_answer")
            raise CallNotFound(call_id, "Call ended while answering")
        if reported is None or reported.lower() in PRE_ANSWER_STATES:
            reported = "active"

        self.observe(call_id, reported, CallSource.REALTIME)

        remote_stream = describe_remote_stream(capability, answer_result)
        if remote_stream is not None:
            self.fanout.broadcast(MEDIA_CHANGES, {"callId": call_id, "remoteStream": remote_stream})
        else:
            log.warning("No remote stream found immediately after answering")

        subscribe_media(capability, self.dispatch)
        self._schedule_audio_output(call_id)

        emitter.call_answered(call_id, reported, has_remote_stream=remote_stream is not None)
        log.info("Call answered", state=reported)
        return AnswerResult(call_id=call_id, state=reported, remote_stream=remote_stream)

    async def hangup(self, call_id: str, requester: Optional[Observer] = None) -> bool:
        """
        Hang up and retire. Always converges: afterwards the id is not in
        the registry, whatever the platform answered.
        """
        call = self.registry.get(call_id)
        log = logger.with_call(call_id)

        if call is None:
            log.info("Call not found for hangup, it may have already ended")
            return self.end_unregistered(call_id, reason="hangup_unknown", requester=requester)

        if call_id in self._hangups_in_flight:
            log.info("Platform hangup already in flight")
        elif call.is_commandable() and is_commandable_state(call.state):
            self._hangups_in_flight.add(call_id)
            try:
                result = await call.capability.hangup()
                log.info("Platform hangup completed", result=str(result) if result is not None else None)
            except Exception as e:
                ProviderErrorHandler.handle_error(call_id, e, "hangup")
            finally:
                self._hangups_in_flight.discard(call_id)
        else:
            log.info("Skipping platform hangup", state=call.state, source=call.source.value)

        # No-op if another signal retired the call while the hangup was in flight.
        return self.retire(call_id, reason="hangup")

    def status_check(self, call_id: str, requester: Optional[Observer] = None) -> Optional[Dict[str, Any]]:
        """
        Report a live call's state to the requester only; retire it if it
        turns out to be terminal or unknown. Returns the status payload for
        live calls, None otherwise.
        """
        call = self.registry.get(call_id)
        if call is None:
            logger.info("Call not found during status check, notifying as ended", call_id=call_id)
            self.end_unregistered(call_id, reason="status_check_unknown", requester=requester)
            return None

        live_state = read_field(call.capability, "state") if call.capability is not None else None
        if live_state is not None and live_state != call.state:
            self.observe(call_id, live_state, CallSource.REALTIME, reason="status_check")
            call = self.registry.get(call_id)
            if call is None:
                return None

        if call.is_terminal():
            self.retire(call_id, reason="status_check")
            return None

        status = {"callId": call_id, "state": call.state, "active": True}
        self.fanout.send(requester, CALL_STATUS, status)
        return status

    # --- media metadata ---

    def _forward_media(self, event: PlatformEvent) -> None:
        if event.call_id not in self.registry:
            return
        message = media_change(event)
        if message is not None:
            self.fanout.broadcast(MEDIA_CHANGES, message)

    def _schedule_audio_output(self, call_id: str) -> None:
        loop = asyncio.get_running_loop()
        loop.call_later(self.audio_output_delay, self._enable_audio_output, call_id)

    def _enable_audio_output(self, call_id: str) -> None:
        if call_id in self.registry:
            self.fanout.broadcast(ENABLE_AUDIO_OUTPUT, {"callId": call_id, "forceAudio": True})


_config = get_config()

# Global reconciliation engine
engine = ReconciliationEngine(
    call_registry,
    fanout,
    ended_memory=_config.ended_call_memory,
    audio_output_delay=_config.audio_output_delay_ms / 1000,
)
