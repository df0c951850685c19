"""
Seam between the relay and the voice platform SDK.

The SDK itself is not part of this project. The relay only needs a per-call
capability object (answer, hangup, state, event subscription) and a client
that hands new incoming calls over. Per-call SDK callbacks are turned into
`PlatformEvent` values and fed to a single dispatch function.
"""
from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from logging_setup import get_logger, Component


logger = get_logger(Component.PLATFORM)


class CallCapability(Protocol):
    """Live platform call object."""

    id: str
    state: Optional[str]

    async def answer(self, media: Optional[Dict[str, Any]] = None) -> Any:
        ...

    async def hangup(self) -> Any:
        ...

    def on(self, event_name: str, callback: Callable[[Any], Any]) -> Any:
        ...


class VoiceClient(Protocol):
    """Connected platform client that reports incoming calls."""

    def listen(
        self,
        topics: List[str],
        on_call_received: Callable[[CallCapability], Any],
    ) -> Union[Any, Awaitable[Any]]:
        ...


class PlatformEventKind:
    """Per-call push events the relay reacts to."""

    STATE = "call.state"
    ANSWERED = "call.answered"
    FAILED = "call.failed"
    ENDED = "call.ended"
    MEDIA_STREAMING = "media.streaming"
    TRACK = "track"
    MEDIA_SDP = "media.sdp"


# SDK event name -> relay event kind
SDK_EVENTS = {
    "state": PlatformEventKind.STATE,
    "call.answered": PlatformEventKind.ANSWERED,
    "call.failed": PlatformEventKind.FAILED,
    "call.ended": PlatformEventKind.ENDED,
}

MEDIA_SDK_EVENTS = {
    "media.streaming": PlatformEventKind.MEDIA_STREAMING,
    "track": PlatformEventKind.TRACK,
    "media.sdp": PlatformEventKind.MEDIA_SDP,
}

# State implied by kinds whose payload carries none
IMPLIED_STATES = {
    PlatformEventKind.ANSWERED: "answered",
    PlatformEventKind.FAILED: "failed",
    PlatformEventKind.ENDED: "ended",
}


@dataclass
class PlatformEvent:
    """A push event about one call."""

    kind: str
    call_id: str
    state: Optional[str] = None
    payload: Any = field(default=None, repr=False)


def read_field(obj: Any, *names: str) -> Any:
    """First non-empty attribute or mapping key among `names`."""
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, dict):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value not in (None, ""):
            return value
    return None


def payload_state(payload: Any) -> Optional[str]:
    """State carried by an SDK state event (`{"state"}` or `{"call": {"state"}}`)."""
    state = read_field(payload, "state", "call_state")
    if state is None:
        state = read_field(read_field(payload, "call"), "state")
    return state


def build_event(kind: str, call_id: str, payload: Any, capability: Any = None) -> PlatformEvent:
    state = None
    if kind == PlatformEventKind.STATE:
        state = payload_state(payload) or read_field(capability, "state")
    elif kind in IMPLIED_STATES:
        state = IMPLIED_STATES[kind]
    return PlatformEvent(kind=kind, call_id=call_id, state=state, payload=payload)


def _register(
    capability: Any,
    events: Dict[str, str],
    sink: Callable[[PlatformEvent], None],
) -> bool:
    call_id = read_field(capability, "id")
    on = getattr(capability, "on", None)
    if not callable(on):
        logger.warning("Capability has no event subscription", call_id=call_id)
        return False

    for sdk_name, kind in events.items():
        def _callback(payload: Any = None, _kind: str = kind) -> None:
            sink(build_event(_kind, call_id, payload, capability))

        try:
            on(sdk_name, _callback)
        except Exception as e:
            logger.warning(
                "Could not subscribe to platform event",
                call_id=call_id,
                sdk_event=sdk_name,
                error=str(e),
            )
            return False
    return True


def subscribe(capability: Any, sink: Callable[[PlatformEvent], None]) -> bool:
    """Route the call's lifecycle events into `sink`."""
    return _register(capability, SDK_EVENTS, sink)


def subscribe_media(capability: Any, sink: Callable[[PlatformEvent], None]) -> bool:
    """Route the call's media metadata events into `sink` (after answer)."""
    return _register(capability, MEDIA_SDK_EVENTS, sink)


def load_voice_client_factory(path: str) -> Callable[..., Any]:
    """
    Resolve "package.module:callable".

    The callable receives the relay config and returns (or awaits to) a
    connected `VoiceClient`.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"voice client factory must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    if not callable(factory):
        raise ValueError(f"{path} is not callable")
    return factory


async def connect_voice_client(
    factory_path: str,
    config: Any,
    topics: List[str],
    on_call_received: Callable[[Any], Any],
) -> Optional[Any]:
    """
    Build the configured voice client and start listening for calls.

    Failures are logged and yield None; the relay keeps serving webhooks and
    observers without a realtime source.
    """
    if not factory_path:
        logger.warning("No voice client factory configured, running in webhook-only mode")
        return None

    try:
        factory = load_voice_client_factory(factory_path)
        client = factory(config)
        if inspect.isawaitable(client):
            client = await client

        listening = client.listen(topics, on_call_received)
        if inspect.isawaitable(listening):
            await listening
    except Exception as e:
        logger.exception(
            "Error starting voice client",
            factory=factory_path,
            error=str(e),
            error_type=type(e).__name__,
        )
        return None

    logger.info("Voice client listening", topics=topics)
    return client


async def disconnect_voice_client(client: Any) -> None:
    if client is None:
        return
    close = getattr(client, "disconnect", None) or getattr(client, "aclose", None)
    if not callable(close):
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("Error disconnecting voice client", error=str(e))
