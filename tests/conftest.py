"""
Shared fakes and fixtures.

The voice platform is replaced by FakeCapability, browsers by
RecordingObserver. Global relay state is reset around every test.
"""
import asyncio
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from call_relay.engine import ReconciliationEngine, engine as global_engine
from call_relay.fanout import Fanout, fanout as global_fanout
from call_relay.registry import CallRegistry, call_registry
from observability.event_store import event_store


class FakePlatformError(Exception):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class FakeCapability:
    """Stands in for the platform's live call object."""

    def __init__(
        self,
        call_id: str,
        from_number: str = "+1555",
        to_number: str = "+1777",
        state: Optional[str] = "ringing",
        answered_state: Optional[str] = "active",
        answer_error: Optional[BaseException] = None,
        hangup_error: Optional[BaseException] = None,
        answer_result: Any = None,
    ):
        self.id = call_id
        self.from_number = from_number
        self.to_number = to_number
        self.state = state
        self.answered_state = answered_state
        self.answer_error = answer_error
        self.hangup_error = hangup_error
        self.answer_result = answer_result
        self.handlers: Dict[str, List[Callable[[Any], Any]]] = {}
        self.answer_calls: List[Any] = []
        self.hangup_calls = 0
        self.before_hangup: Optional[Callable[[], None]] = None

    def on(self, event_name: str, callback: Callable[[Any], Any]) -> None:
        self.handlers.setdefault(event_name, []).append(callback)

    def emit(self, event_name: str, payload: Any = None) -> None:
        for callback in self.handlers.get(event_name, []):
            callback(payload)

    async def answer(self, media: Any = None) -> Any:
        self.answer_calls.append(media)
        if self.answer_error is not None:
            raise self.answer_error
        self.state = self.answered_state
        return self.answer_result

    async def hangup(self) -> str:
        self.hangup_calls += 1
        # Yield like a real network round trip
        await asyncio.sleep(0)
        if self.before_hangup is not None:
            self.before_hangup()
        if self.hangup_error is not None:
            raise self.hangup_error
        self.state = "ended"
        return "ok"


class RecordingObserver:
    """Observer that records every notification it is handed."""

    def __init__(self, observer_id: str):
        self.observer_id = observer_id
        self.messages: List[Tuple[str, Dict[str, Any]]] = []

    def deliver(self, event: str, data: Dict[str, Any]) -> None:
        self.messages.append((event, data))

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [data for event, data in self.messages if event == name]

    def names(self) -> List[str]:
        return [event for event, _ in self.messages]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_relay_state():
    """Clear module-level registry, fanout and event store between tests."""
    global_engine.reset()
    global_fanout.clear()
    event_store.clear()
    yield
    global_engine.reset()
    global_fanout.clear()
    event_store.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return CallRegistry(clock=clock)


@pytest.fixture
def hub():
    return Fanout()


@pytest.fixture
def relay(registry, hub):
    """Fresh engine wired to its own registry and fanout."""
    return ReconciliationEngine(registry, hub, ended_memory=100, audio_output_delay=0)


@pytest.fixture
def observers(hub):
    first = RecordingObserver("browser-1")
    second = RecordingObserver("browser-2")
    hub.register(first)
    hub.register(second)
    return first, second


@pytest.fixture
def global_clock():
    """Fake clock installed on the module-level registry."""
    fake = FakeClock()
    original = call_registry.clock
    call_registry.clock = fake
    yield fake
    call_registry.clock = original


def stream(stream_id: str = "stream-1") -> SimpleNamespace:
    track = SimpleNamespace(kind="audio", id="track-1", enabled=True)
    return SimpleNamespace(id=stream_id, active=True, get_tracks=lambda: [track])
