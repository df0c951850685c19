"""
Periodic staleness sweep.

Safety net for ends the engine never saw: realtime calls whose platform
object already reports a terminal state, and webhook calls that went quiet
(webhooks have no guaranteed terminal notification).
"""
import asyncio
from contextlib import suppress
from typing import Callable, List, Optional

from logging_setup import get_logger, Component

from .call import CallSource, is_terminal_state
from .config import get_config
from .engine import ReconciliationEngine, engine
from .platform import read_field
from .registry import CallRegistry, call_registry


logger = get_logger(Component.SWEEPER)


class StalenessDetector:
    """Retires calls that are logically dead but still registered."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        registry: CallRegistry,
        interval_seconds: float = 2.0,
        stale_after_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.engine = engine
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """
        Run one pass. Returns the ids retired by this pass.

        Webhook calls are retired once `now - last_seen` exceeds the
        threshold (strictly greater).
        """
        if not len(self.registry):
            return []

        if now is None:
            now = (self._clock or self.registry.clock)()
        retired: List[str] = []

        for call in self.registry.list_calls():
            if call.source == CallSource.REALTIME:
                live_state = read_field(call.capability, "state")
                if is_terminal_state(call.state):
                    state = call.state
                elif is_terminal_state(live_state):
                    state = live_state
                else:
                    continue
                logger.info("Call in end state during sweep", call_id=call.call_id, state=state)
                if self.engine.retire(call.call_id, reason="terminal_on_sweep"):
                    retired.append(call.call_id)
            else:
                age = now - call.last_seen
                if age <= self.stale_after_seconds:
                    continue
                logger.info(
                    "Webhook call is stale",
                    call_id=call.call_id,
                    age_minutes=round(age / 60, 1),
                )
                if self.engine.retire(call.call_id, reason="stale"):
                    retired.append(call.call_id)

        return retired

    async def run(self) -> None:
        logger.info("Staleness sweep started", interval_ms=int(self.interval_seconds * 1000))
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.exception("Staleness sweep failed", error=str(e))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Staleness sweep stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


_config = get_config()

# Global sweeper
sweeper = StalenessDetector(
    engine,
    call_registry,
    interval_seconds=_config.sweep_interval_ms / 1000,
    stale_after_seconds=_config.webhook_stale_seconds,
)
