"""
Voice platform status webhooks.

Body shape: `{"event": str, "params": {"call_id": str, ...}}`. Terminal
events retire the call whether or not it is tracked. Other well-formed
events are acknowledged even when nothing can be done with them, so the
sender never retries them.
"""
from typing import Any, Dict, Optional, Tuple

from logging_setup import get_logger, Component
from observability.events import Component as EventComponent, EventEmitter

from .call import CallSource
from .engine import ReconciliationEngine, engine
from .errors import MalformedWebhook
from .platform import read_field


logger = get_logger(Component.WEBHOOK_SERVER)
emitter = EventEmitter(EventComponent.WEBHOOK)

TERMINAL_WEBHOOK_EVENTS = frozenset({"call.ended", "call.completed", "call.failed", "call.busy"})

# Live events whose name carries the state
LIVE_WEBHOOK_EVENTS = {
    "call.created": "created",
    "call.ringing": "ringing",
    "call.answered": "answered",
    "call.active": "active",
}


def parse_webhook(body: Any) -> Tuple[str, Dict[str, Any]]:
    """Validate the envelope. Raises MalformedWebhook."""
    if not isinstance(body, dict):
        raise MalformedWebhook("Invalid webhook data")

    event = body.get("event")
    params = body.get("params")
    if not isinstance(event, str) or not event:
        raise MalformedWebhook("Invalid webhook data: missing event")
    if not isinstance(params, dict):
        raise MalformedWebhook("Invalid webhook data: missing params")

    return event, params


def webhook_state(event: str, params: Dict[str, Any]) -> Optional[str]:
    state = read_field(params, "call_state", "state")
    if state is None:
        state = LIVE_WEBHOOK_EVENTS.get(event)
    return state


def webhook_numbers(params: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    device_params = read_field(read_field(params, "device"), "params")
    from_number = read_field(params, "from", "from_number") or read_field(device_params, "from_number")
    to_number = read_field(params, "to", "to_number") or read_field(device_params, "to_number")
    return from_number, to_number


class WebhookHandler:
    """Feeds status webhooks into the reconciliation engine."""

    def __init__(self, engine: ReconciliationEngine = engine):
        self.engine = engine

    def handle_webhook(self, body: Any) -> Dict[str, Any]:
        """
        Handle one webhook body.
        Raises MalformedWebhook for a bad envelope; otherwise always acknowledges.
        """
        event, params = parse_webhook(body)
        call_id = read_field(params, "call_id")

        if not call_id:
            logger.warning("Webhook without call_id acknowledged", event=event)
            return {"status": "ok"}

        logger.info("Webhook event", event=event, call_id=call_id)

        recognized = True
        if event in TERMINAL_WEBHOOK_EVENTS:
            logger.info("Call ended via webhook notification", call_id=call_id, event=event)
            self.engine.end(call_id, reason=f"webhook_{event}")
        else:
            state = webhook_state(event, params)
            if state is None:
                recognized = False
            else:
                from_number, to_number = webhook_numbers(params)
                self.engine.observe(
                    call_id,
                    state,
                    CallSource.WEBHOOK,
                    from_number=from_number,
                    to_number=to_number,
                    reason=f"webhook_{event}",
                )

        emitter.webhook_received(call_id, event, recognized)
        return {"status": "ok"}


# Global webhook handler
webhook_handler = WebhookHandler()
