"""
Structured JSON call events.

Every lifecycle decision the relay makes is written to stdout as one JSON
envelope and kept in the event store so the control API can replay a call's
history, including after the call has been retired.
"""

from __future__ import annotations

import json
import sys
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-producing components."""

    ENGINE = "engine"
    SWEEPER = "sweeper"
    WEBHOOK = "webhook"
    CONTROL_API = "control_api"
    OBSERVER = "observer"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}
NUMBER_PII = {"contains_pii": True, "fields": ["from", "to"], "handling": "raw"}


class EventEmitter:
    """Emits structured JSON call events."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        call_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit one event envelope.

        Args:
            event_type: Stable event type string (e.g., "call.ended")
            call_id: Platform call identifier
            severity: Event severity level
            correlation_id: Optional correlation ID for a command
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Additional event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "call_id": call_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or call_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)

    def call_incoming(
        self,
        call_id: str,
        source: str,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
    ) -> None:
        self.emit(
            "call.incoming",
            call_id,
            pii=NUMBER_PII,
            source=source,
            call={"from": from_number, "to": to_number},
        )

    def call_state_changed(
        self,
        call_id: str,
        from_state: Optional[str],
        to_state: str,
        source: str,
    ) -> None:
        self.emit(
            "call.state_changed",
            call_id,
            from_state=from_state,
            to_state=to_state,
            source=source,
        )

    def call_answered(self, call_id: str, state: Optional[str], has_remote_stream: bool) -> None:
        self.emit(
            "call.answered",
            call_id,
            state=state,
            has_remote_stream=has_remote_stream,
        )

    def call_ended(self, call_id: str, reason: str, last_state: Optional[str] = None) -> None:
        self.emit(
            "call.ended",
            call_id,
            reason=reason,
            last_state=last_state,
        )

    def command_received(self, call_id: str, command: str, correlation_id: str) -> None:
        self.emit(
            "control.command_received",
            call_id,
            correlation_id=correlation_id,
            command=command,
        )

    def command_applied(
        self,
        call_id: str,
        command: str,
        correlation_id: str,
        result: str,
        error_class: Optional[str] = None,
    ) -> None:
        fields: Dict[str, Any] = {"command": command, "result": result}
        if error_class:
            fields["error_class"] = error_class
        self.emit(
            "control.command_applied",
            call_id,
            severity=Severity.INFO if result == "ok" else Severity.ERROR,
            correlation_id=correlation_id,
            **fields,
        )

    def webhook_received(self, call_id: str, webhook_event: str, recognized: bool) -> None:
        self.emit(
            "webhook.received",
            call_id,
            webhook_event=webhook_event,
            recognized=recognized,
        )

    def provider_event(
        self,
        call_id: str,
        category: str,
        operation: str,
        detail: Optional[str] = None,
    ) -> None:
        """Emit provider.event for platform command failures."""
        benign = category == "provider.not_found"
        self.emit(
            "provider.event",
            call_id,
            severity=Severity.INFO if benign else Severity.WARN,
            category=category,
            operation=operation,
            detail=detail,
        )


def new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"
