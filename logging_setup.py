"""
Structured logging for the call relay.

Every record is one JSON object carrying the component that wrote it and,
when known, the call it concerns. Keyword arguments passed to a log call
become top-level fields, so relay logs can be filtered by call id the same
way as the observability events.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, TextIO


class Component(str, Enum):
    """Parts of the relay that write logs."""
    RELAY = "relay"
    WEBHOOK_SERVER = "webhook_server"
    REGISTRY = "registry"
    ENGINE = "engine"
    SWEEPER = "sweeper"
    FANOUT = "fanout"
    OBSERVER = "observer"
    PLATFORM = "platform"
    CONTROL_API = "control_api"


LOGGER_PREFIX = "call_relay"

# LogRecord attributes that are never copied into the JSON body
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName", "component", "call_id"}


class JSONFormatter(logging.Formatter):
    """Render a record as `{timestamp, severity, component, call_id?, message, ...fields}`."""

    def format(self, record: logging.LogRecord) -> str:
        body: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
        }

        call_id = getattr(record, "call_id", None)
        if call_id is not None:
            body["call_id"] = call_id

        body["message"] = record.getMessage()
        body.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RECORD_ATTRS
        )

        if record.exc_info:
            body["exception"] = self.formatException(record.exc_info)

        return json.dumps(body, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Logger bound to a component and optionally a call id.

        log = get_logger(Component.ENGINE).with_call("C1")
        log.info("Call retired", reason="stale")
    """

    def __init__(
        self,
        component: "str | Component",
        call_id: Optional[str] = None,
        logger_name: Optional[str] = None,
    ):
        self.component = component.value if isinstance(component, Component) else str(component)
        self.call_id = call_id
        self.logger = logging.getLogger(logger_name or f"{LOGGER_PREFIX}.{self.component}")

    def _log(self, level: int, message: str, fields: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return

        options = {
            name: fields.pop(name)
            for name in ("exc_info", "stack_info")
            if name in fields
        }
        fields["component"] = self.component
        if self.call_id is not None:
            fields.setdefault("call_id", self.call_id)

        # stacklevel 3 points the record at our caller, not this wrapper
        self.logger.log(level, message, extra=fields, stacklevel=3, **options)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, fields)

    def critical(self, message: str, **fields: Any) -> None:
        self._log(logging.CRITICAL, message, fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Error with the exception currently being handled attached."""
        fields.setdefault("exc_info", True)
        self._log(logging.ERROR, message, fields)

    def with_call(self, call_id: str) -> "StructuredLogger":
        return StructuredLogger(self.component, call_id=call_id, logger_name=self.logger.name)


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Level name; unknown names fall back to INFO
        use_json: JSON lines (True) or plain text (False)
        include_timestamp: Prefix plain text lines with the time
        stream: Output stream, stdout by default

    Replaces any handlers already installed, so calling it twice is safe.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        fmt = "%(levelname)s %(name)s: %(message)s"
        handler.setFormatter(logging.Formatter(f"%(asctime)s {fmt}" if include_timestamp else fmt))

    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric)


def get_logger(component: "str | Component", call_id: Optional[str] = None) -> StructuredLogger:
    """Logger for one relay component."""
    return StructuredLogger(component, call_id=call_id)
