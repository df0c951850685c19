"""
Relay errors and platform error classification.

Platform failures are classified into stable categories and never crash the
relay: hangup failures still retire the call, answer failures are reported
to the observer that asked.
"""
from typing import Optional

from logging_setup import get_logger, Component
from observability.events import Component as EventComponent, EventEmitter


logger = get_logger(Component.PLATFORM)
emitter = EventEmitter(EventComponent.ENGINE)


class RelayError(Exception):
    """Base class for errors raised by the relay core."""


class CallNotFound(RelayError):
    """A command referenced a call id absent from the registry."""

    def __init__(self, call_id: Optional[str], message: str = "Call not found"):
        super().__init__(message)
        self.call_id = call_id


class PlatformCommandFailure(RelayError):
    """The platform capability rejected or failed an answer/hangup."""

    def __init__(self, call_id: str, operation: str, cause: Optional[BaseException] = None):
        detail = str(cause) if cause is not None else "command not possible"
        super().__init__(f"{operation} failed: {detail}")
        self.call_id = call_id
        self.operation = operation
        self.cause = cause


class MalformedWebhook(RelayError):
    """Webhook body is missing `event` or `params`."""


class ProviderErrorCategory:
    """Stable platform error categories."""

    NOT_FOUND = "provider.not_found"
    AUTH_FAILED = "provider.auth_failed"
    NETWORK_ERROR = "provider.network_error"
    RATE_LIMITED = "provider.rate_limited"
    CAPACITY_LIMITED = "provider.capacity_limited"
    UNKNOWN_ERROR = "provider.unknown_error"


class ProviderErrorHandler:
    """Classifies and records platform errors."""

    @staticmethod
    def classify_error(error: BaseException) -> str:
        code = str(getattr(error, "code", "") or "")
        error_str = str(error).lower()

        if code == "404" or "not found" in error_str or "404" in error_str:
            return ProviderErrorCategory.NOT_FOUND

        if code in ("401", "403") or "auth" in error_str or "unauthorized" in error_str:
            return ProviderErrorCategory.AUTH_FAILED

        if "network" in error_str or "timeout" in error_str or "connection" in error_str:
            return ProviderErrorCategory.NETWORK_ERROR

        if code == "429" or "rate limit" in error_str or "throttle" in error_str:
            return ProviderErrorCategory.RATE_LIMITED

        if code == "503" or "capacity" in error_str:
            return ProviderErrorCategory.CAPACITY_LIMITED

        return ProviderErrorCategory.UNKNOWN_ERROR

    @staticmethod
    def handle_error(call_id: str, error: BaseException, operation: str) -> str:
        """
        Classify, log and emit a provider.event for a platform error.
        Always returns a category, never raises.
        """
        category = ProviderErrorHandler.classify_error(error)

        detail = str(error)
        lowered = detail.lower()
        if "secret" in lowered or "password" in lowered or "token" in lowered:
            detail = "[redacted: potential secret]"

        emitter.provider_event(
            call_id=call_id,
            category=category,
            operation=operation,
            detail=detail,
        )

        if category == ProviderErrorCategory.NOT_FOUND:
            logger.info(
                "Call already gone on platform side",
                call_id=call_id,
                operation=operation,
            )
        else:
            logger.error(
                "Platform command failed",
                call_id=call_id,
                operation=operation,
                category=category,
                error=detail,
                error_type=type(error).__name__,
            )

        return category
