"""In-process event bus.

Handlers run synchronously, in registration order, after the core operation
has committed. A failing handler is logged and skipped; ``publish`` never
raises, so a broken listener cannot undo the outcome it observes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from flask import current_app

logger = logging.getLogger(__name__)

EVENT_BUS_EXTENSION = "unblocker_events"

FIREWALL_CHECK_COMPLETED = "firewall_check_completed"
RATE_LIMIT_EXCEEDED = "simple_unblock.rate_limit_exceeded"
HONEYPOT_TRIGGERED = "simple_unblock.honeypot_triggered"
OTP_SENT = "simple_unblock.otp_sent"
OTP_VERIFIED = "simple_unblock.otp_verified"
OTP_FAILED = "simple_unblock.otp_failed"
IP_MISMATCH = "simple_unblock.ip_mismatch"
REQUEST_PROCESSED = "simple_unblock.request_processed"

Handler = Callable[[Dict[str, Any]], Any]


class EventBus:
    def __init__(self, on_error: Optional[Callable[[], Any]] = None) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        # e.g. rollback of the session a failed handler left dirty
        self._on_error = on_error

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, ()))

    def _recover(self, event: str) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error()
        except Exception:
            logger.exception("Event error hook failed", extra={"event": event})

    def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Deliver ``payload`` to every handler of ``event``; returns how many succeeded."""
        payload = dict(payload or {})
        payload.setdefault("event", event)
        delivered = 0
        for handler in self.handlers(event):
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"event": event, "handler": getattr(handler, "__name__", repr(handler))},
                )
                self._recover(event)
        return delivered


def get_event_bus() -> EventBus:
    bus = current_app.extensions.get(EVENT_BUS_EXTENSION)
    if bus is None:
        bus = current_app.extensions[EVENT_BUS_EXTENSION] = EventBus()
    return bus


def publish(event: str, payload: Optional[Dict[str, Any]] = None) -> int:
    return get_event_bus().publish(event, payload)
