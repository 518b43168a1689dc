from __future__ import annotations

import hashlib
from concurrent.futures import Executor, Future
from typing import Any, Mapping, Optional

from authguard.clock import Clock, utcnow
from authguard.logging import get_logger
from authguard.service.interfaces import AuditSink, NotificationDispatcher
from authguard.storage.models import UserRecord

logger = get_logger(__name__)


def hash_identifier(identifier: str) -> str:
    """sha256 hex of an identifier so audit trails never carry raw emails."""

    return hashlib.sha256((identifier or "").encode("utf-8")).hexdigest()


class LoggingAuditSink:
    """Default sink: one structured ``audit_event`` log line per event."""

    def __init__(self, name: str = "authguard.audit") -> None:
        self.logger = get_logger(name)

    def record(self, event_type: str, attributes: Mapping[str, Any]) -> None:
        self.logger.info("audit_event", event_type=event_type, **dict(attributes))


class SecurityEventRecorder:
    """Fire-and-forget facade over the audit sink.

    A failing sink is logged locally and never surfaces to the caller.
    """

    def __init__(self, sink: AuditSink, *, clock: Clock = utcnow) -> None:
        self._sink = sink
        self._clock = clock

    def record(self, event_type: str, **attributes: Any) -> None:
        payload = {"occurred_at": self._clock().isoformat(), **attributes}
        try:
            self._sink.record(event_type, payload)
        except Exception as exc:
            logger.error(
                "audit_sink_failed",
                event_type=event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )


class BestEffortNotifier:
    """Wraps a notification dispatcher so delivery problems never fail a request.

    With an executor, notifications are dispatched off the request thread.
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher],
        *,
        executor: Optional[Executor] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._executor = executor

    def notify(self, user: UserRecord, template: str, **context: Any) -> None:
        if self._dispatcher is None:
            return
        if self._executor is None:
            self._deliver(user, template, context)
            return
        try:
            future = self._executor.submit(self._deliver, user, template, context)
        except RuntimeError as exc:
            # executor already shut down
            logger.warning("notification_dropped", template=template, error=str(exc))
            return
        future.add_done_callback(self._log_unexpected)

    def _deliver(self, user: UserRecord, template: str, context: Mapping[str, Any]) -> None:
        try:
            self._dispatcher.notify(user, template, context)
        except Exception as exc:
            logger.warning(
                "notification_failed",
                template=template,
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    @staticmethod
    def _log_unexpected(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("notification_worker_failed", error=str(exc))
