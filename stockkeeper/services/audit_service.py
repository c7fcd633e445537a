"""Audit trail written after commit, off the request path.

Services call ``record_event`` while their transaction is open; the events
are parked on the session and handed to the dispatcher only once that
transaction commits. A rollback discards them. Sink failures are logged and
never reach the caller.
"""
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.orm import Session

from stockkeeper.config import settings
from stockkeeper.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_audit_events"


@dataclass(frozen=True)
class AuditEvent:
    action: str
    entity_type: str
    entity_id: str
    user_id: str | None = None
    detail: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DatabaseAuditSink:
    """Writes events to audit_logs using its own session."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def write(self, events: list[AuditEvent]) -> None:
        db = self.session_factory()
        try:
            for e in events:
                db.add(AuditLog(
                    user_id=e.user_id,
                    action=e.action,
                    entity_type=e.entity_type,
                    entity_id=e.entity_id,
                    detail=json.dumps(e.detail, default=str),
                    created_at=e.occurred_at.replace(tzinfo=None),
                ))
            db.commit()
        finally:
            db.close()


class AuditDispatcher:
    def __init__(self, sinks=None):
        self._sinks = list(sinks or [])
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    @property
    def sinks(self) -> list:
        return list(self._sinks)

    def set_sinks(self, sinks) -> None:
        self._sinks = list(sinks)

    def add_sink(self, sink) -> None:
        self._sinks.append(sink)

    def submit(self, events: list[AuditEvent]) -> None:
        if not events or not self._sinks:
            return
        future = self._executor.submit(self._deliver, list(events), list(self._sinks))
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver(self, events: list[AuditEvent], sinks: list) -> None:
        for sink in sinks:
            try:
                sink.write(events)
            except Exception:
                logger.exception("Audit sink %s failed for %d events", type(sink).__name__, len(events))

    def drain(self, timeout: float = 5.0) -> None:
        """Block until everything submitted so far has been delivered."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)


dispatcher = AuditDispatcher()


def record_event(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str | None = None,
    **detail,
) -> None:
    if not settings.AUDIT_ENABLED:
        return
    db.info.setdefault(_PENDING_KEY, []).append(
        AuditEvent(action=action, entity_type=entity_type, entity_id=entity_id, user_id=user_id, detail=detail)
    )


def pending_events(db: Session) -> list[AuditEvent]:
    return list(db.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session):
    events = session.info.pop(_PENDING_KEY, None)
    if events:
        dispatcher.submit(events)


@event.listens_for(Session, "after_transaction_end")
def _discard_on_rollback(session: Session, transaction):
    # Top-level transaction only; savepoint rollbacks keep the outer events.
    if transaction.parent is None and not transaction.nested:
        session.info.pop(_PENDING_KEY, None)
