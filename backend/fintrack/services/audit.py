import json
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from fintrack.db.pool import db_conn
from fintrack.models.ledger import AuditVerb
from fintrack.services.parsing import now_utc

logger = structlog.get_logger(__name__)

INSERT_USER_ACTION = """
    INSERT INTO user_actions (user_id, action, entity, entity_id, details, created_at)
    VALUES (%s::uuid, %s, %s, %s::uuid, %s::jsonb, %s)
"""

LIST_USER_ACTIONS = """
    SELECT id::text AS id,
           user_id::text AS user_id,
           action,
           entity,
           entity_id::text AS entity_id,
           details,
           created_at
    FROM user_actions
    WHERE user_id=%s::uuid
    ORDER BY created_at DESC, id DESC
    LIMIT %s OFFSET %s
"""

USER_ACTION_COUNTS = """
    SELECT action, entity, COUNT(*) AS count
    FROM user_actions
    WHERE user_id=%s::uuid AND created_at >= %s
    GROUP BY action, entity
    ORDER BY count DESC, action ASC, entity ASC
"""


@dataclass(frozen=True)
class AuditEntry:
    owner_id: str
    action: AuditVerb
    entity: str
    entity_id: str | None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)


class AuditSink:
    """Bounded hand-off between ledger mutations and the audit log.

    ``emit`` never blocks and never raises: when the queue is full the entry is
    dropped and logged. A single worker thread feeds entries to ``writer``;
    writer failures are logged and discarded.
    """

    def __init__(self, writer: Callable[[AuditEntry], None], maxsize: int = 1000) -> None:
        self._writer = writer
        self._queue: queue.Queue[AuditEntry] = queue.Queue(maxsize=maxsize)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def emit(
        self,
        owner_id: str,
        action: AuditVerb,
        entity: str,
        entity_id: str | None,
        details: dict[str, Any],
    ) -> bool:
        entry = AuditEntry(owner_id=owner_id, action=action, entity=entity, entity_id=entity_id, details=details)
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "audit_dropped",
                owner_id=owner_id,
                action=action.value,
                entity=entity,
                entity_id=entity_id,
                dropped_total=self.dropped,
            )
            return False
        return True

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="audit-sink", daemon=True)
        self._thread.start()
        logger.info("audit_sink_started", capacity=self._queue.maxsize)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker after it has flushed what is already queued, up to ``timeout``."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("audit_sink_stopped", pending=self.pending, dropped_total=self.dropped)

    def drain(self) -> int:
        """Write every queued entry on the calling thread; returns how many were handled."""
        handled = 0
        while True:
            try:
                entry = self._queue.get_nowait()
            except queue.Empty:
                return handled
            try:
                self._write(entry)
            finally:
                self._queue.task_done()
            handled += 1

    def _run_loop(self) -> None:
        while True:
            try:
                entry = self._queue.get(timeout=0.25)
            except queue.Empty:
                if self._stop_event.is_set():
                    return
                continue
            try:
                self._write(entry)
            finally:
                self._queue.task_done()

    def _write(self, entry: AuditEntry) -> None:
        try:
            self._writer(entry)
        except Exception:
            logger.exception(
                "audit_write_failed",
                owner_id=entry.owner_id,
                action=entry.action.value,
                entity=entry.entity,
                entity_id=entry.entity_id,
            )


def write_audit_entry(entry: AuditEntry) -> None:
    payload = json.dumps(entry.details, default=str, separators=(",", ":"))
    with db_conn() as conn, conn.cursor() as cur:
        cur.execute(
            INSERT_USER_ACTION,
            (entry.owner_id, entry.action.value, entry.entity, entry.entity_id, payload, entry.created_at),
        )
        conn.commit()


def list_owner_actions(cur, owner_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
    cur.execute(LIST_USER_ACTIONS, (owner_id, limit, offset))
    items = []
    for row in cur.fetchall():
        details = row.get("details")
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except ValueError:
                details = {"raw": details}
        items.append({**row, "details": details or {}})
    return items


def action_stats(cur, owner_id: str, days: int = 30) -> dict[str, Any]:
    since = now_utc() - timedelta(days=days)
    cur.execute(USER_ACTION_COUNTS, (owner_id, since))
    rows = cur.fetchall()
    by_action: dict[str, int] = {}
    by_entity: dict[str, int] = {}
    for row in rows:
        count = int(row["count"] or 0)
        by_action[row["action"]] = by_action.get(row["action"], 0) + count
        by_entity[row["entity"]] = by_entity.get(row["entity"], 0) + count
    return {
        "days": days,
        "total": sum(by_action.values()),
        "by_action": by_action,
        "by_entity": by_entity,
        "items": [{"action": r["action"], "entity": r["entity"], "count": int(r["count"] or 0)} for r in rows],
    }
