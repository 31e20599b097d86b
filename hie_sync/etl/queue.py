from __future__ import annotations

import json
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from hie_sync.core.config import QUEUE_TTL_HOURS
from hie_sync.core.logging import log
from hie_sync.db.session import _json_default
from hie_sync.db.upsert import upsert
from hie_sync.etl.watermarks import _utcnow
from hie_sync.models.tables import QUEUE_STATUSES, ObservationQueueEntry


def _jsonable(payload) -> dict:
    return json.loads(json.dumps(payload, default=_json_default))


def _parse_payload(raw) -> dict | None:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
    return None


def queue_stats(db: Session) -> dict[str, int]:
    counts = {status: 0 for status in QUEUE_STATUSES}
    for status, count in db.execute(
        select(ObservationQueueEntry.status, func.count()).group_by(ObservationQueueEntry.status)
    ).all():
        counts[status] = int(count)
    counts["total"] = sum(counts.values())
    return counts


class DeferredWriteQueue:
    """Durable holding area for observations whose patient is not resolvable yet.

    Status transitions: pending -> processing (claimed) -> deleted on success,
    back to pending on release, or failed; pending/processing -> expired once
    older than the TTL.
    """

    def __init__(self, session_factory: sessionmaker, ttl_hours: float = QUEUE_TTL_HOURS):
        self.session_factory = session_factory
        self.ttl = timedelta(hours=ttl_hours)

    def _session(self) -> Session:
        return self.session_factory()

    def enqueue(self, parent_source_id: str, entries: list[tuple[str, dict]], now: datetime | None = None) -> int:
        if not entries:
            return 0
        now = now or _utcnow()
        rows = [
            {
                "id": str(entry_id),
                "patient_id": str(parent_source_id),
                "observation_payload": _jsonable(payload),
                "created_at": now,
                "retry_count": 0,
                "last_retry_at": None,
                "status": "pending",
            }
            for entry_id, payload in entries
        ]
        with self._session() as db:
            upsert(
                db,
                ObservationQueueEntry,
                rows,
                key_columns=["id"],
                # status is left alone: failed, expired and claimed entries keep theirs
                update_columns=("observation_payload",),
                overrides={
                    "retry_count": ObservationQueueEntry.retry_count + 1,
                    "last_retry_at": now,
                },
            )
            db.commit()
        log.info("observations_queued", patient_id=parent_source_id, count=len(rows))
        return len(rows)

    def dequeue(self, entry_id: str) -> bool:
        with self._session() as db:
            res = db.execute(delete(ObservationQueueEntry).where(ObservationQueueEntry.id == str(entry_id)))
            db.commit()
            return bool(res.rowcount)

    def mark_failed(self, entry_id: str) -> bool:
        return self._set_status([entry_id], "failed") > 0

    def release(self, entry_ids: list[str]) -> int:
        return self._set_status(entry_ids, "pending", only_from="processing")

    def _set_status(self, entry_ids: list[str], status: str, only_from: str | None = None) -> int:
        if not entry_ids:
            return 0
        stmt = update(ObservationQueueEntry).where(
            ObservationQueueEntry.id.in_([str(i) for i in entry_ids])
        )
        if only_from:
            stmt = stmt.where(ObservationQueueEntry.status == only_from)
        with self._session() as db:
            res = db.execute(stmt.values(status=status))
            db.commit()
            return res.rowcount or 0

    def mark_expired_batch(self, now: datetime | None = None) -> int:
        cutoff = (now or _utcnow()) - self.ttl
        with self._session() as db:
            res = db.execute(
                update(ObservationQueueEntry)
                .where(
                    ObservationQueueEntry.status.in_(("pending", "processing")),
                    ObservationQueueEntry.created_at < cutoff,
                )
                .values(status="expired")
            )
            db.commit()
            expired = res.rowcount or 0
        if expired:
            log.warning("queue_entries_expired", count=expired, cutoff=cutoff.isoformat())
        return expired

    def list_pending_parents(self) -> list[str]:
        with self._session() as db:
            rows = db.execute(
                select(ObservationQueueEntry.patient_id)
                .where(ObservationQueueEntry.status == "pending")
                .group_by(ObservationQueueEntry.patient_id)
                .order_by(func.min(ObservationQueueEntry.created_at))
            ).scalars().all()
        return list(rows)

    def first_payload(self, parent_source_id: str) -> dict | None:
        """Oldest pending payload for a parent; carries its search identifiers."""
        with self._session() as db:
            entry = db.execute(
                select(ObservationQueueEntry)
                .where(
                    ObservationQueueEntry.patient_id == str(parent_source_id),
                    ObservationQueueEntry.status == "pending",
                )
                .order_by(ObservationQueueEntry.created_at, ObservationQueueEntry.id)
                .limit(1)
            ).scalar_one_or_none()
            return _parse_payload(entry.observation_payload) if entry else None

    def claim(self, parent_source_id: str) -> list[tuple[str, dict]]:
        """Move a parent's pending entries to processing and return their payloads."""
        claimed: list[tuple[str, dict]] = []
        with self._session() as db:
            entries = db.execute(
                select(ObservationQueueEntry)
                .where(
                    ObservationQueueEntry.patient_id == str(parent_source_id),
                    ObservationQueueEntry.status == "pending",
                )
                .order_by(ObservationQueueEntry.created_at, ObservationQueueEntry.id)
            ).scalars().all()
            for entry in entries:
                payload = _parse_payload(entry.observation_payload)
                if payload is None:
                    log.error("queue_payload_unparsable", entry_id=entry.id, patient_id=entry.patient_id)
                    entry.status = "failed"
                    continue
                entry.status = "processing"
                claimed.append((entry.id, payload))
            db.commit()
        return claimed

    def reset_processing(self) -> int:
        with self._session() as db:
            res = db.execute(
                update(ObservationQueueEntry)
                .where(ObservationQueueEntry.status == "processing")
                .values(status="pending")
            )
            db.commit()
            count = res.rowcount or 0
        if count:
            log.info("queue_claims_reset", count=count)
        return count

    def stats(self) -> dict[str, int]:
        with self._session() as db:
            return queue_stats(db)
