from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from hie_sync.core.logging import log
from hie_sync.db.upsert import upsert
from hie_sync.models.tables import Watermark

CURSOR_SEPARATOR = "|"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_cursor_value(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def format_cursor(ordering_value, row_id=None) -> str:
    ordering = normalize_cursor_value(ordering_value)
    if ordering is None:
        raise ValueError("cannot build a cursor from an empty ordering value")
    if row_id is None:
        return ordering
    return f"{ordering}{CURSOR_SEPARATOR}{row_id}"


def parse_cursor(value: str) -> tuple[str, str | None]:
    ordering, sep, row_id = value.partition(CURSOR_SEPARATOR)
    return ordering, (row_id if sep else None)


def _scalar_key(value: str) -> tuple:
    return (0, int(value), "") if value.isdigit() else (1, 0, value)


def cursor_sort_key(value: str) -> tuple:
    ordering, row_id = parse_cursor(value)
    if row_id is None:
        # a bare ordering value excludes every row at that ordering value
        return (_scalar_key(ordering), 1, (0, 0, ""))
    return (_scalar_key(ordering), 0, _scalar_key(row_id))


def get_watermark(db: Session, stream: str) -> str | None:
    row = db.execute(select(Watermark).where(Watermark.key == stream)).scalar_one_or_none()
    return row.value if row else None


def commit_watermark(db: Session, stream: str, value: str, now: datetime | None = None) -> bool:
    """Advance a stream's cursor. Never moves it backwards; returns True if written."""
    current = get_watermark(db, stream)
    if current is not None and cursor_sort_key(value) <= cursor_sort_key(current):
        if value != current:
            log.warning("watermark_not_advanced", stream=stream, current=current, proposed=value)
        return False
    upsert(
        db,
        Watermark,
        [{"key": stream, "value": value, "updated_at": now or _utcnow()}],
        key_columns=["key"],
        update_columns=("value", "updated_at"),
    )
    db.commit()
    return True


def list_watermarks(db: Session) -> list[dict]:
    rows = db.execute(select(Watermark).order_by(Watermark.key)).scalars().all()
    return [
        {"stream": row.key, "cursor": row.value, "updated_at": row.updated_at.isoformat()}
        for row in rows
    ]
