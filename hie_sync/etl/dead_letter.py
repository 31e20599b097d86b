from __future__ import annotations

import json
import os
import traceback
import uuid
from datetime import datetime, timezone

from hie_sync.core.config import DLQ_DIR
from hie_sync.core.logging import log
from hie_sync.db.session import _json_default


def serialize_reason(reason) -> dict:
    if isinstance(reason, BaseException):
        data = {"message": str(reason), "type": type(reason).__name__}
        if reason.__traceback__ is not None:
            data["trace"] = "".join(
                traceback.format_exception(type(reason), reason, reason.__traceback__)
            )
        status = getattr(reason, "status", None)
        if status is not None:
            data["status"] = status
        return data
    if isinstance(reason, dict):
        return reason
    return {"message": str(reason)}


class DeadLetterSink:
    """Write-once JSON records of units that will not be retried automatically."""

    def __init__(self, base_dir: str = DLQ_DIR):
        self.base_dir = base_dir

    def write(self, payload, reason, **context) -> str:
        """Persist one record and return its id. Raises ``OSError`` when it cannot be written."""
        record_id = str(uuid.uuid4())
        record = {
            "id": record_id,
            "written_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "reason": serialize_reason(reason),
            "payload": payload,
            **context,
        }
        full_path = os.path.join(self.base_dir, f"{record_id}.json")
        try:
            os.makedirs(self.base_dir, exist_ok=True)
            with open(full_path, "x", encoding="utf-8") as handle:
                json.dump(record, handle, ensure_ascii=False, indent=2, default=_json_default)
        except OSError as exc:
            log.error("dead_letter_write_failed", path=full_path, error=str(exc), reason=record["reason"])
            raise
        log.warning("dead_lettered", dead_letter_id=record_id, message=record["reason"].get("message"), **context)
        return record_id

    def list_records(self, limit: int = 50) -> list[dict]:
        if not os.path.isdir(self.base_dir):
            return []
        names = sorted(
            (name for name in os.listdir(self.base_dir) if name.endswith(".json")),
            key=lambda name: os.path.getmtime(os.path.join(self.base_dir, name)),
            reverse=True,
        )
        records = []
        for name in names[:limit]:
            with open(os.path.join(self.base_dir, name), encoding="utf-8") as handle:
                records.append(json.load(handle))
        return records
