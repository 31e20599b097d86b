from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.orm import Session

from hie_sync.etl.watermarks import format_cursor, parse_cursor


@dataclass(frozen=True)
class StreamQuery:
    """How one logical stream reads its changed rows from the source store.

    ``select_sql`` is everything up to (but excluding) the WHERE clause.
    ``ordering_column``/``id_column`` are SQL expressions; the ``*_key``
    fields name the same values in the returned row mappings. A stream
    without ``id_column`` orders by a unique, insert-monotonic column and
    its cursor is that bare value.
    """

    name: str
    select_sql: str
    ordering_column: str
    ordering_key: str
    id_key: str
    id_column: str | None = None

    def cursor_for(self, row: dict) -> str:
        if self.id_column is None:
            return format_cursor(row[self.ordering_key])
        return format_cursor(row[self.ordering_key], row[self.id_key])


PATIENT_STREAM = StreamQuery(
    name="patients",
    select_sql="""
        SELECT
          nc.neonatal_care_id,
          nc.patient_id,
          nc.impilo_neotree_id,
          nc.date_time_admission,
          p.facility_id,
          p.person_id,
          p.phid,
          pd.firstname,
          pd.lastname,
          pd.birthdate,
          pd.sex
        FROM consultation.neonatal_care nc
        INNER JOIN consultation.patient p ON nc.patient_id = p.patient_id
        INNER JOIN report.person_demographic pd ON p.person_id = pd.person_id
    """,
    ordering_column="nc.date_time_admission",
    ordering_key="date_time_admission",
    id_column="nc.neonatal_care_id",
    id_key="neonatal_care_id",
)

OBSERVATION_STREAM = StreamQuery(
    name="observations",
    select_sql="""
        SELECT
          nq.id,
          nq.category,
          nq.category_id,
          nq.type,
          nq.data_key,
          nq.neonatal_care_id,
          nq.patient_id,
          nq.data,
          nq.display_key,
          nq.display_value,
          nc.date_time_admission,
          nc.impilo_neotree_id,
          p.person_id,
          p.phid
        FROM consultation.neonatal_question nq
        INNER JOIN consultation.neonatal_care nc ON nq.neonatal_care_id = nc.neonatal_care_id
        INNER JOIN consultation.patient p ON nq.patient_id = p.patient_id
    """,
    ordering_column="nq.id",
    ordering_key="id",
    id_key="id",
)


def _bind(value: str):
    return int(value) if value.isdigit() else value


def build_poll_sql(stream: StreamQuery, watermark: str | None) -> tuple[str, dict]:
    params: dict = {}
    where = ""
    if watermark:
        ordering, row_id = parse_cursor(watermark)
        params["wm_ordering"] = _bind(ordering)
        if row_id is None or stream.id_column is None:
            where = f"WHERE {stream.ordering_column} > :wm_ordering"
        else:
            params["wm_id"] = _bind(row_id)
            where = (
                f"WHERE ({stream.ordering_column} > :wm_ordering"
                f" OR ({stream.ordering_column} = :wm_ordering AND {stream.id_column} > :wm_id))"
            )
    order_by = stream.ordering_column
    if stream.id_column:
        order_by += f", {stream.id_column}"
    sql = f"{stream.select_sql.strip()} {where} ORDER BY {order_by} LIMIT :batch_size"
    return sql, params


def poll(db: Session, stream: StreamQuery, watermark: str | None, batch_size: int) -> list[dict]:
    """Fetch the next ordered batch of rows strictly after ``watermark``."""
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    sql, params = build_poll_sql(stream, watermark)
    params["batch_size"] = batch_size
    result = db.execute(text(sql), params)
    return [dict(row) for row in result.mappings().all()]
