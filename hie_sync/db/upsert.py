from __future__ import annotations

from sqlalchemy.orm import Session


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "mysql":
        from sqlalchemy.dialects.mysql import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect!r}")
    return dialect, insert


def upsert(
    db: Session,
    model,
    rows: list[dict],
    key_columns: list[str],
    update_columns: tuple[str, ...] = (),
    overrides: dict | None = None,
) -> int:
    """Insert rows, or update the listed columns of rows whose key already exists.

    ``update_columns`` take the incoming value; ``overrides`` are column
    expressions evaluated against the existing row (e.g. ``Model.n + 1``).
    """
    if not rows:
        return 0
    dialect, insert = _insert_for(db)
    stmt = insert(model).values(rows)
    incoming = stmt.inserted if dialect == "mysql" else stmt.excluded
    set_ = {col: incoming[col] for col in update_columns}
    set_.update(overrides or {})

    if dialect == "mysql":
        stmt = stmt.on_duplicate_key_update(set_)
    else:
        stmt = stmt.on_conflict_do_update(index_elements=key_columns, set_=set_)
    res = db.execute(stmt)
    return res.rowcount or 0
