import json
from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hie_sync.core.config import SOURCE_DB_URL, STATE_DB_URL


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _engine(url: str):
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_recycle=1800,
        json_serializer=lambda obj: json.dumps(obj, default=_json_default),
    )


source_engine = _engine(SOURCE_DB_URL)
state_engine = source_engine if STATE_DB_URL == SOURCE_DB_URL else _engine(STATE_DB_URL)

SourceSession = sessionmaker(bind=source_engine, autoflush=False, autocommit=False)
SessionLocal = sessionmaker(bind=state_engine, autoflush=False, autocommit=False)
