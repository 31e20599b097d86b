"""Run the patient loop, observation loop and queue sweep next to the ops API.

    python -m hie_sync.main
"""
import asyncio
import sys

import uvicorn
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from hie_sync.api.main import app
from hie_sync.core.audit import AuditLogger
from hie_sync.core.config import API_HOST, API_PORT, LOG_LEVEL
from hie_sync.core.errors import SourceUnavailableError
from hie_sync.core.logging import configure_logging, log
from hie_sync.db.session import SessionLocal, SourceSession, source_engine, state_engine
from hie_sync.etl.dead_letter import DeadLetterSink
from hie_sync.etl.pipeline import SyncContext, loops
from hie_sync.etl.queue import DeferredWriteQueue
from hie_sync.etl.transmit import Transmitter
from hie_sync.fhir.client import MediatorClient
from hie_sync.fhir.resolver import PatientIdentityResolver
from hie_sync.models import tables  # noqa: F401
from hie_sync.models.base import Base


def check_source() -> None:
    try:
        with source_engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise SourceUnavailableError(f"source database unreachable: {exc}") from exc


def build_context() -> SyncContext:
    audit = AuditLogger()
    sink = DeadLetterSink()
    client = MediatorClient()
    transmitter = Transmitter(client, sink, audit=audit)
    return SyncContext(
        source_sessions=SourceSession,
        state_sessions=SessionLocal,
        transmitter=transmitter,
        resolver=PatientIdentityResolver(client, transmitter, audit=audit),
        queue=DeferredWriteQueue(SessionLocal),
        sink=sink,
        audit=audit,
    )


async def serve() -> None:
    ctx = build_context()
    await asyncio.to_thread(ctx.queue.reset_processing)
    server = uvicorn.Server(
        uvicorn.Config(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())
    )
    await asyncio.gather(server.serve(), *loops(ctx))


def main() -> int:
    configure_logging()
    try:
        check_source()
    except SourceUnavailableError as exc:
        log.critical("startup_failed", error=str(exc), source_db=source_engine.url.render_as_string())
        return 1
    Base.metadata.create_all(bind=state_engine)
    log.info("sync_starting", source_db=source_engine.url.render_as_string(), api_port=API_PORT)
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        log.info("sync_stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
