from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from hie_sync.core.audit import AuditLogger
from hie_sync.core.config import (
    MPI_CHANNEL_PATH,
    POLL_INTERVAL_SECS,
    PUSH_BATCH_SIZE,
    QUEUE_SWEEP_INTERVAL_SECS,
    SHR_CHANNEL_PATH,
    SOURCE_ID,
)
from hie_sync.core.errors import MappingError
from hie_sync.core.logging import log
from hie_sync.etl.dead_letter import DeadLetterSink
from hie_sync.etl.poller import OBSERVATION_STREAM, PATIENT_STREAM, StreamQuery, poll
from hie_sync.etl.queue import DeferredWriteQueue
from hie_sync.etl.transform import (
    observation_row_to_resource,
    parent_search_identifier,
    patient_row_to_resource,
)
from hie_sync.etl.transmit import Transmitter
from hie_sync.etl.watermarks import commit_watermark, get_watermark
from hie_sync.fhir.resolver import PatientIdentityResolver
from hie_sync.fhir.validators import (
    sanitize_observation,
    sanitize_patient,
    validate_observation,
    validate_patient,
)
from hie_sync.models.tables import SyncRun


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SyncContext:
    """Collaborators shared by the stream loops and the queue sweep."""

    source_sessions: sessionmaker
    state_sessions: sessionmaker
    transmitter: Transmitter
    resolver: PatientIdentityResolver
    queue: DeferredWriteQueue
    sink: DeadLetterSink
    audit: AuditLogger = field(default_factory=AuditLogger)
    source_tag: str | None = SOURCE_ID
    mpi_channel: str = MPI_CHANNEL_PATH
    shr_channel: str = SHR_CHANNEL_PATH
    batch_size: int = PUSH_BATCH_SIZE


def _start_run(db: Session, stream: str, meta: dict | None) -> SyncRun:
    run = SyncRun(stream=stream, started_at=_utc_now_iso(), status="RUNNING", details=meta or {})
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def _finish_run(db: Session, run_id: int, status: str, details_patch: dict | None):
    run = db.execute(select(SyncRun).where(SyncRun.id == run_id)).scalar_one()
    run.status = status
    run.finished_at = _utc_now_iso()
    existing = dict(run.details or {})
    if details_patch:
        existing.update(details_patch)
    run.details = existing
    db.add(run)
    db.commit()


def _record_run_start(ctx: SyncContext, stream: str, meta: dict) -> int:
    with ctx.state_sessions() as db:
        return _start_run(db, stream, meta).id


def _record_run_finish(ctx: SyncContext, run_id: int, status: str, details: dict) -> None:
    with ctx.state_sessions() as db:
        _finish_run(db, run_id, status, details)


def _read_watermark(ctx: SyncContext, stream: StreamQuery) -> str | None:
    with ctx.state_sessions() as db:
        return get_watermark(db, stream.name)


def _write_watermark(ctx: SyncContext, stream: StreamQuery, value: str) -> bool:
    with ctx.state_sessions() as db:
        return commit_watermark(db, stream.name, value)


def _fetch(ctx: SyncContext, stream: StreamQuery, watermark: str | None) -> list[dict]:
    with ctx.source_sessions() as db:
        return poll(db, stream, watermark, ctx.batch_size)


async def _begin_tick(ctx: SyncContext, stream: StreamQuery) -> tuple[str | None, list[dict] | None]:
    """Read the cursor and the next batch. Rows are None when the source query failed."""
    watermark = await asyncio.to_thread(_read_watermark, ctx, stream)
    try:
        rows = await asyncio.to_thread(_fetch, ctx, stream, watermark)
    except SQLAlchemyError as exc:
        log.error("source_query_failed", stream=stream.name, watermark=watermark, error=str(exc))
        return watermark, None
    return watermark, rows


def _status_for(failed: int, total: int) -> str:
    if failed == 0:
        return "SUCCESS"
    if failed >= total:
        return "FAILED"
    return "PARTIAL"


async def sync_patients(ctx: SyncContext) -> dict:
    """One tick of the patient stream.

    Every valid row is created in the MPI. The cursor always moves to the
    last fetched row; failures are left to the dead-letter sink.
    """
    stream = PATIENT_STREAM
    watermark, rows = await _begin_tick(ctx, stream)
    result = {"stream": stream.name, "watermark_before": watermark, "watermark_after": watermark}
    if rows is None:
        result["error"] = "source_query_failed"
        return result
    result["fetched"] = len(rows)
    if not rows:
        log.debug("no_new_rows", stream=stream.name, watermark=watermark)
        return result

    run_id = await asyncio.to_thread(_record_run_start, ctx, stream.name, {"watermark_before": watermark})
    try:
        counts = await _push_patients(ctx, stream, rows)
    except Exception as exc:
        await _abandon_run(ctx, run_id, stream, watermark, exc)
        raise

    cursor = stream.cursor_for(rows[-1])
    await asyncio.to_thread(_write_watermark, ctx, stream, cursor)
    result.update({"run_id": run_id, **counts, "watermark_after": cursor})
    log.info("stream_tick_complete", **result)
    await asyncio.to_thread(
        _record_run_finish, ctx, run_id, _status_for(counts["failed"] + counts["invalid"], len(rows)), result
    )
    return result


async def _abandon_run(ctx: SyncContext, run_id: int, stream: StreamQuery, watermark: str | None, exc: Exception):
    log.error("stream_tick_abandoned", stream=stream.name, watermark=watermark, error=str(exc))
    await asyncio.to_thread(
        _record_run_finish,
        ctx,
        run_id,
        "FAILED",
        {"error": str(exc), "watermark_before": watermark, "watermark_after": watermark},
    )


async def _push_patients(ctx: SyncContext, stream: StreamQuery, rows: list[dict]) -> dict:
    sent = invalid = failed = 0
    for row in rows:
        source_id = row.get(stream.id_key)
        try:
            patient = sanitize_patient(patient_row_to_resource(row, ctx.source_tag).to_fhir())
        except MappingError as exc:
            invalid += 1
            ctx.sink.write({"row": row}, exc, stage="map", stream=stream.name, source_id=source_id)
            continue

        validation = validate_patient(patient)
        if validation.warnings:
            log.warning("validation_warnings", stream=stream.name, source_id=source_id, warnings=validation.warnings)
        if not validation.valid:
            invalid += 1
            ctx.audit.validation_error(patient, validation.errors)
            ctx.sink.write(
                {"path": ctx.mpi_channel, "resource": patient},
                "Validation failed: " + ", ".join(validation.errors),
                stage="validate",
                stream=stream.name,
                source_id=source_id,
            )
            continue

        sent_result = await ctx.transmitter.create(
            ctx.mpi_channel, patient, stream=stream.name, source_id=source_id
        )
        if sent_result.ok:
            sent += 1
            ctx.audit.registration(patient, sent_result.status, registry_id=sent_result.resource_id)
        else:
            failed += 1
    return {"sent": sent, "invalid": invalid, "failed": failed}


def _group_by_parent(rows: list[dict]) -> OrderedDict:
    groups: OrderedDict = OrderedDict()
    for row in rows:
        groups.setdefault(str(row.get("patient_id")), []).append(row)
    return groups


def _map_observation(ctx: SyncContext, row: dict, patient_resource_id: str) -> tuple[dict | None, list[str]]:
    try:
        observation = observation_row_to_resource(row, patient_resource_id, ctx.source_tag).to_fhir()
    except MappingError as exc:
        return None, [str(exc)]
    observation = sanitize_observation(observation)
    validation = validate_observation(observation)
    if validation.warnings:
        log.debug("validation_warnings", resource_id=observation.get("id"), warnings=validation.warnings)
    if not validation.valid:
        ctx.audit.validation_error(observation, validation.errors)
        return observation, validation.errors
    return observation, []


async def replay_queued(ctx: SyncContext, parent_id: str, patient_resource_id: str) -> dict:
    """Push a parent's queued observations now that its patient is resolved."""
    claimed = await asyncio.to_thread(ctx.queue.claim, parent_id)
    counts = {"claimed": len(claimed), "sent": 0, "invalid": 0, "failed": 0}
    if not claimed:
        return counts

    done: list[str] = []
    try:
        for entry_id, row in claimed:
            observation, errors = _map_observation(ctx, row, patient_resource_id)
            if errors:
                counts["invalid"] += 1
                ctx.sink.write(
                    {"row": row, "resource": observation},
                    "Validation failed: " + ", ".join(errors),
                    stage="validate",
                    stream="queue",
                    source_id=entry_id,
                )
                await asyncio.to_thread(ctx.queue.mark_failed, entry_id)
                done.append(entry_id)
                continue

            sent = await ctx.transmitter.upsert(
                ctx.shr_channel, observation, stream="queue", source_id=entry_id, patient_id=parent_id
            )
            if sent.ok:
                counts["sent"] += 1
                await asyncio.to_thread(ctx.queue.dequeue, entry_id)
            else:
                counts["failed"] += 1
                await asyncio.to_thread(ctx.queue.mark_failed, entry_id)
            done.append(entry_id)
    finally:
        leftover = [entry_id for entry_id, _ in claimed if entry_id not in done]
        if leftover:
            await asyncio.to_thread(ctx.queue.release, leftover)

    log.info("queued_observations_replayed", patient_id=parent_id, **counts)
    return counts


async def sync_observations(ctx: SyncContext) -> dict:
    """One tick of the observation stream.

    Rows are grouped by source patient. Unresolved groups are queued; for
    resolved ones the queue is replayed first, then the new rows are upserted
    in source order. The cursor moves only when nothing failed transmission.
    """
    stream = OBSERVATION_STREAM
    expired = await asyncio.to_thread(ctx.queue.mark_expired_batch)
    watermark, rows = await _begin_tick(ctx, stream)
    result = {
        "stream": stream.name,
        "watermark_before": watermark,
        "watermark_after": watermark,
        "expired": expired,
    }
    if rows is None:
        result["error"] = "source_query_failed"
        return result
    result["fetched"] = len(rows)
    if not rows:
        log.debug("no_new_rows", stream=stream.name, watermark=watermark)
        return result

    run_id = await asyncio.to_thread(_record_run_start, ctx, stream.name, {"watermark_before": watermark})
    try:
        counts = await _push_observations(ctx, stream, rows)
    except Exception as exc:
        await _abandon_run(ctx, run_id, stream, watermark, exc)
        raise

    result.update({"run_id": run_id, **counts})
    if counts["failed"] == 0:
        cursor = stream.cursor_for(rows[-1])
        await asyncio.to_thread(_write_watermark, ctx, stream, cursor)
        result["watermark_after"] = cursor
        log.info("stream_tick_complete", **result)
    else:
        log.warning("watermark_withheld", **result)
    await asyncio.to_thread(
        _record_run_finish, ctx, run_id, _status_for(counts["failed"] + counts["invalid"], len(rows)), result
    )
    return result


async def _push_observations(ctx: SyncContext, stream: StreamQuery, rows: list[dict]) -> dict:
    groups = _group_by_parent(rows)
    search_ids = {parent: parent_search_identifier(group[0]) or parent for parent, group in groups.items()}
    resolved = await ctx.resolver.resolve_many(search_ids.values())

    sent = invalid = failed = queued = 0
    for parent, group in groups.items():
        patient_resource_id = resolved.get(search_ids[parent])
        if not patient_resource_id:
            log.warning(
                "patient_unresolved_queueing",
                patient_id=parent,
                identifier=search_ids[parent],
                count=len(group),
            )
            await asyncio.to_thread(
                ctx.queue.enqueue, parent, [(str(row[stream.id_key]), row) for row in group]
            )
            queued += len(group)
            continue

        try:
            await replay_queued(ctx, parent, patient_resource_id)
        except Exception as exc:
            log.error("queue_replay_failed", patient_id=parent, error=str(exc))

        for row in group:
            source_id = row.get(stream.id_key)
            observation, errors = _map_observation(ctx, row, patient_resource_id)
            if errors:
                invalid += 1
                ctx.sink.write(
                    {"path": ctx.shr_channel, "row": row, "resource": observation},
                    "Validation failed: " + ", ".join(errors),
                    stage="validate",
                    stream=stream.name,
                    source_id=source_id,
                )
                continue
            sent_result = await ctx.transmitter.upsert(
                ctx.shr_channel, observation, stream=stream.name, source_id=source_id, patient_id=parent
            )
            if sent_result.ok:
                sent += 1
            else:
                failed += 1
    return {"sent": sent, "invalid": invalid, "failed": failed, "queued": queued}


async def sweep_queue(ctx: SyncContext) -> dict:
    """Re-resolve every parent with pending entries and replay the ones found."""
    expired = await asyncio.to_thread(ctx.queue.mark_expired_batch)
    parents = await asyncio.to_thread(ctx.queue.list_pending_parents)
    result = {"parents": len(parents), "resolved": 0, "sent": 0, "failed": 0, "invalid": 0, "expired": expired}
    if not parents:
        log.debug("queue_sweep_idle")
        return result

    log.info("queue_sweep_started", parents=len(parents))
    for parent in parents:
        sample = await asyncio.to_thread(ctx.queue.first_payload, parent)
        identifier = parent_search_identifier(sample) if sample else None
        patient_resource_id = await ctx.resolver.resolve(identifier or parent)
        if not patient_resource_id:
            log.debug("queue_parent_still_unresolved", patient_id=parent, identifier=identifier or parent)
            continue
        result["resolved"] += 1
        try:
            counts = await replay_queued(ctx, parent, patient_resource_id)
        except Exception as exc:
            log.error("queue_replay_failed", patient_id=parent, error=str(exc))
            continue
        for key in ("sent", "failed", "invalid"):
            result[key] += counts[key]
    log.info("queue_sweep_complete", **result)
    return result


async def run_loop(name: str, tick, ctx: SyncContext, interval: float, stop: asyncio.Event | None = None):
    """Run ``tick`` every ``interval`` seconds until ``stop`` is set or the task is cancelled."""
    stop = stop or asyncio.Event()
    log.info("loop_started", loop=name, interval=interval)
    while not stop.is_set():
        try:
            await tick(ctx)
        except Exception as exc:
            log.error("loop_tick_failed", loop=name, error=str(exc), error_type=type(exc).__name__)
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    log.info("loop_stopped", loop=name)


def loops(ctx: SyncContext, stop: asyncio.Event | None = None) -> list:
    return [
        run_loop(PATIENT_STREAM.name, sync_patients, ctx, POLL_INTERVAL_SECS, stop),
        run_loop(OBSERVATION_STREAM.name, sync_observations, ctx, POLL_INTERVAL_SECS, stop),
        run_loop("queue", sweep_queue, ctx, QUEUE_SWEEP_INTERVAL_SECS, stop),
    ]
