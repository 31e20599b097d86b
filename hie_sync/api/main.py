from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from hie_sync.core.config import DLQ_DIR, MEDIATOR_BASE_URL, SOURCE_ID
from hie_sync.core.errors import MediatorError
from hie_sync.db.session import SessionLocal
from hie_sync.etl.dead_letter import DeadLetterSink
from hie_sync.etl.queue import queue_stats
from hie_sync.etl.watermarks import list_watermarks
from hie_sync.fhir.client import MediatorClient
from hie_sync.fhir.search import DEFAULT_FUZZY_THRESHOLD, RegistrySearch
from hie_sync.models.tables import SyncRun

app = FastAPI(title="HIE Sync", version="0.1.0")


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_sink() -> DeadLetterSink:
    return DeadLetterSink(DLQ_DIR)


def get_search() -> RegistrySearch:
    return RegistrySearch(MediatorClient())


def _duration_seconds(started_at: str | None, finished_at: str | None) -> float | None:
    if not started_at or not finished_at:
        return None
    try:
        start = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
        end = datetime.fromisoformat(finished_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    return max(0.0, (end - start).total_seconds())


@app.get("/health")
def health():
    return {"status": "ok", "source": SOURCE_ID, "mediator_base_url": MEDIATOR_BASE_URL}


@app.get("/watermarks")
def watermarks(db: Session = Depends(get_db)):
    return list_watermarks(db)


@app.get("/queue/stats")
def get_queue_stats(db: Session = Depends(get_db)):
    return queue_stats(db)


@app.get("/runs")
def list_runs(
    limit: int = 20,
    stream: str | None = None,
    status: str | None = None,
    include_details: bool = False,
    db: Session = Depends(get_db),
):
    limit = max(1, min(limit, 200))
    query = select(SyncRun)
    if stream:
        query = query.where(SyncRun.stream == stream)
    if status:
        query = query.where(SyncRun.status == status)
    runs = db.execute(query.order_by(SyncRun.id.desc()).limit(limit)).scalars().all()

    out = []
    for run in runs:
        item = {
            "run_id": run.id,
            "stream": run.stream,
            "status": run.status,
            "started_at": run.started_at,
            "finished_at": run.finished_at,
            "duration_seconds": _duration_seconds(run.started_at, run.finished_at),
        }
        if include_details:
            item["details"] = run.details or {}
        out.append(item)
    return out


@app.get("/deadletters")
def list_deadletters(
    limit: int = Query(default=50, ge=1, le=500),
    sink: DeadLetterSink = Depends(get_sink),
):
    return sink.list_records(limit=limit)


async def _registry_call(call, *args, **kwargs):
    try:
        return await call(*args, **kwargs)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MediatorError as exc:
        raise HTTPException(status_code=502, detail=f"Upstream FHIR request failed: {exc}") from exc


@app.get("/api/patients/search/by-identifier")
async def search_patients_by_identifier(
    identifier: str = Query(min_length=1),
    search: RegistrySearch = Depends(get_search),
):
    return await _registry_call(search.by_identifier, identifier)


@app.get("/api/patients/search/by-demographics")
async def search_patients_by_demographics(
    given: str | None = None,
    family: str | None = None,
    birthDate: str | None = None,
    gender: str | None = None,
    search: RegistrySearch = Depends(get_search),
):
    return await _registry_call(search.by_demographics, given, family, birthDate, gender)


@app.get("/api/patients/search/fuzzy")
async def search_patients_fuzzy(
    given: str | None = None,
    family: str | None = None,
    birthDate: str | None = None,
    threshold: float = Query(default=DEFAULT_FUZZY_THRESHOLD, ge=0.0, le=1.0),
    search: RegistrySearch = Depends(get_search),
):
    return await _registry_call(search.fuzzy, given, family, birthDate, threshold)


@app.get("/api/patients/search/by-name")
async def search_patients_by_name(
    name: str = Query(min_length=1),
    birthDate: str | None = None,
    gender: str | None = None,
    search: RegistrySearch = Depends(get_search),
):
    return await _registry_call(search.by_name, name, birthDate, gender)


@app.get("/api/patients/search")
async def search_patients(
    identifier: str | None = None,
    name: str | None = None,
    given: str | None = None,
    family: str | None = None,
    birthDate: str | None = None,
    gender: str | None = None,
    search: RegistrySearch = Depends(get_search),
):
    return await _registry_call(
        search.search,
        identifier=identifier,
        name=name,
        given=given,
        family=family,
        birth_date=birthDate,
        gender=gender,
    )


@app.get("/api/observations/patient")
async def patient_observations(
    identifier: str | None = None,
    patientId: str | None = None,
    category: str | None = None,
    code: str | None = None,
    last_updated: str | None = Query(default=None, alias="_lastUpdated"),
    search: RegistrySearch = Depends(get_search),
):
    wanted = identifier or patientId
    if not wanted:
        raise HTTPException(status_code=400, detail="identifier or patientId is required")
    return await _registry_call(search.observations_for, wanted, category, code, last_updated)


@app.get("/api/observations/{observation_id}")
async def get_observation(observation_id: str, search: RegistrySearch = Depends(get_search)):
    found = await _registry_call(search.observation, observation_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Observation {observation_id} not found")
    return found
