import json
import os

os.environ.setdefault("SOURCE_DB_URL", "sqlite://")
os.environ.setdefault("STATE_DB_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hie_sync.core.audit import AuditLogger
from hie_sync.core.errors import PermanentMediatorError
from hie_sync.etl.dead_letter import DeadLetterSink
from hie_sync.etl.pipeline import SyncContext
from hie_sync.etl.queue import DeferredWriteQueue
from hie_sync.etl.transmit import Transmitter
from hie_sync.fhir.client import MediatorResponse
from hie_sync.fhir.resolver import PatientIdentityResolver
from hie_sync.models import tables  # noqa: F401
from hie_sync.models.base import Base

MPI = "/opencr/fhir"
SHR = "/shr/fhir"

SOURCE_DDL = (
    """CREATE TABLE consultation.patient (
        patient_id TEXT PRIMARY KEY, person_id TEXT, facility_id TEXT, phid TEXT)""",
    """CREATE TABLE consultation.neonatal_care (
        neonatal_care_id INTEGER PRIMARY KEY, patient_id TEXT,
        impilo_neotree_id TEXT, date_time_admission TEXT)""",
    """CREATE TABLE consultation.neonatal_question (
        id INTEGER PRIMARY KEY, category TEXT, category_id TEXT, type TEXT,
        data_key TEXT, neonatal_care_id INTEGER, patient_id TEXT, data TEXT,
        display_key TEXT, display_value TEXT)""",
    """CREATE TABLE report.person_demographic (
        person_id TEXT PRIMARY KEY, firstname TEXT, lastname TEXT,
        birthdate TEXT, sex TEXT)""",
)


def _memory_engine():
    return create_engine(
        "sqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def make_state_sessions() -> sessionmaker:
    engine = _memory_engine()
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def make_source_sessions() -> sessionmaker:
    engine = _memory_engine()

    @event.listens_for(engine, "connect")
    def _attach(dbapi_conn, _record):
        dbapi_conn.execute("ATTACH DATABASE ':memory:' AS consultation")
        dbapi_conn.execute("ATTACH DATABASE ':memory:' AS report")

    with engine.begin() as conn:
        for ddl in SOURCE_DDL:
            conn.execute(text(ddl))
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def insert_rows(sessions: sessionmaker, table: str, rows: list[dict]) -> None:
    with sessions() as db:
        for row in rows:
            cols = ", ".join(row)
            params = ", ".join(f":{c}" for c in row)
            db.execute(text(f"INSERT INTO {table} ({cols}) VALUES ({params})"), row)
        db.commit()


def add_admission(
    sessions,
    care_id,
    patient_id,
    admitted,
    person_id=None,
    impilo_id=None,
    phid=None,
    facility_id="FAC1",
    demographics=True,
):
    person_id = person_id or f"person-{patient_id}"
    insert_rows(
        sessions,
        "consultation.patient",
        [{"patient_id": patient_id, "person_id": person_id, "facility_id": facility_id, "phid": phid}],
    )
    if demographics:
        insert_rows(
            sessions,
            "report.person_demographic",
            [
                {
                    "person_id": person_id,
                    "firstname": "Baby",
                    "lastname": f"Of {patient_id}",
                    "birthdate": "2025-01-10",
                    "sex": "F",
                }
            ],
        )
    insert_rows(
        sessions,
        "consultation.neonatal_care",
        [
            {
                "neonatal_care_id": care_id,
                "patient_id": patient_id,
                "impilo_neotree_id": impilo_id,
                "date_time_admission": admitted,
            }
        ],
    )


def add_question(sessions, question_id, care_id, patient_id, data_key="Weight", value=1200, type_="number"):
    insert_rows(
        sessions,
        "consultation.neonatal_question",
        [
            {
                "id": question_id,
                "category": "Vital signs",
                "category_id": "vitals",
                "type": type_,
                "data_key": data_key,
                "neonatal_care_id": care_id,
                "patient_id": patient_id,
                "data": json.dumps({"values": [{"value": value}]}),
                "display_key": data_key,
                "display_value": str(value),
            }
        ],
    )


class RecordingAudit(AuditLogger):
    def __init__(self):
        super().__init__(source="test")
        self.attempts = []
        self.validation_errors = []
        self.registrations = []

    def transmission_attempt(self, method, path, resource, attempt, max_attempts, status=None, error=None):
        self.attempts.append(
            {"method": method, "path": path, "attempt": attempt, "status": status, "error": error}
        )

    def validation_error(self, resource, errors):
        self.validation_errors.append((resource.get("id"), errors))

    def registration(self, resource, status, registry_id=None):
        self.registrations.append((status, registry_id))


def _has_identifier(identifiers, token: str) -> bool:
    system, _, value = token.partition("|")
    return any(i.get("system") == system and i.get("value") == value for i in identifiers or [])


def _matches(resource: dict, params: dict) -> bool:
    name = (resource.get("name") or [{}])[0]
    for key, wanted in params.items():
        if key == "identifier":
            ok = _has_identifier(resource.get("identifier"), wanted)
        elif key == "given":
            ok = wanted in (name.get("given") or [])
        elif key == "family":
            ok = name.get("family") == wanted
        elif key == "birthdate":
            ok = resource.get("birthDate") == wanted
        elif key == "gender":
            ok = resource.get("gender") == wanted
        elif key == "subject":
            ok = (resource.get("subject") or {}).get("reference") == wanted
        elif key == "subject.identifier":
            ok = _has_identifier([(resource.get("subject") or {}).get("identifier") or {}], wanted)
        elif key == "code":
            ok = any(c.get("code") == wanted for c in (resource.get("code") or {}).get("coding") or [])
        else:
            ok = True
        if not ok:
            return False
    return True


class FakeMediator:
    """In-memory MPI/SHR keyed by channel path.

    ``fail_next(method, path, *errors)`` makes the next calls to an exact path
    raise the given errors in order.
    """

    def __init__(self, echo_ids: bool = True):
        self.store: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.echo_ids = echo_ids
        self._next_id = 0

    def add(self, channel: str, resource: dict) -> dict:
        self.store.setdefault(channel, {})[resource["id"]] = resource
        return resource

    def fail_next(self, method: str, path: str, *errors: Exception) -> None:
        self.failures.setdefault((method, path), []).extend(errors)

    def _maybe_fail(self, method: str, path: str) -> None:
        pending = self.failures.get((method, path))
        if pending:
            raise pending.pop(0)

    def resources(self, channel: str, resource_type: str) -> list[dict]:
        return [r for r in self.store.get(channel, {}).values() if r.get("resourceType") == resource_type]

    async def post(self, path, resource):
        self.calls.append(("POST", path, resource))
        self._maybe_fail("POST", path)
        channel, resource_type = path.rsplit("/", 1)
        self._next_id += 1
        stored = dict(resource, id=f"{resource_type.lower()}-{self._next_id}")
        self.add(channel, stored)
        return MediatorResponse(201, stored if self.echo_ids else {"resourceType": resource_type})

    async def put(self, path, resource):
        self.calls.append(("PUT", path, resource))
        self._maybe_fail("PUT", path)
        channel, _resource_type, resource_id = path.rsplit("/", 2)
        self.add(channel, dict(resource, id=resource_id))
        return MediatorResponse(200, resource)

    async def get(self, path, params=None):
        self.calls.append(("GET", path, params))
        self._maybe_fail("GET", path)
        channel, _resource_type, resource_id = path.rsplit("/", 2)
        found = self.store.get(channel, {}).get(resource_id)
        if found is None:
            raise PermanentMediatorError(f"GET {path} returned HTTP 404", status=404)
        return MediatorResponse(200, found)

    async def search(self, channel, resource_type, params, max_pages=None):
        """Exact-match search on the handful of parameters the read API sends."""
        self.calls.append(("SEARCH", channel, resource_type, dict(params)))
        self._maybe_fail("SEARCH", channel)
        return [r for r in self.resources(channel, resource_type) if _matches(r, params)]

    async def search_by_identifier(self, channel, system, value):
        self.calls.append(("SEARCH", channel, f"{system}|{value}"))
        self._maybe_fail("SEARCH", channel)
        return [
            r
            for r in self.resources(channel, "Patient")
            if any(i.get("system") == system and i.get("value") == value for i in r.get("identifier") or [])
        ]


@pytest.fixture
def state_sessions():
    return make_state_sessions()


@pytest.fixture
def source_sessions():
    return make_source_sessions()


@pytest.fixture
def mediator():
    return FakeMediator()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def sink(tmp_path):
    return DeadLetterSink(str(tmp_path / "dlq"))


@pytest.fixture
def transmitter(mediator, sink, audit):
    return Transmitter(mediator, sink, audit=audit, max_attempts=3, backoff_base=0)


@pytest.fixture
def resolver(mediator, transmitter, audit):
    return PatientIdentityResolver(
        mediator, transmitter, audit=audit, mpi_channel=MPI, shr_channel=SHR, requery_delay=0
    )


@pytest.fixture
def queue(state_sessions):
    return DeferredWriteQueue(state_sessions)


@pytest.fixture
def ctx(source_sessions, state_sessions, transmitter, resolver, queue, sink, audit):
    return SyncContext(
        source_sessions=source_sessions,
        state_sessions=state_sessions,
        transmitter=transmitter,
        resolver=resolver,
        queue=queue,
        sink=sink,
        audit=audit,
        source_tag="neotree",
        mpi_channel=MPI,
        shr_channel=SHR,
        batch_size=50,
    )
