"""Find (or create) the shared-record patient for a source patient identifier.

The MPI is the authority for identity; the SHR holds the patient that
observations reference. A source identifier is searched in the MPI, the best
candidate is looked up in the SHR by its strongest identifier, and a shallow
projection is created in the SHR when it is not there yet.
"""
from __future__ import annotations

import asyncio

from hie_sync.core.audit import AuditLogger
from hie_sync.core.config import (
    MPI_CHANNEL_PATH,
    RESOLVE_CONCURRENCY,
    RESOLVER_REQUERY_DELAY_SECS,
    SHR_CHANNEL_PATH,
)
from hie_sync.core.logging import log
from hie_sync.etl.transmit import Transmitter
from hie_sync.fhir.client import MediatorClient
from hie_sync.fhir.identifiers import (
    IdentifierKind,
    best_identifier,
    known_identifiers,
    search_systems,
)
from hie_sync.fhir.resources import normalize_resource_id

PROJECTION_FIELDS = ("identifier", "gender", "birthDate", "managingOrganization")


def candidate_sort_key(resource: dict) -> tuple:
    found = known_identifiers(resource)
    return (
        IdentifierKind.PRIMARY_HEALTH_ID not in found,
        -len(found),
        str(resource.get("id") or ""),
    )


def select_candidate(candidates: list[dict]) -> dict | None:
    """PHID holders first, then the most populated identifiers, then lowest id."""
    usable = [c for c in candidates if isinstance(c, dict) and c.get("resourceType", "Patient") == "Patient"]
    if not usable:
        return None
    return min(usable, key=candidate_sort_key)


def shallow_projection(mpi_patient: dict) -> dict:
    projection = {"resourceType": "Patient"}
    for field in PROJECTION_FIELDS:
        value = mpi_patient.get(field)
        if value:
            projection[field] = value
    return projection


class PatientIdentityResolver:
    def __init__(
        self,
        client: MediatorClient,
        transmitter: Transmitter,
        audit: AuditLogger | None = None,
        mpi_channel: str = MPI_CHANNEL_PATH,
        shr_channel: str = SHR_CHANNEL_PATH,
        requery_delay: float = RESOLVER_REQUERY_DELAY_SECS,
        concurrency: int = RESOLVE_CONCURRENCY,
    ):
        self.client = client
        self.transmitter = transmitter
        self.audit = audit or transmitter.audit
        self.mpi_channel = mpi_channel
        self.shr_channel = shr_channel
        self.requery_delay = requery_delay
        self.concurrency = concurrency

    async def _search_mpi(self, value: str) -> list[dict]:
        for kind in search_systems(value):
            found = await self.client.search_by_identifier(self.mpi_channel, kind.system, value)
            if found:
                return found
        return []

    async def _find_in_shr(self, kind: IdentifierKind, value: str) -> str | None:
        found = await self.client.search_by_identifier(self.shr_channel, kind.system, value)
        for resource in found:
            resource_id = normalize_resource_id(resource.get("id"))
            if resource_id:
                return resource_id
        return None

    async def _register_in_shr(self, mpi_id: str) -> str | None:
        response = await self.client.get(f"{self.mpi_channel.rstrip('/')}/Patient/{mpi_id}")
        if not isinstance(response.body, dict):
            return None
        projection = shallow_projection(response.body)
        result = await self.transmitter.create(self.shr_channel, projection, dead_letter=False)
        if not result.ok:
            log.warning("shr_registration_failed", mpi_id=mpi_id, status=result.status, error=result.error)
            return None
        self.audit.registration(projection, result.status, registry_id=result.resource_id)
        return result.resource_id

    async def _resolve(self, source_identifier: str) -> str | None:
        value = str(source_identifier or "").strip()
        if not value:
            return None

        candidates = await self._search_mpi(value)
        candidate = select_candidate(candidates)
        if candidate is None:
            log.info("patient_not_in_mpi", identifier=value)
            return None

        best = best_identifier(candidate)
        if best is None:
            log.warning("mpi_candidate_without_known_identifier", mpi_id=candidate.get("id"))
            return None
        kind, best_value = best

        shr_id = await self._find_in_shr(kind, best_value)
        if shr_id:
            return shr_id

        mpi_id = normalize_resource_id(candidate.get("id"))
        if not mpi_id:
            return None
        shr_id = await self._register_in_shr(mpi_id)
        if shr_id:
            return shr_id

        # the registry may accept the create without echoing an id
        await asyncio.sleep(self.requery_delay)
        return await self._find_in_shr(kind, best_value)

    async def resolve(self, source_identifier: str) -> str | None:
        """Return the SHR patient id for a source identifier, or None.

        Never raises; any failure is logged and reported as unresolved.
        """
        try:
            return await self._resolve(source_identifier)
        except Exception as exc:
            log.warning(
                "patient_resolution_failed",
                identifier=source_identifier,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    async def resolve_many(self, identifiers) -> dict[str, str | None]:
        semaphore = asyncio.Semaphore(self.concurrency)
        unique = list(dict.fromkeys(i for i in identifiers if i))

        async def _one(identifier):
            async with semaphore:
                return identifier, await self.resolve(identifier)

        pairs = await asyncio.gather(*(_one(i) for i in unique))
        return dict(pairs)
