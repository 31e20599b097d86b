from __future__ import annotations

from hie_sync.core.config import SOURCE_ID
from hie_sync.core.logging import log


def _first_identifier(resource: dict) -> str | None:
    identifiers = resource.get("identifier") or []
    if identifiers:
        return identifiers[0].get("value")
    return None


class AuditLogger:
    """Side channel for transmission and registration events."""

    def __init__(self, source: str = SOURCE_ID):
        self.source = source
        self._log = log.bind(audit=True, source=source)

    def transmission_attempt(
        self,
        method: str,
        path: str,
        resource: dict,
        attempt: int,
        max_attempts: int,
        status: int | None = None,
        error: str | None = None,
    ) -> None:
        fields = {
            "method": method,
            "path": path,
            "resource_type": resource.get("resourceType"),
            "resource_id": resource.get("id"),
            "patient_identifier": _first_identifier(resource),
            "attempt": attempt,
            "max_attempts": max_attempts,
            "status": status,
        }
        if error is None:
            self._log.info("transmission_attempt", outcome="success", **fields)
        else:
            self._log.error("transmission_attempt", outcome="error", error=error, **fields)

    def validation_error(self, resource: dict, errors: list[str]) -> None:
        self._log.error(
            "validation_error",
            resource_type=resource.get("resourceType"),
            resource_id=resource.get("id"),
            patient_identifier=_first_identifier(resource),
            errors=errors,
        )

    def registration(self, resource: dict, status: int, registry_id: str | None = None) -> None:
        self._log.info(
            "patient_registration",
            patient_identifier=_first_identifier(resource),
            identifier_count=len(resource.get("identifier") or []),
            status=status,
            registry_id=registry_id,
        )
