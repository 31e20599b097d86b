from __future__ import annotations

from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hie_sync.core.audit import AuditLogger
from hie_sync.core.config import TRANSMIT_BACKOFF_BASE_SECS, TRANSMIT_MAX_ATTEMPTS
from hie_sync.core.errors import MediatorError, TransientMediatorError
from hie_sync.core.logging import log
from hie_sync.etl.dead_letter import DeadLetterSink
from hie_sync.fhir.client import MediatorClient
from hie_sync.fhir.resources import normalize_resource_id


@dataclass
class TransmitResult:
    ok: bool
    status: int | None = None
    body: object = None
    error: str | None = None
    attempts: int = 0
    dead_letter_id: str | None = None

    @property
    def resource_id(self) -> str | None:
        if isinstance(self.body, dict):
            return normalize_resource_id(
                self.body.get("id") or (self.body.get("resource") or {}).get("id")
            )
        return None


class Transmitter:
    """Create/upsert calls with bounded retry, audit reporting and dead-lettering.

    Only transient failures (5xx, transport) are retried; 4xx is final on the
    first attempt. A failed unit is written to the dead-letter sink unless the
    caller opts out.
    """

    def __init__(
        self,
        client: MediatorClient,
        sink: DeadLetterSink,
        audit: AuditLogger | None = None,
        max_attempts: int = TRANSMIT_MAX_ATTEMPTS,
        backoff_base: float = TRANSMIT_BACKOFF_BASE_SECS,
    ):
        self.client = client
        self.sink = sink
        self.audit = audit or AuditLogger()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, exp_base=2, min=self.backoff_base),
            retry=retry_if_exception_type(TransientMediatorError),
            reraise=False,
        )

    async def _send(self, method: str, path: str, resource: dict) -> TransmitResult:
        send = self.client.post if method == "POST" else self.client.put
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    try:
                        response = await send(path, resource)
                    except MediatorError as exc:
                        self.audit.transmission_attempt(
                            method, path, resource, attempts, self.max_attempts,
                            status=exc.status, error=str(exc),
                        )
                        raise
                    self.audit.transmission_attempt(
                        method, path, resource, attempts, self.max_attempts, status=response.status
                    )
                    return TransmitResult(
                        ok=True, status=response.status, body=response.body, attempts=attempts
                    )
        except RetryError as exc:
            last = exc.last_attempt.exception()
            return TransmitResult(
                ok=False, status=getattr(last, "status", None), body=getattr(last, "body", None),
                error=str(last), attempts=attempts,
            )
        except MediatorError as exc:
            return TransmitResult(
                ok=False, status=exc.status, body=exc.body, error=str(exc), attempts=attempts
            )

    async def _deliver(self, method: str, path: str, resource: dict, dead_letter: bool, context: dict):
        result = await self._send(method, path, resource)
        if result.ok:
            return result
        log.error(
            "transmission_failed",
            method=method,
            path=path,
            resource_id=resource.get("id"),
            status=result.status,
            attempts=result.attempts,
            error=result.error,
        )
        if dead_letter:
            result.dead_letter_id = self.sink.write(
                {"method": method, "path": path, "resource": resource},
                {"message": result.error, "status": result.status, "attempts": result.attempts},
                stage="transmit",
                **context,
            )
        return result

    async def create(
        self,
        channel: str,
        resource: dict,
        dead_letter: bool = True,
        **context,
    ) -> TransmitResult:
        path = f"{channel.rstrip('/')}/{resource['resourceType']}"
        return await self._deliver("POST", path, resource, dead_letter, context)

    async def upsert(
        self,
        channel: str,
        resource: dict,
        dead_letter: bool = True,
        **context,
    ) -> TransmitResult:
        if not resource.get("id"):
            result = TransmitResult(ok=False, error="resource has no id; cannot upsert")
            if dead_letter:
                result.dead_letter_id = self.sink.write(
                    {"method": "PUT", "resource": resource}, result.error, stage="transmit", **context
                )
            return result
        path = f"{channel.rstrip('/')}/{resource['resourceType']}/{resource['id']}"
        return await self._deliver("PUT", path, resource, dead_letter, context)
