from __future__ import annotations


class MediatorError(Exception):
    """Raised for an unsuccessful exchange with the HIE mediator."""

    def __init__(self, message: str, status: int | None = None, body=None):
        super().__init__(message)
        self.status = status
        self.body = body


class TransientMediatorError(MediatorError):
    """5xx responses, timeouts and connection failures. Safe to retry."""


class PermanentMediatorError(MediatorError):
    """4xx responses. Retrying will not change the outcome."""


class MappingError(ValueError):
    pass


class MissingSubjectReference(MappingError):
    """An observation was built without a registry-resolved patient id."""


class SourceUnavailableError(RuntimeError):
    pass
