"""Identifier systems known to the exchange, in authority order.

The source emits several identifier formats. Instead of probing strings ad
hoc, every identifier is classified into an ``IdentifierKind``; the enum order
is the authority order used when mapping and when resolving patients.
"""
from __future__ import annotations

import re
from enum import Enum

PROGRAM_ID_PATTERN = re.compile(
    r"^[0-9A-Fa-f]{2}-[0-9A-Fa-f]{2}-[0-9A-Fa-f]{2}-(\d{4})-[A-Za-z]-\d{5}$"
)
PHID_PATTERN = re.compile(r"^[A-Za-z0-9]{8}$")
PROGRAM_ID_MIN_YEAR = 1900
PROGRAM_ID_MAX_YEAR = 2100


class IdentifierKind(Enum):
    PRIMARY_HEALTH_ID = "urn:impilo:phid"
    PROGRAM_ID = "urn:neotree:impilo-id"
    LEGACY_ID = "urn:impilo:uid"
    PERSON_ID = "urn:impilo:person-id"
    OPAQUE = None

    @property
    def system(self) -> str | None:
        return self.value


KNOWN_KINDS = (
    IdentifierKind.PRIMARY_HEALTH_ID,
    IdentifierKind.PROGRAM_ID,
    IdentifierKind.LEGACY_ID,
    IdentifierKind.PERSON_ID,
)

_SYSTEM_TO_KIND = {kind.system: kind for kind in KNOWN_KINDS}


def is_program_id(value: str) -> bool:
    """Well-formed program id with a plausible enrolment year."""
    match = PROGRAM_ID_PATTERN.match(value.strip())
    if not match:
        return False
    return PROGRAM_ID_MIN_YEAR <= int(match.group(1)) <= PROGRAM_ID_MAX_YEAR


def is_primary_health_id(value: str) -> bool:
    return bool(PHID_PATTERN.match(value.strip()))


# Shape matchers, checked in order. Legacy and person ids have no shape of
# their own, so anything else is OPAQUE.
_SHAPE_MATCHERS = (
    (IdentifierKind.PRIMARY_HEALTH_ID, is_primary_health_id),
    (IdentifierKind.PROGRAM_ID, lambda value: bool(PROGRAM_ID_PATTERN.match(value.strip()))),
)


def classify(value: str) -> IdentifierKind:
    for kind, matches in _SHAPE_MATCHERS:
        if matches(value):
            return kind
    return IdentifierKind.OPAQUE


def search_systems(value: str) -> list[IdentifierKind]:
    """Identifier systems to search, in order, for a bare source identifier."""
    kind = classify(value)
    if kind is IdentifierKind.OPAQUE:
        return list(KNOWN_KINDS)
    return [kind]


def kind_of_system(system: str | None) -> IdentifierKind:
    return _SYSTEM_TO_KIND.get(system, IdentifierKind.OPAQUE)


def known_identifiers(resource: dict) -> dict[IdentifierKind, str]:
    """Populated identifiers of a FHIR resource keyed by known kind (first wins)."""
    found: dict[IdentifierKind, str] = {}
    for ident in resource.get("identifier") or []:
        kind = kind_of_system(ident.get("system"))
        value = str(ident.get("value") or "").strip()
        if kind is IdentifierKind.OPAQUE or not value or kind in found:
            continue
        found[kind] = value
    return found


def best_identifier(resource: dict) -> tuple[IdentifierKind, str] | None:
    found = known_identifiers(resource)
    for kind in KNOWN_KINDS:
        if kind in found:
            return kind, found[kind]
    return None
