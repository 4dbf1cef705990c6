"""Graph calendar event → Appointment export row.

Rules
- Every column is a direct copy of the first raw source present for it; nothing is
  computed (durations and flags are passed through as the source sends them).
- Sources are tried in order: a flat key with the column's own name, the Graph-native
  location of the value, then a single-value extended property named after the column.
- Missing or oddly shaped values leave the column empty; mapping never raises.
- Delta tombstones (`@removed`) carry only `id`, so they map to an id-only row.

Public API
- APPOINTMENT_COLUMNS: the fixed export column order
- Appointment: one export row
- map_event(raw) -> Appointment
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import astuple, dataclass, fields
from typing import Any

__all__ = ["APPOINTMENT_COLUMNS", "Appointment", "map_event"]

Scalar = str | int | float | bool | None


@dataclass(frozen=True)
class Appointment:
    appointmentId: Scalar = None
    hotelId: Scalar = None
    hotelName: Scalar = None
    opportunityId: Scalar = None
    userId: Scalar = None
    activityType: Scalar = None
    startDateTime: Scalar = None
    endDateTime: Scalar = None
    appointmentStatus: Scalar = None
    durationMins: Scalar = None
    durationDays: Scalar = None
    durationHours: Scalar = None
    isBillable: Scalar = None
    location: Scalar = None
    activityDetails: Scalar = None
    notes: Scalar = None
    isTrainerLocal: Scalar = None
    originalStartDate: Scalar = None
    originalEndDate: Scalar = None
    createdBy: Scalar = None
    createdDate: Scalar = None
    modifiedBy: Scalar = None
    modifiedDate: Scalar = None
    subject: Scalar = None
    eventType: Scalar = None

    def values(self) -> tuple[Scalar, ...]:
        return astuple(self)


APPOINTMENT_COLUMNS: tuple[str, ...] = tuple(f.name for f in fields(Appointment))

# Graph-native locations, tried after the flat same-name key
_GRAPH_PATHS: dict[str, tuple[tuple[str, ...], ...]] = {
    "appointmentId": (("id",),),
    "startDateTime": (("start", "dateTime"),),
    "endDateTime": (("end", "dateTime"),),
    "appointmentStatus": (("showAs",),),
    "location": (("location", "displayName"),),
    "notes": (("bodyPreview",),),
    "originalStartDate": (("originalStart",),),
    "createdBy": (("organizer", "emailAddress", "address"),),
    "createdDate": (("createdDateTime",),),
    "modifiedDate": (("lastModifiedDateTime",),),
    "eventType": (("type",),),
}

_EXTENDED_PROPS = "singleValueExtendedProperties"


def _dig(raw: Mapping[str, Any], path: Sequence[str]) -> Any:
    cur: Any = raw
    for part in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(part)
    return cur


def _extended_property(raw: Mapping[str, Any], column: str) -> Any:
    # ids look like "String {00020329-0000-0000-C000-000000000046} Name hotelId"
    props = raw.get(_EXTENDED_PROPS)
    if not isinstance(props, list):
        return None
    suffix = f" name {column.lower()}"
    for prop in props:
        if not isinstance(prop, Mapping):
            continue
        pid = prop.get("id")
        if isinstance(pid, str) and pid.lower().endswith(suffix):
            return prop.get("value")
    return None


def _scalar(value: Any) -> Scalar:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return None


def _lookup(raw: Mapping[str, Any], column: str) -> Scalar:
    candidates: list[Any] = [raw.get(column)]
    candidates.extend(_dig(raw, path) for path in _GRAPH_PATHS.get(column, ()))
    candidates.append(_extended_property(raw, column))
    for value in candidates:
        scalar = _scalar(value)
        if scalar is not None:
            return scalar
    return None


def map_event(raw: Mapping[str, Any]) -> Appointment:
    """Map one raw delta record to an Appointment row."""
    if not isinstance(raw, Mapping):
        return Appointment()
    return Appointment(**{col: _lookup(raw, col) for col in APPOINTMENT_COLUMNS})
