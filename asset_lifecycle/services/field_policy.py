"""Location states and the field contract of each one.

Every write to an asset row goes through :func:`build_row_values`, which is
the only place that decides which columns a state owns, which of them are
required, and which must be nulled out. The movement engine and the
replacement chain both read their rules from here.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, NamedTuple

from services.lifecycle_errors import InvalidFieldValue, RequiredFieldMissing


class LocationType(str, Enum):
    WAREHOUSE = "deposito_malta"
    MAINTENANCE = "em_manutencao"
    RENTED = "locacao"
    AWAITING_REPORT = "aguardando_laudo"


LOCATION_LABELS = {
    LocationType.WAREHOUSE: "Warehouse",
    LocationType.MAINTENANCE: "Maintenance",
    LocationType.RENTED: "Rented",
    LocationType.AWAITING_REPORT: "Awaiting inspection report",
}

STATE_FIELDS: dict[LocationType, tuple[str, ...]] = {
    LocationType.WAREHOUSE: ("deposito_description",),
    LocationType.MAINTENANCE: (
        "maintenance_company",
        "maintenance_work_site",
        "maintenance_description",
        "maintenance_arrival_date",
        "maintenance_departure_date",
        "malta_collaborator",
    ),
    LocationType.RENTED: (
        "rental_company",
        "rental_work_site",
        "rental_start_date",
        "rental_end_date",
        "rental_contract_number",
    ),
    LocationType.AWAITING_REPORT: ("inspection_start_date", "inspection_notes"),
}

REQUIRED_FIELDS: dict[LocationType, tuple[str, ...]] = {
    LocationType.WAREHOUSE: (),
    LocationType.MAINTENANCE: (
        "maintenance_company",
        "maintenance_work_site",
        "maintenance_description",
        "maintenance_arrival_date",
    ),
    LocationType.RENTED: (
        "rental_company",
        "rental_work_site",
        "rental_start_date",
        "rental_contract_number",
    ),
    LocationType.AWAITING_REPORT: (),
}

# Not owned by any state; kept across moves unless the payload overwrites them.
SHARED_FIELDS: tuple[str, ...] = ("equipment_observations",)

DATE_FIELDS = frozenset(
    {
        "maintenance_arrival_date",
        "maintenance_departure_date",
        "rental_start_date",
        "rental_end_date",
    }
)

# Stamped by the engine, never taken from a caller payload.
SYSTEM_FIELDS = frozenset({"inspection_start_date"})

_ALL_STATES = frozenset(LocationType)

# AWAITING_REPORT has no row: only the post-inspection gate may move an asset out of it.
TRANSITIONS: dict[LocationType, frozenset[LocationType]] = {
    LocationType.WAREHOUSE: _ALL_STATES,
    LocationType.MAINTENANCE: _ALL_STATES,
    LocationType.RENTED: _ALL_STATES,
}

GATE_EXITS = frozenset({LocationType.WAREHOUSE, LocationType.MAINTENANCE, LocationType.RENTED})

REPLACEMENT_DESTINATIONS = frozenset(
    {LocationType.WAREHOUSE, LocationType.MAINTENANCE, LocationType.AWAITING_REPORT}
)

_DATE_RANGES = (
    ("rental_start_date", "rental_end_date"),
    ("maintenance_arrival_date", "maintenance_departure_date"),
)

_NOT_BEFORE_REGISTRATION = ("rental_start_date", "maintenance_arrival_date")


class FieldSet(NamedTuple):
    required: tuple[str, ...]
    cleared: tuple[str, ...]


def parse_location_type(raw: Any) -> LocationType:
    if isinstance(raw, LocationType):
        return raw
    token = str(raw or "").strip()
    for state in LocationType:
        if token == state.value or token.upper() == state.name:
            return state
    raise InvalidFieldValue("location_type", f"unknown location state '{token}'")


def location_label(state: Any) -> str:
    try:
        return LOCATION_LABELS[parse_location_type(state)]
    except InvalidFieldValue:
        return str(state or "-")


def state_fields_for(target: LocationType) -> tuple[str, ...]:
    return STATE_FIELDS[target]


def cleared_fields_for(target: LocationType) -> tuple[str, ...]:
    cleared: list[str] = []
    for state, fields in STATE_FIELDS.items():
        if state != target:
            cleared.extend(fields)
    return tuple(cleared)


def field_set_for(target: Any) -> FieldSet:
    state = parse_location_type(target)
    return FieldSet(required=REQUIRED_FIELDS[state], cleared=cleared_fields_for(state))


def is_transition_allowed(current: Any, target: Any) -> bool:
    return parse_location_type(target) in TRANSITIONS.get(parse_location_type(current), frozenset())


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_field_value(field: str, value: Any) -> Any:
    if _blank(value):
        return None
    if field in DATE_FIELDS:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value).strip()[:10])
        except ValueError as exc:
            raise InvalidFieldValue(field, f"'{value}' is not a valid date (YYYY-MM-DD)") from exc
    if isinstance(value, str):
        return value.strip()
    return value


def missing_required(target: LocationType, values: Mapping[str, Any]) -> list[str]:
    return [field for field in REQUIRED_FIELDS[target] if _blank(values.get(field))]


def validate_field_values(values: Mapping[str, Any], registered_on: date | None = None) -> None:
    for start_field, end_field in _DATE_RANGES:
        start = values.get(start_field)
        end = values.get(end_field)
        if start and end and end < start:
            raise InvalidFieldValue(end_field, f"cannot be earlier than {start_field} ({start.isoformat()})")
    if registered_on:
        for field in _NOT_BEFORE_REGISTRATION:
            value = values.get(field)
            if value and value < registered_on:
                raise InvalidFieldValue(
                    field,
                    f"cannot be earlier than the asset registration date ({registered_on.isoformat()})",
                )


def build_row_values(
    target: Any,
    payload: Mapping[str, Any] | None,
    *,
    now: datetime | None = None,
    registered_on: date | None = None,
) -> dict[str, Any]:
    """Map a movement payload onto the wide asset row for ``target``.

    Returns the full set of columns to write: the target's own fields (absent
    ones as ``None``), every field of the other states nulled, any shared field
    present in the payload, and ``location_type``. Raises
    :class:`RequiredFieldMissing` for the first required field that is blank.
    """
    state = parse_location_type(target)
    payload = payload or {}

    values: dict[str, Any] = {}
    for field in STATE_FIELDS[state]:
        if field in SYSTEM_FIELDS:
            values[field] = None
            continue
        values[field] = coerce_field_value(field, payload.get(field))

    missing = missing_required(state, values)
    if missing:
        raise RequiredFieldMissing(missing[0], state.name)

    validate_field_values(values, registered_on)

    if state == LocationType.AWAITING_REPORT:
        values["inspection_start_date"] = now or datetime.now()

    for field in cleared_fields_for(state):
        values[field] = None

    for field in SHARED_FIELDS:
        if field in payload:
            values[field] = coerce_field_value(field, payload.get(field))

    values["location_type"] = state.value
    return values


def foreign_state_fields(row: Any) -> list[str]:
    """Fields populated on ``row`` that belong to a state other than its current one."""
    getter = row.get if isinstance(row, Mapping) else lambda name: getattr(row, name, None)
    state = parse_location_type(getter("location_type"))
    return [field for field in cleared_fields_for(state) if not _blank(getter(field))]


def is_state_pure(row: Any) -> bool:
    return not foreign_state_fields(row)
