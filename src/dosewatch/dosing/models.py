"""Data models for dose tracking.

Dataclasses map 1:1 to the ``regimens``, ``administrations``,
``cosign_requests`` and ``inventory_items`` tables.  Includes JSON
serialisation helpers for REST responses and database round-tripping.
"""

from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from dosewatch.dosing.errors import ValidationError

# Author of synthetic records written by the system (materialized missed doses).
SYSTEM_CAREGIVER_ID = uuid.UUID(int=0)

DEFAULT_TIMEZONE = "UTC"


class ScheduleType(enum.StrEnum):
    FIXED = "FIXED"
    PRN = "PRN"


class DoseStatus(enum.StrEnum):
    """Status of a scheduled dose, or of the record that fulfils it."""

    PENDING = "pending"
    DUE = "due"
    OVERDUE = "overdue"
    ON_TIME = "on_time"
    LATE = "late"
    VERY_LATE = "very_late"
    MISSED = "missed"
    PRN = "prn"


COMPLETED_STATUSES = frozenset({DoseStatus.ON_TIME, DoseStatus.LATE, DoseStatus.VERY_LATE})
OPEN_STATUSES = frozenset({DoseStatus.PENDING, DoseStatus.DUE, DoseStatus.OVERDUE})


class CoSignState(enum.StrEnum):
    """Co-sign request lifecycle; confirmed and expired are terminal."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


def _get(row: Any, key: str, default: Any = None) -> Any:
    """Read *key* from an asyncpg Record or mapping, tolerating absent columns."""
    try:
        value = row[key]
    except KeyError:
        return default
    return default if value is None else value


def _parse_uuid(value: Any) -> uuid.UUID:
    """Parse a UUID from a string or UUID object."""
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _parse_optional_uuid(value: Any) -> uuid.UUID | None:
    if value is None:
        return None
    return _parse_uuid(value)


def _parse_datetime(value: Any) -> datetime:
    """Parse a datetime from a string or datetime object."""
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _parse_optional_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return _parse_datetime(value)


def _parse_optional_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_optional_jsonb(value: Any) -> dict[str, Any] | None:
    """Parse an optional JSONB value (may be a string or already a dict)."""
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_local_time(value: str) -> time:
    """Parse an ``HH:MM`` wall-clock entry of a regimen schedule."""
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError) as exc:
        raise ValidationError(
            f"Invalid local time {value!r}; expected HH:MM",
            details={"times_local": value},
        ) from exc


@dataclass(frozen=True)
class Tolerance:
    """Lateness thresholds, in minutes after the scheduled instant.

    ``missed_cutoff_minutes`` is never earlier than ``very_late_minutes``.
    """

    late_minutes: int = 60
    very_late_minutes: int = 180
    missed_cutoff_minutes: int = 240

    def __post_init__(self) -> None:
        if self.late_minutes < 0:
            raise ValidationError("late_minutes must be >= 0")
        if self.very_late_minutes < self.late_minutes:
            raise ValidationError("very_late_minutes must be >= late_minutes")
        if self.missed_cutoff_minutes < self.very_late_minutes:
            object.__setattr__(self, "missed_cutoff_minutes", self.very_late_minutes)

    @property
    def late(self) -> timedelta:
        return timedelta(minutes=self.late_minutes)

    @property
    def very_late(self) -> timedelta:
        return timedelta(minutes=self.very_late_minutes)

    @property
    def missed_cutoff(self) -> timedelta:
        return timedelta(minutes=self.missed_cutoff_minutes)

    @classmethod
    def from_config(cls, config: Any) -> Tolerance:
        """Build from a :class:`dosewatch.config.ToleranceConfig`."""
        return cls(
            late_minutes=config.late_minutes,
            very_late_minutes=config.very_late_minutes,
            missed_cutoff_minutes=config.missed_cutoff_minutes,
        )


@dataclass
class Regimen:
    """A medication schedule for one animal.

    Maps to the ``regimens`` table.  ``household_id`` is not a column; it is
    joined in from the regimen's animal when available.
    """

    id: uuid.UUID
    animal_id: uuid.UUID
    medication_id: uuid.UUID
    schedule_type: ScheduleType
    start_date: date
    times_local: list[str] = field(default_factory=list)
    name: str | None = None
    end_date: date | None = None
    late_minutes: int | None = None
    very_late_minutes: int | None = None
    cutoff_minutes: int | None = None
    high_risk: bool = False
    requires_co_sign: bool = False
    active: bool = True
    discontinued_at: datetime | None = None
    household_id: uuid.UUID | None = None

    @property
    def is_prn(self) -> bool:
        return self.schedule_type == ScheduleType.PRN

    @property
    def needs_cosign(self) -> bool:
        return self.high_risk or self.requires_co_sign

    def local_times(self) -> list[time]:
        """Distinct schedule times, sorted."""
        return sorted({parse_local_time(t) for t in self.times_local})

    def tolerance(self, defaults: Tolerance) -> Tolerance:
        """Per-regimen thresholds, falling back to *defaults* for unset fields.

        Thresholds that come out of order are clamped upward, never rejected.
        """
        late = self.late_minutes if self.late_minutes is not None else defaults.late_minutes
        very_late = max(
            self.very_late_minutes
            if self.very_late_minutes is not None
            else defaults.very_late_minutes,
            late,
        )
        cutoff = (
            self.cutoff_minutes
            if self.cutoff_minutes is not None
            else defaults.missed_cutoff_minutes
        )
        return Tolerance(
            late_minutes=late,
            very_late_minutes=very_late,
            missed_cutoff_minutes=max(cutoff, very_late),
        )

    def is_active_at(self, instant: datetime) -> bool:
        """True when the regimen had not been discontinued at *instant*."""
        if self.discontinued_at is not None:
            return instant < self.discontinued_at
        return self.active

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "animal_id": str(self.animal_id),
            "medication_id": str(self.medication_id),
            "name": self.name,
            "schedule_type": self.schedule_type.value,
            "times_local": list(self.times_local),
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "late_minutes": self.late_minutes,
            "very_late_minutes": self.very_late_minutes,
            "cutoff_minutes": self.cutoff_minutes,
            "high_risk": self.high_risk,
            "requires_co_sign": self.requires_co_sign,
            "active": self.active,
            "discontinued_at": _iso(self.discontinued_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> Regimen:
        """Reconstruct a Regimen from a database row (asyncpg Record or mapping)."""
        return cls(
            id=_parse_uuid(row["id"]),
            animal_id=_parse_uuid(row["animal_id"]),
            medication_id=_parse_uuid(row["medication_id"]),
            schedule_type=ScheduleType(row["schedule_type"]),
            start_date=_parse_optional_date(row["start_date"]),
            times_local=list(_get(row, "times_local", [])),
            name=_get(row, "name"),
            end_date=_parse_optional_date(_get(row, "end_date")),
            late_minutes=_get(row, "late_minutes"),
            very_late_minutes=_get(row, "very_late_minutes"),
            cutoff_minutes=_get(row, "cutoff_minutes"),
            high_risk=bool(_get(row, "high_risk", False)),
            requires_co_sign=bool(_get(row, "requires_co_sign", False)),
            active=bool(_get(row, "active", True)),
            discontinued_at=_parse_optional_datetime(_get(row, "discontinued_at")),
            household_id=_parse_optional_uuid(_get(row, "household_id")),
        )


@dataclass
class AnimalContext:
    """The animal a dose is given to, with its resolved timezone."""

    id: uuid.UUID
    household_id: uuid.UUID
    timezone: str = DEFAULT_TIMEZONE
    cosign_window_minutes: int | None = None

    @classmethod
    def from_row(cls, row: Any) -> AnimalContext:
        return cls(
            id=_parse_uuid(row["id"]),
            household_id=_parse_uuid(row["household_id"]),
            timezone=_get(row, "timezone") or _get(row, "household_timezone") or DEFAULT_TIMEZONE,
            cosign_window_minutes=_get(row, "cosign_window_minutes"),
        )


@dataclass(frozen=True, order=True)
class ScheduledDose:
    """One occurrence of a fixed-schedule regimen, in UTC."""

    scheduled_for: datetime
    regimen_id: uuid.UUID
    animal_id: uuid.UUID


@dataclass
class InventoryItem:
    id: uuid.UUID
    household_id: uuid.UUID
    medication_id: uuid.UUID
    expires_on: date | None = None
    units_remaining: int | None = None

    @classmethod
    def from_row(cls, row: Any) -> InventoryItem:
        return cls(
            id=_parse_uuid(row["id"]),
            household_id=_parse_uuid(row["household_id"]),
            medication_id=_parse_uuid(row["medication_id"]),
            expires_on=_parse_optional_date(_get(row, "expires_on")),
            units_remaining=_get(row, "units_remaining"),
        )


@dataclass
class AdministrationRecord:
    """A recorded (or system-materialized) administration.

    Maps 1:1 to the ``administrations`` table.  Records are never hard
    deleted; edits set ``is_edited`` and undo sets ``is_deleted``.
    """

    id: uuid.UUID
    regimen_id: uuid.UUID
    animal_id: uuid.UUID
    household_id: uuid.UUID
    caregiver_id: uuid.UUID
    recorded_at: datetime
    status: DoseStatus
    idempotency_key: str
    scheduled_for: datetime | None = None
    client_recorded_at: datetime | None = None
    inventory_source_id: uuid.UUID | None = None
    inventory_override: dict[str, Any] | None = None
    notes: str | None = None
    cosign_pending: bool = False
    cosign_missing: bool = False
    cosigned_by: uuid.UUID | None = None
    cosigned_at: datetime | None = None
    is_edited: bool = False
    edited_by: uuid.UUID | None = None
    edited_at: datetime | None = None
    is_deleted: bool = False
    created_at: datetime | None = None

    @property
    def is_synthetic(self) -> bool:
        """True for missed records materialized by the system."""
        return self.caregiver_id == SYSTEM_CAREGIVER_ID

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary."""
        return {
            "id": str(self.id),
            "regimen_id": str(self.regimen_id),
            "animal_id": str(self.animal_id),
            "household_id": str(self.household_id),
            "caregiver_id": str(self.caregiver_id),
            "scheduled_for": _iso(self.scheduled_for),
            "recorded_at": _iso(self.recorded_at),
            "client_recorded_at": _iso(self.client_recorded_at),
            "status": self.status.value,
            "inventory_source_id": (
                str(self.inventory_source_id) if self.inventory_source_id else None
            ),
            "inventory_override": self.inventory_override,
            "notes": self.notes,
            "cosign_pending": self.cosign_pending,
            "cosign_missing": self.cosign_missing,
            "cosigned_by": str(self.cosigned_by) if self.cosigned_by else None,
            "cosigned_at": _iso(self.cosigned_at),
            "idempotency_key": self.idempotency_key,
            "is_edited": self.is_edited,
            "edited_by": str(self.edited_by) if self.edited_by else None,
            "edited_at": _iso(self.edited_at),
            "is_deleted": self.is_deleted,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> AdministrationRecord:
        """Reconstruct a record from a database row (asyncpg Record or mapping)."""
        return cls(
            id=_parse_uuid(row["id"]),
            regimen_id=_parse_uuid(row["regimen_id"]),
            animal_id=_parse_uuid(row["animal_id"]),
            household_id=_parse_uuid(row["household_id"]),
            caregiver_id=_parse_uuid(row["caregiver_id"]),
            recorded_at=_parse_datetime(row["recorded_at"]),
            status=DoseStatus(row["status"]),
            idempotency_key=row["idempotency_key"],
            scheduled_for=_parse_optional_datetime(_get(row, "scheduled_for")),
            client_recorded_at=_parse_optional_datetime(_get(row, "client_recorded_at")),
            inventory_source_id=_parse_optional_uuid(_get(row, "inventory_source_id")),
            inventory_override=_parse_optional_jsonb(_get(row, "inventory_override")),
            notes=_get(row, "notes"),
            cosign_pending=bool(_get(row, "cosign_pending", False)),
            cosign_missing=bool(_get(row, "cosign_missing", False)),
            cosigned_by=_parse_optional_uuid(_get(row, "cosigned_by")),
            cosigned_at=_parse_optional_datetime(_get(row, "cosigned_at")),
            is_edited=bool(_get(row, "is_edited", False)),
            edited_by=_parse_optional_uuid(_get(row, "edited_by")),
            edited_at=_parse_optional_datetime(_get(row, "edited_at")),
            is_deleted=bool(_get(row, "is_deleted", False)),
            created_at=_parse_optional_datetime(_get(row, "created_at")),
        )


@dataclass
class CoSignRequest:
    """Second-caregiver confirmation of a high-risk administration.

    Maps 1:1 to the ``cosign_requests`` table.
    """

    id: uuid.UUID
    administration_id: uuid.UUID
    requested_by: uuid.UUID
    requested_at: datetime
    expires_at: datetime
    state: CoSignState = CoSignState.PENDING
    confirmed_by: uuid.UUID | None = None
    resolved_at: datetime | None = None

    def effective_state(self, now: datetime) -> CoSignState:
        """State as observed at *now*; a pending request past its expiry reads as expired."""
        if self.state == CoSignState.PENDING and now >= self.expires_at:
            return CoSignState.EXPIRED
        return self.state

    def to_dict(self, now: datetime | None = None) -> dict[str, Any]:
        state = self.effective_state(now) if now is not None else self.state
        return {
            "id": str(self.id),
            "administration_id": str(self.administration_id),
            "requested_by": str(self.requested_by),
            "requested_at": _iso(self.requested_at),
            "expires_at": _iso(self.expires_at),
            "state": state.value,
            "confirmed_by": str(self.confirmed_by) if self.confirmed_by else None,
            "resolved_at": _iso(self.resolved_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> CoSignRequest:
        return cls(
            id=_parse_uuid(row["id"]),
            administration_id=_parse_uuid(row["administration_id"]),
            requested_by=_parse_uuid(row["requested_by"]),
            requested_at=_parse_datetime(row["requested_at"]),
            expires_at=_parse_datetime(row["expires_at"]),
            state=CoSignState(row["state"]),
            confirmed_by=_parse_optional_uuid(_get(row, "confirmed_by")),
            resolved_at=_parse_optional_datetime(_get(row, "resolved_at")),
        )
