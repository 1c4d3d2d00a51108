"""
Core data models for reverse geocoding and drive address backfill.

Frozen dataclasses are the contract between the store, the geocoder,
the normalizer and the backfill pass. Provider payloads are validated
with pydantic before anything downstream sees them.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Optional, List, Dict
from enum import StrEnum

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, field_validator


class DriveSide(StrEnum):
    """Which end of a drive a point or address reference belongs to."""
    START = "start"
    END = "end"


class GeocodeStatus(StrEnum):
    """Status of a reverse geocode request."""
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    API_ERROR = "api_error"
    EXCEPTION = "exception"


class Phase(StrEnum):
    """Phases of a reconciliation pass."""
    ENSURE = "ensure"
    RELINK = "relink"


class OutcomeStatus(StrEnum):
    """What happened to a single point or drive side."""
    CACHED = "cached"
    CREATED = "created"
    LINKED = "linked"
    SKIPPED = "skipped"


class SkipReason(StrEnum):
    """Why an item was skipped. Skips are never fatal to a pass."""
    PROVIDER_LOOKUP_FAILURE = "provider_lookup_failure"
    POINT_NOT_FOUND = "point_not_found"
    ADDRESS_WRITE_FAILURE = "address_write_failure"
    ADDRESS_NOT_FOUND = "address_not_found"
    LINK_WRITE_FAILURE = "link_write_failure"
    STORE_READ_FAILURE = "store_read_failure"


# Storage column -> provider keys to try, in order
STRUCTURED_FIELDS: Dict[str, tuple[str, ...]] = {
    "house_number": ("house_number", "housenumber"),
    "road": ("road",),
    "neighbourhood": ("neighbourhood",),
    "city": ("city",),
    "county": ("county",),
    "postcode": ("postcode",),
    "state": ("state",),
    "state_district": ("state_district",),
    "country": ("country",),
}


@dataclass(frozen=True)
class Point:
    """
    A stored position.

    Two points describe the same place only when latitude and longitude
    are exactly equal; no rounding or tolerance is applied.
    """
    id: int
    latitude: float
    longitude: float

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    def __str__(self) -> str:
        return f"({self.latitude}, {self.longitude})"


@dataclass(frozen=True)
class Drive:
    """A trip with start/end position references and optional address references."""
    id: int
    start_position_id: Optional[int]
    end_position_id: Optional[int]
    start_address_id: Optional[int] = None
    end_address_id: Optional[int] = None

    def is_broken(self) -> bool:
        """A drive is broken while either address reference is missing."""
        return self.start_address_id is None or self.end_address_id is None

    def position_id(self, side: DriveSide) -> Optional[int]:
        return self.start_position_id if side is DriveSide.START else self.end_position_id

    def address_id(self, side: DriveSide) -> Optional[int]:
        return self.start_address_id if side is DriveSide.START else self.end_address_id


@dataclass(frozen=True, kw_only=True)
class AddressInsertable:
    """
    An address row ready to be inserted.

    Structured fields are None when the provider did not supply a textual
    value. An empty string is a value the provider sent, not an absence.
    """
    display_name: str
    latitude: float
    longitude: float
    name: str
    house_number: Optional[str] = None
    road: Optional[str] = None
    neighbourhood: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = None
    state: Optional[str] = None
    state_district: Optional[str] = None
    country: Optional[str] = None
    raw: str = "{}"
    inserted_at: int = 0
    updated_at: int = 0
    osm_id: int = 0
    osm_type: str = ""

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    def to_dict(self) -> dict[str, Any]:
        """Column -> value mapping for storage."""
        return asdict(self)

    def with_id(self, address_id: int) -> "Address":
        return Address(id=address_id, **asdict(self))


@dataclass(frozen=True, kw_only=True)
class Address(AddressInsertable):
    """A stored address row."""
    id: int


class ProviderAddress(BaseModel):
    """
    Reverse geocoding payload as returned by the provider.

    Only the keys the backfill needs are modelled; anything else in the
    payload is ignored. `address` values are left untyped on purpose,
    providers sometimes nest structures there.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    display_name: str = ""
    address: Dict[str, Any] = Field(default_factory=dict)
    osm_id: int = 0
    osm_type: str = ""

    @field_validator("display_name", "osm_type", mode="before")
    @classmethod
    def _none_as_empty_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("address", mode="before")
    @classmethod
    def _non_mapping_as_empty(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("osm_id", mode="before")
    @classmethod
    def _none_as_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


@dataclass(frozen=True)
class GeocodeError:
    """Details of a provider error during reverse geocoding."""
    endpoint: str
    http_status: Optional[int] = None
    params_json: str = ""
    body_snippet: str = ""
    error_label: str = ""
    api_message: Optional[str] = None

    def describe(self) -> str:
        parts = [self.error_label or "error"]
        if self.http_status is not None:
            parts.append(f"http={self.http_status}")
        if self.api_message:
            parts.append(self.api_message)
        return " ".join(parts)


@dataclass(frozen=True)
class ReverseGeocodeResult:
    """The result of one reverse geocoding call."""
    latitude: float
    longitude: float
    status: GeocodeStatus = GeocodeStatus.NOT_FOUND
    address: Optional[ProviderAddress] = None
    errors: List[GeocodeError] = field(default_factory=list)

    def is_success(self) -> bool:
        return self.status is GeocodeStatus.OK and self.address is not None

    def describe_errors(self) -> str:
        if not self.errors:
            return self.status.value
        return "; ".join(e.describe() for e in self.errors)


@dataclass(frozen=True)
class ItemOutcome:
    """
    Result for one unit of work in a pass.

    In the ensure phase a unit is a distinct coordinate; in the relink
    phase it is one side of one drive.
    """
    phase: Phase
    status: OutcomeStatus
    point: Optional[Point] = None
    drive_id: Optional[int] = None
    side: Optional[DriveSide] = None
    address: Optional[Address] = None
    reason: Optional[SkipReason] = None
    detail: str = ""

    def is_skip(self) -> bool:
        return self.status is OutcomeStatus.SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "drive_id": self.drive_id,
            "side": self.side.value if self.side else None,
            "point_id": self.point.id if self.point else None,
            "latitude": self.point.latitude if self.point else None,
            "longitude": self.point.longitude if self.point else None,
            "address_id": self.address.id if self.address else None,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }


@dataclass
class PassSummary:
    """Outcomes collected over one or both phases of a pass."""
    outcomes: List[ItemOutcome] = field(default_factory=list)

    def add(self, outcome: ItemOutcome) -> ItemOutcome:
        self.outcomes.append(outcome)
        return outcome

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def cached(self) -> int:
        return self._count(OutcomeStatus.CACHED)

    @property
    def created(self) -> int:
        return self._count(OutcomeStatus.CREATED)

    @property
    def linked(self) -> int:
        return self._count(OutcomeStatus.LINKED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def resolved(self) -> int:
        return self.cached + self.created

    @property
    def skips(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.is_skip()]

    def for_phase(self, phase: Phase) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.phase is phase]

    def count_by_reason(self) -> Dict[SkipReason, int]:
        counts: Dict[SkipReason, int] = {}
        for o in self.skips:
            if o.reason is not None:
                counts[o.reason] = counts.get(o.reason, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolved": self.resolved,
            "cached": self.cached,
            "created": self.created,
            "linked": self.linked,
            "skipped": self.skipped,
            "skip_reasons": {k.value: v for k, v in self.count_by_reason().items()},
        }

    def skips_frame(self) -> pd.DataFrame:
        """Skipped items as a DataFrame, one row per skip, for reporting."""
        columns = [
            "phase", "status", "drive_id", "side", "point_id",
            "latitude", "longitude", "address_id", "reason", "detail",
        ]
        return pd.DataFrame([o.to_dict() for o in self.skips], columns=columns)
