"""
- Models: Data structures (Point, Drive, Address, ReverseGeocodeResult, ...)
- Base classes: Abstract interfaces
- Normalizers: Provider payload -> address row
- Geocoders: Reverse geocoding implementations
- Throttling: Rate limiting for API calls
- Storage: Record store backends
"""

from .models import (
    DriveSide,
    GeocodeStatus,
    Phase,
    OutcomeStatus,
    SkipReason,
    STRUCTURED_FIELDS,
    Point,
    Drive,
    AddressInsertable,
    Address,
    ProviderAddress,
    GeocodeError,
    ReverseGeocodeResult,
    ItemOutcome,
    PassSummary,
)

from .base import (
    ReverseGeocoder,
    RecordStore,
    RateLimiter,
)

from .normalizers import (
    AddressNormalizer,
    short_name,
)

from .throttling import (
    SimpleRateGate,
    NoOpRateLimiter,
    rate_limiter_for,
)

from .geocoders import (
    NominatimGeocoder,
)

from .storage import (
    DuckDBRecordStore,
)

__all__ = [
    # Models
    "DriveSide",
    "GeocodeStatus",
    "Phase",
    "OutcomeStatus",
    "SkipReason",
    "STRUCTURED_FIELDS",
    "Point",
    "Drive",
    "AddressInsertable",
    "Address",
    "ProviderAddress",
    "GeocodeError",
    "ReverseGeocodeResult",
    "ItemOutcome",
    "PassSummary",
    # Base classes
    "ReverseGeocoder",
    "RecordStore",
    "RateLimiter",
    # Normalizers
    "AddressNormalizer",
    "short_name",
    # Throttling
    "SimpleRateGate",
    "NoOpRateLimiter",
    "rate_limiter_for",
    # Geocoders
    "NominatimGeocoder",
    # Storage
    "DuckDBRecordStore",
]
