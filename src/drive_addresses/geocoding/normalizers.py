"""
Provider address normalization.

Maps a reverse geocoding payload onto the address table's columns.
Normalization never fails: anything unexpected in the payload degrades
to an absent (None) field.
"""

import json
import time
from typing import Any, Callable, Mapping, Optional

from .models import AddressInsertable, Point, ProviderAddress, STRUCTURED_FIELDS


def short_name(display_name: str) -> str:
    """First comma-separated component of a display name, trimmed."""
    components = display_name.split(",") if display_name else []
    if not components:
        return ""
    return components[0].strip()


def text_or_none(values: Mapping[str, Any], *keys: str) -> Optional[str]:
    """
    Return the first value under `keys` that is a string.

    Missing keys and non-textual values (numbers, nested mappings, lists,
    null) are skipped.
    """
    for key in keys:
        value = values.get(key)
        if isinstance(value, str):
            return value
    return None


def serialize_raw(values: Mapping[str, Any]) -> str:
    """JSON text of the provider's structured fields, keys sorted."""
    try:
        return json.dumps(dict(values), sort_keys=True, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        # mixed-type keys cannot be sorted
        return json.dumps({str(k): v for k, v in values.items()}, sort_keys=True,
                          ensure_ascii=False, default=str)


class AddressNormalizer:
    """
    Converts a ProviderAddress into an AddressInsertable.

    The coordinate stored on the address is the point's coordinate, not
    whatever the provider snapped to, so later exact-match lookups by the
    drive's position succeed.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        """
        Args:
            clock: Returns the current time in seconds since the epoch
        """
        self.clock = clock

    def normalize(self, raw: ProviderAddress, point: Point) -> AddressInsertable:
        """
        Normalize a provider response for a point.

        Args:
            raw: Validated provider payload
            point: The point that was reverse geocoded

        Returns:
            AddressInsertable with both timestamps set to now
        """
        fields = raw.address if isinstance(raw.address, Mapping) else {}
        now = int(self.clock())

        structured = {
            column: text_or_none(fields, *keys)
            for column, keys in STRUCTURED_FIELDS.items()
        }

        return AddressInsertable(
            display_name=raw.display_name,
            latitude=point.latitude,
            longitude=point.longitude,
            name=short_name(raw.display_name),
            raw=serialize_raw(fields),
            inserted_at=now,
            updated_at=now,
            osm_id=raw.osm_id,
            osm_type=raw.osm_type,
            **structured,
        )
