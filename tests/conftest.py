from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


import duckdb
from drive_addresses.geocoding.base import ReverseGeocoder
from drive_addresses.geocoding.models import (
    GeocodeError, GeocodeStatus, ProviderAddress, ReverseGeocodeResult,
)
from drive_addresses.geocoding.storage import DuckDBRecordStore


class FakeGeocoder(ReverseGeocoder):
    """Answers from a coordinate -> payload script and records every call.

    A payload of None (or a missing coordinate) is a provider failure.
    """

    def __init__(self, responses: dict | None = None):
        self.responses = dict(responses or {})
        self.calls: list[tuple[float, float]] = []

    def reverse_geocode(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        payload = self.responses.get((latitude, longitude))
        if payload is None:
            return ReverseGeocodeResult(
                latitude=latitude,
                longitude=longitude,
                status=GeocodeStatus.API_ERROR,
                errors=[GeocodeError(endpoint="reverse", http_status=503, error_label="http_503")],
            )
        return ReverseGeocodeResult(
            latitude=latitude,
            longitude=longitude,
            status=GeocodeStatus.OK,
            address=ProviderAddress.model_validate(payload),
        )


def provider_payload(display_name: str, **address) -> dict:
    return {
        "display_name": display_name,
        "address": address,
        "osm_id": 42,
        "osm_type": "way",
    }


@pytest.fixture
def con():
    connection = duckdb.connect(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def store(con):
    return DuckDBRecordStore(con)


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def strict_store(con):
    """Store whose addresses table rejects the display name 'REJECT' with a CHECK constraint."""
    con.execute(DuckDBRecordStore.DDL_ADDRESS_IDS)
    con.execute(DuckDBRecordStore.DDL_ADDRESSES.replace(
        "display_name TEXT,", "display_name TEXT CHECK (display_name <> 'REJECT'),"
    ))
    return DuckDBRecordStore(con)
