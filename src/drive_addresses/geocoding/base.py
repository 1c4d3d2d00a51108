"""
Abstract base classes for the geocoding system.

These define the interfaces that the backfill pass depends on. Concrete
implementations live in geocoders.py, throttling.py and storage.py; tests
substitute their own.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Optional, List

from .models import (
    Address, AddressInsertable, Drive, DriveSide, Point,
    ReverseGeocodeResult,
)


class ReverseGeocoder(ABC):
    """
    Abstract base for reverse geocoders.

    Reverse geocoders turn a coordinate into a structured address. They
    report failure through the returned result and do not raise for
    provider or transport errors.
    """

    @abstractmethod
    def reverse_geocode(self, latitude: float, longitude: float) -> ReverseGeocodeResult:
        """
        Look up the address for a coordinate.

        Args:
            latitude: Latitude in decimal degrees
            longitude: Longitude in decimal degrees

        Returns:
            ReverseGeocodeResult with the provider address or error details
        """
        pass

    def close(self) -> None:
        """Release HTTP sessions or other resources."""
        pass


class RecordStore(ABC):
    """
    Abstract base for the drive/position/address store.

    All operations take part in the transaction opened by `transaction()`.
    Failed operations raise StoreError.
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Commit on normal exit, roll back if an exception escapes."""
        pass

    @abstractmethod
    def find_broken_drives(self) -> List[Drive]:
        """Drives whose start or end address reference is missing."""
        pass

    @abstractmethod
    def get_point(self, point_id: int) -> Optional[Point]:
        """Retrieve a position by id."""
        pass

    @abstractmethod
    def find_address_by_coordinate(self, latitude: float, longitude: float) -> Optional[Address]:
        """Retrieve an address stored for exactly this coordinate."""
        pass

    @abstractmethod
    def insert_address(self, address: AddressInsertable) -> Address:
        """Insert a new address and return it with its assigned id."""
        pass

    @abstractmethod
    def update_drive_address_reference(
        self, drive_id: int, side: DriveSide, address_id: int
    ) -> bool:
        """Point one side of a drive at an address. False if no drive was updated."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close connections/cleanup resources."""
        pass


class RateLimiter(ABC):
    """
    Abstract base for rate limiters.

    Public geocoding services cap request rates; the geocoder calls
    `wait()` before every request.
    """

    @abstractmethod
    def wait(self) -> None:
        """Block until it's safe to make another request."""
        pass
