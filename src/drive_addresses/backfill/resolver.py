"""Cache-or-fetch resolution of one point to a stored address."""

import logging
from typing import Dict, Optional

from ..geocoding.base import RecordStore, ReverseGeocoder
from ..geocoding.models import (
    Address, ItemOutcome, OutcomeStatus, Phase, Point, SkipReason,
)
from ..geocoding.normalizers import AddressNormalizer
from ..utils.errors import AddressExistsError, StoreError

logger = logging.getLogger(__name__)


class AddressResolver:
    """
    Returns the stored address for a point, creating it when missing.

    Stored rows are authoritative: a hit is returned as is and the
    provider is not consulted. There is no lock between the lookup and
    the insert, so two concurrent passes can each insert a row for the
    same coordinate; either row is a valid link target.
    """

    def __init__(
        self,
        store: RecordStore,
        geocoder: ReverseGeocoder,
        normalizer: Optional[AddressNormalizer] = None,
    ):
        self.store = store
        self.geocoder = geocoder
        self.normalizer = normalizer or AddressNormalizer()
        self.hits = 0
        self.misses = 0
        self.failures = 0

    def resolve(self, point: Point) -> ItemOutcome:
        """
        Resolve a point to an address.

        Returns an ItemOutcome with status CACHED or CREATED and the
        address, or SKIPPED with the reason. Never raises for store or
        provider failures.
        """
        try:
            existing = self.lookup(point)
        except StoreError as e:
            self.failures += 1
            detail = f"position {point.id} at {point}: {e}"
            logger.warning(f"Address lookup failed for {detail}")
            return ItemOutcome(
                phase=Phase.ENSURE,
                status=OutcomeStatus.SKIPPED,
                point=point,
                reason=SkipReason.STORE_READ_FAILURE,
                detail=detail,
            )

        if existing is not None:
            self.hits += 1
            logger.debug(f"Address {existing.id} already stored for {point}")
            return ItemOutcome(
                phase=Phase.ENSURE,
                status=OutcomeStatus.CACHED,
                point=point,
                address=existing,
            )

        self.misses += 1
        try:
            result = self.geocoder.reverse_geocode(point.latitude, point.longitude)
            error = None if result.is_success() else result.describe_errors()
        except Exception as e:
            # geocoders should report failures in the result; treat a raise the same way
            result = None
            error = f"{type(e).__name__}: {e}"

        if error is not None or result is None or result.address is None:
            self.failures += 1
            detail = f"position {point.id} at {point}: {error}"
            logger.warning(f"Reverse geocoding failed for {detail}")
            return ItemOutcome(
                phase=Phase.ENSURE,
                status=OutcomeStatus.SKIPPED,
                point=point,
                reason=SkipReason.PROVIDER_LOOKUP_FAILURE,
                detail=detail,
            )

        insertable = self.normalizer.normalize(result.address, point)

        try:
            address = self.store.insert_address(insertable)
        except AddressExistsError as e:
            logger.info(f"Address {e.existing.id} for {point} was stored concurrently, using it")
            return ItemOutcome(
                phase=Phase.ENSURE,
                status=OutcomeStatus.CACHED,
                point=point,
                address=e.existing,
            )
        except StoreError as e:
            self.failures += 1
            detail = f"position {point.id} at {point}: {e}"
            logger.warning(f"Saving address failed for {detail}")
            return ItemOutcome(
                phase=Phase.ENSURE,
                status=OutcomeStatus.SKIPPED,
                point=point,
                reason=SkipReason.ADDRESS_WRITE_FAILURE,
                detail=detail,
            )

        logger.info(f"Saved address {address.id} for {point}: {address.display_name}")
        return ItemOutcome(
            phase=Phase.ENSURE,
            status=OutcomeStatus.CREATED,
            point=point,
            address=address,
        )

    def lookup(self, point: Point) -> Optional[Address]:
        """Stored address for a point, without fetching."""
        return self.store.find_address_by_coordinate(point.latitude, point.longitude)

    def get_stats(self) -> Dict[str, int]:
        """Hit/miss/failure counts since construction or the last reset."""
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "failures": self.failures,
            "total": total,
        }

    def reset_stats(self) -> None:
        self.hits = 0
        self.misses = 0
        self.failures = 0
