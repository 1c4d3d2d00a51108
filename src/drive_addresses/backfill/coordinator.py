"""
Reconciliation pass over drives with missing address references.

The pass has two phases, each in its own store transaction:

1. ensure addresses: every distinct start/end coordinate of a broken
   drive gets a stored address (looked up, or fetched and inserted);
2. relink drives: every broken drive side whose coordinate now has an
   address is pointed at it.

Either phase can run alone. Per-item failures are recorded in the
returned PassSummary and logged. A phase is aborted, and nothing from
it kept, only when the broken-drives query fails or its transaction
cannot be committed.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from tqdm import tqdm

from ..geocoding.base import RecordStore, ReverseGeocoder
from ..geocoding.models import (
    Drive, DriveSide, ItemOutcome, OutcomeStatus, PassSummary, Phase, Point, SkipReason,
)
from ..utils.errors import FatalStoreError, StoreError
from ..utils.pipeline_mixin import PipelineMixin
from .resolver import AddressResolver

logger = logging.getLogger(__name__)

ALL_PHASES: tuple[Phase, ...] = (Phase.ENSURE, Phase.RELINK)


class BackfillCoordinator(PipelineMixin):
    """Runs the ensure/relink phases against an injected store."""

    STEP_LABEL = 'Backfill'

    def __init__(
        self,
        store: RecordStore,
        resolver: Optional[AddressResolver] = None,
        geocoder: Optional[ReverseGeocoder] = None,
        progress: bool = False,
    ):
        """
        Args:
            store: Record store shared with the resolver
            resolver: Address resolver; built from `geocoder` when omitted
            geocoder: Reverse geocoder, required when no resolver is given
            progress: Show progress bars and per-phase step lines
        """
        if resolver is None:
            if geocoder is None:
                raise ValueError("BackfillCoordinator needs a resolver or a geocoder")
            resolver = AddressResolver(store, geocoder)
        self.store = store
        self.resolver = resolver
        self.progress = progress

    def run(self, phases: Sequence[Phase] = ALL_PHASES) -> PassSummary:
        """
        Run the requested phases in order and return the combined summary.

        Raises:
            FatalStoreError: a phase could not enumerate drives or commit
        """
        summary = self._execute_pipeline(progress=self.progress, phases=phases)
        if summary is None:
            summary = PassSummary()
        logger.info(f"Backfill pass finished: {summary.to_dict()}")
        return summary

    def _load_pipeline(self, phases: Sequence[Phase] = ALL_PHASES):
        steps = {
            Phase.ENSURE: ('Ensure Addresses', self.ensure_addresses, {}),
            Phase.RELINK: ('Relink Drives', self.relink_drives, {}),
        }
        return [steps[Phase(p)] for p in phases]

    def ensure_addresses(self, summary: Optional[PassSummary] = None) -> PassSummary:
        """
        Make sure every endpoint of every broken drive has a stored address.

        Both endpoints of a broken drive are resolved even if only one
        reference is missing. Coordinates shared by several drives are
        resolved once.
        """
        summary = summary if summary is not None else PassSummary()
        self.resolver.reset_stats()

        with self._phase_transaction(Phase.ENSURE):
            drives = self._find_broken_drives(Phase.ENSURE)
            logger.info(f"Ensuring addresses for {len(drives)} broken drives")

            points = self._distinct_points(drives, summary)
            for point in tqdm(points, desc="Ensure addresses", disable=not self.progress):
                summary.add(self.resolver.resolve(point))

        logger.info(f"Ensure phase done for {len(points)} coordinates: {self.resolver.get_stats()}")
        return summary

    def relink_drives(self, summary: Optional[PassSummary] = None) -> PassSummary:
        """
        Point each side of each broken drive at the address stored for its coordinate.

        Sides are handled independently and written whenever an address
        exists, whether or not the reference was already set.
        """
        summary = summary if summary is not None else PassSummary()

        with self._phase_transaction(Phase.RELINK):
            drives = self._find_broken_drives(Phase.RELINK)
            logger.info(f"Relinking {len(drives)} broken drives")

            for drive in tqdm(drives, desc="Relink drives", disable=not self.progress):
                for side in DriveSide:
                    summary.add(self._relink_side(drive, side))

        linked = sum(1 for o in summary.for_phase(Phase.RELINK) if o.status is OutcomeStatus.LINKED)
        logger.info(f"Relink phase done: {linked} references written")
        return summary

    @contextmanager
    def _phase_transaction(self, phase: Phase) -> Iterator[None]:
        """The phase's store transaction; a failed begin or commit aborts the phase."""
        try:
            with self.store.transaction():
                yield
        except FatalStoreError:
            raise
        except StoreError as e:
            logger.error(f"{phase} phase transaction failed: {e}")
            raise FatalStoreError(phase.value, e) from e

    def _find_broken_drives(self, phase: Phase) -> List[Drive]:
        try:
            return self.store.find_broken_drives()
        except StoreError as e:
            logger.error(f"Broken drives query failed in {phase} phase: {e}")
            raise FatalStoreError(phase.value, e) from e

    def _distinct_points(self, drives: Iterable[Drive], summary: PassSummary) -> List[Point]:
        """Start and end points of the drives, first occurrence of each coordinate kept."""
        seen: Dict[tuple[float, float], Point] = {}
        for drive in drives:
            for side in DriveSide:
                point, skip = self._load_point(drive, side, Phase.ENSURE)
                if skip is not None:
                    summary.add(skip)
                elif point.coordinate not in seen:
                    seen[point.coordinate] = point
        return list(seen.values())

    def _load_point(
        self, drive: Drive, side: DriveSide, phase: Phase
    ) -> tuple[Optional[Point], Optional[ItemOutcome]]:
        """The drive's point on one side, or the skip explaining why there is none."""
        position_id = drive.position_id(side)
        if position_id is None:
            detail = f"drive {drive.id} has no {side} position"
            logger.warning(detail)
            return None, _skip(phase, drive, side, SkipReason.POINT_NOT_FOUND, detail)

        try:
            point = self.store.get_point(position_id)
        except StoreError as e:
            logger.warning(f"Loading {side} position {position_id} of drive {drive.id} failed: {e}")
            return None, _skip(phase, drive, side, SkipReason.STORE_READ_FAILURE, str(e))

        if point is None:
            detail = f"{side} position {position_id} of drive {drive.id} does not exist"
            logger.warning(detail)
            return None, _skip(phase, drive, side, SkipReason.POINT_NOT_FOUND, detail)
        return point, None

    def _relink_side(self, drive: Drive, side: DriveSide) -> ItemOutcome:
        point, skip = self._load_point(drive, side, Phase.RELINK)
        if skip is not None:
            return skip

        try:
            address = self.resolver.lookup(point)
        except StoreError as e:
            logger.warning(f"Address lookup for drive {drive.id} {side} at {point} failed: {e}")
            return _skip(Phase.RELINK, drive, side, SkipReason.STORE_READ_FAILURE, str(e), point)

        if address is None:
            detail = f"no address stored for {side} of drive {drive.id} at {point}"
            logger.info(detail)
            return _skip(Phase.RELINK, drive, side, SkipReason.ADDRESS_NOT_FOUND, detail, point)

        try:
            updated = self.store.update_drive_address_reference(drive.id, side, address.id)
            error = None if updated else "no drive row updated"
        except StoreError as e:
            error = str(e)

        if error is not None:
            detail = f"drive {drive.id} {side}_address_id={address.id}: {error}"
            logger.warning(f"Writing address reference failed for {detail}")
            return _skip(Phase.RELINK, drive, side, SkipReason.LINK_WRITE_FAILURE, detail, point)

        logger.info(f"Fixed drive {drive.id} {side} address {address.id}: {address.display_name}")
        return ItemOutcome(
            phase=Phase.RELINK,
            status=OutcomeStatus.LINKED,
            point=point,
            drive_id=drive.id,
            side=side,
            address=address,
        )


def _skip(
    phase: Phase,
    drive: Drive,
    side: DriveSide,
    reason: SkipReason,
    detail: str,
    point: Optional[Point] = None,
) -> ItemOutcome:
    return ItemOutcome(
        phase=phase,
        status=OutcomeStatus.SKIPPED,
        point=point,
        drive_id=drive.id,
        side=side,
        reason=reason,
        detail=detail,
    )
