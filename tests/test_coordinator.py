from __future__ import annotations

import pytest

from conftest import FakeGeocoder, provider_payload
from drive_addresses.backfill.coordinator import BackfillCoordinator
from drive_addresses.backfill.resolver import AddressResolver
from drive_addresses.geocoding.models import (
    Drive, DriveSide, OutcomeStatus, Phase, ProviderAddress, SkipReason,
)
from drive_addresses.geocoding.normalizers import AddressNormalizer
from drive_addresses.geocoding.storage import DuckDBRecordStore
from drive_addresses.utils.errors import FatalStoreError, StoreError


MAIN_STREET = provider_payload(
    "12, Main Street, Springfield",
    house_number="12",
    road="Main Street",
    city="Springfield",
)
ELM_ROAD = provider_payload("3, Elm Road, Shelbyville", house_number="3", road="Elm Road")


def seed_d1(store):
    store.add_position(1, 1.0, 2.0)
    store.add_position(2, 3.0, 4.0)
    store.add_drive(Drive(id=1, start_position_id=1, end_position_id=2))


def test_one_failing_endpoint_then_second_pass_completes(store):
    seed_d1(store)
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET})

    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    start = store.find_address_by_coordinate(1.0, 2.0)
    assert start.name == "12"
    assert store.find_address_by_coordinate(3.0, 4.0) is None
    drive = store.get_drive(1)
    assert drive.start_address_id == start.id
    assert drive.end_address_id is None
    assert summary.created == 1
    assert summary.linked == 1
    assert summary.count_by_reason() == {
        SkipReason.PROVIDER_LOOKUP_FAILURE: 1,
        SkipReason.ADDRESS_NOT_FOUND: 1,
    }

    geocoder.responses[(3.0, 4.0)] = ELM_ROAD
    geocoder.calls.clear()
    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    assert geocoder.calls == [(3.0, 4.0)]
    assert summary.cached == 1
    assert summary.created == 1
    drive = store.get_drive(1)
    assert drive.start_address_id == start.id
    assert drive.end_address_id == store.find_address_by_coordinate(3.0, 4.0).id
    assert not drive.is_broken()


def test_second_pass_after_full_success_does_nothing(store):
    seed_d1(store)
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): ELM_ROAD})
    BackfillCoordinator(store, geocoder=geocoder).run()
    geocoder.calls.clear()

    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    assert geocoder.calls == []
    assert summary.outcomes == []
    assert store.count_addresses() == 2
    assert store.get_summary()["broken_drives"] == 0


def test_each_coordinate_fetched_once_per_pass(store):
    store.add_position(1, 1.0, 2.0)
    store.add_position(2, 3.0, 4.0)
    store.add_position(3, 1.0, 2.0)
    store.add_position(4, 5.0, 6.0)
    store.add_drive(Drive(id=1, start_position_id=1, end_position_id=2))
    store.add_drive(Drive(id=2, start_position_id=3, end_position_id=2))
    store.add_drive(Drive(id=3, start_position_id=2, end_position_id=4))
    # (3.0, 4.0) always fails
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (5.0, 6.0): ELM_ROAD})

    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    assert sorted(geocoder.calls) == [(1.0, 2.0), (3.0, 4.0), (5.0, 6.0)]
    assert store.count_addresses(1.0, 2.0) == 1
    assert summary.created == 2
    ensure_skips = [o for o in summary.for_phase(Phase.ENSURE) if o.is_skip()]
    assert len(ensure_skips) == 1
    assert ensure_skips[0].point.coordinate == (3.0, 4.0)


def test_drives_with_both_references_are_untouched(store):
    store.add_position(1, 1.0, 2.0)
    store.add_position(2, 3.0, 4.0)
    store.add_drive(Drive(id=1, start_position_id=1, end_position_id=2, start_address_id=500, end_address_id=501))
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): ELM_ROAD})

    BackfillCoordinator(store, geocoder=geocoder).run()

    assert geocoder.calls == []
    drive = store.get_drive(1)
    assert (drive.start_address_id, drive.end_address_id) == (500, 501)


def test_missing_point_does_not_block_other_side(store):
    store.add_position(2, 3.0, 4.0)
    store.add_drive(Drive(id=1, start_position_id=999, end_position_id=2))
    geocoder = FakeGeocoder({(3.0, 4.0): ELM_ROAD})

    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    drive = store.get_drive(1)
    assert drive.start_address_id is None
    assert drive.end_address_id == store.find_address_by_coordinate(3.0, 4.0).id
    assert summary.count_by_reason() == {SkipReason.POINT_NOT_FOUND: 2}
    assert {o.phase for o in summary.skips} == {Phase.ENSURE, Phase.RELINK}


def test_link_write_failure_does_not_stop_other_drives(con):
    class FailingLinkStore(DuckDBRecordStore):
        def update_drive_address_reference(self, drive_id, side, address_id):
            if drive_id == 1:
                raise StoreError("update_drive_address_reference", "locked")
            return super().update_drive_address_reference(drive_id, side, address_id)

    store = FailingLinkStore(con)
    seed_d1(store)
    store.add_drive(Drive(id=2, start_position_id=2, end_position_id=1))
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): ELM_ROAD})

    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    assert store.get_drive(1).is_broken()
    assert not store.get_drive(2).is_broken()
    assert summary.linked == 2
    link_skips = summary.skips
    assert [(o.drive_id, o.side, o.reason) for o in link_skips] == [
        (1, DriveSide.START, SkipReason.LINK_WRITE_FAILURE),
        (1, DriveSide.END, SkipReason.LINK_WRITE_FAILURE),
    ]


def test_fatal_enumeration_error_in_relink_keeps_ensure_results(con):
    class FlakyStore(DuckDBRecordStore):
        calls = 0

        def find_broken_drives(self):
            self.calls += 1
            if self.calls > 1:
                raise StoreError("find_broken_drives", "connection reset")
            return super().find_broken_drives()

    store = FlakyStore(con)
    seed_d1(store)
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): ELM_ROAD})

    with pytest.raises(FatalStoreError) as excinfo:
        BackfillCoordinator(store, geocoder=geocoder).run()

    assert excinfo.value.phase == "relink"
    assert excinfo.value.operation == "find_broken_drives"
    assert store.count_addresses() == 2
    assert store.get_drive(1).is_broken()


def test_unexpected_error_rolls_back_the_phase(con):
    class BrokenInsertStore(DuckDBRecordStore):
        inserts = 0

        def insert_address(self, address):
            self.inserts += 1
            if self.inserts > 1:
                raise RuntimeError("bug")
            return super().insert_address(address)

    store = BrokenInsertStore(con)
    seed_d1(store)
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): ELM_ROAD})

    with pytest.raises(RuntimeError):
        BackfillCoordinator(store, geocoder=geocoder).ensure_addresses()

    assert store.count_addresses() == 0


def test_phases_can_run_alone(store):
    seed_d1(store)
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): ELM_ROAD})
    coordinator = BackfillCoordinator(store, geocoder=geocoder)

    summary = coordinator.run(phases=[Phase.RELINK])
    assert summary.count_by_reason() == {SkipReason.ADDRESS_NOT_FOUND: 2}
    assert geocoder.calls == []

    summary = coordinator.run(phases=[Phase.ENSURE])
    assert summary.created == 2
    assert store.get_drive(1).is_broken()

    summary = coordinator.run(phases=[Phase.RELINK])
    assert summary.linked == 2
    assert all(o.status is OutcomeStatus.LINKED for o in summary.outcomes)
    assert not store.get_drive(1).is_broken()


def test_progress_prints_step_lines(store, capsys):
    seed_d1(store)
    resolver = AddressResolver(store, FakeGeocoder({(1.0, 2.0): MAIN_STREET}))

    BackfillCoordinator(store, resolver=resolver, progress=True).run()

    out = capsys.readouterr().out
    assert "Backfill -- Ensure Addresses" in out
    assert "Backfill -- Relink Drives" in out


def test_needs_resolver_or_geocoder(store):
    with pytest.raises(ValueError):
        BackfillCoordinator(store)


def test_skips_frame_lists_one_row_per_skip(store):
    seed_d1(store)
    summary = BackfillCoordinator(store, geocoder=FakeGeocoder()).run()

    frame = summary.skips_frame()

    assert len(frame) == 4
    assert set(frame["reason"]) == {"provider_lookup_failure", "address_not_found"}
    assert summary.to_dict()["skipped"] == 4


def test_rejected_insert_aborts_phase_without_claiming_work(strict_store):
    seed_d1(strict_store)
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): provider_payload("REJECT")})

    with pytest.raises(FatalStoreError) as excinfo:
        BackfillCoordinator(strict_store, geocoder=geocoder).ensure_addresses()

    assert excinfo.value.phase == "ensure"
    assert excinfo.value.operation == "commit"
    assert strict_store.count_addresses() == 0

    geocoder.responses[(3.0, 4.0)] = ELM_ROAD
    summary = BackfillCoordinator(strict_store, geocoder=geocoder).run()

    assert summary.created == 2
    assert not strict_store.get_drive(1).is_broken()


def test_address_stored_by_another_pass_is_reused(con):
    class RacingStore(DuckDBRecordStore):
        """Misses the first lookup of (3.0, 4.0), as if another pass stored it just after."""
        hidden = {(3.0, 4.0)}

        def find_address_by_coordinate(self, latitude, longitude):
            if (latitude, longitude) in self.hidden:
                self.hidden = set()
                return None
            return super().find_address_by_coordinate(latitude, longitude)

    store = RacingStore(con, unique_coordinates=True)
    seed_d1(store)
    existing = store.insert_address(
        AddressNormalizer().normalize(ProviderAddress.model_validate(ELM_ROAD), store.get_point(2))
    )
    geocoder = FakeGeocoder({(1.0, 2.0): MAIN_STREET, (3.0, 4.0): ELM_ROAD})

    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    assert summary.created == 1
    assert summary.cached == 1
    assert summary.skipped == 0
    assert store.count_addresses(1.0, 2.0) == 1
    assert store.count_addresses(3.0, 4.0) == 1
    drive = store.get_drive(1)
    assert drive.start_address_id == store.find_address_by_coordinate(1.0, 2.0).id
    assert drive.end_address_id == existing.id


def test_drive_without_start_position_is_skipped(store):
    store.add_position(2, 3.0, 4.0)
    store.add_drive(Drive(id=1, start_position_id=None, end_position_id=2))
    geocoder = FakeGeocoder({(3.0, 4.0): ELM_ROAD})

    summary = BackfillCoordinator(store, geocoder=geocoder).run()

    drive = store.get_drive(1)
    assert drive.start_address_id is None
    assert drive.end_address_id == store.find_address_by_coordinate(3.0, 4.0).id
    assert [(o.phase, o.side, o.reason) for o in summary.skips] == [
        (Phase.ENSURE, DriveSide.START, SkipReason.POINT_NOT_FOUND),
        (Phase.RELINK, DriveSide.START, SkipReason.POINT_NOT_FOUND),
    ]
