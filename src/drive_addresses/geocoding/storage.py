"""
DuckDB record store for drives, positions and addresses.

Table and column names follow the trip logger's relational schema so the
same queries work against an exported copy of it.
"""

import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Iterator

import duckdb
import pandas as pd

from .base import RecordStore
from .models import Address, AddressInsertable, Drive, DriveSide, Point
from ..utils.errors import AddressExistsError, StoreError


logger = logging.getLogger(__name__)

_ADDRESS_COLUMNS = [
    "display_name", "latitude", "longitude", "name",
    "house_number", "road", "neighbourhood", "city", "county",
    "postcode", "state", "state_district", "country",
    "raw", "inserted_at", "updated_at", "osm_id", "osm_type",
]

_REFERENCE_COLUMN = {
    DriveSide.START: "start_address_id",
    DriveSide.END: "end_address_id",
}


class DuckDBRecordStore(RecordStore):
    """
    DuckDB implementation of RecordStore.

    Wraps an open connection; the caller owns it unless the store was
    built with `open()`. Every driver error is re-raised as StoreError.
    """

    DDL_POSITIONS = """
    CREATE TABLE IF NOT EXISTS positions (
        id BIGINT PRIMARY KEY,
        latitude DOUBLE NOT NULL,
        longitude DOUBLE NOT NULL
    );
    """

    DDL_DRIVES = """
    CREATE TABLE IF NOT EXISTS drives (
        id BIGINT PRIMARY KEY,
        start_position_id BIGINT,
        end_position_id BIGINT,
        start_address_id BIGINT,
        end_address_id BIGINT
    );
    """

    DDL_ADDRESS_IDS = "CREATE SEQUENCE IF NOT EXISTS addresses_id_seq START 1;"

    DDL_ADDRESSES = """
    CREATE TABLE IF NOT EXISTS addresses (
        id BIGINT PRIMARY KEY DEFAULT nextval('addresses_id_seq'),
        display_name TEXT,
        latitude DOUBLE,
        longitude DOUBLE,
        name TEXT,
        house_number TEXT,
        road TEXT,
        neighbourhood TEXT,
        city TEXT,
        county TEXT,
        postcode TEXT,
        state TEXT,
        state_district TEXT,
        country TEXT,
        raw TEXT,
        inserted_at BIGINT,
        updated_at BIGINT,
        osm_id BIGINT,
        osm_type TEXT
    );
    """

    DDL_UNIQUE_COORDINATES = """
    CREATE UNIQUE INDEX IF NOT EXISTS addresses_coordinate_idx
        ON addresses (latitude, longitude);
    """

    def __init__(
        self,
        con: duckdb.DuckDBPyConnection,
        create_schema: bool = True,
        unique_coordinates: bool = False,
        owns_connection: bool = False,
    ):
        """
        Initialize the store.

        Args:
            con: Open DuckDB connection
            create_schema: Create missing tables
            unique_coordinates: Also create a unique index on address coordinates
            owns_connection: Close the connection in `close()`
        """
        self.con = con
        self.owns_connection = owns_connection
        self._in_transaction = False
        self._transaction_failed = False
        if create_schema:
            self.create_schema(unique_coordinates=unique_coordinates)

    @classmethod
    def open(cls, db_path: str, **kwargs: Any) -> "DuckDBRecordStore":
        """Open a database file (or ":memory:") and own the connection."""
        try:
            con = duckdb.connect(str(db_path))
        except duckdb.Error as e:
            raise StoreError("connect", f"{db_path}: {e}", e) from e
        logger.info(f"Opened DuckDB record store: {db_path}")
        return cls(con, owns_connection=True, **kwargs)

    @contextmanager
    def _driver_errors(self, operation: str, context: str = "") -> Iterator[None]:
        """Re-raise duckdb errors as StoreError and remember that the open transaction is dead."""
        try:
            yield
        except duckdb.Error as e:
            if self._in_transaction:
                # DuckDB invalidates the whole transaction after a failed statement
                self._transaction_failed = True
            message = f"{context}: {e}" if context else str(e)
            raise StoreError(operation, message, e) from e

    def create_schema(self, unique_coordinates: bool = False) -> None:
        with self._driver_errors("create_schema"):
            self.con.execute(self.DDL_POSITIONS)
            self.con.execute(self.DDL_DRIVES)
            self.con.execute(self.DDL_ADDRESS_IDS)
            self.con.execute(self.DDL_ADDRESSES)
            if unique_coordinates:
                self.con.execute(self.DDL_UNIQUE_COORDINATES)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group everything inside the block into one transaction.

        Nested use joins the outer transaction. If any statement failed
        inside the block, DuckDB has already discarded the transaction's
        work: it is rolled back and StoreError is raised instead of a
        commit that would keep nothing.
        """
        if self._in_transaction:
            yield
            return

        with self._driver_errors("begin"):
            self.con.begin()
        self._in_transaction = True
        self._transaction_failed = False
        try:
            yield
        except BaseException:
            self._end_transaction()
            self._rollback()
            raise

        failed = self._transaction_failed
        self._end_transaction()
        if failed:
            self._rollback()
            raise StoreError("commit", "a statement failed inside the transaction, nothing was kept")
        with self._driver_errors("commit"):
            self.con.commit()

    def _end_transaction(self) -> None:
        self._in_transaction = False
        self._transaction_failed = False

    def _rollback(self) -> None:
        try:
            self.con.rollback()
        except duckdb.Error as e:
            logger.error(f"Rollback failed: {e}")
        else:
            logger.warning("Transaction rolled back")

    def find_broken_drives(self) -> List[Drive]:
        """Drives missing a start or end address reference, ordered by id."""
        with self._driver_errors("find_broken_drives"):
            df = self.con.execute(
                """
                SELECT id, start_position_id, end_position_id, start_address_id, end_address_id
                FROM drives
                WHERE start_address_id IS NULL OR end_address_id IS NULL
                ORDER BY id
                """
            ).df()

        return [_drive_from_record(row) for row in df.to_dict(orient="records")]

    def get_drive(self, drive_id: int) -> Optional[Drive]:
        with self._driver_errors("get_drive", f"id={drive_id}"):
            row = self.con.execute(
                """
                SELECT id, start_position_id, end_position_id, start_address_id, end_address_id
                FROM drives WHERE id = ?
                """,
                [drive_id],
            ).fetchone()
        if row is None:
            return None
        return Drive(*row)

    def get_point(self, point_id: int) -> Optional[Point]:
        with self._driver_errors("get_point", f"id={point_id}"):
            row = self.con.execute(
                "SELECT id, latitude, longitude FROM positions WHERE id = ?",
                [point_id],
            ).fetchone()
        if row is None:
            return None
        return Point(id=row[0], latitude=row[1], longitude=row[2])

    def find_address_by_coordinate(self, latitude: float, longitude: float) -> Optional[Address]:
        """Lowest-id address stored for exactly this coordinate."""
        with self._driver_errors("find_address_by_coordinate", f"({latitude}, {longitude})"):
            row = self.con.execute(
                f"""
                SELECT id, {', '.join(_ADDRESS_COLUMNS)}
                FROM addresses
                WHERE latitude = ? AND longitude = ?
                ORDER BY id
                LIMIT 1
                """,
                [latitude, longitude],
            ).fetchone()
        if row is None:
            return None
        return _address_from_row(row)

    def insert_address(self, address: AddressInsertable) -> Address:
        """
        Insert an address and return it with its new id.

        Conflicts with the unique coordinate index are skipped rather than
        raised, so they do not invalidate the open transaction; the row
        that won is reported through AddressExistsError.
        """
        values = address.to_dict()
        placeholders = ", ".join("?" for _ in _ADDRESS_COLUMNS)
        coordinate = f"({address.latitude}, {address.longitude})"
        with self._driver_errors("insert_address", coordinate):
            row = self.con.execute(
                f"""
                INSERT INTO addresses ({', '.join(_ADDRESS_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT DO NOTHING
                RETURNING id
                """,
                [values[c] for c in _ADDRESS_COLUMNS],
            ).fetchone()
        if row is not None:
            return address.with_id(row[0])

        existing = self.find_address_by_coordinate(address.latitude, address.longitude)
        if existing is None:
            raise StoreError("insert_address", f"{coordinate}: conflicting row is not visible")
        raise AddressExistsError(existing)

    def update_drive_address_reference(
        self, drive_id: int, side: DriveSide, address_id: int
    ) -> bool:
        column = _REFERENCE_COLUMN[DriveSide(side)]
        with self._driver_errors(
            "update_drive_address_reference", f"drive={drive_id} {column}={address_id}"
        ):
            rows = self.con.execute(
                f"UPDATE drives SET {column} = ? WHERE id = ? RETURNING id",
                [address_id, drive_id],
            ).fetchall()
        return len(rows) > 0

    def add_position(self, position_id: int, latitude: float, longitude: float) -> Point:
        """Insert a position (seeding and tests)."""
        with self._driver_errors("add_position", f"id={position_id}"):
            self.con.execute(
                "INSERT INTO positions (id, latitude, longitude) VALUES (?, ?, ?)",
                [position_id, latitude, longitude],
            )
        return Point(id=position_id, latitude=latitude, longitude=longitude)

    def add_drive(self, drive: Drive) -> Drive:
        """Insert a drive (seeding and tests)."""
        with self._driver_errors("add_drive", f"id={drive.id}"):
            self.con.execute(
                """
                INSERT INTO drives
                (id, start_position_id, end_position_id, start_address_id, end_address_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    drive.id,
                    drive.start_position_id,
                    drive.end_position_id,
                    drive.start_address_id,
                    drive.end_address_id,
                ],
            )
        return drive

    def count_addresses(self, latitude: Optional[float] = None, longitude: Optional[float] = None) -> int:
        """Number of stored addresses, optionally for one coordinate."""
        query = "SELECT COUNT(*) FROM addresses"
        params: List[Any] = []
        if latitude is not None and longitude is not None:
            query += " WHERE latitude = ? AND longitude = ?"
            params = [latitude, longitude]
        with self._driver_errors("count_addresses"):
            result = self.con.execute(query, params).fetchone()
        return result[0] if result else 0

    def get_summary(self) -> Dict[str, Any]:
        """Get summary statistics."""
        with self._driver_errors("get_summary"):
            drives, broken = self.con.execute(
                """
                SELECT COUNT(*),
                       COUNT(*) FILTER (WHERE start_address_id IS NULL OR end_address_id IS NULL)
                FROM drives
                """
            ).fetchone()

        return {
            "drives": drives,
            "broken_drives": broken,
            "addresses": self.count_addresses(),
        }

    def close(self) -> None:
        """Close database connection if this store opened it."""
        if self.owns_connection and self.con:
            self.con.close()
            logger.info("Closed DuckDB connection")


def _optional_int(value: Any) -> Optional[int]:
    if value is None or pd.isna(value):
        return None
    return int(value)


def _drive_from_record(record: Dict[str, Any]) -> Drive:
    # nullable BIGINT columns arrive as floats/NaN or pandas NA in the frame
    return Drive(
        id=int(record["id"]),
        start_position_id=_optional_int(record["start_position_id"]),
        end_position_id=_optional_int(record["end_position_id"]),
        start_address_id=_optional_int(record["start_address_id"]),
        end_address_id=_optional_int(record["end_address_id"]),
    )


def _address_from_row(row: tuple) -> Address:
    values = dict(zip(["id"] + _ADDRESS_COLUMNS, row))
    return Address(**values)
