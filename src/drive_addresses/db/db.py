from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import duckdb

from ..settings import settings

def get_duckdb_path() -> str:
    return str(settings.ddb_path)

@contextmanager
def duckdb_connection(db_path: Optional[str | Path] = None, read_only: bool = False) -> Iterator[duckdb.DuckDBPyConnection]:
    con = duckdb.connect(str(db_path) if db_path else get_duckdb_path(), read_only=read_only)
    try:
        yield con
    finally:
        con.close()
