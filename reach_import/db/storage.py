"""
Storage client used by the import orchestrator.

``EntityStore`` is the only contract the pipeline needs from the backing
store: batch insert, upsert by natural key, delete by import batch id and row
counts. SQLAlchemy errors are translated into transient or fatal write errors
so the orchestrator can decide whether to retry.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from reach_import.db.session import get_engine
from reach_import.db.tables import ENTITY_TABLES, NATURAL_KEYS, TABLES
from reach_import.domain.imports.errors import FatalWriteError, TransientWriteError

logger = logging.getLogger(__name__)

# Columns an upsert must never touch on conflict.
_PRESERVED_ON_CONFLICT = {"id", "company_id", "import_batch_id", "created_at"}


def is_transient_error(exc: BaseException) -> bool:
    """Timeouts, lock contention and dropped connections are worth retrying."""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OperationalError, PoolTimeoutError))


class EntityStore:
    """Writes import rows through a SQLAlchemy engine."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine if engine is not None else get_engine()

    def _table(self, table_name: str):
        try:
            return TABLES[table_name]
        except KeyError:
            raise FatalWriteError(table_name, f"Unknown import table '{table_name}'")

    def _translate(self, table_name: str, exc: SQLAlchemyError) -> Exception:
        if is_transient_error(exc):
            return TransientWriteError(table_name, cause=exc)
        return FatalWriteError(table_name, cause=exc)

    def _dialect_insert(self, table):
        if self.engine.dialect.name == "postgresql":
            return pg_insert(table)
        if self.engine.dialect.name == "sqlite":
            return sqlite_insert(table)
        raise FatalWriteError(table.name, f"Upsert is not supported on dialect '{self.engine.dialect.name}'")

    def insert_rows(self, table_name: str, rows: List[Dict[str, Any]]) -> int:
        """Plain batch insert; used for the append-only raw snapshot."""
        if not rows:
            return 0
        table = self._table(table_name)
        try:
            with self.engine.begin() as conn:
                conn.execute(table.insert(), rows)
        except SQLAlchemyError as exc:
            raise self._translate(table_name, exc) from exc
        return len(rows)

    def upsert_rows(self, table_name: str, rows: List[Dict[str, Any]]) -> int:
        """
        Insert rows, merging into existing rows that share the natural key.

        On conflict the existing row keeps its ``import_batch_id`` and each
        descriptive column becomes ``COALESCE(new, existing)``, so a populated
        value is never replaced by an empty one.
        """
        if not rows:
            return 0
        table = self._table(table_name)
        key_columns = NATURAL_KEYS[table_name]

        stmt = self._dialect_insert(table)
        update_columns = {
            column.name: func.coalesce(stmt.excluded[column.name], column)
            for column in table.columns
            if column.name not in _PRESERVED_ON_CONFLICT
            and column.name not in key_columns
            and column.name != "updated_at"
        }
        update_columns["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(index_elements=key_columns, set_=update_columns)

        try:
            with self.engine.begin() as conn:
                conn.execute(stmt, rows)
        except SQLAlchemyError as exc:
            raise self._translate(table_name, exc) from exc
        return len(rows)

    def delete_import_batch(self, table_name: str, company_id: str, import_batch_id: str) -> int:
        """Delete every row of ``table_name`` tagged with the batch id."""
        table = self._table(table_name)
        stmt = delete(table).where(
            and_(table.c.company_id == company_id, table.c.import_batch_id == import_batch_id)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise self._translate(table_name, exc) from exc
        return result.rowcount or 0

    def count_rows(self, table_name: str, company_id: str, import_batch_id: Optional[str] = None) -> int:
        table = self._table(table_name)
        stmt = select(func.count()).select_from(table).where(table.c.company_id == company_id)
        if import_batch_id is not None:
            stmt = stmt.where(table.c.import_batch_id == import_batch_id)
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar() or 0)

    def count_entities(self, company_id: str) -> Dict[str, int]:
        """Current normalized totals for a tenant."""
        return {table_name: self.count_rows(table_name, company_id) for table_name in ENTITY_TABLES}
