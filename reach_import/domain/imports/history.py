"""
Tenant history log of completed route imports.

One entry is appended per completed import batch. Re-importing the same file
appends a second entry even though the normalized tables converge.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine

from reach_import.api.schemas.shared import HistoryLogEntry
from reach_import.db.session import get_engine
from reach_import.db.tables import history_logs

logger = logging.getLogger(__name__)


def _row_to_entry(row: Any) -> HistoryLogEntry:
    return HistoryLogEntry(
        id=row["id"],
        company_id=row["company_id"],
        import_batch_id=row["import_batch_id"],
        file_name=row["file_name"],
        upload_date=row["upload_date"],
        record_count=row["record_count"] or 0,
        uploader=row["uploader"],
        type=row["type"],
        stats=row["stats"] or {},
    )


def append_history_entry(
    *,
    company_id: str,
    import_batch_id: str,
    record_count: int,
    stats: Dict[str, int],
    file_name: Optional[str] = None,
    uploader: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> HistoryLogEntry:
    """
    Record a completed import.

    Args:
        company_id: Tenant that owns the import
        import_batch_id: Batch the entry describes
        record_count: Raw rows in the upload
        stats: Reported entity counts (routes counted by distinct rep code)
        file_name: Uploaded file name
        uploader: Operator who confirmed the import

    Returns:
        The stored entry
    """
    engine = engine or get_engine()
    entry = HistoryLogEntry(
        id=str(uuid.uuid4()),
        company_id=company_id,
        import_batch_id=import_batch_id,
        file_name=file_name,
        upload_date=datetime.now(timezone.utc),
        record_count=record_count,
        uploader=uploader,
        stats={
            "branches": int(stats.get("branches", 0)),
            "routes": int(stats.get("routes", 0)),
            "customers": int(stats.get("customers", 0)),
            "visits": int(stats.get("visits", 0)),
        },
    )
    with engine.begin() as conn:
        conn.execute(history_logs.insert().values(**entry.model_dump()))
    logger.info("History entry %s recorded for batch %s", entry.id, import_batch_id)
    return entry


def list_history(
    company_id: str,
    limit: int = 50,
    offset: int = 0,
    engine: Optional[Engine] = None,
) -> List[HistoryLogEntry]:
    """Return the tenant's history entries, newest first."""
    engine = engine or get_engine()
    with engine.connect() as conn:
        rows = conn.execute(
            select(history_logs)
            .where(history_logs.c.company_id == company_id)
            .order_by(history_logs.c.upload_date.desc(), history_logs.c.id)
            .limit(limit)
            .offset(offset)
        ).mappings().all()
    return [_row_to_entry(row) for row in rows]
