"""
Persistent tracking for import batches.

An import batch is created when an operator confirms a mapping and moves
``pending -> processing -> complete | error | cancelled``. Only the
orchestrator moves a batch past ``pending``.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from reach_import.api.schemas.shared import TERMINAL_STATUSES, ImportBatch, ImportStatus
from reach_import.db.session import get_engine
from reach_import.db.tables import import_batches

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ImportStatus.PENDING.value, ImportStatus.PROCESSING.value)


def _row_to_batch(row: Any) -> ImportBatch:
    return ImportBatch(
        id=row["id"],
        company_id=row["company_id"],
        file_name=row["file_name"],
        uploader=row["uploader"],
        raw_row_count=row["raw_row_count"] or 0,
        status=ImportStatus(row["status"]),
        per_entity_counts=row["per_entity_counts"] or {},
        error_message=row["error_message"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def create_import_batch(
    *,
    company_id: str,
    raw_row_count: int,
    file_name: Optional[str] = None,
    uploader: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> ImportBatch:
    """Persist a new pending batch."""
    engine = engine or get_engine()
    batch = ImportBatch(
        id=str(uuid.uuid4()),
        company_id=company_id,
        file_name=file_name,
        uploader=uploader,
        raw_row_count=raw_row_count,
        status=ImportStatus.PENDING,
        started_at=datetime.now(timezone.utc),
    )
    with engine.begin() as conn:
        conn.execute(
            import_batches.insert().values(
                id=batch.id,
                company_id=batch.company_id,
                file_name=batch.file_name,
                uploader=batch.uploader,
                raw_row_count=batch.raw_row_count,
                status=batch.status.value,
                per_entity_counts={},
                started_at=batch.started_at,
            )
        )
    logger.info(
        "Created import batch %s for company %s (%d rows, file=%s)",
        batch.id,
        company_id,
        raw_row_count,
        file_name,
    )
    return batch


def get_import_batch(batch_id: str, engine: Optional[Engine] = None) -> Optional[ImportBatch]:
    engine = engine or get_engine()
    with engine.connect() as conn:
        row = conn.execute(
            select(import_batches).where(import_batches.c.id == batch_id)
        ).mappings().first()
    return _row_to_batch(row) if row else None


def get_active_import_batch(company_id: str, engine: Optional[Engine] = None) -> Optional[ImportBatch]:
    """Return the tenant's pending or processing batch, if any."""
    engine = engine or get_engine()
    with engine.connect() as conn:
        row = conn.execute(
            select(import_batches)
            .where(import_batches.c.company_id == company_id)
            .where(import_batches.c.status.in_(ACTIVE_STATUSES))
            .order_by(import_batches.c.started_at.desc())
        ).mappings().first()
    return _row_to_batch(row) if row else None


def list_import_batches(
    company_id: str,
    limit: int = 50,
    offset: int = 0,
    engine: Optional[Engine] = None,
) -> List[ImportBatch]:
    engine = engine or get_engine()
    with engine.connect() as conn:
        rows = conn.execute(
            select(import_batches)
            .where(import_batches.c.company_id == company_id)
            .order_by(import_batches.c.started_at.desc())
            .limit(limit)
            .offset(offset)
        ).mappings().all()
    return [_row_to_batch(row) for row in rows]


def update_import_batch(
    batch_id: str,
    *,
    status: Optional[ImportStatus] = None,
    per_entity_counts: Optional[Dict[str, int]] = None,
    error_message: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> Optional[ImportBatch]:
    """Apply the supplied changes; terminal statuses also stamp ``completed_at``."""
    engine = engine or get_engine()
    values: Dict[str, Any] = {}
    if status is not None:
        values["status"] = status.value
        if status in TERMINAL_STATUSES:
            values["completed_at"] = datetime.now(timezone.utc)
    if per_entity_counts is not None:
        values["per_entity_counts"] = dict(per_entity_counts)
    if error_message is not None:
        values["error_message"] = error_message

    if values:
        with engine.begin() as conn:
            conn.execute(update(import_batches).where(import_batches.c.id == batch_id).values(**values))
        logger.debug("Updated import batch %s: %s", batch_id, sorted(values))
    return get_import_batch(batch_id, engine=engine)


def mark_batch_processing(batch_id: str, engine: Optional[Engine] = None) -> Optional[ImportBatch]:
    return update_import_batch(batch_id, status=ImportStatus.PROCESSING, engine=engine)


def finish_import_batch(
    batch_id: str,
    status: ImportStatus,
    per_entity_counts: Dict[str, int],
    error_message: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> Optional[ImportBatch]:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"{status.value} is not a terminal import status")
    return update_import_batch(
        batch_id,
        status=status,
        per_entity_counts=per_entity_counts,
        error_message=error_message,
        engine=engine,
    )


def fail_import_batch(
    batch_id: str,
    error_message: str,
    engine: Optional[Engine] = None,
) -> Optional[ImportBatch]:
    """Mark a batch failed, keeping whatever counts it already recorded."""
    logger.warning("Failing import batch %s: %s", batch_id, error_message)
    return update_import_batch(
        batch_id,
        status=ImportStatus.ERROR,
        error_message=error_message,
        engine=engine,
    )


def is_stale_batch(batch: ImportBatch, max_age_seconds: float, now: Optional[datetime] = None) -> bool:
    """True when an active batch started more than ``max_age_seconds`` ago."""
    started_at = batch.started_at
    if started_at.tzinfo is None:
        # SQLite hands back naive timestamps; they were written as UTC.
        started_at = started_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - started_at).total_seconds() > max_age_seconds
