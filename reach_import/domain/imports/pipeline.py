"""
End-to-end entry points for the normalized route import.

``preview_import`` runs the in-memory stages only. ``start_import`` validates a
confirmed mapping and creates the pending batch; ``run_import`` transforms,
extracts and hands the entities to the orchestrator. ``execute_import`` does
both in one call.
"""
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Sequence

from reach_import.api.schemas.shared import (
    ColumnMapping,
    ImportBatch,
    ImportResult,
    ImportStatus,
    PreviewStats,
    RawRow,
)
from reach_import.core.config import settings
from reach_import.db.storage import EntityStore
from reach_import.domain.imports.batches import (
    create_import_batch,
    fail_import_batch,
    finish_import_batch,
    get_active_import_batch,
    is_stale_batch,
)
from reach_import.domain.imports.column_mapper import validate_column_mapping
from reach_import.domain.imports.errors import (
    ImportAlreadyRunning,
    ImportCancelled,
    MappingIncomplete,
    ParseError,
)
from reach_import.domain.imports.extractor import build_preview_stats, extract_entities
from reach_import.domain.imports.orchestrator import ImportOrchestrator
from reach_import.domain.imports.progress import CancelToken, ProgressSink
from reach_import.domain.imports.transformer import transform_rows
from reach_import.utils.locks import TenantImportLock

logger = logging.getLogger(__name__)


def collect_headers(raw_rows: Sequence[RawRow]) -> List[str]:
    """Column names across all rows, in first-seen order."""
    headers: Dict[str, None] = {}
    for row in raw_rows:
        for column in row:
            headers.setdefault(str(column), None)
    return list(headers)


def validate_raw_rows(raw_rows: Sequence[Any]) -> None:
    """Reject uploads that are not a non-empty list of column -> value rows."""
    if not raw_rows:
        raise ParseError("Upload contains no data rows")
    for index, row in enumerate(raw_rows, start=1):
        if not isinstance(row, Mapping):
            raise ParseError(f"Row {index} is not a column/value record")
        for column, value in row.items():
            if not isinstance(column, str):
                raise ParseError(f"Row {index} has a non-text column name: {column!r}")
            if value is not None and not isinstance(value, (str, int, float)):
                raise ParseError(f"Row {index} column '{column}' has an unsupported value type")


def preview_import(
    raw_rows: Sequence[RawRow],
    mapping: ColumnMapping,
    sample_size: Optional[int] = None,
    cancel_token: Optional[CancelToken] = None,
) -> PreviewStats:
    """Counts and samples for the review screen, from the same extraction the write uses."""
    records = transform_rows(raw_rows, mapping, cancel_token)
    entities = extract_entities(records, cancel_token)
    return build_preview_stats(entities, sample_size)


def start_import(
    *,
    company_id: str,
    raw_rows: Sequence[RawRow],
    mapping: ColumnMapping,
    file_name: Optional[str] = None,
    uploader: Optional[str] = None,
    headers: Optional[Sequence[str]] = None,
    store: Optional[EntityStore] = None,
) -> ImportBatch:
    """
    Validate a confirmed import and create its pending batch.

    Raises:
        ParseError: rows are malformed
        MappingIncomplete: required fields unmapped, or mapped columns missing
        ImportAlreadyRunning: the company already has a batch in flight

    An active batch older than ``import_stale_batch_seconds`` that no run in
    this process holds is failed instead of blocking the company.
    """
    validate_raw_rows(raw_rows)

    validation = validate_column_mapping(mapping, headers if headers is not None else collect_headers(raw_rows))
    if validation.missing_required_fields:
        raise MappingIncomplete(validation.missing_required_fields)
    if validation.unknown_columns:
        raise MappingIncomplete(
            [],
            f"Mapped columns not found in the upload: {', '.join(validation.unknown_columns)}",
        )

    store = store or EntityStore()
    running = TenantImportLock.holder(company_id)
    if running:
        raise ImportAlreadyRunning(company_id, running)
    active = get_active_import_batch(company_id, engine=store.engine)
    if active is not None:
        if not is_stale_batch(active, settings.import_stale_batch_seconds):
            raise ImportAlreadyRunning(company_id, active.id)
        # No live run holds the tenant lock, so the batch was orphaned by a crash or restart.
        fail_import_batch(
            active.id,
            f"Import abandoned: no progress for over {settings.import_stale_batch_seconds} seconds",
            engine=store.engine,
        )

    return create_import_batch(
        company_id=company_id,
        raw_row_count=len(raw_rows),
        file_name=file_name,
        uploader=uploader,
        engine=store.engine,
    )


def run_import(
    batch: ImportBatch,
    raw_rows: Sequence[RawRow],
    mapping: ColumnMapping,
    *,
    store: Optional[EntityStore] = None,
    progress_sink: Optional[ProgressSink] = None,
    cancel_token: Optional[CancelToken] = None,
    orchestrator_options: Optional[Dict[str, Any]] = None,
) -> ImportResult:
    """Transform, extract and persist one batch while holding the company's import lock."""
    store = store or EntityStore()
    try:
        with TenantImportLock.hold(batch.company_id, batch.id):
            try:
                records = transform_rows(raw_rows, mapping, cancel_token)
                entities = extract_entities(records, cancel_token)
            except ImportCancelled:
                message = "Import cancelled by user before any rows were written."
                logger.info("Import %s cancelled during transformation", batch.id)
                finish_import_batch(batch.id, ImportStatus.CANCELLED, {}, message, engine=store.engine)
                return ImportResult(
                    success=False,
                    batch_id=batch.id,
                    status=ImportStatus.CANCELLED,
                    error=message,
                )

            orchestrator = ImportOrchestrator(store, **(orchestrator_options or {}))
            return orchestrator.run(entities, batch, raw_rows, progress_sink, cancel_token)
    except ImportAlreadyRunning as exc:
        finish_import_batch(batch.id, ImportStatus.ERROR, {}, exc.message, engine=store.engine)
        raise


def execute_import(
    *,
    company_id: str,
    raw_rows: Sequence[RawRow],
    mapping: ColumnMapping,
    file_name: Optional[str] = None,
    uploader: Optional[str] = None,
    store: Optional[EntityStore] = None,
    progress_sink: Optional[ProgressSink] = None,
    cancel_token: Optional[CancelToken] = None,
    orchestrator_options: Optional[Dict[str, Any]] = None,
) -> ImportResult:
    store = store or EntityStore()
    batch = start_import(
        company_id=company_id,
        raw_rows=raw_rows,
        mapping=mapping,
        file_name=file_name,
        uploader=uploader,
        store=store,
    )
    return run_import(
        batch,
        raw_rows,
        mapping,
        store=store,
        progress_sink=progress_sink,
        cancel_token=cancel_token,
        orchestrator_options=orchestrator_options,
    )
