"""
Route import endpoints: upload parsing, column mapping, preview, and the
background import with progress, cancellation and history.
"""
import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, UploadFile

from reach_import.api.dependencies import (
    get_cancel_token,
    get_latest_progress,
    get_store,
    register_run,
    release_run,
)
from reach_import.api.schemas.shared import (
    TERMINAL_STATUSES,
    ColumnMapping,
    DetectMappingRequest,
    DetectMappingResponse,
    EntityStatsResponse,
    HistoryListResponse,
    ImportBatch,
    ImportStatus,
    ImportStatusResponse,
    MappingValidation,
    ParseUploadResponse,
    PreviewRequest,
    PreviewStats,
    RawRow,
    StartImportRequest,
    ValidateMappingRequest,
)
from reach_import.db.storage import EntityStore
from reach_import.domain.imports.batches import fail_import_batch, finish_import_batch, get_import_batch
from reach_import.domain.imports.column_mapper import (
    apply_mapping_edit,
    detect_column_mapping,
    validate_column_mapping,
)
from reach_import.domain.imports.errors import ImportAlreadyRunning, MappingIncomplete, ParseError
from reach_import.domain.imports.history import list_history
from reach_import.domain.imports.pipeline import preview_import, run_import, start_import
from reach_import.domain.imports.processors.csv_processor import parse_upload
from reach_import.domain.imports.progress import CancelToken, ProgressChannel
from reach_import.utils.locks import TenantImportLock

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)


def process_import_in_background(
    batch: ImportBatch,
    rows: List[RawRow],
    mapping: ColumnMapping,
    store: EntityStore,
    channel: ProgressChannel,
    token: CancelToken,
):
    """Background task running one confirmed import to completion."""
    try:
        result = run_import(
            batch,
            rows,
            mapping,
            store=store,
            progress_sink=channel,
            cancel_token=token,
        )
        logger.info("Background import %s finished with status %s", batch.id, result.status.value)
    except ImportAlreadyRunning as e:
        logger.warning("Background import %s rejected: %s", batch.id, e.message)
    except Exception as e:
        logger.exception("Background import %s crashed", batch.id)
        try:
            current = get_import_batch(batch.id, engine=store.engine)
            if current is not None and current.status not in TERMINAL_STATUSES:
                fail_import_batch(batch.id, f"Import crashed: {e}", engine=store.engine)
        except Exception:
            logger.exception("Could not mark crashed import %s as failed", batch.id)
    finally:
        release_run(batch.id)


@router.post("/imports/parse", response_model=ParseUploadResponse)
async def parse_upload_endpoint(file: UploadFile = File(...)):
    """
    Parse an uploaded CSV/Excel route file and propose a column mapping.

    Returns:
    - Trimmed headers and the rows as text cells
    - Detected mapping and its validation
    """
    file_content = await file.read()
    file_name = file.filename or "upload.csv"
    try:
        headers, rows = parse_upload(file_content, file_name)
    except ParseError as e:
        raise HTTPException(status_code=422, detail=e.message)

    mapping = detect_column_mapping(headers)
    logger.info("Parsed '%s': %d rows, %d columns", file_name, len(rows), len(headers))
    return ParseUploadResponse(
        file_name=file_name,
        headers=headers,
        rows=rows,
        row_count=len(rows),
        mapping=mapping,
        validation=validate_column_mapping(mapping, headers),
    )


@router.post("/imports/mapping/detect", response_model=DetectMappingResponse)
async def detect_mapping_endpoint(request: DetectMappingRequest):
    mapping = detect_column_mapping(request.headers)
    return DetectMappingResponse(mapping=mapping, validation=validate_column_mapping(mapping, request.headers))


@router.post("/imports/mapping/validate", response_model=DetectMappingResponse)
async def validate_mapping_endpoint(request: ValidateMappingRequest):
    """Apply any operator edits in order, then validate the resulting mapping."""
    mapping = request.mapping
    for edit in request.edits:
        try:
            mapping = apply_mapping_edit(mapping, edit.field, edit.source_column)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
    validation: MappingValidation = validate_column_mapping(mapping, request.headers)
    return DetectMappingResponse(mapping=mapping, validation=validation)


@router.post("/imports/preview", response_model=PreviewStats)
async def preview_import_endpoint(request: PreviewRequest):
    return preview_import(request.rows, request.mapping)


@router.post("/companies/{company_id}/imports", response_model=ImportStatusResponse, status_code=202)
async def start_import_endpoint(
    company_id: str,
    request: StartImportRequest,
    background_tasks: BackgroundTasks,
    store: EntityStore = Depends(get_store),
):
    """
    Confirm an import and run it in the background.

    Poll ``GET /imports/{batch_id}`` for progress.
    """
    try:
        batch = start_import(
            company_id=company_id,
            raw_rows=request.rows,
            mapping=request.mapping,
            file_name=request.file_name,
            uploader=request.uploader,
            store=store,
        )
    except (MappingIncomplete, ParseError) as e:
        raise HTTPException(status_code=422, detail=e.message)
    except ImportAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=e.message)

    channel, token = register_run(batch.id)
    background_tasks.add_task(
        process_import_in_background,
        batch=batch,
        rows=request.rows,
        mapping=request.mapping,
        store=store,
        channel=channel,
        token=token,
    )
    return ImportStatusResponse(batch=batch)


@router.get("/imports/{batch_id}", response_model=ImportStatusResponse)
async def get_import_status_endpoint(batch_id: str, store: EntityStore = Depends(get_store)):
    batch = get_import_batch(batch_id, engine=store.engine)
    if not batch:
        raise HTTPException(status_code=404, detail="Import batch not found")
    token = get_cancel_token(batch_id)
    return ImportStatusResponse(
        batch=batch,
        progress=get_latest_progress(batch_id),
        cancel_requested=bool(token and token.cancelled),
    )


@router.post("/imports/{batch_id}/cancel", response_model=ImportStatusResponse)
async def cancel_import_endpoint(batch_id: str, store: EntityStore = Depends(get_store)):
    """
    Request cooperative cancellation; rows already written are rolled back.

    A pending or processing batch with no live run (the worker crashed or the
    process restarted) is marked cancelled directly so the company can import
    again.
    """
    batch = get_import_batch(batch_id, engine=store.engine)
    if not batch:
        raise HTTPException(status_code=404, detail="Import batch not found")
    if batch.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Import already finished with status '{batch.status.value}'")
    token = get_cancel_token(batch_id)
    if token is None:
        if TenantImportLock.holder(batch.company_id) == batch_id:
            raise HTTPException(status_code=409, detail="Import is running but cannot be cancelled yet")
        logger.warning("Import %s has no live run; marking it cancelled", batch_id)
        batch = finish_import_batch(
            batch_id,
            ImportStatus.CANCELLED,
            batch.per_entity_counts,
            "Import was not running; marked cancelled",
            engine=store.engine,
        )
        return ImportStatusResponse(batch=batch, progress=get_latest_progress(batch_id), cancel_requested=True)

    token.cancel()
    logger.info("Cancellation requested for import %s", batch_id)
    return ImportStatusResponse(
        batch=batch,
        progress=get_latest_progress(batch_id),
        cancel_requested=True,
    )


@router.get("/companies/{company_id}/history", response_model=HistoryListResponse)
async def list_history_endpoint(
    company_id: str,
    limit: int = 50,
    offset: int = 0,
    store: EntityStore = Depends(get_store),
):
    entries = list_history(company_id, limit=limit, offset=offset, engine=store.engine)
    return HistoryListResponse(company_id=company_id, entries=entries, limit=limit, offset=offset)


@router.get("/companies/{company_id}/stats", response_model=EntityStatsResponse)
async def entity_stats_endpoint(company_id: str, store: EntityStore = Depends(get_store)):
    """Current normalized totals for the company."""
    return EntityStatsResponse(company_id=company_id, **store.count_entities(company_id))
