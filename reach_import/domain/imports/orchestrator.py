"""
Persistence orchestrator for normalized route imports.

A run writes the raw upload to ``raw_uploads`` and then syncs the four entity
tables strictly in order: branches, routes, customers, visits. Rows of one
entity are split into fixed-size batches and written by a small thread pool;
the next entity starts only after every batch of the previous one finished.
Each write is tagged with the import batch id so that a cancelled or failed
run can be undone with one delete per table.
"""
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Sequence

from reach_import.api.schemas.shared import (
    STEP_NAMES,
    ImportBatch,
    ImportResult,
    ImportStatus,
    ImportStep,
    ProgressEvent,
    RawRow,
)
from reach_import.core.config import settings
from reach_import.db.storage import EntityStore
from reach_import.domain.imports.batches import finish_import_batch, mark_batch_processing
from reach_import.domain.imports.errors import (
    FatalWriteError,
    ImportCancelled,
    TransientWriteError,
    WriteError,
)
from reach_import.domain.imports.extractor import ExtractedEntities
from reach_import.domain.imports.history import append_history_entry
from reach_import.domain.imports.progress import CancelToken, ProgressSink, is_cancelled
from reach_import.domain.imports.rollback import rollback_import_batch
from reach_import.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

WriteFn = Callable[[str, List[Dict[str, Any]]], int]

# Entity steps in write order, paired with their table names.
ENTITY_STEPS = (
    (ImportStep.BRANCHES, "branches"),
    (ImportStep.ROUTES, "routes"),
    (ImportStep.CUSTOMERS, "customers"),
    (ImportStep.VISITS, "visits"),
)


def _chunk(rows: Sequence[Dict[str, Any]], size: int) -> List[List[Dict[str, Any]]]:
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


class ImportOrchestrator:
    """
    Runs the dual-write for one import batch.

    Write errors never escape ``run``; they are reported through the returned
    ``ImportResult`` together with whether the rollback succeeded.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        batch_size: Optional[int] = None,
        raw_backup_batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.batch_size = max(1, batch_size or settings.import_batch_size)
        self.raw_backup_batch_size = max(1, raw_backup_batch_size or settings.import_raw_backup_batch_size)
        self.max_workers = max(1, max_workers or settings.import_max_workers)
        self.max_retries = settings.import_write_max_retries if max_retries is None else max(0, max_retries)
        self.backoff_seconds = settings.import_write_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.backoff_max_seconds = (
            settings.import_write_backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(
        self,
        entities: ExtractedEntities,
        batch: ImportBatch,
        raw_rows: Sequence[RawRow],
        progress_sink: Optional[ProgressSink] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> ImportResult:
        engine = self.store.engine
        counts: Dict[str, int] = {}
        logger.info(
            "Import %s started for company %s: %d raw rows, entity counts %s",
            batch.id,
            batch.company_id,
            len(raw_rows),
            entities.entity_counts(),
        )

        try:
            mark_batch_processing(batch.id, engine=engine)
            self._write_raw_backup(batch, raw_rows, progress_sink, cancel_token)
            for step, table_name in ENTITY_STEPS:
                rows = self._entity_rows(entities, table_name, batch)
                counts[table_name] = self._write_step(
                    step,
                    table_name,
                    rows,
                    self.store.upsert_rows,
                    self.batch_size,
                    batch.id,
                    progress_sink,
                    cancel_token,
                )
            append_history_entry(
                company_id=batch.company_id,
                import_batch_id=batch.id,
                record_count=len(raw_rows),
                stats=entities.reported_counts(),
                file_name=batch.file_name,
                uploader=batch.uploader,
                engine=engine,
            )
        except ImportCancelled:
            logger.warning("Import %s cancelled; rolling back", batch.id)
            rollback_ok, rollback_error = self._rollback(batch)
            if rollback_ok:
                message = f"Import cancelled by user. Rows written for batch {batch.id} were rolled back."
            else:
                message = (
                    f"Import cancelled by user. Rollback failed ({rollback_error}); "
                    f"manual cleanup required for batch {batch.id}"
                )
            return self._finish(batch, ImportStatus.CANCELLED, counts, message, rollback_ok)
        except Exception as exc:
            reason = exc.message if isinstance(exc, WriteError) else str(exc)
            logger.error("Import %s failed: %s", batch.id, reason, exc_info=True)
            rollback_ok, rollback_error = self._rollback(batch)
            if rollback_ok:
                message = f"{reason}. Rows written for batch {batch.id} were rolled back."
            else:
                message = (
                    f"{reason}. Rollback failed ({rollback_error}); "
                    f"manual cleanup required for batch {batch.id}"
                )
            return self._finish(batch, ImportStatus.ERROR, counts, message, rollback_ok)

        logger.info("Import %s complete: %s", batch.id, counts)
        return self._finish(batch, ImportStatus.COMPLETE, counts, None, None)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _write_raw_backup(
        self,
        batch: ImportBatch,
        raw_rows: Sequence[RawRow],
        progress_sink: Optional[ProgressSink],
        cancel_token: Optional[CancelToken],
    ) -> int:
        rows = [
            {
                "company_id": batch.company_id,
                "import_batch_id": batch.id,
                "row_number": index + 1,
                "file_name": batch.file_name,
                "payload": _make_json_safe(dict(row)),
            }
            for index, row in enumerate(raw_rows)
        ]
        return self._write_step(
            ImportStep.RAW_BACKUP,
            "raw_uploads",
            rows,
            self.store.insert_rows,
            self.raw_backup_batch_size,
            batch.id,
            progress_sink,
            cancel_token,
        )

    def _entity_rows(self, entities: ExtractedEntities, table_name: str, batch: ImportBatch) -> List[Dict[str, Any]]:
        tags = {"company_id": batch.company_id, "import_batch_id": batch.id}
        return [{**entity.as_row(), **tags} for entity in getattr(entities, table_name)]

    def _write_step(
        self,
        step: ImportStep,
        table_name: str,
        rows: Sequence[Dict[str, Any]],
        write: WriteFn,
        batch_size: int,
        batch_id: str,
        progress_sink: Optional[ProgressSink],
        cancel_token: Optional[CancelToken],
    ) -> int:
        """
        Write ``rows`` in batches with at most ``max_workers`` writes in flight.

        Cancellation is checked before each batch is submitted. On cancellation
        or a failed batch no further batches are submitted, the in-flight ones
        are awaited, and the cancellation/error is raised.
        """
        total = len(rows)
        chunks = _chunk(rows, batch_size)
        logger.info(
            "Step %s: writing %d rows to %s in %d batches (%d workers)",
            step.value,
            total,
            table_name,
            len(chunks),
            self.max_workers,
        )
        if is_cancelled(cancel_token):
            raise ImportCancelled(batch_id)
        if not chunks:
            self._emit(progress_sink, step, 0, 0, batch_id)
            return 0
        self._emit(progress_sink, step, 0, total, batch_id)

        written = 0
        failure: Optional[WriteError] = None
        cancelled = False
        next_chunk = 0
        in_flight: Dict[Future, int] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"import-{table_name}") as executor:
            while True:
                while failure is None and not cancelled and next_chunk < len(chunks) and len(in_flight) < self.max_workers:
                    if is_cancelled(cancel_token):
                        cancelled = True
                        break
                    chunk = chunks[next_chunk]
                    future = executor.submit(self._write_with_retry, write, table_name, chunk)
                    in_flight[future] = next_chunk + 1
                    next_chunk += 1

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    chunk_number = in_flight.pop(future)
                    try:
                        written += future.result()
                    except WriteError as exc:
                        logger.error("Batch %d of %s failed: %s", chunk_number, table_name, exc.message)
                        failure = failure or exc
                        continue
                    except Exception as exc:
                        logger.error("Batch %d of %s failed: %s", chunk_number, table_name, exc)
                        failure = failure or FatalWriteError(table_name, cause=exc)
                        continue
                    if failure is None:
                        self._emit(progress_sink, step, written, total, batch_id)

        if failure is not None:
            raise failure
        if cancelled:
            logger.info("Step %s stopped after %d of %d rows: cancellation requested", step.value, written, total)
            raise ImportCancelled(batch_id)
        logger.info("Step %s finished: %d rows written to %s", step.value, written, table_name)
        return written

    def _write_with_retry(self, write: WriteFn, table_name: str, rows: List[Dict[str, Any]]) -> int:
        attempt = 0
        while True:
            try:
                return write(table_name, rows)
            except TransientWriteError as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise FatalWriteError(
                        table_name,
                        f"Write to '{table_name}' failed after {self.max_retries} retries: {exc.cause or exc}",
                        cause=exc,
                    ) from exc
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Transient error writing %d rows to %s (attempt %d/%d); retrying in %.2fs: %s",
                    len(rows),
                    table_name,
                    attempt,
                    self.max_retries,
                    delay,
                    exc.cause or exc,
                )
                self._sleep(delay)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the ``attempt``-th retry (1-based), capped."""
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _emit(
        self,
        progress_sink: Optional[ProgressSink],
        step: ImportStep,
        current: int,
        total: int,
        batch_id: str,
    ) -> None:
        if progress_sink is None:
            return
        percent = 100 if total == 0 else int(current * 100 / total)
        event = ProgressEvent(
            step=step,
            step_name=STEP_NAMES[step],
            percent=percent,
            current_count=current,
            total_count=total,
            batch_id=batch_id,
        )
        try:
            progress_sink(event)
        except Exception:
            logger.exception("Progress sink raised while handling %s event", step.value)

    def _rollback(self, batch: ImportBatch):
        try:
            rollback_import_batch(self.store, batch.company_id, batch.id)
        except Exception as exc:
            logger.error("Rollback of batch %s failed: %s", batch.id, exc, exc_info=True)
            return False, exc
        logger.warning("Rollback of batch %s complete; raw snapshot retained", batch.id)
        return True, None

    def _finish(
        self,
        batch: ImportBatch,
        status: ImportStatus,
        counts: Dict[str, int],
        error: Optional[str],
        rollback_succeeded: Optional[bool],
    ) -> ImportResult:
        try:
            finish_import_batch(batch.id, status, counts, error, engine=self.store.engine)
        except Exception:
            logger.exception("Could not record final status %s for batch %s", status.value, batch.id)
        return ImportResult(
            success=status == ImportStatus.COMPLETE,
            batch_id=batch.id,
            status=status,
            per_entity_counts=counts,
            error=error,
            rollback_succeeded=rollback_succeeded,
        )
