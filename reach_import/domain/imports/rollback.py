"""
Rollback of a partially written import batch.

Every entity row carries the id of the batch that inserted it, so undoing a
batch is one delete per entity table. Tables are cleared in reverse write
order (visits first) so no row is left pointing at a deleted parent. The raw
snapshot in ``raw_uploads`` is never touched.
"""
import logging
from typing import Dict

from reach_import.db.storage import EntityStore
from reach_import.db.tables import ENTITY_TABLES

logger = logging.getLogger(__name__)


def rollback_import_batch(store: EntityStore, company_id: str, import_batch_id: str) -> Dict[str, int]:
    """
    Delete every entity row inserted by ``import_batch_id``.

    Returns:
        Rows deleted per table

    Raises:
        WriteError: if any delete fails; tables already cleared stay cleared
    """
    deleted: Dict[str, int] = {}
    for table_name in reversed(ENTITY_TABLES):
        deleted[table_name] = store.delete_import_batch(table_name, company_id, import_batch_id)
        logger.info(
            "Rollback of batch %s removed %d rows from %s",
            import_batch_id,
            deleted[table_name],
            table_name,
        )
    return deleted
