import threading
from typing import Dict, Optional
from contextlib import contextmanager
import logging

from reach_import.domain.imports.errors import ImportAlreadyRunning

logger = logging.getLogger(__name__)


class TenantImportLock:
    """
    Per-tenant guard allowing one running import per company inside this process.

    The persisted batch status protects against concurrent submissions across
    requests; this lock also covers two runs racing inside one worker.
    Acquisition never blocks: a held lock raises ``ImportAlreadyRunning``.
    """
    _locks: Dict[str, threading.Lock] = {}
    _holders: Dict[str, str] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, company_id: str) -> threading.Lock:
        """Get or create the lock for a company."""
        with cls._global_lock:
            if company_id not in cls._locks:
                cls._locks[company_id] = threading.Lock()
            return cls._locks[company_id]

    @classmethod
    def holder(cls, company_id: str) -> Optional[str]:
        """Batch id currently holding the company's lock, if any."""
        with cls._global_lock:
            return cls._holders.get(company_id)

    @classmethod
    @contextmanager
    def hold(cls, company_id: str, batch_id: str):
        """Context manager that claims the company for ``batch_id``."""
        lock = cls.get_lock(company_id)
        if not lock.acquire(blocking=False):
            running = cls.holder(company_id) or "unknown"
            logger.warning(
                "Rejected import %s for company '%s': batch %s is still running",
                batch_id,
                company_id,
                running,
            )
            raise ImportAlreadyRunning(company_id, running)
        with cls._global_lock:
            cls._holders[company_id] = batch_id
        logger.info(f"Acquired import lock for company '{company_id}' (batch {batch_id})")
        try:
            yield
        finally:
            with cls._global_lock:
                cls._holders.pop(company_id, None)
            lock.release()
            logger.info(f"Released import lock for company '{company_id}'")
