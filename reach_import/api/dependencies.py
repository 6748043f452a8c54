"""
Shared dependencies and in-process state for the API.

Running imports register a progress channel and a cancel token here so the
status and cancel endpoints can reach them while the background task runs.
Once a run is released only its last progress event is kept, for a bounded
number of recent runs; the batch status itself lives in ``import_batches``.
"""
import logging
import threading
from collections import OrderedDict
from typing import Dict, Optional, Tuple

from reach_import.api.schemas.shared import ProgressEvent
from reach_import.core.config import settings
from reach_import.db.storage import EntityStore
from reach_import.domain.imports.progress import CancelToken, ProgressChannel

logger = logging.getLogger(__name__)

# Global run state (in production with several workers, use Redis or the database)
progress_channels: Dict[str, ProgressChannel] = {}
cancel_tokens: Dict[str, CancelToken] = {}
finished_progress: "OrderedDict[str, Optional[ProgressEvent]]" = OrderedDict()
_registry_lock = threading.Lock()


def get_store() -> EntityStore:
    """Storage client for request handlers; overridden in tests."""
    return EntityStore()


def register_run(batch_id: str) -> Tuple[ProgressChannel, CancelToken]:
    channel = ProgressChannel(maxsize=settings.progress_queue_size)
    token = CancelToken()
    with _registry_lock:
        progress_channels[batch_id] = channel
        cancel_tokens[batch_id] = token
    return channel, token


def release_run(batch_id: str) -> None:
    """Close and drop the run's channel and cancel token, keeping only its last event."""
    with _registry_lock:
        channel = progress_channels.pop(batch_id, None)
        cancel_tokens.pop(batch_id, None)
        if channel is not None:
            finished_progress[batch_id] = channel.latest
            finished_progress.move_to_end(batch_id)
            while len(finished_progress) > max(0, settings.progress_retained_runs):
                finished_progress.popitem(last=False)
    if channel is not None:
        channel.close()
        logger.debug("Released run state for import %s", batch_id)


def get_latest_progress(batch_id: str) -> Optional[ProgressEvent]:
    """Latest event of a live run, or the last event of a recently released one."""
    with _registry_lock:
        channel = progress_channels.get(batch_id)
        if channel is None:
            return finished_progress.get(batch_id)
    return channel.latest


def get_cancel_token(batch_id: str) -> Optional[CancelToken]:
    with _registry_lock:
        return cancel_tokens.get(batch_id)
