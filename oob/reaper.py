"""
Background cleanup of operations.

Two sweeps run from the ``operation_cleanup`` cron job:
- timeout: in-progress operations older than OPERATION_TIMEOUT_MAX_AGE_DAYS
  are failed and their files released
- retention: terminal operations older than OPERATION_DELETE_MAX_AGE_DAYS
  have their files released and their rows deleted

Both walk operations by ascending id one page at a time and call the
checkpoint after each page. A failure aborts the sweep; the next run picks
the same rows up again and every write it repeats is conditional or
idempotent.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from oob import config
from oob.database import db, delete_asset_row, delete_operation, iterate_operation_pages
from oob.engine import transition_operation
from oob.events import SERVICE_EVENT_SOURCE, EventPublisher
from oob.files import LocalFileStore
from oob.identifiers import OperationId
from oob.models import (
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    Operation,
    OperationName,
    OperationQuery,
    OperationStatus,
    OperationUpdate,
)

logger = logging.getLogger("oob.reaper")

Checkpoint = Callable[[], None]

TIMED_OUT_DETAILS = "Operation has timed out"


def _noop_checkpoint() -> None:
    pass


def cleanup_operation(file_store: LocalFileStore, operation: Operation) -> None:
    """Release the uploaded file of a SendFiles operation the device picked up."""
    if operation.name != OperationName.SEND_FILES.value or operation.status == OperationStatus.CREATED:
        return
    try:
        file_store.delete_file(operation.file_key)
        logger.info("Deleted file for operation %s", operation.id)
    except (OSError, ValueError) as e:
        # Never uploaded, or already removed by an earlier run.
        logger.warning("Failed to delete file for operation %s: %s", operation.id, e)


def cleanup_operations(
    query: OperationQuery,
    checkpoint: Checkpoint,
    publisher: EventPublisher,
    file_store: LocalFileStore,
    *,
    delete: bool = False,
    page_size: Optional[int] = None,
) -> int:
    """Time out, release and optionally delete every operation matching ``query``.

    Returns the number of operations visited.
    """
    page_size = page_size if page_size is not None else config.OPERATION_PAGE_SIZE
    visited = 0
    for page in iterate_operation_pages(query, page_size):
        conn = db()
        try:
            for operation in page:
                if operation.in_progress:
                    transition_operation(
                        conn,
                        operation,
                        OperationUpdate(status=OperationStatus.FAILED, additional_details=TIMED_OUT_DETAILS),
                        publisher,
                        SERVICE_EVENT_SOURCE,
                    )
                cleanup_operation(file_store, operation)
                if delete:
                    delete_operation(conn, operation.id)
                    conn.commit()
                visited += 1
        finally:
            conn.close()
        checkpoint()
    return visited


def run_operation_cleanup(
    checkpoint: Checkpoint,
    publisher: EventPublisher,
    file_store: LocalFileStore,
    now: Optional[datetime] = None,
    *,
    timeout_days: Optional[int] = None,
    retention_days: Optional[int] = None,
    page_size: Optional[int] = None,
) -> None:
    now = now or datetime.now(timezone.utc)
    timeout_days = timeout_days if timeout_days is not None else config.OPERATION_TIMEOUT_MAX_AGE_DAYS
    retention_days = retention_days if retention_days is not None else config.OPERATION_DELETE_MAX_AGE_DAYS

    timeout_cutoff = OperationId.from_datetime(now - timedelta(days=timeout_days))
    timed_out = cleanup_operations(
        OperationQuery(before_id=timeout_cutoff, statuses=list(IN_PROGRESS_STATUSES)),
        checkpoint,
        publisher,
        file_store,
        page_size=page_size,
    )

    retention_cutoff = OperationId.from_datetime(now - timedelta(days=retention_days))
    deleted = cleanup_operations(
        OperationQuery(before_id=retention_cutoff, statuses=list(TERMINAL_STATUSES)),
        checkpoint,
        publisher,
        file_store,
        delete=True,
        page_size=page_size,
    )
    logger.info("Operation cleanup finished: %d timed out, %d deleted", timed_out, deleted)


def delete_asset(
    tenant_id: str,
    asset_id: str,
    publisher: EventPublisher,
    file_store: LocalFileStore,
    token_cache=None,
    checkpoint: Checkpoint = _noop_checkpoint,
) -> bool:
    """Fail the asset's open operations, release its files and remove it.

    Returns False if the asset did not exist.
    """
    cleanup_operations(
        OperationQuery(tenant_id=tenant_id, asset_id=asset_id),
        checkpoint,
        publisher,
        file_store,
    )
    conn = db()
    try:
        existed = delete_asset_row(conn, tenant_id, asset_id)
        conn.commit()
    finally:
        conn.close()
    if token_cache is not None:
        token_cache.invalidate_asset(tenant_id, asset_id)
    checkpoint()
    if existed:
        logger.info("Deleted asset %s/%s", tenant_id, asset_id)
    return existed
