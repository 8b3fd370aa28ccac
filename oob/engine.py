"""
Operation lifecycle engine.

Device polls, device status reports, file uploads and the management
create/cancel/link calls all go through here. Every status change is a
conditional write against the stored status (see oob.database), so a poll,
a device report and the reaper racing on one row resolve to exactly one
winner; the losers see zero affected rows and carry on.
"""

import logging
import sqlite3
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from oob import config
from oob.database import (
    count_in_progress_operations,
    get_asset,
    get_operation,
    increase_operation_tries,
    insert_operation,
    query_operations,
    update_asset_boot_id,
    update_operation,
)
from oob.errors import BadRequestError, NotFoundError, UnauthorizedError
from oob.events import EventPublisher, build_event, publish_event
from oob.files import LocalFileStore
from oob.identifiers import OperationId
from oob.models import (
    DEVICE_UPDATE_ALLOWED_FROM,
    IN_PROGRESS_STATUSES,
    Asset,
    EventSource,
    EventType,
    Operation,
    OperationName,
    OperationQuery,
    OperationStatus,
    OperationUpdate,
    Progress,
)
from oob.tokens import generate_upload_token, upload_token_matches

logger = logging.getLogger("oob.engine")

MAX_ADDITIONAL_DETAILS_LENGTH = 4096
UPLOAD_METHOD = "PUT"


def parse_operation_id(value: str) -> OperationId:
    try:
        return OperationId.from_hex(value)
    except (TypeError, ValueError):
        raise BadRequestError("Invalid operation id")


# ─────────────────────────── TRANSITIONS ───────────────────────────

def transition_operation(
    conn: sqlite3.Connection,
    operation: Operation,
    update: OperationUpdate,
    publisher: EventPublisher,
    event_source: EventSource,
    where_statuses: Sequence[OperationStatus] = IN_PROGRESS_STATUSES,
    *,
    acknowledge: bool = False,
) -> bool:
    """Conditionally apply ``update`` and publish an update event if it won.

    Returns False when the row was no longer in ``where_statuses``. That is a
    lost race, never an error.
    """
    changed = update_operation(
        conn,
        operation.tenant_id,
        operation.asset_id,
        operation.id,
        update,
        where_statuses,
        acknowledge=acknowledge,
    )
    conn.commit()

    if not changed:
        if update.status in IN_PROGRESS_STATUSES:
            logger.info(
                "In progress status update %s ignored for operation %s (status %s)",
                update.status.value, operation.id, operation.status.value,
            )
        else:
            logger.warning(
                "Completion update %s ignored for already completed operation %s",
                update.status.value, operation.id,
            )
        return False

    request = update.to_dict()
    if acknowledge and operation.status == OperationStatus.CREATED:
        # The same write set tries to 1.
        request["tries"] = 1
    publish_event(publisher, build_event(
        operation.tenant_id,
        EventType.OPERATION_UPDATE,
        event_source,
        operation.asset_id,
        data={"id": operation.id.hex, "request": request},
    ))
    return True


# ─────────────────────────── POLL ───────────────────────────

def detect_reboot(
    stored_boot_id: Optional[str],
    reported_boot_id: Optional[str],
    operations: Sequence[Operation],
) -> Tuple[Optional[str], List[Operation]]:
    """Decide which operations a boot id change completes.

    A changed boot id is the only evidence a device gives that it rebooted,
    so every acknowledged Reboot operation counts as done when it changes.
    A first ever report (nothing stored) only records the id.
    """
    new_boot_id = reported_boot_id or stored_boot_id
    if not stored_boot_id or not reported_boot_id or stored_boot_id == reported_boot_id:
        return new_boot_id, []
    completed = [
        op for op in operations
        if op.name == OperationName.REBOOT.value and op.status != OperationStatus.CREATED
    ]
    return new_boot_id, completed


def upload_destination(operation: Operation, api_host: Optional[str] = None) -> str:
    host = (api_host if api_host is not None else config.API_HOST).rstrip("/")
    return (
        f"{host}/v1/api/oob/edge/operations/{operation.id.hex}/upload"
        f"?uploadToken={operation.upload_token}"
    )


def to_device_operation(operation: Operation, api_host: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Shape an operation the way the device expects, or None to skip it."""
    data: Dict[str, Any] = {"id": operation.id.hex, "name": operation.name}
    # Devices have no notion of Created; an absent status means not started.
    if operation.status != OperationStatus.CREATED:
        data["status"] = operation.status.value

    if operation.name == OperationName.SEND_FILES.value:
        if not operation.upload_token:
            logger.error("SendFiles operation %s has no upload token, not sending", operation.id)
            return None
        parameters = {
            k: v for k, v in (operation.parameters or {}).items() if k in ("paths", "knownPaths")
        }
        parameters["method"] = UPLOAD_METHOD
        parameters["destination"] = upload_destination(operation, api_host)
        data["parameters"] = parameters
        return data

    if operation.name == OperationName.RESTART_SERVICES.value:
        if operation.parameters is not None:
            data["parameters"] = operation.parameters
        return data

    if operation.name == OperationName.REBOOT.value:
        return data

    logger.warning("Unhandled operation type %r for device, skipping %s", operation.name, operation.id)
    return None


def poll_operations(
    conn: sqlite3.Connection,
    asset: Asset,
    reported_boot_id: Optional[str],
    publisher: EventPublisher,
    event_source: EventSource,
    *,
    max_tries: Optional[int] = None,
    api_host: Optional[str] = None,
) -> List[Dict[str, Any]]:
    max_tries = max_tries if max_tries is not None else config.MAX_OPERATION_TRIES

    operations = query_operations(conn, OperationQuery(
        tenant_id=asset.tenant_id,
        asset_id=asset.asset_id,
        statuses=list(IN_PROGRESS_STATUSES),
        sort_direction="ASC",
    ))

    new_boot_id, rebooted = detect_reboot(asset.boot_id, reported_boot_id, operations)
    if new_boot_id and new_boot_id != asset.boot_id:
        update_asset_boot_id(conn, asset.tenant_id, asset.asset_id, new_boot_id)
        conn.commit()
        logger.info("Asset %s/%s boot id now %s", asset.tenant_id, asset.asset_id, new_boot_id)
        asset.boot_id = new_boot_id

    done = {op.id for op in rebooted}
    for op in rebooted:
        try:
            transition_operation(
                conn, op, OperationUpdate(status=OperationStatus.SUCCESS), publisher, event_source,
            )
        except Exception as e:
            logger.error("Failed to complete reboot operation %s: %s", op.id, e, exc_info=True)
    operations = [op for op in operations if op.id not in done]

    expired = [op for op in operations if op.tries >= max_tries]
    expired_ids = {op.id for op in expired}
    operations = [op for op in operations if op.id not in expired_ids]
    for op in expired:
        update = OperationUpdate(
            status=OperationStatus.FAILED,
            additional_details=f"Device failed to complete operation after {max_tries} tries",
        )
        try:
            transition_operation(conn, op, update, publisher, event_source)
        except Exception as e:
            logger.error("Failed to expire operation %s: %s", op.id, e, exc_info=True)

    # Bounds how often an operation is re-offered before it expires above.
    started = [op.id for op in operations if op.status != OperationStatus.CREATED]
    if started:
        increase_operation_tries(conn, started)
        conn.commit()

    result = []
    for op in operations:
        try:
            shaped = to_device_operation(op, api_host)
        except Exception as e:
            logger.error("Failed to build device operation %s: %s", op.id, e, exc_info=True)
            continue
        if shaped is not None:
            result.append(shaped)
    return result


# ─────────────────────────── DEVICE UPDATE ───────────────────────────

def _non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_device_update(body: Any) -> OperationUpdate:
    if not isinstance(body, dict):
        raise BadRequestError("Update must be an object")
    unknown = set(body) - {"status", "additionalDetails", "progress"}
    if unknown:
        raise BadRequestError(f"Unknown fields: {', '.join(sorted(unknown))}")

    raw_status = body.get("status")
    try:
        status = OperationStatus(raw_status)
    except (TypeError, ValueError):
        status = None
    if status not in DEVICE_UPDATE_ALLOWED_FROM:
        allowed = ", ".join(s.value for s in DEVICE_UPDATE_ALLOWED_FROM)
        raise BadRequestError(f"status must be one of {allowed}")

    details = body.get("additionalDetails")
    if details is not None:
        if not isinstance(details, str):
            raise BadRequestError("additionalDetails must be a string")
        if len(details) > MAX_ADDITIONAL_DETAILS_LENGTH:
            raise BadRequestError(
                f"additionalDetails must be at most {MAX_ADDITIONAL_DETAILS_LENGTH} characters"
            )

    progress = None
    raw_progress = body.get("progress")
    if raw_progress is not None:
        if not isinstance(raw_progress, dict) or set(raw_progress) - {"position", "size"}:
            raise BadRequestError("progress must be {position, size?}")
        position = raw_progress.get("position")
        size = raw_progress.get("size")
        if not _non_negative_int(position):
            raise BadRequestError("progress.position must be a non-negative integer")
        if size is not None and not _non_negative_int(size):
            raise BadRequestError("progress.size must be a non-negative integer")
        progress = Progress(position=position, size=size)

    return OperationUpdate(status=status, additional_details=details, progress=progress)


def apply_device_update(
    conn: sqlite3.Connection,
    asset: Asset,
    operation_id: str,
    body: Any,
    publisher: EventPublisher,
    event_source: EventSource,
) -> bool:
    """Apply a device status report. Returns whether the row changed."""
    update = validate_device_update(body)
    op_id = parse_operation_id(operation_id)
    operation = get_operation(conn, op_id, tenant_id=asset.tenant_id, asset_id=asset.asset_id)
    if operation is None:
        raise NotFoundError("Operation not found")
    return transition_operation(
        conn,
        operation,
        update,
        publisher,
        event_source,
        DEVICE_UPDATE_ALLOWED_FROM[update.status],
        acknowledge=True,
    )


# ─────────────────────────── FILE UPLOAD ───────────────────────────

async def receive_upload(
    conn: sqlite3.Connection,
    file_store: LocalFileStore,
    operation_id: str,
    upload_token: Optional[str],
    chunks: AsyncIterator[bytes],
) -> int:
    if not upload_token:
        raise BadRequestError("Missing uploadToken")
    op_id = parse_operation_id(operation_id)
    operation = get_operation(conn, op_id)
    if operation is None:
        raise NotFoundError("Operation not found")
    if not operation.in_progress:
        raise BadRequestError("Cannot upload a file for a completed operation")
    if operation.name != OperationName.SEND_FILES.value or not operation.upload_token:
        raise BadRequestError("This operation does not support file upload")
    if not upload_token_matches(upload_token, operation.upload_token):
        logger.warning("Rejected upload for operation %s: bad upload token", operation.id)
        raise UnauthorizedError("Invalid upload token")

    written = await file_store.upload_stream(operation.file_key, chunks)
    logger.info("Received %d bytes for operation %s", written, operation.id)
    return written


# ─────────────────────────── MANAGEMENT ───────────────────────────

def _string_list(value: Any, field_name: str) -> List[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise BadRequestError(f"{field_name} must be a list of non-empty strings")
    return value


def validate_operation_parameters(name: Any, parameters: Any) -> Optional[Dict[str, Any]]:
    try:
        op_name = OperationName(name)
    except (TypeError, ValueError):
        raise BadRequestError(f"Unknown operation name: {name!r}")

    if parameters is not None and not isinstance(parameters, dict):
        raise BadRequestError("parameters must be an object")

    if op_name == OperationName.REBOOT:
        if parameters:
            raise BadRequestError("Reboot takes no parameters")
        return None

    if op_name == OperationName.RESTART_SERVICES:
        if parameters is None:
            return None
        if set(parameters) - {"services"}:
            raise BadRequestError("RestartServices only accepts services")
        if "services" in parameters:
            return {"services": _string_list(parameters["services"], "services")}
        return {}

    # SendFiles
    if not parameters or set(parameters) - {"paths", "knownPaths"}:
        raise BadRequestError("SendFiles requires paths or knownPaths")
    cleaned = {}
    for key in ("paths", "knownPaths"):
        if key in parameters:
            cleaned[key] = _string_list(parameters[key], key)
    if not any(cleaned.values()):
        raise BadRequestError("SendFiles requires at least one path")
    return cleaned


def create_operation(
    conn: sqlite3.Connection,
    tenant_id: str,
    asset_id: str,
    body: Any,
    publisher: EventPublisher,
    event_source: EventSource,
    *,
    max_pending: Optional[int] = None,
) -> OperationId:
    max_pending = max_pending if max_pending is not None else config.MAX_PENDING_OPERATIONS_PER_ASSET
    if not isinstance(body, dict):
        raise BadRequestError("Operation must be an object")
    unknown = set(body) - {"name", "parameters"}
    if unknown:
        raise BadRequestError(f"Unknown fields: {', '.join(sorted(unknown))}")

    if get_asset(conn, tenant_id, asset_id) is None:
        raise NotFoundError("Asset not found")

    name = body.get("name")
    parameters = validate_operation_parameters(name, body.get("parameters"))

    # Soft limit: two concurrent creations can both pass this check.
    pending = count_in_progress_operations(conn, tenant_id, asset_id)
    if pending >= max_pending:
        raise BadRequestError(f"Asset already has {pending} pending operations, the maximum is {max_pending}")

    upload_token = generate_upload_token() if name == OperationName.SEND_FILES.value else None
    op_id = insert_operation(conn, tenant_id, asset_id, name, parameters, upload_token)
    conn.commit()
    logger.info("Created %s operation %s for asset %s/%s", name, op_id, tenant_id, asset_id)

    data: Dict[str, Any] = {"id": op_id.hex, "name": name}
    if parameters is not None:
        data["parameters"] = parameters
    publish_event(publisher, build_event(tenant_id, EventType.OPERATION_CREATE, event_source, asset_id, data=data))
    return op_id


def cancel_operation(
    conn: sqlite3.Connection,
    tenant_id: str,
    asset_id: str,
    operation_id: str,
    body: Any,
    publisher: EventPublisher,
    event_source: EventSource,
) -> None:
    if not isinstance(body, dict) or set(body) != {"status"} or body["status"] != OperationStatus.CANCELLED.value:
        raise BadRequestError('Only {"status": "Cancelled"} is supported')
    op_id = parse_operation_id(operation_id)
    operation = get_operation(conn, op_id, tenant_id=tenant_id, asset_id=asset_id)
    if operation is None:
        raise NotFoundError("Operation not found")

    update = OperationUpdate(status=OperationStatus.CANCELLED)
    changed = update_operation(conn, tenant_id, asset_id, op_id, update, [OperationStatus.CREATED])
    conn.commit()
    if not changed:
        raise BadRequestError("Operation can only be cancelled before it is sent to the device")

    logger.info("Cancelled operation %s for asset %s/%s", op_id, tenant_id, asset_id)
    publish_event(publisher, build_event(
        tenant_id,
        EventType.OPERATION_UPDATE,
        event_source,
        asset_id,
        data={"id": op_id.hex, "request": update.to_dict()},
    ))


def get_download_link(
    conn: sqlite3.Connection,
    file_store: LocalFileStore,
    tenant_id: str,
    asset_id: str,
    operation_id: str,
    ttl_seconds: Optional[int] = None,
) -> Dict[str, str]:
    op_id = parse_operation_id(operation_id)
    operation = get_operation(conn, op_id, tenant_id=tenant_id, asset_id=asset_id)
    if operation is None:
        raise NotFoundError("Operation not found")
    if operation.name != OperationName.SEND_FILES.value:
        raise BadRequestError("Only SendFiles operations have files")
    if operation.status != OperationStatus.SUCCESS:
        raise BadRequestError("Files are only available once the operation has succeeded")

    url, expires_at = file_store.get_download_link(operation.file_key, ttl_seconds)
    return {"url": url, "expiresAt": expires_at}
