"""
sqlite3 data access for assets and operations.

Every transition out of an in-progress status is a single
``UPDATE ... WHERE status IN (...)`` whose affected-row count tells the
caller whether it won the race; nothing here takes row locks.
"""

import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from oob import config
from oob.identifiers import OperationId
from oob.models import (
    ALL_TABLES,
    INDEXES,
    Asset,
    IN_PROGRESS_STATUSES,
    Operation,
    OperationQuery,
    OperationStatus,
    OperationUpdate,
    Progress,
)

logger = logging.getLogger("oob.database")

MAX_LIST_SIZE = 1000
DEFAULT_LIST_SIZE = 100


def get_db_path() -> str:
    return os.getenv("DB_PATH", config.DB_PATH)


def db() -> sqlite3.Connection:
    conn = sqlite3.connect(get_db_path(), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def with_connection(func, *args, **kwargs):
    """Call ``func(conn, *args)`` on a fresh connection and close it afterwards."""
    conn = db()
    try:
        return func(conn, *args, **kwargs)
    finally:
        conn.close()


def init_db() -> None:
    path = get_db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    conn = db()
    cur = conn.cursor()
    cur.execute("PRAGMA journal_mode = WAL")
    for table_sql in ALL_TABLES:
        cur.execute(table_sql)
    for index_sql in INDEXES:
        try:
            cur.execute(index_sql)
        except sqlite3.OperationalError as e:
            logger.warning(f"Index creation warning: {e}")
    conn.commit()
    conn.close()
    logger.info("Database initialized at %s", path)


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=False)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        logger.warning("Stored JSON could not be decoded: %r", value[:200])
        return default


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _status_values(statuses: Sequence[OperationStatus]) -> List[str]:
    return [OperationStatus(s).value for s in statuses]


# ─────────────────────────── ROW MAPPING ───────────────────────────

def row_to_asset(row: sqlite3.Row) -> Asset:
    return Asset(
        tenant_id=row["tenant_id"],
        asset_id=row["asset_id"],
        secret_hash=row["secret_hash"],
        last_active=row["last_active"],
        boot_id=row["boot_id"],
    )


def row_to_operation(row: sqlite3.Row) -> Operation:
    progress_raw = _json_loads(row["progress"], None)
    progress = None
    if isinstance(progress_raw, dict) and "position" in progress_raw:
        progress = Progress(position=progress_raw["position"], size=progress_raw.get("size"))
    return Operation(
        tenant_id=row["tenant_id"],
        asset_id=row["asset_id"],
        id=OperationId.from_bytes(row["id"]),
        name=row["name"],
        status=OperationStatus(row["status"]),
        tries=row["tries"] or 0,
        additional_details=row["additional_details"],
        parameters=_json_loads(row["parameters"], None),
        progress=progress,
        upload_token=row["upload_token"],
    )


# ─────────────────────────── ASSETS ───────────────────────────

def upsert_asset(conn: sqlite3.Connection, tenant_id: str, asset_id: str, secret_hash: str) -> None:
    conn.execute(
        """
        INSERT INTO oob_assets (tenant_id, asset_id, last_active, secret_hash)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(tenant_id, asset_id) DO UPDATE SET
            last_active = excluded.last_active,
            secret_hash = excluded.secret_hash
        """,
        (tenant_id, asset_id, now_iso(), secret_hash),
    )


def get_asset(conn: sqlite3.Connection, tenant_id: str, asset_id: str) -> Optional[Asset]:
    row = conn.execute(
        "SELECT * FROM oob_assets WHERE tenant_id = ? AND asset_id = ?",
        (tenant_id, asset_id),
    ).fetchone()
    return row_to_asset(row) if row else None


def find_assets_by_asset_id(conn: sqlite3.Connection, asset_id: str) -> List[Asset]:
    rows = conn.execute(
        "SELECT * FROM oob_assets WHERE asset_id = ? ORDER BY tenant_id",
        (asset_id,),
    ).fetchall()
    return [row_to_asset(r) for r in rows]


def list_assets(
    conn: sqlite3.Connection,
    tenant_id: str,
    *,
    asset_id: Optional[str] = None,
    boot_id: Optional[str] = None,
    last_active_after: Optional[str] = None,
    last_active_before: Optional[str] = None,
    size: Optional[int] = None,
) -> List[Asset]:
    clauses = ["tenant_id = ?"]
    values: List[Any] = [tenant_id]
    if asset_id is not None:
        clauses.append("asset_id = ?")
        values.append(asset_id)
    if boot_id is not None:
        clauses.append("boot_id = ?")
        values.append(boot_id)
    if last_active_after is not None:
        clauses.append("last_active >= ?")
        values.append(last_active_after)
    if last_active_before is not None:
        clauses.append("last_active < ?")
        values.append(last_active_before)
    values.append(_clamp_size(size))
    rows = conn.execute(
        f"SELECT * FROM oob_assets WHERE {' AND '.join(clauses)} ORDER BY asset_id LIMIT ?",
        values,
    ).fetchall()
    return [row_to_asset(r) for r in rows]


def update_asset_boot_id(conn: sqlite3.Connection, tenant_id: str, asset_id: str, boot_id: str) -> None:
    conn.execute(
        "UPDATE oob_assets SET boot_id = ? WHERE tenant_id = ? AND asset_id = ?",
        (boot_id, tenant_id, asset_id),
    )


def update_asset_activity(conn: sqlite3.Connection, tenant_id: str, asset_id: str) -> None:
    conn.execute(
        "UPDATE oob_assets SET last_active = ? WHERE tenant_id = ? AND asset_id = ?",
        (now_iso(), tenant_id, asset_id),
    )


def update_asset_secret_hash(conn: sqlite3.Connection, tenant_id: str, asset_id: str, secret_hash: str) -> None:
    conn.execute(
        "UPDATE oob_assets SET secret_hash = ? WHERE tenant_id = ? AND asset_id = ?",
        (secret_hash, tenant_id, asset_id),
    )


def delete_asset_row(conn: sqlite3.Connection, tenant_id: str, asset_id: str) -> bool:
    # Cascades to the asset's operations.
    cur = conn.execute(
        "DELETE FROM oob_assets WHERE tenant_id = ? AND asset_id = ?",
        (tenant_id, asset_id),
    )
    return cur.rowcount > 0


# ─────────────────────────── OPERATIONS ───────────────────────────

def _clamp_size(size: Optional[int]) -> int:
    if size is None:
        return DEFAULT_LIST_SIZE
    return max(1, min(MAX_LIST_SIZE, int(size)))


def insert_operation(
    conn: sqlite3.Connection,
    tenant_id: str,
    asset_id: str,
    name: str,
    parameters: Optional[Dict[str, Any]] = None,
    upload_token: Optional[str] = None,
) -> OperationId:
    op_id = OperationId()
    conn.execute(
        """
        INSERT INTO oob_operations (id, tenant_id, asset_id, name, status, tries, parameters, upload_token)
        VALUES (?, ?, ?, ?, ?, 0, ?, ?)
        """,
        (
            op_id.binary,
            tenant_id,
            asset_id,
            name,
            OperationStatus.CREATED.value,
            _json_dumps(parameters) if parameters is not None else None,
            upload_token,
        ),
    )
    return op_id


def get_operation(
    conn: sqlite3.Connection,
    operation_id: OperationId,
    *,
    tenant_id: Optional[str] = None,
    asset_id: Optional[str] = None,
) -> Optional[Operation]:
    clauses = ["id = ?"]
    values: List[Any] = [operation_id.binary]
    if tenant_id is not None:
        clauses.append("tenant_id = ?")
        values.append(tenant_id)
    if asset_id is not None:
        clauses.append("asset_id = ?")
        values.append(asset_id)
    row = conn.execute(
        f"SELECT * FROM oob_operations WHERE {' AND '.join(clauses)}",
        values,
    ).fetchone()
    return row_to_operation(row) if row else None


def query_operations(conn: sqlite3.Connection, query: OperationQuery) -> List[Operation]:
    clauses: List[str] = []
    values: List[Any] = []
    if query.tenant_id is not None:
        clauses.append("tenant_id = ?")
        values.append(query.tenant_id)
    if query.asset_id is not None:
        clauses.append("asset_id = ?")
        values.append(query.asset_id)
    if query.ids:
        ids = [OperationId(i).binary for i in query.ids]
        clauses.append(f"id IN ({_placeholders(ids)})")
        values.extend(ids)
    if query.names:
        clauses.append(f"name IN ({_placeholders(query.names)})")
        values.extend(query.names)
    if query.statuses:
        statuses = _status_values(query.statuses)
        clauses.append(f"status IN ({_placeholders(statuses)})")
        values.extend(statuses)
    if query.tries is not None:
        clauses.append("tries = ?")
        values.append(query.tries)
    if query.after_id is not None:
        clauses.append("id > ?")
        values.append(query.after_id.binary)
    if query.before_id is not None:
        clauses.append("id < ?")
        values.append(query.before_id.binary)

    direction = "DESC" if str(query.sort_direction).upper() == "DESC" else "ASC"
    sql = "SELECT * FROM oob_operations"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += f" ORDER BY id {direction}"
    if query.size is not None:
        sql += " LIMIT ?"
        values.append(_clamp_size(query.size))

    rows = conn.execute(sql, values).fetchall()
    return [row_to_operation(r) for r in rows]


def count_in_progress_operations(conn: sqlite3.Connection, tenant_id: str, asset_id: str) -> int:
    statuses = _status_values(IN_PROGRESS_STATUSES)
    row = conn.execute(
        f"""
        SELECT COUNT(*) AS n FROM oob_operations
        WHERE tenant_id = ? AND asset_id = ? AND status IN ({_placeholders(statuses)})
        """,
        [tenant_id, asset_id, *statuses],
    ).fetchone()
    return row["n"]


def iterate_operation_pages(query: OperationQuery, page_size: int) -> Iterator[List[Operation]]:
    """Yield pages of operations in ascending id order.

    Each page is fetched on its own connection with ``id > last id of the
    previous page``, so rows mutated or deleted while a page is processed
    never make the cursor re-visit or skip anything.
    """
    after_id = query.after_id
    while True:
        page_query = OperationQuery(
            tenant_id=query.tenant_id,
            asset_id=query.asset_id,
            ids=list(query.ids),
            names=list(query.names),
            statuses=list(query.statuses),
            tries=query.tries,
            after_id=after_id,
            before_id=query.before_id,
            sort_direction="ASC",
            size=page_size,
        )
        conn = db()
        try:
            page = query_operations(conn, page_query)
        finally:
            conn.close()
        if not page:
            return
        yield page
        if len(page) < page_size:
            return
        after_id = page[-1].id


def update_operation(
    conn: sqlite3.Connection,
    tenant_id: str,
    asset_id: str,
    operation_id: OperationId,
    update: OperationUpdate,
    where_statuses: Optional[Sequence[OperationStatus]] = None,
    *,
    acknowledge: bool = False,
) -> bool:
    """Conditionally apply ``update``; True if a row changed.

    With ``acknowledge`` set, ``tries`` becomes 1 when the stored status was
    still Created, evaluated in the same statement as the status check.
    """
    # Fields left unset in the update keep their stored value.
    assignments = ["status = ?"]
    values: List[Any] = [OperationStatus(update.status).value]
    if update.additional_details is not None:
        assignments.append("additional_details = ?")
        values.append(update.additional_details)
    if update.progress is not None:
        assignments.append("progress = ?")
        values.append(_json_dumps(update.progress.to_dict()))
    if acknowledge:
        assignments.append("tries = CASE WHEN status = ? THEN 1 ELSE tries END")
        values.append(OperationStatus.CREATED.value)

    where = "tenant_id = ? AND asset_id = ? AND id = ?"
    values.extend([tenant_id, asset_id, operation_id.binary])
    if where_statuses is not None:
        statuses = _status_values(where_statuses)
        where += f" AND status IN ({_placeholders(statuses)})"
        values.extend(statuses)

    cur = conn.execute(
        f"UPDATE oob_operations SET {', '.join(assignments)} WHERE {where}",
        values,
    )
    return cur.rowcount > 0


def increase_operation_tries(
    conn: sqlite3.Connection,
    operation_ids: Sequence[OperationId],
    where_statuses: Sequence[OperationStatus] = (OperationStatus.PENDING, OperationStatus.IN_PROGRESS),
) -> int:
    if not operation_ids:
        return 0
    ids = [op_id.binary for op_id in operation_ids]
    statuses = _status_values(where_statuses)
    cur = conn.execute(
        f"""
        UPDATE oob_operations SET tries = tries + 1
        WHERE id IN ({_placeholders(ids)}) AND status IN ({_placeholders(statuses)})
        """,
        [*ids, *statuses],
    )
    return cur.rowcount


def delete_operation(conn: sqlite3.Connection, operation_id: OperationId) -> bool:
    cur = conn.execute("DELETE FROM oob_operations WHERE id = ?", (operation_id.binary,))
    return cur.rowcount > 0
