"""
Management routes used by the control plane.

Every route except the signed file download needs an ``X-Api-Key`` whose
role grants the route's permission, and an ``X-Tenant`` header naming the
tenant it acts on.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse, JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from oob.auth import ManagementContext, create_asset, require_management
from oob.database import db, list_assets, query_operations, with_connection
from oob.engine import cancel_operation, create_operation, get_download_link, parse_operation_id
from oob.errors import BadRequestError, NotFoundError, UnauthorizedError
from oob.events import build_event, publish_event
from oob.models import (
    PERM_DELETE,
    PERM_DOWNLOAD,
    PERM_INGEST,
    PERM_READ,
    PERM_REGISTER,
    PERM_WRITE,
    EventType,
    OperationName,
    OperationQuery,
    OperationStatus,
)
from oob.reaper import delete_asset

logger = logging.getLogger("oob.routes")

router = APIRouter(prefix="/v1/api/oob", tags=["oob-management"])


def _split_multi(values: Optional[List[str]]) -> List[str]:
    """Accept both ``?status=a&status=b`` and ``?status=a,b``."""
    result: List[str] = []
    for value in values or []:
        result.extend(v.strip() for v in value.split(",") if v.strip())
    return result


async def _json_payload(request: Request) -> Any:
    try:
        return await request.json()
    except Exception:
        raise BadRequestError("Invalid JSON payload")


def _register_asset(ctx: ManagementContext, asset_id: str, token_cache, publisher) -> str:
    conn = db()
    try:
        token = create_asset(conn, ctx.tenant_id, asset_id, token_cache)
        conn.commit()
    finally:
        conn.close()
    publish_event(publisher, build_event(ctx.tenant_id, EventType.TOKEN_GENERATE, ctx.event_source, asset_id))
    return token


# ─────────────────────────── ASSETS ───────────────────────────

@router.put("/assets/{asset_id}")
async def register_asset(
    asset_id: str,
    request: Request,
    ctx: ManagementContext = Depends(require_management(PERM_REGISTER)),
):
    asset_id = asset_id.strip()
    if not asset_id:
        raise BadRequestError("assetId not valid in route")

    token = await run_in_threadpool(
        _register_asset, ctx, asset_id, request.app.state.token_cache, request.app.state.publisher,
    )
    return JSONResponse({"token": token}, status_code=201)


@router.get("/assets")
async def get_assets(
    assetId: Optional[str] = None,
    bootId: Optional[str] = None,
    lastActiveAfter: Optional[str] = None,
    lastActiveBefore: Optional[str] = None,
    size: Optional[int] = Query(None, ge=1),
    ctx: ManagementContext = Depends(require_management(PERM_READ)),
):
    conn = db()
    try:
        assets = list_assets(
            conn,
            ctx.tenant_id,
            asset_id=assetId,
            boot_id=bootId,
            last_active_after=lastActiveAfter,
            last_active_before=lastActiveBefore,
            size=size,
        )
    finally:
        conn.close()
    return JSONResponse([a.to_public_dict() for a in assets])


@router.delete("/assets/{asset_id}")
async def remove_asset(
    asset_id: str,
    request: Request,
    ctx: ManagementContext = Depends(require_management(PERM_DELETE)),
):
    existed = await run_in_threadpool(
        delete_asset,
        ctx.tenant_id,
        asset_id,
        request.app.state.publisher,
        request.app.state.file_store,
        request.app.state.token_cache,
    )
    if not existed:
        raise NotFoundError("Asset not found")
    return Response(status_code=204)


# ─────────────────────────── OPERATIONS ───────────────────────────

@router.get("/operations")
async def get_operations(
    id: Optional[List[str]] = Query(None),
    assetId: Optional[str] = None,
    name: Optional[List[str]] = Query(None),
    status: Optional[List[str]] = Query(None),
    tries: Optional[int] = Query(None, ge=0),
    after: Optional[str] = None,
    sortDirection: str = "ASC",
    size: Optional[int] = Query(None, ge=1),
    ctx: ManagementContext = Depends(require_management(PERM_READ)),
):
    direction = sortDirection.strip().upper()
    if direction not in ("ASC", "DESC"):
        raise BadRequestError("sortDirection must be ASC or DESC")

    names = _split_multi(name)
    for n in names:
        try:
            OperationName(n)
        except ValueError:
            raise BadRequestError(f"Unknown operation name: {n}")

    statuses = []
    for s in _split_multi(status):
        try:
            statuses.append(OperationStatus(s))
        except ValueError:
            raise BadRequestError(f"Unknown operation status: {s}")

    query = OperationQuery(
        tenant_id=ctx.tenant_id,
        asset_id=assetId,
        ids=[parse_operation_id(i).hex for i in _split_multi(id)],
        names=names,
        statuses=statuses,
        tries=tries,
        sort_direction=direction,
        size=size if size is not None else 100,
    )
    if after:
        cursor = parse_operation_id(after)
        if direction == "DESC":
            query.before_id = cursor
        else:
            query.after_id = cursor

    conn = db()
    try:
        operations = query_operations(conn, query)
    finally:
        conn.close()
    return JSONResponse([op.to_dict() for op in operations])


@router.post("/assets/{asset_id}/operations")
async def add_operation(
    asset_id: str,
    request: Request,
    ctx: ManagementContext = Depends(require_management(PERM_WRITE)),
):
    payload = await _json_payload(request)
    op_id = await run_in_threadpool(
        with_connection, create_operation, ctx.tenant_id, asset_id, payload,
        request.app.state.publisher, ctx.event_source,
    )
    return JSONResponse({"id": op_id.hex}, status_code=201)


@router.patch("/assets/{asset_id}/operations/{operation_id}")
async def patch_operation(
    asset_id: str,
    operation_id: str,
    request: Request,
    ctx: ManagementContext = Depends(require_management(PERM_WRITE)),
):
    payload = await _json_payload(request)
    await run_in_threadpool(
        with_connection, cancel_operation, ctx.tenant_id, asset_id, operation_id, payload,
        request.app.state.publisher, ctx.event_source,
    )
    return Response(status_code=204)


@router.get("/assets/{asset_id}/operations/{operation_id}/link")
async def operation_file_link(
    asset_id: str,
    operation_id: str,
    request: Request,
    ctx: ManagementContext = Depends(require_management(PERM_DOWNLOAD)),
):
    conn = db()
    try:
        link = get_download_link(conn, request.app.state.file_store, ctx.tenant_id, asset_id, operation_id)
    finally:
        conn.close()
    return JSONResponse(link)


@router.get("/files/{key:path}")
async def download_file(key: str, request: Request, expires: int = 0, signature: str = ""):
    file_store = request.app.state.file_store
    if not signature or not file_store.verify_link(key, expires, signature):
        raise UnauthorizedError("Invalid or expired link")
    try:
        path = file_store.path_for(key)
    except ValueError:
        raise NotFoundError("File not found")
    if not path.is_file():
        raise NotFoundError("File not found")
    return FileResponse(str(path), media_type="application/octet-stream", filename=os.path.basename(key))


# ─────────────────────────── EVENTS ───────────────────────────

@router.post("/events")
async def ingest_event(
    request: Request,
    ctx: ManagementContext = Depends(require_management(PERM_INGEST)),
):
    event = await _json_payload(request)
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise BadRequestError("Event must be an object with a type")

    tenant_id = event.get("tenantId", ctx.tenant_id)
    if tenant_id != ctx.tenant_id:
        raise BadRequestError("Event tenantId does not match X-Tenant")

    if event["type"] == EventType.ASSET_DELETE.value:
        asset_id = event.get("targetId")
        if not isinstance(asset_id, str) or not asset_id:
            raise BadRequestError("AssetDelete event requires targetId")
        await run_in_threadpool(
            delete_asset,
            ctx.tenant_id,
            asset_id,
            request.app.state.publisher,
            request.app.state.file_store,
            request.app.state.token_cache,
        )
    else:
        logger.debug("Ignoring event type %s", event["type"])
    return Response(status_code=202)


# ─────────────────────────── LOGS ───────────────────────────

@router.get("/logs")
async def recent_logs(
    request: Request,
    limit: int = Query(200, ge=1, le=1000),
    level: Optional[str] = None,
    ctx: ManagementContext = Depends(require_management(PERM_READ)),
):
    entries: List[Dict[str, Any]] = list(request.app.state.log_buffer)
    if level:
        entries = [e for e in entries if e["level"] == level.upper()]
    return JSONResponse({"logs": entries[-limit:], "total": len(entries)})
