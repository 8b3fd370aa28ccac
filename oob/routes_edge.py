"""
Device-facing routes.

Devices poll ``GET /operations`` with their bearer token, report progress
with ``PATCH /operations/{id}`` and upload SendFiles payloads to the
destination handed out in the poll response.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from oob.auth import DeviceContext, device_from_bearer
from oob.database import db, with_connection
from oob.engine import apply_device_update, poll_operations, receive_upload
from oob.errors import BadRequestError

logger = logging.getLogger("oob.routes")

router = APIRouter(prefix="/v1/api/oob/edge", tags=["oob-edge"])


@router.get("/operations")
async def edge_get_operations(request: Request, device: DeviceContext = Depends(device_from_bearer)):
    operations = await run_in_threadpool(
        with_connection, poll_operations, device.asset, device.boot_id,
        request.app.state.publisher, device.event_source,
    )
    return JSONResponse(operations)


@router.patch("/operations/{operation_id}")
async def edge_update_operation(
    operation_id: str,
    request: Request,
    device: DeviceContext = Depends(device_from_bearer),
):
    try:
        payload = await request.json()
    except Exception:
        raise BadRequestError("Invalid JSON payload")

    await run_in_threadpool(
        with_connection, apply_device_update, device.asset, operation_id, payload,
        request.app.state.publisher, device.event_source,
    )
    # A lost race is still a success from the device's point of view.
    return Response(status_code=204)


@router.put("/operations/{operation_id}/upload")
async def edge_upload_operation_file(
    operation_id: str,
    request: Request,
    uploadToken: Optional[str] = None,
):
    # The upload token is the credential here, not the bearer token.
    conn = db()
    try:
        await receive_upload(
            conn,
            request.app.state.file_store,
            operation_id,
            uploadToken,
            request.stream(),
        )
    finally:
        conn.close()
    return Response(status_code=204)
