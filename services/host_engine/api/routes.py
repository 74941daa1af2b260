"""
Where: services/host_engine/api/routes.py
What: HTTP endpoints for registering, uploading, starting and inspecting function apps.
Why: Keep main.py focused on app assembly.
"""

import logging
from typing import List

from fastapi import APIRouter, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from services.common.models.function_app import (
    FunctionAppNameRequest,
    FunctionAppStatusResult,
    FunctionAppSummary,
)

from ..core.exceptions import InvalidArchiveEncodingError
from ..services.archive_stager import decode_archive
from .deps import AppIdDep, OrchestratorDep

logger = logging.getLogger("host_engine.api")

GREETING = "Hello from fxnhost!"

router = APIRouter()


@router.get("/hello", response_class=PlainTextResponse)
async def hello():
    """Liveness greeting used by clients to test a server."""
    return GREETING


@router.post("/function-apps", response_class=PlainTextResponse)
async def register_function_app(body: FunctionAppNameRequest, orchestrator: OrchestratorDep):
    """Register a function app. Responds with the new id."""
    app_id = await run_in_threadpool(orchestrator.register, body.name)
    return str(app_id)


@router.get("/function-apps", response_model=List[FunctionAppSummary])
async def list_function_apps(orchestrator: OrchestratorDep):
    return await run_in_threadpool(orchestrator.list_apps)


@router.get("/function-apps/{name}/id", response_class=PlainTextResponse)
async def get_function_app_id(name: str, orchestrator: OrchestratorDep):
    app_id = await run_in_threadpool(orchestrator.get_id, name)
    return str(app_id)


@router.post("/function-apps/{id}/code")
async def upload_function_app_code(
    app_id: AppIdDep, request: Request, orchestrator: OrchestratorDep
):
    """
    Upload code as a base64 encoded zip archive holding one folder.

    Blocks until the image is built.
    """
    raw = await request.body()
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError as e:
        raise InvalidArchiveEncodingError(e) from e
    archive_bytes = decode_archive(text)

    await run_in_threadpool(orchestrator.upload_code, app_id, archive_bytes)
    return Response(status_code=200)


@router.get("/function-apps/{id}/status", response_model=FunctionAppStatusResult)
async def get_function_app_status(app_id: AppIdDep, orchestrator: OrchestratorDep):
    return await run_in_threadpool(orchestrator.status, app_id)


@router.post("/function-apps/{id}/start", response_class=PlainTextResponse)
async def start_function_app(app_id: AppIdDep, orchestrator: OrchestratorDep):
    result = await run_in_threadpool(orchestrator.start, app_id)
    return result.message
