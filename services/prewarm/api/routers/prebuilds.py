"""Prebuild endpoints for the dashboard.

Endpoints:
    POST /api/v1/prebuilds                                   (prebuild a context URL now)
    POST /api/v1/prebuilds/workspaces/{workspace_id}/retrigger
    GET  /api/v1/prebuilds/automated?clone_url=              (has webhook-triggered prebuilds)
    GET  /api/v1/prebuilds/{prebuild_id}
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.api.dependencies import get_current_user, get_services
from prewarm.db import queries
from prewarm.db.models import PrebuiltWorkspace, User
from prewarm.db.session import get_db
from prewarm.errors import (
    BlockedUserError,
    LockNotAcquiredError,
    MissingTokenError,
    PrewarmError,
    ProviderAPIError,
    UnknownWorkspaceError,
    UnsupportedProviderError,
    WorkspaceRunningError,
)
from prewarm.logging_config import get_logger
from prewarm.services.container import Services
from prewarm.services.prebuild_manager import StartPrebuildResult
from prewarm.services.project_owner import can_access_prebuild

router = APIRouter(prefix="/api/v1/prebuilds", tags=["prebuilds"])
logger = get_logger(__name__)


class ManualPrebuildRequest(BaseModel):
    context_url: str


def _result_to_dict(result: StartPrebuildResult) -> dict:
    return {
        "prebuild_id": str(result.prebuild_id),
        "workspace_id": str(result.wsid),
        "done": result.done,
        "did_finish": result.did_finish,
    }


def _prebuild_to_dict(pws: PrebuiltWorkspace) -> dict:
    return {
        "id": str(pws.id),
        "clone_url": pws.clone_url,
        "commit": pws.commit,
        "branch": pws.branch,
        "state": pws.state,
        "error": pws.error,
        "trigger": pws.trigger,
        "build_workspace_id": str(pws.build_workspace_id),
        "project_id": str(pws.project_id) if pws.project_id else None,
        "commit_info": pws.commit_info,
        "created_at": pws.created_at.isoformat() if pws.created_at else None,
    }


def _http_error(e: PrewarmError) -> HTTPException:
    """Map service errors to HTTP responses."""
    match e:
        case WorkspaceRunningError() | LockNotAcquiredError():
            return HTTPException(status_code=409, detail=str(e))
        case UnknownWorkspaceError():
            return HTTPException(status_code=404, detail=str(e))
        case BlockedUserError() | MissingTokenError():
            return HTTPException(status_code=403, detail=str(e))
        case UnsupportedProviderError():
            return HTTPException(status_code=422, detail=str(e))
        case ProviderAPIError() if e.is_not_found:
            return HTTPException(status_code=404, detail=str(e))
        case ProviderAPIError():
            return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=404, detail=str(e))


@router.post("")
async def start_manual_prebuild(
    body: ManualPrebuildRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    try:
        result = await services.manager.start_manual_prebuild(db, user, body.context_url)
    except PrewarmError as e:
        raise _http_error(e) from e
    return _result_to_dict(result)


@router.post("/workspaces/{workspace_id}/retrigger")
async def retrigger_prebuild(
    workspace_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    try:
        result = await services.manager.retrigger_prebuild(db, user, workspace_id)
    except PrewarmError as e:
        raise _http_error(e) from e
    return _result_to_dict(result)


@router.get("/automated")
async def has_automated_prebuilds(
    clone_url: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    return {
        "clone_url": clone_url,
        "has_automated_prebuilds": await services.manager.has_automated_prebuilds(db, clone_url),
    }


@router.get("/{prebuild_id}")
async def get_prebuild(
    prebuild_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    pws = await queries.find_prebuild_by_id(db, prebuild_id)
    if pws is None:
        raise HTTPException(status_code=404, detail="Prebuild not found")
    workspace = await queries.find_workspace_by_id(db, pws.build_workspace_id)
    owner_id = workspace.owner_id if workspace is not None else None
    if not await can_access_prebuild(db, user, owner_id, pws.project_id):
        # Don't reveal prebuilds the user can't see
        raise HTTPException(status_code=404, detail="Prebuild not found")
    return _prebuild_to_dict(pws)
