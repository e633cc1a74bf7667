"""Automated prebuild installation for repositories.

Endpoints:
    GET  /api/v1/repositories/automated-prebuilds?clone_url=  (may the user install?)
    POST /api/v1/repositories/automated-prebuilds             (install the webhook)
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.api.dependencies import get_current_user, get_services
from prewarm.db.models import User
from prewarm.db.session import get_db
from prewarm.logging_config import get_logger
from prewarm.services.container import Services
from prewarm.services.vcs_provider import RepositoryIntegration

router = APIRouter(prefix="/api/v1/repositories", tags=["repositories"])
logger = get_logger(__name__)


class InstallRequest(BaseModel):
    clone_url: str


def _integration_for(services: Services, clone_url: str) -> RepositoryIntegration:
    host = services.hosts.for_url(clone_url)
    if host is None:
        raise HTTPException(status_code=422, detail=f"No Git host configured for {clone_url}")
    return host.integration


@router.get("/automated-prebuilds")
async def can_install_automated_prebuilds(
    clone_url: str = Query(..., min_length=1),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    integration = _integration_for(services, clone_url)
    allowed = await integration.can_install_automated_prebuilds(db, user, clone_url)
    return {"clone_url": clone_url, "can_install": allowed}


@router.post("/automated-prebuilds")
async def install_automated_prebuilds(
    body: InstallRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    """Install the prebuild webhook.

    A missing provider permission is answered with 403 and the OAuth scopes
    a reconnect should request; other provider failures with 502.
    """
    integration = _integration_for(services, body.clone_url)
    result = await integration.install_automated_prebuilds(db, user, body.clone_url)
    if result.permission_denied:
        raise HTTPException(
            status_code=403,
            detail={"message": result.message, "required_scopes": result.required_scopes},
        )
    if not result.success:
        raise HTTPException(status_code=502, detail=result.message)
    return asdict(result)
