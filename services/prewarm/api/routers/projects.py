"""Project webhook audit trail.

Endpoints:
    GET /api/v1/projects/{project_id}/webhook-events?limit=
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.api.dependencies import get_current_user
from prewarm.db import queries
from prewarm.db.models import User, WebhookEvent
from prewarm.db.session import get_db
from prewarm.services.project_owner import find_project_owners

router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


def _event_to_dict(event: WebhookEvent) -> dict:
    return {
        "id": str(event.id),
        "provider": event.provider,
        "type": event.type,
        "status": event.status,
        "prebuild_status": event.prebuild_status,
        "prebuild_id": str(event.prebuild_id) if event.prebuild_id else None,
        "clone_url": event.clone_url,
        "branch": event.branch,
        "commit": event.commit,
        "message": event.message,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


@router.get("/{project_id}/webhook-events")
async def list_webhook_events(
    project_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await queries.find_project_by_id(db, project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    owners = await find_project_owners(db, project)
    if all(owner.id != user.id for owner in owners):
        # Don't reveal projects the user can't see
        raise HTTPException(status_code=404, detail="Project not found")

    events = await queries.list_webhook_events(db, project.id, limit=limit)
    return {"data": [_event_to_dict(e) for e in events]}
