"""Decide which user a repository event acts as.

A repository registered as a project is built on behalf of the project's
owner: the user of a personal project, or for a team project the webhook
installer when they belong to the team and otherwise the first member with
an identity on the repository's host. Unregistered repositories are built
as the installer.
"""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db import queries
from prewarm.db.models import Project, User
from prewarm.logging_config import get_logger

logger = get_logger(__name__)


async def find_project_owners(db: AsyncSession, project: Project) -> list[User]:
    """Users who may act for the project, in team-membership order."""
    if project.user_id is not None:
        user = await queries.find_user_by_id(db, project.user_id)
        return [user] if user else []
    if project.team_id is None:
        return []

    owners: list[User] = []
    for membership in await queries.find_members_by_team(db, project.team_id):
        user = await queries.find_user_by_id(db, membership.user_id)
        if user is not None:
            owners.append(user)
    return owners


async def can_access_prebuild(
    db: AsyncSession, user: User, owner_id: uuid.UUID | None, project_id: uuid.UUID | None
) -> bool:
    """Whether user owns the build workspace or is one of its project's owners."""
    if owner_id is not None and owner_id == user.id:
        return True
    if project_id is None:
        return False
    project = await queries.find_project_by_id(db, project_id)
    if project is None:
        return False
    return any(owner.id == user.id for owner in await find_project_owners(db, project))


async def select_user_for_prebuild(
    db: AsyncSession, project: Project, installer: User | None, auth_provider_id: str | None
) -> User | None:
    if project.user_id is not None:
        return await queries.find_user_by_id(db, project.user_id)

    owners = await find_project_owners(db, project)
    if installer is not None and any(o.id == installer.id for o in owners):
        return installer
    if auth_provider_id:
        for owner in owners:
            if await queries.find_identity(db, owner.id, auth_provider_id) is not None:
                return owner
    return None


async def find_project_and_owner(
    db: AsyncSession, clone_url: str, installer: User, auth_provider_id: str | None = None
) -> tuple[Project | None, User]:
    project = await queries.find_project_by_clone_url(db, clone_url)
    if project is None:
        return None, installer

    user = await select_user_for_prebuild(db, project, installer, auth_provider_id)
    if user is None:
        logger.info(
            "No project member can act for the prebuild, using the webhook installer",
            project_id=str(project.id),
            clone_url=clone_url,
        )
        return project, installer
    return project, user
