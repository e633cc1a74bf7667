"""Read/write operations against the workspace, prebuild and account tables.

Plain async functions over an AsyncSession. Callers own the transaction;
writes flush but never commit.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db.models import (
    AppInstallation,
    Identity,
    PrebuiltWorkspace,
    PrebuiltWorkspaceUpdatable,
    Project,
    TeamMembership,
    Token,
    User,
    WebhookEvent,
    Workspace,
    WorkspaceInstance,
    utc_now,
)

RUNNING_PHASES = ("preparing", "building", "running", "stopping")


# --- Users, identities, tokens ---


async def find_user_by_id(db: AsyncSession, user_id: uuid.UUID | str) -> User | None:
    if isinstance(user_id, str):
        try:
            user_id = uuid.UUID(user_id)
        except ValueError:
            return None
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def find_user_by_identity(
    db: AsyncSession, auth_provider_id: str, auth_id: str
) -> User | None:
    result = await db.execute(
        select(User)
        .join(Identity, Identity.user_id == User.id)
        .where(Identity.auth_provider_id == auth_provider_id, Identity.auth_id == auth_id)
    )
    return result.scalars().first()


async def find_identity(
    db: AsyncSession, user_id: uuid.UUID, auth_provider_id: str
) -> Identity | None:
    result = await db.execute(
        select(Identity).where(
            Identity.user_id == user_id, Identity.auth_provider_id == auth_provider_id
        )
    )
    return result.scalar_one_or_none()


async def find_tokens_for_identity(db: AsyncSession, identity: Identity) -> list[Token]:
    """Tokens of an identity that have not expired."""
    now = utc_now()
    result = await db.execute(
        select(Token)
        .where(Token.identity_id == identity.id)
        .where((Token.expiry_date.is_(None)) | (Token.expiry_date > now))
        .order_by(Token.created_at)
    )
    return list(result.scalars().all())


async def add_token(
    db: AsyncSession,
    identity: Identity,
    value_encrypted: str,
    scopes: list[str],
    expiry_date: datetime | None = None,
) -> Token:
    token = Token(
        identity_id=identity.id,
        value_encrypted=value_encrypted,
        scopes=scopes,
        expiry_date=expiry_date,
    )
    db.add(token)
    await db.flush()
    return token


async def delete_tokens(db: AsyncSession, token_ids: list[uuid.UUID]) -> None:
    if not token_ids:
        return
    await db.execute(delete(Token).where(Token.id.in_(token_ids)))


# --- Projects, teams, installations ---


async def find_project_by_clone_url(db: AsyncSession, clone_url: str) -> Project | None:
    result = await db.execute(
        select(Project).where(Project.clone_url == clone_url).order_by(Project.created_at)
    )
    return result.scalars().first()


async def find_project_by_id(db: AsyncSession, project_id: uuid.UUID) -> Project | None:
    result = await db.execute(select(Project).where(Project.id == project_id))
    return result.scalar_one_or_none()


async def find_members_by_team(db: AsyncSession, team_id: uuid.UUID) -> list[TeamMembership]:
    result = await db.execute(
        select(TeamMembership)
        .where(TeamMembership.team_id == team_id)
        .order_by(TeamMembership.created_at)
    )
    return list(result.scalars().all())


async def touch_project_webhook(db: AsyncSession, project: Project) -> None:
    await db.execute(
        update(Project).where(Project.id == project.id).values(last_webhook_received=utc_now())
    )


async def find_installation(
    db: AsyncSession, platform: str, installation_id: str
) -> AppInstallation | None:
    result = await db.execute(
        select(AppInstallation).where(
            AppInstallation.platform == platform,
            AppInstallation.installation_id == installation_id,
            AppInstallation.state == "installed",
        )
    )
    return result.scalar_one_or_none()


# --- Workspaces and prebuilds ---


async def find_workspace_by_id(db: AsyncSession, workspace_id: uuid.UUID) -> Workspace | None:
    result = await db.execute(select(Workspace).where(Workspace.id == workspace_id))
    return result.scalar_one_or_none()


async def find_running_instance(
    db: AsyncSession, workspace_id: uuid.UUID
) -> WorkspaceInstance | None:
    result = await db.execute(
        select(WorkspaceInstance)
        .where(
            WorkspaceInstance.workspace_id == workspace_id,
            WorkspaceInstance.phase.in_(RUNNING_PHASES),
        )
        .order_by(WorkspaceInstance.created_at.desc())
    )
    return result.scalars().first()


async def find_prebuilt_workspace_by_commit(
    db: AsyncSession, clone_url: str, commit: str
) -> PrebuiltWorkspace | None:
    result = await db.execute(
        select(PrebuiltWorkspace).where(
            PrebuiltWorkspace.clone_url == clone_url, PrebuiltWorkspace.commit == commit
        )
    )
    return result.scalar_one_or_none()


async def find_prebuild_by_id(db: AsyncSession, prebuild_id: uuid.UUID) -> PrebuiltWorkspace | None:
    result = await db.execute(select(PrebuiltWorkspace).where(PrebuiltWorkspace.id == prebuild_id))
    return result.scalar_one_or_none()


async def find_prebuild_by_workspace_id(
    db: AsyncSession, workspace_id: uuid.UUID
) -> PrebuiltWorkspace | None:
    result = await db.execute(
        select(PrebuiltWorkspace).where(PrebuiltWorkspace.build_workspace_id == workspace_id)
    )
    return result.scalar_one_or_none()


async def find_prebuilds_with_workspace(
    db: AsyncSession, clone_url: str
) -> list[tuple[PrebuiltWorkspace, Workspace]]:
    result = await db.execute(
        select(PrebuiltWorkspace, Workspace)
        .join(Workspace, Workspace.id == PrebuiltWorkspace.build_workspace_id)
        .where(PrebuiltWorkspace.clone_url == clone_url)
        .order_by(PrebuiltWorkspace.created_at.desc())
    )
    return [(row[0], row[1]) for row in result.all()]


async def find_running_prebuilds_for_branch(
    db: AsyncSession, project_id: uuid.UUID, branch: str
) -> list[PrebuiltWorkspace]:
    result = await db.execute(
        select(PrebuiltWorkspace).where(
            PrebuiltWorkspace.project_id == project_id,
            PrebuiltWorkspace.branch == branch,
            PrebuiltWorkspace.state.in_(("queued", "building")),
        )
    )
    return list(result.scalars().all())


# --- Updatables ---


async def attach_updatable_to_prebuild(
    db: AsyncSession, prebuild_id: uuid.UUID, **fields: Any
) -> PrebuiltWorkspaceUpdatable:
    updatable = PrebuiltWorkspaceUpdatable(prebuilt_workspace_id=prebuild_id, **fields)
    db.add(updatable)
    await db.flush()
    return updatable


async def find_updatables_for_prebuild(
    db: AsyncSession, prebuild_id: uuid.UUID
) -> list[PrebuiltWorkspaceUpdatable]:
    result = await db.execute(
        select(PrebuiltWorkspaceUpdatable).where(
            PrebuiltWorkspaceUpdatable.prebuilt_workspace_id == prebuild_id,
            PrebuiltWorkspaceUpdatable.is_resolved.is_(False),
        )
    )
    return list(result.scalars().all())


async def mark_updatable_resolved(db: AsyncSession, updatable_id: uuid.UUID) -> None:
    await db.execute(
        update(PrebuiltWorkspaceUpdatable)
        .where(PrebuiltWorkspaceUpdatable.id == updatable_id)
        .values(is_resolved=True, resolved_at=utc_now())
    )


async def get_unresolved_updatables(
    db: AsyncSession,
    older_than: timedelta,
    newer_than: timedelta | None = None,
    limit: int = 100,
) -> list[tuple[PrebuiltWorkspaceUpdatable, PrebuiltWorkspace]]:
    """Unresolved updatables created before now - older_than, with their prebuild.

    When newer_than is given, entries created before now - newer_than are skipped.
    """
    now = utc_now()
    query = (
        select(PrebuiltWorkspaceUpdatable, PrebuiltWorkspace)
        .join(
            PrebuiltWorkspace,
            PrebuiltWorkspace.id == PrebuiltWorkspaceUpdatable.prebuilt_workspace_id,
        )
        .where(
            PrebuiltWorkspaceUpdatable.is_resolved.is_(False),
            PrebuiltWorkspaceUpdatable.created_at < now - older_than,
        )
        .order_by(PrebuiltWorkspaceUpdatable.created_at)
        .limit(limit)
    )
    if newer_than is not None:
        query = query.where(PrebuiltWorkspaceUpdatable.created_at > now - newer_than)
    result = await db.execute(query)
    return [(row[0], row[1]) for row in result.all()]


# --- Webhook events ---


async def create_webhook_event(
    db: AsyncSession, provider: str, event_type: str, raw_event: str
) -> WebhookEvent:
    event = WebhookEvent(provider=provider, type=event_type, status="received", raw_event=raw_event)
    db.add(event)
    await db.flush()
    return event


async def update_webhook_event(db: AsyncSession, event_id: uuid.UUID, **fields: Any) -> None:
    await db.execute(update(WebhookEvent).where(WebhookEvent.id == event_id).values(**fields))


async def list_webhook_events(
    db: AsyncSession, project_id: uuid.UUID, limit: int = 50
) -> list[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.project_id == project_id)
        .order_by(WebhookEvent.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# --- GitHub App installations ---


async def find_projects_by_clone_url(db: AsyncSession, clone_url: str) -> list[Project]:
    result = await db.execute(select(Project).where(Project.clone_url == clone_url))
    return list(result.scalars().all())


async def record_installation(
    db: AsyncSession,
    platform: str,
    installation_id: str,
    owner_user_id: uuid.UUID | None,
    platform_user_id: str,
) -> AppInstallation:
    """Record a new installation, reviving the row of an earlier uninstall of the same id."""
    result = await db.execute(
        select(AppInstallation).where(
            AppInstallation.platform == platform,
            AppInstallation.installation_id == installation_id,
        )
    )
    installation = result.scalar_one_or_none()
    if installation is None:
        installation = AppInstallation(platform=platform, installation_id=installation_id)
        db.add(installation)
    installation.owner_user_id = owner_user_id
    installation.platform_user_id = platform_user_id
    installation.state = "installed"
    installation.uninstalled_at = None
    await db.flush()
    return installation


async def record_uninstallation(db: AsyncSession, platform: str, installation_id: str) -> None:
    await db.execute(
        update(AppInstallation)
        .where(
            AppInstallation.platform == platform,
            AppInstallation.installation_id == installation_id,
        )
        .values(state="uninstalled", uninstalled_at=utc_now())
    )
