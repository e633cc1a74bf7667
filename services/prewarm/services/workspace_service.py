"""Workspace records and start/stop requests for prebuilds.

The workspace subsystem owns the actual build. This side persists the
workspace, its prebuild and each instance, and hands start and stop
requests to the subsystem over the Redis queues.
"""

import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db import queries
from prewarm.db.models import PrebuiltWorkspace, Project, User, Workspace, WorkspaceInstance
from prewarm.logging_config import get_logger
from prewarm.redis.bus import StartRequest, StopRequest, WorkspaceBus
from prewarm.services.config_provider import WorkspaceConfig
from prewarm.services.vcs_provider import CommitContext, CommitInfo

logger = get_logger(__name__)


class WorkspaceFactory:
    async def create_for_prebuild(
        self,
        db: AsyncSession,
        user: User,
        context: CommitContext,
        config: WorkspaceConfig,
        project: Project | None = None,
        commit_info: CommitInfo | None = None,
        trigger: str = "webhook",
        branch: str | None = None,
    ) -> tuple[Workspace, PrebuiltWorkspace]:
        """Persist a prebuild workspace and its queued PrebuiltWorkspace.

        The PrebuiltWorkspace insert hits the (clone_url, commit) unique
        constraint when another start for the same commit won; the
        resulting IntegrityError propagates to the caller.
        """
        workspace = Workspace(
            owner_id=user.id,
            project_id=project.id if project else None,
            type="prebuild",
            context_url=context.normalized_context_url,
            context=context.to_dict(),
            config=config.to_dict(),
        )
        db.add(workspace)
        await db.flush()

        prebuild = PrebuiltWorkspace(
            clone_url=context.repository.clone_url,
            commit=context.revision,
            branch=branch,
            project_id=project.id if project else None,
            build_workspace_id=workspace.id,
            state="queued",
            trigger=trigger,
            commit_info=commit_info.to_dict() if commit_info else None,
        )
        db.add(prebuild)
        await db.flush()

        logger.info(
            "Prebuild workspace created",
            workspace_id=str(workspace.id),
            prebuild_id=str(prebuild.id),
            clone_url=prebuild.clone_url,
            commit=prebuild.commit,
            trigger=trigger,
        )
        return workspace, prebuild


class WorkspaceStarter:
    def __init__(self, bus: WorkspaceBus) -> None:
        self.bus = bus

    async def start_workspace(
        self,
        db: AsyncSession,
        user: User,
        workspace: Workspace,
        exclude_feature_flags: list[str] | None = None,
    ) -> WorkspaceInstance:
        instance = WorkspaceInstance(
            workspace_id=workspace.id,
            phase="preparing",
            excluded_feature_flags=list(exclude_feature_flags or []),
        )
        db.add(instance)
        await db.flush()

        await self.bus.enqueue_start(
            StartRequest(
                workspace_id=str(workspace.id),
                instance_id=str(instance.id),
                owner_id=str(user.id),
                excluded_feature_flags=instance.excluded_feature_flags,
            )
        )
        logger.info(
            "Workspace start requested",
            workspace_id=str(workspace.id),
            instance_id=str(instance.id),
            user_id=str(user.id),
        )
        return instance

    async def stop_workspace(
        self, db: AsyncSession, workspace_id: uuid.UUID, reason: str = ""
    ) -> None:
        """Ask the subsystem to stop the workspace's running instance, if any."""
        instance = await queries.find_running_instance(db, workspace_id)
        if instance is None:
            return
        instance.phase = "stopping"
        await db.flush()
        await self.bus.enqueue_stop(
            StopRequest(workspace_id=str(workspace_id), instance_id=str(instance.id), reason=reason)
        )
