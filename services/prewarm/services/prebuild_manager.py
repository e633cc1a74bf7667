"""Prebuild orchestration.

A (clone URL, commit) pair moves from "no prebuild" to "queued" at most
once. Starts for the same pair are serialized by a Redis mutex, and the
unique constraint on prebuilt_workspaces catches anything that slips past
it (an expired lease, a second process with a different Redis). Whoever
loses the race gets the winner's prebuild back as done.

After the claim the workspace subsystem takes over; the outcome is
observed later by the status maintainer.
"""

import uuid
from dataclasses import dataclass

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.config import IncrementalPrebuildsConfig, LockConfig
from prewarm.db import queries
from prewarm.db.models import PrebuiltWorkspace, Project, User
from prewarm.errors import (
    BlockedUserError,
    PrewarmError,
    UnknownWorkspaceError,
    UnsupportedProviderError,
    WorkspaceRunningError,
)
from prewarm.logging_config import get_logger
from prewarm.redis.lock import redis_mutex
from prewarm.services.config_provider import ConfigProvider, WorkspaceConfig
from prewarm.services.host_registry import HostRegistry
from prewarm.services.project_owner import can_access_prebuild
from prewarm.services.repohost import trim_clone_url
from prewarm.services.vcs_provider import CommitContext, CommitInfo, ContextParser
from prewarm.services.workspace_service import WorkspaceFactory, WorkspaceStarter

logger = get_logger(__name__)

# Prebuild workspaces never back up their full content
PREBUILD_EXCLUDED_FEATURE_FLAGS = ["full_workspace_backup"]

OUTDATED_PREBUILD_ERROR = "A newer commit was pushed to the same branch."


@dataclass
class StartPrebuildResult:
    prebuild_id: uuid.UUID
    wsid: uuid.UUID
    done: bool
    did_finish: bool | None = None


def _existing_result(prebuild: PrebuiltWorkspace) -> StartPrebuildResult:
    return StartPrebuildResult(
        prebuild_id=prebuild.id,
        wsid=prebuild.build_workspace_id,
        done=True,
        did_finish=prebuild.state == "available",
    )


class PrebuildManager:
    def __init__(
        self,
        hosts: HostRegistry,
        config_provider: ConfigProvider,
        workspace_factory: WorkspaceFactory,
        workspace_starter: WorkspaceStarter,
        redis: aioredis.Redis,
        incremental_prebuilds: IncrementalPrebuildsConfig,
        start_lock: LockConfig,
    ) -> None:
        self.hosts = hosts
        self.config_provider = config_provider
        self.workspace_factory = workspace_factory
        self.workspace_starter = workspace_starter
        self.redis = redis
        self.incremental_prebuilds = incremental_prebuilds
        self.start_lock = start_lock

    def context_parser_for(self, context_url: str) -> ContextParser:
        parser = self.hosts.context_parser_for(context_url)
        if parser is None:
            raise UnsupportedProviderError(context_url)
        return parser

    async def fetch_config(
        self, db: AsyncSession, user: User, context: CommitContext
    ) -> WorkspaceConfig:
        parser = self.context_parser_for(context.normalized_context_url)
        return await self.config_provider.fetch_config(db, user, parser, context)

    async def fetch_commit_info(
        self, db: AsyncSession, user: User, context: CommitContext
    ) -> CommitInfo:
        """Commit author and message, falling back to "unknown" when the provider can't tell."""
        parser = self.context_parser_for(context.normalized_context_url)
        try:
            info = await parser.fetch_commit_info(db, user, context)
        except httpx.HTTPError as e:
            logger.warning(
                "Cannot fetch commit info",
                clone_url=context.repository.clone_url,
                commit=context.revision,
                error=str(e),
            )
            info = None
        return info or CommitInfo(sha=context.revision)

    def should_prebuild_incrementally(self, clone_url: str, project: Project | None) -> bool:
        if project is not None and (project.settings or {}).get("use_incremental_prebuilds"):
            return True
        wanted = trim_clone_url(clone_url)
        return any(trim_clone_url(url) == wanted for url in self.incremental_prebuilds.repository_passlist)

    async def start_prebuild(
        self,
        db: AsyncSession,
        *,
        user: User,
        context_url: str,
        clone_url: str,
        commit: str,
        branch: str | None = None,
        project: Project | None = None,
        context: CommitContext | None = None,
        config: WorkspaceConfig | None = None,
        commit_info: CommitInfo | None = None,
        trigger: str = "webhook",
    ) -> StartPrebuildResult:
        """Ensure a prebuild exists for (clone_url, commit).

        Returns done=True with the existing prebuild when one is already
        there, whatever its state. Otherwise creates and starts a new one
        and returns done=False; completion is not awaited.

        context and config may be passed when the caller already resolved
        them for the same commit.
        """
        if user.blocked:
            raise BlockedUserError(f"Blocked users cannot start prebuilds ({user.name})")

        lock_key = f"prebuild-start:{trim_clone_url(clone_url)}:{commit}"
        async with redis_mutex(self.redis, lock_key, self.start_lock):
            existing = await queries.find_prebuilt_workspace_by_commit(db, clone_url, commit)
            if existing is not None:
                logger.info(
                    "Prebuild already exists",
                    clone_url=clone_url,
                    commit=commit,
                    prebuild_id=str(existing.id),
                    state=existing.state,
                )
                return _existing_result(existing)

            parser = self.context_parser_for(context_url)
            if context is None:
                context = await parser.parse(db, user, context_url)

            # The caller's commit is authoritative; the branch may have moved on since
            context.revision = commit
            context.ref = None
            context.force_create_new_workspace = True
            context.repository.clone_url = clone_url
            if not context.normalized_context_url:
                context.normalized_context_url = context_url

            if config is None:
                config = await self.config_provider.fetch_config(db, user, parser, context)
            if commit_info is None:
                commit_info = await self.fetch_commit_info(db, user, context)

            if self.should_prebuild_incrementally(clone_url, project):
                context.commit_history = await parser.fetch_commit_history(
                    db, user, context, self.incremental_prebuilds.commit_history
                )

            if (
                project is not None
                and branch
                and not (project.settings or {}).get("keep_outdated_prebuilds_running")
            ):
                await self.abort_prebuilds_for_branch(db, project, branch)

            try:
                async with db.begin_nested():
                    workspace, prebuild = await self.workspace_factory.create_for_prebuild(
                        db, user, context, config, project, commit_info, trigger, branch
                    )
            except IntegrityError:
                existing = await queries.find_prebuilt_workspace_by_commit(db, clone_url, commit)
                if existing is None:
                    raise
                logger.info(
                    "Prebuild claimed concurrently",
                    clone_url=clone_url,
                    commit=commit,
                    prebuild_id=str(existing.id),
                )
                return _existing_result(existing)

            # The start request must not reach the workspace subsystem before the records do
            await db.commit()

        await self.workspace_starter.start_workspace(
            db, user, workspace, exclude_feature_flags=PREBUILD_EXCLUDED_FEATURE_FLAGS
        )
        logger.info(
            "Prebuild started",
            clone_url=clone_url,
            commit=commit,
            branch=branch,
            prebuild_id=str(prebuild.id),
            workspace_id=str(workspace.id),
            user_id=str(user.id),
            incremental=bool(context.commit_history),
        )
        return StartPrebuildResult(prebuild_id=prebuild.id, wsid=workspace.id, done=False)

    async def start_manual_prebuild(
        self, db: AsyncSession, user: User, context_url: str
    ) -> StartPrebuildResult:
        """Prebuild the current head of whatever context_url points at."""
        parser = self.context_parser_for(context_url)
        context = await parser.parse(db, user, context_url)
        clone_url = context.repository.clone_url
        project = await queries.find_project_by_clone_url(db, clone_url)
        return await self.start_prebuild(
            db,
            user=user,
            context_url=context_url,
            clone_url=clone_url,
            commit=context.revision,
            branch=context.ref,
            project=project,
            context=context,
            trigger="manual",
        )

    async def retrigger_prebuild(
        self, db: AsyncSession, user: User, workspace_id: uuid.UUID
    ) -> StartPrebuildResult:
        """Start the prebuild's workspace again.

        The prebuild row is left alone; its state follows the new instance
        through the workspace subsystem.
        """
        workspace = await queries.find_workspace_by_id(db, workspace_id)
        if workspace is None:
            logger.error("Unknown workspace id", workspace_id=str(workspace_id))
            raise UnknownWorkspaceError(str(workspace_id))
        if not await can_access_prebuild(db, user, workspace.owner_id, workspace.project_id):
            logger.warning(
                "Retrigger refused, user does not own the workspace",
                workspace_id=str(workspace_id),
                user_id=str(user.id),
            )
            raise UnknownWorkspaceError(str(workspace_id))

        running = await queries.find_running_instance(db, workspace_id)
        if running is not None:
            raise WorkspaceRunningError("Workspace is still running", running)

        prebuild = await queries.find_prebuild_by_workspace_id(db, workspace_id)
        if prebuild is None:
            raise PrewarmError(f"No prebuild found for workspace {workspace_id}")

        await self.workspace_starter.start_workspace(db, user, workspace)
        logger.info(
            "Prebuild retriggered",
            prebuild_id=str(prebuild.id),
            workspace_id=str(workspace_id),
            user_id=str(user.id),
        )
        return StartPrebuildResult(prebuild_id=prebuild.id, wsid=workspace.id, done=False)

    async def has_automated_prebuilds(self, db: AsyncSession, clone_url: str) -> bool:
        pairs = await queries.find_prebuilds_with_workspace(db, clone_url)
        return any(not ws.context_url.startswith("prebuild") for _pws, ws in pairs)

    async def abort_prebuilds_for_branch(
        self, db: AsyncSession, project: Project, branch: str
    ) -> None:
        """Abort queued and building prebuilds of the branch and stop their workspaces."""
        for prebuild in await queries.find_running_prebuilds_for_branch(db, project.id, branch):
            logger.info(
                "Cancelling prebuild because a newer commit was pushed to the same branch",
                prebuild_id=str(prebuild.id),
                workspace_id=str(prebuild.build_workspace_id),
                project_id=str(project.id),
                branch=branch,
            )
            prebuild.state = "aborted"
            prebuild.error = OUTDATED_PREBUILD_ERROR
            try:
                await self.workspace_starter.stop_workspace(
                    db,
                    prebuild.build_workspace_id,
                    reason="prebuild cancelled because a newer commit was pushed to the same branch",
                )
            except RedisError as e:
                logger.error("Cannot cancel prebuild", prebuild_id=str(prebuild.id), exc_info=e)
        await db.flush()
