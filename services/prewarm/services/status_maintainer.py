"""Commit status propagation for GitHub App prebuilds.

When a prebuild is registered on a commit while still running, an
updatable row records the obligation to report its outcome. A finished
headless build resolves the updatables of its prebuild; a periodic sweep
force-resolves those whose completion event never arrived.

Updatables are resolved only once the provider accepted the status, or
when the provider says the repository is gone (404). Any other provider
failure leaves them for the next event or sweep.

Failed prebuilds are reported as failing checks only when the workspace
config sets addCheck to prevent-merge-on-error; otherwise the check passes.
"""

import asyncio
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.config import StatusMaintainerConfig
from prewarm.db import queries
from prewarm.db.models import PrebuiltWorkspace, PrebuiltWorkspaceUpdatable
from prewarm.db.session import get_db_session
from prewarm.logging_config import get_logger
from prewarm.redis.bus import HeadlessEvent
from prewarm.services.config_provider import WorkspaceConfig, workspace_config_from_dict
from prewarm.services.github_app_service import GitHubAppClient
from prewarm.services.prebuild_policy import commit_status_state

logger = get_logger(__name__)

DEFAULT_STATUS_DESCRIPTION = "Open a prebuilt online workspace in Prewarm"
NON_PREBUILT_STATUS_DESCRIPTION = "Open an online workspace in Prewarm"
PENDING_STATUS_DESCRIPTION = "prebuilding an online workspace for this PR"

RUNNING_STATES = ("queued", "building")


def get_conclusion_from_prebuild_state(pws: PrebuiltWorkspace) -> str:
    """Map a prebuild to one of error, failure, pending or success."""
    if pws.state in ("aborted", "failed", "timeout"):
        return "error"
    if pws.state in RUNNING_STATES:
        return "pending"
    if pws.state == "available":
        return "failure" if pws.error else "success"
    logger.warning(
        "Unexpected prebuild state, resorting to error conclusion",
        prebuild_id=str(pws.id),
        state=pws.state,
    )
    return "error"


def _description(conclusion: str) -> str:
    return DEFAULT_STATUS_DESCRIPTION if conclusion == "success" else NON_PREBUILT_STATUS_DESCRIPTION


class PrebuildStatusMaintainer:
    def __init__(
        self,
        app_client: GitHubAppClient | None,
        config: StatusMaintainerConfig,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = get_db_session,
    ) -> None:
        self.app_client = app_client
        self.config = config
        self.session_factory = session_factory

    async def register_check_run(
        self,
        db: AsyncSession,
        installation_id: str,
        pws: PrebuiltWorkspace,
        *,
        owner: str,
        repo: str,
        head_sha: str,
        details_url: str,
        config: WorkspaceConfig | None = None,
    ) -> None:
        """Show the prebuild on the head commit of a push or pull request.

        A running prebuild gets a pending status and an updatable; a prebuild
        that already finished gets its terminal status straight away.
        """
        if self.app_client is None:
            raise RuntimeError("GitHub App is not configured")

        if pws.state in RUNNING_STATES:
            await queries.attach_updatable_to_prebuild(
                db,
                pws.id,
                owner=owner,
                repo=repo,
                commit_sha=head_sha,
                context_url=details_url,
                installation_id=installation_id,
            )
            await self.app_client.create_commit_status(
                installation_id,
                owner,
                repo,
                head_sha,
                state="pending",
                target_url=details_url,
                description=PENDING_STATUS_DESCRIPTION,
                context=self.config.status_context,
            )
            logger.info(
                "Check registered",
                prebuild_id=str(pws.id),
                repo=f"{owner}/{repo}",
                commit=head_sha,
            )
            return

        conclusion = get_conclusion_from_prebuild_state(pws)
        await self.app_client.create_commit_status(
            installation_id,
            owner,
            repo,
            head_sha,
            state=commit_status_state(config, conclusion),
            target_url=details_url,
            description=_description(conclusion),
            context=self.config.status_context,
        )
        logger.info(
            "Prebuild already finished, status set",
            prebuild_id=str(pws.id),
            repo=f"{owner}/{repo}",
            conclusion=conclusion,
        )

    async def report(
        self,
        updatable: PrebuiltWorkspaceUpdatable,
        pws: PrebuiltWorkspace,
        force: bool = False,
        config: WorkspaceConfig | None = None,
    ) -> bool:
        """Push the prebuild's outcome to the provider. Returns whether the updatable is settled.

        force reports a still-running prebuild as error instead of waiting for it.
        """
        if not updatable.context_url:
            # Label updatables carry an issue instead of a details URL
            logger.debug("Skipping updatable without details URL", updatable_id=str(updatable.id))
            return False
        if self.app_client is None:
            logger.error(
                "GitHub App is not configured, check left dangling",
                updatable_id=str(updatable.id),
            )
            return False

        conclusion = get_conclusion_from_prebuild_state(pws)
        if conclusion == "pending":
            if not force:
                logger.info("Prebuild is still running", prebuild_id=str(pws.id))
                return False
            conclusion = "error"

        try:
            await self.app_client.create_commit_status(
                updatable.installation_id,
                updatable.owner,
                updatable.repo,
                updatable.commit_sha or pws.commit,
                state=commit_status_state(config, conclusion),
                target_url=updatable.context_url,
                description=_description(conclusion),
                context=self.config.status_context,
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.info(
                    "Repository no longer accessible, resolving updatable",
                    updatable_id=str(updatable.id),
                    repo=f"{updatable.owner}/{updatable.repo}",
                )
                return True
            logger.warning(
                "Could not create commit status",
                updatable_id=str(updatable.id),
                status_code=e.response.status_code,
                error=str(e),
            )
            return False
        except httpx.HTTPError as e:
            logger.warning(
                "Could not create commit status",
                updatable_id=str(updatable.id),
                error=str(e),
            )
            return False

        logger.info(
            "Resolved updatable",
            updatable_id=str(updatable.id),
            details_url=updatable.context_url,
            conclusion=conclusion,
        )
        return True

    async def handle_prebuild_finished(self, event: HeadlessEvent) -> None:
        try:
            workspace_id = uuid.UUID(event.workspace_id)
        except ValueError:
            logger.warning("Headless event with invalid workspace id", workspace_id=event.workspace_id)
            return

        async with self.session_factory() as db:
            prebuild = await queries.find_prebuild_by_workspace_id(db, workspace_id)
            if prebuild is None:
                logger.warning(
                    "Headless event without associated prebuild", workspace_id=event.workspace_id
                )
                return

            updatables = await queries.find_updatables_for_prebuild(db, prebuild.id)
            if not updatables:
                return
            config = await self._workspace_config(db, prebuild)
            settled = await asyncio.gather(
                *(self.report(u, prebuild, config=config) for u in updatables)
            )
            for updatable, done in zip(updatables, settled, strict=True):
                if done:
                    await queries.mark_updatable_resolved(db, updatable.id)

    async def _workspace_config(
        self, db: AsyncSession, pws: PrebuiltWorkspace
    ) -> WorkspaceConfig | None:
        workspace = await queries.find_workspace_by_id(db, pws.build_workspace_id)
        if workspace is None or not workspace.config:
            return None
        return workspace_config_from_dict(workspace.config)

    async def sweep(self) -> int:
        """Force-resolve updatables past the maximum age. Returns how many were resolved."""
        resolved = 0
        async with self.session_factory() as db:
            rows = await queries.get_unresolved_updatables(
                db,
                older_than=timedelta(hours=self.config.max_updatable_age_hours),
                newer_than=timedelta(hours=self.config.ignored_updatable_age_hours),
                limit=self.config.max_updatables,
            )
            for updatable, pws in rows:
                logger.info(
                    "Resolving stale updatable",
                    updatable_id=str(updatable.id),
                    prebuild_id=str(pws.id),
                    state=pws.state,
                )
                try:
                    config = await self._workspace_config(db, pws)
                    if await self.report(updatable, pws, force=True, config=config):
                        await queries.mark_updatable_resolved(db, updatable.id)
                        resolved += 1
                except Exception as e:
                    logger.error(
                        "Failed to process prebuild updatable",
                        updatable_id=str(updatable.id),
                        exc_info=e,
                    )
        return resolved

    async def run_sweeper(self) -> None:
        """Sweep loop, runs as an async background task."""
        interval = self.config.sweep_interval_seconds
        logger.info("Status maintainer sweep started", interval_seconds=interval)

        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Status maintainer sweep failed", error=str(e), exc_info=e)

            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Status maintainer sweep stopping")
                return
