"""Generic webhook pipeline: verify, normalize, apply policy, start the prebuild.

The request-time part records the delivery, authenticates it and
normalizes the payload, then answers the provider. Everything that needs
provider API round trips (context, config, the prebuild itself, pull
request decorations) runs as a supervised background task.

Every delivery a provider adapter accepts leaves a WebhookEvent row:

    received -> dismissed_unauthorized
    received -> processed (prebuild_status: ignored_unconfigured,
                           prebuild_triggered, prebuild_trigger_failed)
"""

import json
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db import queries
from prewarm.db.models import User
from prewarm.db.session import get_db_session
from prewarm.errors import WebhookAuthError, WebhookPayloadError
from prewarm.logging_config import get_logger
from prewarm.services.config_provider import WorkspaceConfig
from prewarm.services.github_app_service import GitHubAppClient
from prewarm.services.prebuild_manager import PrebuildManager, StartPrebuildResult
from prewarm.services.prebuild_policy import should_do, should_prebuild, should_run_prebuild
from prewarm.services.project_owner import find_project_and_owner
from prewarm.services.status_maintainer import PrebuildStatusMaintainer
from prewarm.services.task_supervisor import TaskSupervisor
from prewarm.webhooks.adapters import InboundWebhook, WebhookAdapter
from prewarm.webhooks.events import RepositoryEvent

logger = get_logger(__name__)


@dataclass
class WebhookResponse:
    status_code: int
    message: str


def open_in_button(host_url: str, context_url: str) -> str:
    return (
        f'<a href="{host_url}/#{context_url}">'
        f'<img src="{host_url}/button/open-in-prewarm.svg"/></a>'
    )


class WebhookPipeline:
    def __init__(
        self,
        manager: PrebuildManager,
        status_maintainer: PrebuildStatusMaintainer,
        supervisor: TaskSupervisor,
        app_client: GitHubAppClient | None,
        host_url: str,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = get_db_session,
    ) -> None:
        self.manager = manager
        self.status_maintainer = status_maintainer
        self.supervisor = supervisor
        self.app_client = app_client
        self.host_url = host_url.rstrip("/")
        self.session_factory = session_factory

    async def handle(self, adapter: WebhookAdapter, request: InboundWebhook) -> WebhookResponse:
        event_type = adapter.event_type(request)
        if event_type is None:
            logger.debug("Ignoring webhook delivery", provider=adapter.provider)
            return WebhookResponse(200, "Unhandled event.")

        async with self.session_factory() as db:
            event = await queries.create_webhook_event(
                db, adapter.provider, event_type, json.dumps(adapter.trim(request.payload))
            )
            event_id = event.id

            try:
                user = await adapter.authenticate(db, request)
            except WebhookAuthError as e:
                logger.warning(
                    "Webhook authentication failed",
                    provider=adapter.provider,
                    webhook_event_id=str(event_id),
                    reason=str(e),
                )
                await queries.update_webhook_event(
                    db, event_id, status="dismissed_unauthorized", message=str(e)
                )
                return WebhookResponse(adapter.unauthorized_status, "Unauthorized.")

            try:
                repository_event = adapter.normalize(request)
            except WebhookPayloadError as e:
                logger.error(
                    "Malformed webhook payload",
                    provider=adapter.provider,
                    webhook_event_id=str(event_id),
                    error=str(e),
                )
                await queries.update_webhook_event(
                    db,
                    event_id,
                    status="processed",
                    prebuild_status="prebuild_trigger_failed",
                    authorized_user_id=user.id,
                    message=str(e),
                )
                return WebhookResponse(200, "Malformed payload.")

            if repository_event is None:
                logger.info(
                    "Not a branch update, ignoring",
                    provider=adapter.provider,
                    webhook_event_id=str(event_id),
                )
                await queries.update_webhook_event(
                    db,
                    event_id,
                    status="processed",
                    prebuild_status="ignored_unconfigured",
                    authorized_user_id=user.id,
                )
                return WebhookResponse(200, "Not a branch update.")

            user_id = user.id

        # The event row is committed by now, so the task can update it
        self.supervisor.spawn(
            f"webhook-{adapter.provider}",
            self.process(adapter, event_id, user_id, repository_event),
            provider=adapter.provider,
            webhook_event_id=str(event_id),
            clone_url=repository_event.clone_url,
            commit=repository_event.commit_sha,
        )
        return WebhookResponse(200, "Webhook received.")

    async def process(
        self,
        adapter: WebhookAdapter,
        event_id: uuid.UUID,
        user_id: uuid.UUID,
        repository_event: RepositoryEvent,
    ) -> StartPrebuildResult | None:
        """Background half of the pipeline. Failures mark the event and re-raise."""
        try:
            async with self.session_factory() as db:
                return await self._process(db, adapter, event_id, user_id, repository_event)
        except Exception as e:
            async with self.session_factory() as db:
                await queries.update_webhook_event(
                    db,
                    event_id,
                    status="processed",
                    prebuild_status="prebuild_trigger_failed",
                    message=str(e)[:1000],
                )
            raise

    async def _process(
        self,
        db: AsyncSession,
        adapter: WebhookAdapter,
        event_id: uuid.UUID,
        user_id: uuid.UUID,
        repository_event: RepositoryEvent,
    ) -> StartPrebuildResult | None:
        installer = await queries.find_user_by_id(db, user_id)
        if installer is None:
            raise WebhookAuthError(f"User {user_id} disappeared")

        project, user = await find_project_and_owner(
            db,
            repository_event.clone_url,
            installer,
            adapter.auth_provider_id_for(repository_event.clone_url),
        )
        if project is not None:
            await queries.touch_project_webhook(db, project)

        parser = self.manager.context_parser_for(repository_event.context_url)
        context = await parser.parse(db, user, repository_event.context_url)
        await queries.update_webhook_event(
            db,
            event_id,
            authorized_user_id=user.id,
            project_id=project.id if project else None,
            clone_url=repository_event.clone_url,
            branch=repository_event.branch,
            commit=repository_event.commit_sha,
        )

        config = await self.manager.config_provider.fetch_config(db, user, parser, context)
        is_default_branch = repository_event.is_default_branch
        if is_default_branch is None:
            is_default_branch = bool(context.is_default_branch)

        if not should_prebuild(config) or not should_run_prebuild(
            config,
            is_default_branch,
            repository_event.is_pull_request,
            repository_event.is_fork,
            adapter.policy_section,
        ):
            logger.info(
                "Prebuilds not configured for this event",
                clone_url=repository_event.clone_url,
                branch=repository_event.branch,
                kind=repository_event.kind,
                config_origin=config.origin,
            )
            await queries.update_webhook_event(
                db, event_id, status="processed", prebuild_status="ignored_unconfigured"
            )
            return None

        result = await self.manager.start_prebuild(
            db,
            user=user,
            context_url=repository_event.context_url,
            clone_url=repository_event.clone_url,
            commit=repository_event.commit_sha,
            branch=repository_event.branch,
            project=project,
            context=context,
            config=config,
        )
        await queries.update_webhook_event(
            db,
            event_id,
            status="processed",
            prebuild_status="prebuild_triggered",
            prebuild_id=result.prebuild_id,
            message="Prebuild already exists" if result.done else None,
        )

        if adapter.decorates_pull_requests and not result.done:
            if repository_event.is_pull_request:
                await self.decorate_pull_request(db, repository_event, config, result, user)
            else:
                await self.add_check(
                    db,
                    repository_event,
                    config,
                    result,
                    f"{self.host_url}/#{repository_event.context_url}",
                )
        return result

    async def add_check(
        self,
        db: AsyncSession,
        event: RepositoryEvent,
        config: WorkspaceConfig,
        result: StartPrebuildResult,
        details_url: str,
    ) -> None:
        """Commit status on the event's head commit, when the policy asks for one."""
        if self.app_client is None or not event.installation_id:
            return
        if not should_do(config, "addCheck"):
            return
        pws = await queries.find_prebuild_by_id(db, result.prebuild_id)
        if pws is None:
            return
        try:
            await self.status_maintainer.register_check_run(
                db,
                event.installation_id,
                pws,
                owner=event.owner,
                repo=event.repo,
                head_sha=event.commit_sha,
                details_url=details_url,
                config=config,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Could not register check run",
                prebuild_id=str(result.prebuild_id),
                context_url=event.context_url,
                error=str(e),
            )

    async def decorate_pull_request(
        self,
        db: AsyncSession,
        event: RepositoryEvent,
        config: WorkspaceConfig,
        result: StartPrebuildResult,
        user: User,
    ) -> None:
        """Check, badge and comment on the pull request as the policy asks.

        Decorations are best effort; a provider failure is logged and the
        remaining decorations still run.
        """
        if self.app_client is None or not event.installation_id:
            return
        log = logger.bind(
            pull_request=event.pull_request_url,
            prebuild_id=str(result.prebuild_id),
            user_id=str(user.id),
        )

        await self.add_check(
            db, event, config, result, f"{self.host_url}/#{event.pull_request_url}"
        )

        button = open_in_button(self.host_url, event.pull_request_url)

        if should_do(config, "addBadge"):
            body = event.pull_request_body
            if body and button not in body:
                try:
                    await self.app_client.update_pull_request_body(
                        event.installation_id,
                        event.owner,
                        event.repo,
                        event.pull_request_number,
                        f"{body}\n\n{button}\n\n",
                    )
                    log.info("Badge added to pull request")
                except httpx.HTTPError as e:
                    log.error("Could not add badge to pull request", error=str(e))

        if should_do(config, "addComment"):
            try:
                comments = await self.app_client.list_issue_comments(
                    event.installation_id, event.owner, event.repo, event.pull_request_number
                )
                if any(button in (c.get("body") or "") for c in comments):
                    return
                await self.app_client.create_issue_comment(
                    event.installation_id,
                    event.owner,
                    event.repo,
                    event.pull_request_number,
                    button,
                )
                log.info("Comment added to pull request")
            except httpx.HTTPError as e:
                log.error("Could not comment on pull request", error=str(e))
