"""Service graph, built once in the application lifespan.

Collaborators are passed explicitly; nothing here is looked up from
module globals after startup.
"""

from dataclasses import dataclass

import redis.asyncio as aioredis

from prewarm.config import Settings
from prewarm.logging_config import get_logger
from prewarm.redis.bus import WorkspaceBus
from prewarm.services.config_provider import ConfigProvider
from prewarm.services.github_app_service import GitHubAppClient
from prewarm.services.host_registry import HostRegistry
from prewarm.services.prebuild_manager import PrebuildManager
from prewarm.services.status_maintainer import PrebuildStatusMaintainer
from prewarm.services.task_supervisor import TaskSupervisor
from prewarm.services.workspace_service import WorkspaceFactory, WorkspaceStarter
from prewarm.webhooks.adapters import (
    BitbucketAdapter,
    BitbucketServerAdapter,
    GitHubAppAdapter,
    GitHubEnterpriseAdapter,
    GitLabAdapter,
    WebhookAdapter,
)
from prewarm.webhooks.pipeline import WebhookPipeline

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    hosts: HostRegistry
    bus: WorkspaceBus
    manager: PrebuildManager
    status_maintainer: PrebuildStatusMaintainer
    supervisor: TaskSupervisor
    pipeline: WebhookPipeline
    adapters: dict[str, WebhookAdapter]
    app_client: GitHubAppClient | None = None


def build_services(settings: Settings, redis: aioredis.Redis) -> Services:
    hosts = HostRegistry.from_settings(
        settings.providers, settings.github_app, redis, settings.host_url, settings.token_lock
    )
    bus = WorkspaceBus(redis, settings.workspace_queue)
    app_client = GitHubAppClient(settings.github_app) if settings.github_app.enabled else None

    manager = PrebuildManager(
        hosts=hosts,
        config_provider=ConfigProvider(),
        workspace_factory=WorkspaceFactory(),
        workspace_starter=WorkspaceStarter(bus),
        redis=redis,
        incremental_prebuilds=settings.incremental_prebuilds,
        start_lock=settings.start_lock,
    )
    status_maintainer = PrebuildStatusMaintainer(app_client, settings.status_maintainer)
    supervisor = TaskSupervisor()
    pipeline = WebhookPipeline(
        manager, status_maintainer, supervisor, app_client, settings.host_url
    )

    adapters: dict[str, WebhookAdapter] = {
        adapter.provider: adapter
        for adapter in (
            GitHubAppAdapter(hosts),
            GitHubEnterpriseAdapter(hosts),
            GitLabAdapter(hosts),
            BitbucketAdapter(hosts),
            BitbucketServerAdapter(hosts),
        )
    }
    logger.info(
        "Services built",
        hosts=hosts.hosts(),
        github_app=settings.github_app.enabled,
    )
    return Services(
        settings=settings,
        hosts=hosts,
        bus=bus,
        manager=manager,
        status_maintainer=status_maintainer,
        supervisor=supervisor,
        pipeline=pipeline,
        adapters=adapters,
        app_client=app_client,
    )
