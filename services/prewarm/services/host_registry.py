"""Per-host provider wiring, resolved once at startup from settings.providers.

Each configured host gets a HostContext: its REST client, its context
parser and its repository integration, selected by provider type.
"""

from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis

from prewarm.config import GitHubAppConfig, LockConfig, ProviderConfig, ProviderType
from prewarm.logging_config import get_logger
from prewarm.services import (
    bitbucket_server_service,
    github_service,
    gitlab_service,
)
from prewarm.services.bitbucket_server_service import BitbucketServerClient
from prewarm.services.bitbucket_service import DEFAULT_BITBUCKET_API_URL, BitbucketClient
from prewarm.services.context_parser import (
    BitbucketContextParser,
    BitbucketServerContextParser,
    GitHubContextParser,
    GitLabContextParser,
)
from prewarm.services.github_service import GitHubClient
from prewarm.services.gitlab_service import GitLabClient
from prewarm.services.repohost import host_of
from prewarm.services.repository_integration import (
    BitbucketIntegration,
    BitbucketServerIntegration,
    GitHubIntegration,
    GitLabIntegration,
)
from prewarm.services.vcs_provider import ContextParser, RepositoryIntegration

logger = get_logger(__name__)


@dataclass
class HostContext:
    config: ProviderConfig
    client: Any
    context_parser: ContextParser
    integration: RepositoryIntegration


def _api_url(provider: ProviderConfig) -> str:
    if provider.api_url:
        return provider.api_url
    match provider.type:
        case ProviderType.GITHUB:
            return github_service.api_url_for_host(provider.host)
        case ProviderType.GITLAB:
            return gitlab_service.api_url_for_host(provider.host)
        case ProviderType.BITBUCKET:
            return DEFAULT_BITBUCKET_API_URL
        case ProviderType.BITBUCKET_SERVER:
            return bitbucket_server_service.api_url_for_host(provider.host)
    raise ValueError(f"Unsupported provider type: {provider.type}")


def build_host_context(
    provider: ProviderConfig, redis: aioredis.Redis, host_url: str, token_lock: LockConfig
) -> HostContext:
    api_url = _api_url(provider)
    integration_kwargs = {"redis": redis, "host_url": host_url, "token_lock": token_lock}

    match provider.type:
        case ProviderType.GITHUB:
            client = GitHubClient(api_url)
            return HostContext(
                provider,
                client,
                GitHubContextParser(provider, client),
                GitHubIntegration(provider, client, **integration_kwargs),
            )
        case ProviderType.GITLAB:
            client = GitLabClient(api_url)
            return HostContext(
                provider,
                client,
                GitLabContextParser(provider, client),
                GitLabIntegration(provider, client, **integration_kwargs),
            )
        case ProviderType.BITBUCKET:
            client = BitbucketClient(api_url)
            return HostContext(
                provider,
                client,
                BitbucketContextParser(provider, client),
                BitbucketIntegration(provider, client, **integration_kwargs),
            )
        case ProviderType.BITBUCKET_SERVER:
            client = BitbucketServerClient(api_url)
            return HostContext(
                provider,
                client,
                BitbucketServerContextParser(provider, client),
                BitbucketServerIntegration(provider, client, **integration_kwargs),
            )
    raise ValueError(f"Unsupported provider type: {provider.type}")


class HostRegistry:
    def __init__(self, hosts: dict[str, HostContext] | None = None) -> None:
        self._hosts = dict(hosts or {})

    @classmethod
    def from_settings(
        cls,
        providers: list[ProviderConfig],
        github_app: GitHubAppConfig,
        redis: aioredis.Redis,
        host_url: str,
        token_lock: LockConfig,
    ) -> "HostRegistry":
        hosts: dict[str, HostContext] = {}
        for provider in providers:
            hosts[provider.host.lower()] = build_host_context(provider, redis, host_url, token_lock)

        # The app's host is served by a plain GitHub context unless configured explicitly
        if github_app.enabled and github_app.host.lower() not in hosts:
            provider = ProviderConfig(
                host=github_app.host,
                type=ProviderType.GITHUB,
                auth_provider_id=github_app.auth_provider_id,
                api_url=github_app.api_url,
            )
            hosts[provider.host.lower()] = build_host_context(provider, redis, host_url, token_lock)

        logger.info("Git hosts registered", hosts=sorted(hosts))
        return cls(hosts)

    def get(self, host: str) -> HostContext | None:
        return self._hosts.get(host.lower())

    def for_url(self, url: str) -> HostContext | None:
        return self.get(host_of(url))

    def context_parser_for(self, context_url: str) -> ContextParser | None:
        host = self.for_url(context_url)
        if host is None or not host.context_parser.can_handle(context_url):
            return None
        return host.context_parser

    def hosts(self) -> list[str]:
        return sorted(self._hosts)
