"""Automated prebuild installation, one integration per provider type.

Installing means: check that the user may manage the repository's
webhooks, remove webhooks a previous installation left behind (anything
pointing at our own callback URL), mint a fresh prebuild token scoped to
the clone URL, and register a push webhook that carries the token back.

Both operations return instead of raising on provider failures.
install_automated_prebuilds reports the outcome as an InstallResult.
"""

from abc import ABC, abstractmethod
from urllib.parse import quote as url_quote
from urllib.parse import urlparse

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.auth.scm_tokens import get_token_for_host
from prewarm.auth.tokens import PREBUILD_TOKEN_SCOPE, create_prebuild_token
from prewarm.config import LockConfig, ProviderConfig
from prewarm.db.models import User
from prewarm.errors import LockNotAcquiredError, MissingTokenError
from prewarm.logging_config import get_logger
from prewarm.redis.lock import redis_mutex
from prewarm.services.bitbucket_server_service import ADMIN_PERMISSIONS, BitbucketServerClient
from prewarm.services.bitbucket_service import BitbucketClient
from prewarm.services.github_service import GitHubClient
from prewarm.services.gitlab_service import MAINTAINER_ACCESS_LEVEL, GitLabClient
from prewarm.services.repohost import parse_repo_url
from prewarm.services.vcs_provider import InstallResult

logger = get_logger(__name__)


class WebhookIntegration(ABC):
    """Install flow shared by all providers. Subclasses supply the provider calls."""

    callback_path = ""
    required_scopes: list[str] = []

    def __init__(
        self,
        provider: ProviderConfig,
        redis: aioredis.Redis,
        host_url: str,
        token_lock: LockConfig,
    ) -> None:
        self.provider = provider
        self.redis = redis
        self.host_url = host_url.rstrip("/")
        self.token_lock = token_lock

    @property
    def callback_url(self) -> str:
        return f"{self.host_url}{self.callback_path}"

    def _repo_coordinates(self, clone_url: str) -> tuple[str, str, str] | None:
        """(repo_kind, owner, repo) of a clone URL on this host."""
        parsed = parse_repo_url(clone_url)
        if parsed is None:
            return None
        _host, owner, repo = parsed
        return "projects", owner, repo

    @abstractmethod
    async def _has_admin_permission(
        self, token: str, repo_kind: str, owner: str, repo: str
    ) -> bool:
        """Whether the token may manage the repository's webhooks."""

    @abstractmethod
    async def _delete_stale_hooks(self, token: str, repo_kind: str, owner: str, repo: str) -> int:
        """Remove hooks pointing at our callback URL. Returns how many were removed."""

    @abstractmethod
    async def _create_hook(
        self, token: str, repo_kind: str, owner: str, repo: str, secret: str
    ) -> str:
        """Register the push webhook. Returns the provider's hook id."""

    def _is_own_hook(self, url: str | None) -> bool:
        return bool(url) and url.startswith(self.callback_url)

    async def _mint_secret(self, db: AsyncSession, user: User, clone_url: str) -> str:
        """Replace the user's prebuild token for this repository. Returns "{userId}|{token}"."""
        lock_key = f"token-refresh-{self.provider.host}-{user.id}"
        async with redis_mutex(self.redis, lock_key, self.token_lock):
            value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE, clone_url])
        return f"{user.id}|{value}"

    async def can_install_automated_prebuilds(
        self, db: AsyncSession, user: User, clone_url: str
    ) -> bool:
        coordinates = self._repo_coordinates(clone_url)
        if coordinates is None:
            return False
        try:
            token = await get_token_for_host(db, user, self.provider)
            return await self._has_admin_permission(token, *coordinates)
        except MissingTokenError:
            return False
        except httpx.HTTPError as e:
            logger.warning(
                "Permission check failed",
                host=self.provider.host,
                clone_url=clone_url,
                user_id=str(user.id),
                error=str(e),
            )
            return False

    async def install_automated_prebuilds(
        self, db: AsyncSession, user: User, clone_url: str
    ) -> InstallResult:
        coordinates = self._repo_coordinates(clone_url)
        if coordinates is None:
            return InstallResult(success=False, clone_url=clone_url, message="Unrecognized clone URL")

        try:
            token = await get_token_for_host(db, user, self.provider)
            if not await self._has_admin_permission(token, *coordinates):
                return InstallResult(
                    success=False,
                    clone_url=clone_url,
                    message=f"Administrator access to the repository on {self.provider.host} is required",
                    permission_denied=True,
                    required_scopes=list(self.required_scopes),
                )
            removed = await self._delete_stale_hooks(token, *coordinates)
            secret = await self._mint_secret(db, user, clone_url)
            webhook_id = await self._create_hook(token, *coordinates, secret)
        except MissingTokenError as e:
            return InstallResult(
                success=False,
                clone_url=clone_url,
                message=str(e),
                permission_denied=True,
                required_scopes=list(self.required_scopes),
            )
        except (httpx.HTTPError, LockNotAcquiredError) as e:
            logger.error(
                "Webhook installation failed",
                host=self.provider.host,
                clone_url=clone_url,
                user_id=str(user.id),
                exc_info=e,
            )
            return InstallResult(
                success=False, clone_url=clone_url, message=f"Webhook installation failed: {e}"
            )

        logger.info(
            "Automated prebuilds installed",
            host=self.provider.host,
            clone_url=clone_url,
            user_id=str(user.id),
            webhook_id=webhook_id,
            removed_hooks=removed,
        )
        return InstallResult(success=True, clone_url=clone_url, webhook_id=webhook_id)


class GitHubIntegration(WebhookIntegration):
    """Repository webhooks on GitHub Enterprise (and github.com without the app).

    The hook secret is the HMAC key for X-Hub-Signature-256.
    """

    callback_path = "/apps/ghe/"
    required_scopes = ["repo", "admin:repo_hook"]

    def __init__(self, provider: ProviderConfig, client: GitHubClient, **kwargs) -> None:
        super().__init__(provider, **kwargs)
        self.client = client

    async def _has_admin_permission(
        self, token: str, repo_kind: str, owner: str, repo: str
    ) -> bool:
        return await self.client.get_viewer_permission(token, owner, repo) == "ADMIN"

    async def _delete_stale_hooks(self, token: str, repo_kind: str, owner: str, repo: str) -> int:
        removed = 0
        for hook in await self.client.list_hooks(token, owner, repo):
            if self._is_own_hook((hook.get("config") or {}).get("url")):
                await self.client.delete_hook(token, owner, repo, hook["id"])
                removed += 1
        return removed

    async def _create_hook(
        self, token: str, repo_kind: str, owner: str, repo: str, secret: str
    ) -> str:
        hook = await self.client.create_hook(
            token, owner, repo, self.callback_url, secret, events=["push"]
        )
        return str(hook["id"])


class GitLabIntegration(WebhookIntegration):
    """Project hooks; the secret is sent back verbatim in X-Gitlab-Token."""

    callback_path = "/apps/gitlab/"
    required_scopes = ["api"]

    def __init__(self, provider: ProviderConfig, client: GitLabClient, **kwargs) -> None:
        super().__init__(provider, **kwargs)
        self.client = client

    async def _has_admin_permission(
        self, token: str, repo_kind: str, owner: str, repo: str
    ) -> bool:
        return await self.client.get_access_level(token, owner, repo) >= MAINTAINER_ACCESS_LEVEL

    async def _delete_stale_hooks(self, token: str, repo_kind: str, owner: str, repo: str) -> int:
        removed = 0
        for hook in await self.client.list_hooks(token, owner, repo):
            if self._is_own_hook(hook.get("url")):
                await self.client.delete_hook(token, owner, repo, hook["id"])
                removed += 1
        return removed

    async def _create_hook(
        self, token: str, repo_kind: str, owner: str, repo: str, secret: str
    ) -> str:
        hook = await self.client.create_hook(token, owner, repo, self.callback_url, secret)
        return str(hook["id"])


class BitbucketIntegration(WebhookIntegration):
    """Repository hooks; the secret travels in the callback URL's token query parameter."""

    callback_path = "/apps/bitbucket/"
    required_scopes = ["webhook", "repository:admin"]

    def __init__(self, provider: ProviderConfig, client: BitbucketClient, **kwargs) -> None:
        super().__init__(provider, **kwargs)
        self.client = client

    async def _has_admin_permission(
        self, token: str, repo_kind: str, owner: str, repo: str
    ) -> bool:
        return await self.client.get_repository_permission(token, owner, repo) == "admin"

    async def _delete_stale_hooks(self, token: str, repo_kind: str, owner: str, repo: str) -> int:
        removed = 0
        for hook in await self.client.list_hooks(token, owner, repo):
            if self._is_own_hook(hook.get("url")):
                await self.client.delete_hook(token, owner, repo, hook["uuid"])
                removed += 1
        return removed

    async def _create_hook(
        self, token: str, repo_kind: str, owner: str, repo: str, secret: str
    ) -> str:
        url = f"{self.callback_url}?token={url_quote(secret, safe='')}"
        hook = await self.client.create_hook(token, owner, repo, url)
        return str(hook["uuid"])


class BitbucketServerIntegration(WebhookIntegration):
    """Repository webhooks on Bitbucket Server, secret in the token query parameter."""

    callback_path = "/apps/bitbucketserver/"
    required_scopes = ["REPO_ADMIN"]

    def __init__(self, provider: ProviderConfig, client: BitbucketServerClient, **kwargs) -> None:
        super().__init__(provider, **kwargs)
        self.client = client

    def _repo_coordinates(self, clone_url: str) -> tuple[str, str, str] | None:
        # https://{host}/scm/{PROJECT}/{repo}.git or https://{host}/scm/~{user}/{repo}.git
        segments = [s for s in urlparse(clone_url).path.split("/") if s]
        if len(segments) != 3 or segments[0] != "scm":
            return None
        owner, repo = segments[1], segments[2].removesuffix(".git")
        if owner.startswith("~"):
            return "users", owner[1:], repo
        return "projects", owner, repo

    async def _has_admin_permission(
        self, token: str, repo_kind: str, owner: str, repo: str
    ) -> bool:
        username = await self.client.current_username(token)
        if repo_kind == "users" and owner.lower() == username.lower():
            return True
        permission = await self.client.get_permission(token, username, repo_kind, owner, repo)
        return permission in ADMIN_PERMISSIONS

    async def _delete_stale_hooks(self, token: str, repo_kind: str, owner: str, repo: str) -> int:
        removed = 0
        for hook in await self.client.list_webhooks(token, repo_kind, owner, repo):
            if self._is_own_hook(hook.get("url")):
                await self.client.delete_webhook(token, repo_kind, owner, repo, hook["id"])
                removed += 1
        return removed

    async def _create_hook(
        self, token: str, repo_kind: str, owner: str, repo: str, secret: str
    ) -> str:
        url = f"{self.callback_url}?token={url_quote(secret, safe='')}"
        hook = await self.client.create_webhook(token, repo_kind, owner, repo, url)
        return str(hook["id"])
