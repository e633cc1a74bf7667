"""Per-provider webhook adapters.

Each adapter knows one provider's delivery format: which deliveries it
handles, how the sender authenticates, and how a payload maps onto a
RepositoryEvent. Everything after that is shared by the webhook pipeline.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, unquote, urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.auth.tokens import PREBUILD_TOKEN_SCOPE
from prewarm.db import queries
from prewarm.db.models import User
from prewarm.errors import WebhookAuthError, WebhookPayloadError
from prewarm.logging_config import get_logger
from prewarm.services.host_registry import HostRegistry
from prewarm.services.project_owner import find_project_owners
from prewarm.webhooks.events import NULL_SHA, RepositoryEvent, get_branch_from_ref, known_sha
from prewarm.webhooks.verifier import verify_secret_token, verify_signature

logger = get_logger(__name__)

PULL_REQUEST_ACTIONS = ("opened", "synchronize", "reopened")


@dataclass
class InboundWebhook:
    """The parts of a webhook delivery the adapters look at."""

    headers: dict[str, str]
    query: dict[str, str]
    body: bytes
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_parts(
        cls, headers: Mapping[str, str], query: Mapping[str, str], body: bytes
    ) -> "InboundWebhook":
        try:
            payload = json.loads(body) if body else {}
        except ValueError as e:
            raise WebhookPayloadError(f"Webhook body is not JSON: {e}") from e
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Webhook body is not a JSON object")
        return cls(
            headers={k.lower(): v for k, v in headers.items()},
            query=dict(query),
            body=body,
            payload=payload,
        )

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


def _get(data: Any, *path: str | int) -> Any:
    for key in path:
        if isinstance(data, dict) and isinstance(key, str):
            data = data.get(key)
        elif isinstance(data, list) and isinstance(key, int) and -len(data) <= key < len(data):
            data = data[key]
        else:
            return None
    return data


class WebhookAdapter(ABC):
    provider: str
    # Policy section of the workspace config that applies to this provider
    policy_section: str
    # Response status when the sender cannot be authenticated
    unauthorized_status: int = 401
    decorates_pull_requests: bool = False

    def __init__(self, hosts: HostRegistry) -> None:
        self.hosts = hosts

    @abstractmethod
    def event_type(self, request: InboundWebhook) -> str | None:
        """Event name when this delivery may trigger a prebuild, None to ignore it."""

    @abstractmethod
    async def authenticate(self, db: AsyncSession, request: InboundWebhook) -> User:
        """Resolve the user the delivery is trusted for, or raise WebhookAuthError."""

    @abstractmethod
    def normalize(self, request: InboundWebhook) -> RepositoryEvent | None:
        """Map the payload to a RepositoryEvent. None when it is not a branch update."""

    def trim(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Payload as stored in the audit trail."""
        return payload

    def auth_provider_id_for(self, clone_url: str) -> str | None:
        host = self.hosts.for_url(clone_url)
        return host.config.auth_provider_id if host else None


def _push_event(
    payload: dict[str, Any], clone_url: str | None, web_url: str | None, context_url_format: str
) -> RepositoryEvent | None:
    """Shared normalization of GitHub and GitLab style push payloads."""
    branch = get_branch_from_ref(payload.get("ref"))
    if branch is None:
        return None
    commit = payload.get("after")
    if not commit or commit == NULL_SHA or payload.get("deleted"):
        return None
    if not clone_url or not web_url:
        raise WebhookPayloadError("Push payload without repository URLs")

    default_branch = _get(payload, "repository", "default_branch") or _get(
        payload, "project", "default_branch"
    )
    return RepositoryEvent(
        kind="push",
        clone_url=clone_url,
        branch=branch,
        commit_sha=commit,
        context_url=context_url_format.format(web_url=web_url, branch=branch),
        is_default_branch=branch == default_branch if default_branch else None,
        before_sha=known_sha(payload.get("before")),
    )


# --- GitHub App ---


class GitHubAppAdapter(WebhookAdapter):
    """github.com through the GitHub App.

    Deliveries are signed with the app's secret (checked by the router);
    the acting user is whoever installed the app.
    """

    provider = "github"
    policy_section = "github"
    unauthorized_status = 200
    decorates_pull_requests = True

    def event_type(self, request: InboundWebhook) -> str | None:
        event = request.header("X-GitHub-Event")
        if event == "push":
            return "push"
        if event == "pull_request" and request.payload.get("action") in PULL_REQUEST_ACTIONS:
            return f"pull_request.{request.payload['action']}"
        return None

    def trim(self, payload: dict[str, Any]) -> dict[str, Any]:
        if "head_commit" in payload:
            payload = {**payload, "head_commit": None}
        if "commits" in payload:
            payload = {**payload, "commits": []}
        return payload

    async def authenticate(self, db: AsyncSession, request: InboundWebhook) -> User:
        installation_id = _get(request.payload, "installation", "id")
        if installation_id is None:
            raise WebhookAuthError("Delivery without installation")

        installation = await queries.find_installation(db, "github", str(installation_id))
        if installation is None or installation.owner_user_id is None:
            raise WebhookAuthError(f"No owner known for installation {installation_id}")
        user = await queries.find_user_by_id(db, installation.owner_user_id)
        if user is None:
            raise WebhookAuthError(f"No owner known for installation {installation_id}")
        if user.blocked:
            raise WebhookAuthError(f"Blocked user {user.id} tried to start prebuild")
        return user

    def normalize(self, request: InboundWebhook) -> RepositoryEvent | None:
        payload = request.payload
        if request.header("X-GitHub-Event") == "pull_request":
            event = self._pull_request_event(payload)
        else:
            event = _push_event(
                payload,
                _get(payload, "repository", "clone_url"),
                _get(payload, "repository", "html_url"),
                "{web_url}/tree/{branch}",
            )
        if event is None:
            return None

        event.installation_id = str(_get(payload, "installation", "id"))
        event.owner = _get(payload, "repository", "owner", "login") or ""
        event.repo = _get(payload, "repository", "name") or ""
        return event

    def _pull_request_event(self, payload: dict[str, Any]) -> RepositoryEvent | None:
        pr = payload.get("pull_request") or {}
        clone_url = _get(payload, "repository", "clone_url")
        if _get(pr, "base", "repo", "clone_url") != clone_url:
            logger.info(
                "Ignoring pull request not targeting the delivering repository",
                pull_request=pr.get("html_url"),
            )
            return None

        head_sha = _get(pr, "head", "sha")
        if not clone_url or not head_sha or not pr.get("html_url"):
            raise WebhookPayloadError("Pull request payload without head commit or URLs")

        head_repo_id = _get(pr, "head", "repo", "id")
        return RepositoryEvent(
            kind="pull_request",
            clone_url=clone_url,
            branch=_get(pr, "head", "ref") or "",
            commit_sha=head_sha,
            context_url=pr["html_url"],
            is_default_branch=False,
            is_fork=head_repo_id is None or head_repo_id != _get(pr, "base", "repo", "id"),
            # Only synchronize deliveries carry the previous head
            before_sha=known_sha(payload.get("before")),
            pull_request_head_sha=head_sha,
            pull_request_number=pr.get("number"),
            pull_request_url=pr["html_url"],
            pull_request_body=pr.get("body"),
        )


# --- GitHub Enterprise ---


class GitHubEnterpriseAdapter(WebhookAdapter):
    provider = "github_enterprise"
    policy_section = "github"
    unauthorized_status = 401

    def event_type(self, request: InboundWebhook) -> str | None:
        return "push" if request.header("X-Github-Event") == "push" else None

    def trim(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {**payload, "head_commit": None, "commits": []}

    def host(self, request: InboundWebhook) -> str:
        host = request.header("X-Github-Enterprise-Host")
        if host:
            return host.lower()
        return (urlparse(_get(request.payload, "repository", "url") or "").hostname or "").lower()

    async def authenticate(self, db: AsyncSession, request: InboundWebhook) -> User:
        host_name = self.host(request)
        host = self.hosts.get(host_name) if host_name else None
        if host is None:
            raise WebhookAuthError(f"Unknown GitHub Enterprise host: {host_name or '(none)'}")

        candidates: list[User] = []
        sender_id = _get(request.payload, "sender", "id")
        if sender_id is not None:
            sender = await queries.find_user_by_identity(
                db, host.config.auth_provider_id, str(sender_id)
            )
            if sender is not None:
                candidates.append(sender)

        clone_url = _get(request.payload, "repository", "clone_url")
        if clone_url:
            project = await queries.find_project_by_clone_url(db, clone_url)
            if project is not None:
                for owner in await find_project_owners(db, project):
                    if all(owner.id != c.id for c in candidates):
                        candidates.append(owner)

        return await verify_signature(
            db, candidates, request.body, request.header("X-Hub-Signature-256")
        )

    def normalize(self, request: InboundWebhook) -> RepositoryEvent | None:
        payload = request.payload
        return _push_event(
            payload,
            _get(payload, "repository", "clone_url"),
            _get(payload, "repository", "html_url"),
            "{web_url}/tree/{branch}",
        )


# --- GitLab ---


class GitLabAdapter(WebhookAdapter):
    provider = "gitlab"
    policy_section = "gitlab"
    unauthorized_status = 503

    def event_type(self, request: InboundWebhook) -> str | None:
        return "push" if request.header("X-Gitlab-Event") == "Push Hook" else None

    def trim(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {**payload, "commits": []}

    async def authenticate(self, db: AsyncSession, request: InboundWebhook) -> User:
        git_http_url = _get(request.payload, "repository", "git_http_url")
        if not git_http_url:
            raise WebhookAuthError("Push payload without repository URL")
        return await verify_secret_token(
            db, request.header("X-Gitlab-Token"), [PREBUILD_TOKEN_SCOPE, git_http_url]
        )

    def normalize(self, request: InboundWebhook) -> RepositoryEvent | None:
        payload = request.payload
        git_http_url = _get(payload, "repository", "git_http_url")
        web_url = git_http_url.removesuffix(".git") if git_http_url else None
        return _push_event(payload, git_http_url, web_url, "{web_url}/-/tree/{branch}")


# --- Bitbucket Cloud ---


class BitbucketAdapter(WebhookAdapter):
    provider = "bitbucket"
    policy_section = "bitbucket"
    unauthorized_status = 503

    def event_type(self, request: InboundWebhook) -> str | None:
        return "push" if request.header("X-Event-Key") == "repo:push" else None

    def trim(self, payload: dict[str, Any]) -> dict[str, Any]:
        changes = _get(payload, "push", "changes")
        if not isinstance(changes, list):
            return payload
        trimmed = [{**c, "commits": []} if isinstance(c, dict) else c for c in changes]
        return {**payload, "push": {**payload["push"], "changes": trimmed}}

    async def authenticate(self, db: AsyncSession, request: InboundWebhook) -> User:
        return await verify_secret_token(db, request.query.get("token"))

    def normalize(self, request: InboundWebhook) -> RepositoryEvent | None:
        payload = request.payload
        change = _get(payload, "push", "changes", 0)
        if change is None:
            raise WebhookPayloadError("Push payload without changes")
        new = change.get("new")
        if new is None:
            # Branch deleted
            return None
        if new.get("type") not in (None, "branch", "named_branch"):
            return None

        branch = new.get("name")
        commit = _get(new, "target", "hash")
        repo_url = _get(payload, "repository", "links", "html", "href")
        if not branch or not commit or not repo_url:
            raise WebhookPayloadError("Push payload without branch, commit or repository URL")

        return RepositoryEvent(
            kind="push",
            clone_url=f"{repo_url}.git",
            branch=branch,
            commit_sha=commit,
            context_url=f"{repo_url}/src/{commit}/?at={quote(branch, safe='')}",
            is_default_branch=_default_branch_match(
                branch, _get(payload, "repository", "mainbranch", "name")
            ),
            before_sha=known_sha(_get(change, "old", "target", "hash")),
        )


# --- Bitbucket Server ---


class BitbucketServerAdapter(WebhookAdapter):
    provider = "bitbucket_server"
    policy_section = "bitbucket_server"
    unauthorized_status = 401

    def event_type(self, request: InboundWebhook) -> str | None:
        if request.payload.get("eventKey") == "repo:refs_changed":
            return "repo:refs_changed"
        return None

    async def authenticate(self, db: AsyncSession, request: InboundWebhook) -> User:
        token = request.query.get("token")
        return await verify_secret_token(db, unquote(token) if token else None)

    def normalize(self, request: InboundWebhook) -> RepositoryEvent | None:
        payload = request.payload
        change = _get(payload, "changes", 0)
        if change is None:
            raise WebhookPayloadError("refs_changed payload without changes")
        if change.get("type") == "DELETE" or _get(change, "ref", "type") not in (None, "BRANCH"):
            return None

        branch = _get(change, "ref", "displayId")
        commit = change.get("toHash")
        clone_url = next(
            (
                link.get("href")
                for link in _get(payload, "repository", "links", "clone") or []
                if link.get("name") == "http"
            ),
            None,
        )
        self_link = _get(payload, "repository", "links", "self", 0, "href")
        if not branch or not commit or not clone_url or not self_link:
            raise WebhookPayloadError("refs_changed payload without branch, commit or links")

        return RepositoryEvent(
            kind="push",
            clone_url=clone_url,
            branch=branch,
            commit_sha=commit,
            context_url=f"{self_link}?at={quote(branch, safe='')}",
            before_sha=known_sha(change.get("fromHash")),
        )


def _default_branch_match(branch: str, default_branch: str | None) -> bool | None:
    if not default_branch:
        return None
    return branch == default_branch
