"""Context URL parsing, one parser per Git host.

A context URL is the web URL of a repository, optionally narrowed to a
branch, commit or pull request. Parsing resolves it through the provider
API (as the acting user) to a CommitContext with a concrete revision.

Parsers also serve the per-commit lookups that need the same host
credentials: file content (for the repository config), commit metadata
and commit history.
"""

import re
from urllib.parse import parse_qs, unquote, urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.auth.scm_tokens import get_token_for_host
from prewarm.config import ProviderConfig
from prewarm.db.models import User
from prewarm.errors import ProviderAPIError
from prewarm.logging_config import get_logger
from prewarm.services.bitbucket_server_service import BitbucketServerClient
from prewarm.services.bitbucket_service import BitbucketClient
from prewarm.services.github_service import GitHubClient
from prewarm.services.gitlab_service import GitLabClient
from prewarm.services.vcs_provider import CommitContext, CommitInfo, Repository

logger = get_logger(__name__)

_SHA_RE = re.compile(r"^[0-9a-f]{7,40}$")


def _title(repository: Repository, ref: str | None, revision: str) -> str:
    return f"{repository.owner}/{repository.name} - {ref or revision[:8]}"


class HostContextParser:
    """Shared host matching and credential lookup."""

    def __init__(self, provider: ProviderConfig) -> None:
        self.provider = provider

    def can_handle(self, context_url: str) -> bool:
        return (urlparse(context_url).hostname or "").lower() == self.provider.host.lower()

    async def _token(self, db: AsyncSession, user: User) -> str:
        return await get_token_for_host(db, user, self.provider)

    def _path_segments(self, context_url: str) -> list[str]:
        path = unquote(urlparse(context_url).path)
        return [s for s in path.split("/") if s]


class GitHubContextParser(HostContextParser):
    """github.com and GitHub Enterprise.

    URL shapes: /{owner}/{repo}, /tree/{branch}, /commit/{sha}, /pull/{number}.
    """

    def __init__(self, provider: ProviderConfig, client: GitHubClient) -> None:
        super().__init__(provider)
        self.client = client

    async def parse(self, db: AsyncSession, user: User, context_url: str) -> CommitContext:
        segments = self._path_segments(context_url)
        if len(segments) < 2:
            raise ProviderAPIError(f"Not a repository URL: {context_url}")
        owner, name = segments[0], segments[1].removesuffix(".git")
        kind, rest = (segments[2], segments[3:]) if len(segments) > 2 else (None, [])

        token = await self._token(db, user)
        data = await self.client.get_repository(token, owner, name)
        if data is None:
            raise ProviderAPIError(f"Repository {owner}/{name} not found", status_code=404)
        repository = Repository(
            host=self.provider.host,
            owner=data["owner"]["login"],
            name=data["name"],
            clone_url=data["clone_url"],
            web_url=data["html_url"],
            default_branch=data.get("default_branch"),
            private=data.get("private", False),
        )

        pull_request_number = None
        if kind == "pull" and rest:
            pull_request_number = int(rest[0])
            pr = await self.client.get_pull_request(token, owner, name, pull_request_number)
            if pr is None:
                raise ProviderAPIError(f"Pull request {context_url} not found", status_code=404)
            ref, ref_type, revision = pr["head"]["ref"], "branch", pr["head"]["sha"]
        elif kind == "commit" and rest:
            ref, ref_type, revision = None, "revision", rest[0]
        else:
            ref = "/".join(rest) if kind == "tree" and rest else repository.default_branch
            if not ref:
                raise ProviderAPIError(f"Cannot determine branch for {context_url}")
            sha = await self.client.get_branch_sha(token, owner, name, ref)
            if sha is None:
                raise ProviderAPIError(f"Branch {ref} not found in {owner}/{name}", status_code=404)
            ref_type, revision = "branch", sha

        return CommitContext(
            title=_title(repository, ref, revision),
            repository=repository,
            revision=revision,
            ref=ref,
            ref_type=ref_type,
            normalized_context_url=context_url,
            pull_request_number=pull_request_number,
        )

    async def fetch_file(
        self, db: AsyncSession, user: User, context: CommitContext, path: str
    ) -> str | None:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.get_file_content(token, repo.owner, repo.name, context.revision, path)

    async def fetch_commit_info(
        self, db: AsyncSession, user: User, context: CommitContext
    ) -> CommitInfo | None:
        repo = context.repository
        token = await self._token(db, user)
        data = await self.client.get_commit(token, repo.owner, repo.name, context.revision)
        if data is None:
            return None
        commit = data["commit"]
        return CommitInfo(
            sha=data["sha"],
            author=commit["author"]["name"],
            message=commit["message"],
            author_avatar_url=(data.get("author") or {}).get("avatar_url", ""),
            author_date=commit["author"].get("date", ""),
        )

    async def fetch_commit_history(
        self, db: AsyncSession, user: User, context: CommitContext, max_depth: int
    ) -> list[str]:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.list_commit_shas(
            token, repo.owner, repo.name, context.revision, max_depth
        )


class GitLabContextParser(HostContextParser):
    """URL shapes: /{namespace...}/{repo}, /-/tree/{branch}, /-/commit/{sha}."""

    def __init__(self, provider: ProviderConfig, client: GitLabClient) -> None:
        super().__init__(provider)
        self.client = client

    async def parse(self, db: AsyncSession, user: User, context_url: str) -> CommitContext:
        path = unquote(urlparse(context_url).path).strip("/")
        project_path, _, suffix = path.partition("/-/")
        segments = [s for s in project_path.removesuffix(".git").split("/") if s]
        if len(segments) < 2:
            raise ProviderAPIError(f"Not a repository URL: {context_url}")
        owner, name = "/".join(segments[:-1]), segments[-1]

        token = await self._token(db, user)
        data = await self.client.get_project(token, owner, name)
        if data is None:
            raise ProviderAPIError(f"Project {owner}/{name} not found", status_code=404)
        repository = Repository(
            host=self.provider.host,
            owner=owner,
            name=name,
            clone_url=data["http_url_to_repo"],
            web_url=data["web_url"],
            default_branch=data.get("default_branch"),
            private=data.get("visibility") != "public",
        )

        kind, _, rest = suffix.partition("/")
        if kind == "commit" and rest:
            ref, ref_type, revision = None, "revision", rest
        else:
            ref = rest if kind == "tree" and rest else repository.default_branch
            if not ref:
                raise ProviderAPIError(f"Cannot determine branch for {context_url}")
            sha = await self.client.get_branch_sha(token, owner, name, ref)
            if sha is None:
                raise ProviderAPIError(f"Branch {ref} not found in {owner}/{name}", status_code=404)
            ref_type, revision = "branch", sha

        return CommitContext(
            title=_title(repository, ref, revision),
            repository=repository,
            revision=revision,
            ref=ref,
            ref_type=ref_type,
            normalized_context_url=context_url,
        )

    async def fetch_file(
        self, db: AsyncSession, user: User, context: CommitContext, path: str
    ) -> str | None:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.get_file_content(token, repo.owner, repo.name, context.revision, path)

    async def fetch_commit_info(
        self, db: AsyncSession, user: User, context: CommitContext
    ) -> CommitInfo | None:
        repo = context.repository
        token = await self._token(db, user)
        data = await self.client.get_commit(token, repo.owner, repo.name, context.revision)
        if data is None:
            return None
        return CommitInfo(
            sha=data["id"],
            author=data.get("author_name", "unknown"),
            message=data.get("message", ""),
            author_date=data.get("authored_date", ""),
        )

    async def fetch_commit_history(
        self, db: AsyncSession, user: User, context: CommitContext, max_depth: int
    ) -> list[str]:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.list_commit_shas(
            token, repo.owner, repo.name, context.revision, max_depth
        )


class BitbucketContextParser(HostContextParser):
    """URL shapes: /{workspace}/{repo}, /src/{sha}/?at={branch}, /branch/{branch}, /commits/{sha}."""

    def __init__(self, provider: ProviderConfig, client: BitbucketClient) -> None:
        super().__init__(provider)
        self.client = client

    async def parse(self, db: AsyncSession, user: User, context_url: str) -> CommitContext:
        parsed = urlparse(context_url)
        segments = self._path_segments(context_url)
        if len(segments) < 2:
            raise ProviderAPIError(f"Not a repository URL: {context_url}")
        owner, name = segments[0], segments[1].removesuffix(".git")
        kind, rest = (segments[2], segments[3:]) if len(segments) > 2 else (None, [])
        at = parse_qs(parsed.query).get("at", [None])[0]

        token = await self._token(db, user)
        data = await self.client.get_repository(token, owner, name)
        if data is None:
            raise ProviderAPIError(f"Repository {owner}/{name} not found", status_code=404)
        full_name = data.get("full_name", f"{owner}/{name}")
        repository = Repository(
            host=self.provider.host,
            owner=owner,
            name=name,
            clone_url=f"https://{self.provider.host}/{full_name}.git",
            web_url=f"https://{self.provider.host}/{full_name}",
            default_branch=(data.get("mainbranch") or {}).get("name"),
            private=data.get("is_private", False),
        )

        if kind in ("src", "commits") and rest and _SHA_RE.match(rest[0]):
            revision = rest[0]
            ref = at
            ref_type = "branch" if at else "revision"
        else:
            ref = "/".join(rest) if kind == "branch" and rest else (at or repository.default_branch)
            if not ref:
                raise ProviderAPIError(f"Cannot determine branch for {context_url}")
            sha = await self.client.get_branch_sha(token, owner, name, ref)
            if sha is None:
                raise ProviderAPIError(f"Branch {ref} not found in {owner}/{name}", status_code=404)
            ref_type, revision = "branch", sha

        return CommitContext(
            title=_title(repository, ref, revision),
            repository=repository,
            revision=revision,
            ref=ref,
            ref_type=ref_type,
            normalized_context_url=context_url,
        )

    async def fetch_file(
        self, db: AsyncSession, user: User, context: CommitContext, path: str
    ) -> str | None:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.get_file_content(token, repo.owner, repo.name, context.revision, path)

    async def fetch_commit_info(
        self, db: AsyncSession, user: User, context: CommitContext
    ) -> CommitInfo | None:
        repo = context.repository
        token = await self._token(db, user)
        data = await self.client.get_commit(token, repo.owner, repo.name, context.revision)
        if data is None:
            return None
        author = data.get("author") or {}
        return CommitInfo(
            sha=data["hash"],
            author=(author.get("user") or {}).get("display_name") or author.get("raw", "unknown"),
            message=data.get("message", ""),
            author_date=data.get("date", ""),
        )

    async def fetch_commit_history(
        self, db: AsyncSession, user: User, context: CommitContext, max_depth: int
    ) -> list[str]:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.list_commit_shas(
            token, repo.owner, repo.name, context.revision, max_depth
        )


class BitbucketServerContextParser(HostContextParser):
    """URL shapes: /projects/{KEY}/repos/{slug}[/browse][?at=ref], /users/{user}/repos/{slug}, /commits/{sha}."""

    def __init__(self, provider: ProviderConfig, client: BitbucketServerClient) -> None:
        super().__init__(provider)
        self.client = client

    async def parse(self, db: AsyncSession, user: User, context_url: str) -> CommitContext:
        parsed = urlparse(context_url)
        segments = self._path_segments(context_url)
        if len(segments) < 4 or segments[0] not in ("projects", "users") or segments[2] != "repos":
            raise ProviderAPIError(f"Not a repository URL: {context_url}")
        repo_kind, owner, name = segments[0], segments[1], segments[3]
        rest = segments[4:]
        at = parse_qs(parsed.query).get("at", [None])[0]
        if at:
            at = at.removeprefix("refs/heads/")

        token = await self._token(db, user)
        data = await self.client.get_repository(token, repo_kind, owner, name)
        if data is None:
            raise ProviderAPIError(f"Repository {owner}/{name} not found", status_code=404)
        clone_links = (data.get("links") or {}).get("clone", [])
        clone_url = next((link["href"] for link in clone_links if link.get("name") == "http"), "")
        repository = Repository(
            host=self.provider.host,
            owner=owner,
            name=name,
            clone_url=clone_url,
            web_url=f"https://{self.provider.host}/{repo_kind}/{owner}/repos/{name}",
            default_branch=await self.client.get_default_branch(token, repo_kind, owner, name),
            private=not data.get("public", False),
            repo_kind=repo_kind,
        )

        if len(rest) >= 2 and rest[0] == "commits":
            ref, ref_type, revision = at, "revision", rest[1]
        else:
            ref = at or repository.default_branch
            if not ref:
                raise ProviderAPIError(f"Cannot determine branch for {context_url}")
            sha = await self.client.get_branch_sha(token, repo_kind, owner, name, ref)
            if sha is None:
                raise ProviderAPIError(f"Branch {ref} not found in {owner}/{name}", status_code=404)
            ref_type, revision = "branch", sha

        return CommitContext(
            title=_title(repository, ref, revision),
            repository=repository,
            revision=revision,
            ref=ref,
            ref_type=ref_type,
            normalized_context_url=context_url,
        )

    async def fetch_file(
        self, db: AsyncSession, user: User, context: CommitContext, path: str
    ) -> str | None:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.get_file_content(
            token, repo.repo_kind, repo.owner, repo.name, context.revision, path
        )

    async def fetch_commit_info(
        self, db: AsyncSession, user: User, context: CommitContext
    ) -> CommitInfo | None:
        repo = context.repository
        token = await self._token(db, user)
        data = await self.client.get_commit(
            token, repo.repo_kind, repo.owner, repo.name, context.revision
        )
        if data is None:
            return None
        return CommitInfo(
            sha=data["id"],
            author=(data.get("author") or {}).get("name", "unknown"),
            message=data.get("message", ""),
            author_date=str(data.get("authorTimestamp", "")),
        )

    async def fetch_commit_history(
        self, db: AsyncSession, user: User, context: CommitContext, max_depth: int
    ) -> list[str]:
        repo = context.repository
        token = await self._token(db, user)
        return await self.client.list_commit_shas(
            token, repo.repo_kind, repo.owner, repo.name, context.revision, max_depth
        )
