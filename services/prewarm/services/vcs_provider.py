"""Provider-agnostic repository types and collaborator interfaces.

Provider clients, context parsers and repository integrations all speak
these types, so the webhook pipeline and the prebuild manager never touch
provider payloads or provider REST shapes directly.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db.models import User


@dataclass
class Repository:
    host: str
    owner: str
    name: str
    clone_url: str
    web_url: str = ""
    default_branch: str | None = None
    private: bool = False
    # Bitbucket Server distinguishes project repos from personal repos
    repo_kind: str = "projects"


@dataclass
class CommitInfo:
    sha: str
    author: str = "unknown"
    message: str = "unknown"
    author_avatar_url: str = ""
    author_date: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CommitContext:
    """Everything needed to create a workspace for one commit of a repository."""

    title: str
    repository: Repository
    revision: str
    ref: str | None = None
    ref_type: str | None = None  # branch, tag, revision
    normalized_context_url: str = ""
    pull_request_number: int | None = None
    force_create_new_workspace: bool = False
    commit_history: list[str] = field(default_factory=list)

    @property
    def is_default_branch(self) -> bool | None:
        if self.ref is None or self.repository.default_branch is None:
            return None
        return self.ref == self.repository.default_branch

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Webhook:
    id: str
    url: str


@dataclass
class InstallResult:
    """Outcome of installing automated prebuilds on a repository."""

    success: bool
    clone_url: str
    message: str = ""
    webhook_id: str | None = None
    # Set when the user lacks the provider role or OAuth scopes to install
    permission_denied: bool = False
    required_scopes: list[str] = field(default_factory=list)


class ContextParser(Protocol):
    """Resolves a context URL on one host to a CommitContext."""

    def can_handle(self, context_url: str) -> bool: ...

    async def parse(self, db: AsyncSession, user: User, context_url: str) -> CommitContext: ...

    async def fetch_commit_history(
        self, db: AsyncSession, user: User, context: CommitContext, max_depth: int
    ) -> list[str]: ...

    async def fetch_commit_info(
        self, db: AsyncSession, user: User, context: CommitContext
    ) -> CommitInfo | None: ...

    async def fetch_file(
        self, db: AsyncSession, user: User, context: CommitContext, path: str
    ) -> str | None: ...


class RepositoryIntegration(Protocol):
    """Configuration-time webhook management for one host."""

    async def can_install_automated_prebuilds(
        self, db: AsyncSession, user: User, clone_url: str
    ) -> bool: ...

    async def install_automated_prebuilds(
        self, db: AsyncSession, user: User, clone_url: str
    ) -> InstallResult: ...
