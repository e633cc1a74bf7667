"""Provider-neutral repository events produced by the webhook adapters."""

from dataclasses import dataclass

BRANCH_REF_PREFIX = "refs/heads/"

# Git's "no commit" sha, sent as the new head of a deleted branch
NULL_SHA = "0" * 40


def get_branch_from_ref(ref: str | None) -> str | None:
    """Branch name of a fully qualified ref, None for tags and anything else."""
    if not ref or not ref.startswith(BRANCH_REF_PREFIX):
        return None
    return ref[len(BRANCH_REF_PREFIX) :] or None


def known_sha(sha: str | None) -> str | None:
    """sha, or None when it is missing or the null sha."""
    if not sha or sha == NULL_SHA:
        return None
    return sha


@dataclass
class RepositoryEvent:
    """A push or pull request, reduced to what prebuild triggering needs."""

    kind: str  # push, pull_request
    clone_url: str
    branch: str
    commit_sha: str
    context_url: str
    is_default_branch: bool | None = None
    is_fork: bool = False
    # Previous head of the branch, None for a new branch or when not sent
    before_sha: str | None = None
    pull_request_head_sha: str | None = None
    # GitHub App events: the installation and repository coordinates for decorations
    installation_id: str | None = None
    owner: str = ""
    repo: str = ""
    pull_request_number: int | None = None
    pull_request_url: str = ""
    pull_request_body: str | None = None

    @property
    def is_pull_request(self) -> bool:
        return self.kind == "pull_request"
