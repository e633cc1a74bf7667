"""Provider payload fixtures for webhook tests."""

from unittest.mock import MagicMock

import pytest

from prewarm.config import ProviderConfig, ProviderType
from prewarm.services.host_registry import HostContext, HostRegistry

HEAD = "1" * 40
BEFORE = "0" * 39 + "1"


@pytest.fixture
def hosts():
    def context(host, provider_type, auth_provider_id):
        return HostContext(
            config=ProviderConfig(host=host, type=provider_type, auth_provider_id=auth_provider_id),
            client=MagicMock(),
            context_parser=MagicMock(),
            integration=MagicMock(),
        )

    return HostRegistry(
        {
            "github.com": context("github.com", ProviderType.GITHUB, "Public-GitHub"),
            "github.acme.corp": context("github.acme.corp", ProviderType.GITHUB, "GHE"),
            "gitlab.com": context("gitlab.com", ProviderType.GITLAB, "Public-GitLab"),
            "bitbucket.org": context("bitbucket.org", ProviderType.BITBUCKET, "Public-Bitbucket"),
            "bitbucket.acme.corp": context(
                "bitbucket.acme.corp", ProviderType.BITBUCKET_SERVER, "BBS"
            ),
        }
    )


@pytest.fixture
def github_push():
    return {
        "ref": "refs/heads/main",
        "before": BEFORE,
        "after": HEAD,
        "deleted": False,
        "repository": {
            "id": 1,
            "name": "app",
            "owner": {"login": "acme"},
            "clone_url": "https://github.com/acme/app.git",
            "html_url": "https://github.com/acme/app",
            "url": "https://github.com/acme/app",
            "default_branch": "main",
        },
        "installation": {"id": 42},
        "sender": {"id": 1001, "login": "alice"},
        "head_commit": {"id": HEAD, "message": "change"},
        "commits": [{"id": HEAD}],
    }


@pytest.fixture
def github_pull_request():
    repo = {
        "id": 1,
        "name": "app",
        "owner": {"login": "acme"},
        "clone_url": "https://github.com/acme/app.git",
        "html_url": "https://github.com/acme/app",
    }
    return {
        "action": "opened",
        "number": 7,
        "pull_request": {
            "number": 7,
            "html_url": "https://github.com/acme/app/pull/7",
            "body": "Adds a feature",
            "head": {"ref": "feature", "sha": HEAD, "repo": dict(repo)},
            "base": {"ref": "main", "sha": BEFORE, "repo": dict(repo)},
        },
        "repository": repo,
        "installation": {"id": 42},
        "sender": {"id": 1001, "login": "alice"},
    }


@pytest.fixture
def ghe_push(github_push):
    payload = dict(github_push)
    payload.pop("installation")
    payload["repository"] = {
        **github_push["repository"],
        "clone_url": "https://github.acme.corp/acme/app.git",
        "html_url": "https://github.acme.corp/acme/app",
        "url": "https://github.acme.corp/api/v3/repos/acme/app",
    }
    return payload


@pytest.fixture
def gitlab_push():
    return {
        "object_kind": "push",
        "ref": "refs/heads/feature/x",
        "before": BEFORE,
        "after": HEAD,
        "project": {"default_branch": "main"},
        "repository": {
            "name": "app",
            "git_http_url": "https://gitlab.com/acme/app.git",
            "homepage": "https://gitlab.com/acme/app",
        },
        "commits": [{"id": HEAD}],
    }


@pytest.fixture
def bitbucket_push():
    return {
        "push": {
            "changes": [
                {
                    "new": {"type": "branch", "name": "feature/x", "target": {"hash": HEAD}},
                    "old": {"type": "branch", "name": "feature/x", "target": {"hash": BEFORE}},
                    "commits": [{"hash": HEAD}],
                }
            ]
        },
        "repository": {
            "full_name": "acme/app",
            "links": {"html": {"href": "https://bitbucket.org/acme/app"}},
            "mainbranch": {"name": "main"},
        },
    }


@pytest.fixture
def bitbucket_server_push():
    return {
        "eventKey": "repo:refs_changed",
        "repository": {
            "slug": "app",
            "project": {"key": "ACME"},
            "links": {
                "clone": [
                    {"href": "ssh://git@bitbucket.acme.corp:7999/acme/app.git", "name": "ssh"},
                    {"href": "https://bitbucket.acme.corp/scm/acme/app.git", "name": "http"},
                ],
                "self": [{"href": "https://bitbucket.acme.corp/projects/ACME/repos/app/browse"}],
            },
        },
        "changes": [
            {
                "ref": {"id": "refs/heads/feature/x", "displayId": "feature/x", "type": "BRANCH"},
                "fromHash": BEFORE,
                "toHash": HEAD,
                "type": "UPDATE",
            }
        ],
    }
