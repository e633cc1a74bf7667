"""Tests for the per-provider webhook adapters."""

import copy
import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from prewarm.auth.tokens import PREBUILD_TOKEN_SCOPE, create_prebuild_token
from prewarm.db.models import User
from prewarm.errors import WebhookAuthError, WebhookPayloadError
from prewarm.services.github_app_service import compute_signature
from prewarm.webhooks.adapters import (
    BitbucketAdapter,
    BitbucketServerAdapter,
    GitHubAppAdapter,
    GitHubEnterpriseAdapter,
    GitLabAdapter,
    InboundWebhook,
)

HEAD = "1" * 40
BEFORE = "0" * 39 + "1"


def _request(payload, headers=None, query=None) -> InboundWebhook:
    return InboundWebhook.from_parts(
        headers or {}, query or {}, json.dumps(payload).encode()
    )


def _user(token_store, blocked: bool = False) -> User:
    user = User(id=uuid.uuid4(), name="alice", blocked=blocked)
    token_store.users[user.id] = user
    return user


class TestInboundWebhook:
    def test_headers_case_insensitive(self):
        request = InboundWebhook.from_parts({"X-GitHub-Event": "push"}, {}, b"{}")
        assert request.header("x-github-event") == "push"
        assert request.header("X-GITHUB-EVENT") == "push"

    def test_non_json_body(self):
        with pytest.raises(WebhookPayloadError):
            InboundWebhook.from_parts({}, {}, b"not json")

    def test_non_object_body(self):
        with pytest.raises(WebhookPayloadError):
            InboundWebhook.from_parts({}, {}, b"[1, 2]")

    def test_empty_body(self):
        assert InboundWebhook.from_parts({}, {}, b"").payload == {}


class TestGitHubAppAdapter:
    def test_event_types(self, hosts, github_push, github_pull_request):
        adapter = GitHubAppAdapter(hosts)
        assert adapter.event_type(_request(github_push, {"X-GitHub-Event": "push"})) == "push"
        assert (
            adapter.event_type(_request(github_pull_request, {"X-GitHub-Event": "pull_request"}))
            == "pull_request.opened"
        )

        closed = {**github_pull_request, "action": "closed"}
        assert adapter.event_type(_request(closed, {"X-GitHub-Event": "pull_request"})) is None
        assert adapter.event_type(_request({}, {"X-GitHub-Event": "issues"})) is None

    def test_push(self, hosts, github_push):
        event = GitHubAppAdapter(hosts).normalize(
            _request(github_push, {"X-GitHub-Event": "push"})
        )

        assert event.kind == "push"
        assert event.clone_url == "https://github.com/acme/app.git"
        assert event.branch == "main"
        assert event.commit_sha == HEAD
        assert event.context_url == "https://github.com/acme/app/tree/main"
        assert event.is_default_branch is True
        assert event.installation_id == "42"
        assert event.owner == "acme"
        assert event.repo == "app"
        assert event.before_sha == BEFORE
        assert event.pull_request_head_sha is None
        assert not event.is_pull_request

    def test_new_branch_has_no_previous_head(self, hosts, github_push):
        github_push["before"] = "0" * 40
        event = GitHubAppAdapter(hosts).normalize(
            _request(github_push, {"X-GitHub-Event": "push"})
        )
        assert event.before_sha is None

    def test_push_to_other_branch(self, hosts, github_push):
        github_push["ref"] = "refs/heads/feature"
        event = GitHubAppAdapter(hosts).normalize(
            _request(github_push, {"X-GitHub-Event": "push"})
        )
        assert event.is_default_branch is False
        assert event.context_url == "https://github.com/acme/app/tree/feature"

    def test_tag_push_ignored(self, hosts, github_push):
        github_push["ref"] = "refs/tags/v1.0"
        assert (
            GitHubAppAdapter(hosts).normalize(_request(github_push, {"X-GitHub-Event": "push"}))
            is None
        )

    def test_branch_deletion_ignored(self, hosts, github_push):
        github_push["after"] = "0" * 40
        github_push["deleted"] = True
        assert (
            GitHubAppAdapter(hosts).normalize(_request(github_push, {"X-GitHub-Event": "push"}))
            is None
        )

    def test_pull_request(self, hosts, github_pull_request):
        event = GitHubAppAdapter(hosts).normalize(
            _request(github_pull_request, {"X-GitHub-Event": "pull_request"})
        )

        assert event.is_pull_request
        assert event.branch == "feature"
        assert event.commit_sha == HEAD
        assert event.context_url == "https://github.com/acme/app/pull/7"
        assert event.pull_request_number == 7
        assert event.pull_request_body == "Adds a feature"
        assert event.pull_request_head_sha == HEAD
        assert event.before_sha is None
        assert event.is_default_branch is False
        assert event.is_fork is False

    def test_pull_request_synchronize_previous_head(self, hosts, github_pull_request):
        github_pull_request["action"] = "synchronize"
        github_pull_request["before"] = BEFORE
        event = GitHubAppAdapter(hosts).normalize(
            _request(github_pull_request, {"X-GitHub-Event": "pull_request"})
        )
        assert event.before_sha == BEFORE

    def test_pull_request_from_fork(self, hosts, github_pull_request):
        github_pull_request["pull_request"]["head"]["repo"]["id"] = 99
        event = GitHubAppAdapter(hosts).normalize(
            _request(github_pull_request, {"X-GitHub-Event": "pull_request"})
        )
        assert event.is_fork is True

    def test_pull_request_from_deleted_fork(self, hosts, github_pull_request):
        github_pull_request["pull_request"]["head"]["repo"] = None
        event = GitHubAppAdapter(hosts).normalize(
            _request(github_pull_request, {"X-GitHub-Event": "pull_request"})
        )
        assert event.is_fork is True

    def test_pull_request_targeting_other_repository_ignored(self, hosts, github_pull_request):
        github_pull_request["pull_request"]["base"]["repo"]["clone_url"] = (
            "https://github.com/other/app.git"
        )
        assert (
            GitHubAppAdapter(hosts).normalize(
                _request(github_pull_request, {"X-GitHub-Event": "pull_request"})
            )
            is None
        )

    def test_trim_drops_commits(self, hosts, github_push):
        original = copy.deepcopy(github_push)
        trimmed = GitHubAppAdapter(hosts).trim(github_push)

        assert trimmed["head_commit"] is None
        assert trimmed["commits"] == []
        assert trimmed["repository"] == github_push["repository"]
        assert github_push == original

    @patch("prewarm.db.queries.find_user_by_id", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_installation", new_callable=AsyncMock)
    async def test_authenticate_as_installer(
        self, mock_installation, mock_user, hosts, github_push
    ):
        owner = User(id=uuid.uuid4(), name="alice", blocked=False)
        mock_installation.return_value = SimpleNamespace(owner_user_id=owner.id)
        mock_user.return_value = owner

        user = await GitHubAppAdapter(hosts).authenticate(AsyncMock(), _request(github_push))

        assert user is owner
        mock_installation.assert_awaited_once()
        assert mock_installation.await_args.args[1:] == ("github", "42")

    @patch("prewarm.db.queries.find_installation", new_callable=AsyncMock)
    async def test_unknown_installation(self, mock_installation, hosts, github_push):
        mock_installation.return_value = None
        with pytest.raises(WebhookAuthError):
            await GitHubAppAdapter(hosts).authenticate(AsyncMock(), _request(github_push))

    @patch("prewarm.db.queries.find_user_by_id", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_installation", new_callable=AsyncMock)
    async def test_blocked_installer(self, mock_installation, mock_user, hosts, github_push):
        owner = User(id=uuid.uuid4(), name="alice", blocked=True)
        mock_installation.return_value = SimpleNamespace(owner_user_id=owner.id)
        mock_user.return_value = owner

        with pytest.raises(WebhookAuthError, match="Blocked"):
            await GitHubAppAdapter(hosts).authenticate(AsyncMock(), _request(github_push))

    async def test_delivery_without_installation(self, hosts, github_push):
        github_push.pop("installation")
        with pytest.raises(WebhookAuthError):
            await GitHubAppAdapter(hosts).authenticate(AsyncMock(), _request(github_push))


class TestGitHubEnterpriseAdapter:
    def test_event_type(self, hosts, ghe_push):
        adapter = GitHubEnterpriseAdapter(hosts)
        assert adapter.event_type(_request(ghe_push, {"X-Github-Event": "push"})) == "push"
        assert adapter.event_type(_request(ghe_push, {"X-Github-Event": "pull_request"})) is None

    def test_host_from_header_or_repository_url(self, hosts, ghe_push):
        adapter = GitHubEnterpriseAdapter(hosts)
        with_header = _request(ghe_push, {"X-Github-Enterprise-Host": "GitHub.Acme.Corp"})
        assert adapter.host(with_header) == "github.acme.corp"
        assert adapter.host(_request(ghe_push)) == "github.acme.corp"

    def test_normalize(self, hosts, ghe_push):
        event = GitHubEnterpriseAdapter(hosts).normalize(_request(ghe_push))
        assert event.clone_url == "https://github.acme.corp/acme/app.git"
        assert event.context_url == "https://github.acme.corp/acme/app/tree/main"
        assert not event.is_pull_request

    @patch("prewarm.db.queries.find_project_by_clone_url", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_user_by_identity", new_callable=AsyncMock)
    async def test_sender_signature(
        self, mock_identity, mock_project, token_store, hosts, ghe_push
    ):
        sender = _user(token_store)
        db = token_store.session()
        value = await create_prebuild_token(db, sender, [PREBUILD_TOKEN_SCOPE])
        mock_identity.return_value = sender
        mock_project.return_value = None

        body = json.dumps(ghe_push).encode()
        request = InboundWebhook.from_parts(
            {"X-Hub-Signature-256": compute_signature(f"{sender.id}|{value}", body)}, {}, body
        )

        assert await GitHubEnterpriseAdapter(hosts).authenticate(db, request) is sender
        assert mock_identity.await_args.args[1:] == ("GHE", "1001")

    @patch("prewarm.webhooks.adapters.find_project_owners", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_project_by_clone_url", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_user_by_identity", new_callable=AsyncMock)
    async def test_project_owner_signature(
        self, mock_identity, mock_project, mock_owners, token_store, hosts, ghe_push
    ):
        sender = _user(token_store)
        owner = _user(token_store)
        db = token_store.session()
        await create_prebuild_token(db, sender, [PREBUILD_TOKEN_SCOPE])
        value = await create_prebuild_token(db, owner, [PREBUILD_TOKEN_SCOPE])
        mock_identity.return_value = sender
        mock_project.return_value = SimpleNamespace(id=uuid.uuid4())
        mock_owners.return_value = [owner]

        body = json.dumps(ghe_push).encode()
        request = InboundWebhook.from_parts(
            {"X-Hub-Signature-256": compute_signature(f"{owner.id}|{value}", body)}, {}, body
        )

        assert await GitHubEnterpriseAdapter(hosts).authenticate(db, request) is owner

    async def test_unknown_host(self, hosts, ghe_push):
        request = _request(ghe_push, {"X-Github-Enterprise-Host": "git.unknown.corp"})
        with pytest.raises(WebhookAuthError, match="Unknown GitHub Enterprise host"):
            await GitHubEnterpriseAdapter(hosts).authenticate(AsyncMock(), request)


class TestGitLabAdapter:
    def test_event_type(self, hosts, gitlab_push):
        adapter = GitLabAdapter(hosts)
        assert adapter.event_type(_request(gitlab_push, {"X-Gitlab-Event": "Push Hook"})) == "push"
        assert adapter.event_type(_request(gitlab_push, {"X-Gitlab-Event": "Tag Push Hook"})) is None

    def test_normalize(self, hosts, gitlab_push):
        event = GitLabAdapter(hosts).normalize(_request(gitlab_push))

        assert event.clone_url == "https://gitlab.com/acme/app.git"
        assert event.branch == "feature/x"
        assert event.commit_sha == HEAD
        assert event.context_url == "https://gitlab.com/acme/app/-/tree/feature/x"
        assert event.is_default_branch is False

    def test_trim(self, hosts, gitlab_push):
        assert GitLabAdapter(hosts).trim(gitlab_push)["commits"] == []

    async def test_authenticate_requires_repository_scope(self, token_store, hosts, gitlab_push):
        user = _user(token_store)
        db = token_store.session()
        value = await create_prebuild_token(
            db, user, [PREBUILD_TOKEN_SCOPE, "https://gitlab.com/acme/app.git"]
        )
        adapter = GitLabAdapter(hosts)

        request = _request(gitlab_push, {"X-Gitlab-Token": f"{user.id}|{value}"})
        assert await adapter.authenticate(db, request) is user

        gitlab_push["repository"]["git_http_url"] = "https://gitlab.com/acme/other.git"
        request = _request(gitlab_push, {"X-Gitlab-Token": f"{user.id}|{value}"})
        with pytest.raises(WebhookAuthError):
            await adapter.authenticate(db, request)

    async def test_missing_token(self, hosts, gitlab_push):
        with pytest.raises(WebhookAuthError):
            await GitLabAdapter(hosts).authenticate(AsyncMock(), _request(gitlab_push))


class TestBitbucketAdapter:
    def test_event_type(self, hosts, bitbucket_push):
        adapter = BitbucketAdapter(hosts)
        assert adapter.event_type(_request(bitbucket_push, {"X-Event-Key": "repo:push"})) == "push"
        assert adapter.event_type(_request(bitbucket_push, {"X-Event-Key": "repo:fork"})) is None

    def test_normalize(self, hosts, bitbucket_push):
        event = BitbucketAdapter(hosts).normalize(_request(bitbucket_push))

        assert event.clone_url == "https://bitbucket.org/acme/app.git"
        assert event.branch == "feature/x"
        assert event.commit_sha == HEAD
        assert event.context_url == f"https://bitbucket.org/acme/app/src/{HEAD}/?at=feature%2Fx"
        assert event.is_default_branch is False
        assert event.before_sha == BEFORE

    def test_new_branch_has_no_previous_head(self, hosts, bitbucket_push):
        bitbucket_push["push"]["changes"][0]["old"] = None
        assert BitbucketAdapter(hosts).normalize(_request(bitbucket_push)).before_sha is None

    def test_branch_deleted(self, hosts, bitbucket_push):
        bitbucket_push["push"]["changes"][0]["new"] = None
        assert BitbucketAdapter(hosts).normalize(_request(bitbucket_push)) is None

    def test_tag_ignored(self, hosts, bitbucket_push):
        bitbucket_push["push"]["changes"][0]["new"]["type"] = "tag"
        assert BitbucketAdapter(hosts).normalize(_request(bitbucket_push)) is None

    def test_no_changes(self, hosts, bitbucket_push):
        bitbucket_push["push"]["changes"] = []
        with pytest.raises(WebhookPayloadError):
            BitbucketAdapter(hosts).normalize(_request(bitbucket_push))

    def test_trim(self, hosts, bitbucket_push):
        trimmed = BitbucketAdapter(hosts).trim(bitbucket_push)
        assert trimmed["push"]["changes"][0]["commits"] == []
        assert bitbucket_push["push"]["changes"][0]["commits"] == [{"hash": HEAD}]

    async def test_authenticate_with_query_token(self, token_store, hosts, bitbucket_push):
        user = _user(token_store)
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE])

        request = _request(bitbucket_push, query={"token": f"{user.id}|{value}"})
        assert await BitbucketAdapter(hosts).authenticate(db, request) is user


class TestBitbucketServerAdapter:
    def test_event_type(self, hosts, bitbucket_server_push):
        adapter = BitbucketServerAdapter(hosts)
        assert adapter.event_type(_request(bitbucket_server_push)) == "repo:refs_changed"
        assert adapter.event_type(_request({"eventKey": "pr:opened"})) is None

    def test_normalize(self, hosts, bitbucket_server_push):
        event = BitbucketServerAdapter(hosts).normalize(_request(bitbucket_server_push))

        assert event.clone_url == "https://bitbucket.acme.corp/scm/acme/app.git"
        assert event.branch == "feature/x"
        assert event.commit_sha == HEAD
        assert event.context_url == (
            "https://bitbucket.acme.corp/projects/ACME/repos/app/browse?at=feature%2Fx"
        )
        assert event.before_sha == BEFORE

    @pytest.mark.parametrize(
        "change",
        [
            {"type": "DELETE"},
            {"ref": {"id": "refs/tags/v1", "displayId": "v1", "type": "TAG"}},
        ],
    )
    def test_ignored_changes(self, hosts, bitbucket_server_push, change):
        bitbucket_server_push["changes"][0].update(change)
        assert BitbucketServerAdapter(hosts).normalize(_request(bitbucket_server_push)) is None

    async def test_authenticate_unquotes_token(self, token_store, hosts, bitbucket_server_push):
        user = _user(token_store)
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE])

        request = _request(bitbucket_server_push, query={"token": f"{user.id}%7C{value}"})
        assert await BitbucketServerAdapter(hosts).authenticate(db, request) is user


class TestAuthProviderLookup:
    def test_auth_provider_for_clone_url(self, hosts):
        adapter = GitHubEnterpriseAdapter(hosts)
        assert adapter.auth_provider_id_for("https://github.acme.corp/acme/app.git") == "GHE"
        assert adapter.auth_provider_id_for("https://unknown.example/acme/app.git") is None
