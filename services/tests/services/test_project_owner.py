"""Tests for choosing the user a repository event acts as."""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from prewarm.db.models import User
from prewarm.services.project_owner import (
    can_access_prebuild,
    find_project_and_owner,
    find_project_owners,
)

CLONE_URL = "https://gitlab.com/acme/app.git"


def _user(name: str) -> User:
    return User(id=uuid.uuid4(), name=name, blocked=False)


def _team_project(team_id: uuid.UUID) -> SimpleNamespace:
    return SimpleNamespace(id=uuid.uuid4(), user_id=None, team_id=team_id)


class _Users:
    def __init__(self, *users: User) -> None:
        self.by_id = {u.id: u for u in users}

    async def find_user_by_id(self, db, user_id):
        return self.by_id.get(user_id)


class TestFindProjectOwners:
    async def test_personal_project(self):
        alice = _user("alice")
        project = SimpleNamespace(id=uuid.uuid4(), user_id=alice.id, team_id=None)

        with patch("prewarm.db.queries.find_user_by_id", _Users(alice).find_user_by_id):
            assert await find_project_owners(AsyncMock(), project) == [alice]

    @patch("prewarm.db.queries.find_members_by_team", new_callable=AsyncMock)
    async def test_team_members_in_order(self, mock_members):
        alice, bob = _user("alice"), _user("bob")
        team_id = uuid.uuid4()
        mock_members.return_value = [
            SimpleNamespace(user_id=bob.id),
            SimpleNamespace(user_id=uuid.uuid4()),
            SimpleNamespace(user_id=alice.id),
        ]

        with patch("prewarm.db.queries.find_user_by_id", _Users(alice, bob).find_user_by_id):
            owners = await find_project_owners(AsyncMock(), _team_project(team_id))

        assert owners == [bob, alice]

    async def test_orphan_project(self):
        project = SimpleNamespace(id=uuid.uuid4(), user_id=None, team_id=None)
        assert await find_project_owners(AsyncMock(), project) == []


class TestFindProjectAndOwner:
    @patch("prewarm.db.queries.find_project_by_clone_url", new_callable=AsyncMock)
    async def test_unregistered_repository_uses_installer(self, mock_project):
        mock_project.return_value = None
        installer = _user("installer")

        project, user = await find_project_and_owner(AsyncMock(), CLONE_URL, installer)

        assert project is None
        assert user is installer

    @patch("prewarm.db.queries.find_members_by_team", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_project_by_clone_url", new_callable=AsyncMock)
    async def test_installer_in_team(self, mock_project, mock_members):
        alice, installer = _user("alice"), _user("installer")
        project = _team_project(uuid.uuid4())
        mock_project.return_value = project
        mock_members.return_value = [
            SimpleNamespace(user_id=alice.id),
            SimpleNamespace(user_id=installer.id),
        ]

        with patch("prewarm.db.queries.find_user_by_id", _Users(alice, installer).find_user_by_id):
            found, user = await find_project_and_owner(AsyncMock(), CLONE_URL, installer)

        assert found is project
        assert user is installer

    @patch("prewarm.db.queries.find_identity", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_members_by_team", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_project_by_clone_url", new_callable=AsyncMock)
    async def test_first_member_with_host_identity(
        self, mock_project, mock_members, mock_identity
    ):
        alice, bob, installer = _user("alice"), _user("bob"), _user("installer")
        mock_project.return_value = _team_project(uuid.uuid4())
        mock_members.return_value = [
            SimpleNamespace(user_id=alice.id),
            SimpleNamespace(user_id=bob.id),
        ]
        mock_identity.side_effect = lambda db, user_id, provider: (
            SimpleNamespace() if user_id == bob.id else None
        )

        with patch("prewarm.db.queries.find_user_by_id", _Users(alice, bob).find_user_by_id):
            _project, user = await find_project_and_owner(
                AsyncMock(), CLONE_URL, installer, "Public-GitLab"
            )

        assert user is bob

    @patch("prewarm.db.queries.find_identity", new_callable=AsyncMock, return_value=None)
    @patch("prewarm.db.queries.find_members_by_team", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_project_by_clone_url", new_callable=AsyncMock)
    async def test_falls_back_to_installer(self, mock_project, mock_members, mock_identity):
        alice, installer = _user("alice"), _user("installer")
        project = _team_project(uuid.uuid4())
        mock_project.return_value = project
        mock_members.return_value = [SimpleNamespace(user_id=alice.id)]

        with patch("prewarm.db.queries.find_user_by_id", _Users(alice).find_user_by_id):
            found, user = await find_project_and_owner(
                AsyncMock(), CLONE_URL, installer, "Public-GitLab"
            )

        assert found is project
        assert user is installer


class TestCanAccessPrebuild:
    async def test_workspace_owner(self):
        alice = _user("alice")
        assert await can_access_prebuild(AsyncMock(), alice, alice.id, None) is True

    async def test_stranger_without_project(self):
        assert await can_access_prebuild(AsyncMock(), _user("eve"), uuid.uuid4(), None) is False

    @patch("prewarm.db.queries.find_members_by_team", new_callable=AsyncMock)
    @patch("prewarm.db.queries.find_project_by_id", new_callable=AsyncMock)
    async def test_team_member_of_project(self, mock_project, mock_members):
        alice, bob = _user("alice"), _user("bob")
        team_id = uuid.uuid4()
        mock_project.return_value = _team_project(team_id)
        mock_members.return_value = [SimpleNamespace(user_id=alice.id), SimpleNamespace(user_id=bob.id)]

        with patch("prewarm.db.queries.find_user_by_id", _Users(alice, bob).find_user_by_id):
            assert await can_access_prebuild(AsyncMock(), bob, alice.id, uuid.uuid4()) is True
            assert await can_access_prebuild(AsyncMock(), _user("eve"), alice.id, uuid.uuid4()) is False

    @patch("prewarm.db.queries.find_project_by_id", new_callable=AsyncMock, return_value=None)
    async def test_deleted_project(self, mock_project):
        assert await can_access_prebuild(AsyncMock(), _user("eve"), None, uuid.uuid4()) is False
