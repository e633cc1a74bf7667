"""Tests for commit status propagation — conclusions, check registration, completion, sweep."""

import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, call, patch

import httpx
import pytest

from prewarm.config import StatusMaintainerConfig
from prewarm.db.models import PrebuiltWorkspace, PrebuiltWorkspaceUpdatable, Workspace
from prewarm.redis.bus import HeadlessEvent
from prewarm.services.config_provider import WorkspaceConfig
from prewarm.services.status_maintainer import (
    DEFAULT_STATUS_DESCRIPTION,
    NON_PREBUILT_STATUS_DESCRIPTION,
    PENDING_STATUS_DESCRIPTION,
    PrebuildStatusMaintainer,
    get_conclusion_from_prebuild_state,
)

Q = "prewarm.services.status_maintainer.queries"

PREVENT_MERGE = WorkspaceConfig(
    prebuilds={"github": {"addCheck": "prevent-merge-on-error"}}, origin="repo"
)
PREVENT_MERGE_STORED = {"github": {"prebuilds": {"addCheck": "prevent-merge-on-error"}}, "_origin": "repo"}


def _workspace(pws: PrebuiltWorkspace, config: dict | None = None) -> Workspace:
    return Workspace(
        id=pws.build_workspace_id,
        context_url="https://github.com/acme/app/pull/7",
        config=config or {},
    )


def _pws(state: str, error: str | None = None) -> PrebuiltWorkspace:
    return PrebuiltWorkspace(
        id=uuid.uuid4(),
        clone_url="https://github.com/acme/app.git",
        commit="abc123",
        build_workspace_id=uuid.uuid4(),
        state=state,
        error=error,
    )


def _updatable(pws: PrebuiltWorkspace, context_url: str | None = "https://prewarm/#pr") -> PrebuiltWorkspaceUpdatable:
    return PrebuiltWorkspaceUpdatable(
        id=uuid.uuid4(),
        prebuilt_workspace_id=pws.id,
        owner="acme",
        repo="app",
        commit_sha="def456",
        context_url=context_url,
        installation_id="42",
        is_resolved=False,
    )


def _http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.github.com/repos/acme/app/statuses/def456")
    return httpx.HTTPStatusError(
        "error", request=request, response=httpx.Response(status_code, request=request)
    )


def _session_factory(db):
    @asynccontextmanager
    async def factory():
        yield db

    return factory


@pytest.fixture
def app_client():
    return AsyncMock()


@pytest.fixture
def maintainer(app_client):
    return PrebuildStatusMaintainer(
        app_client, StatusMaintainerConfig(), session_factory=_session_factory(AsyncMock())
    )


class TestConclusion:
    @pytest.mark.parametrize(
        "state,error,expected",
        [
            ("queued", None, "pending"),
            ("building", None, "pending"),
            ("aborted", None, "error"),
            ("timeout", None, "error"),
            ("failed", None, "error"),
            ("available", None, "success"),
            ("available", "", "success"),
            ("available", "tests failed", "failure"),
            ("something-new", None, "error"),
        ],
    )
    def test_mapping(self, state, error, expected):
        assert get_conclusion_from_prebuild_state(_pws(state, error)) == expected


class TestRegisterCheckRun:
    @patch(f"{Q}.attach_updatable_to_prebuild", new_callable=AsyncMock)
    async def test_running_prebuild_gets_updatable_and_pending(self, mock_attach, maintainer, app_client):
        pws = _pws("building")
        db = AsyncMock()

        await maintainer.register_check_run(
            db, "42", pws, owner="acme", repo="app", head_sha="def456", details_url="https://d"
        )

        mock_attach.assert_awaited_once_with(
            db,
            pws.id,
            owner="acme",
            repo="app",
            commit_sha="def456",
            context_url="https://d",
            installation_id="42",
        )
        kwargs = app_client.create_commit_status.await_args.kwargs
        assert kwargs["state"] == "pending"
        assert kwargs["description"] == PENDING_STATUS_DESCRIPTION
        assert kwargs["context"] == "Prewarm"

    @patch(f"{Q}.attach_updatable_to_prebuild", new_callable=AsyncMock)
    async def test_finished_prebuild_gets_terminal_status(self, mock_attach, maintainer, app_client):
        await maintainer.register_check_run(
            AsyncMock(), "42", _pws("available"), owner="acme", repo="app",
            head_sha="def456", details_url="https://d",
        )

        mock_attach.assert_not_awaited()
        kwargs = app_client.create_commit_status.await_args.kwargs
        assert kwargs["state"] == "success"
        assert kwargs["description"] == DEFAULT_STATUS_DESCRIPTION

    @pytest.mark.parametrize("config,expected", [(None, "success"), (PREVENT_MERGE, "error")])
    @patch(f"{Q}.attach_updatable_to_prebuild", new_callable=AsyncMock)
    async def test_already_failed_prebuild(self, mock_attach, maintainer, app_client, config, expected):
        await maintainer.register_check_run(
            AsyncMock(), "42", _pws("failed"), owner="acme", repo="app",
            head_sha="def456", details_url="https://d", config=config,
        )

        kwargs = app_client.create_commit_status.await_args.kwargs
        assert kwargs["state"] == expected
        assert kwargs["description"] == NON_PREBUILT_STATUS_DESCRIPTION

    async def test_without_app_client(self):
        maintainer = PrebuildStatusMaintainer(None, StatusMaintainerConfig())
        with pytest.raises(RuntimeError):
            await maintainer.register_check_run(
                AsyncMock(), "42", _pws("queued"), owner="o", repo="r", head_sha="s", details_url="d"
            )


class TestReport:
    async def test_success(self, maintainer, app_client):
        pws = _pws("available")
        assert await maintainer.report(_updatable(pws), pws) is True
        app_client.create_commit_status.assert_awaited_once()
        args = app_client.create_commit_status.await_args
        assert args.args == ("42", "acme", "app", "def456")
        assert args.kwargs["state"] == "success"

    async def test_failure_passes_check_by_default(self, maintainer, app_client):
        pws = _pws("available", error="boom")
        assert await maintainer.report(_updatable(pws), pws) is True
        kwargs = app_client.create_commit_status.await_args.kwargs
        assert kwargs["state"] == "success"
        assert kwargs["description"] == NON_PREBUILT_STATUS_DESCRIPTION

    async def test_failure_blocks_merge_when_configured(self, maintainer, app_client):
        pws = _pws("available", error="boom")
        assert await maintainer.report(_updatable(pws), pws, config=PREVENT_MERGE) is True
        kwargs = app_client.create_commit_status.await_args.kwargs
        assert kwargs["state"] == "failure"
        assert kwargs["description"] == NON_PREBUILT_STATUS_DESCRIPTION

    async def test_still_running_is_not_settled(self, maintainer, app_client):
        pws = _pws("building")
        assert await maintainer.report(_updatable(pws), pws) is False
        app_client.create_commit_status.assert_not_awaited()

    async def test_forced_running_reports_error(self, maintainer, app_client):
        pws = _pws("queued")
        assert await maintainer.report(_updatable(pws), pws, force=True, config=PREVENT_MERGE) is True
        kwargs = app_client.create_commit_status.await_args.kwargs
        assert kwargs["state"] == "error"
        assert kwargs["description"] == NON_PREBUILT_STATUS_DESCRIPTION

    async def test_not_found_settles(self, maintainer, app_client):
        app_client.create_commit_status.side_effect = _http_error(404)
        pws = _pws("available")
        assert await maintainer.report(_updatable(pws), pws) is True

    async def test_other_provider_error_does_not_settle(self, maintainer, app_client):
        app_client.create_commit_status.side_effect = _http_error(502)
        pws = _pws("available")
        assert await maintainer.report(_updatable(pws), pws) is False

    async def test_transport_error_does_not_settle(self, maintainer, app_client):
        app_client.create_commit_status.side_effect = httpx.ConnectError("down")
        pws = _pws("available")
        assert await maintainer.report(_updatable(pws), pws) is False

    async def test_label_updatable_is_skipped(self, maintainer, app_client):
        pws = _pws("available")
        assert await maintainer.report(_updatable(pws, context_url=None), pws) is False
        app_client.create_commit_status.assert_not_awaited()


class TestHandlePrebuildFinished:
    async def test_resolves_reported_updatables(self, app_client):
        db = AsyncMock()
        maintainer = PrebuildStatusMaintainer(
            app_client, StatusMaintainerConfig(), session_factory=_session_factory(db)
        )
        pws = _pws("available")
        ok, failing = _updatable(pws), _updatable(pws)
        app_client.create_commit_status.side_effect = [None, _http_error(500)]

        with (
            patch(f"{Q}.find_prebuild_by_workspace_id", new_callable=AsyncMock, return_value=pws),
            patch(f"{Q}.find_updatables_for_prebuild", new_callable=AsyncMock, return_value=[ok, failing]),
            patch(f"{Q}.find_workspace_by_id", new_callable=AsyncMock, return_value=_workspace(pws)),
            patch(f"{Q}.mark_updatable_resolved", new_callable=AsyncMock) as mock_mark,
        ):
            await maintainer.handle_prebuild_finished(
                HeadlessEvent(workspace_id=str(pws.build_workspace_id), type="finished")
            )

        mock_mark.assert_awaited_once_with(db, ok.id)

    @pytest.mark.parametrize(
        "stored,expected", [({}, "success"), (PREVENT_MERGE_STORED, "failure")]
    )
    async def test_reports_with_workspace_config(self, app_client, stored, expected):
        maintainer = PrebuildStatusMaintainer(
            app_client, StatusMaintainerConfig(), session_factory=_session_factory(AsyncMock())
        )
        pws = _pws("available", error="tests failed")

        with (
            patch(f"{Q}.find_prebuild_by_workspace_id", new_callable=AsyncMock, return_value=pws),
            patch(f"{Q}.find_updatables_for_prebuild", new_callable=AsyncMock, return_value=[_updatable(pws)]),
            patch(
                f"{Q}.find_workspace_by_id",
                new_callable=AsyncMock,
                return_value=_workspace(pws, stored),
            ) as mock_workspace,
            patch(f"{Q}.mark_updatable_resolved", new_callable=AsyncMock),
        ):
            await maintainer.handle_prebuild_finished(
                HeadlessEvent(workspace_id=str(pws.build_workspace_id), type="finished")
            )

        assert mock_workspace.await_args.args[1] == pws.build_workspace_id
        assert app_client.create_commit_status.await_args.kwargs["state"] == expected

    async def test_unknown_workspace(self, maintainer, app_client):
        with (
            patch(f"{Q}.find_prebuild_by_workspace_id", new_callable=AsyncMock, return_value=None),
            patch(f"{Q}.find_updatables_for_prebuild", new_callable=AsyncMock) as mock_find,
        ):
            await maintainer.handle_prebuild_finished(
                HeadlessEvent(workspace_id=str(uuid.uuid4()), type="finished")
            )
        mock_find.assert_not_awaited()

    async def test_invalid_workspace_id(self, maintainer):
        with patch(f"{Q}.find_prebuild_by_workspace_id", new_callable=AsyncMock) as mock_find:
            await maintainer.handle_prebuild_finished(HeadlessEvent(workspace_id="nope", type="finished"))
        mock_find.assert_not_awaited()


class TestSweep:
    async def test_stale_updatable_resolved_with_current_state(self, app_client):
        db = AsyncMock()
        maintainer = PrebuildStatusMaintainer(
            app_client, StatusMaintainerConfig(), session_factory=_session_factory(db)
        )
        finished = _pws("available")
        stuck = _pws("building")
        rows = [(_updatable(finished), finished), (_updatable(stuck), stuck)]

        with (
            patch(f"{Q}.get_unresolved_updatables", new_callable=AsyncMock, return_value=rows) as mock_get,
            patch(
                f"{Q}.find_workspace_by_id",
                new_callable=AsyncMock,
                return_value=_workspace(stuck, PREVENT_MERGE_STORED),
            ),
            patch(f"{Q}.mark_updatable_resolved", new_callable=AsyncMock) as mock_mark,
        ):
            resolved = await maintainer.sweep()

        assert resolved == 2
        assert mock_mark.await_args_list == [call(db, rows[0][0].id), call(db, rows[1][0].id)]
        states = [c.kwargs["state"] for c in app_client.create_commit_status.await_args_list]
        assert states == ["success", "error"]
        kwargs = mock_get.await_args.kwargs
        assert kwargs["older_than"].total_seconds() == 6 * 3600
        assert kwargs["newer_than"].total_seconds() == 24 * 3600

    async def test_one_failure_does_not_stop_the_sweep(self, app_client):
        maintainer = PrebuildStatusMaintainer(
            app_client, StatusMaintainerConfig(), session_factory=_session_factory(AsyncMock())
        )
        a, b = _pws("available"), _pws("available")
        rows = [(_updatable(a), a), (_updatable(b), b)]
        maintainer.report = AsyncMock(side_effect=[RuntimeError("boom"), True])

        with (
            patch(f"{Q}.get_unresolved_updatables", new_callable=AsyncMock, return_value=rows),
            patch(f"{Q}.find_workspace_by_id", new_callable=AsyncMock, return_value=None),
            patch(f"{Q}.mark_updatable_resolved", new_callable=AsyncMock) as mock_mark,
        ):
            assert await maintainer.sweep() == 1
        mock_mark.assert_awaited_once()
