"""GitLab REST client (gitlab.com and self-hosted).

Calls are made with the acting user's OAuth token. Projects are addressed
by their URL-encoded full path, so nested groups work without an id lookup.
"""

from urllib.parse import quote as url_quote

import httpx

from prewarm.logging_config import get_logger

logger = get_logger(__name__)

# Minimum access level required to manage project hooks
MAINTAINER_ACCESS_LEVEL = 40


def api_url_for_host(host: str) -> str:
    return f"https://{host}/api/v4"


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _project_path(owner: str, repo: str) -> str:
    """URL-encode the project path for GitLab API."""
    return url_quote(f"{owner}/{repo}", safe="")


class GitLabClient:
    def __init__(self, api_url: str) -> None:
        self.api_url = api_url.rstrip("/")

    def _project_url(self, owner: str, repo: str) -> str:
        return f"{self.api_url}/projects/{_project_path(owner, repo)}"

    async def get_project(self, token: str, owner: str, repo: str) -> dict | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(self._project_url(owner, repo), headers=_headers(token))
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def get_branch_sha(self, token: str, owner: str, repo: str, branch: str) -> str | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._project_url(owner, repo)}/repository/branches/{url_quote(branch, safe='')}",
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()["commit"]["id"]

    async def get_file_content(
        self, token: str, owner: str, repo: str, ref: str, path: str
    ) -> str | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._project_url(owner, repo)}/repository/files/{url_quote(path, safe='')}/raw",
                params={"ref": ref},
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.text

    async def get_commit(self, token: str, owner: str, repo: str, sha: str) -> dict | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._project_url(owner, repo)}/repository/commits/{sha}",
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def list_commit_shas(
        self, token: str, owner: str, repo: str, sha: str, max_depth: int
    ) -> list[str]:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._project_url(owner, repo)}/repository/commits",
                params={"ref_name": sha, "per_page": min(max_depth, 100)},
                headers=_headers(token),
            )
            resp.raise_for_status()
        return [c["id"] for c in resp.json()][:max_depth]

    async def get_access_level(self, token: str, owner: str, repo: str) -> int:
        """Highest of the user's project and group access levels (0 if none)."""
        project = await self.get_project(token, owner, repo)
        if project is None:
            return 0
        permissions = project.get("permissions") or {}
        levels = [
            (permissions.get(kind) or {}).get("access_level", 0)
            for kind in ("project_access", "group_access")
        ]
        return max(levels)

    async def list_hooks(self, token: str, owner: str, repo: str) -> list[dict]:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._project_url(owner, repo)}/hooks", headers=_headers(token)
            )
            resp.raise_for_status()
            return resp.json()

    async def create_hook(
        self, token: str, owner: str, repo: str, url: str, secret_token: str
    ) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self._project_url(owner, repo)}/hooks",
                json={
                    "url": url,
                    "token": secret_token,
                    "push_events": True,
                    "enable_ssl_verification": True,
                },
                headers=_headers(token),
            )
            resp.raise_for_status()
            return resp.json()

    async def delete_hook(self, token: str, owner: str, repo: str, hook_id: int | str) -> None:
        async with httpx.AsyncClient() as client:
            resp = await client.delete(
                f"{self._project_url(owner, repo)}/hooks/{hook_id}", headers=_headers(token)
            )
            if resp.status_code == 404:
                return
            resp.raise_for_status()
