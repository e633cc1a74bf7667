"""Bitbucket Cloud REST client (api.bitbucket.org/2.0)."""

from urllib.parse import quote as url_quote

import httpx

from prewarm.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_BITBUCKET_API_URL = "https://api.bitbucket.org/2.0"


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class BitbucketClient:
    def __init__(self, api_url: str = DEFAULT_BITBUCKET_API_URL) -> None:
        self.api_url = api_url.rstrip("/")

    def _repo_url(self, workspace: str, repo: str) -> str:
        return f"{self.api_url}/repositories/{workspace}/{repo}"

    async def get_repository(self, token: str, workspace: str, repo: str) -> dict | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(self._repo_url(workspace, repo), headers=_headers(token))
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def get_branch_sha(self, token: str, workspace: str, repo: str, branch: str) -> str | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._repo_url(workspace, repo)}/refs/branches/{url_quote(branch, safe='')}",
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()["target"]["hash"]

    async def get_file_content(
        self, token: str, workspace: str, repo: str, ref: str, path: str
    ) -> str | None:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            resp = await client.get(
                f"{self._repo_url(workspace, repo)}/src/{ref}/{path}", headers=_headers(token)
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.text

    async def get_commit(self, token: str, workspace: str, repo: str, sha: str) -> dict | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._repo_url(workspace, repo)}/commit/{sha}", headers=_headers(token)
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def list_commit_shas(
        self, token: str, workspace: str, repo: str, sha: str, max_depth: int
    ) -> list[str]:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._repo_url(workspace, repo)}/commits/{sha}",
                params={"pagelen": min(max_depth, 100)},
                headers=_headers(token),
            )
            resp.raise_for_status()
        return [c["hash"] for c in resp.json().get("values", [])][:max_depth]

    async def get_repository_permission(self, token: str, workspace: str, repo: str) -> str | None:
        """The user's permission on the repository: admin, write or read."""
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/user/permissions/repositories",
                params={"q": f'repository.full_name="{workspace}/{repo}"'},
                headers=_headers(token),
            )
            resp.raise_for_status()
        values = resp.json().get("values", [])
        if not values:
            return None
        return values[0].get("permission")

    async def list_hooks(self, token: str, workspace: str, repo: str) -> list[dict]:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._repo_url(workspace, repo)}/hooks", headers=_headers(token)
            )
            resp.raise_for_status()
            return resp.json().get("values", [])

    async def create_hook(self, token: str, workspace: str, repo: str, url: str) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self._repo_url(workspace, repo)}/hooks",
                json={
                    "description": "Prewarm prebuilds",
                    "url": url,
                    "active": True,
                    "events": ["repo:push"],
                },
                headers=_headers(token),
            )
            resp.raise_for_status()
            return resp.json()

    async def delete_hook(self, token: str, workspace: str, repo: str, hook_uuid: str) -> None:
        async with httpx.AsyncClient() as client:
            resp = await client.delete(
                f"{self._repo_url(workspace, repo)}/hooks/{hook_uuid}", headers=_headers(token)
            )
            if resp.status_code == 404:
                return
            resp.raise_for_status()
