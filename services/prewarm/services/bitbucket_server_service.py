"""Bitbucket Server / Data Center REST client (https://{host}/rest/api/1.0).

Repositories live either under a project ("projects/{KEY}") or under a
user ("users/{slug}"); every call takes the repo kind alongside the owner.
"""

import httpx

from prewarm.logging_config import get_logger

logger = get_logger(__name__)

ADMIN_PERMISSIONS = frozenset({"REPO_ADMIN", "PROJECT_ADMIN"})


def api_url_for_host(host: str) -> str:
    return f"https://{host}/rest/api/1.0"


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class BitbucketServerClient:
    def __init__(self, api_url: str) -> None:
        self.api_url = api_url.rstrip("/")

    @property
    def base_url(self) -> str:
        return self.api_url.removesuffix("/rest/api/1.0")

    def _repo_url(self, repo_kind: str, owner: str, repo: str) -> str:
        return f"{self.api_url}/{repo_kind}/{owner}/repos/{repo}"

    async def _get(self, token: str, url: str, params: dict | None = None) -> dict | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(url, params=params, headers=_headers(token))
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def get_repository(
        self, token: str, repo_kind: str, owner: str, repo: str
    ) -> dict | None:
        return await self._get(token, self._repo_url(repo_kind, owner, repo))

    async def get_default_branch(
        self, token: str, repo_kind: str, owner: str, repo: str
    ) -> str | None:
        data = await self._get(token, f"{self._repo_url(repo_kind, owner, repo)}/default-branch")
        return data["displayId"] if data else None

    async def get_branch_sha(
        self, token: str, repo_kind: str, owner: str, repo: str, branch: str
    ) -> str | None:
        data = await self._get(
            token,
            f"{self._repo_url(repo_kind, owner, repo)}/branches",
            params={"filterText": branch, "boostMatches": "true"},
        )
        for value in (data or {}).get("values", []):
            if value.get("displayId") == branch:
                return value["latestCommit"]
        return None

    async def get_file_content(
        self, token: str, repo_kind: str, owner: str, repo: str, ref: str, path: str
    ) -> str | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._repo_url(repo_kind, owner, repo)}/raw/{path}",
                params={"at": ref},
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.text

    async def get_commit(
        self, token: str, repo_kind: str, owner: str, repo: str, sha: str
    ) -> dict | None:
        return await self._get(token, f"{self._repo_url(repo_kind, owner, repo)}/commits/{sha}")

    async def list_commit_shas(
        self, token: str, repo_kind: str, owner: str, repo: str, sha: str, max_depth: int
    ) -> list[str]:
        data = await self._get(
            token,
            f"{self._repo_url(repo_kind, owner, repo)}/commits",
            params={"until": sha, "limit": max_depth},
        )
        return [c["id"] for c in (data or {}).get("values", [])][:max_depth]

    async def current_username(self, token: str) -> str:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.base_url}/plugins/servlet/applinks/whoami", headers=_headers(token)
            )
            resp.raise_for_status()
            return resp.text.strip()

    async def get_permission(
        self, token: str, username: str, repo_kind: str, owner: str, repo: str
    ) -> str | None:
        """The user's repository permission, falling back to the project permission."""
        data = await self._get(token, f"{self._repo_url(repo_kind, owner, repo)}/permissions/users")
        for entry in (data or {}).get("values", []):
            if entry["user"]["name"] == username:
                return entry["permission"]

        if repo_kind != "projects":
            return None
        data = await self._get(token, f"{self.api_url}/projects/{owner}/permissions/users")
        for entry in (data or {}).get("values", []):
            if entry["user"]["name"] == username:
                return entry["permission"]
        return None

    async def list_webhooks(self, token: str, repo_kind: str, owner: str, repo: str) -> list[dict]:
        data = await self._get(token, f"{self._repo_url(repo_kind, owner, repo)}/webhooks")
        return (data or {}).get("values", [])

    async def create_webhook(
        self, token: str, repo_kind: str, owner: str, repo: str, url: str
    ) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self._repo_url(repo_kind, owner, repo)}/webhooks",
                json={
                    "name": "Prewarm prebuilds",
                    "events": ["repo:refs_changed"],
                    "url": url,
                    "active": True,
                },
                headers=_headers(token),
            )
            resp.raise_for_status()
            return resp.json()

    async def delete_webhook(
        self, token: str, repo_kind: str, owner: str, repo: str, webhook_id: int | str
    ) -> None:
        async with httpx.AsyncClient() as client:
            resp = await client.delete(
                f"{self._repo_url(repo_kind, owner, repo)}/webhooks/{webhook_id}",
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return
            resp.raise_for_status()
