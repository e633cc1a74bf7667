"""GitHub REST/GraphQL client for github.com and GitHub Enterprise.

Calls are made with the acting user's OAuth token. The same client serves
context parsing (repository, branch, commit, file lookups) and webhook
installation (permission check, hook CRUD).
"""

import httpx

from prewarm.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"


def api_url_for_host(host: str) -> str:
    """REST base URL: api.github.com for github.com, /api/v3 on Enterprise hosts."""
    if host == "github.com":
        return DEFAULT_GITHUB_API_URL
    return f"https://{host}/api/v3"


def _headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }


class GitHubClient:
    def __init__(self, api_url: str = DEFAULT_GITHUB_API_URL) -> None:
        self.api_url = api_url.rstrip("/")

    @property
    def graphql_url(self) -> str:
        # Enterprise serves GraphQL at /api/graphql next to /api/v3
        if self.api_url.endswith("/api/v3"):
            return self.api_url.removesuffix("/v3") + "/graphql"
        return f"{self.api_url}/graphql"

    async def get_repository(self, token: str, owner: str, repo: str) -> dict | None:
        """Repository JSON, or None if it doesn't exist or isn't accessible."""
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{self.api_url}/repos/{owner}/{repo}", headers=_headers(token))
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def get_branch_sha(self, token: str, owner: str, repo: str, branch: str) -> str | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/repos/{owner}/{repo}/branches/{branch}",
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()["commit"]["sha"]

    async def get_pull_request(
        self, token: str, owner: str, repo: str, number: int
    ) -> dict | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/repos/{owner}/{repo}/pulls/{number}",
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()

    async def get_file_content(
        self, token: str, owner: str, repo: str, ref: str, path: str
    ) -> str | None:
        """Raw file content at ref, or None if the file doesn't exist."""
        headers = _headers(token)
        headers["Accept"] = "application/vnd.github.raw+json"
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/repos/{owner}/{repo}/contents/{path}",
                params={"ref": ref},
                headers=headers,
            )
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.text

    async def get_commit(self, token: str, owner: str, repo: str, sha: str) -> dict | None:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/repos/{owner}/{repo}/commits/{sha}",
                headers=_headers(token),
            )
            if resp.status_code in (404, 422):
                return None
            resp.raise_for_status()
            return resp.json()

    async def list_commit_shas(
        self, token: str, owner: str, repo: str, sha: str, max_depth: int
    ) -> list[str]:
        """Ancestors of sha (inclusive), newest first, at most max_depth entries."""
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/repos/{owner}/{repo}/commits",
                params={"sha": sha, "per_page": min(max_depth, 100)},
                headers=_headers(token),
            )
            resp.raise_for_status()
        return [c["sha"] for c in resp.json()][:max_depth]

    async def get_viewer_permission(self, token: str, owner: str, repo: str) -> str | None:
        """The user's permission on the repository: ADMIN, MAINTAIN, WRITE, TRIAGE or READ."""
        query = """
            query ($owner: String!, $name: String!) {
                repository(owner: $owner, name: $name) { viewerPermission }
            }
        """
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                self.graphql_url,
                json={"query": query, "variables": {"owner": owner, "name": repo}},
                headers=_headers(token),
            )
            resp.raise_for_status()
        repository = (resp.json().get("data") or {}).get("repository")
        if not repository:
            return None
        return repository.get("viewerPermission")

    async def list_hooks(self, token: str, owner: str, repo: str) -> list[dict]:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/repos/{owner}/{repo}/hooks",
                params={"per_page": 100},
                headers=_headers(token),
            )
            resp.raise_for_status()
            return resp.json()

    async def create_hook(
        self, token: str, owner: str, repo: str, url: str, secret: str, events: list[str]
    ) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.api_url}/repos/{owner}/{repo}/hooks",
                json={
                    "name": "web",
                    "active": True,
                    "events": events,
                    "config": {"url": url, "content_type": "json", "secret": secret},
                },
                headers=_headers(token),
            )
            resp.raise_for_status()
            return resp.json()

    async def delete_hook(self, token: str, owner: str, repo: str, hook_id: int | str) -> None:
        async with httpx.AsyncClient() as client:
            resp = await client.delete(
                f"{self.api_url}/repos/{owner}/{repo}/hooks/{hook_id}",
                headers=_headers(token),
            )
            if resp.status_code == 404:
                return
            resp.raise_for_status()
