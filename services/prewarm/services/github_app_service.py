"""GitHub App client.

Handles app JWT generation, installation token caching, app webhook
signature validation, and the calls made as the installation: commit
statuses and pull request decorations.
"""

import hashlib
import hmac
import time
from pathlib import Path

import httpx
import jwt

from prewarm.config import GitHubAppConfig
from prewarm.logging_config import get_logger

logger = get_logger(__name__)

# Installation token cache: {installation_id: (token, expires_at_epoch)}
_token_cache: dict[str, tuple[str, float]] = {}


def _generate_app_jwt(app_id: int, private_key: str) -> str:
    """Generate a short-lived JWT for GitHub App authentication.

    The JWT is signed with RS256 using the app's private key and has a
    10-minute lifetime (GitHub maximum).
    """
    now = int(time.time())
    payload = {
        "iat": now - 60,  # 60s clock skew allowance
        "exp": now + (10 * 60),
        "iss": app_id,
    }
    return jwt.encode(payload, private_key, algorithm="RS256")


def compute_signature(secret: str, payload: bytes) -> str:
    """X-Hub-Signature-256 header value for payload signed with secret."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def signature_matches(secret: str, payload: bytes, signature_header: str) -> bool:
    if not signature_header.startswith("sha256="):
        return False
    return hmac.compare_digest(compute_signature(secret, payload), signature_header)


class GitHubAppClient:
    def __init__(self, config: GitHubAppConfig) -> None:
        self.config = config
        self.api_url = config.api_url.rstrip("/")

    def _private_key(self) -> str:
        if self.config.private_key:
            return self.config.private_key
        if self.config.private_key_path:
            return Path(self.config.private_key_path).read_text()
        raise ValueError("GitHub App has no private key configured")

    def validate_webhook_signature(self, payload: bytes, signature_header: str) -> bool:
        """Validate the app webhook HMAC. Always valid when no secret is configured."""
        if not self.config.webhook_secret:
            return True
        return signature_matches(self.config.webhook_secret, payload, signature_header)

    async def get_installation_token(self, installation_id: str) -> str:
        """Installation access token, cached for 50 of its 60 minutes."""
        cached = _token_cache.get(installation_id)
        if cached:
            token, expires_at = cached
            if time.time() < expires_at:
                return token

        app_jwt = _generate_app_jwt(self.config.app_id, self._private_key())
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.api_url}/app/installations/{installation_id}/access_tokens",
                headers={
                    "Authorization": f"Bearer {app_jwt}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            )
            resp.raise_for_status()
            data = resp.json()

        token = data["token"]
        _token_cache[installation_id] = (token, time.time() + 50 * 60)
        logger.debug("GitHub installation token obtained", installation_id=installation_id)
        return token

    async def _headers(self, installation_id: str) -> dict[str, str]:
        token = await self.get_installation_token(installation_id)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def create_commit_status(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        sha: str,
        *,
        state: str,
        target_url: str,
        description: str,
        context: str,
    ) -> None:
        headers = await self._headers(installation_id)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.api_url}/repos/{owner}/{repo}/statuses/{sha}",
                json={
                    "state": state,
                    "target_url": target_url,
                    "description": description,
                    "context": context,
                },
                headers=headers,
            )
            resp.raise_for_status()

    async def update_pull_request_body(
        self, installation_id: str, owner: str, repo: str, number: int, body: str
    ) -> None:
        headers = await self._headers(installation_id)
        async with httpx.AsyncClient() as client:
            resp = await client.patch(
                f"{self.api_url}/repos/{owner}/{repo}/pulls/{number}",
                json={"body": body},
                headers=headers,
            )
            resp.raise_for_status()

    async def list_issue_comments(
        self, installation_id: str, owner: str, repo: str, number: int
    ) -> list[dict]:
        headers = await self._headers(installation_id)
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.api_url}/repos/{owner}/{repo}/issues/{number}/comments",
                params={"per_page": 100},
                headers=headers,
            )
            resp.raise_for_status()
            return resp.json()

    async def create_issue_comment(
        self, installation_id: str, owner: str, repo: str, number: int, body: str
    ) -> None:
        headers = await self._headers(installation_id)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.api_url}/repos/{owner}/{repo}/issues/{number}/comments",
                json={"body": body},
                headers=headers,
            )
            resp.raise_for_status()
