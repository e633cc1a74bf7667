"""Attribute inbound webhooks to users through their prebuild tokens.

Token-based providers (GitLab, Bitbucket, Bitbucket Server) send back the
secret configured at install time, "{user_id}|{token_value}". Signature-based
providers (GitHub Enterprise) sign the body with that secret instead, so the
matching user is found by trying the candidates' tokens one by one.
"""

import hmac
from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.auth.tokens import BUILTIN_IDENTITY_PROVIDER, find_prebuild_tokens
from prewarm.db import queries
from prewarm.db.models import User
from prewarm.errors import WebhookAuthError
from prewarm.logging_config import get_logger
from prewarm.services.encryption_service import decrypt_value
from prewarm.services.github_app_service import signature_matches

logger = get_logger(__name__)


def split_secret(secret: str) -> tuple[str, str]:
    """Split a webhook secret into (user_id, token_value)."""
    user_id, sep, value = secret.partition("|")
    if not sep or not user_id or not value:
        raise WebhookAuthError("Malformed webhook token")
    return user_id, value


async def verify_secret_token(
    db: AsyncSession, secret: str | None, required_scopes: Iterable[str] = ()
) -> User:
    """Resolve the user a "{user_id}|{value}" secret belongs to.

    The value must match one of the user's marker identity tokens, and that
    token must carry every scope in required_scopes.
    """
    if not secret:
        raise WebhookAuthError("No webhook token given")
    user_id, value = split_secret(secret)

    user = await queries.find_user_by_id(db, user_id)
    if user is None:
        raise WebhookAuthError(f"No user found for id {user_id}")
    if user.blocked:
        raise WebhookAuthError(f"Blocked user {user.id} tried to start prebuild")

    identity = await queries.find_identity(db, user.id, BUILTIN_IDENTITY_PROVIDER)
    if identity is None:
        raise WebhookAuthError(f"User {user.id} has no prebuild identity")

    wanted = set(required_scopes)
    for token in await queries.find_tokens_for_identity(db, identity):
        if not hmac.compare_digest(decrypt_value(token.value_encrypted), value):
            continue
        if not wanted.issubset(token.scopes):
            raise WebhookAuthError(f"Token of user {user.id} lacks the required scopes")
        return user

    raise WebhookAuthError(f"No matching token found for user {user.id}")


async def verify_signature(
    db: AsyncSession, candidates: Iterable[User], body: bytes, signature: str | None
) -> User:
    """Find the candidate whose prebuild token signed the body."""
    if not signature:
        raise WebhookAuthError("No webhook signature given")

    for user in candidates:
        for _token, value in await find_prebuild_tokens(db, user):
            if not signature_matches(f"{user.id}|{value}", body, signature):
                continue
            if user.blocked:
                raise WebhookAuthError(f"Blocked user {user.id} tried to start prebuild")
            return user

    raise WebhookAuthError("No user found for webhook signature")
