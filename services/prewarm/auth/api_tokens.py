"""Dashboard API tokens.

Long-lived Bearer tokens stored as SHA-256 hashes. The raw value is only
available at creation time; every request looks the token up by hash.

Token format: {random_id}.pw.{random_secret}
"""

import hashlib
import secrets
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db.models import APIToken, utc_now
from prewarm.logging_config import get_logger

logger = get_logger(__name__)

# Minimum interval between last_used_at updates (seconds)
LAST_USED_UPDATE_INTERVAL = 60


def _generate_token_id() -> str:
    return f"pt-{secrets.token_hex(8)}"


def _generate_raw_token() -> str:
    return f"{secrets.token_urlsafe(12)}.pw.{secrets.token_urlsafe(32)}"


def hash_token(raw_token: str) -> str:
    """SHA-256 hash a raw token for storage."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


async def create_api_token(
    db: AsyncSession, user_id: uuid.UUID, description: str = ""
) -> tuple[APIToken, str]:
    """Create an API token. Returns (model, raw_token_value)."""
    raw_token = _generate_raw_token()
    api_token = APIToken(
        id=_generate_token_id(),
        token_hash=hash_token(raw_token),
        description=description,
        user_id=user_id,
    )
    db.add(api_token)
    await db.flush()

    logger.info("API token created", token_id=api_token.id, user_id=str(user_id))
    return api_token, raw_token


async def validate_api_token(db: AsyncSession, raw_token: str) -> APIToken | None:
    """Look up a Bearer token by hash, touching last_used_at at most once a minute."""
    result = await db.execute(
        select(APIToken).where(APIToken.token_hash == hash_token(raw_token))
    )
    api_token = result.scalar_one_or_none()
    if api_token is None:
        return None

    now = utc_now()
    if (
        api_token.last_used_at is None
        or (now - api_token.last_used_at).total_seconds() > LAST_USED_UPDATE_INTERVAL
    ):
        await db.execute(
            update(APIToken).where(APIToken.id == api_token.id).values(last_used_at=now)
        )

    return api_token
