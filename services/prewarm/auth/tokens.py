"""Prebuild webhook tokens.

When a webhook is installed on a repository, the installing user gets a
fresh random token bound to an internal marker identity. The provider is
configured to send that token back (as a bearer string or as an HMAC key),
and webhook intake looks it up again to attribute the event to the user.

Tokens are replaced, never accumulated: creating a token deletes every
existing token of the identity with the same scope set first.
"""

import secrets
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db import queries
from prewarm.db.models import Identity, Token, User
from prewarm.logging_config import get_logger
from prewarm.services.encryption_service import decrypt_value, encrypt_value

logger = get_logger(__name__)

# Auth provider id of the marker identity that owns prebuild tokens
BUILTIN_IDENTITY_PROVIDER = "Prewarm"

# Purpose marker carried in every webhook token's scopes
PREBUILD_TOKEN_SCOPE = "prebuilds"


def generate_token_value() -> str:
    return secrets.token_hex(32)


async def get_or_create_marker_identity(db: AsyncSession, user: User) -> Identity:
    """Return the user's marker identity, creating it on first use."""
    identity = await queries.find_identity(db, user.id, BUILTIN_IDENTITY_PROVIDER)
    if identity is not None:
        return identity

    identity = Identity(
        user_id=user.id,
        auth_provider_id=BUILTIN_IDENTITY_PROVIDER,
        auth_id=str(user.id),
        auth_name=user.name,
    )
    db.add(identity)
    await db.flush()
    logger.info("Marker identity created", user_id=str(user.id))
    return identity


async def create_prebuild_token(
    db: AsyncSession,
    user: User,
    scopes: list[str],
    expiry_date: datetime | None = None,
) -> str:
    """Mint a token with the given scopes. Returns the raw value.

    Existing tokens of the marker identity with an identical scope set are
    deleted before the new one is added.
    """
    identity = await get_or_create_marker_identity(db, user)
    wanted = set(scopes)

    existing = await queries.find_tokens_for_identity(db, identity)
    stale = [t.id for t in existing if set(t.scopes) == wanted]
    await queries.delete_tokens(db, stale)

    value = generate_token_value()
    await queries.add_token(db, identity, encrypt_value(value), sorted(wanted), expiry_date)

    logger.info(
        "Prebuild token created",
        user_id=str(user.id),
        scopes=sorted(wanted),
        replaced=len(stale),
    )
    return value


async def find_prebuild_tokens(db: AsyncSession, user: User) -> list[tuple[Token, str]]:
    """Decrypted (token, value) pairs of the user's prebuild-scoped tokens.

    Returns an empty list when the user has no marker identity.
    """
    identity = await queries.find_identity(db, user.id, BUILTIN_IDENTITY_PROVIDER)
    if identity is None:
        return []

    pairs: list[tuple[Token, str]] = []
    for token in await queries.find_tokens_for_identity(db, identity):
        if PREBUILD_TOKEN_SCOPE not in token.scopes:
            continue
        pairs.append((token, decrypt_value(token.value_encrypted)))
    return pairs
