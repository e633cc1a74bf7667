"""Per-user provider access tokens.

Tokens are acquired and refreshed by the account subsystem and stored on
the identity the user holds with the host's auth provider. This module
only reads the newest non-expired one.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.config import ProviderConfig
from prewarm.db import queries
from prewarm.db.models import User
from prewarm.errors import MissingTokenError
from prewarm.services.encryption_service import decrypt_value


async def get_token_for_host(db: AsyncSession, user: User, provider: ProviderConfig) -> str:
    identity = await queries.find_identity(db, user.id, provider.auth_provider_id)
    if identity is None:
        raise MissingTokenError(provider.host)

    tokens = await queries.find_tokens_for_identity(db, identity)
    if not tokens:
        raise MissingTokenError(provider.host)
    return decrypt_value(tokens[-1].value_encrypted)
