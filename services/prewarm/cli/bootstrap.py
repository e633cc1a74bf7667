"""
Bootstrap script for creating the initial dashboard user and API token.

Idempotent: skips if resources already exist.
Run via: python -m prewarm.cli.bootstrap

Reads configuration from environment variables:
  PREWARM_BOOTSTRAP_USER_NAME         - User name (required)
  PREWARM_BOOTSTRAP_AUTH_PROVIDER_ID  - Auth provider of a Git host identity (optional)
  PREWARM_BOOTSTRAP_AUTH_ID           - User id on that Git host (optional)
  DATABASE_URL                        - PostgreSQL connection URL
"""

import asyncio
import logging
import os
import sys

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from prewarm.auth.api_tokens import create_api_token
from prewarm.db.models import APIToken, Identity, User

# Use stdlib logging — structlog isn't configured yet during bootstrap
logger = logging.getLogger("prewarm.bootstrap")
logging.basicConfig(level=logging.INFO, format="%(message)s")


async def bootstrap() -> None:
    user_name = os.environ.get("PREWARM_BOOTSTRAP_USER_NAME", "").strip()
    auth_provider_id = os.environ.get("PREWARM_BOOTSTRAP_AUTH_PROVIDER_ID", "").strip()
    auth_id = os.environ.get("PREWARM_BOOTSTRAP_AUTH_ID", "").strip()
    database_url = os.environ.get("DATABASE_URL", "").strip()

    if not user_name:
        logger.error("PREWARM_BOOTSTRAP_USER_NAME is required")
        sys.exit(1)

    if not database_url:
        logger.error("DATABASE_URL is required")
        sys.exit(1)

    if bool(auth_provider_id) != bool(auth_id):
        logger.error("PREWARM_BOOTSTRAP_AUTH_PROVIDER_ID and PREWARM_BOOTSTRAP_AUTH_ID go together")
        sys.exit(1)

    # Ensure async driver
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        logger.info("Connected to database")

    async with AsyncSession(engine, expire_on_commit=False) as session:
        async with session.begin():
            result = await session.execute(select(User).where(User.name == user_name))
            user = result.scalars().first()

            if user:
                logger.info("User %s already exists, skipping user creation", user_name)
            else:
                user = User(name=user_name)
                session.add(user)
                await session.flush()
                logger.info("Created user: %s", user_name)

            if auth_provider_id:
                result = await session.execute(
                    select(Identity).where(
                        Identity.user_id == user.id,
                        Identity.auth_provider_id == auth_provider_id,
                    )
                )
                if result.scalar_one_or_none():
                    logger.info("Identity for %s already exists, skipping", auth_provider_id)
                else:
                    session.add(
                        Identity(
                            user_id=user.id,
                            auth_provider_id=auth_provider_id,
                            auth_id=auth_id,
                            auth_name=user_name,
                        )
                    )
                    logger.info("Linked %s identity %s", auth_provider_id, auth_id)

            result = await session.execute(select(APIToken).where(APIToken.user_id == user.id))
            if result.scalars().first():
                logger.info("User %s already has an API token, skipping", user_name)
            else:
                _token, raw_token = await create_api_token(session, user.id, "bootstrap")
                logger.info("API token: %s", raw_token)
                logger.warning("IMPORTANT: Save this token now. It will not be shown again.")

    await engine.dispose()
    logger.info("Bootstrap complete")


def main() -> None:
    asyncio.run(bootstrap())


if __name__ == "__main__":
    main()
