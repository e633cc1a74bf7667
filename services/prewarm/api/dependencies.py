"""FastAPI dependencies for authentication and service wiring.

Dashboard endpoints authenticate with a Bearer API token and act as the
token's user. Webhook endpoints do not use these; they authenticate per
provider scheme inside the webhook pipeline.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.auth.api_tokens import validate_api_token
from prewarm.db import queries
from prewarm.db.models import User
from prewarm.db.session import get_db
from prewarm.logging_config import get_logger
from prewarm.services.container import Services

logger = get_logger(__name__)
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the Bearer API token to its user. Blocked users get 403."""
    api_token = await validate_api_token(db, credentials.credentials)
    if api_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await queries.find_user_by_id(db, api_token.user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token owner no longer exists",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if user.blocked:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is blocked")
    return user


def get_services(request: Request) -> Services:
    """Service graph built at startup and stored on app.state."""
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready"
        )
    return services
