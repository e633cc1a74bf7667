"""
Top-level test configuration for Prewarm.
"""

import os
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from cryptography.fernet import Fernet

# Ensure test-friendly defaults
os.environ.setdefault("PREWARM_JSON_LOGS", "false")
os.environ.setdefault("PREWARM_LOG_LEVEL", "DEBUG")
os.environ.setdefault("PREWARM_HOST_URL", "https://prewarm.example.com")
os.environ.setdefault("PREWARM_ENCRYPTION_KEY", Fernet.generate_key().decode())


@pytest.fixture(autouse=True)
def _encryption():
    from prewarm.services.encryption_service import init_encryption

    init_encryption()


class FakeTokenStore:
    """In-memory users, identities and tokens behind the token queries."""

    def __init__(self) -> None:
        self.users: dict[uuid.UUID, object] = {}
        self.identities: list = []
        self.tokens: list = []

    def session(self) -> MagicMock:
        """A session mock whose db.add stores identities in this store."""
        from prewarm.db.models import Identity

        def add(obj):
            if obj.id is None:
                obj.id = uuid.uuid4()
            if isinstance(obj, Identity):
                self.identities.append(obj)

        db = MagicMock()
        db.add.side_effect = add
        db.flush = AsyncMock()
        return db

    async def find_user_by_id(self, db, user_id):
        if isinstance(user_id, str):
            try:
                user_id = uuid.UUID(user_id)
            except ValueError:
                return None
        return self.users.get(user_id)

    async def find_identity(self, db, user_id, auth_provider_id):
        for identity in self.identities:
            if identity.user_id == user_id and identity.auth_provider_id == auth_provider_id:
                return identity
        return None

    async def find_tokens_for_identity(self, db, identity):
        return [t for t in self.tokens if t.identity_id == identity.id]

    async def add_token(self, db, identity, value_encrypted, scopes, expiry_date=None):
        from prewarm.db.models import Token

        token = Token(
            id=uuid.uuid4(),
            identity_id=identity.id,
            value_encrypted=value_encrypted,
            scopes=scopes,
            expiry_date=expiry_date,
        )
        self.tokens.append(token)
        return token

    async def delete_tokens(self, db, token_ids):
        self.tokens = [t for t in self.tokens if t.id not in token_ids]


@pytest.fixture
def token_store():
    store = FakeTokenStore()
    names = [
        "find_user_by_id",
        "find_identity",
        "find_tokens_for_identity",
        "add_token",
        "delete_tokens",
    ]
    patchers = [patch(f"prewarm.db.queries.{name}", getattr(store, name)) for name in names]
    for p in patchers:
        p.start()
    yield store
    for p in patchers:
        p.stop()


class FakeProviderAPI:
    """Canned provider REST responses keyed by (method, URL without query)."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], tuple[int, dict]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, status_code: int = 200, **response) -> None:
        self.routes[(method, url)] = (status_code, response)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).partition("?")[0]
        status_code, response = self.routes.get((request.method, url), (404, {}))
        return httpx.Response(status_code, **response)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def provider_api():
    """Route every httpx.AsyncClient created by the code under test to a FakeProviderAPI."""
    api = FakeProviderAPI()
    real_client = httpx.AsyncClient

    def client(**kwargs):
        return real_client(transport=httpx.MockTransport(api.handle), **kwargs)

    with patch("httpx.AsyncClient", client):
        yield api
