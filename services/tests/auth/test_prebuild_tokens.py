"""Tests for prebuild webhook tokens — marker identity, replacement, lookup."""

import uuid

from prewarm.auth.tokens import (
    BUILTIN_IDENTITY_PROVIDER,
    PREBUILD_TOKEN_SCOPE,
    create_prebuild_token,
    find_prebuild_tokens,
)
from prewarm.db.models import User
from prewarm.services.encryption_service import decrypt_value

CLONE_URL = "https://gitlab.com/acme/app.git"


def _user() -> User:
    return User(id=uuid.uuid4(), name="alice", blocked=False)


class TestCreatePrebuildToken:
    async def test_creates_marker_identity(self, token_store):
        user = _user()
        await create_prebuild_token(token_store.session(), user, [PREBUILD_TOKEN_SCOPE])

        assert len(token_store.identities) == 1
        identity = token_store.identities[0]
        assert identity.auth_provider_id == BUILTIN_IDENTITY_PROVIDER
        assert identity.user_id == user.id

    async def test_value_is_encrypted_at_rest(self, token_store):
        value = await create_prebuild_token(token_store.session(), _user(), [PREBUILD_TOKEN_SCOPE])

        [token] = token_store.tokens
        assert token.value_encrypted != value
        assert decrypt_value(token.value_encrypted) == value

    async def test_same_scopes_replace_existing_token(self, token_store):
        user = _user()
        db = token_store.session()
        first = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE, CLONE_URL])
        second = await create_prebuild_token(db, user, [CLONE_URL, PREBUILD_TOKEN_SCOPE])

        assert first != second
        assert len(token_store.identities) == 1
        [token] = token_store.tokens
        assert decrypt_value(token.value_encrypted) == second

    async def test_different_scopes_are_kept(self, token_store):
        user = _user()
        db = token_store.session()
        await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE, CLONE_URL])
        await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE, "https://gitlab.com/acme/other.git"])

        assert len(token_store.tokens) == 2


class TestFindPrebuildTokens:
    async def test_only_prebuild_scoped_tokens(self, token_store):
        user = _user()
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE])
        await create_prebuild_token(db, user, ["something-else"])

        pairs = await find_prebuild_tokens(db, user)

        assert [v for _t, v in pairs] == [value]

    async def test_no_identity(self, token_store):
        assert await find_prebuild_tokens(token_store.session(), _user()) == []
