"""Tests for webhook sender verification — secret tokens and HMAC signatures."""

import uuid

import pytest

from prewarm.auth.tokens import PREBUILD_TOKEN_SCOPE, create_prebuild_token
from prewarm.db.models import User
from prewarm.errors import WebhookAuthError
from prewarm.services.github_app_service import compute_signature
from prewarm.webhooks.verifier import split_secret, verify_secret_token, verify_signature

CLONE_URL = "https://gitlab.com/acme/app.git"
BODY = b'{"ref": "refs/heads/main"}'


def _user(token_store, blocked: bool = False) -> User:
    user = User(id=uuid.uuid4(), name="alice", blocked=blocked)
    token_store.users[user.id] = user
    return user


class TestSplitSecret:
    def test_split(self):
        assert split_secret("abc|def") == ("abc", "def")

    def test_value_may_contain_separator(self):
        assert split_secret("abc|d|ef") == ("abc", "d|ef")

    @pytest.mark.parametrize("secret", ["nopipe", "|value", "user|"])
    def test_malformed(self, secret):
        with pytest.raises(WebhookAuthError):
            split_secret(secret)


class TestVerifySecretToken:
    async def test_matching_token(self, token_store):
        user = _user(token_store)
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE, CLONE_URL])

        assert await verify_secret_token(db, f"{user.id}|{value}") is user

    async def test_required_scopes(self, token_store):
        user = _user(token_store)
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE, CLONE_URL])

        assert await verify_secret_token(db, f"{user.id}|{value}", [PREBUILD_TOKEN_SCOPE, CLONE_URL]) is user
        with pytest.raises(WebhookAuthError):
            await verify_secret_token(
                db, f"{user.id}|{value}", [PREBUILD_TOKEN_SCOPE, "https://gitlab.com/acme/other.git"]
            )

    async def test_wrong_value(self, token_store):
        user = _user(token_store)
        db = token_store.session()
        await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE])

        with pytest.raises(WebhookAuthError, match="No matching token"):
            await verify_secret_token(db, f"{user.id}|not-the-value")

    async def test_unknown_user(self, token_store):
        with pytest.raises(WebhookAuthError, match="No user"):
            await verify_secret_token(token_store.session(), f"{uuid.uuid4()}|value")

    async def test_blocked_user(self, token_store):
        user = _user(token_store, blocked=True)
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE])

        with pytest.raises(WebhookAuthError, match="Blocked"):
            await verify_secret_token(db, f"{user.id}|{value}")

    async def test_missing_identity(self, token_store):
        user = _user(token_store)
        with pytest.raises(WebhookAuthError, match="identity"):
            await verify_secret_token(token_store.session(), f"{user.id}|value")

    @pytest.mark.parametrize("secret", [None, ""])
    async def test_missing_secret(self, token_store, secret):
        with pytest.raises(WebhookAuthError):
            await verify_secret_token(token_store.session(), secret)


class TestVerifySignature:
    async def test_finds_signing_user(self, token_store):
        other, signer = _user(token_store), _user(token_store)
        db = token_store.session()
        await create_prebuild_token(db, other, [PREBUILD_TOKEN_SCOPE])
        await create_prebuild_token(db, signer, [PREBUILD_TOKEN_SCOPE, "x"])
        value = await create_prebuild_token(db, signer, [PREBUILD_TOKEN_SCOPE])
        signature = compute_signature(f"{signer.id}|{value}", BODY)

        assert await verify_signature(db, [other, signer], BODY, signature) is signer

    async def test_tampered_body(self, token_store):
        user = _user(token_store)
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE])
        signature = compute_signature(f"{user.id}|{value}", BODY)

        with pytest.raises(WebhookAuthError):
            await verify_signature(db, [user], BODY + b" ", signature)

    async def test_blocked_signer(self, token_store):
        user = _user(token_store, blocked=True)
        db = token_store.session()
        value = await create_prebuild_token(db, user, [PREBUILD_TOKEN_SCOPE])
        signature = compute_signature(f"{user.id}|{value}", BODY)

        with pytest.raises(WebhookAuthError, match="Blocked"):
            await verify_signature(db, [user], BODY, signature)

    async def test_no_candidates(self, token_store):
        with pytest.raises(WebhookAuthError):
            await verify_signature(token_store.session(), [], BODY, "sha256=00")

    async def test_missing_signature(self, token_store):
        with pytest.raises(WebhookAuthError):
            await verify_signature(token_store.session(), [], BODY, None)
