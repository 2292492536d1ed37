from __future__ import annotations

import time

import jwt
import pytest

from chat_sync.application.exceptions import AuthorizationDenied
from chat_sync.config import Settings
from chat_sync.infrastructure.auth.claims import session_from_claims
from chat_sync.infrastructure.auth.factory import build_verifier
from chat_sync.infrastructure.auth.hs256_verifier import HS256Verifier

SECRET = "test-secret-that-is-long-enough-for-hs256"


def _token(claims, secret=SECRET):
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.mark.asyncio
async def test_valid_token_yields_session():
    token = _token({"sub": "u-1", "user_metadata": {"full_name": "Ada"}, "aud": "authenticated"})

    session = await HS256Verifier(SECRET).verify(token)

    assert session.user_id == "u-1"
    assert session.display_name == "Ada"
    assert session.token == token


@pytest.mark.asyncio
async def test_wrong_signature_is_denied():
    token = _token({"sub": "u-1"}, secret="another-secret-that-is-long-enough-too")

    with pytest.raises(AuthorizationDenied):
        await HS256Verifier(SECRET).verify(token)


@pytest.mark.asyncio
async def test_expired_token_is_denied():
    token = _token({"sub": "u-1", "exp": int(time.time()) - 60})

    with pytest.raises(AuthorizationDenied):
        await HS256Verifier(SECRET).verify(token)


@pytest.mark.asyncio
async def test_token_without_subject_is_denied():
    with pytest.raises(AuthorizationDenied):
        await HS256Verifier(SECRET).verify(_token({"name": "nobody"}))


@pytest.mark.parametrize(
    "claims, expected",
    [
        ({"sub": "u", "name": "Named"}, "Named"),
        ({"sub": "u", "email": "u@example.com"}, "u@example.com"),
        ({"sub": "u"}, "Anonymous"),
    ],
)
def test_display_name_fallbacks(claims, expected):
    assert session_from_claims("t", claims).display_name == expected


def test_avatar_comes_from_user_metadata_or_picture():
    with_metadata = {"sub": "u", "user_metadata": {"avatar_url": "https://img.example/u.png"}}

    assert session_from_claims("t", with_metadata).avatar_url == "https://img.example/u.png"
    assert session_from_claims("t", {"sub": "u", "picture": "p.png"}).avatar_url == "p.png"
    assert session_from_claims("t", {"sub": "u"}).avatar_url is None


def test_build_verifier_requires_secret():
    with pytest.raises(ValueError):
        build_verifier(Settings(JWT_SECRET="", JWT_VERIFY_MODE="hs256"))
    with pytest.raises(ValueError):
        build_verifier(Settings(JWT_VERIFY_MODE="jwks", JWKS_URL=None))


def test_build_verifier_hs256():
    assert isinstance(build_verifier(Settings(JWT_SECRET=SECRET)), HS256Verifier)
