import time

import jwt
import pytest

from cipherline.core.auth import (
    INVALID_TOKEN,
    NO_TOKEN,
    AuthError,
    TokenAuthenticator,
    bearer_token,
)

SECRET = "test-secret-0123456789abcdef0123456789"


def test_issue_and_verify(authenticator):
    token = authenticator.issue("alice")
    assert token.count(".") == 2
    assert authenticator.verify(token) == "alice"


def test_issued_token_is_a_standard_jwt(authenticator):
    claims = jwt.decode(authenticator.issue("alice"), SECRET, algorithms=["HS256"])
    assert claims["userId"] == "alice"
    assert claims["exp"] - claims["iat"] == 86400


def test_accepts_jwt_signed_elsewhere(authenticator):
    token = jwt.encode({"userId": "bob", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
    assert authenticator.verify(token) == "bob"


def test_missing_token(authenticator):
    for token in (None, ""):
        with pytest.raises(AuthError) as exc:
            authenticator.verify(token)
        assert exc.value.reason == NO_TOKEN


@pytest.mark.parametrize("token", ["garbage", "a.b.c", "abc.def"])
def test_garbage_token(authenticator, token):
    with pytest.raises(AuthError) as exc:
        authenticator.verify(token)
    assert exc.value.reason == INVALID_TOKEN


def test_token_from_other_secret(authenticator):
    token = TokenAuthenticator("another-secret-0123456789abcdef012345").issue("alice")
    with pytest.raises(AuthError) as exc:
        authenticator.verify(token)
    assert exc.value.reason == INVALID_TOKEN


def test_tampered_claims(authenticator):
    header, _, sig = authenticator.issue("alice").split(".")
    forged = authenticator.issue("mallory").split(".")[1]
    with pytest.raises(AuthError):
        authenticator.verify(f"{header}.{forged}.{sig}")


def test_unsigned_token_rejected(authenticator):
    token = jwt.encode({"userId": "alice", "exp": int(time.time()) + 60}, None, algorithm="none")
    with pytest.raises(AuthError) as exc:
        authenticator.verify(token)
    assert exc.value.reason == INVALID_TOKEN


@pytest.mark.parametrize("claims", [{"userId": "alice"}, {"exp": 4102444800}, {"userId": "", "exp": 4102444800}])
def test_required_claims(authenticator, claims):
    token = jwt.encode(claims, SECRET, algorithm="HS256")
    with pytest.raises(AuthError) as exc:
        authenticator.verify(token)
    assert exc.value.reason == INVALID_TOKEN


def test_expired_token(authenticator):
    stale = TokenAuthenticator(SECRET, ttl_secs=60, now=lambda: time.time() - 120)
    token = stale.issue("alice")
    with pytest.raises(AuthError) as exc:
        authenticator.verify(token)
    assert exc.value.reason == INVALID_TOKEN


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        TokenAuthenticator("")


def test_bearer_token():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None
