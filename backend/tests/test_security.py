import pytest
from fastapi import HTTPException

from backend.app.deps import _extract_session_token
from backend.app.security import hash_session_token


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert h == hash_session_token("abc")
    assert h != hash_session_token("abd")


def test_bearer_header_wins_over_cookie():
    assert _extract_session_token("Bearer tok-1", "cookie-tok") == "tok-1"
    assert _extract_session_token(None, "cookie-tok") == "cookie-tok"


def test_missing_token_is_401():
    with pytest.raises(HTTPException) as exc:
        _extract_session_token("Basic xyz", None)
    assert exc.value.status_code == 401
    assert exc.value.detail == "missing token"
