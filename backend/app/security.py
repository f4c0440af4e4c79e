import hashlib


def hash_session_token(token: str) -> str:
    # auth_sessions keeps only this digest; the prefix marks the scheme.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()
