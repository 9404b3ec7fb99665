import secrets

from fastapi import Request


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization") or ""
    scheme, _, value = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def token_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
