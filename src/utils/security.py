from __future__ import annotations

import os

from fastapi import HTTPException, Request

DEFAULT_USER_ID_COOKIE = "chat_user_id"


def user_id_cookie_name() -> str:
    return os.getenv("USER_ID_COOKIE", DEFAULT_USER_ID_COOKIE)


def resolve_caller(request: Request) -> str | None:
    """Return the caller's user id from the identity cookie, if present."""

    value = (request.cookies.get(user_id_cookie_name()) or "").strip()
    return value or None


def require_caller(request: Request) -> str:
    user_id = resolve_caller(request)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
