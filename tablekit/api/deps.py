import secrets

from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from tablekit.config import settings
from tablekit.db import get_db
from tablekit.services.context import ANONYMOUS, Actor, RequestContext

SESSION_TOKEN_HEADER = "X-Session-Token"


def get_current_actor(request: Request) -> Actor:
    """Actor placed on ``request.state.actor`` by the host's auth middleware.

    Accepts an ``Actor`` or a dict with ``id``, ``permissions`` and ``roles``.
    Anything else is treated as anonymous.
    """
    actor = getattr(request.state, "actor", None)
    if isinstance(actor, Actor):
        return actor
    if isinstance(actor, dict) and actor.get("id"):
        return Actor(
            id=str(actor["id"]),
            permissions=frozenset(actor.get("permissions") or ()),
            roles=frozenset(actor.get("roles") or ()),
        )
    return ANONYMOUS


def get_session_token(request: Request, response: Response) -> str:
    token = request.cookies.get(settings.session_cookie_name) or request.headers.get(
        SESSION_TOKEN_HEADER
    )
    if token:
        return token
    token = secrets.token_urlsafe(32)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.preferences_session_ttl_seconds,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    return token


def get_request_context(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    session_token: str = Depends(get_session_token),
):
    ctx = RequestContext(
        db,
        actor=actor,
        headers=request.headers,
        session_token=session_token,
    )
    try:
        yield ctx
    finally:
        ctx.close()


__all__ = [
    "get_db",
    "get_current_actor",
    "get_request_context",
    "get_session_token",
]
