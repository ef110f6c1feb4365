"""Request-scoped state shared by the table services.

A ``RequestContext`` lives for exactly one interaction. Anything memoized on
it (current page ids, resolved definitions, the actor) is dropped by
``close()`` so a reused component instance never sees values from a previous
cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    id: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_anonymous(self) -> bool:
        return self.id is None


ANONYMOUS = Actor()


class Authorizer(Protocol):
    def allows(self, actor: Actor, ability: str) -> bool: ...


class PermissionAuthorizer:
    """Grants an ability when the actor holds it, its ``<entity>:*`` wildcard, or ``*``."""

    def allows(self, actor: Actor, ability: str) -> bool:
        if actor.is_anonymous:
            return False
        if "*" in actor.permissions or ability in actor.permissions:
            return True
        entity, _, _ = ability.partition(":")
        return f"{entity}:*" in actor.permissions


class RequestContext:
    def __init__(
        self,
        db: Session,
        actor: Actor | Callable[[], Actor] | None = None,
        authorizer: Authorizer | None = None,
        headers: Mapping[str, str] | None = None,
        session_token: str | None = None,
    ):
        self.db = db
        self._actor_source = actor
        self.authorizer: Authorizer = authorizer or PermissionAuthorizer()
        self.headers: dict[str, str] = {
            key.lower(): value for key, value in (headers or {}).items()
        }
        self.session_token = session_token
        self._memo: dict[str, Any] = {}

    def memoize(self, key: str, factory: Callable[[], Any]) -> Any:
        if key not in self._memo:
            self._memo[key] = factory()
        return self._memo[key]

    def forget(self, key: str) -> None:
        self._memo.pop(key, None)

    @property
    def actor(self) -> Actor:
        def _load() -> Actor:
            source = self._actor_source
            if source is None:
                return ANONYMOUS
            if callable(source):
                return source() or ANONYMOUS
            return source

        return self.memoize("auth:actor", _load)

    def can(self, ability: str | None) -> bool:
        if ability is None:
            return True
        return self.authorizer.allows(self.actor, ability)

    def close(self) -> None:
        self._memo.clear()

    def __enter__(self) -> RequestContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
