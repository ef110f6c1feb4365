"""Two-tier table preferences.

The ephemeral tier lives in the session store for the lifetime of a browser
session. The durable tier is the ``UserPreference`` row of an authenticated
actor. Reads prefer the ephemeral tier and backfill it from the durable one;
writes go to the durable tier first, then the ephemeral one.

Each table writes under its own namespace (``datatable:<entity>``) so two
tables never overwrite each other's state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from tablekit.config import settings
from tablekit.models.user_preference import UserPreference
from tablekit.schemas.datatable import SortSpec, TableRequest
from tablekit.services import session_store
from tablekit.services.context import RequestContext
from tablekit.services.query_pipeline import is_active_value

logger = logging.getLogger(__name__)

NAMESPACE_PREFIX = "datatable"


def namespace_key(entity_key: str) -> str:
    return f"{NAMESPACE_PREFIX}:{entity_key}"


def _is_empty(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return not is_active_value(value)


def detect_locale(accept_language: str | None, supported: Iterable[str]) -> str | None:
    """Best supported locale for an ``Accept-Language`` header, if any."""
    supported = list(supported)
    if not accept_language or not supported:
        return None
    candidates: list[tuple[float, int, str]] = []
    for index, part in enumerate(accept_language.split(",")):
        tag, _, params = part.strip().partition(";")
        if not tag or tag == "*":
            continue
        quality = 1.0
        if params.strip().startswith("q="):
            try:
                quality = float(params.strip()[2:])
            except ValueError:
                continue
        candidates.append((-quality, index, tag.replace("-", "_")))
    by_lower = {locale.lower(): locale for locale in supported}
    for _, _, tag in sorted(candidates):
        exact = by_lower.get(tag.lower())
        if exact:
            return exact
        language = tag.split("_")[0].lower()
        for locale in supported:
            if locale.split("_")[0].lower() == language:
                return locale
    return None


class SessionPreferenceTier:
    def __init__(self, session_token: str | None, ttl_seconds: int | None = None):
        self.session_token = session_token
        self.ttl_seconds = ttl_seconds or settings.preferences_session_ttl_seconds

    def read(self, namespace: str) -> dict[str, Any]:
        if not self.session_token:
            return {}
        return session_store.read_preferences(self.session_token, namespace)

    def write(self, namespace: str, values: Mapping[str, Any]) -> None:
        if not self.session_token:
            return
        session_store.write_preferences(
            self.session_token, namespace, dict(values), self.ttl_seconds
        )

    def clear(self, namespace: str) -> None:
        if not self.session_token:
            return
        session_store.delete_preferences(self.session_token, namespace)


class UserPreferenceTier:
    def __init__(self, db: Session, identity_id: str):
        self.db = db
        self.identity_id = str(identity_id)

    def _row(self) -> UserPreference | None:
        return (
            self.db.query(UserPreference)
            .filter(UserPreference.identity_id == self.identity_id)
            .first()
        )

    def read(self, namespace: str) -> dict[str, Any]:
        row = self._row()
        if row is None:
            return {}
        return dict((row.preferences or {}).get(namespace) or {})

    def write(self, namespace: str, values: Mapping[str, Any]) -> None:
        row = self._row()
        if row is None:
            row = UserPreference(identity_id=self.identity_id, preferences={})
            self.db.add(row)
        blob = dict(row.preferences or {})
        blob[namespace] = dict(values)
        # Reassign so the JSON column is flagged dirty.
        row.preferences = blob
        self.db.commit()

    def clear(self, namespace: str) -> None:
        row = self._row()
        if row is None or namespace not in (row.preferences or {}):
            return
        blob = dict(row.preferences)
        blob.pop(namespace)
        row.preferences = blob
        self.db.commit()


class PreferencesService:
    def __init__(
        self,
        ctx: RequestContext,
        entity_key: str,
        *,
        session_tier: SessionPreferenceTier | None = None,
        durable_tier: UserPreferenceTier | None = None,
        supported_locales: Iterable[str] | None = None,
    ):
        self.ctx = ctx
        self.entity_key = entity_key
        self.namespace = namespace_key(entity_key)
        self.session_tier = session_tier or SessionPreferenceTier(ctx.session_token)
        if durable_tier is None and not ctx.actor.is_anonymous:
            durable_tier = UserPreferenceTier(ctx.db, ctx.actor.id)
        self.durable_tier = durable_tier
        self.supported_locales = list(
            supported_locales if supported_locales is not None else settings.supported_locale_list
        )

    @property
    def _memo_key(self) -> str:
        return f"preferences:{self.namespace}"

    def _load(self) -> dict[str, Any]:
        values = self.session_tier.read(self.namespace)
        if values:
            return values
        if self.durable_tier is not None:
            values = self.durable_tier.read(self.namespace)
            if values:
                self.session_tier.write(self.namespace, values)
            return values
        locale = detect_locale(self.ctx.headers.get("accept-language"), self.supported_locales)
        if locale:
            values = {"locale": locale}
            self.session_tier.write(self.namespace, values)
        return values

    def all(self) -> dict[str, Any]:
        return dict(self.ctx.memoize(self._memo_key, self._load))

    def get(self, key: str, default: Any = None) -> Any:
        return self.all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Mapping[str, Any]) -> None:
        current = self.all()
        for key, value in values.items():
            if _is_empty(value):
                current.pop(key, None)
            else:
                current[key] = value
        self._write(current)

    def forget(self, key: str) -> None:
        current = self.all()
        if key not in current:
            return
        current.pop(key)
        self._write(current)

    def clear(self) -> None:
        if self.durable_tier is not None:
            self.durable_tier.clear(self.namespace)
        self.session_tier.clear(self.namespace)
        self.ctx.forget(self._memo_key)

    def refresh(self) -> dict[str, Any]:
        self.ctx.forget(self._memo_key)
        return self.all()

    def _write(self, values: dict[str, Any]) -> None:
        values["timestamp"] = datetime.now(UTC).isoformat()
        if self.durable_tier is not None:
            self.durable_tier.write(self.namespace, values)
        self.session_tier.write(self.namespace, values)
        self.ctx.forget(self._memo_key)

    def store_request_state(
        self,
        request: TableRequest,
        default_per_page: int | None = None,
        sortable_fields: Iterable[str] | None = None,
    ) -> None:
        """Persist the parts of a request worth restoring on the next visit.

        A sort is only kept when its column is sortable; ``sortable_fields``
        of None accepts any column.
        """
        default_per_page = default_per_page or settings.default_per_page
        filters = {key: value for key, value in request.filters.items() if is_active_value(value)}
        sort = None
        column = request.sort.column
        if column and (sortable_fields is None or column in set(sortable_fields)):
            sort = {"column": column, "direction": request.sort.direction}
        self.set_many(
            {
                "search": request.search.strip(),
                "filters": filters,
                "sort": sort,
                "per_page": request.per_page if request.per_page not in (None, default_per_page) else None,
            }
        )

    def restore_request(self, overrides: TableRequest | None = None) -> TableRequest:
        """Stored state first, then whatever the caller set explicitly."""
        prefs = self.all()
        data: dict[str, Any] = {}
        if prefs.get("search"):
            data["search"] = prefs["search"]
        if isinstance(prefs.get("filters"), Mapping):
            data["filters"] = dict(prefs["filters"])
        sort = prefs.get("sort")
        if isinstance(sort, Mapping) and sort.get("column"):
            data["sort"] = SortSpec(column=sort["column"], direction=sort.get("direction") or "asc")
        if prefs.get("per_page"):
            data["per_page"] = prefs["per_page"]
        request = TableRequest(**data)
        if overrides is None:
            return request
        explicit = {name: getattr(overrides, name) for name in overrides.model_fields_set}
        return request.model_copy(update=explicit)
