"""Filter, search, sort and paginate an ORM query from table criteria.

The pipeline never raises on malformed client input: unknown filter keys,
unsortable columns, unparsable dates and unknown boolean tokens are skipped
and logged at debug level.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import and_, func, inspect, nulls_first, nulls_last, or_, select
from sqlalchemy.orm import Query, aliased

from tablekit.services.definition import Definition, FilterItem, FilterKind

logger = logging.getLogger(__name__)

TRUE_TOKENS = {True, "true", "1", 1, "yes", "on"}
FALSE_TOKENS = {False, "false", "0", 0, "no", "off"}

NOT_NULL = "not_null"
NULL = "null"


def is_active_value(value: Any) -> bool:
    """False for values that mean "no filter"; ``False``, ``0`` and ``"0"`` stay active."""
    if value is None:
        return False
    if isinstance(value, str):
        stripped = value.strip()
        return stripped != "" and stripped.lower() != "all"
    if isinstance(value, Mapping):
        return any(is_active_value(item) for item in value.values())
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) > 0
    return True


def parse_bool_token(value: Any) -> bool | None:
    normalized = value.strip().lower() if isinstance(value, str) else value
    if isinstance(normalized, (list, tuple, set, dict)):
        return None
    if normalized in TRUE_TOKENS:
        return True
    if normalized in FALSE_TOKENS:
        return False
    return None


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        logger.debug("Skipping unparsable date bound %r", value)
        return None


def _python_type(expression: Any) -> type | None:
    try:
        return expression.type.python_type
    except (AttributeError, NotImplementedError):
        return None


def coerce_for_column(expression: Any, value: Any) -> Any:
    """Best effort conversion of a transport value to the column's Python type."""
    python_type = _python_type(expression)
    if python_type is None or value is None or isinstance(value, python_type):
        return value
    if python_type in (bool, datetime, date):
        return value
    try:
        if python_type is uuid.UUID:
            return uuid.UUID(str(value))
        return python_type(value)
    except (TypeError, ValueError):
        return value


def _condition(expression: Any, value: Any) -> Any:
    """Comparison honouring sentinels, lists and the ``{"not": [...]}`` form."""
    if isinstance(value, Mapping) and "not" in value:
        excluded = value["not"]
        if not isinstance(excluded, (list, tuple, set)):
            excluded = [excluded]
        return expression.not_in([coerce_for_column(expression, item) for item in excluded])
    if isinstance(value, (list, tuple, set)):
        return expression.in_([coerce_for_column(expression, item) for item in value])
    if value == NOT_NULL:
        return expression.is_not(None)
    if value == NULL:
        return expression.is_(None)
    return expression == coerce_for_column(expression, value)


def _map_value(item: FilterItem, value: Any) -> Any:
    mapping = item.value_mapping
    if not mapping:
        return value
    if isinstance(value, (list, tuple, set)):
        return [mapping.get(str(member), mapping.get(member, member)) for member in value]
    try:
        if value in mapping:
            return mapping[value]
    except TypeError:
        return value
    return mapping.get(str(value), value)


def _column(model: Any, name: str) -> Any | None:
    mapper = inspect(model)
    if name in mapper.column_attrs:
        return getattr(model, name)
    return None


def _relationship(model: Any, name: str) -> Any | None:
    return inspect(model).relationships.get(name)


def relation_criterion(model: Any, path: list[str], leaf: Callable[[Any], Any]) -> Any | None:
    """Existence criterion along a dotted relation path.

    To-many hops use ``any()``, to-one hops ``has()``. A single-part path is
    the leaf comparison on the model's own column. Unknown names yield None.
    """
    if len(path) == 1:
        column = _column(model, path[0])
        return None if column is None else leaf(column)
    rel = _relationship(model, path[0])
    if rel is None:
        return None
    inner = relation_criterion(rel.mapper.class_, path[1:], leaf)
    if inner is None:
        return None
    attribute = getattr(model, path[0])
    return attribute.any(inner) if rel.uselist else attribute.has(inner)


@dataclass(frozen=True)
class Page:
    items: list[Any]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page)) if self.per_page else 1


@dataclass(frozen=True)
class QueryCriteria:
    search: str | None = None
    filters: Mapping[str, Any] = field(default_factory=dict)
    sort_column: str | None = None
    sort_direction: str = "asc"
    page: int = 1
    per_page: int | None = None

    def has_active_criteria(self, filterable_keys: Iterable[str]) -> bool:
        if self.search and self.search.strip():
            return True
        allowed = set(filterable_keys)
        return any(key in allowed and is_active_value(value) for key, value in self.filters.items())


class QueryPipeline:
    def __init__(
        self,
        query: Query,
        model: Any,
        definition: Definition,
        *,
        id_field: str = "uuid",
        searchable_fields: Iterable[str] | None = None,
        sortable_fields: Iterable[str] | None = None,
        default_sort: tuple[str, str] | None = None,
        default_per_page: int = 15,
        max_per_page: int = 100,
    ):
        self.query = query
        self.model = model
        self.definition = definition
        self.id_field = id_field
        self.searchable_fields = tuple(
            searchable_fields if searchable_fields is not None else definition.searchable_fields
        )
        self.sortable_fields = frozenset(
            sortable_fields if sortable_fields is not None else definition.sortable_fields
        )
        self.default_sort = default_sort
        self.max_per_page = max(1, max_per_page)
        self.default_per_page = min(max(1, default_per_page), self.max_per_page)

    @property
    def id_column(self) -> Any:
        return getattr(self.model, self.id_field)

    def apply_filters(self, query: Query, filters: Mapping[str, Any]) -> Query:
        for key, value in filters.items():
            item = self.definition.filter(key)
            if item is None:
                logger.debug("Ignoring filter %s: not declared", key)
                continue
            if not is_active_value(value):
                continue
            query = self.apply_filter(query, item, value)
        return query

    def apply_filter(self, query: Query, item: FilterItem, value: Any) -> Query:
        if item.execute is not None:
            return item.execute(query, value, item.key)
        handlers = {
            FilterKind.select: self._select,
            FilterKind.multiselect: self._multiselect,
            FilterKind.boolean: self._boolean,
            FilterKind.relationship: self._relationship_value,
            FilterKind.has_relationship: self._has_relationship,
            FilterKind.date_range: self._date_range,
            FilterKind.text: self._text,
        }
        criterion = handlers.get(item.kind, self._text)(item, value)
        if criterion is None:
            logger.debug("Filter %s produced no criterion for %r", item.key, value)
            return query
        return query.filter(criterion)

    def _path(self, item: FilterItem) -> list[str]:
        if item.relationship is not None:
            column = item.relationship.column or item.field_mapping or item.column or "id"
            return [*item.relationship.relation.split("."), *column.split(".")]
        return item.target_field.split(".")

    def _select(self, item: FilterItem, value: Any) -> Any:
        mapped = _map_value(item, value)
        return relation_criterion(self.model, self._path(item), lambda col: _condition(col, mapped))

    def _multiselect(self, item: FilterItem, value: Any) -> Any:
        if not isinstance(value, (list, tuple, set)):
            return None
        members = [_map_value(item, member) for member in value if is_active_value(member)]
        if not members:
            return None
        return relation_criterion(
            self.model,
            self._path(item),
            lambda col: col.in_([coerce_for_column(col, member) for member in members]),
        )

    def _boolean(self, item: FilterItem, value: Any) -> Any:
        flag = parse_bool_token(value)
        if flag is None:
            logger.debug("Ignoring boolean filter %s: unknown token %r", item.key, value)
            return None
        return relation_criterion(self.model, self._path(item), lambda col: col.is_(flag))

    def _relationship_value(self, item: FilterItem, value: Any) -> Any:
        if item.relationship is None:
            return None
        mapped = _map_value(item, value)
        return relation_criterion(self.model, self._path(item), lambda col: _condition(col, mapped))

    def _has_relationship(self, item: FilterItem, value: Any) -> Any:
        flag = parse_bool_token(value)
        if flag is None:
            return None
        relation = item.relationship.relation if item.relationship else item.target_field
        exists = self._exists(relation.split("."))
        if exists is None:
            return None
        return exists if flag else ~exists

    def _exists(self, path: list[str]) -> Any:
        return QueryPipeline._exists_on(self.model, path)

    @staticmethod
    def _exists_on(model: Any, path: list[str]) -> Any:
        rel = _relationship(model, path[0])
        if rel is None:
            return None
        attribute = getattr(model, path[0])
        if len(path) == 1:
            return attribute.any() if rel.uselist else attribute.has()
        nested = QueryPipeline._exists_on(rel.mapper.class_, path[1:])
        if nested is None:
            return None
        return attribute.any(nested) if rel.uselist else attribute.has(nested)

    def _date_range(self, item: FilterItem, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return None
        start = _parse_date(value.get("from"))
        end = _parse_date(value.get("to"))
        if start is None and end is None:
            return None

        def _bounds(col: Any) -> Any:
            is_datetime = _python_type(col) is datetime
            clauses = []
            if start is not None:
                clauses.append(col >= (datetime.combine(start, time.min) if is_datetime else start))
            if end is not None:
                if is_datetime:
                    clauses.append(col < datetime.combine(end + timedelta(days=1), time.min))
                else:
                    clauses.append(col <= end)
            return and_(*clauses)

        return relation_criterion(self.model, self._path(item), _bounds)

    def _text(self, item: FilterItem, value: Any) -> Any:
        term = str(value).strip()
        if not term:
            return None
        return relation_criterion(self.model, self._path(item), lambda col: col.ilike(f"%{term}%"))

    def apply_search(self, query: Query, term: str | None) -> Query:
        term = (term or "").strip()
        if not term or not self.searchable_fields:
            return query
        like_term = f"%{term}%"
        clauses = []
        for field_name in self.searchable_fields:
            criterion = relation_criterion(
                self.model, field_name.split("."), lambda col: col.ilike(like_term)
            )
            if criterion is None:
                logger.debug("Skipping unknown searchable field %s", field_name)
                continue
            clauses.append(criterion)
        if not clauses:
            return query
        return query.filter(or_(*clauses))

    def apply_sort(self, query: Query, column: str | None, direction: str | None) -> Query:
        direction = "desc" if direction == "desc" else "asc"
        if not column or column not in self.sortable_fields:
            if column:
                logger.debug("Ignoring sort on %s: not sortable", column)
            if self.default_sort is None:
                return query
            column, direction = self.default_sort
            direction = "desc" if direction == "desc" else "asc"

        parts = column.split(".")
        descending = direction == "desc"
        if len(parts) == 1:
            expression = _column(self.model, column)
            if expression is None:
                return query
            query = query.order_by(expression.desc() if descending else expression.asc())
        elif self._is_to_many(parts):
            expression = self._to_many_sort_expression(parts, descending)
            if expression is None:
                return query
            ordering = expression.desc() if descending else expression.asc()
            query = query.order_by(nulls_first(ordering) if descending else nulls_last(ordering))
        else:
            query, expression = self._join_to_one(query, parts)
            if expression is None:
                return query
            query = query.order_by(
                nulls_first(expression.desc()) if descending else nulls_last(expression.asc())
            )
        for key in inspect(self.model).primary_key:
            query = query.order_by(key.asc())
        return query

    def _is_to_many(self, parts: list[str]) -> bool:
        current = self.model
        for name in parts[:-1]:
            rel = _relationship(current, name)
            if rel is None:
                return False
            if rel.uselist:
                return True
            current = rel.mapper.class_
        return False

    def _join_to_one(self, query: Query, parts: list[str]) -> tuple[Query, Any]:
        entity = self.model
        for name in parts[:-1]:
            rel = _relationship(entity, name)
            if rel is None:
                return query, None
            target = aliased(rel.mapper.class_)
            query = query.outerjoin(target, getattr(entity, name))
            entity = target
        if parts[-1] not in inspect(entity).mapper.column_attrs:
            return query, None
        return query, getattr(entity, parts[-1])

    def _to_many_sort_expression(self, parts: list[str], descending: bool) -> Any:
        current = self.model
        conditions = []
        for name in parts[:-1]:
            rel = _relationship(current, name)
            if rel is None:
                return None
            conditions.append(rel.primaryjoin)
            if rel.secondaryjoin is not None:
                conditions.append(rel.secondaryjoin)
            current = rel.mapper.class_
        column = _column(current, parts[-1])
        if column is None:
            return None
        aggregate = func.max(column) if descending else func.min(column)
        return select(aggregate).where(*conditions).correlate(self.model).scalar_subquery()

    def normalize_page(self, page: Any) -> int:
        try:
            return max(1, int(page))
        except (TypeError, ValueError):
            return 1

    def normalize_per_page(self, per_page: Any) -> int:
        try:
            value = int(per_page)
        except (TypeError, ValueError):
            return self.default_per_page
        return min(max(1, value), self.max_per_page)

    def filtered_query(self, criteria: QueryCriteria) -> Query:
        query = self.apply_filters(self.query, criteria.filters)
        return self.apply_search(query, criteria.search)

    def run(self, criteria: QueryCriteria) -> Page:
        query = self.filtered_query(criteria)
        total = query.order_by(None).count()
        query = self.apply_sort(query, criteria.sort_column, criteria.sort_direction)
        page = self.normalize_page(criteria.page)
        per_page = self.normalize_per_page(criteria.per_page)
        items = query.offset((page - 1) * per_page).limit(per_page).all()
        return Page(items=items, total=total, page=page, per_page=per_page)

    def external_id(self, record: Any) -> str:
        return str(getattr(record, self.id_field))

    def matching_ids(self, criteria: QueryCriteria) -> list[str]:
        rows = self.filtered_query(criteria).order_by(None).with_entities(self.id_column).all()
        return [str(row[0]) for row in rows]

    def _coerce_ids(self, ids: Iterable[Any]) -> list[Any]:
        coerced = []
        for raw in ids:
            value = coerce_for_column(self.id_column, raw)
            if _python_type(self.id_column) is uuid.UUID and not isinstance(value, uuid.UUID):
                logger.debug("Skipping malformed id %r", raw)
                continue
            coerced.append(value)
        return coerced

    def resolve_records(self, ids: Iterable[Any]) -> list[Any]:
        coerced = self._coerce_ids(ids)
        if not coerced:
            return []
        return self.query.filter(self.id_column.in_(coerced)).all()

    def resolve_record(self, record_id: Any) -> Any | None:
        coerced = self._coerce_ids([record_id])
        if not coerced:
            return None
        return self.query.filter(self.id_column == coerced[0]).first()
