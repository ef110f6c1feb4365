from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException
from sqlalchemy.orm import Query

from tablekit.config import settings
from tablekit.services.context import RequestContext
from tablekit.services.definition import Definition
from tablekit.services.query_pipeline import QueryPipeline

DefinitionFactory = Callable[[RequestContext], Definition]
RowTransformer = Callable[[Any, Definition], dict[str, Any]]
BaseQueryFactory = Callable[[RequestContext], Query]


@dataclass(frozen=True)
class TableConfig:
    table_key: str
    model: type
    definition_factory: DefinitionFactory
    id_field: str = "uuid"
    searchable_fields: tuple[str, ...] | None = None
    sortable_fields: tuple[str, ...] | None = None
    default_sort: tuple[str, str] | None = None
    transformer: RowTransformer | None = None
    base_query: BaseQueryFactory | None = None
    per_page: int | None = None

    @property
    def default_per_page(self) -> int:
        return min(self.per_page or settings.default_per_page, settings.max_per_page)


@dataclass(frozen=True)
class ResolvedTable:
    """A registered table bound to one request context."""

    config: TableConfig
    definition: Definition
    pipeline: QueryPipeline

    @property
    def table_key(self) -> str:
        return self.config.table_key


class TableRegistry:
    _tables: dict[str, TableConfig] = {}

    @classmethod
    def register(
        cls,
        *,
        table_key: str,
        model: type,
        definition: DefinitionFactory,
        id_field: str = "uuid",
        searchable_fields: Iterable[str] | None = None,
        sortable_fields: Iterable[str] | None = None,
        default_sort: tuple[str, str] | None = None,
        transformer: RowTransformer | None = None,
        base_query: BaseQueryFactory | None = None,
        per_page: int | None = None,
    ) -> TableConfig:
        if not table_key:
            raise ValueError("table_key is required")
        if not hasattr(model, id_field):
            raise ValueError(f"Field {id_field} is not present on model {model.__name__}")
        if per_page is not None and per_page < 1:
            raise ValueError("per_page must be >= 1")

        config = TableConfig(
            table_key=table_key,
            model=model,
            definition_factory=definition,
            id_field=id_field,
            searchable_fields=tuple(searchable_fields) if searchable_fields is not None else None,
            sortable_fields=tuple(sortable_fields) if sortable_fields is not None else None,
            default_sort=default_sort,
            transformer=transformer,
            base_query=base_query,
            per_page=per_page,
        )
        cls._tables[table_key] = config
        return config

    @classmethod
    def get(cls, table_key: str) -> TableConfig:
        config = cls._tables.get(table_key)
        if not config:
            raise HTTPException(status_code=404, detail="Unregistered tableKey")
        return config

    @classmethod
    def exists(cls, table_key: str) -> bool:
        return table_key in cls._tables

    @classmethod
    def unregister(cls, table_key: str) -> None:
        cls._tables.pop(table_key, None)

    @classmethod
    def resolve(cls, ctx: RequestContext, table_key: str) -> ResolvedTable:
        """Build the definition and pipeline once per request context."""
        config = cls.get(table_key)

        def _build() -> ResolvedTable:
            definition = config.definition_factory(ctx)
            query = (
                config.base_query(ctx)
                if config.base_query is not None
                else ctx.db.query(config.model)
            )
            pipeline = QueryPipeline(
                query,
                config.model,
                definition,
                id_field=config.id_field,
                searchable_fields=config.searchable_fields,
                sortable_fields=config.sortable_fields,
                default_sort=config.default_sort,
                default_per_page=config.default_per_page,
                max_per_page=settings.max_per_page,
            )
            return ResolvedTable(config=config, definition=definition, pipeline=pipeline)

        return ctx.memoize(f"table:{table_key}", _build)
