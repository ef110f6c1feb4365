"""Table coordinator.

``DataTableEngine`` composes the query pipeline, stats, selection, action
dispatch and preferences for one registered table within one request
context. It holds no state of its own between calls: the client sends its
``TableState`` with every interaction and receives the next one back.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from tablekit.schemas.datatable import (
    ActiveFilter,
    PageMeta,
    SelectionOut,
    TableRequest,
    TableResponse,
    TableState,
)
from tablekit.services import actions as action_dispatch
from tablekit.services import selection as selection_rules
from tablekit.services.actions import ConfirmSignal, DispatchResult
from tablekit.services.context import RequestContext
from tablekit.services.preferences import PreferencesService
from tablekit.services.query_pipeline import Page, QueryCriteria, is_active_value
from tablekit.services.selection import SelectionState
from tablekit.services.stats import compute_stats
from tablekit.services.table_registry import ResolvedTable, TableRegistry

logger = logging.getLogger(__name__)


def convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set)):
        return [convert_value(item) for item in value]
    return value


def transform_row(record: Any, table: ResolvedTable, ctx: RequestContext) -> dict[str, Any]:
    definition = table.definition
    if table.config.transformer is not None:
        cells = table.config.transformer(record, definition)
    else:
        cells = {
            column.key: convert_value(column.value_for(record))
            for column in definition.visible_columns(record)
        }
    return {
        "id": table.pipeline.external_id(record),
        "cells": cells,
        "actions": definition.row_actions_for(record, ctx),
    }


def to_criteria(request: TableRequest) -> QueryCriteria:
    return QueryCriteria(
        search=request.search,
        filters=request.filters,
        sort_column=request.sort.column,
        sort_direction=request.sort.direction,
        page=request.page,
        per_page=request.per_page,
    )


def to_selection(state: TableState) -> SelectionState:
    return SelectionState.from_ids(
        state.selected, select_page=state.select_page, select_all=state.select_all
    )


def selection_out(selection: SelectionState) -> SelectionOut:
    return SelectionOut(
        selected=list(selection.selected),
        select_page=selection.select_page,
        select_all=selection.select_all,
        has_selection=selection_rules.has_selection(selection.selected),
    )


class DataTableEngine:
    def __init__(
        self,
        ctx: RequestContext,
        table_key: str,
        preferences: PreferencesService | None = None,
    ):
        self.ctx = ctx
        self.table = TableRegistry.resolve(ctx, table_key)
        self.preferences = preferences or PreferencesService(ctx, table_key)

    @property
    def table_key(self) -> str:
        return self.table.table_key

    def initial_request(self, overrides: TableRequest | None = None) -> TableState:
        request = self.preferences.restore_request(overrides)
        return TableState(**request.model_dump())

    def _page(self, state: TableRequest) -> Page:
        key = f"page:{self.table_key}:{state.model_dump_json(include={'search', 'filters', 'sort', 'page', 'per_page'})}"
        return self.ctx.memoize(key, lambda: self.table.pipeline.run(to_criteria(state)))

    def page_ids(self, state: TableRequest) -> list[str]:
        return [self.table.pipeline.external_id(record) for record in self._page(state).items]

    def active_filters(self, state: TableRequest) -> list[ActiveFilter]:
        chips = []
        for key, value in state.filters.items():
            item = self.table.definition.filter(key)
            if item is None or not is_active_value(value) or not item.is_visible(self.ctx):
                continue
            chips.append(ActiveFilter(**item.describe(value, self.ctx)))
        return chips

    def build(self, state: TableState) -> TableResponse:
        pipeline = self.table.pipeline
        page = self._page(state)
        page_ids = [pipeline.external_id(record) for record in page.items]
        selection = selection_rules.sync_page_flag(to_selection(state), page_ids)
        sort_column, sort_direction = state.sort.column, state.sort.direction
        if sort_column not in pipeline.sortable_fields:
            sort_column, sort_direction = pipeline.default_sort or (None, "asc")
            sort_direction = "desc" if sort_direction == "desc" else "asc"
        next_state = state.model_copy(
            update={
                "page": page.page,
                "per_page": page.per_page,
                "selected": list(selection.selected),
                "select_page": selection.select_page,
                "select_all": selection.select_all,
            }
        )
        return TableResponse(
            table_key=self.table_key,
            rows=[transform_row(record, self.table, self.ctx) for record in page.items],
            meta=PageMeta(
                total=page.total,
                page=page.page,
                per_page=page.per_page,
                last_page=page.last_page,
                sort_column=sort_column,
                sort_direction=sort_direction,
            ),
            stats=compute_stats(self.table_key, pipeline, to_criteria(state)),
            config=self.table.definition.to_transport(self.ctx),
            state=next_state,
            selection=selection_out(selection),
            active_filters=self.active_filters(state),
        )

    def interact(self, state: TableState, changes: TableRequest) -> TableResponse:
        """Apply explicit changes; a changed result set drops the selection and rewinds to page 1."""
        explicit = {name: getattr(changes, name) for name in changes.model_fields_set}
        next_state = state.model_copy(update=explicit)
        if selection_rules.criteria_changed(state, next_state):
            next_state = next_state.model_copy(
                update={
                    "page": 1,
                    "selected": [],
                    "select_page": False,
                    "select_all": False,
                    "pending": None,
                }
            )
            self.preferences.store_request_state(
                next_state,
                default_per_page=self.table.config.default_per_page,
                sortable_fields=self.table.pipeline.sortable_fields,
            )
        return self.build(next_state)

    def clear_filters(self, state: TableState) -> TableResponse:
        return self.interact(state, TableRequest(filters={}))

    def remove_filter(self, state: TableState, key: str) -> TableResponse:
        filters = {name: value for name, value in state.filters.items() if name != key}
        return self.interact(state, TableRequest(filters=filters))

    def toggle_row(self, state: TableState, row_id: str) -> SelectionState:
        return selection_rules.toggle_row(to_selection(state), row_id, self.page_ids(state))

    def toggle_page(self, state: TableState) -> SelectionState:
        return selection_rules.toggle_page(to_selection(state), self.page_ids(state))

    def toggle_all(self, state: TableState) -> SelectionState:
        return selection_rules.toggle_all(
            to_selection(state),
            lambda: self.table.pipeline.matching_ids(to_criteria(state)),
            self.page_ids(state),
        )

    def request_row_action(self, key: str, row_id: str) -> DispatchResult:
        return action_dispatch.request_row_action(self.ctx, self.table, key, row_id)

    def request_bulk_action(self, key: str, selected: list[str]) -> DispatchResult:
        return action_dispatch.request_bulk_action(self.ctx, self.table, key, selected)

    def confirm(self, signal: ConfirmSignal, pending: ConfirmSignal | None = None) -> DispatchResult:
        return action_dispatch.confirm(self.ctx, self.table, signal, pending)
