from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class SortSpec(BaseModel):
    column: str | None = None
    direction: str = "asc"

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> str:
        return "desc" if v == "desc" else "asc"


class TableRequest(BaseModel):
    search: str = ""
    filters: dict[str, Any] = Field(default_factory=dict)
    sort: SortSpec = Field(default_factory=SortSpec)
    page: int = 1
    per_page: int | None = None

    @field_validator("search", mode="before")
    @classmethod
    def normalize_search(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    @field_validator("filters", mode="before")
    @classmethod
    def normalize_filters(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    @field_validator("page", mode="before")
    @classmethod
    def normalize_page(cls, v: Any) -> int:
        try:
            return max(1, int(v))
        except (TypeError, ValueError):
            return 1

    @field_validator("per_page", mode="before")
    @classmethod
    def normalize_per_page(cls, v: Any) -> int | None:
        try:
            return int(v)
        except (TypeError, ValueError):
            return None


class ConfirmSignalIn(BaseModel):
    action_key: str = Field(min_length=1, max_length=120)
    row_id: str | None = None
    is_bulk: bool = False
    selected: list[str] = Field(default_factory=list)


class TableState(TableRequest):
    """Request criteria plus the client-held selection."""

    selected: list[str] = Field(default_factory=list)
    select_page: bool = False
    select_all: bool = False
    pending: ConfirmSignalIn | None = None


class InteractRequest(BaseModel):
    state: TableState = Field(default_factory=TableState)
    changes: TableRequest = Field(default_factory=TableRequest)


class SelectionRequest(BaseModel):
    state: TableState = Field(default_factory=TableState)
    row_id: str | None = None


class ActionRequest(BaseModel):
    row_id: str


class BulkActionRequest(BaseModel):
    selected: list[str] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    signal: ConfirmSignalIn
    pending: ConfirmSignalIn | None = None


class PageMeta(BaseModel):
    total: int
    page: int
    per_page: int
    last_page: int
    sort_column: str | None = None
    sort_direction: str = "asc"


class SelectionOut(BaseModel):
    selected: list[str] = Field(default_factory=list)
    select_page: bool = False
    select_all: bool = False
    has_selection: bool = False


class SelectionResponse(BaseModel):
    table_key: str
    selection: SelectionOut
    page_ids: list[str] = Field(default_factory=list)


class ActiveFilter(BaseModel):
    key: str
    label: str
    value: Any = None
    value_label: Any = None


class TableResponse(BaseModel):
    table_key: str
    rows: list[dict[str, Any]]
    meta: PageMeta
    stats: dict[str, Any]
    config: dict[str, Any]
    state: TableState
    selection: SelectionOut
    active_filters: list[ActiveFilter] = Field(default_factory=list)


class DispatchResultOut(BaseModel):
    status: str
    refresh: bool = False
    clear_selection: bool = False
    pending: ConfirmSignalIn | None = None
    confirmation: dict[str, Any] | None = None
    modal: dict[str, Any] | None = None
    selected: list[str] | None = None
