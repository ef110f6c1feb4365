"""Row selection state and the rules for changing it.

Every operation returns a new ``SelectionState``; nothing is mutated in
place. Selected ids are the stable external ids of the rows, kept as strings.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from tablekit.services.query_pipeline import is_active_value


@dataclass(frozen=True)
class SelectionState:
    selected: tuple[str, ...] = ()
    select_page: bool = False
    select_all: bool = False

    @classmethod
    def from_ids(cls, ids: Iterable[Any], **flags: bool) -> SelectionState:
        return cls(selected=_unique(ids), **flags)


def _unique(ids: Iterable[Any]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in ids:
        seen.setdefault(str(item), None)
    return tuple(seen)


def is_page_fully_selected(selected: Iterable[Any], page_ids: Sequence[Any]) -> bool:
    if not page_ids:
        return False
    chosen = {str(item) for item in selected}
    return all(str(item) in chosen for item in page_ids)


def has_selection(selected: Iterable[Any]) -> bool:
    return any(True for _ in selected)


def clear(state: SelectionState | None = None) -> SelectionState:
    return SelectionState()


def toggle_row(state: SelectionState, row_id: Any, page_ids: Sequence[Any]) -> SelectionState:
    row_id = str(row_id)
    if row_id in state.selected:
        selected = tuple(item for item in state.selected if item != row_id)
    else:
        selected = (*state.selected, row_id)
    return SelectionState(
        selected=selected,
        select_page=is_page_fully_selected(selected, page_ids),
        select_all=False,
    )


def toggle_page(state: SelectionState, page_ids: Sequence[Any]) -> SelectionState:
    page = [str(item) for item in page_ids]
    if is_page_fully_selected(state.selected, page):
        on_page = set(page)
        selected = tuple(item for item in state.selected if item not in on_page)
        return SelectionState(selected=selected, select_page=False, select_all=False)
    selected = _unique([*state.selected, *page])
    return SelectionState(selected=selected, select_page=bool(page), select_all=state.select_all)


def toggle_all(
    state: SelectionState,
    matching_ids: Callable[[], Iterable[Any]],
    page_ids: Sequence[Any] = (),
) -> SelectionState:
    """Select every row matching the current criteria, or clear when already on.

    ``matching_ids`` is only called when selecting so clearing never touches
    the database.
    """
    if state.select_all:
        return clear(state)
    selected = _unique(matching_ids())
    return SelectionState(
        selected=selected,
        select_page=is_page_fully_selected(selected, page_ids),
        select_all=bool(selected),
    )


def sync_page_flag(state: SelectionState, page_ids: Sequence[Any]) -> SelectionState:
    return replace(state, select_page=is_page_fully_selected(state.selected, page_ids))


def criteria_changed(previous: Any, current: Any) -> bool:
    """True when a request change alters the result set or its order."""
    keys = ("search", "filters", "sort", "per_page")
    return any(_normalized(previous, key) != _normalized(current, key) for key in keys)


def _normalized(request: Any, key: str) -> Any:
    value = getattr(request, key, None)
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if key == "search":
        return (value or "").strip()
    if key == "filters":
        return {name: item for name, item in (value or {}).items() if is_active_value(item)}
    return value
