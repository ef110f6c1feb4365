"""Row and bulk action dispatch.

Targets are always re-fetched from the database before anything runs, so a
stale client view can never act on a row that has since been deleted or has
stopped matching. Confirmation is a two-step protocol: the first request
answers ``awaiting_confirmation`` with a pending signal, and only an explicit
``confirm`` with that signal executes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from tablekit.services.context import RequestContext
from tablekit.services.definition import ActionItem, BulkActionItem

if TYPE_CHECKING:
    from tablekit.services.table_registry import ResolvedTable

logger = logging.getLogger(__name__)


class DispatchStatus(str, Enum):
    executed = "executed"
    ignored = "ignored"
    awaiting_confirmation = "awaiting_confirmation"
    modal = "modal"


@dataclass(frozen=True)
class ConfirmSignal:
    action_key: str
    row_id: str | None = None
    is_bulk: bool = False
    selected: tuple[str, ...] = ()

    def matches(self, pending: ConfirmSignal) -> bool:
        return (
            self.action_key == pending.action_key
            and self.is_bulk == pending.is_bulk
            and (self.is_bulk or str(self.row_id) == str(pending.row_id))
        )


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    refresh: bool = False
    clear_selection: bool = False
    pending: ConfirmSignal | None = None
    confirmation: dict[str, Any] | None = None
    modal: dict[str, Any] | None = None
    selected: tuple[str, ...] | None = None

    @classmethod
    def ignored(cls) -> DispatchResult:
        return cls(status=DispatchStatus.ignored)


def _unique_ids(ids: Iterable[Any]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(str(item) for item in ids if item not in (None, "")))


def _execute(ctx: RequestContext, action: ActionItem | BulkActionItem, target: Any) -> None:
    try:
        action.execute(target, ctx)
        ctx.db.commit()
    except Exception:
        ctx.db.rollback()
        raise


def _run_row(ctx: RequestContext, action: ActionItem, row: Any) -> DispatchResult:
    if action.modal is not None:
        return DispatchResult(status=DispatchStatus.modal, modal=action.modal.resolve(row))
    if action.execute is None:
        logger.debug("Row action %s has nothing to execute", action.key)
        return DispatchResult.ignored()
    _execute(ctx, action, row)
    logger.info("Executed row action %s", action.key)
    return DispatchResult(status=DispatchStatus.executed, refresh=True)


def _run_bulk(
    ctx: RequestContext,
    action: BulkActionItem,
    records: list[Any],
    ids: tuple[str, ...],
) -> DispatchResult:
    if action.modal is not None:
        return DispatchResult(
            status=DispatchStatus.modal,
            modal=action.modal.resolve(records),
            selected=ids,
        )
    if action.execute is None:
        logger.debug("Bulk action %s has nothing to execute", action.key)
        return DispatchResult.ignored()
    _execute(ctx, action, records)
    logger.info("Executed bulk action %s on %d records", action.key, len(records))
    return DispatchResult(
        status=DispatchStatus.executed,
        refresh=True,
        clear_selection=True,
        selected=(),
    )


def _visible_row_target(
    ctx: RequestContext, table: ResolvedTable, key: str, row_id: Any
) -> tuple[ActionItem, Any] | None:
    action = table.definition.row_action(key)
    if action is None:
        logger.debug("Ignoring unknown row action %s", key)
        return None
    row = table.pipeline.resolve_record(row_id)
    if row is None:
        logger.debug("Ignoring row action %s: row %s not found", key, row_id)
        return None
    if not action.is_visible(row, ctx):
        logger.debug("Ignoring row action %s: not visible for row %s", key, row_id)
        return None
    return action, row


def _visible_bulk_target(
    ctx: RequestContext, table: ResolvedTable, key: str, selected: Iterable[Any]
) -> tuple[BulkActionItem, list[Any], tuple[str, ...]] | None:
    action = table.definition.bulk_action(key)
    if action is None:
        logger.debug("Ignoring unknown bulk action %s", key)
        return None
    ids = _unique_ids(selected)
    if not ids:
        logger.debug("Ignoring bulk action %s: empty selection", key)
        return None
    records = table.pipeline.resolve_records(ids)
    if not records:
        logger.debug("Ignoring bulk action %s: no selected records remain", key)
        return None
    if not action.is_visible(records, ctx):
        logger.debug("Ignoring bulk action %s: not visible", key)
        return None
    return action, records, ids


def request_row_action(
    ctx: RequestContext, table: ResolvedTable, key: str, row_id: Any
) -> DispatchResult:
    target = _visible_row_target(ctx, table, key, row_id)
    if target is None:
        return DispatchResult.ignored()
    action, row = target
    if action.requires_confirmation:
        return DispatchResult(
            status=DispatchStatus.awaiting_confirmation,
            pending=ConfirmSignal(action_key=key, row_id=str(row_id)),
            confirmation=action.resolve_confirmation(row),
        )
    return _run_row(ctx, action, row)


def request_bulk_action(
    ctx: RequestContext, table: ResolvedTable, key: str, selected: Iterable[Any]
) -> DispatchResult:
    target = _visible_bulk_target(ctx, table, key, selected)
    if target is None:
        return DispatchResult.ignored()
    action, records, ids = target
    if action.requires_confirmation:
        return DispatchResult(
            status=DispatchStatus.awaiting_confirmation,
            pending=ConfirmSignal(action_key=key, is_bulk=True, selected=ids),
            confirmation=action.resolve_confirmation(records),
            selected=ids,
        )
    return _run_bulk(ctx, action, records, ids)


def confirm(
    ctx: RequestContext,
    table: ResolvedTable,
    signal: ConfirmSignal,
    pending: ConfirmSignal | None = None,
) -> DispatchResult:
    """Run a previously gated action; visibility and targets are re-checked."""
    if pending is not None and not signal.matches(pending):
        logger.debug("Ignoring confirmation for %s: does not match pending action", signal.action_key)
        return DispatchResult.ignored()
    if signal.is_bulk:
        selected = signal.selected or (pending.selected if pending else ())
        target = _visible_bulk_target(ctx, table, signal.action_key, selected)
        if target is None:
            return DispatchResult.ignored()
        return _run_bulk(ctx, *target)
    row_target = _visible_row_target(ctx, table, signal.action_key, signal.row_id)
    if row_target is None:
        return DispatchResult.ignored()
    return _run_row(ctx, *row_target)
