from fastapi import APIRouter, Depends, Response

from tablekit.api.deps import get_request_context
from tablekit.schemas.datatable import (
    ActionRequest,
    BulkActionRequest,
    ConfirmRequest,
    ConfirmSignalIn,
    DispatchResultOut,
    InteractRequest,
    SelectionRequest,
    SelectionResponse,
    TableRequest,
    TableResponse,
    TableState,
)
from tablekit.services.actions import ConfirmSignal, DispatchResult
from tablekit.services.context import RequestContext
from tablekit.services.datatable import DataTableEngine, selection_out
from tablekit.services.selection import SelectionState

router = APIRouter(prefix="/tables", tags=["tables"])


def _signal(payload: ConfirmSignalIn | None) -> ConfirmSignal | None:
    if payload is None:
        return None
    return ConfirmSignal(
        action_key=payload.action_key,
        row_id=payload.row_id,
        is_bulk=payload.is_bulk,
        selected=tuple(payload.selected),
    )


def _dispatch_out(result: DispatchResult) -> DispatchResultOut:
    pending = None
    if result.pending is not None:
        pending = ConfirmSignalIn(
            action_key=result.pending.action_key,
            row_id=result.pending.row_id,
            is_bulk=result.pending.is_bulk,
            selected=list(result.pending.selected),
        )
    return DispatchResultOut(
        status=result.status.value,
        refresh=result.refresh,
        clear_selection=result.clear_selection,
        pending=pending,
        confirmation=result.confirmation,
        modal=result.modal,
        selected=list(result.selected) if result.selected is not None else None,
    )


def _selection_response(
    engine: DataTableEngine, state: TableState, selection: SelectionState
) -> SelectionResponse:
    return SelectionResponse(
        table_key=engine.table_key,
        selection=selection_out(selection),
        page_ids=engine.page_ids(state),
    )


@router.get("/{table_key}/state", response_model=TableState)
def get_table_state(table_key: str, ctx: RequestContext = Depends(get_request_context)):
    return DataTableEngine(ctx, table_key).initial_request()


@router.post("/{table_key}/data", response_model=TableResponse)
def get_table_data(
    table_key: str,
    payload: TableState,
    ctx: RequestContext = Depends(get_request_context),
):
    return DataTableEngine(ctx, table_key).build(payload)


@router.post("/{table_key}/interact", response_model=TableResponse)
def interact_with_table(
    table_key: str,
    payload: InteractRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    return DataTableEngine(ctx, table_key).interact(payload.state, payload.changes)


@router.post("/{table_key}/filters/clear", response_model=TableResponse)
def clear_table_filters(
    table_key: str,
    payload: TableState,
    ctx: RequestContext = Depends(get_request_context),
):
    return DataTableEngine(ctx, table_key).clear_filters(payload)


@router.post("/{table_key}/filters/{filter_key}/remove", response_model=TableResponse)
def remove_table_filter(
    table_key: str,
    filter_key: str,
    payload: TableState,
    ctx: RequestContext = Depends(get_request_context),
):
    return DataTableEngine(ctx, table_key).remove_filter(payload, filter_key)


@router.post("/{table_key}/selection/row", response_model=SelectionResponse)
def toggle_row_selection(
    table_key: str,
    payload: SelectionRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    engine = DataTableEngine(ctx, table_key)
    if not payload.row_id:
        selection = SelectionState.from_ids(
            payload.state.selected,
            select_page=payload.state.select_page,
            select_all=payload.state.select_all,
        )
    else:
        selection = engine.toggle_row(payload.state, payload.row_id)
    return _selection_response(engine, payload.state, selection)


@router.post("/{table_key}/selection/page", response_model=SelectionResponse)
def toggle_page_selection(
    table_key: str,
    payload: SelectionRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    engine = DataTableEngine(ctx, table_key)
    return _selection_response(engine, payload.state, engine.toggle_page(payload.state))


@router.post("/{table_key}/selection/all", response_model=SelectionResponse)
def toggle_all_selection(
    table_key: str,
    payload: SelectionRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    engine = DataTableEngine(ctx, table_key)
    return _selection_response(engine, payload.state, engine.toggle_all(payload.state))


@router.post("/{table_key}/actions/{action_key}", response_model=DispatchResultOut)
def run_row_action(
    table_key: str,
    action_key: str,
    payload: ActionRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    result = DataTableEngine(ctx, table_key).request_row_action(action_key, payload.row_id)
    return _dispatch_out(result)


@router.post("/{table_key}/bulk-actions/{action_key}", response_model=DispatchResultOut)
def run_bulk_action(
    table_key: str,
    action_key: str,
    payload: BulkActionRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    result = DataTableEngine(ctx, table_key).request_bulk_action(action_key, payload.selected)
    return _dispatch_out(result)


@router.post("/{table_key}/confirm", response_model=DispatchResultOut)
def confirm_action(
    table_key: str,
    payload: ConfirmRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    engine = DataTableEngine(ctx, table_key)
    return _dispatch_out(engine.confirm(_signal(payload.signal), _signal(payload.pending)))


@router.get("/{table_key}/preferences")
def get_table_preferences(table_key: str, ctx: RequestContext = Depends(get_request_context)):
    engine = DataTableEngine(ctx, table_key)
    return {"table_key": table_key, "preferences": engine.preferences.all()}


@router.delete("/{table_key}/preferences", status_code=204)
def clear_table_preferences(table_key: str, ctx: RequestContext = Depends(get_request_context)):
    DataTableEngine(ctx, table_key).preferences.clear()
    return Response(status_code=204)


@router.post("/{table_key}/preferences/restore", response_model=TableState)
def restore_table_request(
    table_key: str,
    payload: TableRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    return DataTableEngine(ctx, table_key).initial_request(payload)
