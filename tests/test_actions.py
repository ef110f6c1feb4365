import pytest

from sample_models import User

from tablekit.services import actions
from tablekit.services.actions import ConfirmSignal, DispatchStatus
from tablekit.services.context import RequestContext
from tablekit.services.table_registry import TableRegistry


def _table(ctx):
    return TableRegistry.resolve(ctx, "users")


def _user(db_session, uuid):
    return db_session.query(User).filter(User.uuid == uuid).first()


def test_row_action_executes_and_commits(ctx, users_table, seeded, db_session):
    result = actions.request_row_action(ctx, _table(ctx), "deactivate", "u-alice")

    assert result.status is DispatchStatus.executed
    assert result.refresh is True
    assert _user(db_session, "u-alice").is_active is False


def test_invisible_row_action_is_ignored(ctx, users_table, seeded):
    result = actions.request_row_action(ctx, _table(ctx), "deactivate", "u-bob")

    assert result.status is DispatchStatus.ignored


def test_row_action_requires_ability(anonymous_ctx, users_table, seeded, db_session):
    result = actions.request_row_action(anonymous_ctx, _table(anonymous_ctx), "deactivate", "u-alice")

    assert result.status is DispatchStatus.ignored
    assert _user(db_session, "u-alice").is_active is True


def test_unknown_action_and_missing_row_are_ignored(ctx, users_table, seeded):
    table = _table(ctx)

    assert actions.request_row_action(ctx, table, "nope", "u-alice").status is DispatchStatus.ignored
    assert actions.request_row_action(ctx, table, "deactivate", "gone").status is DispatchStatus.ignored


def test_confirmation_gate_never_executes_without_signal(ctx, users_table, seeded, db_session):
    result = actions.request_row_action(ctx, _table(ctx), "delete", "u-carol")

    assert result.status is DispatchStatus.awaiting_confirmation
    assert result.confirmation == {
        "required": True,
        "type": "message",
        "message": "Delete this user?",
    }
    assert result.pending == ConfirmSignal(action_key="delete", row_id="u-carol")
    assert _user(db_session, "u-carol") is not None


def test_repeated_request_for_confirmed_action_never_executes(ctx, users_table, seeded, db_session):
    first = actions.request_row_action(ctx, _table(ctx), "delete", "u-carol")
    second = actions.request_row_action(ctx, _table(ctx), "delete", "u-carol")

    assert first.status is DispatchStatus.awaiting_confirmation
    assert second.status is DispatchStatus.awaiting_confirmation
    assert _user(db_session, "u-carol") is not None


def test_confirm_executes_pending_action(ctx, users_table, seeded, db_session):
    pending = actions.request_row_action(ctx, _table(ctx), "delete", "u-carol").pending

    result = actions.confirm(ctx, _table(ctx), pending, pending)

    assert result.status is DispatchStatus.executed
    assert _user(db_session, "u-carol") is None


def test_confirm_with_mismatched_pending_is_ignored(ctx, users_table, seeded, db_session):
    pending = ConfirmSignal(action_key="delete", row_id="u-carol")
    signal = ConfirmSignal(action_key="delete", row_id="u-alice")

    result = actions.confirm(ctx, _table(ctx), signal, pending)

    assert result.status is DispatchStatus.ignored
    assert _user(db_session, "u-alice") is not None


def test_confirm_rechecks_visibility(db_session, users_table, seeded):
    anonymous = RequestContext(db_session)
    signal = ConfirmSignal(action_key="delete", row_id="u-carol")

    result = actions.confirm(anonymous, _table(anonymous), signal)

    assert result.status is DispatchStatus.ignored
    assert _user(db_session, "u-carol") is not None


def test_modal_action_returns_descriptor(ctx, users_table, seeded):
    result = actions.request_row_action(ctx, _table(ctx), "details", "u-bob")

    assert result.status is DispatchStatus.modal
    assert result.modal == {"kind": "view", "view": "users.details", "props": {"uuid": "u-bob"}}


def test_execute_exception_propagates(ctx, users_table, seeded):
    with pytest.raises(RuntimeError, match="action failed"):
        actions.request_row_action(ctx, _table(ctx), "explode", "u-alice")


def test_bulk_action_requeries_selected_ids(ctx, users_table, seeded, db_session):
    result = actions.request_bulk_action(ctx, _table(ctx), "activate", ["u-bob", "u-dave", "u-bob"])

    assert result.status is DispatchStatus.executed
    assert result.clear_selection is True
    assert result.selected == ()
    assert _user(db_session, "u-bob").is_active is True
    assert _user(db_session, "u-dave").is_active is True


def test_bulk_action_skips_stale_ids(ctx, users_table, seeded, db_session):
    result = actions.request_bulk_action(ctx, _table(ctx), "activate", ["u-bob", "deleted"])

    assert result.status is DispatchStatus.executed
    assert _user(db_session, "u-bob").is_active is True


def test_bulk_action_with_empty_selection_is_ignored(ctx, users_table, seeded):
    assert actions.request_bulk_action(ctx, _table(ctx), "activate", []).status is (
        DispatchStatus.ignored
    )


def test_bulk_confirmation_then_confirm(ctx, users_table, seeded, db_session):
    first = actions.request_bulk_action(ctx, _table(ctx), "purge", ["u-carol"])

    assert first.status is DispatchStatus.awaiting_confirmation
    assert first.confirmation["type"] == "config"
    assert first.confirmation["content"] == "Purge 1 users?"
    assert _user(db_session, "u-carol") is not None

    result = actions.confirm(ctx, _table(ctx), first.pending, first.pending)

    assert result.status is DispatchStatus.executed
    assert result.clear_selection is True
    assert _user(db_session, "u-carol") is None
