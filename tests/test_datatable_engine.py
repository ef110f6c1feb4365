import json

import pytest
from fastapi import HTTPException

from tablekit.schemas.datatable import SortSpec, TableRequest, TableState
from tablekit.services.datatable import DataTableEngine, convert_value
from tablekit.services.table_registry import TableRegistry


def test_unknown_table_is_not_found(ctx):
    with pytest.raises(HTTPException) as exc:
        DataTableEngine(ctx, "missing")

    assert exc.value.status_code == 404


def test_registry_rejects_missing_id_field():
    from sample_models import Team

    with pytest.raises(ValueError):
        TableRegistry.register(
            table_key="teams",
            model=Team,
            definition=lambda ctx: None,
            id_field="uuid",
        )


def test_build_returns_rows_meta_stats_and_config(ctx, users_table, seeded):
    response = DataTableEngine(ctx, "users").build(TableState(per_page=2))

    assert response.meta.total == 4
    assert response.meta.last_page == 2
    assert response.meta.sort_column == "name"
    assert [row["id"] for row in response.rows] == ["u-alice", "u-bob"]
    alice = response.rows[0]
    assert alice["cells"]["team.name"] == "Alpha"
    assert sorted(alice["cells"]["posts.title"]) == ["Apple", "Zeta"]
    assert alice["cells"]["created_at"] == "2024-01-10T10:00:00"
    assert response.stats["context"] == "all"
    json.dumps(response.config)


def test_fallback_sort_reports_default_direction(ctx, users_table, seeded):
    state = TableState(sort=SortSpec(column="password", direction="desc"))

    response = DataTableEngine(ctx, "users").build(state)

    assert response.meta.sort_column == "name"
    assert response.meta.sort_direction == "asc"
    assert [row["id"] for row in response.rows][0] == "u-alice"


def test_build_row_actions_follow_visibility(ctx, users_table, seeded):
    response = DataTableEngine(ctx, "users").build(TableState())

    actions_by_row = {row["id"]: {a["key"] for a in row["actions"]} for row in response.rows}
    assert "deactivate" in actions_by_row["u-alice"]
    assert "deactivate" not in actions_by_row["u-bob"]
    edit = next(a for a in response.rows[0]["actions"] if a["key"] == "edit")
    assert edit["route"] == "/users/u-alice"


def test_build_reports_active_filter_chips(ctx, users_table, seeded):
    state = TableState(filters={"status": "active", "team": "", "secret": "x"})

    response = DataTableEngine(ctx, "users").build(state)

    assert [chip.model_dump() for chip in response.active_filters] == [
        {"key": "status", "label": "Status", "value": "active", "value_label": "Active"}
    ]
    assert response.stats["context"] == "filtered"


def test_build_syncs_page_selection_flag(ctx, users_table, seeded):
    state = TableState(per_page=2, selected=["u-alice", "u-bob"])

    response = DataTableEngine(ctx, "users").build(state)

    assert response.selection.select_page is True
    assert response.selection.has_selection is True


def test_interact_with_changed_filters_resets_page_and_selection(ctx, users_table, seeded):
    state = TableState(page=2, per_page=2, selected=["u-alice"], select_all=True)

    response = DataTableEngine(ctx, "users").interact(
        state, TableRequest(filters={"status": "active"})
    )

    assert response.state.page == 1
    assert response.selection.selected == []
    assert response.selection.select_all is False
    assert response.meta.total == 2


def test_interact_with_page_change_keeps_selection(ctx, users_table, seeded):
    state = TableState(per_page=2, selected=["u-alice"])

    response = DataTableEngine(ctx, "users").interact(state, TableRequest(page=2))

    assert response.state.page == 2
    assert response.selection.selected == ["u-alice"]
    assert [row["id"] for row in response.rows] == ["u-carol", "u-dave"]


def test_interact_persists_preferences(ctx, users_table, seeded):
    engine = DataTableEngine(ctx, "users")

    engine.interact(
        TableState(),
        TableRequest(search="bob", sort=SortSpec(column="email", direction="desc")),
    )

    restored = engine.initial_request()
    assert restored.search == "bob"
    assert restored.sort.column == "email"
    assert restored.sort.direction == "desc"
    assert engine.preferences.get("sort") == {"column": "email", "direction": "desc"}


def test_clear_and_remove_filters(ctx, users_table, seeded):
    engine = DataTableEngine(ctx, "users")
    state = TableState(filters={"status": "active", "team": "Alpha"})

    removed = engine.remove_filter(state, "team")
    cleared = engine.clear_filters(state)

    assert removed.state.filters == {"status": "active"}
    assert removed.meta.total == 2
    assert cleared.state.filters == {}
    assert cleared.meta.total == 4


def test_selection_toggles_through_engine(ctx, users_table, seeded):
    engine = DataTableEngine(ctx, "users")
    state = TableState(per_page=2, filters={"is_active": "0"})

    page = engine.toggle_page(state)
    everything = engine.toggle_all(state)
    row = engine.toggle_row(state, "u-bob")

    assert set(page.selected) == {"u-bob", "u-dave"}
    assert page.select_page is True
    assert set(everything.selected) == {"u-bob", "u-dave"}
    assert everything.select_all is True
    assert row.selected == ("u-bob",)


def test_convert_value_handles_common_types():
    from datetime import date
    from decimal import Decimal
    from uuid import UUID

    assert convert_value(Decimal("1.5")) == 1.5
    assert convert_value(date(2024, 1, 2)) == "2024-01-02"
    assert convert_value(UUID(int=1)) == "00000000-0000-0000-0000-000000000001"
    assert convert_value([Decimal("2")]) == [2.0]


def test_interact_does_not_persist_unsortable_column(ctx, users_table, seeded):
    engine = DataTableEngine(ctx, "users")

    engine.interact(TableState(), TableRequest(sort=SortSpec(column="password", direction="desc")))

    assert engine.preferences.get("sort") is None
