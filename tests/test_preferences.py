import pytest

from tablekit.models.user_preference import UserPreference
from tablekit.schemas.datatable import SortSpec, TableRequest
from tablekit.services import session_store
from tablekit.services.context import RequestContext
from tablekit.services.preferences import (
    PreferencesService,
    SessionPreferenceTier,
    detect_locale,
    namespace_key,
)


def test_detect_locale_prefers_quality_and_language_match():
    supported = ["en_US", "fr_FR"]

    assert detect_locale("fr-CA,fr;q=0.9,en;q=0.5", supported) == "fr_FR"
    assert detect_locale("de-DE,en-US;q=0.8", supported) == "en_US"
    assert detect_locale("en;q=0.2,fr-FR;q=0.9", supported) == "fr_FR"
    assert detect_locale("de-DE", supported) is None
    assert detect_locale(None, supported) is None


def test_anonymous_first_read_seeds_locale_in_session_only(anonymous_ctx, db_session):
    prefs = PreferencesService(anonymous_ctx, "users")

    assert prefs.all() == {"locale": "fr_FR"}
    assert prefs.durable_tier is None
    assert SessionPreferenceTier("session-anon").read(namespace_key("users")) == {"locale": "fr_FR"}
    assert db_session.query(UserPreference).count() == 0


def test_set_writes_both_tiers(ctx, db_session):
    prefs = PreferencesService(ctx, "users")

    prefs.set("per_page", 50)

    row = db_session.query(UserPreference).filter(UserPreference.identity_id == "admin-1").one()
    stored = row.preferences[namespace_key("users")]
    assert stored["per_page"] == 50
    assert "timestamp" in stored
    assert SessionPreferenceTier("session-admin").read(namespace_key("users"))["per_page"] == 50


def test_read_backfills_session_from_durable_tier(ctx, db_session, admin):
    PreferencesService(ctx, "users").set("search", "bob")

    fresh = RequestContext(db_session, actor=admin, session_token="another-session")
    prefs = PreferencesService(fresh, "users")

    assert prefs.get("search") == "bob"
    assert SessionPreferenceTier("another-session").read(namespace_key("users"))["search"] == "bob"


def test_namespaces_are_isolated(ctx):
    users = PreferencesService(ctx, "users")
    teams = PreferencesService(ctx, "teams")

    users.set("search", "alice")
    teams.set("search", "alpha")

    assert users.refresh()["search"] == "alice"
    assert teams.refresh()["search"] == "alpha"


def test_empty_values_are_not_written(ctx):
    prefs = PreferencesService(ctx, "users")
    prefs.set("search", "bob")

    prefs.set_many({"search": "", "filters": {}})

    values = prefs.all()
    assert "search" not in values
    assert "filters" not in values


def test_store_request_state_keeps_only_meaningful_values(ctx):
    prefs = PreferencesService(ctx, "users")
    request = TableRequest(
        search="  ",
        filters={"status": "all", "team": "Alpha", "is_active": False},
        sort=SortSpec(column="name", direction="desc"),
        per_page=15,
    )

    prefs.store_request_state(request, default_per_page=15)

    values = prefs.all()
    assert "search" not in values
    assert values["filters"] == {"team": "Alpha", "is_active": False}
    assert values["sort"] == {"column": "name", "direction": "desc"}
    assert "sort_column" not in values
    assert "per_page" not in values


def test_restore_request_applies_overrides_after_preferences(ctx):
    prefs = PreferencesService(ctx, "users")
    prefs.store_request_state(TableRequest(search="bob", per_page=50))

    restored = prefs.restore_request(TableRequest(page=3))
    overridden = prefs.restore_request(TableRequest(search="carol"))

    assert restored.search == "bob"
    assert restored.per_page == 50
    assert restored.page == 3
    assert overridden.search == "carol"
    assert overridden.per_page == 50


def test_clear_removes_both_tiers(ctx, db_session):
    prefs = PreferencesService(ctx, "users")
    prefs.set("search", "bob")

    prefs.clear()

    assert prefs.all() == {}
    row = db_session.query(UserPreference).filter(UserPreference.identity_id == "admin-1").one()
    assert namespace_key("users") not in row.preferences


def test_forget_removes_a_single_key(ctx):
    prefs = PreferencesService(ctx, "users")
    prefs.set_many({"search": "bob", "per_page": 25})

    prefs.forget("search")

    assert prefs.get("search") is None
    assert prefs.get("per_page") == 25


def test_unsortable_column_is_not_persisted(ctx):
    prefs = PreferencesService(ctx, "users")

    prefs.store_request_state(
        TableRequest(sort=SortSpec(column="password", direction="desc")),
        sortable_fields=("name", "email"),
    )

    assert "sort" not in prefs.all()
    assert prefs.restore_request().sort.column is None


def test_restore_request_reads_nested_sort(ctx):
    prefs = PreferencesService(ctx, "users")
    prefs.store_request_state(
        TableRequest(sort=SortSpec(column="email", direction="desc")),
        sortable_fields=("name", "email"),
    )

    restored = prefs.restore_request()

    assert restored.sort.column == "email"
    assert restored.sort.direction == "desc"


def test_forget_refreshes_timestamp(ctx):
    prefs = PreferencesService(ctx, "users")
    prefs.set_many({"search": "bob", "per_page": 25})
    stored = dict(prefs.all())
    stored["timestamp"] = "2000-01-01T00:00:00+00:00"
    SessionPreferenceTier("session-admin").write(namespace_key("users"), stored)
    prefs.durable_tier.write(namespace_key("users"), stored)
    prefs.refresh()

    prefs.forget("search")

    assert prefs.get("timestamp") != "2000-01-01T00:00:00+00:00"


def test_each_table_has_its_own_session_key(ctx):
    PreferencesService(ctx, "users").set("search", "alice")
    PreferencesService(ctx, "teams").set("search", "alpha")

    users = session_store.read_preferences("session-admin", namespace_key("users"))
    teams = session_store.read_preferences("session-admin", namespace_key("teams"))

    assert users["search"] == "alice"
    assert teams["search"] == "alpha"
    assert session_store.preference_key("session-admin", namespace_key("users")) == (
        "tablekit_prefs:session-admin:datatable:users"
    )


def test_clearing_one_table_keeps_the_other(ctx):
    PreferencesService(ctx, "users").set("search", "alice")
    PreferencesService(ctx, "teams").set("search", "alpha")

    PreferencesService(ctx, "users").clear()

    assert session_store.read_preferences("session-admin", namespace_key("users")) == {}
    assert session_store.read_preferences("session-admin", namespace_key("teams"))["search"] == "alpha"


def test_write_without_store_raises_unavailable(monkeypatch):
    monkeypatch.setattr(session_store, "get_session_redis", lambda: None)
    monkeypatch.setattr(session_store, "_fallback_enabled", lambda: False)

    with pytest.raises(session_store.PreferenceStoreUnavailable):
        session_store.write_preferences("token", namespace_key("users"), {"search": "x"})
