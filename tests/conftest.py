from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tablekit.db import Base
from tablekit.models import UserPreference  # noqa: F401
from tablekit.services import session_store
from tablekit.services.context import Actor, RequestContext
from tablekit.services.stats import StatsRegistry
from tablekit.services.table_registry import TableRegistry

from sample_models import Post, Role, Team, User, users_definition


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def _clear_session_fallback():
    session_store.clear_memory()
    yield
    session_store.clear_memory()


@pytest.fixture()
def admin():
    return Actor(id="admin-1", permissions=frozenset({"users:*"}))


@pytest.fixture()
def ctx(db_session, admin):
    context = RequestContext(db_session, actor=admin, session_token="session-admin")
    yield context
    context.close()


@pytest.fixture()
def anonymous_ctx(db_session):
    context = RequestContext(
        db_session,
        headers={"Accept-Language": "fr-CA,fr;q=0.9,en;q=0.5"},
        session_token="session-anon",
    )
    yield context
    context.close()


@pytest.fixture()
def users_table():
    config = TableRegistry.register(
        table_key="users",
        model=User,
        definition=users_definition,
        id_field="uuid",
        default_sort=("name", "asc"),
    )
    yield config
    TableRegistry.unregister("users")
    StatsRegistry.unregister("users")


@pytest.fixture()
def seeded(db_session):
    alpha = Team(name="Alpha")
    beta = Team(name="Beta")
    admin_role = Role(name="admin")
    editor_role = Role(name="editor")
    users = {
        "alice": User(
            uuid="u-alice",
            name="Alice",
            email="alice@example.com",
            status="active",
            is_active=True,
            created_at=datetime(2024, 1, 10, 10, 0),
            team=alpha,
            roles=[admin_role],
            posts=[Post(title="Zeta"), Post(title="Apple")],
        ),
        "bob": User(
            uuid="u-bob",
            name="Bob",
            email="bob@sample.org",
            status="inactive",
            is_active=False,
            created_at=datetime(2024, 1, 15, 23, 30),
            team=beta,
            roles=[editor_role],
            posts=[Post(title="Mango")],
        ),
        "carol": User(
            uuid="u-carol",
            name="Carol",
            email="carol@example.com",
            status="active",
            is_active=True,
            created_at=datetime(2024, 2, 1, 0, 0),
            team=None,
            roles=[admin_role, editor_role],
        ),
        "dave": User(
            uuid="u-dave",
            name="Dave",
            email="dave@sample.org",
            status="pending",
            is_active=False,
            created_at=datetime(2024, 2, 20, 8, 15),
            team=alpha,
            posts=[Post(title="Banana")],
        ),
    }
    for user in users.values():
        db_session.add(user)
        db_session.flush()
    db_session.commit()
    return users
