from datetime import date
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from workshop_tracker import config
from workshop_tracker.auth import create_access_token, hash_password
from workshop_tracker.db import init_db, make_engine, make_session_factory
from workshop_tracker.main import create_app, get_db
from workshop_tracker.models import Order, Role, Stage, StagePermission, User, Workman, utcnow

PASSWORD = "secret1"


@pytest.fixture(scope="function")
def engine():
    # In-memory SQLite with a single connection, foreign keys on
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Generator:
    db = make_session_factory(engine)()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def app(engine):
    settings = config.override_settings(seed_defaults=False, jwt_secret="test-secret")
    yield create_app(settings, engine=engine)
    config.reset_settings()


@pytest.fixture(scope="function")
def client(app, db_session):
    # Override dependency to use the same session
    def override_get_db():
        try:
            yield db_session
        finally:
            pass
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_stage(db_session):
    def _make(title, position=None):
        if position is None:
            position = db_session.query(Stage).count()
        stage = Stage(title=title, position=position)
        db_session.add(stage)
        db_session.commit()
        db_session.refresh(stage)
        return stage
    return _make


@pytest.fixture
def stages(make_stage):
    return [make_stage("Received"), make_stage("Cutting"), make_stage("Finishing")]


@pytest.fixture
def make_workman(db_session):
    def _make(name):
        workman = Workman(name=name)
        db_session.add(workman)
        db_session.commit()
        db_session.refresh(workman)
        return workman
    return _make


@pytest.fixture
def make_order(db_session):
    def _make(stage, workman=None, priority=0, client_name="Acme", last_updated=None):
        stamp = last_updated or utcnow()
        order = Order(
            client_name=client_name,
            description=f"work for {client_name}",
            received_date=date(2024, 1, 10),
            due_date=date(2024, 2, 10),
            stage_id=stage.id,
            workman_id=workman.id if workman is not None else None,
            priority=priority,
            last_updated=stamp,
            created_at=stamp,
        )
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order
    return _make


@pytest.fixture
def make_user(db_session):
    def _make(username, role=Role.USER, name=None, stage_ids=()):
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=hash_password(PASSWORD),
            role=role,
            name=name or username.title(),
        )
        user.stage_permissions = [StagePermission(stage_id=sid) for sid in stage_ids]
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _make


@pytest.fixture
def headers_for():
    def _headers(user):
        token = create_access_token(user.id, user.username, user.role.value, user.name, user.visible_stage_ids)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def admin(make_user):
    return make_user("admin", role=Role.ADMIN, name="Administrator")


@pytest.fixture
def admin_headers(admin, headers_for):
    return headers_for(admin)
