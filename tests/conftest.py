"""
Pytest fixtures: one throwaway SQLite database per test, plus an API client
wired to it.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from kardex.database import get_db, init_db, make_engine
from kardex.main import app
from kardex.models.operator import OperatorRole
from kardex.models.product import Product
from kardex.schemas.movement import MovementLine
from kardex.schemas.product import ProductCreate
from kardex.services import ledger_service, operator_service, product_service


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'kardex-test.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_operator(db):
    def _make(username, role=OperatorRole.STOCKKEEPER, password="secret-password"):
        return operator_service.create_operator(db, username, password, full_name=username.title(), role=role)

    return _make


@pytest.fixture
def actor(make_operator):
    return make_operator("clerk")


@pytest.fixture
def admin(make_operator):
    return make_operator("boss", role=OperatorRole.ADMIN)


@pytest.fixture
def make_product(db):
    def _make(sku="SKU-001", name=None, cost=0.0, price=0.0, min_stock=0):
        data = ProductCreate(sku=sku, name=name or f"Product {sku}", cost=cost, price=price, min_stock=min_stock)
        return product_service.create_product(db, data)

    return _make


@pytest.fixture
def stock_of(db):
    """Live stock level straight from the database."""
    def _stock(product_id):
        return db.get(Product, product_id, populate_existing=True).stock_level

    return _stock


@pytest.fixture
def move(db, actor):
    """Shortcut for ledger_service.create_movement with (product_id, qty, cost) tuples."""
    def _move(movement_type, *lines, reason="", **kwargs):
        return ledger_service.create_movement(
            db,
            actor.id,
            movement_type,
            reason,
            [MovementLine(product_id=pid, quantity=qty, unit_cost=cost) for pid, qty, cost in lines],
            **kwargs,
        )

    return _move


@pytest.fixture
def client(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    # No context manager: the lifespan hook would touch the configured database
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_client(client, session_factory):
    session = session_factory()
    try:
        operator_service.create_operator(
            session, "admin", "admin-password", full_name="Admin", role=OperatorRole.ADMIN
        )
    finally:
        session.close()
    resp = client.post("/api/v1/auth/login", json={"username": "admin", "password": "admin-password"})
    assert resp.status_code == 200
    return client
