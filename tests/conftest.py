from decimal import Decimal
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event

from cache import MemoryCache
from config import Settings
from context import RequestContext
from database import build_engine, init_schema
from main import build_services, create_app
from schemas import AccountCreate, CategoryIn, ProductIn

TEST_SECRET = "test-signing-secret"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret=TEST_SECRET,
        database_url="sqlite://",
        cache_url="memory://",
        bcrypt_rounds=4,
        log_level="WARNING",
        log_json=False,
        admin_email=None,
        admin_password=None,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(request_id="test")


@pytest.fixture
def services(settings, engine, cache):
    return build_services(settings, engine, cache)


@pytest.fixture
def app(settings, engine, cache):
    return create_app(settings, engine=engine, cache=cache)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def selects(engine) -> List[str]:
    """SELECT statements sent to the relational store while the test runs."""
    statements: List[str] = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("SELECT"):
            statements.append(statement)

    event.listen(engine, "before_cursor_execute", record)
    yield statements
    event.remove(engine, "before_cursor_execute", record)


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(app) -> Dict[str, str]:
    accounts = app.state.services.accounts
    admin = accounts.create(
        RequestContext(request_id="fixture"),
        AccountCreate(email="admin@example.com", name="Admin", password="admin-pass-1", role="admin"),
    )
    return bearer(app.state.tokens.issue(admin.id, admin.email, admin.role))


@pytest.fixture
def user_headers(app) -> Dict[str, str]:
    accounts = app.state.services.accounts
    user = accounts.create(
        RequestContext(request_id="fixture"),
        AccountCreate(email="buyer@example.com", name="Buyer", password="buyer-pass-1"),
    )
    return bearer(app.state.tokens.issue(user.id, user.email, user.role))


def yarn_payload(**overrides) -> dict:
    payload = {
        "name": "Merino Soft",
        "description": "Soft merino yarn",
        "price": 12.5,
        "category_id": 1,
        "type": "yarn",
        "composition": "100% merino",
        "origin": "Peru",
        "length": 200,
        "color": "blue",
    }
    payload.update(overrides)
    return payload


def garment_payload(**overrides) -> dict:
    payload = {
        "name": "Cable Sweater",
        "description": "Hand knitted",
        "price": 89.9,
        "category_id": 1,
        "type": "garment",
        "composition": "wool",
        "size": "M",
        "garment_length": 65,
        "color": "grey",
    }
    payload.update(overrides)
    return payload


def yarn(**overrides) -> ProductIn:
    data = yarn_payload(**overrides)
    data["price"] = Decimal(str(data["price"]))
    return ProductIn(**data)


@pytest.fixture
def category_id(services, ctx) -> int:
    return services.categories.create(ctx, CategoryIn(name="Yarn", type="yarn")).id
