"""
Relational schema for the storefront.

Tables are declared with SQLAlchemy Core; every statement issued by the
repositories is built from these objects and therefore parameterized.
Identifiers are auto-incrementing integers.
"""

import logging

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, default=""),
    Column("role", String(32), nullable=False, default="user"),
    Column("password_hash", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("type", String(50)),
    Column("created_at", DateTime, nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("price", Numeric(10, 2), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("type", String(20), nullable=False),
    # yarn
    Column("composition", String(255)),
    Column("origin", String(255)),
    Column("length", Integer),
    # garment
    Column("size", String(50)),
    Column("garment_length", Integer),
    Column("color", String(100)),
    Column("image_url", String(512)),
    Column("created_at", DateTime, nullable=False),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id")),
    Column("total", Numeric(10, 2), nullable=False),
    Column("status", String(50), nullable=False),
    Column("created_at", DateTime, nullable=False),
)

# Present in the schema; no service reads or writes line items yet.
order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id")),
    Column("product_id", Integer, ForeignKey("products.id")),
    Column("quantity", Integer, nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
)

comments = Table(
    "comments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, ForeignKey("products.id")),
    Column("user_id", Integer, ForeignKey("users.id")),
    Column("text", Text, nullable=False),
    Column("created_at", DateTime, nullable=False),
)


def build_engine(url: str, pool_timeout: float = 30.0) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # a single shared connection keeps the in-memory database alive
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_timeout=pool_timeout)


def init_schema(engine: Engine) -> None:
    metadata.create_all(engine)
    logger.info("Database schema ready (%d tables)", len(metadata.tables))
