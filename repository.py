"""
Cache-aside data access.

One repository class serves every resource type: it is parameterized by the
table, the entity model (which doubles as the cache snapshot format) and the
cache key prefix. Reads by id go through the cache; lists always hit the
store; writes go to the store and then drop the cached entry so the next
read repopulates it.

The cache is only an accelerator. Cache failures are logged and treated as
a miss (on read) or a no-op (on write), never raised to the caller.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generic, Iterator, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError
from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import database
from cache import CacheError, CacheStore
from context import RequestContext
from errors import Conflict, NotFound, StoreError
from metrics import Metrics
from schemas import AccountRecord, Category, Comment, Order, Product, ProductQuery

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_TTL = 600  # seconds


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CachedRepository(Generic[ModelT]):
    def __init__(
        self,
        engine: Engine,
        cache: CacheStore,
        table: Table,
        model: Type[ModelT],
        key_prefix: str,
        ttl: int = DEFAULT_TTL,
        metrics: Optional[Metrics] = None,
    ):
        self.engine = engine
        self.cache = cache
        self.table = table
        self.model = model
        self.key_prefix = key_prefix
        self.ttl = ttl
        self.metrics = metrics
        self._writable = [c.name for c in table.columns if c.name != "id"]

    @property
    def name(self) -> str:
        return self.table.name

    def cache_key(self, item_id: int) -> str:
        return f"{self.key_prefix}:{item_id}"

    # ---- reads ----

    def get(self, ctx: RequestContext, item_id: int) -> ModelT:
        log = ctx.bind(logger)
        key = self.cache_key(item_id)

        cached = self._cache_get(ctx, key)
        if cached is not None:
            try:
                item = self.model.model_validate_json(cached)
            except ModelValidationError:
                log.warning("Discarding undecodable cache entry %s", key)
            else:
                self._count("hit")
                log.debug("Cache hit for %s", key)
                return item
        self._count("miss")

        with self._connection("get", item_id) as conn:
            row = conn.execute(select(self.table).where(self.table.c.id == item_id)).mappings().first()
        if row is None:
            raise NotFound(f"{self.name} {item_id} not found")

        item = self.model.model_validate(dict(row))
        self._cache_set(ctx, key, item.model_dump_json())
        return item

    def list(self, ctx: RequestContext, **filters: Any) -> List[ModelT]:
        stmt = select(self.table).order_by(self.table.c.id)
        for column, value in filters.items():
            stmt = stmt.where(self.table.c[column] == value)
        with self._connection("list") as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self.model.model_validate(dict(row)) for row in rows]

    # ---- writes ----

    def create(self, ctx: RequestContext, entity: ModelT) -> ModelT:
        values = entity.model_dump(include=set(self._writable))
        if "created_at" in self._writable and values.get("created_at") is None:
            values["created_at"] = utcnow()
        with self._connection("create") as conn:
            result = conn.execute(insert(self.table).values(**values))
            new_id = result.inserted_primary_key[0]
        return entity.model_copy(update={**values, "id": new_id})

    def update(self, ctx: RequestContext, entity: ModelT) -> None:
        item_id = getattr(entity, "id")
        values = entity.model_dump(include=set(self._writable) - {"created_at"})
        with self._connection("update", item_id) as conn:
            result = conn.execute(update(self.table).where(self.table.c.id == item_id).values(**values))
            affected = result.rowcount
        if affected == 0:
            raise NotFound(f"{self.name} {item_id} not found")
        self._invalidate(ctx, self.cache_key(item_id))

    def delete(self, ctx: RequestContext, item_id: int) -> None:
        with self._connection("delete", item_id) as conn:
            affected = conn.execute(delete(self.table).where(self.table.c.id == item_id)).rowcount
        if affected == 0:
            raise NotFound(f"{self.name} {item_id} not found")
        self._invalidate(ctx, self.cache_key(item_id))

    # ---- helpers ----

    @contextmanager
    def _connection(self, operation: str, item_id: Optional[int] = None) -> Iterator[Connection]:
        target = f"{self.name}: {operation}" if item_id is None else f"{self.name}: {operation} {item_id}"
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise Conflict(f"{target} conflicts with existing data") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"{target} failed") from exc

    def _cache_get(self, ctx: RequestContext, key: str) -> Optional[bytes]:
        try:
            return self.cache.get(key)
        except CacheError as exc:
            self._count("error")
            ctx.bind(logger).warning("Cache read failed for %s, reading from store: %s", key, exc)
            return None

    def _cache_set(self, ctx: RequestContext, key: str, value: str) -> None:
        try:
            self.cache.set(key, value.encode("utf-8"), self.ttl)
        except CacheError as exc:
            ctx.bind(logger).warning("Cache write failed for %s: %s", key, exc)

    def _invalidate(self, ctx: RequestContext, key: str) -> None:
        try:
            self.cache.delete(key)
        except CacheError as exc:
            # the entry stays stale until its TTL expires
            ctx.bind(logger).error("Cache invalidation failed for %s: %s", key, exc)

    def _count(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.cache_result(self.key_prefix, result)


class AccountRepository(CachedRepository[AccountRecord]):
    def __init__(self, engine: Engine, cache: CacheStore, **kwargs: Any):
        super().__init__(engine, cache, database.users, AccountRecord, "user", **kwargs)

    def get_by_email(self, ctx: RequestContext, email: str) -> AccountRecord:
        with self._connection("get_by_email") as conn:
            row = conn.execute(select(self.table).where(self.table.c.email == email)).mappings().first()
        if row is None:
            raise NotFound(f"{self.name} with email {email} not found")
        return AccountRecord.model_validate(dict(row))


class ProductRepository(CachedRepository[Product]):
    def __init__(self, engine: Engine, cache: CacheStore, **kwargs: Any):
        super().__init__(engine, cache, database.products, Product, "product", **kwargs)

    def search(self, ctx: RequestContext, query: ProductQuery) -> Tuple[List[Product], int]:
        t = self.table
        conditions = []
        if query.name:
            conditions.append(func.lower(t.c.name).contains(query.name.lower(), autoescape=True))
        if query.type:
            conditions.append(t.c.type == query.type)
        if query.category_id:
            conditions.append(t.c.category_id == query.category_id)
        if query.color:
            conditions.append(func.lower(t.c.color) == query.color.lower())

        count_stmt = select(func.count()).select_from(t).where(*conditions)
        page_stmt = (
            select(t)
            .where(*conditions)
            .order_by(t.c.id)
            .limit(query.limit)
            .offset((query.page - 1) * query.limit)
        )
        with self._connection("search") as conn:
            total = conn.execute(count_stmt).scalar_one()
            rows = conn.execute(page_stmt).mappings().all()
        return [Product.model_validate(dict(row)) for row in rows], total


def category_repository(engine: Engine, cache: CacheStore, **kwargs: Any) -> CachedRepository[Category]:
    return CachedRepository(engine, cache, database.categories, Category, "category", **kwargs)


def order_repository(engine: Engine, cache: CacheStore, **kwargs: Any) -> CachedRepository[Order]:
    return CachedRepository(engine, cache, database.orders, Order, "order", **kwargs)


def comment_repository(engine: Engine, cache: CacheStore, **kwargs: Any) -> CachedRepository[Comment]:
    return CachedRepository(engine, cache, database.comments, Comment, "comment", **kwargs)
