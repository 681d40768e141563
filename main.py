import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy.engine import Engine

from cache import CacheStore, build_cache
from config import Settings, get_settings
from context import RequestContext
from database import build_engine, init_schema
from errors import AppError
from logging_config import configure_logging
from metrics import Metrics
from pipeline import RequestPipelineMiddleware
from repository import AccountRepository, ProductRepository, category_repository, comment_repository, order_repository
from routes import (
    app_error_handler,
    auth_router,
    categories_router,
    comments_router,
    orders_router,
    products_router,
    system_router,
    users_router,
    validation_error_handler,
)
from security import PasswordHasher, TokenAuthority
from services import AccountService, CategoryService, CommentService, OrderService, ProductService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    accounts: AccountService
    products: ProductService
    categories: CategoryService
    orders: OrderService
    comments: CommentService


def build_services(settings: Settings, engine: Engine, cache: CacheStore, metrics: Optional[Metrics] = None) -> Services:
    options = {"ttl": settings.cache_ttl_seconds, "metrics": metrics}
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    return Services(
        accounts=AccountService(AccountRepository(engine, cache, **options), hasher),
        products=ProductService(ProductRepository(engine, cache, **options)),
        categories=CategoryService(category_repository(engine, cache, **options)),
        orders=OrderService(order_repository(engine, cache, **options)),
        comments=CommentService(comment_repository(engine, cache, **options)),
    )


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    cache: Optional[CacheStore] = None,
) -> FastAPI:
    """Wire configuration, stores, services and routes into an application.

    Raises pydantic.ValidationError when required configuration (JWT_SECRET)
    is missing, so a misconfigured process fails at startup.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)

    owns_engine = engine is None
    owns_cache = cache is None
    engine = engine or build_engine(settings.database_url, settings.db_pool_timeout)
    cache = cache or build_cache(settings.cache_url, settings.cache_socket_timeout)
    if settings.create_schema:
        init_schema(engine)

    metrics = Metrics()
    tokens = TokenAuthority(
        settings.jwt_secret.get_secret_value(),
        issuer=settings.jwt_issuer,
        ttl=timedelta(hours=settings.token_ttl_hours),
    )
    services = build_services(settings, engine, cache, metrics)

    if settings.admin_email and settings.admin_password:
        services.accounts.ensure_admin(
            RequestContext(request_id="startup"),
            settings.admin_email,
            settings.admin_password.get_secret_value(),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Storefront API started")
        yield
        if owns_cache:
            cache.close()
        if owns_engine:
            engine.dispose()
        logger.info("Storefront API stopped")

    # App and pipeline
    app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.tokens = tokens
    app.state.services = services
    app.state.metrics = metrics
    app.add_middleware(RequestPipelineMiddleware, allow_origin=settings.cors_allow_origin, metrics=metrics)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Routes
    app.include_router(system_router(engine, cache, metrics))
    app.include_router(auth_router(services.accounts, tokens))
    app.include_router(users_router(services.accounts))
    app.include_router(products_router(services.products))
    app.include_router(categories_router(services.categories))
    app.include_router(orders_router(services.orders))
    app.include_router(comments_router(services.comments))
    return app


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=port)
