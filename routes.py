"""
HTTP routes.

``crud_router`` builds the five CRUD endpoints for any resource service, so
every resource shares the same decoding, status codes and guards.
"""

import logging
from typing import Annotated, Callable, List, Literal, Optional, Type

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from cache import CacheStore
from context import RequestContext
from errors import AppError, resolve_status
from metrics import CONTENT_TYPE_LATEST, Metrics
from pipeline import request_context, require_admin, require_auth
from schemas import (
    Account,
    AccountCreate,
    AccountUpdate,
    Category,
    CategoryIn,
    Comment,
    CommentIn,
    LoginRequest,
    Order,
    OrderIn,
    Product,
    ProductIn,
    ProductPage,
    ProductQuery,
    RegisterRequest,
    TokenResponse,
)
from security import TokenAuthority
from services import (
    AccountService,
    CategoryService,
    CommentService,
    OrderService,
    ProductService,
    ResourceService,
)

logger = logging.getLogger(__name__)

# Largest value a 64-bit INTEGER primary key can hold
MAX_ID = 2**63 - 1
ItemId = Annotated[int, Path(ge=1, le=MAX_ID)]

# Error mapping

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    status, message = resolve_status(exc)
    log = request_context(request).bind(logger)
    if status >= 500:
        log.error("Request failed: %s", exc, exc_info=exc)
    headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
    return JSONResponse({"detail": message}, status_code=status, headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_context(request).bind(logger).warning("Invalid request: %s", exc.errors())
    return JSONResponse({"detail": jsonable_encoder(exc.errors())}, status_code=400)

# Generic CRUD

def crud_router(
    service: ResourceService,
    prefix: str,
    *,
    create_model: Type[BaseModel],
    response_model: Type[BaseModel],
    update_model: Optional[Type[BaseModel]] = None,
    read_access: Callable[..., RequestContext] = request_context,
    write_access: Callable[..., RequestContext] = require_admin,
    create_access: Optional[Callable[..., RequestContext]] = None,
    include_list: bool = True,
    router: Optional[APIRouter] = None,
) -> APIRouter:
    router = router or APIRouter(prefix=prefix, tags=[prefix.strip("/")])
    update_model = update_model or create_model
    create_access = create_access or write_access

    @router.post("", status_code=201, response_model=response_model)
    def create_item(payload: create_model, ctx: RequestContext = Depends(create_access)):
        return service.create(ctx, payload)

    if include_list:

        @router.get("", response_model=List[response_model])
        def list_items(ctx: RequestContext = Depends(read_access)):
            return service.list(ctx)

    @router.get("/{item_id}", response_model=response_model)
    def get_item(item_id: ItemId, ctx: RequestContext = Depends(read_access)):
        return service.get(ctx, item_id)

    @router.put("/{item_id}", response_model=response_model)
    def update_item(item_id: ItemId, payload: update_model, ctx: RequestContext = Depends(write_access)):
        return service.update(ctx, item_id, payload)

    @router.delete("/{item_id}", status_code=204, response_class=Response)
    def delete_item(item_id: ItemId, ctx: RequestContext = Depends(write_access)):
        service.delete(ctx, item_id)
        return Response(status_code=204)

    return router

# Resources

def auth_router(accounts: AccountService, tokens: TokenAuthority) -> APIRouter:
    router = APIRouter(tags=["auth"])

    @router.post("/auth/register", status_code=201, response_model=Account)
    def register(payload: RegisterRequest, ctx: RequestContext = Depends(request_context)):
        return accounts.register(ctx, payload)

    @router.post("/auth/login", response_model=TokenResponse)
    def login(payload: LoginRequest, ctx: RequestContext = Depends(request_context)):
        user = accounts.authenticate(ctx, payload.email, payload.password)
        token = tokens.issue(user.id, user.email, user.role)
        return TokenResponse(access_token=token, user=user)

    @router.get("/me", response_model=Account)
    def me(ctx: RequestContext = Depends(require_auth)):
        return accounts.get(ctx, ctx.account_id)

    return router


def users_router(accounts: AccountService) -> APIRouter:
    return crud_router(
        accounts,
        "/users",
        create_model=AccountCreate,
        update_model=AccountUpdate,
        response_model=Account,
        read_access=require_admin,
    )


def products_router(products: ProductService) -> APIRouter:
    router = APIRouter(prefix="/products", tags=["products"])

    # registered before /{item_id} so "search" is not parsed as an id
    @router.get("/search", response_model=ProductPage)
    def search_products(
        name: Optional[str] = None,
        type: Optional[Literal["yarn", "garment"]] = None,
        category_id: Optional[int] = Query(None, gt=0, le=MAX_ID),
        color: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        ctx: RequestContext = Depends(request_context),
    ):
        query = ProductQuery(name=name, type=type, category_id=category_id, color=color, page=page, limit=limit)
        return products.search(ctx, query)

    return crud_router(products, "/products", create_model=ProductIn, response_model=Product, router=router)


def categories_router(categories: CategoryService) -> APIRouter:
    return crud_router(categories, "/categories", create_model=CategoryIn, response_model=Category)


def comments_router(comments: CommentService) -> APIRouter:
    router = APIRouter(prefix="/comments", tags=["comments"])

    @router.get("", response_model=List[Comment])
    def list_comments(
        product_id: Optional[int] = Query(None, gt=0, le=MAX_ID),
        ctx: RequestContext = Depends(request_context),
    ):
        if product_id is None:
            return comments.list(ctx)
        return comments.list(ctx, product_id=product_id)

    return crud_router(
        comments,
        "/comments",
        create_model=CommentIn,
        response_model=Comment,
        write_access=require_auth,
        include_list=False,
        router=router,
    )


def orders_router(orders: OrderService) -> APIRouter:
    router = APIRouter(prefix="/orders", tags=["orders"])

    @router.get("", response_model=List[Order])
    def list_orders(ctx: RequestContext = Depends(require_auth)):
        return orders.list_visible(ctx)

    return crud_router(
        orders,
        "/orders",
        create_model=OrderIn,
        response_model=Order,
        read_access=require_auth,
        write_access=require_auth,
        include_list=False,
        router=router,
    )

# Service endpoints

def system_router(engine: Engine, cache: CacheStore, metrics: Metrics) -> APIRouter:
    router = APIRouter(tags=["system"])

    @router.get("/")
    def root():
        return {"message": "Storefront API running"}

    @router.get("/health")
    def health(ctx: RequestContext = Depends(request_context)):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            database = "ok"
        except SQLAlchemyError as exc:
            ctx.bind(logger).error("Health check: database unavailable: %s", exc)
            database = "unavailable"
        return {
            "backend": "ok",
            "database": database,
            "cache": "ok" if cache.ping() else "unavailable",
        }

    @router.get("/metrics")
    def prometheus_metrics():
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return router
