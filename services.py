"""
Business rules.

A ResourceService turns request payloads into entities, validates them with
a pluggable validator before touching the store, and wraps data-layer
errors with business context (``raise ... from``).
"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

from context import RequestContext
from errors import AppError, CredentialError, Forbidden, InvalidCredential, NotFound, ServiceError, ValidationError
from repository import AccountRepository, CachedRepository, ProductRepository
from schemas import (
    Account,
    AccountCreate,
    AccountRecord,
    Category,
    Comment,
    Order,
    Product,
    ProductPage,
    ProductQuery,
    RegisterRequest,
)
from security import PasswordHasher

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
Validator = Callable[[Any], None]

PRODUCT_TYPES = ("yarn", "garment")
REQUIRED_BY_TYPE: Dict[str, Tuple[str, ...]] = {
    "yarn": ("composition", "origin", "length"),
    "garment": ("composition", "size", "garment_length"),
}
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt ignores anything past this

# Validators

def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (int, float, Decimal)):
        return value <= 0
    return False


def validate_product(product: Product) -> None:
    if not product.name.strip():
        raise ValidationError("product name is required")
    if product.price <= 0:
        raise ValidationError("price must be greater than zero")
    if product.category_id <= 0:
        raise ValidationError("category_id must be a positive integer")
    if product.type not in PRODUCT_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(PRODUCT_TYPES)}")
    missing = [field for field in REQUIRED_BY_TYPE[product.type] if _blank(getattr(product, field))]
    if missing:
        raise ValidationError(f"{product.type} products require: {', '.join(missing)}")


def validate_category(category: Category) -> None:
    if not category.name.strip():
        raise ValidationError("category name is required")


def validate_order(order: Order) -> None:
    if order.total <= 0:
        raise ValidationError("total must be greater than zero")
    if not order.status.strip():
        raise ValidationError("status is required")


def validate_comment(comment: Comment) -> None:
    if comment.product_id <= 0:
        raise ValidationError("product_id must be a positive integer")
    if not comment.text.strip():
        raise ValidationError("comment text is required")


def check_password(password: Optional[str]) -> None:
    if not password:
        raise CredentialError("password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"password must be at most {MAX_PASSWORD_BYTES} bytes long")


class ResourceService(Generic[ModelT]):
    """CRUD over one resource type."""

    def __init__(self, repo: CachedRepository[ModelT], label: str, validator: Optional[Validator] = None):
        self.repo = repo
        self.label = label
        self.validator = validator

    # Hooks for resource-specific behaviour

    def build(self, ctx: RequestContext, payload: BaseModel) -> ModelT:
        """Turn a request payload into an unsaved entity. Must not touch the store."""
        return self.repo.model.model_validate(payload.model_dump())

    def before_create(self, ctx: RequestContext, entity: ModelT) -> ModelT:
        return entity

    def before_update(self, ctx: RequestContext, entity: ModelT) -> ModelT:
        return entity

    def before_delete(self, ctx: RequestContext, item_id: int) -> None:
        pass

    def present(self, entity: ModelT) -> Any:
        return entity

    # Operations

    def create(self, ctx: RequestContext, payload: BaseModel) -> Any:
        log = ctx.bind(logger)
        log.info("Attempting to create %s", self.label)
        entity = self._checked(log, self.build(ctx, payload))

        with self._wrapped(log, f"failed to create {self.label}"):
            created = self.repo.create(ctx, self.before_create(ctx, entity))

        log.info("Created %s with ID %s", self.label, created.id)
        return self.present(created)

    def get(self, ctx: RequestContext, item_id: int) -> Any:
        log = ctx.bind(logger)
        log.info("Fetching %s with ID %d", self.label, item_id)

        with self._wrapped(log, f"failed to fetch {self.label}", item_id):
            item = self.repo.get(ctx, item_id)

        log.info("Fetched %s with ID %d", self.label, item_id)
        return self.present(item)

    def list(self, ctx: RequestContext, **filters: Any) -> List[Any]:
        log = ctx.bind(logger)
        log.info("Fetching %s list %s", self.label, filters or "")

        with self._wrapped(log, f"failed to list {self.label} records"):
            items = self.repo.list(ctx, **filters)

        log.info("Fetched %d %s(s)", len(items), self.label)
        return [self.present(item) for item in items]

    def update(self, ctx: RequestContext, item_id: int, payload: BaseModel) -> Any:
        log = ctx.bind(logger)
        log.info("Updating %s with ID %d", self.label, item_id)
        entity = self._checked(log, self.build(ctx, payload))

        with self._wrapped(log, f"failed to update {self.label}", item_id):
            entity = self.before_update(ctx, entity.model_copy(update={"id": item_id}))
            self.repo.update(ctx, entity)
            updated = self.repo.get(ctx, item_id)

        log.info("Updated %s with ID %d", self.label, item_id)
        return self.present(updated)

    def delete(self, ctx: RequestContext, item_id: int) -> None:
        log = ctx.bind(logger)
        log.info("Deleting %s with ID %d", self.label, item_id)

        with self._wrapped(log, f"failed to delete {self.label}", item_id):
            self.before_delete(ctx, item_id)
            self.repo.delete(ctx, item_id)

        log.info("Deleted %s with ID %d", self.label, item_id)

    # Helpers

    def _checked(self, log: logging.LoggerAdapter, entity: ModelT) -> ModelT:
        if self.validator is not None:
            try:
                self.validator(entity)
            except ValidationError as exc:
                log.warning("Rejected %s: %s", self.label, exc)
                raise
        return entity

    @contextmanager
    def _wrapped(self, log: logging.LoggerAdapter, action: str, item_id: Optional[int] = None) -> Iterator[None]:
        try:
            yield
        except NotFound as exc:
            log.warning("%s: %s", action, exc)
            if item_id is None:
                raise ServiceError(f"{self.label} not found") from exc
            raise ServiceError(f"{self.label} with ID {item_id} not found") from exc
        except (ValidationError, InvalidCredential, Forbidden):
            raise
        except AppError as exc:
            log.error("%s: %s", action, exc)
            raise ServiceError(f"{action}: {exc}") from exc


class ProductService(ResourceService[Product]):
    repo: ProductRepository

    def __init__(self, repo: ProductRepository):
        super().__init__(repo, "product", validate_product)

    def search(self, ctx: RequestContext, query: ProductQuery) -> ProductPage:
        log = ctx.bind(logger)
        log.info("Searching products: %s", query.model_dump(exclude_none=True))

        with self._wrapped(log, "failed to search products"):
            items, total = self.repo.search(ctx, query)

        log.info("Found %d product(s), returning %d", total, len(items))
        return ProductPage(items=items, total_count=total, page=query.page, limit=query.limit)


class CategoryService(ResourceService[Category]):
    def __init__(self, repo: CachedRepository[Category]):
        super().__init__(repo, "category", validate_category)


class OwnedResourceService(ResourceService[ModelT]):
    """Resources whose ``user_id`` comes from the caller's token, not the payload.

    Only the owner or an administrator may change them. With ``private_reads``
    the same rule applies to reads by id.
    """

    private_reads = False

    def before_create(self, ctx: RequestContext, entity: ModelT) -> ModelT:
        return entity.model_copy(update={"user_id": ctx.account_id})

    def before_update(self, ctx: RequestContext, entity: ModelT) -> ModelT:
        current = self.repo.get(ctx, entity.id)
        self._ensure_owner(ctx, current)
        return entity.model_copy(update={"user_id": current.user_id, "created_at": current.created_at})

    def before_delete(self, ctx: RequestContext, item_id: int) -> None:
        self._ensure_owner(ctx, self.repo.get(ctx, item_id))

    def get(self, ctx: RequestContext, item_id: int) -> ModelT:
        item = super().get(ctx, item_id)
        if self.private_reads:
            self._ensure_owner(ctx, item)
        return item

    def _ensure_owner(self, ctx: RequestContext, item: ModelT) -> None:
        if not ctx.is_admin and item.user_id != ctx.account_id:
            ctx.bind(logger).warning("User ID %s may not access %s %s", ctx.account_id, self.label, item.id)
            raise Forbidden(f"{self.label} {item.id} belongs to another user")

    def list_visible(self, ctx: RequestContext, **filters: Any) -> List[ModelT]:
        """Administrators see everything; other callers only their own records."""
        if not ctx.is_admin:
            filters["user_id"] = ctx.account_id
        return self.list(ctx, **filters)


class OrderService(OwnedResourceService[Order]):
    # Order.total is taken as supplied; line items are not summed.
    private_reads = True

    def __init__(self, repo: CachedRepository[Order]):
        super().__init__(repo, "order", validate_order)


class CommentService(OwnedResourceService[Comment]):
    def __init__(self, repo: CachedRepository[Comment]):
        super().__init__(repo, "comment", validate_comment)


class AccountService(ResourceService[AccountRecord]):
    """Accounts; passwords are hashed here so every entry point gets the same guarantee."""

    repo: AccountRepository

    def __init__(self, repo: AccountRepository, hasher: PasswordHasher):
        super().__init__(repo, "user")
        self.hasher = hasher

    def build(self, ctx: RequestContext, payload: BaseModel) -> AccountRecord:
        record = AccountRecord(
            email=payload.email,
            name=payload.name,
            role=getattr(payload, "role", "user"),
            password_hash="",
        )
        password = getattr(payload, "password", None)
        if password is None:
            # update without a new password keeps the stored hash
            return record
        check_password(password)
        return record.model_copy(update={"password_hash": self.hasher.hash(password)})

    def before_update(self, ctx: RequestContext, entity: AccountRecord) -> AccountRecord:
        current = self.repo.get(ctx, entity.id)
        changes: Dict[str, Any] = {"created_at": current.created_at}
        if not entity.password_hash:
            changes["password_hash"] = current.password_hash
        return entity.model_copy(update=changes)

    def present(self, entity: AccountRecord) -> Account:
        return entity.public()

    def register(self, ctx: RequestContext, payload: RegisterRequest) -> Account:
        return self.create(ctx, AccountCreate(**payload.model_dump(), role="user"))

    def authenticate(self, ctx: RequestContext, email: str, password: str) -> Account:
        log = ctx.bind(logger)
        log.info("Authenticating %s", email)
        try:
            record = self.repo.get_by_email(ctx, email)
        except NotFound as exc:
            log.warning("Login failed: no account for %s", email)
            raise InvalidCredential("invalid email or password") from exc
        except AppError as exc:
            log.error("Login failed for %s: %s", email, exc)
            raise ServiceError("failed to authenticate") from exc

        if not self.hasher.verify(password, record.password_hash):
            log.warning("Login failed: wrong password for %s", email)
            raise InvalidCredential("invalid email or password")

        log.info("Authenticated user ID %d", record.id)
        return record.public()

    def ensure_admin(self, ctx: RequestContext, email: str, password: str) -> Account:
        """Create the administrator account unless the e-mail is already registered."""
        log = ctx.bind(logger)
        try:
            existing = self.repo.get_by_email(ctx, email)
        except NotFound:
            log.info("Seeding administrator account %s", email)
            return self.create(ctx, AccountCreate(email=email, name="Administrator", password=password, role="admin"))
        if existing.role != "admin":
            log.warning("Account %s exists but is not an administrator", email)
        return existing.public()
