"""
Data shapes for the storefront API.

Entities mirror the relational tables (users -> Account, products -> Product,
...). Each entity is also the snapshot format stored in the cache, so a
``model_dump_json`` / ``model_validate_json`` round trip must not lose fields.

Money is carried as Decimal in process and written as a JSON number.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, PlainSerializer

Role = Literal["user", "admin"]
ProductType = Literal["yarn", "garment"]

Money = Annotated[
    Decimal,
    Field(max_digits=10, decimal_places=2),
    PlainSerializer(float, return_type=float, when_used="json"),
]

# ----------------------------- Accounts -----------------------------

class Account(BaseModel):
    id: Optional[int] = None
    email: EmailStr
    name: str = ""
    role: Role = "user"
    created_at: Optional[datetime] = None


class AccountRecord(Account):
    """Stored account, including the password hash. Never returned to clients."""

    password_hash: str = Field(..., description="bcrypt hash of the password")

    def public(self) -> Account:
        return Account(**self.model_dump(exclude={"password_hash"}))


class RegisterRequest(BaseModel):
    email: EmailStr
    name: str = Field("", max_length=255)
    password: str = ""


class AccountCreate(RegisterRequest):
    role: Role = "user"


class AccountUpdate(BaseModel):
    email: EmailStr
    name: str = Field("", max_length=255)
    role: Role = "user"
    password: Optional[str] = Field(None, description="New password; keeps the current one when omitted")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Account

# ----------------------------- Catalog ------------------------------

class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: Optional[str] = Field(None, max_length=50, description="Optional category discriminator")


class Category(CategoryIn):
    id: Optional[int] = None
    created_at: Optional[datetime] = None


class ProductIn(BaseModel):
    name: str = Field(..., max_length=255)
    description: Optional[str] = None
    price: Money
    category_id: int
    type: str = Field(..., description="yarn or garment; decides which attributes are required")
    composition: Optional[str] = Field(None, max_length=255)
    origin: Optional[str] = Field(None, max_length=255)
    length: Optional[int] = Field(None, description="Yarn length in metres")
    size: Optional[str] = Field(None, max_length=50)
    garment_length: Optional[int] = Field(None, description="Garment length in cm")
    color: Optional[str] = Field(None, max_length=100)
    image_url: Optional[str] = Field(None, max_length=512)


class Product(ProductIn):
    id: Optional[int] = None
    created_at: Optional[datetime] = None


class ProductQuery(BaseModel):
    name: Optional[str] = None
    type: Optional[ProductType] = None
    category_id: Optional[int] = Field(None, gt=0)
    color: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class ProductPage(BaseModel):
    items: List[Product]
    total_count: int
    page: int
    limit: int

# ----------------------------- Orders & comments --------------------

class OrderIn(BaseModel):
    total: Money
    status: str = Field("pending", max_length=50)


class Order(OrderIn):
    id: Optional[int] = None
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None


class CommentIn(BaseModel):
    product_id: int
    text: str


class Comment(CommentIn):
    id: Optional[int] = None
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None
