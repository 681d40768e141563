import logging
import uuid
from dataclasses import dataclass, replace
from typing import Optional

from security import TokenClaims


@dataclass(frozen=True)
class RequestContext:
    """Request-scoped state passed explicitly from the pipeline down to the repositories."""

    request_id: str
    account_id: Optional[int] = None
    email: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def new(cls) -> "RequestContext":
        return cls(request_id=uuid.uuid4().hex)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def authenticated(self, claims: TokenClaims) -> "RequestContext":
        return replace(self, account_id=claims.account_id, email=claims.email, role=claims.role)

    def bind(self, logger: logging.Logger) -> logging.LoggerAdapter:
        """Logger that stamps every record with this request's correlation id."""
        return logging.LoggerAdapter(logger, {"request_id": self.request_id})
