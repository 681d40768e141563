import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from errors import CredentialError, Unauthorized

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
# Only symmetric HMAC signatures are accepted when validating.
ACCEPTED_ALGORITHMS = ["HS256", "HS384", "HS512"]
DEFAULT_ISSUER = "online-store"
DEFAULT_TOKEN_TTL = timedelta(hours=24)


class PasswordHasher:
    """Salted adaptive password hashing (bcrypt)."""

    def __init__(self, rounds: int = 12):
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, password: str) -> str:
        if not password:
            raise CredentialError("password is required")
        return self._context.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        if not password or not hashed:
            return False
        try:
            return self._context.verify(password, hashed)
        except (ValueError, TypeError):
            logger.warning("Stored password hash is not a recognised bcrypt hash")
            return False


@dataclass(frozen=True)
class TokenClaims:
    account_id: int
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime


class TokenAuthority:
    """Issues and validates signed bearer tokens.

    The signing key is supplied at construction so that each application
    (and each test) can use its own key.
    """

    def __init__(self, secret: str, issuer: str = DEFAULT_ISSUER, ttl: timedelta = DEFAULT_TOKEN_TTL):
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret
        self.issuer = issuer
        self.ttl = ttl

    def issue(self, account_id: int, email: str, role: str, now: Optional[datetime] = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        claims = {
            "sub": str(account_id),
            "email": email,
            "role": role,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": issued_at + self.ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def validate(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=ACCEPTED_ALGORITHMS,
                issuer=self.issuer,
                options={"require_exp": True, "require_iat": True, "require_sub": True},
            )
            return TokenClaims(
                account_id=int(payload["sub"]),
                email=payload.get("email", ""),
                role=payload.get("role", ""),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (JWTError, KeyError, TypeError, ValueError) as exc:
            logger.info("Token rejected: %s", exc)
            raise Unauthorized("invalid token") from exc
