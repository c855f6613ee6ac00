"""JWT token creation, password hashing, and session dependencies."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.database import get_db
from storefront.models.session import UserSession
from storefront.models.user import User, UserStatus

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_MINUTES = 30


# ── Password helpers ─────────────────────────────────────────

# Common weak passwords (top entries — extend as needed)
_COMMON_PASSWORDS = frozenset({
    "password", "12345678", "123456789", "1234567890", "qwerty123",
    "password1", "password123", "iloveyou", "sunshine", "princess",
    "football", "charlie", "trustno1", "letmein1", "abc12345",
    "passw0rd", "admin123", "welcome1", "shadow12", "login123",
})


def validate_password_strength(password: str) -> str | None:
    """Return an error message if the password is too weak, or None if it passes."""
    if len(password) < 8:
        return "Password must be at least 8 characters"
    if len(password) > 72:
        return "Password must not exceed 72 characters"
    if not any(c.isupper() for c in password):
        return "Password must contain at least one uppercase letter"
    if not any(c.islower() for c in password):
        return "Password must contain at least one lowercase letter"
    if not any(c.isdigit() for c in password):
        return "Password must contain at least one digit"
    if password.lower() in _COMMON_PASSWORDS:
        return "This password is too common. Please choose a stronger password."
    return None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def client_ip(request: Request) -> str:
    """Address of the caller.

    X-Forwarded-For is client-controlled, so it is only read when the direct
    peer is a configured proxy, and then only the entry that proxy appended.
    """
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and peer in settings.trusted_proxy_list:
        return forwarded.split(",")[-1].strip() or peer
    return peer


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")[:500]


# ── Token helpers ────────────────────────────────────────────


def generate_jti() -> str:
    """Generate a unique JWT ID for session tracking."""
    return uuid.uuid4().hex


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    jti: Optional[str] = None,
) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({
        "exp": expire,
        "type": "access",
        "jti": jti or generate_jti(),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def create_refresh_token(data: dict, jti: Optional[str] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_expire_days)
    to_encode.update({
        "exp": expire,
        "type": "refresh",
        "jti": jti or generate_jti(),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and return the JWT payload. Raises JWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])


# ── User dependencies ───────────────────────────────────────


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Decode the bearer token and return its user, checking the session is live."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "unauthenticated", "message": "Could not validate credentials"},
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = decode_token(credentials.credentials)
        user_id_raw = payload.get("sub")
        token_type: str = payload.get("type")
        if user_id_raw is None or token_type != "access":
            raise credentials_exception
        user_id = int(user_id_raw)
    except (JWTError, ValueError, TypeError):
        raise credentials_exception

    # Every access token is bound to a session row; revoked sessions fail here.
    token_jti = payload.get("jti")
    if not token_jti:
        raise credentials_exception
    update_result = await db.execute(
        update(UserSession)
        .where(
            UserSession.token_jti == token_jti,
            UserSession.is_active.is_(True),
        )
        .values(last_activity_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if update_result.rowcount == 0:
        raise credentials_exception
    # heartbeat is committed on its own so a failing request never holds the row
    await db.commit()

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise credentials_exception
    if user.status != UserStatus.ACTIVE.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "forbidden", "message": f"Account is {user.status}"},
        )
    return user
