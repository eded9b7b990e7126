from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional

from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..config import settings
from ..constants import UserRole
from ..core.errors import Forbidden, Unauthenticated
from ..database import database
from ..models.models import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class SessionIdentity:
    user_id: int
    role: str


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    to_encode = data.copy()
    to_encode.setdefault("type", "access")
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_token_for_user(user: User) -> str:
    return create_access_token({"sub": str(user.id), "role": user.role})


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def resolve_session(token: Optional[str]) -> SessionIdentity:
    """Turn a bearer token into the identity it was issued for."""
    if not token:
        raise Unauthenticated()
    try:
        payload = decode_token(token)
    except JWTError as exc:
        raise Unauthenticated("Could not validate credentials.") from exc

    user_id = payload.get("sub")
    role = payload.get("role")
    if payload.get("type") != "access" or not user_id or role not in UserRole.ALL:
        raise Unauthenticated("Could not validate credentials.")
    try:
        return SessionIdentity(user_id=int(user_id), role=role)
    except (TypeError, ValueError) as exc:
        raise Unauthenticated("Could not validate credentials.") from exc


def get_db() -> Generator[Session, None, None]:
    db = database.session()
    try:
        yield db
    finally:
        db.close()


def load_session_user(db: Session, identity: SessionIdentity) -> User:
    user = db.get(User, identity.user_id)
    # A role change invalidates tokens issued for the old role.
    if user is None or not user.is_active or user.role != identity.role:
        raise Unauthenticated("Could not validate credentials.")
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    token = credentials.credentials if credentials else None
    identity = resolve_session(token)
    return load_session_user(db, identity)


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def role_checker(user: User = Depends(get_current_user)) -> User:
        if not allowed:
            return user
        if user.has_any_role(*allowed):
            return user
        raise Forbidden("Operation not permitted for your role.")

    return role_checker
