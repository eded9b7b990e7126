from fastapi import APIRouter, Depends, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..api.dependencies import get_current_user, get_db
from ..auth.jwt import create_token_for_user, get_password_hash, verify_password
from ..config import settings
from ..constants import UserRole
from ..core.errors import Conflict, Forbidden, Unauthenticated
from ..core.rate_limit import rate_limit_dependency
from ..models.models import Owner, ServiceProvider, Tenant, User, utcnow
from ..schemas.schemas import Token, UserCreate, UserRead
from ..services.audit import audit_log

router = APIRouter()

login_rate_limit = rate_limit_dependency(
    "auth:login",
    limit=settings.login_rate_limit,
    window_seconds=settings.login_rate_window_seconds,
)


def build_user(payload: UserCreate) -> User:
    common = {
        "email": payload.email,
        "hashed_password": get_password_hash(payload.password),
        "first_name": payload.first_name.strip(),
        "last_name": payload.last_name.strip(),
        "phone": payload.phone,
    }
    if payload.role == UserRole.SERVICE_PROVIDER:
        return ServiceProvider(company_name=payload.company_name, service_types=payload.service_types, **common)
    if payload.role == UserRole.TENANT:
        return Tenant(**common)
    return Owner(**common)


def _build_token_response(user: User) -> Token:
    return Token(
        access_token=create_token_for_user(user),
        token_type="bearer",
        role=user.role,
        expires_in=settings.access_token_expire_minutes * 60,
    )


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register_user(payload: UserCreate, db: Session = Depends(get_db)) -> User:
    if db.query(User.id).filter(User.email == payload.email).first():
        raise Conflict("Email already registered.")

    user = build_user(payload)
    db.add(user)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Email already registered.") from exc

    audit_log(
        db_session=db,
        actor_user_id=user.id,
        action="user.register",
        target_entity_type="User",
        target_entity_id=str(user.id),
        after={"email": user.email, "role": user.role},
    )
    db.commit()
    db.refresh(user)
    return user


@router.post("/login", response_model=Token, dependencies=[Depends(login_rate_limit)])
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> Token:
    user = db.query(User).filter(User.email == form_data.username.strip().lower()).first()
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise Unauthenticated("Invalid credentials.")
    if not user.is_active:
        raise Forbidden("Account is inactive.")

    user.last_login = utcnow()
    db.commit()
    return _build_token_response(user)


@router.get("/me", response_model=UserRead)
def read_current_user(current_user: User = Depends(get_current_user)) -> User:
    return current_user
