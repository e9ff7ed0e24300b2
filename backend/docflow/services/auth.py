from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import UNAUTHORIZED, ServiceError
from ..orm_models import UserORM, UserRole
from ..permissions import Identity, normalize_role

ALGORITHM = "HS256"

KNOWN_ROLES = {item.value for item in UserRole}


def get_user_by_email(session: Session, email: str) -> Optional[UserORM]:
    return session.execute(select(UserORM).where(UserORM.email == email.strip().lower())).scalar_one_or_none()


def create_user(
    session: Session,
    *,
    email: str,
    full_name: str = "",
    role: str | None = None,
    company_id: str | None = None,
) -> UserORM:
    normalized_role = normalize_role(role)
    if normalized_role is not None and normalized_role not in KNOWN_ROLES:
        raise ValueError(f"Unknown role {role!r}")
    normalized_email = email.strip().lower()
    if get_user_by_email(session, normalized_email) is not None:
        raise ValueError(f"User {normalized_email} already exists")
    user = UserORM(
        email=normalized_email,
        full_name=full_name.strip() or normalized_email,
        role=normalized_role,
        company_id=company_id,
    )
    session.add(user)
    session.flush()
    return user


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.auth_access_token_expire_minutes))
    to_encode = {"sub": subject, "exp": expire}
    return jwt.encode(to_encode, settings.auth_secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.auth_secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise ServiceError(UNAUTHORIZED, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise ServiceError(UNAUTHORIZED, "Invalid token") from exc


def lookup_role(session: Session, user_id: str) -> Optional[str]:
    user = session.get(UserORM, user_id)
    if user is None:
        return None
    return normalize_role(user.role)


def resolve_identity(session: Session, token: str | None) -> Identity:
    if not token:
        raise ServiceError(UNAUTHORIZED, "Authentication required")
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise ServiceError(UNAUTHORIZED, "Invalid token")
    user = session.get(UserORM, user_id)
    if user is None or not user.is_active:
        raise ServiceError(UNAUTHORIZED, "User unavailable")
    return Identity(user_id=user.id, role=normalize_role(user.role), company_id=user.company_id)


def identity_for(user: UserORM) -> Identity:
    return Identity(user_id=user.id, role=normalize_role(user.role), company_id=user.company_id)
