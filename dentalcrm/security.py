import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from passlib.context import CryptContext

from .config import get_settings
from .database import get_db
from . import models, crud

security_logger = logging.getLogger("security")

pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
    argon2__rounds=4,
    argon2__memory_cost=65536,
    argon2__parallelism=1,
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token")

PERMISSION_LEVELS = {
    models.PermissionLevel.none: 0,
    models.PermissionLevel.read: 1,
    models.PermissionLevel.write: 2,
    models.PermissionLevel.admin: 3,
}

# Role groups reused by the routers
ALL_STAFF = ("super_admin", "practice_admin", "manager", "dentist", "hygienist", "receptionist")
PRACTICE_ADMINS = ("super_admin", "practice_admin")
CLINICAL_STAFF = ("super_admin", "practice_admin", "dentist", "hygienist", "receptionist", "manager")
FRONT_DESK = ("super_admin", "practice_admin", "dentist", "receptionist")
MARKETING = ("super_admin", "practice_admin", "manager", "receptionist")
MANAGEMENT = ("super_admin", "practice_admin", "manager")


# Password utilities
def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # Unknown hash formats are treated as a non-match rather than a crash
        return False

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# JWT utilities
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))

    to_encode.update({
        "exp": expire,
        "type": "access",
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)

def verify_token(token: str, token_type: str = "access") -> Optional[Dict[str, Any]]:
    """Verify and decode JWT token"""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload

def token_for_user(user: models.User) -> str:
    return create_access_token(
        data={"sub": user.email, "user_id": user.id, "role": models.UserRole(user.role).value}
    )


# Dependencies for FastAPI
async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(token, "access")
    if not payload:
        raise credentials_exception

    user_id = payload.get("user_id")
    if not payload.get("sub") or not user_id:
        raise credentials_exception

    user = crud.get_user(db, user_id=user_id)
    if not user:
        raise credentials_exception

    if not user.is_active:
        security_logger.warning("Inactive user %s attempted access to %s", user_id, request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    return user

def require_role(*allowed_roles: str):
    """Dependency factory for role-based access control"""
    def role_dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if models.UserRole(current_user.role).value not in allowed_roles:
            security_logger.info(
                "Role %s denied; required one of %s", current_user.role.value, ", ".join(allowed_roles)
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(allowed_roles)}"
            )
        return current_user

    return role_dependency

def get_module_permission_level(db: Session, user: models.User, module_name: str) -> models.PermissionLevel:
    """Permission the user's practice holds for a product module."""
    if user.role == models.UserRole.super_admin:
        return models.PermissionLevel.admin
    if not user.client_organization_id:
        return models.PermissionLevel.none
    permission = crud.get_module_permission(db, user.client_organization_id, module_name)
    if permission is None or permission.is_enabled is False:
        return models.PermissionLevel.none
    return models.PermissionLevel(permission.permission_level)

def has_module_permission(db: Session, user: models.User, module_name: str, min_level: str = "read") -> bool:
    current = get_module_permission_level(db, user, module_name)
    return PERMISSION_LEVELS[current] >= PERMISSION_LEVELS[models.PermissionLevel(min_level)]

def require_module_permission(module_name: str, min_level: str = "read"):
    """Dependency factory for tenant module permissions (e.g. finance)"""
    def permission_dependency(
        current_user: models.User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> models.User:
        if not has_module_permission(db, current_user, module_name, min_level):
            current = get_module_permission_level(db, current_user, module_name)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient module permission: {module_name} requires '{min_level}', current '{current.value}'"
            )
        return current_user

    return permission_dependency


def add_security_headers(response):
    """Add security headers to response"""
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers.setdefault("Cache-Control", "no-store")
    return response
