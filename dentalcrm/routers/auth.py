# dentalcrm/routers/auth.py
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..config import get_settings
from ..database import get_db
from ..services.audit_service import audit_service, request_context

import logging

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)

def _token_response(user: models.User) -> dict:
    return {
        "access_token": security.token_for_user(user),
        "token_type": "bearer",
        "expires_in": get_settings().access_token_expire_minutes * 60,
        "user": user,
    }

@router.post("/token", response_model=schemas.TokenResponse)
def login_for_access_token(request: Request, db: Session = Depends(get_db), form_data: OAuth2PasswordRequestForm = Depends()):
    """Exchange email and password for a bearer token."""
    user = crud.get_user_by_email(db, form_data.username)
    if not user or not security.verify_password(form_data.password, user.password_hash):
        logger.warning(f"Failed login attempt for: {form_data.username}")
        audit_service.log_auth_event(
            "failed_login", user=user, user_email=form_data.username, **request_context(request)
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        audit_service.log_auth_event("account_locked", user=user, **request_context(request))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    crud.record_login(db, user)
    audit_service.log_auth_event("login", user=user, **request_context(request))
    logger.info(f"User {user.id} authenticated")
    return _token_response(user)

@router.post("/signup", response_model=schemas.TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(request: Request, payload: schemas.SignupRequest, db: Session = Depends(get_db)):
    """Self-service staff signup. Full name defaults to the email's local part."""
    try:
        user = crud.create_user(
            db,
            email=payload.email,
            full_name=payload.full_name or payload.email.split("@")[0],
            password_hash=security.get_password_hash(payload.password),
            role=payload.role,
        )
    except crud.ConflictError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An account with this email already exists")
    audit_service.log_auth_event("signup", user=user, **request_context(request))
    return _token_response(user)

@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(request: Request, current_user: models.User = Depends(security.get_current_user)):
    # Tokens are stateless; the client drops its copy
    audit_service.log_auth_event("logout", user=current_user, **request_context(request))

@router.get("/me", response_model=schemas.UserResponse)
async def read_users_me(current_user: models.User = Depends(security.get_current_user)):
    """Profile of the signed-in user."""
    return current_user
