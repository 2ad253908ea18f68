import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .core.logging import setup_logging
from .database import create_tables
from .errors import CRUDError, ConflictError, InvalidTransitionError, NotFoundError
from .limiter import limiter
from .security import add_security_headers
from .seed import create_initial_data, create_or_update_admin
from .routers import (
    admin, appointments, auth, health, leads, memberships, patients, payments, pricing, public, ui, users,
)

settings = get_settings()
setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Lifespan for startup events
@app.on_event("startup")
def on_startup():
    create_tables()
    create_initial_data()
    create_or_update_admin()
    logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count", "X-Page", "X-Page-Size", "X-Last-Page"],
)

@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    return add_security_headers(response)


# ==================== ERROR HANDLING ====================
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    content = {"detail": str(exc)}
    if exc.conflicts:
        content["conflicts"] = exc.conflicts
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=content)

@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "current": exc.current, "requested": exc.requested},
    )

@app.exception_handler(CRUDError)
async def crud_error_handler(request: Request, exc: CRUDError):
    logger.error(f"Unhandled database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal database error"})


app.include_router(auth.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(patients.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(leads.router, prefix="/api/v1")
app.include_router(payments.router, prefix="/api/v1")
app.include_router(memberships.router, prefix="/api/v1")
app.include_router(pricing.router, prefix="/api/v1")
app.include_router(ui.router, prefix="/api/v1")
app.include_router(public.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


# ==================== AUTHENTICATION ====================
@app.post("/token", include_in_schema=False)
async def token_redirect():
    return RedirectResponse(url="/api/v1/auth/token", status_code=307)
