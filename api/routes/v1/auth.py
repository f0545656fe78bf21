"""
api/routes/v1/auth.py -- Login, registration and token introspection endpoints.

Routes:
  POST /api/v1/auth/login      -- password login; returns a bearer token
  POST /api/v1/auth/register   -- self-service account creation
  GET  /api/v1/auth/me         -- subject and authorities of the bearer token

Security:
  POST /login is rate-limited per client address (LOGIN_RATE_LIMIT).
  Login responses carry Cache-Control: no-store so tokens are not cached.
  Failures are raised as AuthError subclasses; api/main.py turns them into
  the uniform error envelope with the kind's stable code.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, LoginResponse, MeResponse, UserCreate, UserResponse
from auth.dependencies import get_current_principal
from auth.models import Principal, Registration
from auth.service import AuthService

# Auth policy:
# - POST /api/v1/auth/login:     public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/register:  public -- self-service registration
# - GET  /api/v1/auth/me:        requires a bearer token
router = APIRouter()


def registration_from(body: UserCreate) -> Registration:
    return Registration(
        username=body.username,
        password=body.password,
        email=body.email,
        employee_id=body.employee_id,
        name=body.name,
        department=body.department,
        position=body.position,
        phone=body.phone,
    )


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a bearer token.

    Unknown username and wrong password both produce A002 invalid credentials.
    A locked account (A006) or a disabled account (A007) is reported as such.
    """
    auth_service: AuthService = request.app.state.auth_service
    result = auth_service.login(body.username, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.access_token,
            token_type=result.token_type,  # noqa: S106 # nosec B106 -- token type, not a password
            expires_in=result.expires_in,
            user=UserResponse.from_view(result.user),
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: UserCreate) -> UserResponse:
    """Create a new ACTIVE account with no roles."""
    auth_service: AuthService = request.app.state.auth_service
    return UserResponse.from_view(auth_service.register(registration_from(body)))


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return the subject and authorities carried by the caller's token."""
    return MeResponse(username=principal.username, authorities=list(principal.authorities))
