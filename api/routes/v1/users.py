"""
api/routes/v1/users.py -- User administration endpoints.

Routes:
  GET    /api/v1/users/check/username?username=   -- availability (public)
  GET    /api/v1/users/check/email?email=         -- availability (public)
  GET    /api/v1/users/check/employee-id?employee_id= -- availability (public)
  POST   /api/v1/users                            -- create user (USER_WRITE)
  GET    /api/v1/users/{id}                       -- get by id (USER_READ)
  GET    /api/v1/users/username/{username}        -- get by username (USER_READ)
  PUT    /api/v1/users/{id}                       -- update profile (USER_WRITE)
  PUT    /api/v1/users/{id}/password              -- change password (self or USER_WRITE)
  PUT    /api/v1/users/{id}/status                -- change status / unlock (USER_WRITE)
  DELETE /api/v1/users/{id}                       -- soft delete (USER_WRITE)

Authorization comes from the bearer token's authorities alone; these routes
do not re-read roles from the store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AvailabilityResponse,
    MessageResponse,
    PasswordChange,
    StatusUpdate,
    UserCreate,
    UserResponse,
    UserUpdate,
)
from api.routes.v1.auth import registration_from
from auth.dependencies import get_current_principal, require_permission
from auth.errors import InsufficientPermissionError
from auth.models import Principal, ProfileUpdate
from auth.rbac import USER_READ, USER_WRITE
from auth.users import UserService

router = APIRouter()


def _users(request: Request) -> UserService:
    return request.app.state.user_service


# ---------------------------------------------------------------------------
# Public availability checks
# ---------------------------------------------------------------------------


@router.get("/users/check/username", response_model=AvailabilityResponse)
def check_username(request: Request, username: str = Query(min_length=1, max_length=50)) -> AvailabilityResponse:
    return AvailabilityResponse(available=not _users(request).exists_by_username(username))


@router.get("/users/check/email", response_model=AvailabilityResponse)
def check_email(request: Request, email: str = Query(min_length=1, max_length=100)) -> AvailabilityResponse:
    return AvailabilityResponse(available=not _users(request).exists_by_email(email))


@router.get("/users/check/employee-id", response_model=AvailabilityResponse)
def check_employee_id(
    request: Request, employee_id: str = Query(min_length=1, max_length=20)
) -> AvailabilityResponse:
    return AvailabilityResponse(available=not _users(request).exists_by_employee_id(employee_id))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    principal: Principal = Depends(require_permission(USER_WRITE)),
) -> UserResponse:
    return UserResponse.from_view(_users(request).create_user(registration_from(body)))


@router.get("/users/username/{username}", response_model=UserResponse)
def get_user_by_username(
    request: Request,
    username: str,
    principal: Principal = Depends(require_permission(USER_READ)),
) -> UserResponse:
    return UserResponse.from_view(_users(request).get_user_by_username(username))


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_permission(USER_READ)),
) -> UserResponse:
    return UserResponse.from_view(_users(request).get_user(user_id))


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    principal: Principal = Depends(require_permission(USER_WRITE)),
) -> UserResponse:
    changes = ProfileUpdate(**body.model_dump())
    return UserResponse.from_view(_users(request).update_user(user_id, changes))


@router.put("/users/{user_id}/password", response_model=MessageResponse)
def change_password(
    request: Request,
    user_id: int,
    body: PasswordChange,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Change a password. Users may change their own; USER_WRITE may change anyone's.

    The current password is required either way.
    """
    users = _users(request)
    if not principal.has_authority(USER_WRITE):
        target = users.get_user(user_id)
        if target.username != principal.username:
            raise InsufficientPermissionError("You may only change your own password.")
    users.change_password(user_id, body.current_password, body.new_password, body.confirm_password)
    return MessageResponse(message="Password changed successfully.")


@router.put("/users/{user_id}/status", response_model=UserResponse)
def update_status(
    request: Request,
    user_id: int,
    body: StatusUpdate,
    principal: Principal = Depends(require_permission(USER_WRITE)),
) -> UserResponse:
    """Set ACTIVE (unlocks and resets the failure counter), INACTIVE, LOCKED, SUSPENDED or RESIGNED."""
    return UserResponse.from_view(_users(request).update_status(user_id, body.status))


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_permission(USER_WRITE)),
) -> MessageResponse:
    _users(request).delete_user(user_id)
    return MessageResponse(message="User deleted successfully.")
