# tokenward/api/endpoints/users.py
from fastapi import APIRouter, Depends

from tokenward.api.dependencies import get_token_service
from tokenward.api.gateway import get_current_active_user
from tokenward.models.user import User as UserModel
from tokenward.schemas.common import ApiResponse
from tokenward.schemas.user import SessionCount, User as UserSchema, UserUpdate
from tokenward.services.token_service import TokenService

# Every route works on the caller's own account; no target id is ever taken from the client
router = APIRouter()


@router.get("/me", response_model=ApiResponse[UserSchema])
async def read_user_me(current_user: UserModel = Depends(get_current_active_user)):
    return ApiResponse[UserSchema].ok("User retrieved successfully", UserSchema.from_model(current_user))


@router.put("/me", response_model=ApiResponse[UserSchema])
async def update_user_me(
    payload: UserUpdate,
    current_user: UserModel = Depends(get_current_active_user),
    service: TokenService = Depends(get_token_service),
):
    """Profile fields only. Contact fields are not editable here."""
    user = await service.update_profile(current_user, payload)
    return ApiResponse[UserSchema].ok("User updated successfully", UserSchema.from_model(user))


@router.delete("/me", response_model=ApiResponse[None])
async def delete_user_me(
    current_user: UserModel = Depends(get_current_active_user),
    service: TokenService = Depends(get_token_service),
):
    """Deactivates the account and revokes all of its refresh sessions."""
    await service.deactivate(current_user)
    return ApiResponse[None].ok("User deleted successfully")


@router.get("/me/sessions", response_model=ApiResponse[SessionCount])
async def read_my_sessions(
    current_user: UserModel = Depends(get_current_active_user),
    service: TokenService = Depends(get_token_service),
):
    count = await service.active_session_count(current_user)
    return ApiResponse[SessionCount].ok("Active sessions retrieved", SessionCount(active_sessions=count))
