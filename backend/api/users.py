from fastapi import APIRouter, Depends

from auth.models import PointsResponse, UserHealthRequest, UserHealthResponse, UserResponse
from auth.utils import get_current_user
from db.models import User
from services.account_service import AccountService
from services.providers import get_account_service

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
def me(
    user: User = Depends(get_current_user),
    accounts: AccountService = Depends(get_account_service),
):
    return accounts.get_user_info(user.id)


@router.put("/me/health", response_model=UserHealthResponse)
def set_health(
    req: UserHealthRequest,
    user: User = Depends(get_current_user),
    accounts: AccountService = Depends(get_account_service),
):
    return accounts.set_user_health(
        user.id,
        height=req.height,
        weight=req.weight,
        age=req.age,
        gender=req.gender,
        activity_level=req.activity_level,
    )


@router.get("/me/points", response_model=PointsResponse)
def points(
    user: User = Depends(get_current_user),
    accounts: AccountService = Depends(get_account_service),
):
    return accounts.get_points(user.id)
