from fastapi import APIRouter, Depends, HTTPException, status

from auth.models import (
    CaptchaRequest,
    CaptchaResponse,
    ChangePasswordRequest,
    ForgetPasswordRequest,
    LoginByPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    SmsRequest,
    SmsResponse,
    TokenPairResponse,
)
from auth.utils import REFRESH_TOKEN, decode_token, get_current_user
from config import settings
from db.models import User
from services.account_service import AccountService
from services.providers import get_account_service, get_verification_service
from services.verification_service import VerificationService

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/captcha", response_model=CaptchaResponse)
async def captcha(
    req: CaptchaRequest,
    verification: VerificationService = Depends(get_verification_service),
):
    challenge = await verification.issue_captcha(req.phone, req.purpose)
    return CaptchaResponse(image=challenge.image_data_uri)


@router.post("/sms-code", response_model=SmsResponse)
async def sms_code(
    req: SmsRequest,
    verification: VerificationService = Depends(get_verification_service),
):
    code = await verification.issue_sms_code(req.phone, req.purpose, req.captcha)
    return SmsResponse(message="SMS code sent", code=code if settings.SMS_CODE_IN_RESPONSE else None)


@router.post("/login", response_model=LoginResponse)
async def login(req: LoginRequest, accounts: AccountService = Depends(get_account_service)):
    return await accounts.login(req.phone, req.sms_code)


@router.post("/register", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def register(req: RegisterRequest, accounts: AccountService = Depends(get_account_service)):
    message = await accounts.register(req.phone, req.sms_code, req.password)
    return MessageResponse(message=message)


@router.post("/login/password", response_model=LoginResponse)
def login_by_password(
    req: LoginByPasswordRequest,
    accounts: AccountService = Depends(get_account_service),
):
    return accounts.login_by_password(req.phone, req.password)


@router.post("/password/forget", response_model=MessageResponse)
async def forget_password(
    req: ForgetPasswordRequest,
    accounts: AccountService = Depends(get_account_service),
):
    message = await accounts.forget_password(req.phone, req.sms_code, req.new_password)
    return MessageResponse(message=message)


@router.post("/password/change", response_model=MessageResponse)
async def change_password(
    req: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    accounts: AccountService = Depends(get_account_service),
):
    message = await accounts.change_password(user.id, req.phone, req.sms_code, req.new_password)
    return MessageResponse(message=message)


@router.post("/refresh", response_model=TokenPairResponse)
def refresh(req: RefreshRequest, accounts: AccountService = Depends(get_account_service)):
    payload = decode_token(req.refresh_token, REFRESH_TOKEN)
    try:
        user_id = int(payload.get("sub", 0))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    tokens = accounts.refresh_session(user_id)
    return TokenPairResponse(access_token=tokens.access_token, refresh_token=tokens.refresh_token)
