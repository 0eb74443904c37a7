from pydantic import BaseModel, Field

from config import settings
from services.code_store import CodePurpose
from utils.energy import ActivityLevel, Gender

PHONE_PATTERN = r"^1[3-9]\d{9}$"


class CaptchaRequest(BaseModel):
    phone: str = Field(pattern=PHONE_PATTERN)
    purpose: CodePurpose = CodePurpose.LOGIN


class CaptchaResponse(BaseModel):
    image: str


class SmsRequest(BaseModel):
    phone: str = Field(pattern=PHONE_PATTERN)
    captcha: str = Field(min_length=settings.CAPTCHA_LENGTH, max_length=settings.CAPTCHA_LENGTH)
    purpose: CodePurpose = CodePurpose.LOGIN


class SmsResponse(BaseModel):
    message: str
    code: str | None = None


class LoginRequest(BaseModel):
    phone: str = Field(pattern=PHONE_PATTERN)
    sms_code: str = Field(min_length=settings.SMS_CODE_LENGTH, max_length=settings.SMS_CODE_LENGTH)


class RegisterRequest(LoginRequest):
    password: str = Field(min_length=1)


class LoginByPasswordRequest(BaseModel):
    phone: str = Field(pattern=PHONE_PATTERN)
    password: str = Field(min_length=1)


class ForgetPasswordRequest(LoginRequest):
    new_password: str = Field(min_length=1)


class ChangePasswordRequest(ForgetPasswordRequest):
    pass


class RefreshRequest(BaseModel):
    refresh_token: str


class MessageResponse(BaseModel):
    message: str


class UserResponse(BaseModel):
    id: int
    phone: str
    name: str | None = None
    avatar: str | None = None
    gender: str | None = None

    model_config = {"from_attributes": True}


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LoginResponse(UserResponse):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class UserHealthRequest(BaseModel):
    height: float = Field(ge=50, le=300)  # cm
    weight: float = Field(ge=50, le=300)  # kg
    age: int = Field(ge=1, le=100)
    gender: Gender
    activity_level: ActivityLevel


class UserHealthResponse(BaseModel):
    user_id: int
    height: float
    weight: float
    age: int
    gender: Gender
    activity_level: ActivityLevel
    tdee: float

    model_config = {"from_attributes": True}


class PointsResponse(BaseModel):
    points: int

    model_config = {"from_attributes": True}
