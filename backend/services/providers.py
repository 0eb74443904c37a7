"""FastAPI dependency providers for the verification and account services."""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from config import settings
from db.database import get_db
from services.account_service import AccountService, build_account_flow
from services.captcha_service import CaptchaGenerator
from services.code_store import CodeStore, build_code_store
from services.sms_gateway import SmsGateway
from services.verification_service import VerificationService


@lru_cache(maxsize=1)
def get_code_store() -> CodeStore:
    return build_code_store(settings)


@lru_cache(maxsize=1)
def get_sms_gateway() -> SmsGateway:
    return SmsGateway(
        url=settings.SMS_GATEWAY_URL,
        api_key=settings.SMS_GATEWAY_API_KEY,
        sign_name=settings.SMS_SIGN_NAME,
        template_code=settings.SMS_TEMPLATE_CODE,
        code_length=settings.SMS_CODE_LENGTH,
        timeout_seconds=settings.SMS_GATEWAY_TIMEOUT_SECONDS,
    )


def get_verification_service() -> VerificationService:
    return VerificationService(
        store=get_code_store(),
        captcha_generator=CaptchaGenerator(length=settings.CAPTCHA_LENGTH),
        sms_gateway=get_sms_gateway(),
        ttl_seconds=settings.account_defaults().code_ttl_seconds,
    )


def get_account_service(
    db: Session = Depends(get_db),
    verification: VerificationService = Depends(get_verification_service),
) -> AccountService:
    return AccountService(
        db=db,
        verification=verification,
        flow=build_account_flow(settings.ACCOUNT_FLOW),
        defaults=settings.account_defaults(),
        hash_scheme=settings.PASSWORD_HASH_SCHEME,
    )
