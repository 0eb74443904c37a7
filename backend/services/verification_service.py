"""Two-stage verification: a CAPTCHA gates SMS issuance, and the SMS code
gates account operations.

Entries live in the code store for ``ttl_seconds`` and are deleted as soon
as they are matched, so each CAPTCHA and each SMS code is usable once.
Keys are scoped by purpose and phone, so concurrent flows for the same phone
(login vs. password reset, say) never invalidate each other's codes.
"""
import logging

from fastapi.concurrency import run_in_threadpool

from services.captcha_service import Captcha, CaptchaGenerator
from services.code_store import CodePurpose, CodeStage, CodeStore, VerificationKey
from services.errors import ExpiredCode, MismatchCode
from services.sms_gateway import SmsGateway

logger = logging.getLogger(__name__)

DEFAULT_CODE_TTL_SECONDS = 60


class VerificationService:
    def __init__(
        self,
        store: CodeStore,
        captcha_generator: CaptchaGenerator,
        sms_gateway: SmsGateway,
        ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.captcha_generator = captcha_generator
        self.sms_gateway = sms_gateway
        self.ttl_seconds = ttl_seconds

    async def issue_captcha(self, phone: str, purpose: CodePurpose) -> Captcha:
        captcha = await run_in_threadpool(self.captcha_generator.create)
        await self.store.set(
            VerificationKey(purpose, CodeStage.CAPTCHA, phone),
            captcha.text,
            self.ttl_seconds,
        )
        logger.info("Issued %s captcha for %s", purpose.value, phone)
        return captcha

    async def issue_sms_code(self, phone: str, purpose: CodePurpose, submitted_captcha: str) -> str:
        captcha_key = VerificationKey(purpose, CodeStage.CAPTCHA, phone)
        expected = await self.store.get(captcha_key)
        if expected is None:
            logger.info("Captcha for %s/%s missing or expired", purpose.value, phone)
            raise ExpiredCode()
        if expected.lower() != (submitted_captcha or "").lower():
            logger.info("Captcha mismatch for %s/%s", purpose.value, phone)
            raise MismatchCode()
        if not await self.store.delete(captcha_key):
            # Another request consumed the same captcha first.
            raise ExpiredCode()

        code = await self.sms_gateway.send_code(phone)
        await self.store.set(VerificationKey(purpose, CodeStage.SMS, phone), code, self.ttl_seconds)
        logger.info("Issued %s SMS code for %s", purpose.value, phone)
        logger.debug("SMS code for %s/%s is %s", purpose.value, phone, code)
        return code

    async def consume_sms_code(self, phone: str, purpose: CodePurpose, submitted_code: str) -> None:
        sms_key = VerificationKey(purpose, CodeStage.SMS, phone)
        expected = await self.store.get(sms_key)
        if expected is None:
            logger.info("SMS code for %s/%s missing or expired", purpose.value, phone)
            raise ExpiredCode()
        if expected != submitted_code:
            logger.info("SMS code mismatch for %s/%s", purpose.value, phone)
            raise MismatchCode()
        if not await self.store.delete(sms_key):
            raise ExpiredCode()

    async def discard(self, phone: str, purpose: CodePurpose, stage: CodeStage) -> bool:
        return await self.store.delete(VerificationKey(purpose, stage, phone))
