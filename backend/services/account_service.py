from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import jwt
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auth.utils import TokenPair, create_token_pair, hash_password, verify_password
from config import AccountDefaults
from db.models import User, UserHealth, UserPoints, UserToken
from services.code_store import CodePurpose, CodeStage
from services.errors import (
    AlreadyExists,
    BadCredentials,
    Forbidden,
    NotFound,
    OperationFailed,
    SameAsOld,
)
from services.verification_service import VerificationService
from utils.energy import ActivityLevel, Gender, total_daily_energy_expenditure

logger = logging.getLogger(__name__)

REGISTERED_MESSAGE = "Registration succeeded"
PASSWORD_CHANGED_MESSAGE = "Password changed"


def profile_of(user: User) -> dict:
    return {
        "id": user.id,
        "phone": user.phone,
        "name": user.name,
        "avatar": user.avatar,
        "gender": user.gender,
    }


class AccountFlow(ABC):
    """How an SMS login resolves the account behind a phone number."""

    name: str = ""

    @abstractmethod
    async def login(self, accounts: "AccountService", phone: str, sms_code: str) -> User:
        ...


class PasswordAccountFlow(AccountFlow):
    """Accounts are created explicitly through ``register``; login never creates one."""

    name = "password"

    async def login(self, accounts: "AccountService", phone: str, sms_code: str) -> User:
        await accounts.verification.consume_sms_code(phone, CodePurpose.LOGIN, sms_code)
        user = await run_in_threadpool(accounts.find_by_phone, phone)
        if not user:
            raise NotFound()
        return user


class PhoneFirstAccountFlow(AccountFlow):
    """The first successful SMS login creates the account."""

    name = "phone_first"

    async def login(self, accounts: "AccountService", phone: str, sms_code: str) -> User:
        await accounts.verification.consume_sms_code(phone, CodePurpose.LOGIN, sms_code)
        await accounts.verification.discard(phone, CodePurpose.LOGIN, CodeStage.CAPTCHA)
        return await run_in_threadpool(self._find_or_create, accounts, phone)

    @staticmethod
    def _find_or_create(accounts: "AccountService", phone: str) -> User:
        user = accounts.find_by_phone(phone)
        if user:
            return user
        try:
            return accounts.create_user(phone, password_hash=None)
        except AlreadyExists:
            # Lost a creation race against a concurrent login for the same phone.
            user = accounts.find_by_phone(phone)
            if not user:
                raise OperationFailed("Login failed")
            return user


ACCOUNT_FLOWS: dict[str, type[AccountFlow]] = {
    PasswordAccountFlow.name: PasswordAccountFlow,
    PhoneFirstAccountFlow.name: PhoneFirstAccountFlow,
}


def build_account_flow(name: str) -> AccountFlow:
    key = (name or "").strip().lower()
    flow_cls = ACCOUNT_FLOWS.get(key)
    if flow_cls is None:
        raise ValueError(f"Unknown ACCOUNT_FLOW: {name}")
    return flow_cls()


class AccountService:
    def __init__(
        self,
        db: Session,
        verification: VerificationService,
        flow: AccountFlow,
        defaults: AccountDefaults,
        hash_scheme: str = "bcrypt",
    ) -> None:
        self.db = db
        self.verification = verification
        self.flow = flow
        self.defaults = defaults
        self.hash_scheme = hash_scheme

    def find_by_phone(self, phone: str) -> User | None:
        return self.db.query(User).filter(User.phone == phone).first()

    def find_by_id(self, user_id: int) -> User | None:
        return self.db.query(User).filter(User.id == user_id).first()

    def create_user(self, phone: str, password_hash: str | None) -> User:
        user = User(phone=phone, password_hash=password_hash)
        user.points = UserPoints(points=self.defaults.point_count)
        user.token_balance = UserToken(amount=self.defaults.token_count)
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise AlreadyExists() from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to create user for %s", phone)
            raise OperationFailed("Registration failed") from exc
        self.db.refresh(user)
        logger.info("Created user %s for %s", user.id, phone)
        return user

    def _set_password(self, user: User, new_password: str) -> None:
        user.password_hash = hash_password(new_password, self.hash_scheme)
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to update password for user %s", user.id)
            raise OperationFailed("Failed to change password") from exc
        logger.info("Password changed for user %s", user.id)

    def _session(self, user: User) -> dict:
        try:
            tokens = create_token_pair(user.id, user.phone)
        except (jwt.PyJWTError, ValueError) as exc:
            logger.exception("Token minting failed for user %s", user.id)
            raise OperationFailed("Login failed") from exc
        return {
            **profile_of(user),
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
        }

    def _register_user(self, phone: str, password: str) -> None:
        if self.find_by_phone(phone):
            raise AlreadyExists()
        self.create_user(phone, password_hash=hash_password(password, self.hash_scheme))

    def _reset_password(self, phone: str, new_password: str) -> None:
        user = self.find_by_phone(phone)
        if not user:
            raise NotFound()
        self._set_password(user, new_password)

    def _replace_password(self, user_id: int, phone: str, new_password: str) -> None:
        user = self.find_by_id(user_id)
        if not user:
            raise NotFound()
        if user.phone != phone:
            raise Forbidden("Phone number does not belong to the current user")
        if verify_password(new_password, user.password_hash):
            raise SameAsOld()
        self._set_password(user, new_password)

    # SMS-gated operations are coroutines: the code store and SMS gateway are
    # awaited directly, database and bcrypt work runs in the threadpool.

    async def login(self, phone: str, sms_code: str) -> dict:
        user = await self.flow.login(self, phone, sms_code)
        return self._session(user)

    async def register(self, phone: str, sms_code: str, password: str) -> str:
        await self.verification.consume_sms_code(phone, CodePurpose.REGISTER, sms_code)
        await run_in_threadpool(self._register_user, phone, password)
        return REGISTERED_MESSAGE

    async def forget_password(self, phone: str, sms_code: str, new_password: str) -> str:
        await self.verification.consume_sms_code(phone, CodePurpose.FORGET_PASSWORD, sms_code)
        await run_in_threadpool(self._reset_password, phone, new_password)
        return PASSWORD_CHANGED_MESSAGE

    async def change_password(self, user_id: int, phone: str, sms_code: str, new_password: str) -> str:
        await self.verification.consume_sms_code(phone, CodePurpose.CHANGE_PASSWORD, sms_code)
        await run_in_threadpool(self._replace_password, user_id, phone, new_password)

        try:
            await self.verification.discard(phone, CodePurpose.CHANGE_PASSWORD, CodeStage.SMS)
        except Exception as exc:
            # The password write is already committed; the code was consumed above.
            logger.warning("Could not clear change-password code for %s: %s", phone, exc)
        return PASSWORD_CHANGED_MESSAGE

    # Plain database operations stay synchronous and are served from ``def`` routes.

    def login_by_password(self, phone: str, password: str) -> dict:
        user = self.find_by_phone(phone)
        if not user:
            raise NotFound()
        if not verify_password(password, user.password_hash):
            raise BadCredentials()
        return self._session(user)

    def refresh_session(self, user_id: int) -> TokenPair:
        user = self.find_by_id(user_id)
        if not user:
            raise NotFound()
        return create_token_pair(user.id, user.phone)

    def get_user_info(self, user_id: int) -> dict:
        user = self.find_by_id(user_id)
        if not user:
            raise Forbidden()
        return profile_of(user)

    def get_points(self, user_id: int) -> UserPoints:
        row = self.db.query(UserPoints).filter(UserPoints.user_id == user_id).first()
        if not row:
            raise NotFound("Points record does not exist")
        return row

    def set_user_health(
        self,
        user_id: int,
        height: float,
        weight: float,
        age: int,
        gender: Gender,
        activity_level: ActivityLevel,
    ) -> UserHealth:
        gender = Gender(gender)
        activity_level = ActivityLevel(activity_level)
        tdee = total_daily_energy_expenditure(height, weight, age, gender, activity_level)

        row = self.db.query(UserHealth).filter(UserHealth.user_id == user_id).first()
        if row is None:
            row = UserHealth(user_id=user_id)
            self.db.add(row)
        row.height = height
        row.weight = weight
        row.age = age
        row.gender = gender.value
        row.activity_level = activity_level.value
        row.tdee = tdee
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to save health data for user %s", user_id)
            raise OperationFailed("Failed to save health data") from exc
        self.db.refresh(row)
        return row
