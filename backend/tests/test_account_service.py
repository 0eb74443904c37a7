from __future__ import annotations

import asyncio
import logging
import sys
import time
from pathlib import Path

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auth.utils import hash_password, verify_password  # noqa: E402
from config import AccountDefaults, settings  # noqa: E402
from db.database import Base  # noqa: E402
from db.models import User, UserHealth, UserPoints, UserToken  # noqa: E402
from services.account_service import (  # noqa: E402
    AccountService,
    PasswordAccountFlow,
    PhoneFirstAccountFlow,
    build_account_flow,
)
from services.captcha_service import CaptchaGenerator  # noqa: E402
from services.code_store import CodePurpose, CodeStage, InMemoryCodeStore, VerificationKey  # noqa: E402
from services.errors import (  # noqa: E402
    AlreadyExists,
    BadCredentials,
    ExpiredCode,
    Forbidden,
    MismatchCode,
    NotFound,
    SameAsOld,
)
from services.sms_gateway import SmsGateway  # noqa: E402
from services.verification_service import VerificationService  # noqa: E402
from utils.energy import ActivityLevel, Gender  # noqa: E402

PHONE = "13800000000"
DEFAULTS = AccountDefaults(point_count=100, token_count=10000, code_ttl_seconds=60)


def _new_db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_service(db, flow=None) -> AccountService:
    verification = VerificationService(
        store=InMemoryCodeStore(),
        captcha_generator=CaptchaGenerator(),
        sms_gateway=SmsGateway(),
        ttl_seconds=60,
    )
    return AccountService(
        db=db,
        verification=verification,
        flow=flow or PasswordAccountFlow(),
        defaults=DEFAULTS,
        hash_scheme="bcrypt",
    )


def _sms(service: AccountService, purpose: CodePurpose, phone: str = PHONE) -> str:
    async def _issue():
        captcha = await service.verification.issue_captcha(phone, purpose)
        return await service.verification.issue_sms_code(phone, purpose, captcha.text)

    return asyncio.run(_issue())


def _register(service: AccountService, phone: str = PHONE, password: str = "pw1") -> None:
    code = _sms(service, CodePurpose.REGISTER, phone)
    assert asyncio.run(service.register(phone, code, password)) == "Registration succeeded"


def test_register_creates_user_with_default_balances():
    db = _new_db()
    service = _new_service(db)
    _register(service)

    user = db.query(User).filter(User.phone == PHONE).one()
    assert verify_password("pw1", user.password_hash)
    assert user.password_hash != "pw1"
    assert db.query(UserPoints).filter(UserPoints.user_id == user.id).one().points == 100
    assert db.query(UserToken).filter(UserToken.user_id == user.id).one().amount == 10000


def test_register_twice_fails_with_already_exists():
    db = _new_db()
    service = _new_service(db)
    _register(service)

    code = _sms(service, CodePurpose.REGISTER)
    with pytest.raises(AlreadyExists):
        asyncio.run(service.register(PHONE, code, "pw2"))
    assert db.query(User).count() == 1


def test_register_rejects_code_issued_for_another_purpose():
    db = _new_db()
    service = _new_service(db)
    code = _sms(service, CodePurpose.LOGIN)

    with pytest.raises(ExpiredCode):
        asyncio.run(service.register(PHONE, code, "pw1"))
    assert db.query(User).count() == 0


def test_login_by_password_paths():
    db = _new_db()
    service = _new_service(db)
    _register(service)

    session = service.login_by_password(PHONE, "pw1")
    assert session["phone"] == PHONE
    assert set(session) >= {"id", "name", "avatar", "gender", "access_token", "refresh_token"}
    claims = jwt.decode(session["access_token"], settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    assert claims["sub"] == str(session["id"])
    assert claims["phone"] == PHONE
    assert claims["typ"] == "access"

    with pytest.raises(BadCredentials):
        service.login_by_password(PHONE, "wrong")
    with pytest.raises(NotFound):
        service.login_by_password("13900000000", "pw1")


def test_password_login_rejects_phone_only_account():
    db = _new_db()
    service = _new_service(db, PhoneFirstAccountFlow())
    asyncio.run(service.login(PHONE, _sms(service, CodePurpose.LOGIN)))

    with pytest.raises(BadCredentials):
        service.login_by_password(PHONE, "")


def test_password_flow_sms_login_requires_existing_user():
    db = _new_db()
    service = _new_service(db)

    with pytest.raises(NotFound):
        asyncio.run(service.login(PHONE, _sms(service, CodePurpose.LOGIN)))
    assert db.query(User).count() == 0

    _register(service)
    session = asyncio.run(service.login(PHONE, _sms(service, CodePurpose.LOGIN)))
    assert session["phone"] == PHONE
    assert session["access_token"] and session["refresh_token"]


def test_sms_login_code_cannot_be_replayed():
    db = _new_db()
    service = _new_service(db)
    _register(service)

    code = _sms(service, CodePurpose.LOGIN)
    asyncio.run(service.login(PHONE, code))
    with pytest.raises(ExpiredCode):
        asyncio.run(service.login(PHONE, code))


def test_phone_first_login_creates_account_once():
    db = _new_db()
    service = _new_service(db, PhoneFirstAccountFlow())

    first = asyncio.run(service.login(PHONE, _sms(service, CodePurpose.LOGIN)))
    second = asyncio.run(service.login(PHONE, _sms(service, CodePurpose.LOGIN)))

    assert first["id"] == second["id"]
    user = db.query(User).one()
    assert user.password_hash is None
    assert user.points.points == 100
    assert user.token_balance.amount == 10000


def test_phone_first_login_clears_pending_captcha():
    db = _new_db()
    service = _new_service(db, PhoneFirstAccountFlow())
    code = _sms(service, CodePurpose.LOGIN)
    asyncio.run(service.verification.issue_captcha(PHONE, CodePurpose.LOGIN))

    asyncio.run(service.login(PHONE, code))
    captcha_key = VerificationKey(CodePurpose.LOGIN, CodeStage.CAPTCHA, PHONE)
    assert asyncio.run(service.verification.store.get(captcha_key)) is None


def test_login_with_wrong_code_fails_with_mismatch():
    db = _new_db()
    service = _new_service(db, PhoneFirstAccountFlow())
    code = _sms(service, CodePurpose.LOGIN)
    wrong = "0000" if code != "0000" else "1111"

    with pytest.raises(MismatchCode):
        asyncio.run(service.login(PHONE, wrong))
    assert db.query(User).count() == 0


def test_forget_password_overwrites_digest():
    db = _new_db()
    service = _new_service(db)
    _register(service)

    code = _sms(service, CodePurpose.FORGET_PASSWORD)
    assert asyncio.run(service.forget_password(PHONE, code, "pw2")) == "Password changed"
    service.login_by_password(PHONE, "pw2")
    with pytest.raises(BadCredentials):
        service.login_by_password(PHONE, "pw1")


def test_forget_password_for_unknown_phone():
    db = _new_db()
    service = _new_service(db)
    code = _sms(service, CodePurpose.FORGET_PASSWORD)

    with pytest.raises(NotFound):
        asyncio.run(service.forget_password(PHONE, code, "pw2"))


def test_change_password_rejects_same_password_then_succeeds():
    db = _new_db()
    service = _new_service(db)
    _register(service)
    user = db.query(User).one()

    code = _sms(service, CodePurpose.CHANGE_PASSWORD)
    with pytest.raises(SameAsOld) as exc_info:
        asyncio.run(service.change_password(user.id, PHONE, code, "pw1"))
    assert exc_info.value.status_code == 400

    code = _sms(service, CodePurpose.CHANGE_PASSWORD)
    assert asyncio.run(service.change_password(user.id, PHONE, code, "pw2")) == "Password changed"
    sms_key = VerificationKey(CodePurpose.CHANGE_PASSWORD, CodeStage.SMS, PHONE)
    assert asyncio.run(service.verification.store.get(sms_key)) is None
    db.refresh(user)
    assert verify_password("pw2", user.password_hash)


def test_change_password_sets_first_password_for_phone_only_account():
    db = _new_db()
    service = _new_service(db, PhoneFirstAccountFlow())
    session = asyncio.run(service.login(PHONE, _sms(service, CodePurpose.LOGIN)))

    code = _sms(service, CodePurpose.CHANGE_PASSWORD)
    asyncio.run(service.change_password(session["id"], PHONE, code, "first-pw"))
    service.login_by_password(PHONE, "first-pw")


def test_change_password_unknown_user_and_foreign_phone():
    db = _new_db()
    service = _new_service(db)
    _register(service)
    _register(service, phone="13900000000")
    owner = db.query(User).filter(User.phone == PHONE).one()

    code = _sms(service, CodePurpose.CHANGE_PASSWORD)
    with pytest.raises(NotFound):
        asyncio.run(service.change_password(9999, PHONE, code, "pw2"))

    code = _sms(service, CodePurpose.CHANGE_PASSWORD, phone="13900000000")
    with pytest.raises(Forbidden):
        asyncio.run(service.change_password(owner.id, "13900000000", code, "pw2"))


def test_change_password_accepts_legacy_sha256_digest():
    db = _new_db()
    service = _new_service(db)
    user = User(phone=PHONE, password_hash=hash_password("legacy", "sha256"))
    db.add(user)
    db.commit()

    code = _sms(service, CodePurpose.CHANGE_PASSWORD)
    with pytest.raises(SameAsOld):
        asyncio.run(service.change_password(user.id, PHONE, code, "legacy"))
    service.login_by_password(PHONE, "legacy")


def test_get_user_info_missing_user_is_forbidden():
    db = _new_db()
    service = _new_service(db)
    with pytest.raises(Forbidden) as exc_info:
        service.get_user_info(42)
    assert exc_info.value.status_code == 403

    _register(service)
    user = db.query(User).one()
    info = service.get_user_info(user.id)
    assert info == {"id": user.id, "phone": PHONE, "name": None, "avatar": None, "gender": None}


def test_get_points_returns_default_balance():
    db = _new_db()
    service = _new_service(db)
    _register(service)
    user = db.query(User).one()

    assert service.get_points(user.id).points == 100
    with pytest.raises(NotFound):
        service.get_points(9999)


def test_set_user_health_upserts_and_recomputes():
    db = _new_db()
    service = _new_service(db)
    _register(service)
    user = db.query(User).one()

    row = service.set_user_health(user.id, 180, 80, 30, Gender.MALE, ActivityLevel.SEDENTARY)
    assert row.tdee == 2136.0
    assert row.activity_level == "SEDENTARY"

    row = service.set_user_health(user.id, 165, 60, 40, Gender.FEMALE, ActivityLevel.LIGHTLY_ACTIVE)
    # (600 + 1031.25 - 200 - 161) * 1.375
    assert row.tdee == 1746.59
    assert row.gender == "FEMALE"
    assert db.query(UserHealth).count() == 1


def test_refresh_session_for_existing_user():
    db = _new_db()
    service = _new_service(db)
    _register(service)
    user = db.query(User).one()

    tokens = service.refresh_session(user.id)
    claims = jwt.decode(tokens.refresh_token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    assert claims["typ"] == "refresh"
    with pytest.raises(NotFound):
        service.refresh_session(9999)


def test_build_account_flow_by_name():
    assert isinstance(build_account_flow("password"), PasswordAccountFlow)
    assert isinstance(build_account_flow(" Phone_First "), PhoneFirstAccountFlow)
    with pytest.raises(ValueError):
        build_account_flow("magic-link")


def test_create_user_unique_violation_becomes_already_exists():
    db = _new_db()
    service = _new_service(db)
    service.create_user(PHONE, password_hash=None)

    with pytest.raises(AlreadyExists):
        service.create_user(PHONE, password_hash=None)
    assert db.query(User).count() == 1
    assert service.find_by_phone(PHONE) is not None


def _stale_first_lookup(service: AccountService):
    """Make the first phone lookup miss, as if a concurrent request had not committed yet."""
    real = service.find_by_phone
    calls = []

    def _lookup(phone):
        calls.append(phone)
        return None if len(calls) == 1 else real(phone)

    return _lookup


def test_register_losing_creation_race_fails_with_already_exists(monkeypatch):
    db = _new_db()
    service = _new_service(db)
    service.create_user(PHONE, password_hash=None)
    monkeypatch.setattr(service, "find_by_phone", _stale_first_lookup(service))

    code = _sms(service, CodePurpose.REGISTER)
    with pytest.raises(AlreadyExists):
        asyncio.run(service.register(PHONE, code, "pw1"))
    assert db.query(User).count() == 1


def test_phone_first_login_losing_creation_race_reuses_winner(monkeypatch):
    db = _new_db()
    service = _new_service(db, PhoneFirstAccountFlow())
    winner = service.create_user(PHONE, password_hash=None)
    monkeypatch.setattr(service, "find_by_phone", _stale_first_lookup(service))

    session = asyncio.run(service.login(PHONE, _sms(service, CodePurpose.LOGIN)))
    assert session["id"] == winner.id
    assert db.query(User).count() == 1


class _CleanupFailsStore(InMemoryCodeStore):
    """Deleting an entry that is already gone raises, like an unreachable cache."""

    async def delete(self, key):
        if await self.get(key) is None:
            raise ConnectionError("cache unavailable")
        return await super().delete(key)


def test_change_password_survives_failed_code_cleanup(caplog):
    db = _new_db()
    service = _new_service(db)
    service.verification.store = _CleanupFailsStore()
    _register(service)
    user = db.query(User).one()

    code = _sms(service, CodePurpose.CHANGE_PASSWORD)
    with caplog.at_level(logging.WARNING, logger="services.account_service"):
        assert asyncio.run(service.change_password(user.id, PHONE, code, "pw2")) == "Password changed"

    assert "Could not clear change-password code" in caplog.text
    service.login_by_password(PHONE, "pw2")


def test_password_hashing_does_not_block_event_loop():
    db = _new_db()
    service = _new_service(db)
    code = _sms(service, CodePurpose.REGISTER)

    async def _run():
        gaps = [0.0]
        done = asyncio.Event()

        async def _ticker():
            last = time.perf_counter()
            while not done.is_set():
                await asyncio.sleep(0.001)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(_ticker())
        try:
            await service.register(PHONE, code, "pw1")
        finally:
            done.set()
            await ticker
        return max(gaps)

    assert asyncio.run(_run()) < 0.1
