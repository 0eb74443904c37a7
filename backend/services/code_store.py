from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class CodePurpose(str, Enum):
    LOGIN = "login"
    REGISTER = "register"
    FORGET_PASSWORD = "forget_password"
    CHANGE_PASSWORD = "change_password"


class CodeStage(str, Enum):
    CAPTCHA = "captcha"
    SMS = "sms"


@dataclass(frozen=True)
class VerificationKey:
    purpose: CodePurpose
    stage: CodeStage
    phone: str

    def render(self, prefix: str = "") -> str:
        parts = [self.purpose.value, self.stage.value, self.phone]
        if prefix:
            parts.insert(0, prefix)
        return ":".join(parts)


class CodeStore(ABC):
    """Short-lived key/value storage for verification codes."""

    def __init__(self, prefix: str = "") -> None:
        self._prefix = prefix

    def _key(self, key: VerificationKey) -> str:
        return key.render(self._prefix)

    @abstractmethod
    async def get(self, key: VerificationKey) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: VerificationKey, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: VerificationKey) -> bool:
        """Remove the entry. True only when this call removed a live entry."""

    async def close(self) -> None:
        return None


class InMemoryCodeStore(CodeStore):
    def __init__(self, prefix: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(prefix)
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, raw_key: str) -> tuple[str, float] | None:
        entry = self._entries.get(raw_key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._entries.pop(raw_key, None)
            return None
        return entry

    async def get(self, key: VerificationKey) -> str | None:
        with self._lock:
            entry = self._live(self._key(key))
            return entry[0] if entry else None

    async def set(self, key: VerificationKey, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[self._key(key)] = (value, self._clock() + max(int(ttl_seconds), 1))

    async def delete(self, key: VerificationKey) -> bool:
        raw_key = self._key(key)
        with self._lock:
            entry = self._live(raw_key)
            self._entries.pop(raw_key, None)
            return entry is not None


class RedisCodeStore(CodeStore):
    def __init__(self, client: Redis, prefix: str = "") -> None:
        super().__init__(prefix)
        self._client = client

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisCodeStore":
        return cls(Redis.from_url(url, decode_responses=True), prefix=prefix)

    async def get(self, key: VerificationKey) -> str | None:
        value = await self._client.get(self._key(key))
        if value is None:
            return None
        return value if isinstance(value, str) else value.decode()

    async def set(self, key: VerificationKey, value: str, ttl_seconds: int) -> None:
        await self._client.set(self._key(key), value, ex=max(int(ttl_seconds), 1))

    async def delete(self, key: VerificationKey) -> bool:
        removed = await self._client.delete(self._key(key))
        return int(removed or 0) > 0

    async def close(self) -> None:
        await self._client.aclose()


def build_code_store(app_settings) -> CodeStore:
    backend = (app_settings.CACHE_BACKEND or "memory").strip().lower()
    if backend == "redis":
        logger.info("Using redis code store at %s", app_settings.REDIS_URL)
        return RedisCodeStore.from_url(app_settings.REDIS_URL, prefix=app_settings.CACHE_KEY_PREFIX)
    if backend != "memory":
        raise ValueError(f"Unknown CACHE_BACKEND: {app_settings.CACHE_BACKEND}")
    return InMemoryCodeStore(prefix=app_settings.CACHE_KEY_PREFIX)
