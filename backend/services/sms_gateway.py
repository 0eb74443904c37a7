import logging
import secrets

import httpx

from services.errors import OperationFailed

logger = logging.getLogger(__name__)


class SmsGateway:
    """Generates numeric one-time codes and hands them to the SMS provider.

    With no ``url`` configured, delivery is only logged; this is the
    development mode.
    """

    def __init__(
        self,
        *,
        url: str = "",
        api_key: str = "",
        sign_name: str = "",
        template_code: str = "",
        code_length: int = 4,
        timeout_seconds: float = 8,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = (url or "").strip()
        self.api_key = api_key
        self.sign_name = sign_name
        self.template_code = template_code
        self.code_length = max(int(code_length), 1)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def generate_code(self) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(self.code_length))

    async def send_code(self, phone: str) -> str:
        code = self.generate_code()
        if not self.url:
            logger.info("SMS gateway not configured; skipping delivery to %s", phone)
            return code

        payload = {
            "phone": phone,
            "sign_name": self.sign_name,
            "template_code": self.template_code,
            "params": {"code": code},
        }
        headers = {"User-Agent": "PhoneAuthService/1.0"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("SMS delivery to %s failed: %s", phone, exc)
            raise OperationFailed("Failed to send SMS code") from exc
        return code
