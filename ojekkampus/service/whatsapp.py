from __future__ import annotations

from typing import Optional

import httpx

from ojekkampus.logging import get_logger, mask_phone
from ojekkampus.service.errors import MessageDeliveryError, ServiceTimeoutError

logger = get_logger(__name__)

OTP_MESSAGE_TEMPLATE = (
    "*Ojek Kampus - Kode OTP*\n\n"
    "Kode OTP Anda: *{code}*\n\n"
    "Berlaku selama 5 menit.\n"
    "Jangan bagikan kode ini kepada siapapun!"
)


def gateway_phone(phone_number: str) -> str:
    """Ultramsg expects ``62...`` with no ``+`` and no trunk ``0``."""

    phone = phone_number.strip().lstrip("+")
    if phone.startswith("0"):
        phone = "62" + phone[1:]
    return phone


class WhatsAppClient:
    """Outbound WhatsApp delivery through an Ultramsg-compatible gateway.

    Without an instance id and token the client runs in dev mode: the
    message is logged with the code masked and delivery reports success.
    Failed deliveries are never retried.
    """

    def __init__(
        self,
        *,
        api_url: str = "https://api.ultramsg.com",
        instance_id: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.instance_id = instance_id
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.instance_id and self.token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
                transport=self._transport,
            )
        return self._client

    async def send_otp(self, phone_number: str, code: str) -> None:
        await self.send_message(phone_number, OTP_MESSAGE_TEMPLATE.format(code=code))

    async def send_message(self, phone_number: str, body: str) -> None:
        to = gateway_phone(phone_number)
        if not self.is_configured:
            logger.info(
                "whatsapp_dev_mode",
                to=mask_phone(to),
                length=len(body),
            )
            return

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.api_url}/{self.instance_id}/messages/chat",
                data={"token": self.token, "to": to, "body": body},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "whatsapp_api_error",
                to=mask_phone(to),
                status_code=e.response.status_code,
                response=e.response.text[:200],
            )
            raise MessageDeliveryError() from e
        except httpx.TimeoutException as e:
            logger.error("whatsapp_timeout", to=mask_phone(to), timeout=self.timeout)
            raise ServiceTimeoutError(
                "message delivery timed out",
                detail={"operation": "send_otp", "timeout": self.timeout},
            ) from e
        except httpx.HTTPError as e:
            logger.error("whatsapp_transport_error", to=mask_phone(to), error=str(e))
            raise MessageDeliveryError() from e

        logger.info("whatsapp_sent", to=mask_phone(to))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
