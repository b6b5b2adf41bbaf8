"""Delivery of account messages such as verification and password reset links."""

import hashlib
from abc import ABC, abstractmethod

import httpx
from loguru import logger
from pydantic import BaseModel

from src.users.core.errors import DeliveryFailed
from src.users.runtime.config.config_data import NotificationConfig


class Message(BaseModel):
    to: str
    subject: str
    body: str


class Notifier(ABC):
    """Hands a message to whatever delivers it to the account owner."""

    @abstractmethod
    async def send(self, message: Message) -> None:
        """Deliver ``message``.

        Raises:
            DeliveryFailed: the message could not be handed off
        """


class LogNotifier(Notifier):
    """Logs messages instead of sending them. Used when no mail API is configured."""

    def __init__(self) -> None:
        self.sent: list[Message] = []

    async def send(self, message: Message) -> None:
        self.sent.append(message)
        logger.bind(event="notify.logged").info(
            "Message for {} not sent, no mail API configured",
            message.to,
            extra={"subject": message.subject},
        )


class HttpEmailNotifier(Notifier):
    """Sends mail through an HTTP mail API."""

    def __init__(
        self,
        config: NotificationConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not config.email_api_url or not config.email_api_key:
            raise ValueError("Mail API URL and key are required")
        self._url = config.email_api_url
        self._key = config.email_api_key
        self._sender = config.email_from
        self._timeout = config.http_timeout
        self._transport = transport

    @staticmethod
    def _idempotency_key(message: Message) -> str:
        digest = hashlib.sha256(
            (message.to + "\x1f" + message.subject + "\x1f" + message.body).encode()
        ).hexdigest()
        return f"users:{digest}"

    async def send(self, message: Message) -> None:
        payload = {
            "from": {"email": self._sender},
            "personalizations": [{"to": [{"email": message.to}], "subject": message.subject}],
            "content": [{"type": "text/plain", "value": message.body}],
        }
        headers = {
            "Authorization": f"Bearer {self._key}",
            "Idempotency-Key": self._idempotency_key(message),
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise DeliveryFailed(f"Mail API unreachable: {exc}") from exc

        if 200 <= response.status_code < 300:
            logger.bind(event="notify.sent").info(
                "Message sent", extra={"subject": message.subject}
            )
            return
        raise DeliveryFailed(
            f"Mail API returned {response.status_code}: {response.text[:200]}"
        )


def create_notifier(config: NotificationConfig) -> Notifier:
    if config.email_api_url and config.email_api_key:
        return HttpEmailNotifier(config)
    return LogNotifier()
