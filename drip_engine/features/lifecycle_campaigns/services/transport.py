"""
Message transport for campaign and outbox emails.

The engine only depends on the ``MessageTransport`` protocol. The HTTP
implementation posts to a transactional email API; the logging
implementation is used when no API is configured (dry-run).
"""

import asyncio
from typing import Protocol

import httpx

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.domain import (
    OutboxNotification,
    RenderedMessage,
    StepDefinition,
)
from drip_engine.infrastructure.observability.logging import get_logger
from drip_engine.models.domain.user_domain import CampaignUser

logger = get_logger(__name__)

REQUEST_TIMEOUT = 20  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 1
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
# Longest a single send can take: every attempt times out, plus the backoff sleeps
WORST_CASE_SEND_SECONDS = REQUEST_TIMEOUT * MAX_RETRIES + BACKOFF_FACTOR * (2 ** (MAX_RETRIES - 1) - 1)


class TransportError(Exception):
    """Raised when a message could not be handed to the email provider."""

    def __init__(self, message: str, status_code: int | None = None, recoverable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.recoverable = recoverable


class MessageTransport(Protocol):
    def is_configured(self) -> bool: ...

    async def send_sequenced_message(
        self, user: CampaignUser, step: StepDefinition, rendered: RenderedMessage
    ) -> None: ...

    async def send_one_shot_message(
        self, user: CampaignUser, notification: OutboxNotification, rendered: RenderedMessage
    ) -> bool: ...


class HttpEmailTransport:
    """Sends email through a JSON HTTP API with bearer authentication."""

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_url = api_url or settings.EMAIL_API_URL
        self.api_key = api_key or settings.EMAIL_API_KEY
        self.sender = sender or settings.EMAIL_FROM
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    async def _request_with_retry(self, payload: dict) -> httpx.Response:
        """POST with retry and backoff on throttling and server errors."""
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.post(self.api_url, json=payload, headers=headers)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Email API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise TransportError(f"Email API unreachable: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Email API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise TransportError("Email API retry loop exhausted")

    async def _send(self, to: str, rendered: RenderedMessage, tags: dict[str, str]) -> None:
        if not self.is_configured():
            raise TransportError("Email transport not configured", recoverable=False)

        payload = {
            "from": self.sender,
            "to": [to],
            "subject": rendered.subject,
            "html": rendered.html,
            "text": rendered.text,
            "tags": [{"name": key, "value": value} for key, value in tags.items()],
        }

        response = await self._request_with_retry(payload)
        if response.status_code >= 400:
            raise TransportError(
                f"Email API returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                recoverable=response.status_code in RETRY_STATUS_CODES,
            )

    async def send_sequenced_message(
        self, user: CampaignUser, step: StepDefinition, rendered: RenderedMessage
    ) -> None:
        if not user.email:
            raise TransportError("User has no email address", recoverable=False)

        await self._send(
            user.email,
            rendered,
            {"campaign": step.segment.value, "step": step.label},
        )
        logger.info("Drip email sent", user_id=user.user_id, segment=step.segment.value, step=step.label)

    async def send_one_shot_message(
        self, user: CampaignUser, notification: OutboxNotification, rendered: RenderedMessage
    ) -> bool:
        if not user.email:
            return False

        try:
            await self._send(user.email, rendered, {"type": notification.type})
        except TransportError as e:
            logger.warning(
                "One-shot email failed",
                user_id=user.user_id,
                type=notification.type,
                error=str(e),
            )
            return False

        return True


class LoggingTransport:
    """Dry-run transport: logs what would have been sent."""

    def is_configured(self) -> bool:
        return True

    async def send_sequenced_message(
        self, user: CampaignUser, step: StepDefinition, rendered: RenderedMessage
    ) -> None:
        logger.info(
            "Dry-run drip email",
            user_id=user.user_id,
            segment=step.segment.value,
            step=step.label,
            subject=rendered.subject,
        )

    async def send_one_shot_message(
        self, user: CampaignUser, notification: OutboxNotification, rendered: RenderedMessage
    ) -> bool:
        logger.info(
            "Dry-run notification email",
            user_id=user.user_id,
            type=notification.type,
            subject=rendered.subject,
        )
        return True


def build_transport() -> MessageTransport:
    """
    HTTP transport, or the dry-run transport for unconfigured local development.

    Outside development an unconfigured HTTP transport is returned and
    every send through it fails.
    """
    if not settings.email_configured() and settings.environment == "development":
        logger.warning("Email API not configured, using dry-run transport")
        return LoggingTransport()

    return HttpEmailTransport()
