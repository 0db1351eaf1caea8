"""Webhook notifications for backup cycle outcomes."""

from __future__ import annotations

from typing import Any

import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dbvault import __version__
from dbvault.backup.models import CycleResult
from dbvault.utils import LoggerMixin


class RetryableDeliveryError(Exception):
    """Server error or connection failure worth another attempt"""


class WebhookNotifier(LoggerMixin):
    """POSTs one JSON event per cycle to the configured endpoint.

    Server errors and connection failures are retried with exponential
    backoff. Delivery problems are logged and never propagate into the cycle.
    """

    def __init__(
        self,
        url: str | None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_wait: float = 1.0,
    ) -> None:
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.history: list[dict[str, Any]] = []
        self.max_history = 100

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def notify(self, result: CycleResult) -> bool:
        payload = result.to_notification()
        self._remember(payload)

        if not self.url:
            return False

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=10),
                retry=retry_if_exception_type(RetryableDeliveryError),
            ):
                with attempt:
                    delivered = await self._post(payload)
        except RetryError as e:
            self.logger.warning(
                "Failed to send notification",
                attempts=self.max_attempts,
                error=str(e.last_attempt.exception()),
            )
            return False

        if delivered:
            self.logger.debug("Notification sent", status=payload["status"])
        return delivered

    async def _post(self, payload: dict[str, Any]) -> bool:
        try:
            async with (
                aiohttp.ClientSession(
                    timeout=self.timeout,
                    headers={"User-Agent": f"dbvault/{__version__}"},
                ) as session,
                session.post(self.url, json=payload) as response,
            ):
                if response.status >= 500:
                    raise RetryableDeliveryError(
                        f"webhook returned {response.status}"
                    )
                if response.status >= 400:
                    self.logger.warning(
                        "Notification webhook rejected event",
                        status=response.status,
                    )
                    return False
        except (aiohttp.ClientError, TimeoutError) as e:
            raise RetryableDeliveryError(str(e) or type(e).__name__) from e
        return True

    def _remember(self, payload: dict[str, Any]) -> None:
        self.history.append(payload)
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history :]
