"""Out-of-band alerts through a Slack incoming webhook."""

from __future__ import annotations

import logging

import aiohttp

from autohub.exceptions import ExternalServiceError

_logger = logging.getLogger(__name__)


class SlackNotifier:
    def __init__(self, *, webhook_url: str, http_session: aiohttp.ClientSession) -> None:
        self.webhook_url = webhook_url
        self._http = http_session

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, message: str) -> bool:
        """Post *message*. Returns ``False`` when no webhook is configured."""
        if not self.webhook_url:
            _logger.warning("No Slack webhook configured, dropping alert: %s", message)
            return False
        try:
            async with self._http.post(self.webhook_url, json={"text": message}) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ExternalServiceError(f"HTTP {resp.status} from Slack: {text[:200]}", service="slack")
        except aiohttp.ClientError as exc:
            raise ExternalServiceError(f"Slack alert failed: {exc}", service="slack") from exc
        _logger.info("Sent alert: %s", message)
        return True
