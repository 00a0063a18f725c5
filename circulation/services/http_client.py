import logging
import time
from typing import Any, Callable, Optional

import httpx

from circulation.config import settings

logger = logging.getLogger(__name__)


class WebhookClient:
    """Pooled HTTP client for outbound webhook deliveries, with retry."""

    def __init__(self, timeout: float = settings.notification_timeout,
                 transport: Optional[httpx.BaseTransport] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        limits = httpx.Limits(
            max_keepalive_connections=5,
            max_connections=10,
            keepalive_expiry=30.0,
        )
        self._client = httpx.Client(
            limits=limits,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            follow_redirects=True,
            transport=transport,
        )
        self._sleep = sleep

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self._client.post(url, **kwargs)

    def post_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5,
                        **kwargs: Any) -> Optional[httpx.Response]:
        """POST with exponential backoff; returns None once every attempt failed.

        Connection errors and 5xx responses are retried, 4xx responses are not.
        """
        for attempt in range(retries):
            try:
                response = self.post(url, **kwargs)
                if response.status_code < 500:
                    return response
                logger.warning("Webhook %s answered %d (attempt %d/%d)",
                               url, response.status_code, attempt + 1, retries)
            except httpx.HTTPError as e:
                logger.warning("Webhook %s failed (attempt %d/%d): %s", url, attempt + 1, retries, e)
            if attempt < retries - 1:
                self._sleep(backoff * (2 ** attempt))
        return None

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WebhookClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
