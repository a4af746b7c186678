"""Progress sinks: where run progress messages go.

The executor only needs ``notify(text)``. A run started over the API
collects its messages in memory; when ``PROGRESS_WEBHOOK_URL`` is set they
are also posted there.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

import httpx

from core.utils import utc_now

logger = logging.getLogger(__name__)


@runtime_checkable
class ProgressSink(Protocol):
    async def notify(self, text: str) -> None: ...


class MemorySink:
    """Keeps every message, in order."""

    def __init__(self, messages: Optional[list[str]] = None):
        self.messages: list[str] = messages if messages is not None else []

    async def notify(self, text: str) -> None:
        self.messages.append(text)


class WebhookSink:
    """POSTs each message to an HTTP endpoint as JSON."""

    def __init__(self, url: str, user_id: str = "", timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.user_id = user_id
        self.timeout = timeout
        self._transport = transport

    async def notify(self, text: str) -> None:
        payload = {
            "user_id": self.user_id,
            "message": text,
            "timestamp": utc_now().isoformat(),
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.url,
                json=payload,
                headers={"X-Plan-Engine-Event": "progress"},
            )
            response.raise_for_status()


class FanOutSink:
    """Delivers each message to several sinks; one failing does not stop the rest."""

    def __init__(self, *sinks: ProgressSink):
        self.sinks = list(sinks)

    async def notify(self, text: str) -> None:
        for sink in self.sinks:
            try:
                await sink.notify(text)
            except Exception as e:
                logger.warning(f"Progress sink {type(sink).__name__} failed: {e}")
