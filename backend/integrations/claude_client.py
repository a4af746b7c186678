"""
Claude analysis client: the language model behind ``analysis`` plan steps.

Features:
- httpx connection pooling against the Anthropic Messages API
- Retry with backoff on rate limiting (429), overload (529) and timeouts
- Token usage tracking
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import httpx
import structlog

from app.config import get_settings
from core.exceptions import ActionExecutionError

logger = structlog.get_logger(__name__)

# Rate limited / overloaded
RETRYABLE_STATUS = (429, 529)


@runtime_checkable
class AnalysisService(Protocol):
    """Turns an analysis prompt into free-text guidance."""

    async def generate_response(self, user_id: str, prompt: str) -> str: ...


class TokenUsage:
    """Running totals of tokens consumed by analysis calls."""

    def __init__(self):
        self.requests = 0
        self.failed_requests = 0
        self.input_tokens = 0
        self.output_tokens = 0

    def record(self, input_tokens: int, output_tokens: int, success: bool = True):
        self.requests += 1
        if not success:
            self.failed_requests += 1
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens

    def get_stats(self) -> Dict[str, int]:
        return {
            "requests": self.requests,
            "failed_requests": self.failed_requests,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


class ClaudeAnalysisClient:
    """Anthropic Messages API client used for analysis steps."""

    API_BASE = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = get_settings()
        self._api_key = api_key if api_key is not None else self.settings.ANTHROPIC_API_KEY
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.usage = TokenUsage()

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> bool:
        if not self.is_configured:
            logger.warning("Claude API key not configured. Analysis steps will fail.")
            return False
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.API_BASE,
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": self.API_VERSION,
                    "content-type": "application/json",
                },
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=float(self.settings.CLAUDE_TIMEOUT),
                    write=30.0,
                    pool=10.0,
                ),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                transport=self._transport,
            )
            logger.info("Claude analysis client connected", model=self.settings.CLAUDE_MODEL)
        return True

    async def disconnect(self):
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("Claude analysis client disconnected")

    def _payload(self, messages: List[Dict[str, Any]], system: Optional[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.settings.CLAUDE_MODEL,
            "max_tokens": self.settings.CLAUDE_MAX_TOKENS,
            "temperature": self.settings.CLAUDE_TEMPERATURE,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        return payload

    async def _attempt(self, payload: Dict[str, Any], attempt: int) -> Tuple[Optional[Dict[str, Any]], str, bool]:
        """One POST /messages. Returns (data, error, retryable)."""
        started = time.monotonic()
        try:
            response = await self._client.post("/messages", json=payload)
        except httpx.TimeoutException:
            logger.warning("Claude request timeout", attempt=attempt)
            return None, "Request timed out", True
        except httpx.HTTPError as e:
            logger.error("Claude request failed", error=str(e), attempt=attempt)
            return None, str(e), True

        status = response.status_code
        if status == 200:
            data = response.json()
            usage = data.get("usage", {})
            self.usage.record(usage.get("input_tokens", 0), usage.get("output_tokens", 0))
            logger.debug("Claude request completed", duration_ms=int((time.monotonic() - started) * 1000))
            return data, "", False
        if status in RETRYABLE_STATUS:
            logger.warning("Claude API busy", status=status, attempt=attempt)
            return None, f"API busy ({status})", True

        logger.error("Claude API error", status=status, body=response.text[:500])
        return None, f"API error {status}: {response.text[:200]}", status >= 500

    async def _make_request(self, messages: List[Dict[str, Any]], system: Optional[str] = None) -> Dict[str, Any]:
        """POST /messages, retrying busy and transient failures with backoff."""
        if not await self.connect():
            raise ActionExecutionError("Claude API key not configured", action="analysis")

        payload = self._payload(messages, system)
        retries = self.settings.CLAUDE_MAX_RETRIES
        error = "no attempts made"

        for attempt in range(retries):
            data, error, retryable = await self._attempt(payload, attempt)
            if data is not None:
                return data
            self.usage.record(0, 0, success=False)
            if not retryable:
                break
            if attempt < retries - 1:
                await asyncio.sleep(min(2 ** attempt * self.settings.CLAUDE_RETRY_DELAY, 30))

        raise ActionExecutionError(f"Claude API failed: {error}", action="analysis")

    async def generate_response(self, user_id: str, prompt: str) -> str:
        """Analysis text for ``prompt``."""
        logger.info("Generating analysis", user_id=user_id, prompt_length=len(prompt))
        data = await self._make_request(
            [{"role": "user", "content": prompt}],
            system=self.settings.CLAUDE_SYSTEM_PROMPT,
        )
        return "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            "configured": self.is_configured,
            "connected": self.is_connected,
            "model": self.settings.CLAUDE_MODEL,
            "usage": self.usage.get_stats(),
        }


# ─── Singleton ────────────────────────────────────────────────

_claude_client: Optional[ClaudeAnalysisClient] = None


def get_claude_client() -> ClaudeAnalysisClient:
    """Get or create the global Claude analysis client."""
    global _claude_client
    if _claude_client is None:
        _claude_client = ClaudeAnalysisClient()
    return _claude_client
