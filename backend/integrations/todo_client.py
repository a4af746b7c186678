"""
Todo server client: the action-execution service behind plan steps.

The todo server exposes its operations as tools over JSON-RPC 2.0
(``initialize`` once, then ``tools/call``). Responses arrive either as a
plain JSON body or as a server-sent event stream carrying one JSON message.

``ActionClient`` is the interface the dispatcher depends on; tests swap in
an in-memory fake.
"""

import json
import time
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx
import structlog

from app.config import get_settings
from core.exceptions import ActionExecutionError
from core.utils import as_items

logger = structlog.get_logger(__name__)

SESSION_HEADER = "mcp-session-id"
PROTOCOL_VERSION = "2025-03-26"


@runtime_checkable
class ActionClient(Protocol):
    """Operations the executor invokes on the action-execution service."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> bool: ...

    async def list_items(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]: ...

    async def create_item(self, fields: Dict[str, Any]) -> Any: ...

    async def update_item(self, item_id: str, fields: Dict[str, Any]) -> Any: ...

    async def delete_item(self, item_id: str) -> Any: ...

    async def toggle_completion(self, item_id: str, completed: bool) -> Any: ...

    async def start_tracking(self, item_id: str) -> Any: ...

    async def stop_tracking(self, item_id: str) -> Any: ...

    async def list_active_tracking(self) -> List[Dict[str, Any]]: ...


class TodoServerClient:
    """httpx client for the todo server's tool endpoint."""

    CLIENT_INFO = {"name": "todo-plan-engine", "version": "1.0.0"}

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.TODO_SERVER_URL
        self.timeout = timeout or settings.TODO_SERVER_TIMEOUT
        self.api_key = api_key if api_key is not None else settings.TODO_SERVER_API_KEY
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session_id: Optional[str] = None
        self._is_connected: bool = False
        self._request_counter: int = 0

    @property
    def is_connected(self) -> bool:
        return self._is_connected and self._client is not None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def _headers(self) -> Dict[str, str]:
        headers = {
            "content-type": "application/json",
            "accept": "application/json, text/event-stream",
        }
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    async def connect(self) -> bool:
        """Open the HTTP client and run the ``initialize`` handshake."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers(),
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )

        logger.info("Connecting to todo server", url=self.base_url)
        try:
            response = await self._post("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "clientInfo": self.CLIENT_INFO,
            })
        except (httpx.HTTPError, ActionExecutionError) as e:
            logger.error("Failed to connect to todo server", url=self.base_url, error=str(e))
            self._is_connected = False
            return False

        self._session_id = response.headers.get(SESSION_HEADER, self._session_id)
        self._is_connected = True

        try:
            await self._post("notifications/initialized", None, notification=True)
        except httpx.HTTPError as e:
            logger.debug("Initialized notification not accepted", error=str(e))

        logger.info("Connected to todo server", url=self.base_url, session_id=self._session_id)
        return True

    async def disconnect(self):
        if self._client:
            await self._client.aclose()
            self._client = None
        self._is_connected = False
        self._session_id = None
        logger.info("Todo server client disconnected")

    async def _ensure_connected(self):
        if self.is_connected:
            return
        if not await self.connect():
            raise ActionExecutionError("Todo server not available")

    # ─── JSON-RPC transport ──────────────────────────────────────

    def _next_id(self) -> int:
        self._request_counter += 1
        return self._request_counter

    async def _post(
        self,
        method: str,
        params: Optional[Dict[str, Any]],
        notification: bool = False,
    ) -> httpx.Response:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        if not notification:
            message["id"] = self._next_id()

        headers = {SESSION_HEADER: self._session_id} if self._session_id else None
        response = await self._client.post(self.base_url, json=message, headers=headers)
        response.raise_for_status()
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        """JSON-RPC message from a JSON body or an event stream."""
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            for line in response.text.splitlines():
                if line.startswith("data:"):
                    payload = line[5:].strip()
                    if payload:
                        return json.loads(payload)
            raise ActionExecutionError("Empty event stream from todo server")
        return response.json()

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> str:
        """Call a tool and return its text content.

        Raises:
            ActionExecutionError: on transport errors, JSON-RPC errors and
                tool results flagged ``isError``
        """
        await self._ensure_connected()
        start = time.monotonic()
        logger.info("Todo tool request started", tool=name, arguments=arguments)

        try:
            response = await self._post("tools/call", {"name": name, "arguments": arguments})
            message = self._decode(response)
        except httpx.HTTPError as e:
            logger.error("Todo tool request failed", tool=name, error=str(e))
            if isinstance(e, httpx.TransportError):
                self._is_connected = False
            raise ActionExecutionError(f"Todo server request failed: {e}", action=name) from e
        except ValueError as e:
            raise ActionExecutionError(f"Invalid response from todo server: {e}", action=name) from e

        duration_ms = int((time.monotonic() - start) * 1000)

        if message.get("error"):
            error_text = message["error"].get("message", "Unknown error")
            logger.error("Todo tool returned JSON-RPC error", tool=name, error=error_text, duration_ms=duration_ms)
            raise ActionExecutionError(f"MCP tool error: {error_text}", action=name)

        result = message.get("result") or {}
        text = self._first_text(result.get("content"))

        if result.get("isError"):
            logger.error("Todo tool reported failure", tool=name, error=text, duration_ms=duration_ms)
            raise ActionExecutionError(f"MCP tool error: {text or 'Unknown error'}", action=name)

        logger.info(
            "Todo tool request completed",
            tool=name,
            duration_ms=duration_ms,
            result_preview=text[:200],
        )
        return text

    @staticmethod
    def _first_text(content: Any) -> str:
        if isinstance(content, list):
            content = content[0] if content else None
        if isinstance(content, dict) and "text" in content:
            return str(content["text"])
        return ""

    async def _call_list_tool(self, name: str, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        text = await self.call_tool(name, arguments)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse list response", tool=name, result=text[:200])
            raise ActionExecutionError("Invalid response format from todo server", action=name) from e

        # Paginated listings arrive as {"summary", "data", "pagination", ...}
        items = as_items(payload)
        wrapped = isinstance(payload, dict) and any(isinstance(v, list) for v in payload.values())
        if not items and not isinstance(payload, list) and not wrapped:
            logger.warning("List response carried no items", tool=name, result=text[:200])
        return items

    # ─── Operations ───────────────────────────────────────────────

    async def list_items(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self._call_list_tool("listTodos", dict(filters or {}))

    async def create_item(self, fields: Dict[str, Any]) -> str:
        return await self.call_tool("createTodo", dict(fields))

    async def update_item(self, item_id: str, fields: Dict[str, Any]) -> str:
        return await self.call_tool("updateTodo", {**fields, "id": item_id})

    async def delete_item(self, item_id: str) -> str:
        return await self.call_tool("deleteTodo", {"id": item_id})

    async def toggle_completion(self, item_id: str, completed: bool) -> str:
        return await self.call_tool("toggleTodoCompletion", {"id": item_id, "completed": completed})

    async def start_tracking(self, item_id: str) -> str:
        return await self.call_tool("startTimeTracking", {"id": item_id})

    async def stop_tracking(self, item_id: str) -> str:
        return await self.call_tool("stopTimeTracking", {"id": item_id})

    async def list_active_tracking(self) -> List[Dict[str, Any]]:
        return await self._call_list_tool("getActiveTimeTracking", {})


# ─── Singleton ────────────────────────────────────────────────

_todo_client: Optional[TodoServerClient] = None


def get_todo_client() -> TodoServerClient:
    """Get or create the global todo server client."""
    global _todo_client
    if _todo_client is None:
        _todo_client = TodoServerClient()
    return _todo_client
