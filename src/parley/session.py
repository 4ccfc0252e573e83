"""Client for a tool-hosting server speaking the JSON-RPC tool protocol.

The session lifecycle is ``DISCONNECTED -> HANDSHAKING -> CONNECTED ->
DISCONNECTED``.  Requests go out as HTTP POSTs; progress notifications for
long-running operations arrive on a separate server-push stream that is
opened after the handshake and is allowed to fail.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import time
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from parley import instrumentation
from parley.config import ParleySettings
from parley.errors import (
    HandshakeError,
    NotConnectedError,
    SessionError,
    SessionRequestError,
)
from parley.sse import SSEParser

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2024-11-05"
SESSION_ID_HEADER = "Mcp-Session-Id"
PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

_SERVER_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"


class Session(BaseModel):
    """Negotiated state of one connection. Immutable until disconnect."""

    model_config = {"frozen": True}

    session_id: str
    protocol_version: str
    capabilities: dict = Field(default_factory=dict)
    server_info: dict = Field(default_factory=dict)


class ProgressUpdate(BaseModel):
    """Payload of a ``notifications/progress`` message."""

    model_config = {"populate_by_name": True, "extra": "allow"}

    progress_token: str | int = Field(alias="progressToken")
    progress: Any = None
    total: float | None = None
    message: str | None = None
    events: list | None = None
    lines_tail: list[str] | None = None


ProgressCallback = Callable[[ProgressUpdate], Any]


class SessionClient:
    """Tool-protocol client bound to one server endpoint.

    Args:
        base_url: Endpoint receiving JSON-RPC POSTs and serving the push
            stream on GET.
        api_key: Bearer credential attached to every request.
        client: ``httpx.AsyncClient`` to use; one is created (and owned)
            when omitted.
        protocol_version: Version offered in ``initialize``.
        client_info: ``name``/``version`` reported to the server.
        timeout: Per-request timeout in seconds.
        notification_timeout: How long to wait for the push stream to
            open before carrying on without it.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
        client_info: dict | None = None,
        timeout: float = 30.0,
        notification_timeout: float = 5.0,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.protocol_version = protocol_version
        self.client_info = client_info or {"name": "parley", "version": "0.1.0"}
        self.timeout = timeout
        self.notification_timeout = notification_timeout
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(timeout=timeout)

        self.state = SessionState.DISCONNECTED
        self._session: Session | None = None
        self._tools: list[dict] = []
        self._progress_callbacks: dict[str, ProgressCallback] = {}
        self._listener: asyncio.Task | None = None
        self._request_id = 1

    @classmethod
    def from_settings(cls, settings: ParleySettings) -> "SessionClient":
        if not settings.mcp_url:
            raise ValueError("PARLEY_MCP_URL is not configured")
        return cls(settings.mcp_url, api_key=settings.mcp_api_key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED and self._session is not None

    @property
    def has_notification_channel(self) -> bool:
        return self._listener is not None and not self._listener.done()

    @property
    def notification_task(self) -> asyncio.Task | None:
        return self._listener

    @property
    def tools(self) -> list[dict]:
        """Tool manifest cached at connect time."""
        return list(self._tools)

    async def connect(self) -> Session:
        """Handshake, open the push stream, and discover tools.

        Raises:
            HandshakeError: If ``initialize`` fails or the server does not
                supply both a session id and a protocol version.  The
                client stays ``DISCONNECTED``.
        """
        if self.state != SessionState.DISCONNECTED:
            raise SessionError(f"Cannot connect while {self.state.value}")

        self.state = SessionState.HANDSHAKING
        try:
            result, headers = await self._post("initialize", {
                "protocolVersion": self.protocol_version,
                "capabilities": {
                    "tools": {},
                    "resources": {"subscribe": True},
                    "logging": {},
                },
                "clientInfo": self.client_info,
            })
        except Exception as e:
            self.state = SessionState.DISCONNECTED
            raise HandshakeError(f"Initialize failed: {e}") from e

        if not isinstance(result, dict):
            self.state = SessionState.DISCONNECTED
            raise HandshakeError("Initialize failed: No result in response")

        session_id = headers.get(SESSION_ID_HEADER) or result.get("sessionId")
        protocol_version = headers.get(PROTOCOL_VERSION_HEADER) or result.get("protocolVersion")
        if not session_id or not protocol_version:
            self.state = SessionState.DISCONNECTED
            missing = [
                label for label, value in (
                    ("session id", session_id), ("protocol version", protocol_version),
                ) if not value
            ]
            raise HandshakeError(f"Initialize failed: missing {' and '.join(missing)}")

        try:
            self._session = Session(
                session_id=session_id,
                protocol_version=protocol_version,
                capabilities=result.get("capabilities") or {},
                server_info=result.get("serverInfo") or {"name": "Unknown", "version": "1.0.0"},
            )
        except ValidationError as e:
            self.state = SessionState.DISCONNECTED
            raise HandshakeError(f"Initialize failed: {e}") from e
        self.state = SessionState.CONNECTED
        logger.info(
            f"Connected to {self._session.server_info.get('name')} "
            f"(session {session_id}, protocol {protocol_version})"
        )

        try:
            await self._notify("notifications/initialized")
        except SessionError as e:
            logger.warning(f"Server rejected initialized notification: {e}")

        await self._open_notification_channel()

        try:
            await self.list_tools()
        except SessionError:
            logger.error("Tool discovery failed, disconnecting")
            await self.disconnect()
            raise
        return self._session

    async def disconnect(self) -> None:
        """Tear down the push stream and forget the session and callbacks."""
        listener, self._listener = self._listener, None
        if listener is not None and not listener.done():
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        if self._session is not None:
            logger.info(f"Disconnected session {self._session.session_id}")
        self._session = None
        self._tools = []
        self._progress_callbacks.clear()
        self.state = SessionState.DISCONNECTED

    async def aclose(self) -> None:
        await self.disconnect()
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "SessionClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_tools(self) -> list[dict]:
        result = await self._request("tools/list", {})
        self._tools = list((result or {}).get("tools") or [])
        logger.info(f"Discovered {len(self._tools)} tool(s)")
        return self.tools

    async def call_tool(
        self, name: str, arguments: dict, progress_token: str | None = None,
    ) -> dict:
        params: dict = {"name": name, "arguments": arguments}
        if progress_token:
            params["_meta"] = {"progressToken": progress_token}
        return await self._request("tools/call", params)

    async def read_resource(self, uri: str, progress_token: str | None = None) -> dict:
        params: dict = {"uri": uri}
        if progress_token:
            params["_meta"] = {"progressToken": progress_token}
        return await self._request("resources/read", params)

    async def subscribe_resource(self, uri: str, progress_token: str | None = None) -> None:
        params: dict = {"uri": uri}
        if progress_token:
            params["progressToken"] = progress_token
        await self._request("resources/subscribe", params)

    async def unsubscribe_resource(self, uri: str, progress_token: str | None = None) -> None:
        params: dict = {"uri": uri}
        if progress_token:
            params["progressToken"] = progress_token
        await self._request("resources/unsubscribe", params)

    async def set_log_level(self, level: str) -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unsupported log level '{level}', expected one of {LOG_LEVELS}")
        await self._request("logging/setLevel", {"level": level})

    # ------------------------------------------------------------------
    # Progress callbacks
    # ------------------------------------------------------------------

    def generate_progress_token(self) -> str:
        return f"progress-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"

    def register_progress_callback(self, progress_token: str, callback: ProgressCallback) -> None:
        self._progress_callbacks[progress_token] = callback

    def unregister_progress_callback(self, progress_token: str) -> None:
        self._progress_callbacks.pop(progress_token, None)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, accept: str = "application/json, text/event-stream") -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": accept,
        }
        if self._session is not None:
            headers[SESSION_ID_HEADER] = self._session.session_id
            headers[PROTOCOL_VERSION_HEADER] = self._session.protocol_version
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _next_id(self) -> int:
        request_id = self._request_id
        self._request_id += 1
        return request_id

    async def _request(self, method: str, params: dict):
        if not self.is_connected:
            raise NotConnectedError(method)
        result, _ = await self._post(method, params)
        return result

    async def _post(self, method: str, params: dict) -> tuple[Any, httpx.Headers]:
        request_id = self._next_id()
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        logger.debug(f"Tool-protocol request {request_id}: {method}")

        async with instrumentation.session_span(method, request_id) as span:
            try:
                response = await self._http.post(
                    self.base_url, headers=self._headers(), json=body,
                )
            except httpx.HTTPError as e:
                instrumentation.record_error(span, e)
                raise SessionError(f"{method} request failed: {e}") from e

            if response.is_error:
                error = SessionError(
                    f"HTTP {response.status_code}: {response.reason_phrase} - {response.text}"
                )
                instrumentation.record_error(span, error)
                logger.error(f"Tool-protocol error response for {method}: {response.status_code}")
                raise error

            message, notifications = self._response_message(response, request_id)
            for notification in notifications:
                await self._dispatch_message(notification)
            if message.get("error"):
                err = message["error"]
                if isinstance(err, dict):
                    error = SessionRequestError(
                        err.get("code", -1), err.get("message", "unknown error"), err.get("data"),
                    )
                else:
                    error = SessionRequestError(-1, str(err))
                instrumentation.record_error(span, error)
                raise error
            return message.get("result"), response.headers

    def _response_message(
        self, response: httpx.Response, request_id: int,
    ) -> tuple[dict, list[dict]]:
        content_type = response.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            parser = SSEParser()
            records = parser.feed(response.content) + parser.flush()
            reply = None
            notifications = []
            for record in records:
                message = _parse_json(record.data)
                if message is None:
                    continue
                if message.get("id") == request_id:
                    reply = message
                elif "method" in message:
                    notifications.append(message)
            if reply is None:
                raise SessionError(f"No reply to request {request_id} in event stream")
            return reply, notifications
        try:
            message = response.json()
        except json.JSONDecodeError as e:
            raise SessionError(f"Invalid JSON-RPC response: {e}") from e
        if not isinstance(message, dict):
            raise SessionError("Invalid JSON-RPC response: not an object")
        return message, []

    async def _notify(self, method: str, params: dict | None = None) -> None:
        body: dict = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            body["params"] = params
        try:
            response = await self._http.post(self.base_url, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            raise SessionError(f"{method} notification failed: {e}") from e
        if response.is_error:
            raise SessionError(f"HTTP {response.status_code}: {response.reason_phrase}")

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    async def _open_notification_channel(self) -> None:
        request = self._http.build_request(
            "GET", self.base_url,
            headers=self._headers(accept="text/event-stream"),
            timeout=httpx.Timeout(self.timeout, read=None),
        )
        try:
            response = await asyncio.wait_for(
                self._http.send(request, stream=True), self.notification_timeout,
            )
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.warning(f"Notification channel unavailable, progress updates disabled: {e!r}")
            return

        content_type = response.headers.get("content-type", "")
        if response.is_error or not content_type.startswith("text/event-stream"):
            logger.warning(
                f"Notification channel refused (HTTP {response.status_code}, "
                f"{content_type or 'no content type'}), progress updates disabled"
            )
            await response.aclose()
            return

        self._listener = asyncio.create_task(self._listen(response))
        logger.info("Notification channel open")

    async def _listen(self, response: httpx.Response) -> None:
        parser = SSEParser()
        try:
            async for chunk in response.aiter_bytes():
                for record in parser.feed(chunk):
                    await self._dispatch_record(record.data)
            for record in parser.flush():
                await self._dispatch_record(record.data)
            logger.info("Notification channel closed by server")
        except httpx.HTTPError as e:
            logger.warning(f"Notification channel dropped: {e}")
        finally:
            await response.aclose()

    async def _dispatch_record(self, data: str) -> None:
        message = _parse_json(data)
        if message is None:
            logger.warning("Failed to parse notification record")
            return
        await self._dispatch_message(message)

    async def _dispatch_message(self, message: dict) -> None:
        try:
            result = self._handle_message(message)
        except Exception:
            logger.exception(f"Failed to handle {message.get('method')!r} notification")
            return
        if inspect.isawaitable(result):
            try:
                await result
            except Exception:
                logger.exception("Progress callback raised")

    def _handle_message(self, message: dict):
        method = message.get("method")
        params = message.get("params") or {}
        if not isinstance(params, dict):
            logger.warning(f"Dropping {method!r} notification with malformed params")
            return None
        if method == "notifications/progress":
            return self._dispatch_progress(params)
        if method == "notifications/message":
            level = _SERVER_LOG_LEVELS.get(params.get("level", "info"), logging.INFO)
            logger.log(level, f"Server log: {params.get('data')}")
        else:
            logger.debug(f"Ignoring notification {method!r}")
        return None

    def _dispatch_progress(self, params: dict):
        token = params.get("progressToken")
        callback = self._progress_callbacks.get(token)
        if callback is None:
            logger.debug(f"No callback registered for progress token {token!r}")
            return None
        try:
            update = ProgressUpdate.model_validate(params)
            return callback(update)
        except Exception:
            logger.exception(f"Progress callback for {token!r} raised")
            return None


def _parse_json(data: str) -> dict | None:
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        return None
    return message if isinstance(message, dict) else None
