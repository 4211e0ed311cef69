"""Streaming channel built on websocket-client with callbacks marshalled onto asyncio."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional

import websocket

from ..exceptions import SpeechChannelError
from ..interfaces import Frame

logger = logging.getLogger(__name__)


class WebSocketChannel:
    """
    One websocket connection driven by ``websocket.WebSocketApp`` on a daemon
    thread.

    The reader thread never touches caller state: every callback is handed to
    the owning event loop with ``call_soon_threadsafe`` and runs there.

    Args:
        url: Full ``wss://`` URL including query parameters.
        on_open: Called on the loop once the handshake completes.
        on_message: Called with ``str`` for text frames and ``bytes`` for binary frames.
        on_close: Called with the close status code (or None) and reason.
        on_error: Called with the transport exception.
        headers: Extra handshake headers (e.g. ``Authorization``).
        loop: Loop to deliver callbacks on; defaults to the running loop at connect time.

    Usage:
        channel = WebSocketChannel(url, on_open, on_message, on_close, on_error,
                                   headers={"Authorization": "Token ..."})
        channel.connect()
    """

    def __init__(
        self,
        url: str,
        on_open: Callable[[], Any],
        on_message: Callable[[Frame], Any],
        on_close: Callable[[Optional[int], str], Any],
        on_error: Callable[[Exception], Any],
        *,
        headers: Optional[Dict[str, str]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        ping_interval: float = 0,
    ) -> None:
        self._url = url
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._on_error = on_error
        self._headers = headers or {}
        self._loop = loop
        self._ping_interval = ping_interval
        self._app: Optional[websocket.WebSocketApp] = None
        self._thread: Optional[threading.Thread] = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open and self._app is not None

    def connect(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.debug("Channel already connecting/connected: %s", self._safe_url)
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        self._app = websocket.WebSocketApp(
            self._url,
            header=[f"{key}: {value}" for key, value in self._headers.items()],
            on_open=self._handle_open,
            on_message=self._handle_message,
            on_close=self._handle_close,
            on_error=self._handle_error,
        )
        self._thread = threading.Thread(
            target=self._app.run_forever,
            kwargs={"ping_interval": self._ping_interval},
            name=f"ws-{self._safe_url}",
            daemon=True,
        )
        logger.info("Connecting to %s", self._safe_url)
        self._thread.start()

    def send_bytes(self, data: bytes) -> None:
        self._send(data, websocket.ABNF.OPCODE_BINARY)

    def send_text(self, text: str) -> None:
        self._send(text, websocket.ABNF.OPCODE_TEXT)

    def close(self) -> None:
        app = self._app
        self._open = False
        if app is None:
            return
        try:
            app.close()
        except websocket.WebSocketException as exc:
            logger.warning("Error closing websocket: %s", exc)
        self._app = None
        self._thread = None

    def _send(self, payload: Frame, opcode: int) -> None:
        if not self.is_open or self._app is None:
            raise SpeechChannelError(f"Channel is not open: {self._safe_url}")
        try:
            self._app.send(payload, opcode=opcode)
        except (websocket.WebSocketException, OSError) as exc:
            raise SpeechChannelError(f"Send failed on {self._safe_url}: {exc}") from exc

    @property
    def _safe_url(self) -> str:
        return self._url.split("?", 1)[0]

    # websocket-client callbacks (reader thread)

    def _dispatch(self, callback: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _handle_open(self, _app: websocket.WebSocketApp) -> None:
        self._open = True
        self._dispatch(self._on_open)

    def _handle_message(self, _app: websocket.WebSocketApp, message: Frame) -> None:
        self._dispatch(self._on_message, message)

    def _handle_close(self, _app: websocket.WebSocketApp, code: Optional[int], reason: Optional[str]) -> None:
        self._open = False
        self._dispatch(self._on_close, code, reason or "")

    def _handle_error(self, _app: websocket.WebSocketApp, error: Exception) -> None:
        self._dispatch(self._on_error, error)


def websocket_channel_factory(headers: Dict[str, str]):
    """Return a channel factory that opens :class:`WebSocketChannel` connections with ``headers``."""

    def _factory(url, on_open, on_message, on_close, on_error) -> WebSocketChannel:
        return WebSocketChannel(url, on_open, on_message, on_close, on_error, headers=headers)

    return _factory
