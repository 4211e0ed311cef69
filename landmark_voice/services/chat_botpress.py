"""HTTP client for the Botpress Chat API (conversations, events, messages)."""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..exceptions import ChatClientError
from ..models import BotMessage, ChatMessage

logger = logging.getLogger(__name__)

LANDMARK_EVENT_TYPE = "custom.landmark"
DELIVERABLE_PAYLOADS = ("text", "choice")


class BotpressChatClient:
    """
    Minimal client for the Botpress Chat integration.

    The client is stateless about conversations (ids are passed per call) but
    keeps the dedup cursor: the id of the last assistant message it delivered.
    Blocking urllib calls run in a worker thread so the event loop keeps
    ticking while a request is in flight. Failures are logged and reported as
    "no result"; nothing is raised to the caller.

    Usage:
        >>> client = BotpressChatClient("https://chat.botpress.cloud/<webhook>", user_key="...")
        >>> conversation_id = await client.create_conversation()
        >>> await client.send_landmark_event(conversation_id, ["cologne_cathedral"])
        >>> message = await client.poll_messages(conversation_id)
    """

    def __init__(
        self,
        base_url: str,
        *,
        user_key: Optional[str] = None,
        timeout: float = 10.0,
        assistant_prefix: str = "user_",
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_key = user_key
        self._timeout = timeout
        self._assistant_prefix = assistant_prefix
        self._ssl_context = ssl_context
        self.last_processed_message_id = ""

    async def create_conversation(self) -> Optional[str]:
        """Create a conversation and reset the dedup cursor."""
        self.reset_message_tracking()
        try:
            payload = await asyncio.to_thread(self._request, "POST", "/conversations", {})
        except ChatClientError as exc:
            logger.error("CreateConversation error: %s", exc)
            return None

        conversation = payload.get("conversation")
        conversation_id = conversation.get("id") if isinstance(conversation, dict) else None
        if not isinstance(conversation_id, str) or not conversation_id:
            logger.error("CreateConversation response did not contain a conversation id")
            return None

        logger.info("CreateConversation OK: %s", conversation_id)
        return conversation_id

    async def send_event(self, conversation_id: str, event_type: str, **fields: Any) -> bool:
        """Post a custom event that can trigger scripted flows on the backend."""
        body = {"conversationId": conversation_id, "payload": {"type": event_type, **fields}}
        try:
            await asyncio.to_thread(self._request, "POST", "/events", body)
        except ChatClientError as exc:
            logger.error("SendEvent %s error: %s", event_type, exc)
            return False
        logger.debug("SendEvent %s OK", event_type)
        return True

    async def send_landmark_event(self, conversation_id: str, landmarks: Sequence[str]) -> bool:
        ok = await self.send_event(conversation_id, LANDMARK_EVENT_TYPE, landmarks=list(landmarks))
        if ok:
            logger.info("SendLandmarkEvent OK for landmarks: %s", ", ".join(landmarks))
        return ok

    async def send_text(self, conversation_id: str, text: str) -> bool:
        """Post a user-authored text message."""
        body = {"conversationId": conversation_id, "payload": {"type": "text", "text": text}}
        try:
            await asyncio.to_thread(self._request, "POST", "/messages", body)
        except ChatClientError as exc:
            logger.error("SendUserText error: %s", exc)
            return False
        logger.info("User message sent: %s", text)
        return True

    async def poll_messages(self, conversation_id: str) -> Optional[BotMessage]:
        """
        Fetch the message log and deliver the oldest assistant message not yet seen.

        Returns None when nothing new is available, including on HTTP or
        parse failures.
        """
        try:
            payload = await asyncio.to_thread(self._request, "GET", f"/conversations/{conversation_id}/messages")
            messages = parse_messages(payload)
        except ChatClientError as exc:
            logger.error("FetchMessages error: %s", exc)
            return None

        if not messages:
            return None

        if logger.isEnabledFor(logging.DEBUG):
            summary = " | ".join(f"{i}:{m.id} (u:{m.user_id})" for i, m in enumerate(messages))
            logger.debug(
                "FetchMessages total=%d lastProcessed=%s %s",
                len(messages),
                self.last_processed_message_id or "<none>",
                summary,
            )

        message, self.last_processed_message_id = select_next_assistant_message(
            messages, self.last_processed_message_id, self._assistant_prefix
        )
        if message is None or message.payload is None:
            return None

        payload_obj = message.payload
        is_choice = payload_obj.type == "choice"
        if is_choice:
            options = " ".join(f"[{opt.label} => {opt.value}]" for opt in payload_obj.options)
            logger.info("Assistant CHOICE: %s Options: %s", payload_obj.text, options)
        else:
            logger.info("Assistant TEXT: %s", payload_obj.text)
        return BotMessage(
            text=payload_obj.text,
            is_choice=is_choice,
            options=list(payload_obj.options) if is_choice else [],
            message_id=message.id,
        )

    def reset_message_tracking(self) -> None:
        self.last_processed_message_id = ""

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = urllib.request.Request(
            f"{self._base_url}{path}",
            data=data,
            headers=self._headers(with_body=data is not None),
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout, context=self._ssl_context) as response:  # type: ignore[arg-type]
                raw = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise ChatClientError(f"{method} {path} failed ({exc.code}): {detail}") from exc
        except urllib.error.URLError as exc:
            raise ChatClientError(f"{method} {path} could not reach the server: {exc.reason}") from exc
        except OSError as exc:
            raise ChatClientError(f"{method} {path} transport error: {exc}") from exc

        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ChatClientError(f"{method} {path} response was not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise ChatClientError(f"{method} {path} response was not a JSON object")
        return parsed

    def _headers(self, *, with_body: bool) -> Dict[str, str]:
        headers: Dict[str, str] = {"Accept": "application/json"}
        if with_body:
            headers["Content-Type"] = "application/json"
        if self._user_key:
            headers["x-user-key"] = self._user_key
        return headers


def parse_messages(payload: Dict[str, Any]) -> List[ChatMessage]:
    """Parse ``{"messages": [...]}`` into :class:`ChatMessage` objects (newest first, as served)."""
    raw_messages = payload.get("messages")
    if raw_messages is None:
        return []
    if not isinstance(raw_messages, list):
        raise ChatClientError("Messages response did not contain a list")
    try:
        return [ChatMessage.from_dict(item) for item in raw_messages if isinstance(item, dict)]
    except (TypeError, ValueError, AttributeError) as exc:
        raise ChatClientError(f"Malformed message in response: {exc}") from exc


def is_assistant(message: ChatMessage, prefix: str) -> bool:
    return bool(message.user_id) and message.user_id.startswith(prefix)


def select_next_assistant_message(
    messages: Sequence[ChatMessage],
    cursor: str,
    assistant_prefix: str = "user_",
) -> Tuple[Optional[ChatMessage], str]:
    """
    Pick the oldest assistant message newer than ``cursor``.

    ``messages`` is the log as served (newest first). It is walked from the
    oldest entry to the newest; everything up to and including the cursor id
    is skipped. If the cursor is set but absent from the log nothing is
    delivered, since there is no way to tell which entries are new. The
    returned cursor only moves when a message is delivered.

    Example:
        >>> log = [ChatMessage.from_dict({"id": "m2", "userId": "user_bot", "payload": {"type": "text", "text": "b"}}),
        ...        ChatMessage.from_dict({"id": "m1", "userId": "user_bot", "payload": {"type": "text", "text": "a"}})]
        >>> select_next_assistant_message(log, "")[0].id
        'm1'
        >>> select_next_assistant_message(log, "m1")[0].id
        'm2'
    """
    marker_found = not cursor
    for message in reversed(messages):
        if not marker_found:
            if message.id == cursor:
                marker_found = True
            continue
        if message.id == cursor or message.payload is None:
            continue
        if not is_assistant(message, assistant_prefix):
            continue
        payload = message.payload
        if payload.type in DELIVERABLE_PAYLOADS and payload.text:
            return message, message.id
    return None, cursor
