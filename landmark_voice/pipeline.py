"""Core orchestration for the landmark voice guide."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Deque, List, Optional, Sequence

from .config import DEFAULT_END_PHRASES, AppConfig
from .interfaces import ChatBackend, SpeechChannels
from .models import BotMessage, ChoiceOption, Conversation
from .scheduling import TaskScheduler
from .utils import Signal, find_end_phrase, normalize_intent

logger = logging.getLogger(__name__)

# Scheduler key for work that is not tied to one conversation (init, delayed restart).
_LIFECYCLE = "lifecycle"
_BOT_WAIT_STEP = 0.05


class ConversationState(Enum):
    INACTIVE = "inactive"
    INITIALIZING = "initializing"
    ACTIVE = "active"


class ConversationOrchestrator:
    """
    Ties the chat backend and the speech channels into one conversation loop.

    A conversation starts from detected landmarks: the orchestrator creates it
    on the chat backend, posts a landmark event, then polls for assistant
    messages and voices them one at a time. Final user transcripts are
    normalized and posted back. The loop runs until the backend sends the end
    sentinel or :meth:`end_conversation` is called.

    All work for a conversation is scheduled under its id and cancelled
    together when it ends; results that come back for a conversation that is
    no longer current are dropped.

    Usage:
        orchestrator = ConversationOrchestrator(
            chat_client=BotpressChatClient(config.chat_url, user_key=config.user_key),
            speech=DeepgramSpeechManager.from_config(config),
        )
        orchestrator.start()
        orchestrator.start_conversation(["cologne_cathedral"])
    """

    def __init__(
        self,
        *,
        chat_client: Optional[ChatBackend],
        speech: Optional[SpeechChannels],
        end_sentinel: str = "[[END]]",
        end_phrases: Sequence[str] = DEFAULT_END_PHRASES,
        poll_interval: float = 0.8,
        bot_settle_delay: float = 0.5,
        restart_delay: float = 1.0,
        response_watchdog: float = 7.0,
        max_utterance_seconds: float = 30.0,
        scheduler: Optional[TaskScheduler] = None,
    ) -> None:
        self._chat = chat_client
        self._speech = speech
        self._end_sentinel = end_sentinel
        self._end_phrases = tuple(end_phrases)
        self._poll_interval = poll_interval
        self._bot_settle_delay = bot_settle_delay
        self._restart_delay = restart_delay
        self._response_watchdog = response_watchdog
        self._max_utterance_seconds = max_utterance_seconds
        self._scheduler = scheduler or TaskScheduler()

        self.enabled = False
        self._state = ConversationState.INACTIVE
        self._conversation: Optional[Conversation] = None
        self._generation = 0
        self._processing_bot_response = False
        self._bot_queue: Deque[str] = deque()
        self._bot_dispatches = 0
        self._last_choice_options: List[ChoiceOption] = []

        self.conversation_started = Signal("conversation_started")
        self.conversation_ended = Signal("conversation_ended")
        self.user_spoke = Signal("user_spoke")
        self.bot_spoke = Signal("bot_spoke")
        self.end_phrase_detected = Signal("end_phrase_detected")

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        chat_client: Optional[ChatBackend],
        speech: Optional[SpeechChannels],
    ) -> "ConversationOrchestrator":
        return cls(
            chat_client=chat_client,
            speech=speech,
            end_sentinel=config.end_sentinel,
            end_phrases=config.end_phrases,
            poll_interval=config.poll_interval,
            bot_settle_delay=config.bot_settle_delay,
            restart_delay=config.restart_delay,
            response_watchdog=config.response_watchdog,
            max_utterance_seconds=config.max_utterance_seconds,
        )

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ConversationState.ACTIVE

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation.id if self._conversation else None

    @property
    def is_processing_bot_response(self) -> bool:
        return self._processing_bot_response

    @property
    def queued_messages(self) -> Sequence[str]:
        return tuple(self._bot_queue)

    @property
    def last_choice_options(self) -> Sequence[ChoiceOption]:
        return tuple(self._last_choice_options)

    def _is_current(self, conversation_id: str) -> bool:
        return (
            self._state is not ConversationState.INACTIVE
            and self._conversation is not None
            and self._conversation.id == conversation_id
        )

    # -------------------------------------------------------------- lifecycle

    def start(self) -> bool:
        """
        Validate collaborators, subscribe to speech events and open the channels.

        With a collaborator missing the orchestrator disables itself instead of
        running half-configured.
        """
        if self._chat is None or self._speech is None:
            logger.error("Missing required components! chat=%s speech=%s", self._chat, self._speech)
            self.enabled = False
            return False

        self._speech.final_transcript.connect(self.handle_final_transcript)
        self._speech.speech_started.connect(self.on_user_started_speaking)
        self._speech.speech_ended.connect(self.on_user_stopped_speaking)
        self._speech.stt_connected.connect(self._on_stt_ready)
        self._speech.tts_connected.connect(self._on_tts_ready)
        self._speech.connect_all()
        self.enabled = True
        return True

    def shutdown(self) -> None:
        """Unsubscribe, close the speech channels and end any conversation."""
        if self._speech is not None:
            self._speech.final_transcript.disconnect(self.handle_final_transcript)
            self._speech.speech_started.disconnect(self.on_user_started_speaking)
            self._speech.speech_ended.disconnect(self.on_user_stopped_speaking)
            self._speech.stt_connected.disconnect(self._on_stt_ready)
            self._speech.tts_connected.disconnect(self._on_tts_ready)
            self._speech.disconnect_all()
        self.end_conversation()
        self.enabled = False

    def suspend(self) -> None:
        """Pause hook: end the conversation and release the speech channels."""
        self.end_conversation()
        if self._speech is not None:
            self._speech.suspend()

    def on_landmarks_detected(self, landmarks: Sequence[str]) -> Optional[asyncio.Task]:
        if self._state is not ConversationState.INACTIVE:
            logger.info("Conversation already active, ignoring new detection")
            return None
        return self.start_conversation(landmarks)

    def start_conversation(self, landmarks: Sequence[str]) -> Optional[asyncio.Task]:
        """
        Start a conversation about ``landmarks``.

        If one is already running it is ended first and the new one starts
        after ``restart_delay``. The most recent request always wins. Returns
        the task doing the work, or None when the request was rejected.
        """
        if not self.enabled:
            logger.error("Orchestrator is not started; ignoring conversation request")
            return None
        landmarks = [label for label in landmarks if label]
        if not landmarks:
            logger.warning("No landmarks provided")
            return None

        if self._state is not ConversationState.INACTIVE:
            logger.warning("Conversation already active. Ending current conversation first.")
            self.end_conversation()
            return self._scheduler.spawn(_LIFECYCLE, self._delayed_start(landmarks), name="delayed-start")

        # A newer request supersedes a restart that is still waiting.
        self._scheduler.cancel(_LIFECYCLE)
        return self._scheduler.spawn(_LIFECYCLE, self._initialize(landmarks), name="initialize-conversation")

    async def _delayed_start(self, landmarks: List[str]) -> None:
        await asyncio.sleep(self._restart_delay)
        await self._initialize(landmarks)

    async def _initialize(self, landmarks: List[str]) -> None:
        chat = self._chat
        if chat is None:
            return
        logger.info("Starting conversation with landmarks: %s", ", ".join(landmarks))
        self._state = ConversationState.INITIALIZING
        self._generation += 1
        generation = self._generation

        conversation_id = await chat.create_conversation()
        if generation != self._generation:
            logger.info("Discarding conversation %s created for a superseded request", conversation_id)
            return
        if not conversation_id:
            logger.error("Failed to create conversation")
            self._state = ConversationState.INACTIVE
            return

        self._conversation = Conversation(id=conversation_id, landmarks=tuple(landmarks))
        await chat.send_landmark_event(conversation_id, landmarks)
        if not self._is_current(conversation_id):
            return

        self._state = ConversationState.ACTIVE
        self._scheduler.spawn(conversation_id, self._poll_loop(conversation_id), name="poll-messages")
        self.conversation_started.emit(list(landmarks))

    def end_conversation(self) -> None:
        """End the current conversation and reset all per-conversation state; idempotent."""
        if self._state is ConversationState.INACTIVE:
            self._scheduler.cancel(_LIFECYCLE)
            return

        was_active = self._state is ConversationState.ACTIVE
        logger.info("Ending conversation %s", self.conversation_id or "<initializing>")
        self._state = ConversationState.INACTIVE
        self._generation += 1
        if self._conversation is not None:
            self._conversation.active = False
        self._conversation = None
        self._processing_bot_response = False
        self._bot_queue.clear()
        if self._chat is not None:
            self._chat.reset_message_tracking()

        if self._speech is not None:
            self._speech.stop_playback()
            self._speech.stop_listening()

        self._scheduler.cancel_all()

        if was_active:
            self.conversation_ended.emit()
        logger.info("Conversation ended. Ready for new detection.")

    # ------------------------------------------------------------- bot side

    async def _poll_loop(self, conversation_id: str) -> None:
        chat = self._chat
        if chat is None:
            return
        while self.is_active and self._is_current(conversation_id):
            message = await chat.poll_messages(conversation_id)
            if message is not None:
                if self._is_current(conversation_id):
                    self.handle_bot_message(message)
                else:
                    logger.debug("Dropping message for stale conversation %s", conversation_id)
            if not self._is_current(conversation_id):
                break
            await asyncio.sleep(self._poll_interval)

    def handle_bot_message(self, message: BotMessage) -> None:
        """Voice an assistant message now, or queue it behind the one in flight."""
        text = message.text
        if not text or not self.is_active or self._conversation is None:
            return

        if text.strip() == self._end_sentinel:
            logger.info("Received END sentinel from chat backend")
            self.end_conversation()
            return

        if message.is_choice:
            self._last_choice_options = list(message.options)

        if self._processing_bot_response:
            self._bot_queue.append(text)
            logger.debug("Bot message queued (queue=%d)", len(self._bot_queue))
            return

        conversation_id = self._conversation.id
        self._processing_bot_response = True
        self._scheduler.spawn(conversation_id, self._voice_bot_messages(conversation_id, message), name="voice-bot")

    async def _voice_bot_messages(self, conversation_id: str, first: BotMessage) -> None:
        speech = self._speech
        if speech is None:
            self._processing_bot_response = False
            return
        text = first.text
        options = first.options if first.is_choice else []
        try:
            while True:
                self._bot_dispatches += 1
                logger.info("Bot says: %s", text)
                self.bot_spoke.emit(text)
                speech.stop_listening()
                speech.send_text(text)
                if options:
                    logger.info("Options available: %s", " | ".join(opt.label for opt in options))

                await asyncio.sleep(self._bot_settle_delay)
                if not self._is_current(conversation_id) or not self._bot_queue:
                    break
                await self._wait_for_bot_to_finish()
                if not self._is_current(conversation_id) or not self._bot_queue:
                    break
                text = self._bot_queue.popleft()
                options = []
        finally:
            if self._is_current(conversation_id):
                self._processing_bot_response = False

    async def _wait_for_bot_to_finish(self) -> None:
        speech = self._speech
        if speech is None:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._max_utterance_seconds
        while speech.is_bot_speaking and loop.time() < deadline:
            await asyncio.sleep(_BOT_WAIT_STEP)

    # ------------------------------------------------------------ user side

    def handle_final_transcript(self, transcript: str) -> None:
        """Normalize a finished user utterance and post it to the chat backend."""
        if not self.is_active or self._conversation is None:
            return
        if not transcript or not transcript.strip():
            return

        logger.info("User said (final): %s", transcript)
        normalized = normalize_intent(transcript, self._last_choice_options)
        if normalized != transcript:
            logger.info("Intent normalized to: %s", normalized)
            transcript = normalized

        phrase = find_end_phrase(transcript, self._end_phrases)
        if phrase is not None:
            # Reported only; ending is left to the backend's sentinel.
            logger.info("End phrase detected in user speech: %s", phrase)
            self.end_phrase_detected.emit(phrase)

        self.user_spoke.emit(transcript)

        conversation_id = self._conversation.id
        self._scheduler.call_later(
            conversation_id,
            self._response_watchdog,
            self._on_response_watchdog,
            conversation_id,
            self._bot_dispatches,
        )
        self._scheduler.spawn(conversation_id, self._send_user_message(conversation_id, transcript), name="send-user-text")

    async def _send_user_message(self, conversation_id: str, text: str) -> None:
        chat = self._chat
        if chat is None:
            return
        loop = asyncio.get_running_loop()
        started = loop.time()
        await chat.send_text(conversation_id, text)
        logger.debug("User message dispatch duration: %.2fs", loop.time() - started)

    def _on_response_watchdog(self, conversation_id: str, dispatches_at_send: int) -> None:
        if not self.is_active or not self._is_current(conversation_id):
            return
        if self._processing_bot_response or self._bot_dispatches != dispatches_at_send:
            return
        if self._speech is None:
            return
        logger.warning("No bot reply within %.1fs. Re-listening.", self._response_watchdog)
        self._speech.start_listening()

    def on_user_started_speaking(self) -> None:
        # Barge-in: user speech always cuts bot audio.
        if self._speech is not None:
            self._speech.stop_playback()

    def on_user_stopped_speaking(self) -> None:
        logger.info("User stopped speaking, waiting for bot response")

    def _on_stt_ready(self) -> None:
        logger.info("STT is ready")

    def _on_tts_ready(self) -> None:
        logger.info("TTS is ready")
