"""Deepgram streaming speech: recognition and synthesis channels with turn management."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, Optional, Sequence
from urllib.parse import urlencode

import numpy as np

from ..audio import float_to_pcm16, pcm16_to_float
from ..config import AppConfig
from ..exceptions import SpeechChannelError
from ..interfaces import AudioCapture, AudioPlayer, ChannelFactory, Frame, StreamingChannel
from ..scheduling import TaskScheduler
from ..utils import Signal
from .microphone import SoundDeviceMicrophone
from .playback import SoundDevicePlayer
from .turn_state import TurnEvent, TurnState, is_forwarding, next_turn_state
from .websocket_channel import websocket_channel_factory

logger = logging.getLogger(__name__)

NORMAL_CLOSE = 1000
KEEPALIVE_FRAME = json.dumps({"type": "KeepAlive"})
FLUSH_FRAME = json.dumps({"type": "Flush"})
# Binary frames shorter than this may be JSON metadata rather than audio.
METADATA_PROBE_BYTES = 100

_STT = "stt"
_KEEPALIVE = "stt-keepalive"
_TICK = "tick"
_PLAYBACK = "playback"


class DeepgramSpeechManager:
    """
    Owns the recognition (speech-to-text) and synthesis (text-to-speech)
    streaming channels and decides who holds the turn.

    Microphone audio is captured as soon as recognition connects but is only
    forwarded while listening. A final transcript stops forwarding and is
    emitted on :attr:`final_transcript`. Text sent for synthesis takes the
    turn for the bot; when its audio has drained *and* the backend has
    confirmed the flush, listening resumes on its own.

    Args:
        api_key: Deepgram API key.
        microphone: Capture device (circular buffer reader).
        player: Audio output for synthesized speech.
        channel_factory: Builds streaming channels; defaults to websocket-client.
        sample_rate: PCM sample rate for both directions.
        keywords: Phrases boosted on the recognition channel.

    Usage:
        speech = DeepgramSpeechManager.from_config(config)
        speech.final_transcript.connect(on_transcript)
        speech.connect_all()
        speech.send_text("Welcome to the cathedral!")
    """

    def __init__(
        self,
        *,
        api_key: Optional[str],
        microphone: AudioCapture,
        player: AudioPlayer,
        channel_factory: Optional[ChannelFactory] = None,
        sample_rate: int = 16000,
        stt_url: str = "wss://api.deepgram.com/v1/listen",
        tts_url: str = "wss://api.deepgram.com/v1/speak",
        stt_model: str = "nova-2",
        tts_model: str = "aura-asteria-en",
        language: str = "en",
        endpointing_ms: int = 1000,
        keywords: Sequence[str] = (),
        keepalive_interval: float = 5.0,
        reconnect_delay: float = 1.0,
        listen_retry_delay: float = 1.0,
        playback_settle: float = 0.2,
        tick_interval: float = 0.02,
        scheduler: Optional[TaskScheduler] = None,
    ) -> None:
        self._microphone = microphone
        self._player = player
        self._channel_factory = channel_factory or websocket_channel_factory(
            {"Authorization": f"Token {api_key or ''}"}
        )
        self.sample_rate = sample_rate
        self._stt_url = stt_url
        self._tts_url = tts_url
        self._stt_model = stt_model
        self._tts_model = tts_model
        self._language = language
        self._endpointing_ms = endpointing_ms
        self._keywords = tuple(keywords)
        self._keepalive_interval = keepalive_interval
        self._reconnect_delay = reconnect_delay
        self._listen_retry_delay = listen_retry_delay
        self._playback_settle = playback_settle
        self._tick_interval = tick_interval
        self._scheduler = scheduler or TaskScheduler()

        self._turn = TurnState.IDLE
        self._stt: Optional[StreamingChannel] = None
        self._tts: Optional[StreamingChannel] = None
        self._stt_generation = 0
        self._tts_generation = 0
        self._stt_connected = False
        self._tts_connected = False
        self._stt_connecting = False
        self._tts_connecting = False
        self._resume_listening_on_open = False
        self._mic_position = 0

        self._audio_queue: Deque[np.ndarray] = deque()
        self._playback_task: Optional[asyncio.Task] = None
        self._flushed = False
        self._utterance = 0
        self._completion_pending = False

        self.stt_connected = Signal("stt_connected")
        self.tts_connected = Signal("tts_connected")
        self.stt_disconnected = Signal("stt_disconnected")
        self.tts_disconnected = Signal("tts_disconnected")
        self.speech_started = Signal("speech_started")
        self.speech_ended = Signal("speech_ended")
        self.final_transcript = Signal("final_transcript")
        self.transcript_received = Signal("transcript_received")
        self.tts_audio_received = Signal("tts_audio_received")
        self.utterance_finished = Signal("utterance_finished")

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        microphone: Optional[AudioCapture] = None,
        player: Optional[AudioPlayer] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ) -> "DeepgramSpeechManager":
        return cls(
            api_key=config.deepgram_api_key,
            microphone=microphone
            or SoundDeviceMicrophone(sample_rate=config.sample_rate, buffer_seconds=config.mic_buffer_seconds),
            player=player or SoundDevicePlayer(sample_rate=config.sample_rate),
            channel_factory=channel_factory,
            sample_rate=config.sample_rate,
            stt_url=config.stt_url,
            tts_url=config.tts_url,
            stt_model=config.stt_model,
            tts_model=config.tts_model,
            language=config.language,
            endpointing_ms=config.endpointing_ms,
            keywords=config.stt_keywords,
            keepalive_interval=config.keepalive_interval,
            reconnect_delay=config.reconnect_delay,
            listen_retry_delay=config.listen_retry_delay,
            playback_settle=config.playback_settle,
            tick_interval=config.tick_interval,
        )

    # ------------------------------------------------------------------ state

    @property
    def turn_state(self) -> TurnState:
        return self._turn

    @property
    def is_bot_speaking(self) -> bool:
        return self._turn is TurnState.BOT_SPEAKING

    @property
    def is_user_speaking(self) -> bool:
        return self._turn is TurnState.USER_SPEAKING

    @property
    def is_listening(self) -> bool:
        return is_forwarding(self._turn)

    @property
    def is_stt_connected(self) -> bool:
        return self._stt_connected and self._stt is not None and self._stt.is_open

    @property
    def is_tts_connected(self) -> bool:
        return self._tts_connected and self._tts is not None and self._tts.is_open

    @property
    def is_playing(self) -> bool:
        return self._playback_task is not None and not self._playback_task.done()

    @property
    def queued_chunks(self) -> int:
        return len(self._audio_queue)

    def _apply(self, event: TurnEvent) -> None:
        previous = self._turn
        self._turn = next_turn_state(previous, event)
        if self._turn is not previous:
            logger.debug("Turn %s -> %s (%s)", previous.value, self._turn.value, event.value)

    # ------------------------------------------------------------ connections

    def recognition_url(self) -> str:
        params = [
            ("encoding", "linear16"),
            ("sample_rate", str(self.sample_rate)),
            ("channels", "1"),
            ("model", self._stt_model),
            ("language", self._language),
            ("punctuate", "true"),
            ("smart_format", "true"),
            ("interim_results", "false"),
            ("endpointing", str(self._endpointing_ms)),
        ]
        params.extend(("keywords", kw.strip()) for kw in self._keywords if kw and kw.strip())
        return f"{self._stt_url}?{urlencode(params)}"

    def synthesis_url(self) -> str:
        params = [
            ("encoding", "linear16"),
            ("sample_rate", str(self.sample_rate)),
            ("container", "none"),
            ("model", self._tts_model),
        ]
        return f"{self._tts_url}?{urlencode(params)}"

    def connect_all(self) -> None:
        self.connect_recognition()
        self.connect_synthesis()

    def connect_recognition(self) -> None:
        if self._stt is not None and (self._stt.is_open or self._stt_connecting):
            return
        if self._stt is not None:
            self._stt.close()
        self._stt_generation += 1
        generation = self._stt_generation
        self._stt = self._channel_factory(
            self.recognition_url(),
            lambda: self._on_stt_open(generation),
            lambda frame: self._on_stt_frame(generation, frame),
            lambda code, reason: self._on_stt_close(generation, code, reason),
            lambda exc: self._on_stt_error(generation, exc),
        )
        try:
            self._stt_connecting = True
            self._stt.connect()
        except (SpeechChannelError, OSError) as exc:
            logger.error("Failed to connect STT: %s", exc)
            self._stt_connecting = False
            self._stt_connected = False

    def connect_synthesis(self) -> None:
        if self._tts is not None and (self._tts.is_open or self._tts_connecting):
            return
        if self._tts is not None:
            self._tts.close()
        self._tts_generation += 1
        generation = self._tts_generation
        self._tts = self._channel_factory(
            self.synthesis_url(),
            lambda: self._on_tts_open(generation),
            lambda frame: self._on_tts_frame(generation, frame),
            lambda code, reason: self._on_tts_close(generation, code, reason),
            lambda exc: self._on_tts_error(generation, exc),
        )
        try:
            self._tts_connecting = True
            self._tts.connect()
        except (SpeechChannelError, OSError) as exc:
            logger.error("Failed to connect TTS: %s", exc)
            self._tts_connecting = False
            self._tts_connected = False

    def disconnect_recognition(self) -> None:
        self._stt_generation += 1  # late callbacks from the old channel are ignored
        self._stt_connected = False
        self._stt_connecting = False
        self._resume_listening_on_open = False
        self._apply(TurnEvent.STOP_LISTENING)
        for key in (_STT, _KEEPALIVE, _TICK):
            self._scheduler.cancel(key)
        if self._microphone.is_recording:
            self._microphone.stop()
        channel, self._stt = self._stt, None
        if channel is not None:
            channel.close()
            self.stt_disconnected.emit()

    def disconnect_synthesis(self) -> None:
        self.stop_playback()
        self._tts_generation += 1
        self._tts_connected = False
        self._tts_connecting = False
        channel, self._tts = self._tts, None
        if channel is not None:
            channel.close()
            self.tts_disconnected.emit()

    def disconnect_all(self) -> None:
        """Close both channels; safe to call repeatedly."""
        self.disconnect_recognition()
        self.disconnect_synthesis()

    def suspend(self) -> None:
        """Pause hook: release the network channels and the microphone."""
        logger.info("Suspending speech channels")
        self.disconnect_all()

    # ------------------------------------------------------------ recognition

    def _on_stt_open(self, generation: int) -> None:
        if generation != self._stt_generation:
            return
        logger.info("STT channel connected")
        self._stt_connected = True
        self._stt_connecting = False
        self._scheduler.cancel(_KEEPALIVE)
        self._scheduler.spawn(_KEEPALIVE, self._keepalive_loop(), name="stt-keepalive")
        if not self._microphone.is_recording:
            self._start_recording()
        self._mic_position = self._microphone.position
        # Capture runs, but nothing is forwarded until start_listening().
        self._apply(TurnEvent.RECOGNITION_CONNECTED)
        if self._scheduler.pending(_TICK) == 0:
            self._scheduler.spawn(_TICK, self._tick_loop(), name="mic-tick")
        self.stt_connected.emit()
        if self._resume_listening_on_open:
            self._resume_listening_on_open = False
            self.start_listening()

    def _on_stt_close(self, generation: int, code: Optional[int], reason: str) -> None:
        if generation != self._stt_generation:
            return
        was_listening = is_forwarding(self._turn)
        logger.info("STT channel closed: %s %s", code, reason)
        self._stt_connected = False
        self._stt_connecting = False
        self._scheduler.cancel(_KEEPALIVE)
        self.stt_disconnected.emit()
        if was_listening and code != NORMAL_CLOSE:
            logger.info("Attempting to reconnect STT in %.1fs", self._reconnect_delay)
            self._scheduler.call_later(_STT, self._reconnect_delay, self._reconnect_recognition)

    def _on_stt_error(self, generation: int, exc: Exception) -> None:
        if generation != self._stt_generation:
            return
        logger.error("STT channel error: %s", exc)
        self._stt_connected = False
        self._stt_connecting = False

    def _reconnect_recognition(self) -> None:
        if self.is_stt_connected:
            return
        self._resume_listening_on_open = True
        self.connect_recognition()

    def _on_stt_frame(self, generation: int, frame: Frame) -> None:
        if generation != self._stt_generation:
            return
        self.handle_recognition_message(frame)

    def handle_recognition_message(self, frame: Frame) -> None:
        """Process one event from the recognition channel."""
        try:
            text = frame.decode("utf-8") if isinstance(frame, bytes) else frame
            payload = json.loads(text)
        except (UnicodeDecodeError, ValueError) as exc:
            logger.error("Error processing STT response: %s", exc)
            return
        if not isinstance(payload, dict):
            return

        transcript = extract_transcript(payload)
        if not transcript or not self.is_listening:
            return

        logger.info("Transcript received: %s", transcript)
        if self._turn is not TurnState.USER_SPEAKING:
            self._begin_user_speech()

        # Endpointing is server-side, so every transcript is a finished utterance.
        self._apply(TurnEvent.TRANSCRIPT_FINAL)
        self.speech_ended.emit()
        self.final_transcript.emit(transcript)
        self.transcript_received.emit(transcript)

    def _begin_user_speech(self) -> None:
        self._cancel_playback()
        self._apply(TurnEvent.SPEECH_STARTED)
        logger.debug("User speech started")
        self.speech_started.emit()

    def start_listening(self) -> None:
        """Hand the turn to the user and start forwarding microphone audio."""
        logger.debug("start_listening called")
        if not self.is_stt_connected:
            logger.info("STT not connected, reconnecting...")
            self.connect_recognition()
            self._scheduler.cancel(_STT)
            self._scheduler.call_later(_STT, self._listen_retry_delay, self._retry_start_listening)
            return

        if not self._microphone.is_recording:
            self._start_recording()

        self._apply(TurnEvent.START_LISTENING)
        if self.is_listening:
            # Discard anything captured while we were not listening.
            self._mic_position = self._microphone.position
            logger.info("Now actively listening for user input")
        else:
            logger.debug("Bot is speaking; listening resumes after playback")

    def _retry_start_listening(self) -> None:
        if self.is_stt_connected:
            self.start_listening()
        else:
            logger.warning("STT still not connected; giving up on start_listening")

    def stop_listening(self) -> None:
        self._apply(TurnEvent.STOP_LISTENING)
        logger.debug("Stopped listening for user input")

    def _start_recording(self) -> None:
        if not self._microphone.start():
            logger.error("No microphone detected!")

    def tick(self) -> int:
        """
        Forward newly captured samples upstream.

        Returns the number of frames sent. Wraparound of the capture buffer
        yields two frames: the tail of the buffer, then its head.
        """
        if not (self._microphone.is_recording and self.is_listening and self.is_stt_connected):
            return 0
        chunks, self._mic_position = self._microphone.read_since(self._mic_position)
        sent = 0
        for chunk in chunks:
            if chunk.size == 0:
                continue
            try:
                self._stt.send_bytes(float_to_pcm16(chunk))  # type: ignore[union-attr]
            except SpeechChannelError as exc:
                logger.error("Error sending audio: %s", exc)
                break
            sent += 1
        return sent

    async def _tick_loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self._tick_interval)

    async def _keepalive_loop(self) -> None:
        while self.is_stt_connected:
            await asyncio.sleep(self._keepalive_interval)
            if not self.is_stt_connected:
                break
            try:
                self._stt.send_text(KEEPALIVE_FRAME)  # type: ignore[union-attr]
            except SpeechChannelError as exc:
                logger.debug("Keep-alive failed: %s", exc)

    # -------------------------------------------------------------- synthesis

    def _on_tts_open(self, generation: int) -> None:
        if generation != self._tts_generation:
            return
        logger.info("TTS channel connected")
        self._tts_connected = True
        self._tts_connecting = False
        self.tts_connected.emit()

    def _on_tts_close(self, generation: int, code: Optional[int], reason: str) -> None:
        if generation != self._tts_generation:
            return
        logger.info("TTS channel closed: %s %s", code, reason)
        self._tts_connected = False
        self._tts_connecting = False
        self.tts_disconnected.emit()
        # No more audio can arrive for the current utterance.
        self._flushed = True
        self._maybe_complete_utterance()

    def _on_tts_error(self, generation: int, exc: Exception) -> None:
        if generation != self._tts_generation:
            return
        logger.error("TTS channel error: %s", exc)
        self._tts_connecting = False

    def _on_tts_frame(self, generation: int, frame: Frame) -> None:
        if generation != self._tts_generation:
            return
        self.handle_synthesis_message(frame)

    def send_text(self, text: str) -> None:
        """Voice ``text``; any playback in progress is replaced."""
        if not text:
            return
        if not self.is_tts_connected:
            logger.warning("TTS channel not connected; dropping text")
            return

        self._cancel_playback()
        self._flushed = False
        self._utterance += 1
        self._apply(TurnEvent.BOT_SPEAK)
        try:
            self._tts.send_text(json.dumps({"type": "Speak", "text": text}))  # type: ignore[union-attr]
            self._tts.send_text(FLUSH_FRAME)  # type: ignore[union-attr]
        except SpeechChannelError as exc:
            logger.error("Failed to send TTS: %s", exc)
            self._apply(TurnEvent.PLAYBACK_STOPPED)
            return
        logger.info("Sent to TTS: %s", text)

    def handle_synthesis_message(self, frame: Frame) -> None:
        """Process one frame from the synthesis channel (audio or metadata)."""
        metadata = _as_metadata(frame)
        if metadata is not None:
            self._handle_synthesis_metadata(metadata)
            return
        if isinstance(frame, str):
            logger.debug("Ignoring non-JSON text frame from TTS")
            return

        if not self.is_bot_speaking:
            logger.debug("Dropping %d bytes of TTS audio outside a bot turn", len(frame))
            return
        samples = pcm16_to_float(frame)
        if samples.size == 0:
            return
        self._audio_queue.append(samples)
        logger.debug("TTS audio chunk enqueued: %d samples (queue=%d)", samples.size, len(self._audio_queue))
        self.tts_audio_received.emit(samples)
        if not self.is_playing:
            self._playback_task = self._scheduler.spawn(_PLAYBACK, self._playback_loop(), name="tts-playback")

    def _handle_synthesis_metadata(self, metadata: Dict[str, Any]) -> None:
        kind = metadata.get("type")
        if kind == "Flushed":
            logger.info("TTS audio complete (Flushed)")
            self._flushed = True
            self._maybe_complete_utterance()
        elif kind in ("Warning", "Error"):
            logger.warning("TTS %s: %s", kind, metadata.get("description") or metadata)
        else:
            logger.debug("TTS metadata: %s", metadata)

    async def _playback_loop(self) -> None:
        try:
            while self._audio_queue:
                samples = self._audio_queue.popleft()
                await self._player.play(samples)
        finally:
            if self._playback_task is asyncio.current_task():
                self._playback_task = None
        self._maybe_complete_utterance()

    def _maybe_complete_utterance(self) -> None:
        if not self._flushed or self._completion_pending:
            return
        if self.is_playing or self._audio_queue or not self.is_bot_speaking:
            return
        self._completion_pending = True
        self._scheduler.call_later(_PLAYBACK, self._playback_settle, self._complete_utterance, self._utterance)

    def _complete_utterance(self, utterance: int) -> None:
        self._completion_pending = False
        if utterance != self._utterance or not self.is_bot_speaking:
            return
        if self.is_playing or self._audio_queue:
            # More audio arrived while settling; the playback loop will retry.
            return
        self._flushed = False
        self._apply(TurnEvent.PLAYBACK_FINISHED)
        logger.info("Bot finished speaking, enabling user input")
        self.utterance_finished.emit()
        self.start_listening()

    def _cancel_playback(self) -> None:
        self._scheduler.cancel(_PLAYBACK)
        self._playback_task = None
        self._completion_pending = False
        self._audio_queue.clear()
        try:
            self._player.stop()
        except Exception as exc:
            logger.warning("Failed to stop playback: %s", exc)

    def stop_playback(self) -> None:
        """Cut bot audio immediately and release the bot's turn."""
        self._cancel_playback()
        self._flushed = False
        self._utterance += 1
        self._apply(TurnEvent.PLAYBACK_STOPPED)


def extract_transcript(payload: Dict[str, Any]) -> str:
    """
    Pull the transcript out of a recognition event.

    Accepted shapes (first match wins):
        {"channel": {"alternatives": [{"transcript": "text"}]}}
        {"transcript": "text"}
    """
    channel = payload.get("channel")
    if isinstance(channel, dict):
        alternatives = channel.get("alternatives")
        if isinstance(alternatives, list) and alternatives and isinstance(alternatives[0], dict):
            transcript = alternatives[0].get("transcript")
            if isinstance(transcript, str):
                return transcript.strip()
    transcript = payload.get("transcript")
    return transcript.strip() if isinstance(transcript, str) else ""


def _as_metadata(frame: Frame) -> Optional[Dict[str, Any]]:
    if isinstance(frame, bytes):
        if len(frame) >= METADATA_PROBE_BYTES or not frame.lstrip().startswith(b"{"):
            return None
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        payload = json.loads(frame)
    except ValueError:
        return None
    if isinstance(payload, dict) and "type" in payload:
        return payload
    return None
