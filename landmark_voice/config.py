"""Configuration helpers for the landmark voice guide."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

# Load .env file if present
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # dotenv is optional

DEFAULT_STT_KEYWORDS = ("30 second story", "thirty second story", "photo angle", "photo", "story")
DEFAULT_END_PHRASES = ("that's all", "goodbye", "bye", "see you", "stop", "end conversation", "that's it")
DEFAULT_TEST_LANDMARKS = ("cologne_cathedral", "hohenzollern_bridge")


@dataclass
class AppConfig:
    """
    Runtime configuration for the guide.

    Attributes:
        chat_base_url: Root URL of the Botpress Chat API (without webhook id).
        webhook_id: Chat integration webhook id.
        user_key: ``x-user-key`` credential sent on every chat request.
        request_timeout: HTTP timeout in seconds.
        assistant_user_prefix: Author-id prefix identifying assistant messages.
        deepgram_api_key: Credential for both speech channels.
        stt_url: Recognition channel base URL.
        tts_url: Synthesis channel base URL.
        stt_model: Recognition model name.
        tts_model: Synthesis voice model name.
        language: Recognition language code.
        sample_rate: PCM sample rate shared by capture and playback (Hz).
        mic_buffer_seconds: Length of the circular capture buffer.
        endpointing_ms: Server-side silence before an utterance is finalised.
        stt_keywords: Phrases boosted on the recognition channel.
        keepalive_interval: Seconds between recognition keep-alive frames.
        reconnect_delay: Delay before the single recognition reconnect attempt.
        listen_retry_delay: Delay before retrying ``start_listening`` after a reconnect.
        playback_settle: Pause after the last synthesized chunk before handing the turn back.
        tick_interval: Period of the microphone forwarding tick.
        poll_interval: Seconds between chat polls.
        bot_settle_delay: Seconds after voicing a bot message before the next one.
        restart_delay: Delay between ending and restarting a conversation.
        response_watchdog: Seconds to wait for a bot reply before re-listening.
        max_utterance_seconds: Upper bound on waiting for a queued bot message to finish.
        end_sentinel: Bot text that ends the conversation.
        end_phrases: User phrases reported by the end-phrase hook.
        detection_cooldown: Seconds after a conversation ends before new detections count.
        test_landmarks: Landmarks used by simulated detection scenario 4.
        vision_url: Roboflow workflow URL.
        vision_api_key: Roboflow API key.

    Usage:
        >>> config = AppConfig.from_env()
        >>> config.sample_rate
        16000
    """

    chat_base_url: str = "https://chat.botpress.cloud"
    webhook_id: str = ""
    user_key: Optional[str] = None
    request_timeout: float = 10.0
    assistant_user_prefix: str = "user_"
    deepgram_api_key: Optional[str] = None
    stt_url: str = "wss://api.deepgram.com/v1/listen"
    tts_url: str = "wss://api.deepgram.com/v1/speak"
    stt_model: str = "nova-2"
    tts_model: str = "aura-asteria-en"
    language: str = "en"
    sample_rate: int = 16000
    mic_buffer_seconds: int = 10
    endpointing_ms: int = 1000
    stt_keywords: Tuple[str, ...] = DEFAULT_STT_KEYWORDS
    keepalive_interval: float = 5.0
    reconnect_delay: float = 1.0
    listen_retry_delay: float = 1.0
    playback_settle: float = 0.2
    tick_interval: float = 0.02
    poll_interval: float = 0.8
    bot_settle_delay: float = 0.5
    restart_delay: float = 1.0
    response_watchdog: float = 7.0
    max_utterance_seconds: float = 30.0
    end_sentinel: str = "[[END]]"
    end_phrases: Tuple[str, ...] = DEFAULT_END_PHRASES
    detection_cooldown: float = 3.0
    test_landmarks: Tuple[str, ...] = DEFAULT_TEST_LANDMARKS
    vision_url: str = "https://serverless.roboflow.com/infer/workflows/xr-cologne/detect-count-and-visualize"
    vision_api_key: Optional[str] = None

    @property
    def chat_url(self) -> str:
        """Webhook-scoped base URL for the chat API."""
        return f"{self.chat_base_url.rstrip('/')}/{self.webhook_id}"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        Build an :class:`AppConfig` from environment variables.

        Supported variables:
            - GUIDE_CHAT_BASE_URL: Chat API root (default: https://chat.botpress.cloud)
            - GUIDE_WEBHOOK_ID: Chat integration webhook id.
            - GUIDE_USER_KEY: ``x-user-key`` credential for the chat API.
            - GUIDE_REQUEST_TIMEOUT: HTTP timeout in seconds (default: 10).
            - GUIDE_ASSISTANT_PREFIX: Author-id prefix of assistant messages (default: "user_").
            - GUIDE_DEEPGRAM_API_KEY: Credential for the speech backend.
            - GUIDE_STT_MODEL / GUIDE_TTS_MODEL: Speech model names.
            - GUIDE_LANGUAGE: Recognition language (default: "en").
            - GUIDE_SAMPLE_RATE: PCM sample rate (default: 16000).
            - GUIDE_ENDPOINTING_MS: Silence timeout in ms (default: 1000).
            - GUIDE_STT_KEYWORDS: Comma-separated keyword boost phrases.
            - GUIDE_POLL_INTERVAL: Seconds between chat polls (default: 0.8).
            - GUIDE_RESPONSE_WATCHDOG: Seconds before re-listening on silence (default: 7).
            - GUIDE_END_SENTINEL: Conversation end marker (default: "[[END]]").
            - GUIDE_END_PHRASES: Comma-separated end phrases.
            - GUIDE_DETECTION_COOLDOWN: Seconds between conversations (default: 3).
            - GUIDE_TEST_LANDMARKS: Comma-separated landmarks for scenario 4.
            - GUIDE_VISION_URL: Roboflow workflow URL.
            - GUIDE_VISION_API_KEY: Roboflow API key.
        """

        defaults = cls()
        return cls(
            chat_base_url=os.environ.get("GUIDE_CHAT_BASE_URL", defaults.chat_base_url).rstrip("/"),
            webhook_id=os.environ.get("GUIDE_WEBHOOK_ID", "").strip(),
            user_key=os.environ.get("GUIDE_USER_KEY") or None,
            request_timeout=_float_env("GUIDE_REQUEST_TIMEOUT", defaults.request_timeout),
            assistant_user_prefix=os.environ.get("GUIDE_ASSISTANT_PREFIX", defaults.assistant_user_prefix),
            deepgram_api_key=os.environ.get("GUIDE_DEEPGRAM_API_KEY") or None,
            stt_model=os.environ.get("GUIDE_STT_MODEL", defaults.stt_model),
            tts_model=os.environ.get("GUIDE_TTS_MODEL", defaults.tts_model),
            language=os.environ.get("GUIDE_LANGUAGE", defaults.language),
            sample_rate=_int_env("GUIDE_SAMPLE_RATE", defaults.sample_rate),
            endpointing_ms=_int_env("GUIDE_ENDPOINTING_MS", defaults.endpointing_ms),
            stt_keywords=_list_env("GUIDE_STT_KEYWORDS", defaults.stt_keywords),
            poll_interval=_float_env("GUIDE_POLL_INTERVAL", defaults.poll_interval),
            response_watchdog=_float_env("GUIDE_RESPONSE_WATCHDOG", defaults.response_watchdog),
            end_sentinel=os.environ.get("GUIDE_END_SENTINEL", defaults.end_sentinel),
            end_phrases=_list_env("GUIDE_END_PHRASES", defaults.end_phrases),
            detection_cooldown=_float_env("GUIDE_DETECTION_COOLDOWN", defaults.detection_cooldown),
            test_landmarks=_list_env("GUIDE_TEST_LANDMARKS", defaults.test_landmarks),
            vision_url=os.environ.get("GUIDE_VISION_URL", defaults.vision_url),
            vision_api_key=os.environ.get("GUIDE_VISION_API_KEY") or None,
        )


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())
