import asyncio
import json

import numpy as np

from landmark_voice.exceptions import SpeechChannelError
from landmark_voice.services.speech_deepgram import DeepgramSpeechManager, extract_transcript
from landmark_voice.services.turn_state import TurnState

AUDIO_FRAME = b"\x00\x10" * 400


class FakeChannel:
    def __init__(self, url, on_open, on_message, on_close, on_error):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.on_error = on_error
        self.is_open = False
        self.connects = 0
        self.closed = False
        self.texts = []
        self.frames = []

    def connect(self):
        self.connects += 1

    def open(self):
        self.is_open = True
        self.on_open()

    def drop(self, code=1006):
        self.is_open = False
        self.on_close(code, "gone")

    def send_bytes(self, data):
        if not self.is_open:
            raise SpeechChannelError("closed")
        self.frames.append(data)

    def send_text(self, text):
        if not self.is_open:
            raise SpeechChannelError("closed")
        self.texts.append(text)

    def close(self):
        self.closed = True
        self.is_open = False


class FakeMicrophone:
    def __init__(self):
        self.is_recording = False
        self.position = 0
        self.starts = 0
        self.captured = []

    def start(self):
        self.starts += 1
        self.is_recording = True
        return True

    def stop(self):
        self.is_recording = False

    def capture(self, samples):
        self.captured.append((self.position, np.asarray(samples, dtype=np.float32)))
        self.position += len(samples)

    def read_since(self, position):
        chunks = [chunk for start, chunk in self.captured if start >= position]
        return chunks, self.position


class FakePlayer:
    def __init__(self):
        self.played = []
        self.stops = 0

    async def play(self, samples):
        self.played.append(samples)
        await asyncio.sleep(0)

    def stop(self):
        self.stops += 1


class GatedPlayer(FakePlayer):
    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def play(self, samples):
        self.played.append(samples)
        await self.gate.wait()


def make_manager(player=None, **overrides):
    channels = []

    def factory(url, on_open, on_message, on_close, on_error):
        channel = FakeChannel(url, on_open, on_message, on_close, on_error)
        channels.append(channel)
        return channel

    mic = FakeMicrophone()
    player = player or FakePlayer()
    options = dict(
        keepalive_interval=60.0,
        reconnect_delay=0.01,
        listen_retry_delay=0.01,
        playback_settle=0.01,
        tick_interval=60.0,
        keywords=("Cologne Cathedral:2", "Hohenzollern"),
    )
    options.update(overrides)
    speech = DeepgramSpeechManager(api_key="key", microphone=mic, player=player, channel_factory=factory, **options)
    return speech, channels, mic, player


def _connected_manager(player=None, **overrides):
    speech, channels, mic, player = make_manager(player, **overrides)
    speech.connect_all()
    stt, tts = channels
    stt.open()
    tts.open()
    return speech, stt, tts, mic, player


def _transcript(text):
    return json.dumps({"channel": {"alternatives": [{"transcript": text}]}, "is_final": True})


def test_recognition_url_repeats_keywords():
    speech, _, _, _ = make_manager()
    url = speech.recognition_url()
    assert url.startswith("wss://api.deepgram.com/v1/listen?")
    assert "endpointing=1000" in url
    assert "keywords=Cologne+Cathedral%3A2" in url
    assert "keywords=Hohenzollern" in url
    assert "model=aura-asteria-en" in speech.synthesis_url()


def test_extract_transcript_shapes():
    assert extract_transcript({"channel": {"alternatives": [{"transcript": " hi "}]}}) == "hi"
    assert extract_transcript({"transcript": "top level"}) == "top level"
    assert extract_transcript({"channel": {"alternatives": []}}) == ""


def test_bot_turn_completes_after_flush_and_drain():
    async def scenario():
        speech, stt, tts, mic, player = _connected_manager()
        finished = []
        speech.utterance_finished.connect(lambda: finished.append(True))

        assert mic.is_recording
        assert speech.turn_state is TurnState.IDLE

        speech.send_text("Welcome to the cathedral!")
        assert speech.is_bot_speaking
        assert json.loads(tts.texts[0]) == {"type": "Speak", "text": "Welcome to the cathedral!"}
        assert json.loads(tts.texts[1]) == {"type": "Flush"}

        speech.handle_synthesis_message(AUDIO_FRAME)
        speech.handle_synthesis_message(AUDIO_FRAME)
        await asyncio.sleep(0.02)
        # Audio drained, but the flush has not been confirmed yet.
        assert len(player.played) == 2
        assert speech.is_bot_speaking

        speech.handle_synthesis_message(json.dumps({"type": "Flushed"}).encode())
        await asyncio.sleep(0.05)

        assert finished == [True]
        assert not speech.is_bot_speaking
        assert speech.is_listening
        speech.disconnect_all()

    asyncio.run(scenario())


def test_flush_marker_before_drain_keeps_bot_turn_until_queue_empties():
    async def scenario():
        speech, stt, tts, mic, player = _connected_manager(player=GatedPlayer())
        speech.send_text("A long welcome")
        for _ in range(3):
            speech.handle_synthesis_message(AUDIO_FRAME)
        await asyncio.sleep(0)
        assert speech.is_playing
        assert speech.queued_chunks == 2

        speech.handle_synthesis_message(json.dumps({"type": "Flushed"}))
        await asyncio.sleep(0.03)
        assert speech.is_bot_speaking
        assert not speech.is_listening

        player.gate.set()
        await asyncio.sleep(0.05)
        assert len(player.played) == 3
        assert speech.queued_chunks == 0
        assert not speech.is_bot_speaking
        assert speech.is_listening
        speech.disconnect_all()

    asyncio.run(scenario())


def test_audio_outside_bot_turn_is_dropped():
    async def scenario():
        speech, stt, tts, mic, player = _connected_manager()
        speech.handle_synthesis_message(AUDIO_FRAME)
        await asyncio.sleep(0.01)
        assert player.played == []
        assert speech.queued_chunks == 0
        speech.disconnect_all()

    asyncio.run(scenario())


def test_send_text_without_synthesis_channel_is_a_no_op():
    async def scenario():
        speech, channels, mic, player = make_manager()
        speech.connect_all()
        channels[0].open()
        speech.send_text("hello")
        assert channels[1].texts == []
        assert speech.turn_state is TurnState.IDLE
        speech.disconnect_all()

    asyncio.run(scenario())


def test_stop_playback_releases_the_turn():
    async def scenario():
        speech, stt, tts, mic, player = _connected_manager()
        speech.send_text("A long story")
        speech.handle_synthesis_message(AUDIO_FRAME)
        speech.stop_playback()

        assert not speech.is_bot_speaking
        assert speech.queued_chunks == 0
        assert player.stops >= 1

        # A late flush for the cancelled utterance must not hand the turn back.
        speech.handle_synthesis_message(json.dumps({"type": "Flushed"}))
        await asyncio.sleep(0.03)
        assert speech.turn_state is TurnState.IDLE
        speech.disconnect_all()

    asyncio.run(scenario())


def test_final_transcript_only_while_listening():
    async def scenario():
        speech, stt, tts, mic, player = _connected_manager()
        transcripts = []
        started = []
        speech.final_transcript.connect(transcripts.append)
        speech.speech_started.connect(lambda: started.append(True))

        stt.on_message(_transcript("ignored while idle"))
        assert transcripts == []

        speech.start_listening()
        assert speech.is_listening
        stt.on_message(_transcript("Tell me the history"))
        stt.on_message(json.dumps({"channel": {"alternatives": [{"transcript": ""}]}}))

        assert transcripts == ["Tell me the history"]
        assert started == [True]
        assert speech.turn_state is TurnState.IDLE
        speech.disconnect_all()

    asyncio.run(scenario())


def test_tick_forwards_audio_only_while_listening():
    async def scenario():
        speech, stt, tts, mic, player = _connected_manager()
        mic.capture(np.zeros(160))
        assert speech.tick() == 0

        speech.start_listening()
        mic.capture(np.full(160, 0.5))
        mic.capture(np.full(80, -0.5))
        assert speech.tick() == 2
        assert [len(frame) for frame in stt.frames] == [320, 160]

        speech.send_text("My turn")
        mic.capture(np.zeros(160))
        assert speech.tick() == 0
        speech.disconnect_all()

    asyncio.run(scenario())


def test_recognition_reconnects_and_resumes_listening():
    async def scenario():
        speech, channels, mic, player = make_manager()
        speech.connect_all()
        stt, tts = channels
        stt.open()
        tts.open()
        speech.start_listening()

        stt.drop(code=1006)
        assert not speech.is_stt_connected
        await asyncio.sleep(0.03)

        assert len(channels) == 3
        replacement = channels[2]
        assert replacement.connects == 1
        replacement.open()
        assert speech.is_listening

        # Callbacks from the dead channel are ignored.
        stt.on_message(_transcript("stale"))
        assert speech.is_listening
        speech.disconnect_all()

    asyncio.run(scenario())


def test_normal_close_does_not_reconnect():
    async def scenario():
        speech, channels, mic, player = make_manager()
        speech.connect_all()
        channels[0].open()
        speech.start_listening()
        channels[0].drop(code=1000)
        await asyncio.sleep(0.03)
        assert len(channels) == 2
        speech.disconnect_all()

    asyncio.run(scenario())


def test_disconnect_all_is_idempotent():
    async def scenario():
        speech, stt, tts, mic, player = _connected_manager()
        speech.disconnect_all()
        speech.disconnect_all()
        assert stt.closed and tts.closed
        assert not mic.is_recording
        assert not speech.is_stt_connected and not speech.is_tts_connected

    asyncio.run(scenario())
