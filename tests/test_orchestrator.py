import asyncio
from collections import deque

from landmark_voice.models import BotMessage, ChoiceOption
from landmark_voice.pipeline import ConversationOrchestrator, ConversationState
from landmark_voice.utils import Signal


class FakeChat:
    def __init__(self, fail_create=False):
        self.fail_create = fail_create
        self.created = 0
        self.events = []
        self.sent = []
        self.inbox = deque()
        self.resets = 0

    async def create_conversation(self):
        self.created += 1
        if self.fail_create:
            return None
        return f"conv-{self.created}"

    async def send_landmark_event(self, conversation_id, landmarks):
        self.events.append((conversation_id, list(landmarks)))
        return True

    async def send_text(self, conversation_id, text):
        self.sent.append((conversation_id, text))
        return True

    async def poll_messages(self, conversation_id):
        return self.inbox.popleft() if self.inbox else None

    def reset_message_tracking(self):
        self.resets += 1


class FakeSpeech:
    def __init__(self):
        self.final_transcript = Signal("final_transcript")
        self.speech_started = Signal("speech_started")
        self.speech_ended = Signal("speech_ended")
        self.stt_connected = Signal("stt_connected")
        self.tts_connected = Signal("tts_connected")
        self.is_bot_speaking = False
        self.spoken = []
        self.calls = []

    def connect_all(self):
        self.calls.append("connect_all")

    def disconnect_all(self):
        self.calls.append("disconnect_all")

    def suspend(self):
        self.calls.append("suspend")

    def start_listening(self):
        self.calls.append("start_listening")

    def stop_listening(self):
        self.calls.append("stop_listening")

    def send_text(self, text):
        self.spoken.append(text)

    def stop_playback(self):
        self.calls.append("stop_playback")


def make_orchestrator(chat=None, speech=None, **overrides):
    chat = chat or FakeChat()
    speech = speech or FakeSpeech()
    options = dict(
        poll_interval=0.01,
        bot_settle_delay=0.01,
        restart_delay=0.01,
        response_watchdog=0.05,
        max_utterance_seconds=1.0,
    )
    options.update(overrides)
    orchestrator = ConversationOrchestrator(chat_client=chat, speech=speech, **options)
    assert orchestrator.start()
    return orchestrator, chat, speech


async def _active(orchestrator, landmarks=("cologne_cathedral",)):
    await orchestrator.start_conversation(list(landmarks))
    assert orchestrator.is_active


def test_start_requires_collaborators():
    orchestrator = ConversationOrchestrator(chat_client=None, speech=FakeSpeech())
    assert orchestrator.start() is False
    assert orchestrator.enabled is False
    assert orchestrator.start_conversation(["cologne_cathedral"]) is None


def test_start_subscribes_and_connects():
    orchestrator, chat, speech = make_orchestrator()
    assert speech.calls == ["connect_all"]
    assert len(speech.final_transcript) == 1
    orchestrator.shutdown()
    assert len(speech.final_transcript) == 0
    assert "disconnect_all" in speech.calls


def test_conversation_starts_and_voices_bot_messages():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        started = []
        spoken = []
        orchestrator.conversation_started.connect(started.append)
        orchestrator.bot_spoke.connect(spoken.append)

        await _active(orchestrator)
        assert orchestrator.conversation_id == "conv-1"
        assert chat.events == [("conv-1", ["cologne_cathedral"])]
        assert started == [["cologne_cathedral"]]

        chat.inbox.append(BotMessage(text="Welcome to the cathedral!"))
        await asyncio.sleep(0.05)

        assert speech.spoken == ["Welcome to the cathedral!"]
        assert spoken == ["Welcome to the cathedral!"]
        assert "stop_listening" in speech.calls
        assert not orchestrator.is_processing_bot_response
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_end_sentinel_ends_conversation_once():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        ended = []
        orchestrator.conversation_ended.connect(lambda: ended.append(True))
        await _active(orchestrator)

        chat.inbox.append(BotMessage(text="  [[END]] "))
        await asyncio.sleep(0.05)

        assert ended == [True]
        assert orchestrator.state is ConversationState.INACTIVE
        assert orchestrator.conversation_id is None
        assert speech.spoken == []
        assert chat.resets == 1

        orchestrator.end_conversation()
        assert ended == [True]

    asyncio.run(scenario())


def test_new_detection_replaces_running_conversation():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        started = []
        ended = []
        orchestrator.conversation_started.connect(started.append)
        orchestrator.conversation_ended.connect(lambda: ended.append(True))
        await _active(orchestrator)
        speech.is_bot_speaking = True
        orchestrator.handle_bot_message(BotMessage(text="one"))
        orchestrator.handle_bot_message(BotMessage(text="two"))
        assert orchestrator.queued_messages == ("two",)
        speech.calls.clear()

        task = orchestrator.start_conversation(["hohenzollern_bridge"])
        assert ended == [True]
        assert orchestrator.state is ConversationState.INACTIVE
        assert orchestrator.queued_messages == ()
        assert not orchestrator.is_processing_bot_response
        assert chat.resets == 1
        assert "stop_playback" in speech.calls
        assert "stop_listening" in speech.calls
        speech.is_bot_speaking = False
        await task

        assert orchestrator.is_active
        assert orchestrator.conversation_id == "conv-2"
        assert speech.spoken == []
        assert started == [["cologne_cathedral"], ["hohenzollern_bridge"]]
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_creation_failure_returns_to_inactive_without_signals():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator(chat=FakeChat(fail_create=True))
        started = []
        ended = []
        orchestrator.conversation_started.connect(started.append)
        orchestrator.conversation_ended.connect(lambda: ended.append(True))

        await orchestrator.start_conversation(["cologne_cathedral"])

        assert orchestrator.state is ConversationState.INACTIVE
        assert started == [] and ended == []
        assert chat.events == []

    asyncio.run(scenario())


def test_empty_landmarks_are_ignored():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        assert orchestrator.start_conversation([]) is None
        assert orchestrator.start_conversation([""]) is None
        assert chat.created == 0

    asyncio.run(scenario())


def test_queued_bot_messages_are_voiced_in_order():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        await _active(orchestrator)

        orchestrator.handle_bot_message(BotMessage(text="one"))
        orchestrator.handle_bot_message(BotMessage(text="two"))
        orchestrator.handle_bot_message(BotMessage(text="three"))
        assert orchestrator.queued_messages == ("two", "three")

        await asyncio.sleep(0.1)
        assert speech.spoken == ["one", "two", "three"]
        assert orchestrator.queued_messages == ()
        assert not orchestrator.is_processing_bot_response
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_queued_message_waits_for_current_utterance():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        await _active(orchestrator)
        speech.is_bot_speaking = True

        orchestrator.handle_bot_message(BotMessage(text="one"))
        orchestrator.handle_bot_message(BotMessage(text="two"))
        await asyncio.sleep(0.1)
        assert speech.spoken == ["one"]

        speech.is_bot_speaking = False
        await asyncio.sleep(0.1)
        assert speech.spoken == ["one", "two"]
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_final_transcript_is_normalized_against_choices():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        heard = []
        orchestrator.user_spoke.connect(heard.append)
        await _active(orchestrator)

        orchestrator.handle_bot_message(
            BotMessage(
                text="What would you like?",
                is_choice=True,
                options=[ChoiceOption("Tell me history", "history"), ChoiceOption("Fun facts", "facts")],
            )
        )
        assert [o.value for o in orchestrator.last_choice_options] == ["history", "facts"]

        speech.final_transcript.emit("Tell me history.")
        await asyncio.sleep(0.02)

        assert heard == ["history"]
        assert chat.sent == [("conv-1", "history")]
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_transcript_ignored_without_active_conversation():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        speech.final_transcript.emit("hello there")
        await asyncio.sleep(0.02)
        assert chat.sent == []

    asyncio.run(scenario())


def test_end_phrase_is_reported_without_ending():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        phrases = []
        orchestrator.end_phrase_detected.connect(phrases.append)
        await _active(orchestrator)

        orchestrator.handle_final_transcript("Okay goodbye")
        await asyncio.sleep(0.02)

        assert phrases == ["goodbye"]
        assert orchestrator.is_active
        assert chat.sent == [("conv-1", "Okay goodbye")]
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_watchdog_relistens_when_bot_stays_silent():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        await _active(orchestrator)

        orchestrator.handle_final_transcript("tell me more")
        await asyncio.sleep(0.1)

        assert speech.calls.count("start_listening") == 1
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_watchdog_stands_down_when_bot_replies():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator(response_watchdog=0.08)
        await _active(orchestrator)

        orchestrator.handle_final_transcript("tell me more")
        chat.inbox.append(BotMessage(text="Sure!"))
        await asyncio.sleep(0.15)

        assert speech.spoken == ["Sure!"]
        assert "start_listening" not in speech.calls
        orchestrator.shutdown()

    asyncio.run(scenario())


def test_barge_in_stops_playback():
    orchestrator, chat, speech = make_orchestrator()
    speech.speech_started.emit()
    assert speech.calls[-1] == "stop_playback"


def test_suspend_ends_conversation_and_releases_speech():
    async def scenario():
        orchestrator, chat, speech = make_orchestrator()
        await _active(orchestrator)
        orchestrator.suspend()
        assert orchestrator.state is ConversationState.INACTIVE
        assert speech.calls[-1] == "suspend"

    asyncio.run(scenario())
