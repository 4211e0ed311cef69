import asyncio

import pytest

from landmark_voice.bridge import LandmarkDetectionBridge
from landmark_voice.pipeline import ConversationOrchestrator, ConversationState
from landmark_voice.utils import Signal


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeOrchestrator:
    def __init__(self):
        self.conversation_started = Signal("conversation_started")
        self.conversation_ended = Signal("conversation_ended")
        self.is_active = False
        self.requests = []

    @property
    def state(self):
        return ConversationState.ACTIVE if self.is_active else ConversationState.INACTIVE

    def start_conversation(self, landmarks):
        self.requests.append(list(landmarks))
        return None

    def begin(self, landmarks):
        self.is_active = True
        self.conversation_started.emit(list(landmarks))

    def finish(self):
        self.is_active = False
        self.conversation_ended.emit()


def make_bridge(**kwargs):
    clock = FakeClock()
    orchestrator = FakeOrchestrator()
    bridge = LandmarkDetectionBridge(orchestrator, cooldown_seconds=3.0, clock=clock, **kwargs)
    assert bridge.start()
    return bridge, orchestrator, clock


def test_start_without_orchestrator_disables_bridge():
    bridge = LandmarkDetectionBridge(None)
    assert bridge.start() is False
    assert bridge.on_landmarks_detected(["cologne_cathedral"]) is None
    assert not bridge.can_detect


def test_detection_forwarded_when_idle():
    bridge, orchestrator, clock = make_bridge()
    assert bridge.can_detect
    bridge.on_landmarks_detected(["cologne_cathedral"])
    assert orchestrator.requests == [["cologne_cathedral"]]


def test_detection_dropped_during_conversation():
    bridge, orchestrator, clock = make_bridge()
    orchestrator.begin(["cologne_cathedral"])
    assert not bridge.can_detect
    bridge.on_landmarks_detected(["hohenzollern_bridge"])
    assert orchestrator.requests == []


def test_cooldown_after_conversation_end():
    bridge, orchestrator, clock = make_bridge()
    orchestrator.begin(["cologne_cathedral"])
    orchestrator.finish()

    clock.now += 1.0
    bridge.on_landmarks_detected(["cologne_cathedral"])
    assert orchestrator.requests == []
    assert not bridge.can_detect

    clock.now += 2.0
    assert bridge.can_detect
    bridge.on_landmarks_detected(["cologne_cathedral"])
    assert orchestrator.requests == [["cologne_cathedral"]]


def test_empty_detection_is_ignored():
    bridge, orchestrator, clock = make_bridge()
    bridge.on_landmarks_detected([])
    bridge.on_landmarks_detected(["", ""])
    assert orchestrator.requests == []


@pytest.mark.parametrize(
    "scenario, expected",
    [
        (1, ["cologne_cathedral"]),
        (2, ["hohenzollern_bridge"]),
        (3, ["cologne_cathedral", "hohenzollern_bridge"]),
        (4, ["dom", "rhine"]),
    ],
)
def test_simulated_scenarios(scenario, expected):
    bridge, orchestrator, clock = make_bridge(test_landmarks=("dom", "rhine"))
    bridge.simulate_detection(scenario)
    assert orchestrator.requests == [expected]


def test_unknown_scenario_raises():
    bridge, orchestrator, clock = make_bridge()
    with pytest.raises(ValueError):
        bridge.simulate_detection(7)


def test_shutdown_unsubscribes():
    bridge, orchestrator, clock = make_bridge()
    bridge.shutdown()
    assert len(orchestrator.conversation_started) == 0
    assert len(orchestrator.conversation_ended) == 0
    assert not bridge.enabled


class SlowChat:
    def __init__(self, create_delay):
        self.create_delay = create_delay
        self.created = 0

    async def create_conversation(self):
        self.created += 1
        await asyncio.sleep(self.create_delay)
        return f"conv-{self.created}"

    async def send_landmark_event(self, conversation_id, landmarks):
        return True

    async def send_text(self, conversation_id, text):
        return True

    async def poll_messages(self, conversation_id):
        return None

    def reset_message_tracking(self):
        pass


class QuietSpeech:
    def __init__(self):
        for name in ("final_transcript", "speech_started", "speech_ended", "stt_connected", "tts_connected"):
            setattr(self, name, Signal(name))
        self.is_bot_speaking = False

    def connect_all(self):
        pass

    def disconnect_all(self):
        pass

    def suspend(self):
        pass

    def start_listening(self):
        pass

    def stop_listening(self):
        pass

    def send_text(self, text):
        pass

    def stop_playback(self):
        pass


def test_detection_while_conversation_initializes_is_dropped():
    async def scenario():
        chat = SlowChat(create_delay=0.05)
        orchestrator = ConversationOrchestrator(chat_client=chat, speech=QuietSpeech(), poll_interval=0.01)
        assert orchestrator.start()
        bridge = LandmarkDetectionBridge(orchestrator, cooldown_seconds=3.0, clock=FakeClock())
        assert bridge.start()

        first = bridge.on_landmarks_detected(["cologne_cathedral"])
        assert first is not None
        await asyncio.sleep(0.01)
        assert orchestrator.state is ConversationState.INITIALIZING
        assert not bridge.can_detect

        second = bridge.on_landmarks_detected(["hohenzollern_bridge"])
        assert second is None

        await first
        assert orchestrator.is_active
        assert orchestrator.conversation_id == "conv-1"
        assert chat.created == 1
        orchestrator.shutdown()

    asyncio.run(scenario())
