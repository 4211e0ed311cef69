import pytest

from landmark_voice.services.turn_state import TurnEvent, TurnState, is_forwarding, next_turn_state


@pytest.mark.parametrize(
    "state, event, expected",
    [
        (TurnState.IDLE, TurnEvent.START_LISTENING, TurnState.LISTENING),
        (TurnState.LISTENING, TurnEvent.SPEECH_STARTED, TurnState.USER_SPEAKING),
        (TurnState.USER_SPEAKING, TurnEvent.TRANSCRIPT_FINAL, TurnState.IDLE),
        (TurnState.LISTENING, TurnEvent.BOT_SPEAK, TurnState.BOT_SPEAKING),
        (TurnState.BOT_SPEAKING, TurnEvent.PLAYBACK_FINISHED, TurnState.IDLE),
        (TurnState.BOT_SPEAKING, TurnEvent.PLAYBACK_STOPPED, TurnState.IDLE),
        (TurnState.BOT_SPEAKING, TurnEvent.START_LISTENING, TurnState.BOT_SPEAKING),
        (TurnState.BOT_SPEAKING, TurnEvent.STOP_LISTENING, TurnState.BOT_SPEAKING),
        (TurnState.BOT_SPEAKING, TurnEvent.SPEECH_STARTED, TurnState.USER_SPEAKING),
        (TurnState.LISTENING, TurnEvent.PLAYBACK_FINISHED, TurnState.LISTENING),
        (TurnState.LISTENING, TurnEvent.RECOGNITION_CONNECTED, TurnState.IDLE),
    ],
)
def test_transitions(state, event, expected):
    assert next_turn_state(state, event) is expected


def test_forwarding_never_overlaps_bot_speech():
    assert is_forwarding(TurnState.LISTENING)
    assert is_forwarding(TurnState.USER_SPEAKING)
    assert not is_forwarding(TurnState.BOT_SPEAKING)
    assert not is_forwarding(TurnState.IDLE)
