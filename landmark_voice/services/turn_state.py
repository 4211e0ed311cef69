"""Turn-taking state for the speech channel manager."""

from __future__ import annotations

from enum import Enum


class TurnState(Enum):
    """Who currently holds the turn."""

    IDLE = "idle"
    LISTENING = "listening"
    USER_SPEAKING = "user_speaking"
    BOT_SPEAKING = "bot_speaking"


class TurnEvent(Enum):
    START_LISTENING = "start_listening"
    STOP_LISTENING = "stop_listening"
    SPEECH_STARTED = "speech_started"
    TRANSCRIPT_FINAL = "transcript_final"
    BOT_SPEAK = "bot_speak"
    PLAYBACK_FINISHED = "playback_finished"
    PLAYBACK_STOPPED = "playback_stopped"
    RECOGNITION_CONNECTED = "recognition_connected"


def next_turn_state(state: TurnState, event: TurnEvent) -> TurnState:
    """
    Pure transition function for the turn state machine.

    Microphone forwarding is only enabled in ``LISTENING`` and
    ``USER_SPEAKING``, so it can never overlap with ``BOT_SPEAKING``.
    """
    if event is TurnEvent.BOT_SPEAK:
        return TurnState.BOT_SPEAKING

    if event is TurnEvent.SPEECH_STARTED:
        # Barge-in: user speech always takes the turn.
        return TurnState.USER_SPEAKING

    if event in (TurnEvent.PLAYBACK_FINISHED, TurnEvent.PLAYBACK_STOPPED):
        return TurnState.IDLE if state is TurnState.BOT_SPEAKING else state

    if event is TurnEvent.START_LISTENING:
        # The bot keeps the floor; listening resumes when its playback ends.
        return state if state is TurnState.BOT_SPEAKING else TurnState.LISTENING

    if event in (TurnEvent.STOP_LISTENING, TurnEvent.TRANSCRIPT_FINAL, TurnEvent.RECOGNITION_CONNECTED):
        return state if state is TurnState.BOT_SPEAKING else TurnState.IDLE

    return state


def is_forwarding(state: TurnState) -> bool:
    """Whether captured microphone audio should be sent upstream."""
    return state in (TurnState.LISTENING, TurnState.USER_SPEAKING)
