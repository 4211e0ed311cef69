"""Gate between landmark detections and the conversation orchestrator."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Sequence, Tuple

from .config import DEFAULT_TEST_LANDMARKS
from .pipeline import ConversationOrchestrator, ConversationState

logger = logging.getLogger(__name__)

SCENARIOS: Dict[int, Tuple[str, ...]] = {
    1: ("cologne_cathedral",),
    2: ("hohenzollern_bridge",),
    3: ("cologne_cathedral", "hohenzollern_bridge"),
}


class LandmarkDetectionBridge:
    """
    Forwards detected landmarks to the orchestrator, at most one conversation at a time.

    Detection is disabled while a conversation runs and stays disabled for
    ``cooldown_seconds`` after it ends, so a landmark still in view does not
    immediately restart the tour.
    """

    def __init__(
        self,
        orchestrator: Optional[ConversationOrchestrator],
        *,
        cooldown_seconds: float = 3.0,
        test_landmarks: Sequence[str] = DEFAULT_TEST_LANDMARKS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._orchestrator = orchestrator
        self._cooldown = cooldown_seconds
        self._test_landmarks = tuple(test_landmarks)
        self._clock = clock
        self._detection_enabled = True
        self._last_conversation_end: Optional[float] = None
        self.enabled = False

    def start(self) -> bool:
        if self._orchestrator is None:
            logger.error("Orchestrator not found! Detection bridge disabled.")
            self.enabled = False
            return False
        self._orchestrator.conversation_started.connect(self._on_conversation_started)
        self._orchestrator.conversation_ended.connect(self._on_conversation_ended)
        self.enabled = True
        return True

    def shutdown(self) -> None:
        if self._orchestrator is not None:
            self._orchestrator.conversation_started.disconnect(self._on_conversation_started)
            self._orchestrator.conversation_ended.disconnect(self._on_conversation_ended)
        self.enabled = False

    @property
    def can_detect(self) -> bool:
        """True when a new detection would be forwarded right now."""
        if not self.enabled or not self._detection_enabled:
            return False
        if self._in_cooldown():
            return False
        return self._orchestrator is not None and self._orchestrator.state is ConversationState.INACTIVE

    def _cooldown_remaining(self) -> float:
        if self._last_conversation_end is None:
            return 0.0
        return self._cooldown - (self._clock() - self._last_conversation_end)

    def _in_cooldown(self) -> bool:
        return self._cooldown_remaining() > 0

    def on_landmarks_detected(self, landmarks: Sequence[str]) -> Optional[asyncio.Task]:
        """
        Forward ``landmarks`` if the gate is open.

        Returns the orchestrator's start task, or None when the detection was
        dropped (conversation running, cooldown, empty input).
        """
        if not self.enabled or self._orchestrator is None:
            logger.warning("Detection bridge is not running; ignoring detection")
            return None
        if not self._detection_enabled:
            logger.debug("Detection disabled during conversation")
            return None
        landmarks = [label for label in landmarks if label]
        if not landmarks:
            logger.warning("Empty landmark list")
            return None
        remaining = self._cooldown_remaining()
        if remaining > 0:
            logger.info("Detection cooldown active (%.1fs remaining)", remaining)
            return None
        if self._orchestrator.state is not ConversationState.INACTIVE:
            # Still initializing counts as running; a restart would discard it.
            logger.info("Conversation already %s", self._orchestrator.state.value)
            return None

        logger.info("Landmarks detected: %s", ", ".join(landmarks))
        return self._orchestrator.start_conversation(landmarks)

    def simulate_detection(self, scenario: int) -> Optional[asyncio.Task]:
        """Trigger a canned detection: 1 cathedral, 2 bridge, 3 both, 4 configured test set."""
        if scenario == 4:
            landmarks: Tuple[str, ...] = self._test_landmarks
        else:
            try:
                landmarks = SCENARIOS[scenario]
            except KeyError:
                raise ValueError(f"Unknown detection scenario: {scenario}") from None
        logger.info("Simulating detection scenario %d: %s", scenario, ", ".join(landmarks))
        return self.on_landmarks_detected(landmarks)

    def _on_conversation_started(self, landmarks: Sequence[str]) -> None:
        self._detection_enabled = False
        logger.info("Conversation started - detection disabled")

    def _on_conversation_ended(self) -> None:
        self._last_conversation_end = self._clock()
        self._detection_enabled = True
        logger.info("Conversation ended - detection enabled after %.1fs cooldown", self._cooldown)
