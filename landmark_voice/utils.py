"""Utility helpers: lightweight signals and user-intent normalization."""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence

from .models import ChoiceOption

logger = logging.getLogger(__name__)

CHOICE_MATCH_THRESHOLD = 0.7
TRAILING_PUNCTUATION = ".!?"


class Signal:
    """
    Minimal observer list used for component notifications.

    Listener exceptions are logged and do not stop delivery to the others.

    Usage:
        >>> started = Signal("conversation_started")
        >>> started.connect(lambda landmarks: print(landmarks))
        >>> started.emit(["cologne_cathedral"])
        ['cologne_cathedral']
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[..., Any]] = []

    def connect(self, listener: Callable[..., Any]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def disconnect(self, listener: Callable[..., Any]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %s failed", self.name)

    def __len__(self) -> int:
        return len(self._listeners)


def _word_set(text: str) -> set:
    return {word for word in text.lower().split() if word}


def similarity_score(a: str, b: str) -> float:
    """
    Word-set similarity (intersection over union of lowercase tokens).

    Returns 0.0 when there are no tokens at all, 1.0 for identical sets.

    Example:
        >>> similarity_score("photo angle", "Photo Angle")
        1.0
    """
    set_a = _word_set(a)
    set_b = _word_set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def _apply_corrections(text: str) -> Optional[str]:
    """Map known phonetic or synonym variants of trigger phrases."""
    if ("thirty" in text or "30" in text) and "second" in text and "story" in text:
        return "30 second story"
    if "photo" in text and ("angle" in text or "picture" in text or "shot" in text):
        return "photo angle"
    return None


def normalize_intent(raw: str, choices: Optional[Sequence[ChoiceOption]] = None) -> str:
    """
    Normalize a final transcript into what the chat backend expects.

    Lower-cases and strips trailing punctuation, applies the correction table
    for known trigger phrases, then tries the cached choice options: the best
    label scoring at least ``CHOICE_MATCH_THRESHOLD`` wins and its *value* is
    returned. With no match the original transcript is returned untouched.

    Example:
        >>> normalize_intent("Thirty second story please.")
        '30 second story'
    """
    text = raw.lower().strip().strip(TRAILING_PUNCTUATION).strip()

    corrected = _apply_corrections(text)
    if corrected is not None:
        return corrected

    best: Optional[ChoiceOption] = None
    best_score = 0.0
    for option in choices or ():
        if option is None or not option.label:
            continue
        score = similarity_score(text, option.label)
        if score >= CHOICE_MATCH_THRESHOLD and score > best_score:
            best, best_score = option, score

    if best is not None:
        logger.info("Intent matched choice label '%s' -> sending value '%s'", best.label, best.value)
        return best.value
    return raw


def find_end_phrase(text: str, phrases: Sequence[str]) -> Optional[str]:
    """Return the first end phrase contained in ``text`` (case-insensitive)."""
    lowered = text.lower()
    for phrase in phrases:
        if phrase and phrase.lower() in lowered:
            return phrase
    return None
