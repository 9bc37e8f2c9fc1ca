"""Strike-based monitoring of the exam environment.

The browser side reports raw environment signals (blur, tab hidden,
fullscreen exit, key presses, back navigation). A single real action often
produces several of them at once, e.g. Alt+Tab fires a keydown, a blur and a
visibility change. The monitor folds those into one violation before
counting strikes:

* a blur or hide while the student is already away is not counted again
  until a focus/visible signal shows they came back;
* any violation within ``dedupe_seconds`` of the last counted one is part of
  the same action.

Strikes up to the limit produce warnings; the first strike past it fires
``on_limit_exceeded`` exactly once.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Protocol

from exam_app.constants.exam_constants import SIGNAL_DEDUPE_SECONDS, STRIKE_LIMIT

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    WINDOW_BLUR = "window_blur"
    WINDOW_FOCUS = "window_focus"
    TAB_HIDDEN = "tab_hidden"
    TAB_VISIBLE = "tab_visible"
    FULLSCREEN_EXIT = "fullscreen_exit"
    FULLSCREEN_ENTER = "fullscreen_enter"
    KEY_DOWN = "key_down"
    NAVIGATION = "navigation"


@dataclass(slots=True, frozen=True)
class KeyCombo:
    key: str
    alt: bool = False
    ctrl: bool = False
    meta: bool = False


@dataclass(slots=True, frozen=True)
class EnvironmentSignal:
    kind: SignalKind
    at: datetime
    key: KeyCombo | None = None


SignalListener = Callable[[EnvironmentSignal], None]


class SignalSource(Protocol):
    def subscribe(self, listener: SignalListener) -> None: ...

    def unsubscribe(self, listener: SignalListener) -> None: ...


class SyntheticSignalSource:
    """Signal source fed explicitly, e.g. by the HTTP layer or tests."""

    def __init__(self) -> None:
        self._listeners: list[SignalListener] = []

    def subscribe(self, listener: SignalListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SignalListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, signal: EnvironmentSignal) -> None:
        for listener in list(self._listeners):
            listener(signal)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


def is_disallowed_key(combo: KeyCombo) -> bool:
    """Task-switch and window-close shortcuts."""
    key = combo.key.lower()
    if key in ("meta", "os"):
        return True
    if combo.alt and key in ("tab", "f4", "escape"):
        return True
    if combo.ctrl and key in ("w", "t"):
        return True
    return False


_AWAY_SIGNALS = (SignalKind.WINDOW_BLUR, SignalKind.TAB_HIDDEN)
_RETURN_SIGNALS = (SignalKind.WINDOW_FOCUS, SignalKind.TAB_VISIBLE)


class IntegrityMonitor:
    """Counts integrity violations for one session."""

    def __init__(
        self,
        source: SignalSource,
        on_warning: Callable[[int, int], None],
        on_limit_exceeded: Callable[[int], None],
        limit: int = STRIKE_LIMIT,
        dedupe_seconds: float = SIGNAL_DEDUPE_SECONDS,
    ) -> None:
        self._source = source
        self._on_warning = on_warning
        self._on_limit_exceeded = on_limit_exceeded
        self._limit = limit
        self._dedupe_seconds = dedupe_seconds
        self._strike_count = 0
        self._away = False
        self._last_violation_at: datetime | None = None
        self._limit_fired = False
        self._listening = False

    @property
    def strike_count(self) -> int:
        return self._strike_count

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def is_listening(self) -> bool:
        return self._listening

    def start(self) -> None:
        if not self._listening:
            self._source.subscribe(self.handle_signal)
            self._listening = True

    def stop(self) -> None:
        if self._listening:
            self._source.unsubscribe(self.handle_signal)
            self._listening = False

    def handle_signal(self, signal: EnvironmentSignal) -> None:
        if self._limit_fired or not self._is_violation(signal):
            return
        if self._is_duplicate(signal.at):
            logger.debug("Folded %s into the previous violation.", signal.kind.value)
            return
        self._last_violation_at = signal.at
        self._strike_count += 1
        logger.warning("Integrity violation %d (%s).", self._strike_count, signal.kind.value)

        if self._strike_count <= self._limit:
            self._on_warning(self._strike_count, self._limit - self._strike_count)
            return

        self._limit_fired = True
        logger.warning("Strike limit of %d exceeded; closing the exam.", self._limit)
        self._on_limit_exceeded(self._strike_count)

    def _is_violation(self, signal: EnvironmentSignal) -> bool:
        if signal.kind in _RETURN_SIGNALS:
            self._away = False
            return False
        if signal.kind is SignalKind.FULLSCREEN_ENTER:
            return False
        if signal.kind in _AWAY_SIGNALS:
            if self._away:
                return False
            self._away = True
            return True
        if signal.kind is SignalKind.KEY_DOWN:
            return signal.key is not None and is_disallowed_key(signal.key)
        return True

    def _is_duplicate(self, at: datetime) -> bool:
        if self._last_violation_at is None:
            return False
        return abs((at - self._last_violation_at).total_seconds()) < self._dedupe_seconds
