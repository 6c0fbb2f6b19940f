"""
Environment signals the proctoring client watches.

The browser, OS or kiosk shell that hosts the writing room is reached only
through ``EnvironmentMonitor``. ``ScriptedEnvironment`` is an in-memory
monitor driven by explicit calls, used for headless runs and tests.
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List

logger = logging.getLogger(__name__)


class EnvironmentSignal(str, enum.Enum):
    visibility_hidden = "visibility_hidden"
    focus_lost = "focus_lost"
    presentation_exited = "presentation_exited"
    presentation_entered = "presentation_entered"


ESCAPE_SIGNALS = frozenset({
    EnvironmentSignal.visibility_hidden,
    EnvironmentSignal.focus_lost,
    EnvironmentSignal.presentation_exited,
})


class InputKind(str, enum.Enum):
    copy = "copy"
    cut = "cut"
    paste = "paste"
    drag = "drag"
    drop = "drop"
    keydown = "keydown"


CLIPBOARD_KINDS = frozenset({InputKind.copy, InputKind.cut, InputKind.paste, InputKind.drag, InputKind.drop})
CLIPBOARD_SHORTCUT_KEYS = frozenset({"c", "v", "x"})


@dataclass
class InputEvent:
    kind: InputKind
    key: str = ""
    ctrl: bool = False
    meta: bool = False
    default_prevented: bool = False

    def prevent_default(self) -> None:
        self.default_prevented = True

    @property
    def is_clipboard_shortcut(self) -> bool:
        return (
            self.kind == InputKind.keydown
            and (self.ctrl or self.meta)
            and self.key.lower() in CLIPBOARD_SHORTCUT_KEYS
        )


SignalListener = Callable[[EnvironmentSignal], None]
InputGuard = Callable[[InputEvent], None]


class EnvironmentMonitor(ABC):
    """Host capability: escape signals, input interception, presentation mode."""

    @abstractmethod
    def subscribe(self, listener: SignalListener) -> Callable[[], None]:
        """Register a signal listener; returns a function that removes it."""
        pass

    @abstractmethod
    def add_input_guard(self, guard: InputGuard) -> Callable[[], None]:
        """Register an input guard; returns a function that removes it."""
        pass

    @abstractmethod
    def is_presentation_active(self) -> bool:
        pass

    @abstractmethod
    async def request_presentation_mode(self) -> bool:
        """Ask the host for sandboxed presentation mode; True when granted."""
        pass

    @abstractmethod
    async def exit_presentation_mode(self) -> None:
        pass


class ScriptedEnvironment(EnvironmentMonitor):
    """Monitor whose signals and input are injected by the caller."""

    def __init__(self, allow_presentation: bool = True):
        self.allow_presentation = allow_presentation
        self.presentation_active = False
        self._listeners: List[SignalListener] = []
        self._guards: List[InputGuard] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def guard_count(self) -> int:
        return len(self._guards)

    def subscribe(self, listener: SignalListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def add_input_guard(self, guard: InputGuard) -> Callable[[], None]:
        self._guards.append(guard)

        def remove() -> None:
            if guard in self._guards:
                self._guards.remove(guard)
        return remove

    def is_presentation_active(self) -> bool:
        return self.presentation_active

    async def request_presentation_mode(self) -> bool:
        if not self.allow_presentation:
            return False
        if not self.presentation_active:
            self.presentation_active = True
            self.emit(EnvironmentSignal.presentation_entered)
        return True

    async def exit_presentation_mode(self) -> None:
        if self.presentation_active:
            self.presentation_active = False
            self.emit(EnvironmentSignal.presentation_exited)

    def emit(self, signal: EnvironmentSignal) -> None:
        if signal == EnvironmentSignal.presentation_exited:
            self.presentation_active = False
        elif signal == EnvironmentSignal.presentation_entered:
            self.presentation_active = True
        for listener in list(self._listeners):
            listener(signal)

    def switch_tab(self) -> None:
        """A tab switch reports both a visibility and a focus change."""
        self.emit(EnvironmentSignal.visibility_hidden)
        self.emit(EnvironmentSignal.focus_lost)

    def leave_presentation(self) -> None:
        self.emit(EnvironmentSignal.presentation_exited)

    def dispatch_input(self, event: InputEvent) -> InputEvent:
        for guard in list(self._guards):
            guard(event)
        return event
