"""Tunables for the proctoring client."""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class ProctoringSettings:
    """Timing and escalation settings.

    ``strict`` switches to the fixed-limit variant: the strike limit is
    ``strict_strike_limit`` instead of the assignment's, and every warning
    starts a countdown that force-submits unless fullscreen is restored.
    """
    debounce_ms: int = 800
    autosave_interval: float = 4.0
    autosave_warn_after: int = 1
    countdown_seconds: int = 10
    countdown_tick: float = 1.0
    strict: bool = False
    strict_strike_limit: int = 2

    @classmethod
    def from_env(cls) -> "ProctoringSettings":
        return cls(
            debounce_ms=int(os.getenv("FOCUSWRITE_DEBOUNCE_MS", "800")),
            autosave_interval=float(os.getenv("FOCUSWRITE_AUTOSAVE_INTERVAL", "4.0")),
            autosave_warn_after=int(os.getenv("FOCUSWRITE_AUTOSAVE_WARN_AFTER", "1")),
            countdown_seconds=int(os.getenv("FOCUSWRITE_COUNTDOWN_SECONDS", "10")),
            strict=_env_bool("FOCUSWRITE_STRICT", False),
            strict_strike_limit=int(os.getenv("FOCUSWRITE_STRICT_STRIKE_LIMIT", "2")),
        )
