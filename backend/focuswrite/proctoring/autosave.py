"""Periodic persistence of in-progress writing."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..errors import FocusWriteError

logger = logging.getLogger(__name__)

AUTOSAVE_RETRY_MESSAGE = "Autosave is retrying. Keep writing and stay on this page."


class AutosaveLoop:
    """Call ``write`` every ``interval`` seconds until stopped.

    ``write`` returns True when it persisted something and False when there
    was nothing to do (e.g. the session is no longer active). Store errors are
    counted; once ``warn_after`` consecutive ticks fail a non-blocking warning
    is raised, and the next successful write clears it.
    """

    def __init__(
        self,
        write: Callable[[], Awaitable[Optional[bool]]],
        interval: float = 4.0,
        warn_after: int = 1,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self._write = write
        self.interval = interval
        self.warn_after = warn_after
        self._on_change = on_change
        self.consecutive_failures = 0
        self.warning: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    async def run_once(self) -> bool:
        """Perform one autosave tick; never raises store errors."""
        try:
            written = await self._write()
        except FocusWriteError as e:
            self.consecutive_failures += 1
            logger.warning(f"Autosave failed ({self.consecutive_failures} in a row): {e}")
            if self.consecutive_failures >= self.warn_after and self.warning is None:
                self.warning = AUTOSAVE_RETRY_MESSAGE
                self._changed()
            return False
        if written:
            self.consecutive_failures = 0
            if self.warning is not None:
                self.warning = None
                self._changed()
        return bool(written)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
