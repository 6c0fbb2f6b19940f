"""
Proctoring state machine for one student's writing session.

Phases run ``loading -> entry -> writing -> submitted``. While writing, escape
signals from the host environment become debounced strikes, each persisted
immediately, and reaching the strike limit force-submits the session.

Signal handlers, autosave ticks, countdown ticks and user submits all run
through a single mailbox consumer. The check that the session is still active
and the write that depends on it therefore never interleave with another
handler, and once the session is locked no further write is issued.

Example:
    >>> machine = ProctoringStateMachine(client, monitor)
    >>> await machine.start_session("k3Jd9aQ2xZ", "s-1001", "Ada")
    >>> machine.edit("Once upon a time")
    >>> result = await machine.submit()
"""

import asyncio
import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import (
    AlreadyExists,
    AssignmentUnavailable,
    EnvironmentUnavailable,
    FocusWriteError,
    InvalidStudentId,
    NotFound,
    PermissionDenied,
    SessionStartFailed,
    SubmitError,
    TransientNetwork,
)
from ..models import (
    ASSIGNMENTS,
    DEFAULT_STRIKE_LIMIT,
    SERVER_TIMESTAMP,
    SESSIONS,
    Assignment,
    SessionStatus,
    count_words,
    new_session_fields,
    normalize_student_id,
    session_id_for,
)
from .autosave import AutosaveLoop
from .cache import CachedSession, MemorySessionCache, SessionCache
from .clients import DocumentClient
from .environment import CLIPBOARD_KINDS, ESCAPE_SIGNALS, EnvironmentMonitor, EnvironmentSignal, InputEvent
from .settings import ProctoringSettings

logger = logging.getLogger(__name__)

ALREADY_SUBMITTED_NOTICE = "You have already been submitted for this assignment."
STRIKE_LIMIT_NOTICE = "Session auto-submitted after reaching the strike limit."
COUNTDOWN_NOTICE = "Session auto-submitted because fullscreen was not restored in time."


class Phase(str, enum.Enum):
    loading = "loading"
    entry = "entry"
    writing = "writing"
    submitted = "submitted"


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    assignment_id: str
    student_id: str
    student_name: Optional[str]
    resumed: bool
    status: SessionStatus


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of a submit trigger; ``submitted`` is False when another trigger won."""
    submitted: bool
    auto: bool = False
    reason: str = "user"
    strike_count: int = 0

    @property
    def already_submitted(self) -> bool:
        return not self.submitted


Observer = Callable[[Dict[str, Any]], None]


class ProctoringStateMachine:
    """Drives one Session document from entry to submission."""

    def __init__(
        self,
        client: DocumentClient,
        monitor: EnvironmentMonitor,
        settings: Optional[ProctoringSettings] = None,
        cache: Optional[SessionCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.monitor = monitor
        self.settings = settings or ProctoringSettings()
        self.cache = cache or MemorySessionCache()
        self._clock = clock

        self.phase = Phase.loading
        self.assignment: Optional[Assignment] = None
        self.error: Optional[str] = None
        self.notice: Optional[str] = None

        self.session_id: Optional[str] = None
        self.student_id: Optional[str] = None
        self.student_name: Optional[str] = None
        self.content = ""
        self.strike_count = 0
        self.status = SessionStatus.active
        self.warning_open = False
        self.countdown_remaining: Optional[int] = None

        self._strikes_known = True
        self._sandbox_entered = False
        self._submitting = False
        self._last_violation_at = -math.inf
        self._mailbox: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._closed = False
        self._detach: List[Callable[[], None]] = []
        self._countdown_task: Optional[asyncio.Task] = None
        self._countdown_generation = 0
        self._observers: List[Observer] = []
        self._autosave = AutosaveLoop(
            self._request_autosave,
            interval=self.settings.autosave_interval,
            warn_after=self.settings.autosave_warn_after,
            on_change=self._notify,
        )

    # Observable state

    @property
    def word_count(self) -> int:
        return count_words(self.content)

    @property
    def strike_limit(self) -> int:
        if self.settings.strict:
            return self.settings.strict_strike_limit
        if self.assignment is not None:
            return self.assignment.effective_strike_limit
        return DEFAULT_STRIKE_LIMIT

    @property
    def autosave_warning(self) -> Optional[str]:
        return self._autosave.warning

    @property
    def sandboxed(self) -> bool:
        return self.monitor.is_presentation_active()

    @property
    def can_edit(self) -> bool:
        return self._writable() and not self._submitting and not self.warning_open and self.sandboxed

    def current_phase(self) -> Phase:
        return self.phase

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "content": self.content,
            "wordCount": self.word_count,
            "strikeCount": self.strike_count,
            "strikeLimit": self.strike_limit,
            "status": self.status.value,
            "warningOpen": self.warning_open,
            "countdownRemaining": self.countdown_remaining,
            "autosaveWarning": self.autosave_warning,
            "error": self.error,
            "notice": self.notice,
        }

    def observe(self, observer: Observer) -> Callable[[], None]:
        """Call ``observer`` with a snapshot after every state change."""
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)
        return remove

    def _notify(self) -> None:
        state = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception as e:
                logger.exception(f"Observer failed: {e}")

    # Loading and entry

    async def load(self, assignment_id: str) -> Assignment:
        """Fetch the assignment and move to ``entry``."""
        self.phase = Phase.loading
        self.assignment = None
        if not assignment_id:
            self.error = "Missing assignment ID"
            self._notify()
            raise AssignmentUnavailable(self.error)
        try:
            data = await self.client.get(ASSIGNMENTS, assignment_id)
        except NotFound as e:
            self.error = "Invalid assignment"
            self._notify()
            raise AssignmentUnavailable(self.error) from e
        except FocusWriteError as e:
            self.error = f"Failed to load assignment: {e}"
            self._notify()
            raise AssignmentUnavailable(self.error) from e
        self.assignment = Assignment.from_document(assignment_id, data)
        self.error = None
        self.phase = Phase.entry
        logger.info(f"Loaded assignment {assignment_id} (strike limit {self.strike_limit})")
        self._notify()
        return self.assignment

    async def start_session(self, assignment_id: str, student_id: str, student_name: Optional[str] = None) -> SessionHandle:
        """Create or resume the student's session and enter ``writing``.

        Raises:
            AssignmentUnavailable: The assignment does not exist or could not be read.
            InvalidStudentId: The identifier is blank.
            SessionStartFailed: The session document could not be created or resumed.
            EnvironmentUnavailable: Presentation mode was refused; nothing is counted.
        """
        if self.phase in (Phase.writing, Phase.submitted):
            raise SessionStartFailed("A session has already been started")
        if self.assignment is None or self.assignment.id != assignment_id:
            await self.load(assignment_id)
        normalized = normalize_student_id(student_id or "")
        if not normalized:
            raise InvalidStudentId("Student ID is required")
        session_id = session_id_for(assignment_id, normalized)
        name = (student_name or "").strip() or None
        self.error = None

        try:
            resumed, locked = await self._open_session(session_id, normalized, name)
        except FocusWriteError as e:
            self.error = f"Failed to start session: {e}"
            self._notify()
            raise SessionStartFailed(self.error) from e

        record = self.cache.load(session_id) if resumed else CachedSession()

        if locked:
            self._bind(session_id, normalized, name, record)
            self.status = SessionStatus.locked
            self.phase = Phase.submitted
            self.notice = ALREADY_SUBMITTED_NOTICE
            logger.info(f"Session {session_id} is already locked")
            self._notify()
            return self._handle(resumed=True)

        granted = await self.monitor.request_presentation_mode()
        if not granted or not self.monitor.is_presentation_active():
            error = EnvironmentUnavailable()
            self.error = error.message
            self._notify()
            raise error

        self._bind(session_id, normalized, name, record)
        self.status = SessionStatus.active
        self._sandbox_entered = True
        self.phase = Phase.writing
        self._start_writing()
        logger.info(f"{'Resumed' if resumed else 'Started'} session {session_id}")
        self._notify()
        return self._handle(resumed=resumed)

    async def _open_session(self, session_id: str, student_id: str, student_name: Optional[str]):
        """Return ``(resumed, locked)`` for the session document."""
        fields = new_session_fields(self.assignment.id, student_id, self.assignment.teacher_id, student_name)
        try:
            await self.client.create(SESSIONS, session_id, fields)
        except AlreadyExists:
            return True, await self._stored_session_locked(session_id)
        self.cache.save(session_id, CachedSession())
        return False, False

    async def _stored_session_locked(self, session_id: str) -> bool:
        """Check with a timestamp-only update, which the rules reject only for locked sessions."""
        try:
            await self.client.update(SESSIONS, session_id, {"updatedAt": SERVER_TIMESTAMP})
        except PermissionDenied:
            return True
        return False

    def _bind(self, session_id: str, student_id: str, student_name: Optional[str], record: Optional[CachedSession]) -> None:
        self.session_id = session_id
        self.student_id = student_id
        self.student_name = student_name
        self.content = record.content if record else ""
        known = record is not None and record.strike_count is not None
        self.strike_count = record.strike_count if known else 0
        self._strikes_known = known

    def _handle(self, resumed: bool) -> SessionHandle:
        return SessionHandle(
            session_id=self.session_id,
            assignment_id=self.assignment.id,
            student_id=self.student_id,
            student_name=self.student_name,
            resumed=resumed,
            status=self.status,
        )

    def _save_cache(self) -> None:
        if self.session_id is None:
            return
        self.cache.save(self.session_id, CachedSession(
            content=self.content,
            strike_count=self.strike_count if self._strikes_known else None,
            status=self.status.value,
        ))

    # Writing phase lifecycle

    def _writable(self) -> bool:
        return self.phase == Phase.writing and self.status == SessionStatus.active and self.session_id is not None

    def _accepting(self) -> bool:
        return self._consumer is not None and not self._closed

    def _start_writing(self) -> None:
        self._closed = False
        self._mailbox = asyncio.Queue()
        self._consumer = asyncio.get_running_loop().create_task(self._consume())
        self._detach = [
            self.monitor.subscribe(self._on_signal),
            self.monitor.add_input_guard(self._guard_input),
        ]
        self._autosave.start()

    def _teardown(self) -> None:
        for detach in self._detach:
            detach()
        self._detach = []
        self._autosave.stop()
        self._stop_countdown()
        self._closed = True

    async def _finish(self, notice: Optional[str] = None) -> None:
        self.status = SessionStatus.locked
        self.phase = Phase.submitted
        self.warning_open = False
        if notice:
            self.notice = notice
        self._save_cache()
        self._teardown()
        await self.monitor.exit_presentation_mode()
        self._notify()

    # Mailbox

    def _post(self, handler: Callable[..., Awaitable[Any]], *args: Any) -> None:
        if self._accepting():
            self._mailbox.put_nowait((handler, args, None))

    async def _send(self, handler: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Queue ``handler`` and wait for its result; None once the mailbox is closed."""
        if not self._accepting():
            return None
        future = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait((handler, args, future))
        return await future

    async def _consume(self) -> None:
        while True:
            handler, args, future = await self._mailbox.get()
            try:
                result = await handler(*args)
            except Exception as e:
                if future is not None and not future.done():
                    future.set_exception(e)
                else:
                    logger.error(f"{handler.__name__} failed: {e}")
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            if self._closed and self._mailbox.empty():
                break

    async def wait_idle(self) -> None:
        """Return once every event queued so far has been handled."""
        await self._send(self._noop)

    async def _noop(self) -> None:
        return None

    # Environment signals

    def _on_signal(self, signal: EnvironmentSignal) -> None:
        if signal == EnvironmentSignal.presentation_entered:
            self._post(self._handle_restored)
            return
        if signal not in ESCAPE_SIGNALS or not self._writable() or not self._sandbox_entered:
            return
        if signal == EnvironmentSignal.presentation_exited and self.warning_open:
            # Already being warned about this exit
            return
        now = self._clock()
        if (now - self._last_violation_at) * 1000 < self.settings.debounce_ms:
            return
        self._last_violation_at = now
        self._post(self._handle_violation, signal)

    def _guard_input(self, event: InputEvent) -> None:
        if not self._writable():
            return
        if event.kind in CLIPBOARD_KINDS or event.is_clipboard_shortcut:
            event.prevent_default()

    async def _handle_violation(self, signal: EnvironmentSignal) -> None:
        if not self._writable():
            return
        over_limit = False
        try:
            over_limit = not await self._record_strike()
        except PermissionDenied as e:
            if await self._adopt_stored_lock():
                return
            logger.warning(f"Strike write rejected for {self.session_id}, recovering stored count: {e}")
            self._strikes_known = False
            try:
                over_limit = not await self._record_strike()
            except FocusWriteError as retry_error:
                self._strike_not_recorded(retry_error)
        except (TransientNetwork, NotFound) as e:
            self._strike_not_recorded(e)
        if over_limit:
            self._strikes_known = False
            self.strike_count = max(self.strike_count, self.strike_limit)
        logger.info(f"Strike {self.strike_count}/{self.strike_limit} on {self.session_id} ({signal.value})")
        self._save_cache()

        if self.strike_count >= self.strike_limit:
            await self._lock(auto=True, reason="strike_limit")
            return
        self.warning_open = True
        if self.settings.strict:
            self._start_countdown()
        self._notify()

    async def _record_strike(self) -> bool:
        """Persist one more strike on top of the stored count.

        Returns False when the stored count has already reached the strike limit.
        """
        if not self._strikes_known:
            stored = await self._recover_strike_count()
            if stored is None:
                return False
            self.strike_count = stored
            self._strikes_known = True
        await self._write_strike_count(self.strike_count + 1)
        self.strike_count += 1
        return True

    async def _recover_strike_count(self) -> Optional[int]:
        """Find the stored strike count without reading the session back.

        The rules accept any count not lower than the stored one, so counting
        up from the local count, the first accepted candidate is the stored
        count and writing it changes nothing. Returns None when the stored
        count is at or past the strike limit.
        """
        for candidate in range(self.strike_count, self.strike_limit):
            try:
                await self._write_strike_count(candidate)
            except PermissionDenied:
                continue
            if candidate != self.strike_count:
                logger.info(f"Recovered stored strike count {candidate} for {self.session_id}")
            return candidate
        return None

    async def _write_strike_count(self, value: int) -> None:
        await self.client.update(SESSIONS, self.session_id, {
            "strikeCount": value,
            "updatedAt": SERVER_TIMESTAMP,
        })

    def _strike_not_recorded(self, error: FocusWriteError) -> None:
        # Keep counting locally so the limit still applies while offline
        logger.warning(f"Strike write failed for {self.session_id}: {error}")
        self.error = "Failed to record violation"
        self.strike_count += 1

    async def _handle_restored(self) -> None:
        if not self._writable():
            return
        if self.settings.strict and self.warning_open:
            self.warning_open = False
            self._stop_countdown()
        self._notify()

    async def acknowledge_warning(self) -> None:
        """Dismiss the blocking warning, re-requesting presentation mode if it was lost."""
        if not self.sandboxed:
            await self.monitor.request_presentation_mode()
        await self._send(self._dismiss_warning)

    async def _dismiss_warning(self) -> None:
        if not self._writable() or not self.warning_open:
            return
        # In strict mode only restoring fullscreen clears the warning
        if not self.settings.strict:
            self.warning_open = False
            self._notify()

    # Countdown

    def _start_countdown(self) -> None:
        self._stop_countdown()
        self._countdown_generation += 1
        self.countdown_remaining = self.settings.countdown_seconds
        self._countdown_task = asyncio.get_running_loop().create_task(
            self._run_countdown(self._countdown_generation)
        )

    def _stop_countdown(self) -> None:
        if self._countdown_task is not None:
            self._countdown_task.cancel()
            self._countdown_task = None
        self.countdown_remaining = None

    async def _run_countdown(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.settings.countdown_tick)
            self._post(self._countdown_tick, generation)

    async def _countdown_tick(self, generation: int) -> None:
        if not self._writable() or generation != self._countdown_generation or self.countdown_remaining is None:
            return
        self.countdown_remaining -= 1
        if self.countdown_remaining > 0:
            self._notify()
            return
        self._stop_countdown()
        await self._lock(auto=True, reason="countdown", force_strikes=max(self.strike_limit, self.strike_count))

    # Autosave

    async def _request_autosave(self) -> Optional[bool]:
        return await self._send(self._autosave_tick)

    async def autosave_now(self) -> bool:
        """Run one autosave tick immediately."""
        return await self._autosave.run_once()

    async def _autosave_tick(self) -> bool:
        if not self._writable():
            return False
        fields = {
            "content": self.content,
            "wordCount": self.word_count,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if self._strikes_known:
            fields["strikeCount"] = self.strike_count
        self._save_cache()
        return await self._write_session(fields)

    async def _write_session(self, fields: Dict[str, Any]) -> bool:
        """Update the session; False when it turned out to be locked already.

        If the write is rejected while the session is still active, the stored
        strike count is ahead of the local one. The write is retried once
        without ``strikeCount``, and the count stays unknown until the next
        violation recovers it.
        """
        try:
            await self.client.update(SESSIONS, self.session_id, fields)
            return True
        except PermissionDenied:
            if await self._adopt_stored_lock():
                return False
            if "strikeCount" not in fields:
                raise
        logger.warning(f"Stored strike count for {self.session_id} is ahead of the local one")
        self._strikes_known = False
        self._save_cache()
        await self.client.update(SESSIONS, self.session_id,
                                 {key: value for key, value in fields.items() if key != "strikeCount"})
        return True

    async def _adopt_stored_lock(self) -> bool:
        """After a rejected write, check whether the stored session is already locked."""
        try:
            locked = await self._stored_session_locked(self.session_id)
        except FocusWriteError as e:
            logger.warning(f"Could not check lock state of {self.session_id}: {e}")
            return False
        if locked:
            logger.info(f"Session {self.session_id} was locked elsewhere; stopping writes")
            await self._finish(ALREADY_SUBMITTED_NOTICE)
        return locked

    # Editing and submission

    def edit(self, text: str) -> bool:
        """Replace the in-progress content; refused while input is blocked."""
        if not self.can_edit:
            return False
        self.content = text
        self._notify()
        return True

    async def submit(self) -> SubmitResult:
        """Lock the session after the student confirmed.

        Raises:
            SubmitError: The locking write was rejected or not delivered. The
                session stays in ``writing`` so the student can retry.
        """
        if self.phase == Phase.submitted:
            return SubmitResult(submitted=False, reason="already_submitted", strike_count=self.strike_count)
        if self.phase != Phase.writing or not self._accepting():
            raise SubmitError("No writing session is in progress")
        result = await self._send(self._lock, False, "user")
        if result is None:
            return SubmitResult(submitted=False, reason="already_submitted", strike_count=self.strike_count)
        return result

    async def _lock(self, auto: bool = False, reason: str = "user", force_strikes: Optional[int] = None) -> SubmitResult:
        if not self._writable():
            return SubmitResult(submitted=False, auto=auto, reason="already_submitted", strike_count=self.strike_count)
        content = self.content
        strikes = self.strike_count if force_strikes is None else max(force_strikes, self.strike_count)
        fields = {
            "content": content,
            "wordCount": count_words(content),
            "status": SessionStatus.locked.value,
            "submittedAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if self._strikes_known or force_strikes is not None:
            fields["strikeCount"] = strikes

        self._submitting = True
        try:
            if not await self._write_session(fields):
                return SubmitResult(submitted=False, auto=auto, reason="already_submitted", strike_count=self.strike_count)
        except PermissionDenied as e:
            self.error = f"Failed to submit: {e}"
            self._notify()
            raise SubmitError(self.error) from e
        except (TransientNetwork, NotFound) as e:
            self.error = f"Failed to submit: {e}"
            self._notify()
            raise SubmitError(self.error) from e
        finally:
            self._submitting = False

        self.content = content
        self.strike_count = strikes
        self.error = None
        notice = None
        if auto:
            notice = COUNTDOWN_NOTICE if reason == "countdown" else STRIKE_LIMIT_NOTICE
        logger.info(f"Session {self.session_id} locked ({reason}, {strikes} strikes)")
        await self._finish(notice)
        return SubmitResult(submitted=True, auto=auto, reason=reason, strike_count=strikes)

    # Leaving

    async def close(self) -> None:
        """Tear down listeners and timers without submitting (navigation away)."""
        if not self._accepting():
            return
        await self._send(self._close)

    async def _close(self) -> None:
        self._teardown()
        await self.monitor.exit_presentation_mode()
        self._notify()
