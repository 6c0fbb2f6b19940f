"""Tests for the proctoring state machine against an in-process store."""

import asyncio

import pytest

from focuswrite.errors import (
    AssignmentUnavailable,
    EnvironmentUnavailable,
    InvalidStudentId,
    SubmitError,
    TransientNetwork,
)
from focuswrite.models import SERVER_TIMESTAMP, SESSIONS
from focuswrite.proctoring import (
    AUTOSAVE_RETRY_MESSAGE,
    ESCAPE_SIGNALS,
    CachedSession,
    EnvironmentSignal,
    InputEvent,
    InputKind,
    LocalDocumentClient,
    MemorySessionCache,
    Phase,
    ProctoringSettings,
    ProctoringStateMachine,
    ScriptedEnvironment,
)
from focuswrite.proctoring.machine import ALREADY_SUBMITTED_NOTICE, COUNTDOWN_NOTICE, STRIKE_LIMIT_NOTICE

from conftest import ASSIGNMENT_ID, SESSION_ID, STUDENT_ID, TEACHER

# Keep the periodic autosave out of the way; tests trigger ticks explicitly
QUIET = ProctoringSettings(autosave_interval=3600)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FlakyClient(LocalDocumentClient):
    """Local client whose updates fail with a network error while ``offline``."""

    def __init__(self, store):
        super().__init__(store)
        self.offline = False

    async def update(self, collection, doc_id, fields):
        if self.offline:
            raise TransientNetwork("offline")
        await super().update(collection, doc_id, fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache():
    return MemorySessionCache()


@pytest.fixture
def env():
    return ScriptedEnvironment()


@pytest.fixture
def make_machine(store, env, cache, clock):
    def make(settings=QUIET, monitor=None, client=None):
        return ProctoringStateMachine(
            client or LocalDocumentClient(store),
            monitor or env,
            settings=settings,
            cache=cache,
            clock=clock,
        )
    return make


def stored(store):
    return store.get(SESSIONS, SESSION_ID, caller=TEACHER).data


async def violate(machine, env, clock, signal=EnvironmentSignal.visibility_hidden):
    clock.advance(1.0)
    env.emit(signal)
    await machine.wait_idle()


async def wait_for_phase(machine, phase, attempts=200):
    for _ in range(attempts):
        if machine.phase == phase:
            return
        await asyncio.sleep(0.01)


class TestLoading:

    @pytest.mark.asyncio
    async def test_missing_assignment_id(self, make_machine):
        machine = make_machine()
        with pytest.raises(AssignmentUnavailable):
            await machine.load("")
        assert machine.error == "Missing assignment ID"
        assert machine.current_phase() == Phase.loading

    @pytest.mark.asyncio
    async def test_unknown_assignment(self, make_machine, sample_assignment):
        machine = make_machine()
        with pytest.raises(AssignmentUnavailable):
            await machine.load("does-not-exist")
        assert machine.error == "Invalid assignment"
        assert machine.current_phase() == Phase.loading

    @pytest.mark.asyncio
    async def test_load_moves_to_entry(self, make_machine, sample_assignment):
        machine = make_machine()
        assignment = await machine.load(ASSIGNMENT_ID)
        assert assignment.prompt_text == "Write about a place you love."
        assert machine.current_phase() == Phase.entry
        assert machine.strike_limit == 3

    @pytest.mark.asyncio
    async def test_blank_student_id(self, make_machine, sample_assignment):
        machine = make_machine()
        with pytest.raises(InvalidStudentId):
            await machine.start_session(ASSIGNMENT_ID, "  \t ")


class TestStart:

    @pytest.mark.asyncio
    async def test_new_session(self, make_machine, store, env, sample_assignment):
        machine = make_machine()
        handle = await machine.start_session(ASSIGNMENT_ID, STUDENT_ID, "  Ada ")

        assert handle.session_id == SESSION_ID
        assert not handle.resumed
        assert machine.current_phase() == Phase.writing
        assert env.presentation_active
        assert env.listener_count == 1
        data = stored(store)
        assert data["strikeCount"] == 0
        assert data["status"] == "active"
        assert data["teacherId"] == TEACHER
        assert data["studentName"] == "Ada"
        await machine.close()

    @pytest.mark.asyncio
    async def test_whitespace_is_removed_from_student_id(self, make_machine, sample_assignment):
        machine = make_machine()
        handle = await machine.start_session(ASSIGNMENT_ID, " stu dent\t001 ")
        assert handle.student_id == "student001"
        assert handle.session_id == SESSION_ID
        await machine.close()

    @pytest.mark.asyncio
    async def test_presentation_refused_blocks_without_strike(self, make_machine, store, sample_assignment):
        refusing = ScriptedEnvironment(allow_presentation=False)
        machine = make_machine(monitor=refusing)

        with pytest.raises(EnvironmentUnavailable):
            await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        assert machine.current_phase() == Phase.entry
        assert machine.strike_count == 0
        assert refusing.listener_count == 0
        assert stored(store)["strikeCount"] == 0

        refusing.allow_presentation = True
        handle = await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        assert handle.resumed
        assert machine.current_phase() == Phase.writing
        await machine.close()

    @pytest.mark.asyncio
    async def test_resume_restores_cached_content_and_strikes(self, make_machine, store, env, clock, sample_assignment):
        first = make_machine()
        await first.start_session(ASSIGNMENT_ID, STUDENT_ID)
        assert first.edit("half a story")
        await violate(first, env, clock)
        assert first.strike_count == 1
        assert await first.autosave_now()
        assert stored(store)["content"] == "half a story"
        await first.close()
        assert env.listener_count == 0

        second_env = ScriptedEnvironment()
        second = make_machine(monitor=second_env)
        handle = await second.start_session(ASSIGNMENT_ID, STUDENT_ID)
        assert handle.resumed
        assert second.content == "half a story"
        assert second.strike_count == 1

        await violate(second, second_env, clock)
        assert stored(store)["strikeCount"] == 2
        await second.close()

    @pytest.mark.asyncio
    async def test_resume_without_cache_keeps_stored_strikes(self, store, env, clock, sample_session):
        store.update(SESSIONS, SESSION_ID, {"strikeCount": 2, "updatedAt": SERVER_TIMESTAMP})
        machine = ProctoringStateMachine(LocalDocumentClient(store), env, settings=QUIET,
                                         cache=MemorySessionCache(), clock=clock)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        assert machine.edit("fresh device")
        assert await machine.autosave_now()

        data = stored(store)
        assert data["content"] == "fresh device"
        assert data["strikeCount"] == 2
        await machine.close()

    @pytest.mark.asyncio
    async def test_locked_session_shows_submitted(self, make_machine, store, env, sample_session):
        store.update(SESSIONS, SESSION_ID, {
            "status": "locked", "submittedAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP,
        })
        machine = make_machine()
        handle = await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        assert handle.resumed
        assert machine.current_phase() == Phase.submitted
        assert machine.notice == ALREADY_SUBMITTED_NOTICE
        assert not env.presentation_active
        assert env.listener_count == 0
        assert not machine.edit("anything")


class TestViolations:

    @pytest.mark.asyncio
    async def test_tab_switch_is_one_strike(self, make_machine, store, env, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        env.switch_tab()
        await machine.wait_idle()

        assert machine.strike_count == 1
        assert machine.warning_open
        assert stored(store)["strikeCount"] == 1
        await machine.close()

    @pytest.mark.asyncio
    async def test_debounce_window(self, make_machine, store, env, clock, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        env.emit(EnvironmentSignal.visibility_hidden)
        clock.advance(0.5)
        env.emit(EnvironmentSignal.focus_lost)
        clock.advance(0.29)
        env.emit(EnvironmentSignal.visibility_hidden)
        await machine.wait_idle()
        assert machine.strike_count == 1

        clock.advance(0.02)
        env.emit(EnvironmentSignal.focus_lost)
        await machine.wait_idle()
        assert machine.strike_count == 2
        assert stored(store)["strikeCount"] == 2
        await machine.close()

    @pytest.mark.asyncio
    async def test_presentation_exit_ignored_while_warning_open(self, make_machine, env, clock, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock, EnvironmentSignal.presentation_exited)
        assert machine.strike_count == 1
        await violate(machine, env, clock, EnvironmentSignal.presentation_exited)
        assert machine.strike_count == 1
        assert not machine.edit("blocked while warned")

        await machine.acknowledge_warning()
        assert not machine.warning_open
        assert env.presentation_active
        assert machine.edit("back to work")
        await machine.close()

    @pytest.mark.asyncio
    async def test_strike_limit_force_submits(self, make_machine, store, env, clock, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        machine.edit("draft text")

        for _ in range(3):
            await violate(machine, env, clock)

        assert machine.current_phase() == Phase.submitted
        assert machine.notice == STRIKE_LIMIT_NOTICE
        data = stored(store)
        assert data["status"] == "locked"
        assert data["strikeCount"] == 3
        assert data["content"] == "draft text"
        assert data["submittedAt"] is not None
        assert env.listener_count == 0
        assert env.guard_count == 0
        assert not env.presentation_active

        await violate(machine, env, clock)
        assert stored(store)["strikeCount"] == 3

    @pytest.mark.asyncio
    async def test_signals_before_writing_are_ignored(self, make_machine, env, clock, sample_assignment):
        machine = make_machine()
        await machine.load(ASSIGNMENT_ID)
        env.switch_tab()
        assert machine.strike_count == 0


class TestInputGuard:

    @pytest.mark.asyncio
    async def test_clipboard_blocked_only_while_writing(self, make_machine, env, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        assert env.dispatch_input(InputEvent(InputKind.paste)).default_prevented
        assert env.dispatch_input(InputEvent(InputKind.drop)).default_prevented
        assert env.dispatch_input(InputEvent(InputKind.keydown, key="V", ctrl=True)).default_prevented
        assert env.dispatch_input(InputEvent(InputKind.keydown, key="c", meta=True)).default_prevented
        assert not env.dispatch_input(InputEvent(InputKind.keydown, key="a", ctrl=True)).default_prevented
        assert not env.dispatch_input(InputEvent(InputKind.keydown, key="v")).default_prevented

        await machine.submit()
        assert env.guard_count == 0
        assert not env.dispatch_input(InputEvent(InputKind.paste)).default_prevented


class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_locks_session(self, make_machine, store, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        machine.edit("the quick brown fox")

        result = await machine.submit()

        assert result.submitted
        assert not result.auto
        data = stored(store)
        assert data["status"] == "locked"
        assert data["wordCount"] == 4
        assert data["content"] == "the quick brown fox"
        assert machine.snapshot()["phase"] == "submitted"

    @pytest.mark.asyncio
    async def test_concurrent_submits_lock_once(self, make_machine, store, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        first, second = await asyncio.gather(machine.submit(), machine.submit())

        assert [first.submitted, second.submitted].count(True) == 1
        submitted_at = stored(store)["submittedAt"]

        again = await machine.submit()
        assert again.already_submitted
        assert stored(store)["submittedAt"] == submitted_at

    @pytest.mark.asyncio
    async def test_submit_before_start(self, make_machine, sample_assignment):
        machine = make_machine()
        await machine.load(ASSIGNMENT_ID)
        with pytest.raises(SubmitError):
            await machine.submit()

    @pytest.mark.asyncio
    async def test_failed_submit_can_be_retried(self, store, env, clock, cache, sample_assignment):
        client = FlakyClient(store)
        machine = ProctoringStateMachine(client, env, settings=QUIET, cache=cache, clock=clock)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        machine.edit("keep me")

        client.offline = True
        with pytest.raises(SubmitError):
            await machine.submit()
        assert machine.current_phase() == Phase.writing

        client.offline = False
        assert (await machine.submit()).submitted
        assert stored(store)["content"] == "keep me"

    @pytest.mark.asyncio
    async def test_lock_elsewhere_is_adopted(self, make_machine, store, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        store.update(SESSIONS, SESSION_ID, {
            "status": "locked", "submittedAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP,
        })

        machine.edit("too late")
        assert await machine.autosave_now() is False
        assert machine.current_phase() == Phase.submitted
        assert machine.notice == ALREADY_SUBMITTED_NOTICE
        assert stored(store)["content"] == ""


class TestAutosave:

    @pytest.mark.asyncio
    async def test_autosave_writes_content(self, make_machine, store, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        machine.edit("one two three")

        assert await machine.autosave_now()
        data = stored(store)
        assert data["content"] == "one two three"
        assert data["wordCount"] == 3
        await machine.close()

    @pytest.mark.asyncio
    async def test_failure_raises_and_clears_warning(self, store, env, clock, cache, sample_assignment):
        client = FlakyClient(store)
        machine = ProctoringStateMachine(client, env, settings=QUIET, cache=cache, clock=clock)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        machine.edit("unsaved")

        client.offline = True
        assert not await machine.autosave_now()
        assert machine.autosave_warning == AUTOSAVE_RETRY_MESSAGE
        assert machine.current_phase() == Phase.writing

        client.offline = False
        assert await machine.autosave_now()
        assert machine.autosave_warning is None
        assert stored(store)["content"] == "unsaved"
        await machine.close()

    @pytest.mark.asyncio
    async def test_periodic_loop(self, store, env, clock, cache, sample_assignment):
        settings = ProctoringSettings(autosave_interval=0.01)
        machine = ProctoringStateMachine(LocalDocumentClient(store), env, settings=settings, cache=cache, clock=clock)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        machine.edit("saved in the background")

        for _ in range(100):
            if stored(store)["content"] == "saved in the background":
                break
            await asyncio.sleep(0.01)
        assert stored(store)["content"] == "saved in the background"
        await machine.close()


class TestStrictMode:

    @pytest.mark.asyncio
    async def test_countdown_force_submits(self, make_machine, store, env, clock, sample_assignment):
        settings = ProctoringSettings(autosave_interval=3600, strict=True, countdown_seconds=3, countdown_tick=0.01)
        machine = make_machine(settings=settings)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        assert machine.strike_limit == 2

        await violate(machine, env, clock, EnvironmentSignal.presentation_exited)
        assert machine.countdown_remaining is not None

        await wait_for_phase(machine, Phase.submitted)
        assert machine.current_phase() == Phase.submitted
        assert machine.notice == COUNTDOWN_NOTICE
        data = stored(store)
        assert data["status"] == "locked"
        assert data["strikeCount"] == 2

    @pytest.mark.asyncio
    async def test_restoring_fullscreen_cancels_countdown(self, make_machine, env, clock, sample_assignment):
        settings = ProctoringSettings(autosave_interval=3600, strict=True, countdown_seconds=5, countdown_tick=0.01)
        machine = make_machine(settings=settings)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock, EnvironmentSignal.presentation_exited)
        await machine.acknowledge_warning()

        assert not machine.warning_open
        assert machine.countdown_remaining is None
        await asyncio.sleep(0.1)
        assert machine.current_phase() == Phase.writing
        assert machine.strike_count == 1
        await machine.close()

    @pytest.mark.asyncio
    async def test_strict_limit_reached(self, make_machine, store, env, clock, sample_assignment):
        settings = ProctoringSettings(autosave_interval=3600, strict=True, countdown_seconds=100, countdown_tick=10)
        machine = make_machine(settings=settings)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock)
        await violate(machine, env, clock)

        assert machine.current_phase() == Phase.submitted
        assert machine.notice == STRIKE_LIMIT_NOTICE
        assert stored(store)["strikeCount"] == 2


class TestObservers:

    @pytest.mark.asyncio
    async def test_observer_sees_state_changes(self, make_machine, env, clock, sample_assignment):
        machine = make_machine()
        states = []
        remove = machine.observe(states.append)
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        await violate(machine, env, clock)

        assert states[-1]["strikeCount"] == 1
        assert states[-1]["warningOpen"]
        assert states[-1]["strikeLimit"] == 3

        remove()
        count = len(states)
        await machine.acknowledge_warning()
        assert len(states) == count
        await machine.close()


class TestStoredStrikeCount:
    """Resumes where the local strike count is missing or behind the stored one."""

    @staticmethod
    def set_stored_strikes(store, count):
        store.update(SESSIONS, SESSION_ID, {"strikeCount": count, "updatedAt": SERVER_TIMESTAMP})

    @pytest.mark.asyncio
    async def test_cacheless_resume_reaches_limit(self, make_machine, store, env, clock, sample_session):
        self.set_stored_strikes(store, 2)
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock)

        assert machine.current_phase() == Phase.submitted
        assert machine.notice == STRIKE_LIMIT_NOTICE
        data = stored(store)
        assert data["status"] == "locked"
        assert data["strikeCount"] == 3

    @pytest.mark.asyncio
    async def test_cacheless_resume_counts_on_top_of_stored(self, make_machine, store, env, clock, sample_session):
        self.set_stored_strikes(store, 1)
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock)
        assert machine.current_phase() == Phase.writing
        assert machine.strike_count == 2
        assert stored(store)["strikeCount"] == 2

        await machine.acknowledge_warning()
        assert machine.edit("recovered draft")
        assert await machine.autosave_now()
        assert (await machine.submit()).submitted
        data = stored(store)
        assert data["status"] == "locked"
        assert data["strikeCount"] == 2
        assert data["content"] == "recovered draft"

    @pytest.mark.asyncio
    async def test_stale_cache_recovers_stored_count(self, make_machine, store, env, clock, cache, sample_session):
        self.set_stored_strikes(store, 2)
        cache.save(SESSION_ID, CachedSession(content="old draft", strike_count=0))
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        assert machine.content == "old draft"

        await violate(machine, env, clock)

        assert machine.current_phase() == Phase.submitted
        assert stored(store)["strikeCount"] == 3

    @pytest.mark.asyncio
    async def test_stale_cache_autosave_keeps_saving(self, make_machine, store, cache, sample_session):
        self.set_stored_strikes(store, 2)
        cache.save(SESSION_ID, CachedSession(content="", strike_count=0))
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)
        machine.edit("still saved")

        assert await machine.autosave_now()
        assert machine.autosave_warning is None
        data = stored(store)
        assert data["content"] == "still saved"
        assert data["strikeCount"] == 2
        await machine.close()

    @pytest.mark.asyncio
    async def test_stored_count_past_limit_locks(self, make_machine, store, env, clock, sample_session):
        self.set_stored_strikes(store, 5)
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock)

        assert machine.current_phase() == Phase.submitted
        data = stored(store)
        assert data["status"] == "locked"
        assert data["strikeCount"] == 5


class TestSignalKinds:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signal", sorted(ESCAPE_SIGNALS, key=lambda s: s.value))
    async def test_escape_signals_count(self, make_machine, store, env, clock, sample_assignment, signal):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock, signal)

        assert machine.strike_count == 1
        assert stored(store)["strikeCount"] == 1
        await machine.close()

    @pytest.mark.asyncio
    async def test_presentation_entered_is_not_a_violation(self, make_machine, env, clock, sample_assignment):
        machine = make_machine()
        await machine.start_session(ASSIGNMENT_ID, STUDENT_ID)

        await violate(machine, env, clock, EnvironmentSignal.presentation_entered)

        assert machine.strike_count == 0
        assert not machine.warning_open
        await machine.close()
