import asyncio
from collections import defaultdict

import pytest

from cogs.Legislature.db_manager import DBManager
from cogs.Legislature.errors import StorageFailure
from cogs.Legislature.meetings import MeetingController
from cogs.Legislature.models import Chamber, GrantResult
from cogs.Legislature.notifier import Notifier
from cogs.Legislature.proposals import ProposalService
from cogs.Legislature.scheduler import Scheduler
from cogs.Legislature.voting import VotingEngine

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeScheduler:
    """Remembers armed ticks instead of running them; tests call the ticks by hand."""

    def __init__(self):
        self.armed = {}
        self.cancelled = []

    def arm(self, key, tick, period):
        self.armed[key] = tick

    def cancel(self, key):
        self.cancelled.append(key)
        return self.armed.pop(key, None) is not None

    def is_armed(self, key):
        return key in self.armed

    def keys(self):
        return list(self.armed)

    async def shutdown(self):
        self.armed.clear()


class RecordingNotifier(Notifier):
    """Notifier that records every call and keeps role membership in memory."""

    def __init__(self):
        self.calls = []
        self.roles = defaultdict(set)  # user_id -> chambers whose voter role they hold
        self.failing_users = set()
        self.fail_renders = False
        self._next_message_id = 1000

    def names(self):
        return [call[0] for call in self.calls]

    def of(self, name):
        return [call for call in self.calls if call[0] == name]

    async def render_ballot(self, proposal, session, items):
        self.calls.append(("render_ballot", proposal.id, session.stage, [i.item_index for i in items]))
        if self.fail_renders:
            raise RuntimeError("discord is down")
        self._next_message_id += 1
        return self._next_message_id

    async def render_vote_status(self, proposal, session, time_left_ms, voted):
        self.calls.append(("render_vote_status", proposal.id, time_left_ms, voted))

    async def render_final_result(self, proposal, session, outcome):
        self.calls.append(("render_final_result", proposal.id, session.stage, outcome))

    async def render_meeting_status(self, meeting, time_left_ms, registered):
        self.calls.append(("render_meeting_status", meeting.id, time_left_ms, registered))

    async def render_meeting_final(self, meeting, report):
        self.calls.append(("render_meeting_final", meeting.id, report))

    async def grant_voter_role(self, chamber, user_id, reason=""):
        self.calls.append(("grant_voter_role", Chamber(chamber), user_id))
        if user_id in self.failing_users:
            raise RuntimeError("missing permissions")
        if chamber in self.roles[user_id]:
            return GrantResult.ALREADY_HELD
        self.roles[user_id].add(chamber)
        return GrantResult.GRANTED

    async def revoke_voter_role(self, chamber, user_id):
        self.calls.append(("revoke_voter_role", Chamber(chamber), user_id))
        if chamber not in self.roles[user_id]:
            return False
        self.roles[user_id].discard(chamber)
        return True


async def wait_for(predicate, timeout: float = 2.0):
    """Poll an async predicate until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def fail_once(monkeypatch, db, method: str):
    """Make one storage method raise StorageFailure on its first call. Returns the list of calls."""
    real = getattr(db, method)
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StorageFailure("disk busy")
        return await real(*args, **kwargs)

    monkeypatch.setattr(db, method, flaky)
    return calls


@pytest.fixture
async def db(tmp_path):
    manager = DBManager(str(tmp_path / "legislature.db"))
    await manager.initialize()
    return manager


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def proposals(db, clock):
    return ProposalService(db, clock)


@pytest.fixture
def voting(db, notifier, scheduler, clock):
    return VotingEngine(db, notifier, scheduler, clock, tick_seconds=10, runoff_duration_ms=300_000, max_stages=3)


@pytest.fixture
def meetings(db, notifier, scheduler, clock):
    return MeetingController(db, notifier, scheduler, clock, tick_seconds=10)


@pytest.fixture
async def live_scheduler():
    """A real Scheduler, for tests that need its task ownership rules."""
    scheduler = Scheduler()
    yield scheduler
    await scheduler.shutdown()
