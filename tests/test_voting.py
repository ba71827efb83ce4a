import pytest

from cogs.Legislature.errors import AlreadyOpen, DuplicateVote, InvalidChoice, InvalidTransition, NotFound, NotOpen
from cogs.Legislature.models import Chamber, EventType, Formula, ProposalStatus
from cogs.Legislature.errors import StorageFailure
from cogs.Legislature.tally import QuantitativeOutcome, RegularOutcome
from cogs.Legislature.voting import VotingEngine

from .conftest import fail_once, wait_for


@pytest.fixture
async def bill(proposals):
    return await proposals.submit(Chamber.SF, "Budget Act", author_id=7)


@pytest.fixture
async def rated(proposals):
    return await proposals.submit(Chamber.SF, "Tax rate", author_id=7, items=["10%", "15%", "20%"])


class TestStartVoting:
    async def test_opens_session_and_arms_timer(self, voting, bill, db, notifier, scheduler, clock):
        session = await voting.start_voting(bill.id, 60_000, Formula.TWO_THIRDS, is_secret=True)

        assert session.open and session.stage == 1
        assert session.expires_at == clock.now + 60_000
        assert scheduler.is_armed(voting.timer_key(bill.id))
        assert notifier.names() == ["render_ballot"]

        stored = await db.get_voting_session(bill.id)
        assert stored.formula is Formula.TWO_THIRDS and stored.is_secret
        assert stored.message_id == session.message_id == 1001
        assert (await db.get_proposal(bill.id)).status is ProposalStatus.VOTING

    async def test_cannot_open_twice(self, voting, bill):
        await voting.start_voting(bill.id, 60_000)
        with pytest.raises(AlreadyOpen):
            await voting.start_voting(bill.id, 60_000)

    async def test_unknown_proposal(self, voting):
        with pytest.raises(NotFound):
            await voting.start_voting("nope", 60_000)

    async def test_unknown_formula_falls_back(self, voting, bill):
        session = await voting.start_voting(bill.id, 60_000, "7")
        assert session.formula is Formula.SIMPLE_MAJORITY

    async def test_rejects_non_positive_duration(self, voting, bill):
        with pytest.raises(ValueError):
            await voting.start_voting(bill.id, 0)

    async def test_regular_votes_have_no_runoff(self, voting, bill):
        with pytest.raises(InvalidTransition):
            await voting.start_voting(bill.id, 60_000, stage=2)

    async def test_render_failure_does_not_block_the_vote(self, voting, bill, notifier, scheduler, db):
        notifier.fail_renders = True
        session = await voting.start_voting(bill.id, 60_000)
        assert session.message_id is None
        assert scheduler.is_armed(voting.timer_key(bill.id))
        assert (await db.get_voting_session(bill.id)).open


class TestCastVote:
    async def test_records_one_ballot_per_member(self, voting, bill, db):
        await voting.start_voting(bill.id, 60_000)
        vote = await voting.cast_vote(bill.id, 11, "for")
        assert vote.stage == 1

        with pytest.raises(DuplicateVote):
            await voting.cast_vote(bill.id, 11, "against")
        assert await db.get_vote_counts(bill.id, 1) == {"for": 1}

    async def test_rejects_choices_not_on_the_ballot(self, voting, bill, rated):
        await voting.start_voting(bill.id, 60_000)
        await voting.start_voting(rated.id, 60_000)
        with pytest.raises(InvalidChoice):
            await voting.cast_vote(bill.id, 11, "item_1")
        with pytest.raises(InvalidChoice):
            await voting.cast_vote(rated.id, 11, "for")
        with pytest.raises(InvalidChoice):
            await voting.cast_vote(rated.id, 11, "item_9")
        await voting.cast_vote(rated.id, 11, "item_3")
        await voting.cast_vote(rated.id, 12, "abstain")

    async def test_not_open(self, voting, bill, clock):
        with pytest.raises(NotOpen):
            await voting.cast_vote(bill.id, 11, "for")

        await voting.start_voting(bill.id, 60_000)
        with pytest.raises(NotOpen):
            await voting.cast_vote(bill.id, 11, "for", stage=2)

        clock.advance(60_000)
        with pytest.raises(NotOpen):
            await voting.cast_vote(bill.id, 11, "for")


class TestClosing:
    async def test_tick_before_expiry_only_renders(self, voting, bill, notifier, clock, db):
        await voting.start_voting(bill.id, 60_000)
        await voting.cast_vote(bill.id, 11, "for")
        clock.advance(20_000)

        assert await voting.tick(bill.id) is True
        assert notifier.of("render_vote_status") == [("render_vote_status", bill.id, 40_000, 1)]
        assert (await db.get_voting_session(bill.id)).open

    async def test_tick_after_expiry_closes_and_tallies(self, voting, bill, db, notifier, scheduler, clock):
        await voting.start_voting(bill.id, 60_000)
        await voting.cast_vote(bill.id, 11, "for")
        await voting.cast_vote(bill.id, 12, "for")
        await voting.cast_vote(bill.id, 13, "against")
        clock.advance(60_000)

        assert await voting.tick(bill.id) is False

        session = await db.get_voting_session(bill.id)
        assert not session.open and session.ended_at == clock.now
        assert not scheduler.is_armed(voting.timer_key(bill.id))

        proposal = await db.get_proposal(bill.id)
        assert proposal.status is ProposalStatus.APPROVED
        assert proposal.events[-1].type is EventType.VOTE_RESULT
        assert proposal.events[-1].result == "approved"

        (_, _, _, outcome), = notifier.of("render_final_result")
        assert isinstance(outcome, RegularOutcome)
        assert (outcome.for_count, outcome.against_count) == (2, 1)

    async def test_close_is_idempotent(self, voting, bill, notifier):
        await voting.start_voting(bill.id, 60_000)
        first = await voting.close_voting(bill.id)
        assert first is not None
        assert await voting.close_voting(bill.id) is None
        assert await voting.tick(bill.id) is False
        assert len(notifier.of("render_final_result")) == 1

    async def test_close_without_session(self, voting, bill):
        with pytest.raises(NotFound):
            await voting.close_voting(bill.id)

    async def test_quorum_comes_from_latest_meeting(self, voting, meetings, bill, db):
        await meetings.create_meeting(Chamber.SF, "Session", "Friday", 55, quorum=3, total_members=10)
        await voting.start_voting(bill.id, 60_000)
        await voting.cast_vote(bill.id, 11, "for")
        outcome = await voting.close_voting(bill.id)
        assert outcome.quorum == 3 and outcome.total_members == 10
        assert (await db.get_proposal(bill.id)).status is ProposalStatus.NOT_APPROVED

    async def test_duma_bill_goes_to_government(self, voting, proposals, db):
        bill = await proposals.submit(Chamber.GD_ARBAT, "Parks Act", author_id=7)
        await voting.start_voting(bill.id, 60_000)
        await voting.cast_vote(bill.id, 11, "for")
        await voting.close_voting(bill.id)
        assert (await db.get_proposal(bill.id)).status is ProposalStatus.GOVERNMENT_REVIEW


class TestRunoff:
    async def cast(self, voting, proposal_id, ballots, stage=None):
        for user_id, choice in ballots.items():
            await voting.cast_vote(proposal_id, user_id, choice, stage)

    async def test_runoff_opens_next_stage_and_keeps_first_stage(self, voting, rated, db, notifier, scheduler, clock):
        await voting.start_voting(rated.id, 60_000, is_secret=True)
        await self.cast(voting, rated.id, {1: "item_1", 2: "item_1", 3: "item_2", 4: "item_2", 5: "item_3"})
        clock.advance(60_000)

        assert await voting.tick(rated.id) is False

        session = await db.get_voting_session(rated.id)
        assert session.open and session.stage == 2
        assert session.candidates == [1, 2]
        assert session.duration_ms == 300_000 and session.is_secret
        assert session.formula is Formula.SIMPLE_MAJORITY
        assert session.runoff_message_id == 1002 and session.message_id == 1001
        assert scheduler.is_armed(voting.timer_key(rated.id))
        assert notifier.of("render_ballot")[-1] == ("render_ballot", rated.id, 2, [1, 2])

        assert await db.get_vote_counts(rated.id, 1) == {"item_1": 2, "item_2": 2, "item_3": 1}
        proposal = await db.get_proposal(rated.id)
        assert proposal.status is ProposalStatus.VOTING
        assert proposal.events[-1].type is EventType.RUNOFF

        # members vote again in the new stage, only between the leaders
        with pytest.raises(InvalidChoice):
            await voting.cast_vote(rated.id, 5, "item_3")
        with pytest.raises(NotOpen):
            await voting.cast_vote(rated.id, 5, "item_1", stage=1)
        await self.cast(voting, rated.id, {1: "item_1", 2: "item_1", 3: "item_2"}, stage=2)

        outcome = await voting.close_voting(rated.id)
        assert isinstance(outcome, QuantitativeOutcome)
        assert outcome.stage == 2 and outcome.winner == 1
        proposal = await db.get_proposal(rated.id)
        assert proposal.status is ProposalStatus.APPROVED
        assert [e.type for e in proposal.events] == [EventType.REGISTRATION, EventType.RUNOFF, EventType.VOTE_RESULT]
        assert await db.get_vote_counts(rated.id, 1) == {"item_1": 2, "item_2": 2, "item_3": 1}

    async def test_first_stage_majority_needs_no_runoff(self, voting, rated, db):
        await voting.start_voting(rated.id, 60_000)
        await self.cast(voting, rated.id, {1: "item_2", 2: "item_2", 3: "item_1"})
        outcome = await voting.close_voting(rated.id)
        assert outcome.winner == 2
        session = await db.get_voting_session(rated.id)
        assert not session.open and session.stage == 1

    async def test_stage_cannot_go_backwards(self, voting, rated):
        await voting.start_voting(rated.id, 60_000)
        await voting.close_voting(rated.id)
        with pytest.raises(InvalidTransition):
            await voting.start_voting(rated.id, 60_000)


class TestStorageFailures:
    @pytest.fixture
    def engine(self, db, notifier, live_scheduler, clock):
        return VotingEngine(db, notifier, live_scheduler, clock, tick_seconds=0.01, runoff_duration_ms=300_000)

    async def test_failed_close_is_retried_on_a_later_tick(self, engine, bill, db, live_scheduler, clock,
                                                          monkeypatch):
        await engine.start_voting(bill.id, 60_000)
        await engine.cast_vote(bill.id, 11, "for")
        attempts = fail_once(monkeypatch, db, "close_with_result")
        clock.advance(60_000)

        async def closed():
            return not (await db.get_voting_session(bill.id)).open

        await wait_for(closed)
        assert len(attempts) >= 2
        proposal = await db.get_proposal(bill.id)
        assert proposal.status is ProposalStatus.APPROVED
        assert [e.type for e in proposal.events] == [EventType.REGISTRATION, EventType.VOTE_RESULT]

        async def disarmed():
            return not live_scheduler.is_armed(engine.timer_key(bill.id))

        await wait_for(disarmed)

    async def test_failed_runoff_is_retried_on_a_later_tick(self, engine, rated, db, live_scheduler, clock,
                                                           monkeypatch):
        await engine.start_voting(rated.id, 60_000)
        for user_id, choice in {1: "item_1", 2: "item_2", 3: "item_3", 4: "item_1", 5: "item_2"}.items():
            await engine.cast_vote(rated.id, user_id, choice)
        fail_once(monkeypatch, db, "close_with_runoff")
        clock.advance(60_000)

        async def in_runoff():
            return (await db.get_voting_session(rated.id)).stage == 2

        await wait_for(in_runoff)
        session = await db.get_voting_session(rated.id)
        assert session.open and session.candidates == [1, 2]
        assert live_scheduler.is_armed(engine.timer_key(rated.id))
        events = (await db.get_proposal(rated.id)).events
        assert [e.type for e in events] == [EventType.REGISTRATION, EventType.RUNOFF]

    async def test_failed_read_leaves_the_stage_open(self, voting, bill, db, clock, scheduler, monkeypatch):
        await voting.start_voting(bill.id, 60_000)
        fail_once(monkeypatch, db, "get_vote_counts")
        clock.advance(60_000)

        assert await voting.tick(bill.id) is True
        assert (await db.get_voting_session(bill.id)).open
        assert scheduler.is_armed(voting.timer_key(bill.id))

        assert await voting.tick(bill.id) is False
        assert (await db.get_proposal(bill.id)).status is ProposalStatus.NOT_APPROVED

    async def test_manual_close_reports_the_failure(self, voting, bill, db, scheduler, monkeypatch):
        await voting.start_voting(bill.id, 60_000)
        fail_once(monkeypatch, db, "close_with_result")
        with pytest.raises(StorageFailure):
            await voting.close_voting(bill.id)
        assert scheduler.is_armed(voting.timer_key(bill.id))
        assert await voting.close_voting(bill.id) is not None


async def test_locks_are_forgotten_once_released(voting, bill, rated):
    await voting.start_voting(bill.id, 60_000)
    await voting.start_voting(rated.id, 60_000)
    await voting.cast_vote(bill.id, 11, "for")
    await voting.close_voting(bill.id)
    await voting.tick(rated.id)
    assert len(voting._locks) == 0
