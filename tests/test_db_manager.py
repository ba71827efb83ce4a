import asyncio

import pytest

from cogs.Legislature.db_manager import DBManager
from cogs.Legislature.errors import DuplicateVote, StorageFailure
from cogs.Legislature.models import (
    Chamber,
    EventType,
    Meeting,
    MeetingStatus,
    MeetingUpdate,
    Proposal,
    ProposalEvent,
    ProposalStatus,
    Speaker,
    SpeakerRole,
    Vote,
    VotingSession,
)

from .conftest import START_MS


def make_proposal(proposal_id="p1", number="SF-001", chamber=Chamber.SF, quantitative=False):
    return Proposal(id=proposal_id, number=number, name="Budget Act", chamber=chamber, author_id=7,
                    created_at=START_MS, is_quantitative=quantitative)


def make_meeting(meeting_id="m1", chamber=Chamber.SF, created_at=START_MS, quorum=2):
    return Meeting(id=meeting_id, chamber=chamber, title="Session 1", meeting_date="Friday", channel_id=55,
                   created_at=created_at, quorum=quorum, total_members=10)


class TestCounters:
    async def test_increments_are_unique_under_concurrency(self, db):
        values = await asyncio.gather(*(db.increment_chamber_counter(Chamber.SF) for _ in range(20)))
        assert sorted(values) == list(range(1, 21))

    async def test_counters_are_per_chamber(self, db):
        assert await db.increment_chamber_counter(Chamber.SF) == 1
        assert await db.increment_chamber_counter(Chamber.GD_ARBAT) == 1
        assert await db.increment_chamber_counter(Chamber.SF) == 2


class TestVotes:
    async def test_duplicate_vote_is_rejected_and_first_ballot_kept(self, db):
        await db.create_proposal(make_proposal())
        await db.insert_vote(Vote("p1", 11, "for", 1, START_MS))
        with pytest.raises(DuplicateVote) as excinfo:
            await db.insert_vote(Vote("p1", 11, "against", 1, START_MS + 1))
        assert excinfo.value.stage == 1
        assert await db.get_user_vote("p1", 11, 1) == "for"

    async def test_same_user_may_vote_in_each_stage(self, db):
        await db.create_proposal(make_proposal(quantitative=True), ["a", "b"])
        await db.insert_vote(Vote("p1", 11, "item_1", 1, START_MS))
        await db.insert_vote(Vote("p1", 11, "item_2", 2, START_MS))
        assert await db.get_vote_counts("p1", 1) == {"item_1": 1}
        assert await db.get_vote_counts("p1", 2) == {"item_2": 1}
        assert [v.user_id for v in await db.get_votes("p1", 2)] == [11]

    async def test_vote_for_unknown_proposal_is_a_storage_failure(self, db):
        with pytest.raises(StorageFailure):
            await db.insert_vote(Vote("missing", 11, "for", 1, START_MS))


class TestVotingSessions:
    async def test_close_is_guarded(self, db):
        await db.create_proposal(make_proposal())
        await db.upsert_voting_session(VotingSession("p1", START_MS, 60_000, candidates=[1, 2]))

        session = await db.get_voting_session("p1")
        assert session.open and session.expires_at == START_MS + 60_000
        assert session.candidates == [1, 2]
        assert [s.proposal_id for s in await db.get_open_voting_sessions()] == ["p1"]

        assert await db.close_voting_session("p1", START_MS + 5) is True
        assert await db.close_voting_session("p1", START_MS + 9) is False
        session = await db.get_voting_session("p1")
        assert not session.open and session.ended_at == START_MS + 5
        assert await db.get_open_voting_sessions() == []

    async def test_close_with_result_writes_everything_or_nothing(self, db):
        await db.create_proposal(make_proposal())
        await db.upsert_voting_session(VotingSession("p1", START_MS, 60_000))

        broken = ProposalEvent(EventType.VOTE_RESULT, Chamber.SF, START_MS, None)
        with pytest.raises(StorageFailure):
            await db.close_with_result("p1", START_MS + 5, ProposalStatus.APPROVED, broken)
        assert (await db.get_voting_session("p1")).open
        proposal = await db.get_proposal("p1")
        assert proposal.status is ProposalStatus.UNDER_REVIEW and proposal.events == []

        event = ProposalEvent(EventType.VOTE_RESULT, Chamber.SF, START_MS + 5, "closed", "approved")
        assert await db.close_with_result("p1", START_MS + 5, ProposalStatus.APPROVED, event) is True
        assert await db.close_with_result("p1", START_MS + 9, ProposalStatus.REJECTED, event) is False
        proposal = await db.get_proposal("p1")
        assert proposal.status is ProposalStatus.APPROVED
        assert [e.result for e in proposal.events] == ["approved"]
        assert not (await db.get_voting_session("p1")).open

    async def test_close_with_runoff_opens_the_next_stage(self, db):
        await db.create_proposal(make_proposal(quantitative=True))
        await db.upsert_voting_session(VotingSession("p1", START_MS, 60_000, message_id=5))
        event = ProposalEvent(EventType.RUNOFF, Chamber.SF, START_MS + 60_000, "round 2")
        runoff = VotingSession("p1", START_MS + 60_000, 300_000, stage=2, message_id=5, candidates=[1, 2])

        assert await db.close_with_runoff("p1", START_MS + 60_000, event, runoff) is True
        assert await db.close_with_runoff("p1", START_MS + 60_000, event, runoff) is False
        session = await db.get_voting_session("p1")
        assert session.open and session.stage == 2 and session.candidates == [1, 2]
        assert [e.type for e in (await db.get_proposal("p1")).events] == [EventType.RUNOFF]

    async def test_ballot_message_ids(self, db):
        await db.create_proposal(make_proposal())
        await db.upsert_voting_session(VotingSession("p1", START_MS, 60_000))
        await db.set_ballot_message("p1", 900)
        await db.set_ballot_message("p1", 901, runoff=True)
        session = await db.get_voting_session("p1")
        assert (session.message_id, session.runoff_message_id) == (900, 901)


class TestProposals:
    async def test_numbers_repeat_across_duma_chambers(self, db):
        await db.create_proposal(make_proposal("a", "GD-001", Chamber.GD_ARBAT))
        await db.create_proposal(make_proposal("b", "GD-001", Chamber.GD_TVERSKOY))
        assert (await db.get_proposal("b")).chamber is Chamber.GD_TVERSKOY

    async def test_delete_cascades(self, db):
        await db.create_proposal(make_proposal(quantitative=True), ["a", "b"])
        await db.upsert_voting_session(VotingSession("p1", START_MS, 60_000))
        await db.insert_vote(Vote("p1", 11, "item_1", 1, START_MS))

        assert await db.delete_proposal("p1") is True
        assert await db.get_proposal("p1") is None
        assert await db.get_voting_session("p1") is None
        assert await db.get_votes("p1", 1) == []
        assert await db.get_quantitative_items("p1") == []
        assert await db.delete_proposal("p1") is False


class TestSpeakers:
    async def test_queue_order_and_role_change(self, db):
        await db.create_proposal(make_proposal())
        await db.upsert_speaker(Speaker("p1", 11, SpeakerRole.DEBATE, "Anna", START_MS))
        await db.upsert_speaker(Speaker("p1", 12, SpeakerRole.DEBATE, "Boris", START_MS + 1))
        await db.upsert_speaker(Speaker("p1", 11, SpeakerRole.CO_REPORT, "Anna K.", START_MS + 2))

        speakers = await db.get_speakers("p1")
        assert [(s.user_id, s.role, s.display_name) for s in speakers] == [
            (12, SpeakerRole.DEBATE, "Boris"),
            (11, SpeakerRole.CO_REPORT, "Anna K."),
        ]

    async def test_remove(self, db):
        await db.create_proposal(make_proposal())
        await db.upsert_speaker(Speaker("p1", 11, SpeakerRole.REPORT, "Anna", START_MS))
        assert await db.remove_speaker("p1", 11) is True
        assert await db.remove_speaker("p1", 11) is False
        assert await db.get_speakers("p1") == []

    async def test_deleted_proposal_takes_its_speakers(self, db):
        await db.create_proposal(make_proposal())
        await db.upsert_speaker(Speaker("p1", 11, SpeakerRole.DEBATE, "Anna", START_MS))
        await db.delete_proposal("p1")
        assert await db.get_speakers("p1") == []

    async def test_speaker_for_unknown_proposal_is_a_storage_failure(self, db):
        with pytest.raises(StorageFailure):
            await db.upsert_speaker(Speaker("missing", 11, SpeakerRole.DEBATE, "Anna", START_MS))


class TestMeetings:
    async def test_update_writes_only_given_fields(self, db):
        await db.create_meeting(make_meeting())
        await db.update_meeting("m1", MeetingUpdate(open=True, status=MeetingStatus.REGISTRATION_OPEN, expires_at=99))
        meeting = await db.get_meeting("m1")
        assert meeting.open is True
        assert meeting.status is MeetingStatus.REGISTRATION_OPEN
        assert meeting.expires_at == 99
        assert meeting.title == "Session 1"

    async def test_empty_update_is_refused(self, db):
        await db.create_meeting(make_meeting())
        with pytest.raises(ValueError):
            await db.update_meeting("m1", MeetingUpdate())

    def test_update_changes_are_column_values(self):
        changes = MeetingUpdate(open=False, status=MeetingStatus.CANCELLED, quorum=3).changes()
        assert changes == {"open": 0, "status": "cancelled", "quorum": 3}

    async def test_registration_is_idempotent(self, db):
        await db.create_meeting(make_meeting())
        assert await db.register_for_meeting("m1", 11, START_MS) is True
        assert await db.register_for_meeting("m1", 11, START_MS + 5) is False
        assert await db.get_registration_count("m1") == 1
        registrations = await db.get_registrations("m1")
        assert registrations[0].registered_at == START_MS

    async def test_close_meeting_is_guarded(self, db):
        await db.create_meeting(make_meeting())
        await db.update_meeting("m1", MeetingUpdate(open=True))
        assert [m.id for m in await db.get_open_meetings()] == ["m1"]
        assert await db.close_meeting("m1", MeetingStatus.COMPLETED) is True
        assert await db.close_meeting("m1", MeetingStatus.COMPLETED) is False
        assert (await db.get_meeting("m1")).status is MeetingStatus.COMPLETED

    async def test_last_meeting_by_chamber(self, db):
        await db.create_meeting(make_meeting("old", quorum=2))
        await db.create_meeting(make_meeting("new", created_at=START_MS + 10, quorum=5))
        await db.create_meeting(make_meeting("other", chamber=Chamber.GD_ARBAT, created_at=START_MS + 20))
        assert (await db.get_last_meeting_by_chamber(Chamber.SF)).id == "new"
        assert await db.get_last_meeting_by_chamber(Chamber.GD_PATRICKI) is None


async def test_unreachable_database_is_a_storage_failure(tmp_path):
    broken = DBManager(str(tmp_path))  # a directory, not a file
    with pytest.raises(StorageFailure):
        await broken.get_meeting("m1")
