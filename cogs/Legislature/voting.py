# cogs/Legislature/voting.py
import logging
from typing import List, Optional, Union

from . import constants
from .db_manager import DBManager
from .durations import now_ms, parse_duration
from .errors import AlreadyOpen, DuplicateVote, InvalidChoice, InvalidTransition, NotFound, NotOpen, StaleExpiry, StorageFailure
from .models import (
    EventType,
    Formula,
    Proposal,
    ProposalEvent,
    ProposalStatus,
    QuantitativeItem,
    REGULAR_CHOICES,
    VOTE_ABSTAIN,
    Vote,
    VotingSession,
    parse_item_choice,
)
from .notifier import Notifier, notify_safely
from .proposals import status_after_vote
from .scheduler import KeyedLock, Scheduler
from .tally import QuantitativeOutcome, RegularOutcome, classify_regular, evaluate_quantitative

log = logging.getLogger("legislature.voting")

Outcome = Union[RegularOutcome, QuantitativeOutcome]


class VotingEngine:
    """Lifecycle of the vote on a proposal: open a stage, take ballots, close and tally.

    Rated (quantitative) proposals that end a stage without a winner open the
    next stage for the leading items. Ballots are keyed by stage, so earlier
    stages stay on record.
    """

    def __init__(self, db: DBManager, notifier: Notifier, scheduler: Scheduler, clock=now_ms,
                 tick_seconds: float = constants.VOTE_TICK_SECONDS,
                 runoff_duration_ms: int = parse_duration(constants.RUNOFF_DURATION),
                 max_stages: int = constants.MAX_VOTE_STAGES):
        self.db = db
        self.notifier = notifier
        self.scheduler = scheduler
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.runoff_duration_ms = runoff_duration_ms
        self.max_stages = max_stages
        self._locks = KeyedLock()

    @staticmethod
    def timer_key(proposal_id: str) -> str:
        return f"vote:{proposal_id}"

    def arm(self, proposal_id: str):
        self.scheduler.arm(self.timer_key(proposal_id), lambda: self.tick(proposal_id), self.tick_seconds)

    # ---------- Operations ----------
    async def start_voting(self, proposal_id: str, duration_ms: int, formula=Formula.SIMPLE_MAJORITY,
                           is_secret: bool = False, stage: int = 1,
                           candidates: Optional[List[int]] = None) -> VotingSession:
        async with self._locks.hold(proposal_id):
            proposal = await self.db.get_proposal(proposal_id)
            if proposal is None:
                raise NotFound(f"Proposal {proposal_id} not found.")
            return await self._open_stage(proposal, duration_ms, Formula.parse(formula), is_secret, stage, candidates)

    async def cast_vote(self, proposal_id: str, user_id: int, vote_type: str, stage: Optional[int] = None) -> Vote:
        async with self._locks.hold(proposal_id):
            session = await self.db.get_voting_session(proposal_id)
            if session is None or not session.open:
                raise NotOpen("Voting is not open.")
            if stage is not None and stage != session.stage:
                raise NotOpen(f"Round {stage} is closed.")
            now = self.clock()
            if now >= session.expires_at:
                raise NotOpen("Voting has ended.")
            await self._check_choice(session, vote_type)

            vote = Vote(proposal_id, user_id, vote_type, session.stage, now)
            try:
                await self.db.insert_vote(vote)
            except DuplicateVote:
                log.info("Rejected repeat ballot from %s on %s (stage %d)", user_id, proposal_id, session.stage)
                raise
            return vote

    async def close_voting(self, proposal_id: str, ended_at: Optional[int] = None) -> Optional[Outcome]:
        """Close the open stage early or on expiry. Closing a closed vote does nothing and returns None."""
        async with self._locks.hold(proposal_id):
            session = await self.db.get_voting_session(proposal_id)
            if session is None:
                raise NotFound(f"No vote for proposal {proposal_id}.")
            if not session.open:
                self.scheduler.cancel(self.timer_key(proposal_id))
                log.debug("Vote on %s already closed", proposal_id)
                return None
            return await self._finalize(session, ended_at if ended_at is not None else self.clock())

    async def tick(self, proposal_id: str) -> bool:
        async with self._locks.hold(proposal_id):
            try:
                session = await self.db.get_voting_session(proposal_id)
                if session is None:
                    log.warning("Vote on %s no longer exists; stopping its timer", proposal_id)
                    return False
                if not session.open:
                    return False

                now = self.clock()
                if now >= session.expires_at:
                    await self._finalize(session, now)
                    return False

                proposal = await self.db.get_proposal(proposal_id)
                if proposal is None:
                    return False
                counts = await self.db.get_vote_counts(proposal_id, session.stage)
            except StorageFailure as e:
                log.warning("Vote tick for %s failed, retrying next period: %s", proposal_id, e)
                return True

        await notify_safely(self.notifier.render_vote_status(
            proposal, session, session.time_left(now), sum(counts.values())
        ))
        return True

    # ---------- Internals ----------
    async def _open_stage(self, proposal: Proposal, duration_ms: int, formula: Formula, is_secret: bool,
                          stage: int, candidates: Optional[List[int]]) -> VotingSession:
        if duration_ms <= 0:
            raise ValueError("Voting duration must be positive.")
        existing = await self.db.get_voting_session(proposal.id)
        if existing and existing.open:
            raise AlreadyOpen(f"Voting on {proposal.number} is already open.")
        if existing and stage <= existing.stage:
            raise InvalidTransition(f"Round {existing.stage} of {proposal.number} has already been held.")
        if stage > 1 and not proposal.is_quantitative:
            raise InvalidTransition("Only rated votes have runoff rounds.")

        items = await self.db.get_quantitative_items(proposal.id) if proposal.is_quantitative else []
        if proposal.is_quantitative and not items:
            raise InvalidTransition(f"{proposal.number} has no items to vote on.")
        candidates = sorted(candidates or [])
        known = {item.item_index for item in items}
        if any(index not in known for index in candidates):
            raise InvalidChoice(f"Unknown items in {candidates}")

        session = VotingSession(
            proposal_id=proposal.id,
            started_at=self.clock(),
            duration_ms=duration_ms,
            formula=formula,
            is_secret=is_secret,
            stage=stage,
            message_id=existing.message_id if existing else None,
            candidates=candidates,
        )
        await self.db.upsert_voting_session(session)
        if stage == 1:
            await self.db.set_proposal_status(proposal.id, ProposalStatus.VOTING)
        await self._announce_stage(proposal, session, items)
        return session

    async def _announce_stage(self, proposal: Proposal, session: VotingSession, items: List[QuantitativeItem]):
        """Arm the timer and post the ballot of a stage that is already stored."""
        log.info("Voting on %s opened (stage %d, %s, expires %d)", proposal.number, session.stage,
                 session.formula.description, session.expires_at)
        self.arm(proposal.id)

        ballot = [item for item in items if not session.candidates or item.item_index in session.candidates]
        message_id = await notify_safely(self.notifier.render_ballot(proposal, session, ballot))
        if not message_id:
            return
        runoff = session.stage > 1
        try:
            await self.db.set_ballot_message(proposal.id, message_id, runoff=runoff)
        except StorageFailure as e:
            log.warning("Ballot message of %s was not saved: %s", proposal.id, e)
            return
        if runoff:
            session.runoff_message_id = message_id
        else:
            session.message_id = message_id

    async def _check_choice(self, session: VotingSession, vote_type: str):
        proposal = await self.db.get_proposal(session.proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {session.proposal_id} not found.")
        if not proposal.is_quantitative:
            if vote_type not in REGULAR_CHOICES:
                raise InvalidChoice(vote_type)
            return
        if vote_type == VOTE_ABSTAIN:
            return
        index = parse_item_choice(vote_type)
        allowed = session.candidates or [i.item_index for i in await self.db.get_quantitative_items(proposal.id)]
        if index is None or index not in allowed:
            raise InvalidChoice(vote_type)

    async def _finalize(self, session: VotingSession, ended_at: int) -> Optional[Outcome]:
        """Tally the open stage, then close it together with its result or its runoff. Caller holds the lock.

        Everything is read before the single write, so a storage error leaves the
        stage open and the timer armed for the next tick.
        """
        key = self.timer_key(session.proposal_id)
        proposal = await self.db.get_proposal(session.proposal_id)
        if proposal is None:
            self.scheduler.cancel(key)
            return None

        meeting = await self.db.get_last_meeting_by_chamber(proposal.chamber)
        quorum = meeting.quorum if meeting else constants.DEFAULT_VOTE_QUORUM
        total_members = meeting.total_members if meeting else constants.DEFAULT_TOTAL_MEMBERS
        counts = await self.db.get_vote_counts(proposal.id, session.stage)

        if proposal.is_quantitative:
            items = await self.db.get_quantitative_items(proposal.id)
            candidates = session.candidates or [i.item_index for i in items]
            outcome = evaluate_quantitative(counts, candidates, session.stage, quorum, self.max_stages)
            if outcome.needs_runoff:
                return await self._close_into_runoff(proposal, session, ended_at, outcome, items)
        else:
            outcome = classify_regular(counts, session.formula, quorum, total_members)

        status = status_after_vote(proposal, outcome.status)
        if isinstance(outcome, QuantitativeOutcome):
            detail = f"item {outcome.winner} adopted" if outcome.winner is not None else "no item adopted"
        else:
            detail = f"{outcome.for_count} for, {outcome.against_count} against, {outcome.abstain_count} abstained"
        event = ProposalEvent(EventType.VOTE_RESULT, proposal.chamber, ended_at,
                              f"Vote in {proposal.chamber.display_name} closed: {detail}", status.value)

        closed = await self.db.close_with_result(proposal.id, ended_at, status, event)
        self.scheduler.cancel(key)
        if not closed:
            log.debug("%s", StaleExpiry(f"vote on {proposal.id} was closed concurrently"))
            return None
        session.open = False
        session.ended_at = ended_at
        proposal.status = status
        proposal.events.append(event)
        log.info("Vote on %s closed at stage %d: %s", proposal.number, session.stage, status.value)

        await notify_safely(self.notifier.render_final_result(proposal, session, outcome))
        return outcome

    async def _close_into_runoff(self, proposal: Proposal, session: VotingSession, ended_at: int,
                                 outcome: QuantitativeOutcome, items: List[QuantitativeItem]) -> Optional[Outcome]:
        listed = ", ".join(str(i) for i in outcome.runoff_candidates)
        event = ProposalEvent(
            EventType.RUNOFF, proposal.chamber, ended_at,
            f"Round {session.stage} had no winner; round {session.stage + 1} between items {listed}",
        )
        runoff = VotingSession(
            proposal_id=proposal.id,
            started_at=self.clock(),
            duration_ms=self.runoff_duration_ms,
            formula=Formula.SIMPLE_MAJORITY,
            is_secret=session.is_secret,
            stage=session.stage + 1,
            message_id=session.message_id,
            candidates=sorted(outcome.runoff_candidates),
        )
        if not await self.db.close_with_runoff(proposal.id, ended_at, event, runoff):
            self.scheduler.cancel(self.timer_key(proposal.id))
            log.debug("%s", StaleExpiry(f"vote on {proposal.id} was closed concurrently"))
            return None
        session.open = False
        session.ended_at = ended_at
        proposal.events.append(event)

        await notify_safely(self.notifier.render_final_result(proposal, session, outcome))
        await self._announce_stage(proposal, runoff, items)
        return outcome
