# cogs/Legislature/proposals.py
import logging
import secrets
from typing import Dict, List, Optional

from .db_manager import DBManager
from .durations import now_ms
from .errors import InvalidTransition, NotFound
from .models import Chamber, EventType, Proposal, ProposalEvent, ProposalStatus, Speaker, SpeakerRole

log = logging.getLogger("legislature.proposals")

# event -> (chambers it applies to, status it requires, status it leads to)
DECISIONS = {
    EventType.GOVERNMENT_APPROVAL: ("duma", ProposalStatus.GOVERNMENT_REVIEW, ProposalStatus.APPROVED),
    EventType.GOVERNMENT_RETURN: ("duma", ProposalStatus.GOVERNMENT_REVIEW, ProposalStatus.RETURNED),
    EventType.TRANSFER: ("duma", ProposalStatus.APPROVED, ProposalStatus.TRANSFERRED),
    EventType.PRESIDENT_SIGN: ("sf", ProposalStatus.APPROVED, ProposalStatus.SIGNED),
    EventType.PRESIDENT_VETO: ("sf", ProposalStatus.APPROVED, ProposalStatus.VETOED),
}


# the floor is open while a proposal is debated or voted on
OPEN_FLOOR = (ProposalStatus.UNDER_REVIEW, ProposalStatus.VOTING)


def new_token() -> str:
    return secrets.token_hex(4)


def format_number(chamber: Chamber, value: int) -> str:
    return f"{chamber.number_prefix}-{value:03d}"


def status_after_vote(proposal: Proposal, status: ProposalStatus) -> ProposalStatus:
    """A regular bill passed by a Duma chamber goes to the Government before anything else."""
    if status is ProposalStatus.APPROVED and proposal.chamber.is_duma and not proposal.is_quantitative:
        return ProposalStatus.GOVERNMENT_REVIEW
    return status


class ProposalService:
    def __init__(self, db: DBManager, clock=now_ms):
        self.db = db
        self.clock = clock

    async def submit(self, chamber: Chamber, name: str, author_id: int, party: str = "", link: str = "",
                     items: Optional[List[str]] = None, parent_proposal_id: Optional[str] = None) -> Proposal:
        chamber = Chamber(chamber)
        items = [text.strip() for text in (items or []) if text.strip()]
        if len(items) == 1:
            raise ValueError("A rated proposal needs at least two items.")
        if parent_proposal_id and await self.db.get_proposal(parent_proposal_id) is None:
            raise NotFound(f"Parent proposal {parent_proposal_id} does not exist.")

        number = format_number(chamber, await self.db.increment_chamber_counter(chamber))
        now = self.clock()
        proposal = Proposal(
            id=new_token(),
            number=number,
            name=name,
            chamber=chamber,
            author_id=author_id,
            created_at=now,
            party=party,
            link=link,
            is_quantitative=bool(items),
            parent_proposal_id=parent_proposal_id,
        )
        await self.db.create_proposal(proposal, items)

        event = ProposalEvent(EventType.REGISTRATION, chamber, now, f"Registered in {chamber.display_name} as {number}")
        await self.db.append_event(proposal.id, event)
        proposal.events.append(event)
        log.info("Proposal %s (%s) registered by %s", number, proposal.id, author_id)
        return proposal

    async def record_decision(self, proposal_id: str, event_type: EventType, note: str = "") -> Proposal:
        proposal = await self.db.get_proposal(proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found.")
        if event_type not in DECISIONS:
            raise InvalidTransition(f"{event_type.title} is not a decision.")

        scope, required, result = DECISIONS[event_type]
        if (scope == "duma") != proposal.chamber.is_duma:
            raise InvalidTransition(f"{event_type.title} does not apply to {proposal.chamber.display_name}.")
        if proposal.status is not required:
            raise InvalidTransition(f"{proposal.number} is {proposal.status.value}, expected {required.value}.")

        description = event_type.title if not note else f"{event_type.title}: {note}"
        if event_type is EventType.TRANSFER:
            council_copy = await self.transfer_to_council(proposal)
            description = f"{description} as {council_copy.number}"

        event = ProposalEvent(event_type, proposal.chamber, self.clock(), description, result.value)
        await self.db.set_proposal_status(proposal_id, result)
        await self.db.append_event(proposal_id, event)
        proposal.status = result
        proposal.events.append(event)
        log.info("Proposal %s: %s -> %s", proposal.number, required.value, result.value)
        return proposal

    async def transfer_to_council(self, proposal: Proposal) -> Proposal:
        """Register a Federation Council proposal that continues a Duma bill."""
        items = [item.text for item in await self.db.get_quantitative_items(proposal.id)]
        return await self.submit(Chamber.SF, proposal.name, proposal.author_id, proposal.party, proposal.link,
                                 items=items, parent_proposal_id=proposal.id)

    async def withdraw(self, proposal_id: str, user_id: int, is_admin: bool = False):
        proposal = await self.db.get_proposal(proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found.")
        if proposal.author_id != user_id and not is_admin:
            raise InvalidTransition("Only the author can withdraw a proposal.")
        session = await self.db.get_voting_session(proposal_id)
        if session and session.open:
            raise InvalidTransition("A proposal cannot be withdrawn while it is being voted on.")
        await self.db.delete_proposal(proposal_id)
        log.info("Proposal %s withdrawn by %s", proposal.number, user_id)

    # ---------- Speakers ----------
    async def register_speaker(self, proposal_id: str, user_id: int, display_name: str, role) -> Speaker:
        """Put a member on the speaker list. Registering again moves them to the new role."""
        proposal = await self.db.get_proposal(proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found.")
        if proposal.status not in OPEN_FLOOR:
            raise InvalidTransition(f"{proposal.number} is {proposal.status.value}; the speaker list is closed.")
        speaker = Speaker(proposal_id, user_id, SpeakerRole.parse(role), display_name, self.clock())
        await self.db.upsert_speaker(speaker)
        log.info("%s signed up to speak on %s (%s)", user_id, proposal.number, speaker.role.value)
        return speaker

    async def withdraw_speaker(self, proposal_id: str, user_id: int) -> bool:
        return await self.db.remove_speaker(proposal_id, user_id)

    async def speaker_queue(self, proposal_id: str) -> Dict[SpeakerRole, List[Speaker]]:
        """Speakers grouped by role in floor order. With no report registered the author gives it."""
        proposal = await self.db.get_proposal(proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found.")
        queue = {role: [] for role in SpeakerRole}
        for speaker in await self.db.get_speakers(proposal_id):
            queue[speaker.role].append(speaker)
        if not queue[SpeakerRole.REPORT]:
            queue[SpeakerRole.REPORT].append(
                Speaker(proposal_id, proposal.author_id, SpeakerRole.REPORT, "author", proposal.created_at)
            )
        return queue
