# cogs/Legislature/models.py
import json
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class Chamber(str, Enum):
    SF = "sf"
    GD_RUBLEVKA = "gd_rublevka"
    GD_ARBAT = "gd_arbat"
    GD_PATRICKI = "gd_patricki"
    GD_TVERSKOY = "gd_tverskoy"

    @property
    def display_name(self) -> str:
        return CHAMBER_NAMES[self]

    @property
    def number_prefix(self) -> str:
        return "SF" if self is Chamber.SF else "GD"

    @property
    def is_duma(self) -> bool:
        return self is not Chamber.SF


CHAMBER_NAMES = {
    Chamber.SF: "Federation Council",
    Chamber.GD_RUBLEVKA: "State Duma | Rublevka",
    Chamber.GD_ARBAT: "State Duma | Arbat",
    Chamber.GD_PATRICKI: "State Duma | Patricki",
    Chamber.GD_TVERSKOY: "State Duma | Tverskoy",
}


class Formula(str, Enum):
    """Threshold rule for a vote. Values are the codes typed into the start-vote form."""
    SIMPLE_MAJORITY = "0"
    TWO_THIRDS = "1"
    THREE_QUARTERS = "2"
    ABSOLUTE_MAJORITY = "3"

    @classmethod
    def parse(cls, value: Any) -> "Formula":
        """Unknown codes fall back to simple majority."""
        if isinstance(value, Formula):
            return value
        try:
            return cls(str(value).strip())
        except ValueError:
            return cls.SIMPLE_MAJORITY

    @property
    def description(self) -> str:
        return FORMULA_DESCRIPTIONS[self]


FORMULA_DESCRIPTIONS = {
    Formula.SIMPLE_MAJORITY: "Simple majority",
    Formula.TWO_THIRDS: "Two thirds of votes",
    Formula.THREE_QUARTERS: "Three quarters of votes",
    Formula.ABSOLUTE_MAJORITY: "Majority of all members",
}


class ProposalStatus(str, Enum):
    UNDER_REVIEW = "under_review"
    VOTING = "voting"
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_APPROVED = "not_approved"
    GOVERNMENT_REVIEW = "government_review"
    RETURNED = "returned"
    SIGNED = "signed"
    VETOED = "vetoed"
    TRANSFERRED = "transferred"


class EventType(str, Enum):
    REGISTRATION = "registration"
    VOTE_RESULT = "vote_result"
    RUNOFF = "runoff"
    GOVERNMENT_APPROVAL = "government_approval"
    GOVERNMENT_RETURN = "government_return"
    PRESIDENT_SIGN = "president_sign"
    PRESIDENT_VETO = "president_veto"
    TRANSFER = "transfer"

    @property
    def title(self) -> str:
        return EVENT_TITLES[self]


EVENT_TITLES = {
    EventType.REGISTRATION: "Registered",
    EventType.VOTE_RESULT: "Vote result",
    EventType.RUNOFF: "Runoff opened",
    EventType.GOVERNMENT_APPROVAL: "Approved by the Government",
    EventType.GOVERNMENT_RETURN: "Returned by the Government",
    EventType.PRESIDENT_SIGN: "Signed by the President",
    EventType.PRESIDENT_VETO: "Vetoed by the President",
    EventType.TRANSFER: "Transferred to the Federation Council",
}


class MeetingStatus(str, Enum):
    PLANNED = "planned"
    REGISTRATION_OPEN = "registration_open"
    VOTING = "voting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"

    @property
    def is_terminal(self) -> bool:
        return self in (MeetingStatus.COMPLETED, MeetingStatus.CANCELLED)


class GrantResult(str, Enum):
    GRANTED = "granted"
    ALREADY_HELD = "already_held"
    FAILED = "failed"


class SpeakerRole(str, Enum):
    """Floor order on a proposal: the report, then co-reports, then the debate."""

    REPORT = "report"
    CO_REPORT = "co_report"
    DEBATE = "debate"

    @property
    def title(self) -> str:
        return SPEAKER_TITLES[self]

    @classmethod
    def parse(cls, value) -> "SpeakerRole":
        """Accepts a role, its value, or the form digit 1/2/3. Anything else joins the debate."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        by_digit = {"1": cls.REPORT, "2": cls.CO_REPORT, "3": cls.DEBATE}
        if text in by_digit:
            return by_digit[text]
        try:
            return cls(text)
        except ValueError:
            return cls.DEBATE


SPEAKER_TITLES = {
    SpeakerRole.REPORT: "Report",
    SpeakerRole.CO_REPORT: "Co-report",
    SpeakerRole.DEBATE: "Debate",
}


# --- Ballot values ---
VOTE_FOR = "for"
VOTE_AGAINST = "against"
VOTE_ABSTAIN = "abstain"
REGULAR_CHOICES = (VOTE_FOR, VOTE_AGAINST, VOTE_ABSTAIN)


def item_choice(item_index: int) -> str:
    return f"item_{item_index}"


def parse_item_choice(vote_type: str) -> Optional[int]:
    """Return the item index of an ``item_<n>`` ballot, or None for anything else."""
    if not vote_type.startswith("item_"):
        return None
    suffix = vote_type[len("item_"):]
    return int(suffix) if suffix.isdigit() else None


# --- Records ---

@dataclass
class ProposalEvent:
    type: EventType
    chamber: Chamber
    timestamp: int
    description: str
    result: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "ProposalEvent":
        return cls(
            type=EventType(row["type"]),
            chamber=Chamber(row["chamber"]),
            timestamp=row["timestamp"],
            description=row["description"],
            result=row["result"],
        )


@dataclass
class QuantitativeItem:
    proposal_id: str
    item_index: int
    text: str


@dataclass
class Proposal:
    id: str
    number: str
    name: str
    chamber: Chamber
    author_id: int
    created_at: int
    status: ProposalStatus = ProposalStatus.UNDER_REVIEW
    party: str = ""
    link: str = ""
    thread_id: Optional[int] = None
    is_quantitative: bool = False
    parent_proposal_id: Optional[str] = None
    events: List[ProposalEvent] = field(default_factory=list)

    @classmethod
    def from_row(cls, row, events: Optional[List[ProposalEvent]] = None) -> "Proposal":
        return cls(
            id=row["id"],
            number=row["number"],
            name=row["name"],
            chamber=Chamber(row["chamber"]),
            author_id=row["author_id"],
            created_at=row["created_at"],
            status=ProposalStatus(row["status"]),
            party=row["party"] or "",
            link=row["link"] or "",
            thread_id=row["thread_id"],
            is_quantitative=bool(row["is_quantitative"]),
            parent_proposal_id=row["parent_proposal_id"],
            events=events or [],
        )


@dataclass
class VotingSession:
    proposal_id: str
    started_at: int
    duration_ms: int
    formula: Formula = Formula.SIMPLE_MAJORITY
    is_secret: bool = False
    stage: int = 1
    open: bool = True
    ended_at: Optional[int] = None
    message_id: Optional[int] = None
    runoff_message_id: Optional[int] = None
    candidates: List[int] = field(default_factory=list)

    @property
    def expires_at(self) -> int:
        return self.started_at + self.duration_ms

    @property
    def ballot_message_id(self) -> Optional[int]:
        if self.stage > 1 and self.runoff_message_id:
            return self.runoff_message_id
        return self.message_id

    def time_left(self, now: int) -> int:
        return max(0, self.expires_at - now)

    @classmethod
    def from_row(cls, row) -> "VotingSession":
        return cls(
            proposal_id=row["proposal_id"],
            started_at=row["started_at"],
            duration_ms=row["duration_ms"],
            formula=Formula.parse(row["formula"]),
            is_secret=bool(row["is_secret"]),
            stage=row["stage"],
            open=bool(row["open"]),
            ended_at=row["ended_at"],
            message_id=row["message_id"],
            runoff_message_id=row["runoff_message_id"],
            candidates=json.loads(row["candidates"] or "[]"),
        )


@dataclass
class Vote:
    proposal_id: str
    user_id: int
    vote_type: str
    stage: int
    created_at: int

    @classmethod
    def from_row(cls, row) -> "Vote":
        return cls(
            proposal_id=row["proposal_id"],
            user_id=row["user_id"],
            vote_type=row["vote_type"],
            stage=row["stage"],
            created_at=row["created_at"],
        )


@dataclass
class Meeting:
    id: str
    chamber: Chamber
    title: str
    meeting_date: str
    channel_id: int
    created_at: int
    quorum: int = 1
    total_members: int = 53
    duration_ms: int = 0
    expires_at: int = 0
    open: bool = False
    status: MeetingStatus = MeetingStatus.PLANNED
    message_id: Optional[int] = None
    thread_id: Optional[int] = None

    def time_left(self, now: int) -> int:
        return max(0, self.expires_at - now)

    @classmethod
    def from_row(cls, row) -> "Meeting":
        return cls(
            id=row["id"],
            chamber=Chamber(row["chamber"]),
            title=row["title"],
            meeting_date=row["meeting_date"],
            channel_id=row["channel_id"],
            created_at=row["created_at"],
            quorum=row["quorum"],
            total_members=row["total_members"],
            duration_ms=row["duration_ms"],
            expires_at=row["expires_at"],
            open=bool(row["open"]),
            status=MeetingStatus(row["status"]),
            message_id=row["message_id"],
            thread_id=row["thread_id"],
        )


@dataclass
class MeetingUpdate:
    """Closed set of meeting columns that may change after creation.

    Only fields left as something other than None are written.
    """
    title: Optional[str] = None
    meeting_date: Optional[str] = None
    channel_id: Optional[int] = None
    message_id: Optional[int] = None
    thread_id: Optional[int] = None
    duration_ms: Optional[int] = None
    expires_at: Optional[int] = None
    open: Optional[bool] = None
    quorum: Optional[int] = None
    total_members: Optional[int] = None
    status: Optional[MeetingStatus] = None

    def changes(self) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, bool):
                value = int(value)
            out[f.name] = value
        return out


MEETING_UPDATE_COLUMNS = frozenset(f.name for f in fields(MeetingUpdate))


@dataclass
class MeetingRegistration:
    meeting_id: str
    user_id: int
    registered_at: int


@dataclass
class Speaker:
    proposal_id: str
    user_id: int
    role: SpeakerRole
    display_name: str
    registered_at: int

    @classmethod
    def from_row(cls, row) -> "Speaker":
        return cls(
            proposal_id=row["proposal_id"],
            user_id=row["user_id"],
            role=SpeakerRole(row["role"]),
            display_name=row["display_name"],
            registered_at=row["registered_at"],
        )
