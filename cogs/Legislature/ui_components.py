# cogs/Legislature/ui_components.py
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import discord
from discord.ui import Button, Modal, TextInput, View

from . import constants
from .durations import discord_timestamp, parse_duration
from .errors import LegislatureError
from .models import (
    Chamber,
    EventType,
    Meeting,
    Proposal,
    ProposalStatus,
    QuantitativeItem,
    Speaker,
    SpeakerRole,
    VOTE_ABSTAIN,
    VOTE_AGAINST,
    VOTE_FOR,
    VotingSession,
    item_choice,
)

if TYPE_CHECKING:
    from .cog import Legislature

log = logging.getLogger("legislature.ui")

# Component custom ids are "<action>:<arg>:<arg>..." and are routed by the cog.
ACTIONS = frozenset({
    "vote", "vote_end", "decide",
    "meeting_open", "meeting_register", "meeting_finalize",
    "meeting_late", "meeting_clear", "late_approve", "late_reject",
    "speaker_register", "speaker_withdraw",
})


def custom_id(action: str, *args) -> str:
    return ":".join([action, *(str(a) for a in args)])


def parse_custom_id(value: Optional[str]) -> Optional[Tuple[str, List[str]]]:
    """Split a component id into (action, args). Ids that are not ours give None."""
    if not value:
        return None
    action, *args = value.split(":")
    if action not in ACTIONS:
        return None
    return action, args


def _parse_positive(text: str, field: str) -> int:
    text = (text or "").strip()
    if not text.isdigit() or int(text) < 1:
        raise ValueError(f"{field} must be a positive whole number.")
    return int(text)


def proposal_embed(proposal: Proposal, author: Optional[discord.abc.User] = None,
                   items: Optional[List[str]] = None) -> discord.Embed:
    embed = discord.Embed(
        title=f"{proposal.number}: {proposal.name}",
        color=discord.Color.blue(),
    )
    embed.add_field(name="Chamber", value=proposal.chamber.display_name, inline=True)
    if proposal.party:
        embed.add_field(name="Party", value=proposal.party, inline=True)
    if proposal.link:
        embed.add_field(name="Text", value=proposal.link, inline=False)
    for index, text in enumerate(items or [], start=1):
        embed.add_field(name=f"Item {index}", value=text[:1024], inline=False)
    if author is not None:
        embed.set_author(name=f"Proposed by {author.display_name}", icon_url=author.display_avatar.url)
    embed.set_footer(text=f"ID {proposal.id} | {constants.FOOTER}")
    return embed


def meeting_embed(meeting: Meeting) -> discord.Embed:
    embed = discord.Embed(title=meeting.title, description=f"Meeting of the {meeting.chamber.display_name}",
                          color=discord.Color.gold())
    embed.add_field(name="Date", value=meeting.meeting_date, inline=True)
    embed.add_field(name="Quorum", value=str(meeting.quorum), inline=True)
    embed.add_field(name="Members", value=str(meeting.total_members), inline=True)
    embed.add_field(name="Status", value=meeting.status.value.replace("_", " "), inline=False)
    embed.set_footer(text=f"ID {meeting.id} | {constants.FOOTER}")
    return embed


def speakers_embed(proposal: Proposal, queue: Dict[SpeakerRole, List[Speaker]]) -> discord.Embed:
    embed = discord.Embed(title=f"Speakers on {proposal.number}", color=discord.Color.blue())
    for position, role in enumerate(SpeakerRole, start=1):
        lines = [f"{n}. <@{s.user_id}> ({s.display_name})" for n, s in enumerate(queue.get(role, []), start=1)]
        if lines:
            embed.add_field(name=f"{position}. {role.title}", value="\n".join(lines)[:1024], inline=False)
    embed.set_footer(text=constants.FOOTER)
    return embed


# ---------- Modals ----------

class ProposalForm(Modal, title='Submit a Proposal'):
    name_input = TextInput(
        label='Title',
        placeholder='e.g., On amendments to the Budget Code',
        min_length=5,
        max_length=200,
        required=True
    )

    party_input = TextInput(
        label='Party or faction',
        max_length=100,
        required=False
    )

    link_input = TextInput(
        label='Link to the full text',
        placeholder='https://',
        max_length=300,
        required=False
    )

    items_input = TextInput(
        label='Options for a rated vote (one per line)',
        placeholder='Leave empty for a for/against vote. Two or more lines make a rated vote.',
        style=discord.TextStyle.paragraph,
        max_length=2000,
        required=False
    )

    def __init__(self, cog: "Legislature", chamber: Chamber, parent_proposal_id: Optional[str] = None):
        super().__init__()
        self.cog = cog
        self.chamber = chamber
        self.parent_proposal_id = parent_proposal_id

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        items = [line for line in self.items_input.value.splitlines() if line.strip()]
        try:
            proposal = await self.cog.proposals.submit(
                self.chamber,
                self.name_input.value,
                interaction.user.id,
                party=self.party_input.value,
                link=self.link_input.value,
                items=items,
                parent_proposal_id=self.parent_proposal_id,
            )
        except (LegislatureError, ValueError) as e:
            await interaction.followup.send(self.cog.describe_error(e), ephemeral=True)
            return

        channel = self.cog.bot.get_channel(constants.PROPOSAL_CHANNELS.get(self.chamber.value, 0))
        if not channel:
            await interaction.followup.send(
                f"{proposal.number} was registered, but the chamber channel is not configured. Contact an admin.",
                ephemeral=True
            )
            return

        message = await channel.send(embed=proposal_embed(proposal, interaction.user, items),
                                     view=SpeakerView(proposal.id))
        thread = await message.create_thread(name=f"{proposal.number}: {proposal.name}"[:100],
                                             auto_archive_duration=10080)
        await self.cog.db.set_proposal_thread(proposal.id, thread.id)
        await interaction.followup.send(
            f"Your proposal was registered as **{proposal.number}**. Discussion: {thread.mention}",
            ephemeral=True
        )


class StartVoteForm(Modal, title='Start Voting'):
    duration_input = TextInput(
        label='Duration',
        placeholder='e.g., 1h30m, 45m, 2d',
        default='1h',
        max_length=20,
        required=True
    )

    formula_input = TextInput(
        label='Formula (0 simple, 1 2/3, 2 3/4, 3 absolute)',
        default='0',
        max_length=1,
        required=True
    )

    secret_input = TextInput(
        label='Secret ballot? (yes/no)',
        default='no',
        max_length=3,
        required=True
    )

    def __init__(self, cog: "Legislature", proposal: Proposal):
        super().__init__()
        self.cog = cog
        self.proposal = proposal

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        is_secret = self.secret_input.value.strip().lower() in ("yes", "y", "1")
        try:
            session = await self.cog.voting.start_voting(
                self.proposal.id,
                parse_duration(self.duration_input.value),
                self.formula_input.value,
                is_secret,
            )
        except (LegislatureError, ValueError) as e:
            await interaction.followup.send(self.cog.describe_error(e), ephemeral=True)
            return
        await interaction.followup.send(
            f"Voting on **{self.proposal.number}** is open until {discord_timestamp(session.expires_at)}.",
            ephemeral=True
        )


class OpenRegistrationForm(Modal, title='Open Registration'):
    duration_input = TextInput(
        label='Registration window',
        placeholder='e.g., 15m',
        default='15m',
        max_length=20,
        required=True
    )

    quorum_input = TextInput(
        label='Quorum',
        max_length=4,
        required=True
    )

    members_input = TextInput(
        label='Total members',
        max_length=4,
        required=True
    )

    def __init__(self, cog: "Legislature", meeting: Meeting):
        super().__init__()
        self.cog = cog
        self.meeting = meeting
        self.quorum_input.default = str(meeting.quorum)
        self.members_input.default = str(meeting.total_members)

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        try:
            meeting = await self.cog.meetings.open_registration(
                self.meeting.id,
                parse_duration(self.duration_input.value),
                _parse_positive(self.quorum_input.value, "Quorum"),
                _parse_positive(self.members_input.value, "Total members"),
            )
        except (LegislatureError, ValueError) as e:
            await interaction.followup.send(self.cog.describe_error(e), ephemeral=True)
            return
        if interaction.message is not None:
            await interaction.message.edit(view=RegistrationView(meeting.id))
        await interaction.followup.send(
            f"Registration for **{meeting.title}** is open until {discord_timestamp(meeting.expires_at)}.",
            ephemeral=True
        )


class SpeakerForm(Modal, title='Speak on a Proposal'):
    role_input = TextInput(
        label='1 report, 2 co-report, 3 debate',
        default='3',
        max_length=10,
        required=True
    )

    def __init__(self, cog: "Legislature", proposal: Proposal):
        super().__init__()
        self.cog = cog
        self.proposal = proposal

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        try:
            speaker = await self.cog.proposals.register_speaker(
                self.proposal.id,
                interaction.user.id,
                interaction.user.display_name,
                SpeakerRole.parse(self.role_input.value),
            )
            queue = await self.cog.proposals.speaker_queue(self.proposal.id)
        except LegislatureError as e:
            await interaction.followup.send(self.cog.describe_error(e), ephemeral=True)
            return
        await interaction.followup.send(
            f"You are on the list for **{self.proposal.number}** ({speaker.role.title}).",
            embed=speakers_embed(self.proposal, queue),
            ephemeral=True
        )


# ---------- Views ----------

def build_ballot_view(proposal: Proposal, session: VotingSession, items: List[QuantitativeItem]) -> View:
    view = View(timeout=None)
    if proposal.is_quantitative:
        for item in items:
            view.add_item(Button(
                label=f"Item {item.item_index}",
                style=discord.ButtonStyle.primary,
                custom_id=custom_id("vote", proposal.id, session.stage, item_choice(item.item_index)),
            ))
    else:
        view.add_item(Button(label="For", style=discord.ButtonStyle.success,
                             custom_id=custom_id("vote", proposal.id, session.stage, VOTE_FOR)))
        view.add_item(Button(label="Against", style=discord.ButtonStyle.danger,
                             custom_id=custom_id("vote", proposal.id, session.stage, VOTE_AGAINST)))
    view.add_item(Button(label="Abstain", style=discord.ButtonStyle.secondary,
                         custom_id=custom_id("vote", proposal.id, session.stage, VOTE_ABSTAIN)))
    view.add_item(Button(label="End voting", style=discord.ButtonStyle.secondary, row=4,
                         custom_id=custom_id("vote_end", proposal.id)))
    return view


class DecisionView(View):
    """Buttons for whoever decides next on a proposal that has left the vote."""

    NEXT_STEPS = {
        ProposalStatus.GOVERNMENT_REVIEW: (
            (EventType.GOVERNMENT_APPROVAL, "Approve", discord.ButtonStyle.success),
            (EventType.GOVERNMENT_RETURN, "Return", discord.ButtonStyle.danger),
        ),
    }

    def __init__(self, proposal: Proposal, steps):
        super().__init__(timeout=None)
        for event_type, label, style in steps:
            self.add_item(Button(label=label, style=style,
                                 custom_id=custom_id("decide", proposal.id, event_type.value)))

    @classmethod
    def for_proposal(cls, proposal: Proposal) -> Optional["DecisionView"]:
        if proposal.status is ProposalStatus.APPROVED and not proposal.is_quantitative:
            if proposal.chamber.is_duma:
                steps = ((EventType.TRANSFER, "Transfer to the Federation Council", discord.ButtonStyle.primary),)
            else:
                steps = ((EventType.PRESIDENT_SIGN, "Sign", discord.ButtonStyle.success),
                         (EventType.PRESIDENT_VETO, "Veto", discord.ButtonStyle.danger))
            return cls(proposal, steps)
        steps = cls.NEXT_STEPS.get(proposal.status)
        return cls(proposal, steps) if steps else None


class PlannedMeetingView(View):
    def __init__(self, meeting_id: str):
        super().__init__(timeout=None)
        self.add_item(Button(label="Open registration", style=discord.ButtonStyle.primary,
                             custom_id=custom_id("meeting_open", meeting_id)))


class RegistrationView(View):
    def __init__(self, meeting_id: str):
        super().__init__(timeout=None)
        self.add_item(Button(label="Register", style=discord.ButtonStyle.success,
                             custom_id=custom_id("meeting_register", meeting_id)))
        self.add_item(Button(label="Close registration", style=discord.ButtonStyle.secondary,
                             custom_id=custom_id("meeting_finalize", meeting_id)))


class FinalizedMeetingView(View):
    def __init__(self, meeting_id: str):
        super().__init__(timeout=None)
        self.add_item(Button(label="Late registration", style=discord.ButtonStyle.primary,
                             custom_id=custom_id("meeting_late", meeting_id)))
        self.add_item(Button(label="End meeting and clear roles", style=discord.ButtonStyle.danger,
                             custom_id=custom_id("meeting_clear", meeting_id)))


class LateRegistrationView(View):
    def __init__(self, meeting_id: str, user_id: int):
        super().__init__(timeout=None)
        self.add_item(Button(label="Register", style=discord.ButtonStyle.success,
                             custom_id=custom_id("late_approve", meeting_id, user_id)))
        self.add_item(Button(label="Refuse", style=discord.ButtonStyle.danger,
                             custom_id=custom_id("late_reject", meeting_id, user_id)))


class SpeakerView(View):
    def __init__(self, proposal_id: str):
        super().__init__(timeout=None)
        self.add_item(Button(label="Sign up to speak", style=discord.ButtonStyle.primary,
                             custom_id=custom_id("speaker_register", proposal_id)))
        self.add_item(Button(label="Leave the speaker list", style=discord.ButtonStyle.secondary,
                             custom_id=custom_id("speaker_withdraw", proposal_id)))
