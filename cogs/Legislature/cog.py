# cogs/Legislature/cog.py
import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from . import constants, permissions
from .db_manager import DBManager
from .errors import LegislatureError, NotFound
from .meetings import MeetingController
from .models import Chamber, EventType, Meeting, MeetingUpdate, Proposal
from .notifier import DiscordNotifier
from .proposals import DECISIONS, ProposalService
from .restore import TimerRestorer
from .scheduler import Scheduler
from .ui_components import (
    DecisionView,
    LateRegistrationView,
    OpenRegistrationForm,
    PlannedMeetingView,
    ProposalForm,
    SpeakerForm,
    StartVoteForm,
    meeting_embed,
    parse_custom_id,
    proposal_embed,
    speakers_embed,
)
from .voting import VotingEngine

log = logging.getLogger("legislature.cog")

CHAMBER_CHOICES = [app_commands.Choice(name=c.display_name, value=c.value) for c in Chamber]
DECISION_CHOICES = [app_commands.Choice(name=e.title, value=e.value) for e in DECISIONS]

NO_PERMISSION = "You do not have permission to do that."


class Legislature(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.db = DBManager(constants.DB_PATH)
        self.scheduler = Scheduler()
        self.notifier = DiscordNotifier(bot)
        self.proposals = ProposalService(self.db)
        self.voting = VotingEngine(self.db, self.notifier, self.scheduler)
        self.meetings = MeetingController(self.db, self.notifier, self.scheduler)
        self._restored = False

        # The dashboard reaches the engines through the bot instance.
        bot.legislature = self

    proposal_group = app_commands.Group(name="proposal", description="Proposal commands")
    vote_group = app_commands.Group(name="vote", description="Voting commands")
    meeting_group = app_commands.Group(name="meeting", description="Meeting commands")

    @commands.Cog.listener()
    async def on_ready(self):
        # on_ready fires again after every reconnect
        if self._restored:
            return
        self._restored = True
        await self.db.initialize()
        await TimerRestorer(self.db, self.voting, self.meetings).restore_all()

    async def cog_unload(self):
        await self.scheduler.shutdown()

    # ---------- Helpers ----------
    @staticmethod
    def describe_error(error: Exception) -> str:
        if isinstance(error, LegislatureError):
            return error.user_message
        if isinstance(error, ValueError):
            return str(error)
        return "Something went wrong. Please try again."

    @staticmethod
    async def _reply(interaction: discord.Interaction, content: str, **kwargs):
        if interaction.response.is_done():
            await interaction.followup.send(content, ephemeral=True, **kwargs)
        else:
            await interaction.response.send_message(content, ephemeral=True, **kwargs)

    async def _proposal(self, proposal_id: str) -> Proposal:
        proposal = await self.db.get_proposal(proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found.")
        return proposal

    async def _meeting(self, meeting_id: str) -> Meeting:
        meeting = await self.db.get_meeting(meeting_id)
        if meeting is None:
            raise NotFound(f"Meeting {meeting_id} not found.")
        return meeting

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        original = getattr(error, "original", error)
        if not isinstance(original, (LegislatureError, ValueError)):
            log.error("Command %s failed", interaction.command and interaction.command.qualified_name,
                      exc_info=original)
        await self._reply(interaction, self.describe_error(original))

    # ---------- Proposals ----------
    @proposal_group.command(name="submit", description="Register a new proposal in a chamber")
    @app_commands.choices(chamber=CHAMBER_CHOICES)
    async def proposal_submit(self, interaction: discord.Interaction, chamber: app_commands.Choice[str],
                              parent_id: Optional[str] = None):
        await interaction.response.send_modal(ProposalForm(self, Chamber(chamber.value), parent_id))

    @proposal_group.command(name="show", description="Show a proposal and its history")
    async def proposal_show(self, interaction: discord.Interaction, proposal_id: str):
        proposal = await self._proposal(proposal_id)
        items = [item.text for item in await self.db.get_quantitative_items(proposal.id)]
        embed = proposal_embed(proposal, items=items)
        embed.add_field(name="Status", value=proposal.status.value.replace("_", " "), inline=False)
        timeline = "\n".join(
            f"<t:{event.timestamp // 1000}:d> {event.type.title}: {event.description}" for event in proposal.events
        )
        embed.add_field(name="History", value=timeline[:1024] or "-", inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @proposal_group.command(name="withdraw", description="Withdraw a proposal you submitted")
    async def proposal_withdraw(self, interaction: discord.Interaction, proposal_id: str):
        proposal = await self._proposal(proposal_id)
        await self.proposals.withdraw(proposal.id, interaction.user.id, permissions.is_admin(interaction.user))
        await interaction.response.send_message(f"{proposal.number} was withdrawn.", ephemeral=True)

    @proposal_group.command(name="speakers", description="Show who speaks on a proposal and in what order")
    async def proposal_speakers(self, interaction: discord.Interaction, proposal_id: str):
        proposal = await self._proposal(proposal_id)
        queue = await self.proposals.speaker_queue(proposal.id)
        await interaction.response.send_message(embed=speakers_embed(proposal, queue), ephemeral=True)

    @proposal_group.command(name="decide", description="Record a government or presidential decision")
    @app_commands.choices(decision=DECISION_CHOICES)
    async def proposal_decide(self, interaction: discord.Interaction, proposal_id: str,
                              decision: app_commands.Choice[str], note: Optional[str] = None):
        proposal = await self._proposal(proposal_id)
        event_type = EventType(decision.value)
        if not permissions.can_decide(interaction.user, proposal.chamber, event_type):
            return await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        proposal = await self.proposals.record_decision(proposal.id, event_type, note or "")
        await interaction.response.send_message(
            f"{proposal.number}: {event_type.title}. Status is now {proposal.status.value}.", ephemeral=True
        )

    # ---------- Votes ----------
    @vote_group.command(name="start", description="Open voting on a proposal")
    async def vote_start(self, interaction: discord.Interaction, proposal_id: str):
        proposal = await self._proposal(proposal_id)
        if not permissions.can_manage(interaction.user, proposal.chamber):
            return await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        await interaction.response.send_modal(StartVoteForm(self, proposal))

    @vote_group.command(name="end", description="Close voting on a proposal now")
    async def vote_end(self, interaction: discord.Interaction, proposal_id: str):
        proposal = await self._proposal(proposal_id)
        if not permissions.can_manage(interaction.user, proposal.chamber):
            return await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        await interaction.response.defer(ephemeral=True)
        outcome = await self.voting.close_voting(proposal.id)
        await self._reply(interaction, "Voting closed." if outcome else "Voting was already closed.")

    @vote_group.command(name="count", description="Show the ballot count of a vote")
    async def vote_count(self, interaction: discord.Interaction, proposal_id: str, stage: Optional[int] = None):
        proposal = await self._proposal(proposal_id)
        session = await self.db.get_voting_session(proposal.id)
        if session is None:
            return await interaction.response.send_message("There has been no vote on this proposal.", ephemeral=True)
        stage = stage or session.stage
        counts = await self.db.get_vote_counts(proposal.id, stage)
        lines = [f"{choice}: {n}" for choice, n in sorted(counts.items())] or ["No ballots"]
        embed = discord.Embed(title=f"{proposal.number}, round {stage}", description="\n".join(lines),
                              color=discord.Color.blurple())
        if not session.is_secret and permissions.can_manage(interaction.user, proposal.chamber):
            votes = await self.db.get_votes(proposal.id, stage)
            listing = "\n".join(f"<@{v.user_id}>: {v.vote_type}" for v in votes)
            embed.add_field(name="Ballots", value=listing[:1024] or "-", inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # ---------- Meetings ----------
    @meeting_group.command(name="create", description="Plan a chamber meeting")
    @app_commands.choices(chamber=CHAMBER_CHOICES)
    async def meeting_create(self, interaction: discord.Interaction, chamber: app_commands.Choice[str],
                             title: str, date: str, quorum: app_commands.Range[int, 1],
                             total_members: app_commands.Range[int, 1] = constants.DEFAULT_TOTAL_MEMBERS):
        chamber = Chamber(chamber.value)
        if not permissions.can_manage(interaction.user, chamber):
            return await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        channel = self.bot.get_channel(constants.MEETING_CHANNELS.get(chamber.value, 0)) or interaction.channel
        await interaction.response.defer(ephemeral=True)

        meeting = await self.meetings.create_meeting(chamber, title, date, channel.id, quorum, total_members)
        message = await channel.send(embed=meeting_embed(meeting), view=PlannedMeetingView(meeting.id))
        thread = await message.create_thread(name=title[:100], auto_archive_duration=1440)
        await self.db.update_meeting(meeting.id, MeetingUpdate(message_id=message.id, thread_id=thread.id))
        await self._reply(interaction, f"Meeting **{title}** planned in {channel.mention}.")

    @meeting_group.command(name="open", description="Open registration for a meeting")
    async def meeting_open(self, interaction: discord.Interaction, meeting_id: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        await interaction.response.send_modal(OpenRegistrationForm(self, meeting))

    @meeting_group.command(name="finalize", description="Close registration now")
    async def meeting_finalize(self, interaction: discord.Interaction, meeting_id: str):
        await self._finalize_meeting(interaction, meeting_id)

    @meeting_group.command(name="cancel", description="Cancel a meeting")
    async def meeting_cancel(self, interaction: discord.Interaction, meeting_id: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        meeting = await self.meetings.cancel_meeting(meeting.id)
        await interaction.response.send_message(f"**{meeting.title}** was cancelled.", ephemeral=True)

    @meeting_group.command(name="postpone", description="Move a planned meeting to another date")
    async def meeting_postpone(self, interaction: discord.Interaction, meeting_id: str, date: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        meeting = await self.meetings.postpone(meeting.id, date)
        await interaction.response.send_message(f"**{meeting.title}** moved to {meeting.meeting_date}.",
                                                ephemeral=True)

    @meeting_group.command(name="clear", description="Take back the voting roles handed out for a meeting")
    async def meeting_clear(self, interaction: discord.Interaction, meeting_id: str):
        await self._clear_roles(interaction, meeting_id)

    # ---------- Component routing ----------
    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction):
        if interaction.type is not discord.InteractionType.component:
            return
        parsed = parse_custom_id((interaction.data or {}).get("custom_id"))
        if parsed is None:
            return
        action, args = parsed
        handler = getattr(self, f"_on_{action}")
        try:
            await handler(interaction, *args)
        except (LegislatureError, ValueError) as e:
            await self._reply(interaction, self.describe_error(e))
        except discord.HTTPException:
            log.exception("Discord rejected the response to %s", action)
        except Exception as e:
            log.exception("Button %s failed", action)
            await self._reply(interaction, self.describe_error(e))

    async def _on_vote(self, interaction: discord.Interaction, proposal_id: str, stage: str, choice: str):
        proposal = await self._proposal(proposal_id)
        voter_role = constants.VOTER_ROLES_BY_CHAMBER.get(proposal.chamber.value)
        if voter_role and not discord.utils.get(getattr(interaction.user, "roles", []), id=voter_role):
            return await self._reply(interaction, "You need to register for the meeting before voting.")
        await self.voting.cast_vote(proposal.id, interaction.user.id, choice, int(stage))
        await self._reply(interaction, "Your ballot has been recorded.")

    async def _on_vote_end(self, interaction: discord.Interaction, proposal_id: str):
        proposal = await self._proposal(proposal_id)
        if not permissions.can_manage(interaction.user, proposal.chamber):
            return await self._reply(interaction, NO_PERMISSION)
        await interaction.response.defer(ephemeral=True)
        outcome = await self.voting.close_voting(proposal.id)
        await self._reply(interaction, "Voting closed." if outcome else "Voting was already closed.")

    async def _on_decide(self, interaction: discord.Interaction, proposal_id: str, event_value: str):
        proposal = await self._proposal(proposal_id)
        event_type = EventType(event_value)
        if not permissions.can_decide(interaction.user, proposal.chamber, event_type):
            return await self._reply(interaction, NO_PERMISSION)
        proposal = await self.proposals.record_decision(proposal.id, event_type)
        await interaction.response.edit_message(view=DecisionView.for_proposal(proposal))
        await self._reply(interaction, f"{proposal.number}: {event_type.title}.")

    async def _on_speaker_register(self, interaction: discord.Interaction, proposal_id: str):
        proposal = await self._proposal(proposal_id)
        await interaction.response.send_modal(SpeakerForm(self, proposal))

    async def _on_speaker_withdraw(self, interaction: discord.Interaction, proposal_id: str):
        removed = await self.proposals.withdraw_speaker(proposal_id, interaction.user.id)
        await self._reply(interaction, "You left the speaker list." if removed else "You are not on the speaker list.")

    async def _on_meeting_open(self, interaction: discord.Interaction, meeting_id: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await self._reply(interaction, NO_PERMISSION)
        await interaction.response.send_modal(OpenRegistrationForm(self, meeting))

    async def _on_meeting_register(self, interaction: discord.Interaction, meeting_id: str):
        created = await self.meetings.register(meeting_id, interaction.user.id)
        await self._reply(interaction, "You are registered." if created else "You are already registered.")

    async def _on_meeting_finalize(self, interaction: discord.Interaction, meeting_id: str):
        await self._finalize_meeting(interaction, meeting_id)

    async def _on_meeting_late(self, interaction: discord.Interaction, meeting_id: str):
        meeting = await self._meeting(meeting_id)
        if meeting.open:
            return await self._reply(interaction, "Registration is still open. Use the Register button.")
        channel = self.bot.get_channel(meeting.thread_id or meeting.channel_id)
        if channel is None:
            return await self._reply(interaction, "The meeting channel is not available.")
        embed = discord.Embed(
            title="Late registration request",
            description=f"<@{interaction.user.id}> asks to join **{meeting.title}** after registration closed.",
            color=discord.Color.orange(),
        )
        await channel.send(embed=embed, view=LateRegistrationView(meeting.id, interaction.user.id))
        await self._reply(interaction, "Your request was sent to the chairman.")

    async def _on_late_approve(self, interaction: discord.Interaction, meeting_id: str, user_id: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await self._reply(interaction, NO_PERMISSION)
        result = await self.meetings.late_register(meeting.id, int(user_id))
        await interaction.response.edit_message(view=None)
        await self._reply(interaction, f"<@{user_id}> registered late: {result.value.replace('_', ' ')}.")

    async def _on_late_reject(self, interaction: discord.Interaction, meeting_id: str, user_id: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await self._reply(interaction, NO_PERMISSION)
        await interaction.response.edit_message(content=f"Late registration of <@{user_id}> refused.", view=None)
        log.info("Late registration of %s for %s refused by %s", user_id, meeting.id, interaction.user.id)

    async def _on_meeting_clear(self, interaction: discord.Interaction, meeting_id: str):
        await self._clear_roles(interaction, meeting_id)

    # ---------- Shared actions ----------
    async def _finalize_meeting(self, interaction: discord.Interaction, meeting_id: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await self._reply(interaction, NO_PERMISSION)
        await interaction.response.defer(ephemeral=True)
        report = await self.meetings.finalize(meeting.id)
        await self._reply(interaction, report.summary() if report else "Registration was already closed.")

    async def _clear_roles(self, interaction: discord.Interaction, meeting_id: str):
        meeting = await self._meeting(meeting_id)
        if not permissions.can_manage(interaction.user, meeting.chamber):
            return await self._reply(interaction, NO_PERMISSION)
        await interaction.response.defer(ephemeral=True)
        revoked = await self.meetings.clear_roles(meeting.id)
        if interaction.message is not None:
            await interaction.message.edit(view=None)
        await self._reply(interaction, f"Voting roles taken back from {revoked} member(s).")


# Cog setup
async def setup(bot):
    await bot.add_cog(Legislature(bot))
