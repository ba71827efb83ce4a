# cogs/Legislature/notifier.py
import logging
from typing import TYPE_CHECKING, Awaitable, List, Optional, Union

import discord

from . import constants
from .durations import discord_timestamp, format_time_left
from .models import Chamber, GrantResult, Meeting, Proposal, QuantitativeItem, VotingSession
from .tally import QuantitativeOutcome, RegularOutcome
from .ui_components import DecisionView, FinalizedMeetingView, build_ballot_view

if TYPE_CHECKING:
    from .meetings import FinalizeReport

log = logging.getLogger("legislature.notifier")

COLOR_INFO = discord.Color.blurple()
COLOR_SUCCESS = discord.Color.green()
COLOR_WARNING = discord.Color.orange()
COLOR_DANGER = discord.Color.red()


async def notify_safely(awaitable: Awaitable):
    """Await a presentation call; a failure is logged, never retried, never raised."""
    try:
        return await awaitable
    except Exception:
        log.exception("Notification failed")
        return None


class Notifier:
    """What the voting and meeting engines need from the chat platform.

    The base class does nothing, so the engines run headless.
    """

    async def render_ballot(self, proposal: Proposal, session: VotingSession,
                            items: List[QuantitativeItem]) -> Optional[int]:
        return None

    async def render_vote_status(self, proposal: Proposal, session: VotingSession, time_left_ms: int, voted: int):
        pass

    async def render_final_result(self, proposal: Proposal, session: VotingSession,
                                  outcome: Union[RegularOutcome, QuantitativeOutcome]):
        pass

    async def render_meeting_status(self, meeting: Meeting, time_left_ms: int, registered: int):
        pass

    async def render_meeting_final(self, meeting: Meeting, report: "FinalizeReport"):
        pass

    async def grant_voter_role(self, chamber: Chamber, user_id: int, reason: str = "") -> GrantResult:
        return GrantResult.FAILED

    async def revoke_voter_role(self, chamber: Chamber, user_id: int) -> bool:
        return False


class DiscordNotifier(Notifier):
    def __init__(self, bot: discord.Client):
        self.bot = bot

    # ---------- Lookups ----------
    async def _channel(self, channel_id: Optional[int]):
        if not channel_id:
            return None
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except discord.NotFound:
                return None
        return channel

    async def _message(self, channel_id: Optional[int], message_id: Optional[int]) -> Optional[discord.Message]:
        channel = await self._channel(channel_id)
        if channel is None or not message_id:
            return None
        try:
            return await channel.fetch_message(message_id)
        except discord.NotFound:
            return None

    def _guild(self) -> Optional[discord.Guild]:
        # Single-server bot: the first guild is the parliament.
        return self.bot.guilds[0] if self.bot.guilds else None

    async def _member(self, user_id: int) -> Optional[discord.Member]:
        guild = self._guild()
        if guild is None:
            return None
        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except discord.NotFound:
                return None
        return member

    # ---------- Votes ----------
    async def render_ballot(self, proposal, session, items):
        thread = await self._channel(proposal.thread_id)
        if thread is None:
            log.warning("No thread for %s; ballot not posted", proposal.number)
            return None

        title = f"Vote: {proposal.number}"
        if session.stage > 1:
            title += f" (round {session.stage})"
        embed = discord.Embed(title=title, description=proposal.name, color=COLOR_INFO)
        embed.add_field(name="Closes", value=discord_timestamp(session.expires_at, "R"), inline=True)
        embed.add_field(name="Formula", value=session.formula.description, inline=True)
        embed.add_field(name="Ballot", value="Secret" if session.is_secret else "Open", inline=True)
        for item in items:
            embed.add_field(name=f"Item {item.item_index}", value=item.text[:1024], inline=False)
        embed.set_footer(text=constants.FOOTER)

        message = await thread.send(embed=embed, view=build_ballot_view(proposal, session, items))
        return message.id

    async def render_vote_status(self, proposal, session, time_left_ms, voted):
        message = await self._message(proposal.thread_id, session.ballot_message_id)
        if message is None or not message.embeds:
            return
        embed = message.embeds[0]
        embed.clear_fields()
        embed.add_field(name="Time left", value=format_time_left(time_left_ms), inline=True)
        embed.add_field(name="Ballots cast", value=str(voted), inline=True)
        embed.add_field(name="Formula", value=session.formula.description, inline=True)
        await message.edit(embed=embed)

    async def render_final_result(self, proposal, session, outcome):
        embed = discord.Embed(title=f"Result: {proposal.number}", description=proposal.name)
        view = None
        if isinstance(outcome, RegularOutcome):
            embed.color = COLOR_SUCCESS if outcome.result.is_passed and outcome.quorum_met else COLOR_DANGER
            embed.add_field(name="For", value=str(outcome.for_count), inline=True)
            embed.add_field(name="Against", value=str(outcome.against_count), inline=True)
            embed.add_field(name="Abstained", value=str(outcome.abstain_count), inline=True)
            embed.add_field(name="Required", value=f"{outcome.result.required_for}/{outcome.result.required_total}",
                            inline=True)
            embed.add_field(name="Quorum", value=f"{outcome.total_voted}/{outcome.quorum}", inline=True)
            embed.add_field(name="Turnout", value=f"{outcome.turnout_percent}%", inline=True)
            embed.add_field(name="Status", value=proposal.status.value.replace("_", " "), inline=False)
            view = DecisionView.for_proposal(proposal)
        else:
            embed.color = COLOR_SUCCESS if outcome.winner is not None else COLOR_WARNING
            lines = [f"Item {i}: {n}" for i, n in sorted(outcome.item_votes.items())]
            lines.append(f"Abstained: {outcome.abstain_count}")
            embed.add_field(name=f"Round {outcome.stage}", value="\n".join(lines)[:1024], inline=False)
            if outcome.winner is not None:
                embed.add_field(name="Adopted", value=f"Item {outcome.winner}", inline=False)
            elif outcome.needs_runoff:
                items = ", ".join(str(i) for i in outcome.runoff_candidates)
                embed.add_field(name="Runoff", value=f"Next round between items {items}", inline=False)
            elif not outcome.quorum_met:
                embed.add_field(name="Quorum", value=f"{outcome.total_voted}/{outcome.quorum}", inline=False)
        embed.set_footer(text=constants.FOOTER)

        message = await self._message(proposal.thread_id, session.ballot_message_id)
        if message is not None:
            await message.edit(embed=embed, view=view)
            return
        thread = await self._channel(proposal.thread_id)
        if thread is not None:
            await thread.send(embed=embed, view=view)

    # ---------- Meetings ----------
    async def render_meeting_status(self, meeting, time_left_ms, registered):
        message = await self._message(meeting.channel_id, meeting.message_id)
        if message is None:
            return
        met = registered >= meeting.quorum
        embed = discord.Embed(title="Registration open", description=f"**{meeting.title}**",
                              color=COLOR_SUCCESS if met else COLOR_WARNING)
        embed.add_field(name="Time left", value=format_time_left(time_left_ms), inline=True)
        embed.add_field(name="Registered", value=f"{registered}/{meeting.quorum}", inline=True)
        embed.add_field(name="Quorum", value="Reached" if met else "Not reached", inline=True)
        embed.set_footer(text=constants.FOOTER)
        await message.edit(embed=embed)

    async def render_meeting_final(self, meeting, report):
        embed = discord.Embed(title="Registration closed", description=f"**{meeting.title}**",
                              color=COLOR_SUCCESS if report.quorum_met else COLOR_DANGER)
        embed.add_field(name="Registered", value=str(report.registered_count), inline=True)
        embed.add_field(name="Quorum", value=str(report.quorum), inline=True)
        embed.add_field(name="Members", value=str(meeting.total_members), inline=True)
        listing = "\n".join(f"<@{user_id}>" for user_id in report.registered) or "Nobody registered"
        embed.add_field(name="Attendance", value=listing[:1024], inline=False)
        embed.set_footer(text=constants.FOOTER)

        message = await self._message(meeting.channel_id, meeting.message_id)
        if message is not None:
            await message.edit(embed=embed, view=FinalizedMeetingView(meeting.id))
        channel = await self._channel(meeting.thread_id or meeting.channel_id)
        if channel is not None:
            await channel.send(report.summary())

    async def grant_voter_role(self, chamber, user_id, reason=""):
        role_id = constants.VOTER_ROLES_BY_CHAMBER.get(Chamber(chamber).value)
        if not role_id:
            log.error("No voter role configured for %s", chamber)
            return GrantResult.FAILED
        member = await self._member(user_id)
        if member is None:
            return GrantResult.FAILED
        if any(role.id == role_id for role in member.roles):
            return GrantResult.ALREADY_HELD
        await member.add_roles(discord.Object(id=role_id), reason=reason or None)
        return GrantResult.GRANTED

    async def revoke_voter_role(self, chamber, user_id):
        role_id = constants.VOTER_ROLES_BY_CHAMBER.get(Chamber(chamber).value)
        member = await self._member(user_id) if role_id else None
        if member is None or not any(role.id == role_id for role in member.roles):
            return False
        await member.remove_roles(discord.Object(id=role_id), reason="Meeting roles cleared")
        return True
