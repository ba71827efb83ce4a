# cogs/Legislature/meetings.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from . import constants
from .db_manager import DBManager
from .durations import now_ms
from .errors import AlreadyOpen, InvalidTransition, NotFound, NotOpen, PartialBatchFailure, StaleExpiry, StorageFailure
from .models import Chamber, GrantResult, Meeting, MeetingStatus, MeetingUpdate
from .notifier import Notifier, notify_safely
from .proposals import new_token
from .scheduler import KeyedLock, Scheduler

log = logging.getLogger("legislature.meetings")


@dataclass
class FinalizeReport:
    meeting_id: str
    quorum: int
    registered: List[int]
    granted: int = 0
    already_held: int = 0
    failed: List[int] = field(default_factory=list)

    @property
    def registered_count(self) -> int:
        return len(self.registered)

    @property
    def quorum_met(self) -> bool:
        return self.registered_count >= self.quorum

    def summary(self) -> str:
        if not self.quorum_met:
            return (f"Quorum not reached: {self.registered_count} of {self.quorum} required members registered. "
                    "No voting roles were given out.")
        text = f"Quorum reached with {self.registered_count} registered. Voting roles given: {self.granted}"
        if self.already_held:
            text += f", already held: {self.already_held}"
        if self.failed:
            text += f", failed: {len(self.failed)}"
        return text + "."

    def raise_for_failures(self):
        if self.failed:
            raise PartialBatchFailure(self.failed, self.registered_count)


class MeetingController:
    """Timed registration for a chamber meeting and the voter roles that follow it."""

    def __init__(self, db: DBManager, notifier: Notifier, scheduler: Scheduler, clock=now_ms,
                 tick_seconds: float = constants.MEETING_TICK_SECONDS):
        self.db = db
        self.notifier = notifier
        self.scheduler = scheduler
        self.clock = clock
        self.tick_seconds = tick_seconds
        self._locks = KeyedLock()

    @staticmethod
    def timer_key(meeting_id: str) -> str:
        return f"meeting:{meeting_id}"

    def arm(self, meeting_id: str):
        self.scheduler.arm(self.timer_key(meeting_id), lambda: self.tick(meeting_id), self.tick_seconds)

    async def _get(self, meeting_id: str) -> Meeting:
        meeting = await self.db.get_meeting(meeting_id)
        if meeting is None:
            raise NotFound(f"Meeting {meeting_id} not found.")
        return meeting

    # ---------- Operations ----------
    async def create_meeting(self, chamber: Chamber, title: str, meeting_date: str, channel_id: int,
                             quorum: int = 1, total_members: int = constants.DEFAULT_TOTAL_MEMBERS) -> Meeting:
        if quorum < 1 or total_members < 1:
            raise ValueError("Quorum and membership must be positive.")
        meeting = Meeting(
            id=new_token(),
            chamber=Chamber(chamber),
            title=title,
            meeting_date=meeting_date,
            channel_id=channel_id,
            created_at=self.clock(),
            quorum=quorum,
            total_members=total_members,
        )
        await self.db.create_meeting(meeting)
        log.info("Meeting %s (%s) planned for %s", meeting.id, title, meeting.chamber.value)
        return meeting

    async def open_registration(self, meeting_id: str, duration_ms: int, quorum: Optional[int] = None,
                                total_members: Optional[int] = None) -> Meeting:
        if duration_ms <= 0:
            raise ValueError("Registration duration must be positive.")
        async with self._locks.hold(meeting_id):
            meeting = await self._get(meeting_id)
            if meeting.open:
                raise AlreadyOpen(f"Registration for {meeting.title} is already open.")
            if meeting.status.is_terminal:
                raise InvalidTransition(f"{meeting.title} is {meeting.status.value} and cannot be reopened.")
            quorum = meeting.quorum if quorum is None else quorum
            total_members = meeting.total_members if total_members is None else total_members
            if quorum < 1 or total_members < 1:
                raise ValueError("Quorum and membership must be positive.")

            now = self.clock()
            await self.db.update_meeting(meeting_id, MeetingUpdate(
                open=True,
                status=MeetingStatus.REGISTRATION_OPEN,
                duration_ms=duration_ms,
                expires_at=now + duration_ms,
                quorum=quorum,
                total_members=total_members,
            ))
            meeting = await self._get(meeting_id)
            log.info("Registration for %s opened until %d (quorum %d)", meeting.id, meeting.expires_at, quorum)
            self.arm(meeting_id)
            return meeting

    async def register(self, meeting_id: str, user_id: int) -> bool:
        """Register a member. Returns False if they were already registered."""
        async with self._locks.hold(meeting_id):
            meeting = await self._get(meeting_id)
            now = self.clock()
            if not meeting.open or now >= meeting.expires_at:
                raise NotOpen("Registration is closed.")
            created = await self.db.register_for_meeting(meeting_id, user_id, now)
        if created:
            log.debug("User %s registered for %s", user_id, meeting_id)
        return created

    async def tick(self, meeting_id: str) -> bool:
        async with self._locks.hold(meeting_id):
            try:
                meeting = await self.db.get_meeting(meeting_id)
                if meeting is None:
                    log.warning("Meeting %s no longer exists; stopping its timer", meeting_id)
                    return False
                if not meeting.open:
                    return False

                now = self.clock()
                if now >= meeting.expires_at:
                    await self._finalize(meeting)
                    return False
                registered = await self.db.get_registration_count(meeting_id)
            except StorageFailure as e:
                log.warning("Meeting tick for %s failed, retrying next period: %s", meeting_id, e)
                return True

        await notify_safely(self.notifier.render_meeting_status(meeting, meeting.time_left(now), registered))
        return True

    async def finalize(self, meeting_id: str) -> Optional[FinalizeReport]:
        """End registration now. A meeting that is already finalized is left alone and None is returned."""
        async with self._locks.hold(meeting_id):
            return await self._finalize(await self._get(meeting_id))

    async def late_register(self, meeting_id: str, user_id: int) -> GrantResult:
        """Add a straggler after registration closed and give them the voter role."""
        async with self._locks.hold(meeting_id):
            meeting = await self._get(meeting_id)
            if meeting.open:
                raise InvalidTransition("Registration is still open.")
            if meeting.status is not MeetingStatus.COMPLETED:
                raise InvalidTransition(f"{meeting.title} is {meeting.status.value}.")
            await self.db.register_for_meeting(meeting_id, user_id, self.clock())
        result = await self._grant(meeting, user_id, f"Late registration for {meeting.title}")
        log.info("Late registration of %s for %s: %s", user_id, meeting_id, result.value)
        return result

    async def clear_roles(self, meeting_id: str) -> int:
        """Take the voter role back from everyone registered. Returns how many were revoked."""
        meeting = await self._get(meeting_id)
        revoked = 0
        for registration in await self.db.get_registrations(meeting_id):
            try:
                if await self.notifier.revoke_voter_role(meeting.chamber, registration.user_id):
                    revoked += 1
            except Exception:
                log.exception("Could not revoke voter role from %s", registration.user_id)
        log.info("Cleared voter roles for %s: %d revoked", meeting_id, revoked)
        return revoked

    async def cancel_meeting(self, meeting_id: str) -> Meeting:
        async with self._locks.hold(meeting_id):
            meeting = await self._get(meeting_id)
            if meeting.status.is_terminal:
                raise InvalidTransition(f"{meeting.title} is already {meeting.status.value}.")
            self.scheduler.cancel(self.timer_key(meeting_id))
            await self.db.update_meeting(meeting_id, MeetingUpdate(open=False, status=MeetingStatus.CANCELLED))
            log.info("Meeting %s cancelled", meeting_id)
            return await self._get(meeting_id)

    async def postpone(self, meeting_id: str, meeting_date: str) -> Meeting:
        async with self._locks.hold(meeting_id):
            meeting = await self._get(meeting_id)
            if meeting.open or meeting.status.is_terminal:
                raise InvalidTransition(f"{meeting.title} can only be postponed before registration opens.")
            await self.db.update_meeting(meeting_id, MeetingUpdate(
                meeting_date=meeting_date, status=MeetingStatus.POSTPONED
            ))
            return await self._get(meeting_id)

    # ---------- Internals ----------
    async def _finalize(self, meeting: Meeting) -> Optional[FinalizeReport]:
        """Close registration and hand out roles. Caller holds the meeting lock, so the roll is final."""
        registrations = await self.db.get_registrations(meeting.id)
        closed = await self.db.close_meeting(meeting.id, MeetingStatus.COMPLETED)
        self.scheduler.cancel(self.timer_key(meeting.id))
        if not closed:
            log.debug("%s", StaleExpiry(f"meeting {meeting.id} already finalized"))
            return None
        meeting.open = False
        meeting.status = MeetingStatus.COMPLETED

        report = FinalizeReport(meeting.id, meeting.quorum, [r.user_id for r in registrations])
        if report.quorum_met:
            reason = f"Registered for meeting {meeting.title}"
            for user_id in report.registered:
                result = await self._grant(meeting, user_id, reason)
                if result is GrantResult.GRANTED:
                    report.granted += 1
                elif result is GrantResult.ALREADY_HELD:
                    report.already_held += 1
                else:
                    report.failed.append(user_id)
            if report.failed:
                log.warning("Meeting %s: %s", meeting.id, PartialBatchFailure(report.failed, report.registered_count))
        else:
            log.info("Meeting %s closed under quorum (%d/%d)", meeting.id, report.registered_count, report.quorum)

        log.info("Meeting %s finalized: %s", meeting.id, report.summary())
        await notify_safely(self.notifier.render_meeting_final(meeting, report))
        return report

    async def _grant(self, meeting: Meeting, user_id: int, reason: str) -> GrantResult:
        try:
            return await self.notifier.grant_voter_role(meeting.chamber, user_id, reason)
        except Exception:
            log.exception("Could not grant voter role to %s", user_id)
            return GrantResult.FAILED
