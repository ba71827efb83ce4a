# cogs/Legislature/restore.py
import logging
from typing import Tuple

from .db_manager import DBManager
from .meetings import MeetingController
from .voting import VotingEngine

log = logging.getLogger("legislature.restore")


class TimerRestorer:
    """Re-arms the timers of everything still open in storage after a restart.

    Each timer ticks immediately when armed, so anything that expired while
    the bot was down is finalized on that first tick.
    """

    def __init__(self, db: DBManager, voting: VotingEngine, meetings: MeetingController):
        self.db = db
        self.voting = voting
        self.meetings = meetings

    async def restore_all(self) -> Tuple[int, int]:
        sessions = await self.db.get_open_voting_sessions()
        for session in sessions:
            self.voting.arm(session.proposal_id)
            log.info("Restored vote timer for %s (stage %d)", session.proposal_id, session.stage)

        meetings = await self.db.get_open_meetings()
        for meeting in meetings:
            self.meetings.arm(meeting.id)
            log.info("Restored registration timer for meeting %s", meeting.id)

        log.info("Restored %d vote timer(s) and %d meeting timer(s)", len(sessions), len(meetings))
        return len(sessions), len(meetings)
