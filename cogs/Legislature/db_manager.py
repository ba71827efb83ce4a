# cogs/Legislature/db_manager.py
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import aiosqlite

from .errors import DuplicateVote, StorageFailure
from .models import (
    Chamber,
    Meeting,
    MeetingRegistration,
    MeetingStatus,
    MeetingUpdate,
    MEETING_UPDATE_COLUMNS,
    Proposal,
    ProposalEvent,
    ProposalStatus,
    QuantitativeItem,
    Speaker,
    Vote,
    VotingSession,
)

log = logging.getLogger("legislature.db")


class DBManager:
    def __init__(self, db_path: str):
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self):
        """Open a connection with foreign keys on; database errors surface as StorageFailure."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                yield db
        except aiosqlite.Error as e:
            log.error("Database error on %s: %s", self.db_path, e)
            raise StorageFailure(str(e)) from e

    async def initialize(self):
        """Create tables if they do not exist."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with self._connect() as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS chamber_counters (
                    chamber TEXT PRIMARY KEY,
                    value INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS proposals (
                    id TEXT PRIMARY KEY,
                    number TEXT NOT NULL, -- repeats across Duma chambers
                    name TEXT NOT NULL,
                    party TEXT,
                    link TEXT,
                    chamber TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'under_review',
                    author_id INTEGER NOT NULL,
                    thread_id INTEGER,
                    is_quantitative INTEGER NOT NULL DEFAULT 0,
                    parent_proposal_id TEXT REFERENCES proposals(id) ON DELETE SET NULL,
                    created_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS proposal_events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    chamber TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    description TEXT NOT NULL,
                    result TEXT
                );

                CREATE TABLE IF NOT EXISTS quantitative_items (
                    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
                    item_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    PRIMARY KEY (proposal_id, item_index)
                );

                CREATE TABLE IF NOT EXISTS votings (
                    proposal_id TEXT PRIMARY KEY REFERENCES proposals(id) ON DELETE CASCADE,
                    open INTEGER NOT NULL DEFAULT 0,
                    started_at INTEGER NOT NULL,
                    ended_at INTEGER,
                    duration_ms INTEGER NOT NULL,
                    expires_at INTEGER NOT NULL,
                    message_id INTEGER,
                    is_secret INTEGER NOT NULL DEFAULT 0,
                    formula TEXT NOT NULL DEFAULT '0',
                    stage INTEGER NOT NULL DEFAULT 1,
                    runoff_message_id INTEGER,
                    candidates TEXT NOT NULL DEFAULT '[]'
                );

                CREATE TABLE IF NOT EXISTS votes (
                    vote_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL,
                    vote_type TEXT NOT NULL, -- for/against/abstain or item_<n>
                    stage INTEGER NOT NULL DEFAULT 1,
                    created_at INTEGER NOT NULL,
                    UNIQUE(proposal_id, user_id, stage)
                );

                CREATE TABLE IF NOT EXISTS meetings (
                    id TEXT PRIMARY KEY,
                    chamber TEXT NOT NULL,
                    title TEXT NOT NULL,
                    meeting_date TEXT NOT NULL,
                    channel_id INTEGER NOT NULL,
                    message_id INTEGER,
                    thread_id INTEGER,
                    created_at INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL DEFAULT 0,
                    expires_at INTEGER NOT NULL DEFAULT 0,
                    open INTEGER NOT NULL DEFAULT 0,
                    quorum INTEGER NOT NULL DEFAULT 1,
                    total_members INTEGER NOT NULL DEFAULT 53,
                    status TEXT NOT NULL DEFAULT 'planned' -- planned, registration_open, voting, completed, cancelled, postponed
                );

                CREATE TABLE IF NOT EXISTS meeting_registrations (
                    meeting_id TEXT NOT NULL REFERENCES meetings(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL,
                    registered_at INTEGER NOT NULL,
                    PRIMARY KEY (meeting_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS speakers (
                    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
                    user_id INTEGER NOT NULL,
                    role TEXT NOT NULL, -- report, co_report, debate
                    display_name TEXT NOT NULL,
                    registered_at INTEGER NOT NULL,
                    PRIMARY KEY (proposal_id, user_id)
                );
                """
            )
            await db.commit()

    # ---------- Chamber counters ----------
    async def increment_chamber_counter(self, chamber: Chamber) -> int:
        """Bump and return the chamber's counter in a single statement."""
        async with self._connect() as db:
            cursor = await db.execute(
                "INSERT INTO chamber_counters (chamber, value) VALUES (?, 1) "
                "ON CONFLICT(chamber) DO UPDATE SET value = value + 1 RETURNING value",
                (Chamber(chamber).value,)
            )
            row = await cursor.fetchone()
            await db.commit()
            return row["value"]

    # ---------- Proposal CRUD ----------
    async def create_proposal(self, proposal: Proposal, items: Optional[List[str]] = None):
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO proposals (id, number, name, party, link, chamber, status, author_id, thread_id, "
                "is_quantitative, parent_proposal_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (proposal.id, proposal.number, proposal.name, proposal.party, proposal.link,
                 proposal.chamber.value, proposal.status.value, proposal.author_id, proposal.thread_id,
                 int(proposal.is_quantitative), proposal.parent_proposal_id, proposal.created_at)
            )
            for index, text in enumerate(items or [], start=1):
                await db.execute(
                    "INSERT INTO quantitative_items (proposal_id, item_index, text) VALUES (?, ?, ?)",
                    (proposal.id, index, text)
                )
            await db.commit()

    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,))
            row = await cursor.fetchone()
            if not row:
                return None
            cursor = await db.execute(
                "SELECT * FROM proposal_events WHERE proposal_id = ? ORDER BY event_id", (proposal_id,)
            )
            events = [ProposalEvent.from_row(r) for r in await cursor.fetchall()]
            return Proposal.from_row(row, events)

    async def get_child_proposals(self, parent_proposal_id: str) -> List[Proposal]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM proposals WHERE parent_proposal_id = ? ORDER BY created_at", (parent_proposal_id,)
            )
            return [Proposal.from_row(r) for r in await cursor.fetchall()]

    async def set_proposal_status(self, proposal_id: str, status: ProposalStatus):
        async with self._connect() as db:
            await db.execute("UPDATE proposals SET status = ? WHERE id = ?", (status.value, proposal_id))
            await db.commit()

    async def set_proposal_thread(self, proposal_id: str, thread_id: int):
        async with self._connect() as db:
            await db.execute("UPDATE proposals SET thread_id = ? WHERE id = ?", (thread_id, proposal_id))
            await db.commit()

    @staticmethod
    async def _insert_event(db, proposal_id: str, event: ProposalEvent):
        await db.execute(
            "INSERT INTO proposal_events (proposal_id, type, chamber, timestamp, description, result) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (proposal_id, event.type.value, event.chamber.value, event.timestamp, event.description, event.result)
        )

    async def append_event(self, proposal_id: str, event: ProposalEvent):
        async with self._connect() as db:
            await self._insert_event(db, proposal_id, event)
            await db.commit()

    async def get_quantitative_items(self, proposal_id: str) -> List[QuantitativeItem]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM quantitative_items WHERE proposal_id = ? ORDER BY item_index", (proposal_id,)
            )
            rows = await cursor.fetchall()
            return [QuantitativeItem(r["proposal_id"], r["item_index"], r["text"]) for r in rows]

    async def delete_proposal(self, proposal_id: str) -> bool:
        """Remove a proposal; items, events, votes and its voting session go with it."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM proposals WHERE id = ?", (proposal_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ---------- Voting sessions ----------
    async def get_voting_session(self, proposal_id: str) -> Optional[VotingSession]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM votings WHERE proposal_id = ?", (proposal_id,))
            row = await cursor.fetchone()
            return VotingSession.from_row(row) if row else None

    @staticmethod
    async def _upsert_session(db, session: VotingSession):
        await db.execute(
            """
            INSERT INTO votings (proposal_id, open, started_at, ended_at, duration_ms, expires_at, message_id,
                                 is_secret, formula, stage, runoff_message_id, candidates)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(proposal_id) DO UPDATE SET
                open = excluded.open,
                started_at = excluded.started_at,
                ended_at = excluded.ended_at,
                duration_ms = excluded.duration_ms,
                expires_at = excluded.expires_at,
                message_id = excluded.message_id,
                is_secret = excluded.is_secret,
                formula = excluded.formula,
                stage = excluded.stage,
                runoff_message_id = excluded.runoff_message_id,
                candidates = excluded.candidates
            """,
            (session.proposal_id, int(session.open), session.started_at, session.ended_at, session.duration_ms,
             session.expires_at, session.message_id, int(session.is_secret), session.formula.value,
             session.stage, session.runoff_message_id, json.dumps(session.candidates))
        )

    async def upsert_voting_session(self, session: VotingSession):
        async with self._connect() as db:
            await self._upsert_session(db, session)
            await db.commit()

    async def close_voting_session(self, proposal_id: str, ended_at: int) -> bool:
        """Close an open session. Returns False when it was already closed."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE votings SET open = 0, ended_at = ? WHERE proposal_id = ? AND open = 1",
                (ended_at, proposal_id)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def close_with_result(self, proposal_id: str, ended_at: int, status: ProposalStatus,
                                event: ProposalEvent) -> bool:
        """Close the open session, set the proposal status and log the result in one transaction.

        Returns False, writing nothing, when the session was already closed.
        """
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE votings SET open = 0, ended_at = ? WHERE proposal_id = ? AND open = 1",
                (ended_at, proposal_id)
            )
            if cursor.rowcount == 0:
                return False
            await db.execute("UPDATE proposals SET status = ? WHERE id = ?", (status.value, proposal_id))
            await self._insert_event(db, proposal_id, event)
            await db.commit()
            return True

    async def close_with_runoff(self, proposal_id: str, ended_at: int, event: ProposalEvent,
                                runoff: VotingSession) -> bool:
        """Close the open stage and open the runoff stage in one transaction. False if already closed."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE votings SET open = 0, ended_at = ? WHERE proposal_id = ? AND open = 1 AND stage < ?",
                (ended_at, proposal_id, runoff.stage)
            )
            if cursor.rowcount == 0:
                return False
            await self._insert_event(db, proposal_id, event)
            await self._upsert_session(db, runoff)
            await db.commit()
            return True

    async def set_ballot_message(self, proposal_id: str, message_id: int, runoff: bool = False):
        column = "runoff_message_id" if runoff else "message_id"
        async with self._connect() as db:
            await db.execute(f"UPDATE votings SET {column} = ? WHERE proposal_id = ?", (message_id, proposal_id))
            await db.commit()

    async def get_open_voting_sessions(self) -> List[VotingSession]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM votings WHERE open = 1")
            rows = await cursor.fetchall()
            return [VotingSession.from_row(r) for r in rows]

    # ---------- Votes ----------
    async def insert_vote(self, vote: Vote):
        """Record a ballot. Raises DuplicateVote if the user already voted in this stage."""
        async with self._connect() as db:
            try:
                await db.execute(
                    "INSERT INTO votes (proposal_id, user_id, vote_type, stage, created_at) VALUES (?, ?, ?, ?, ?)",
                    (vote.proposal_id, vote.user_id, vote.vote_type, vote.stage, vote.created_at)
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                if "UNIQUE" not in str(e):
                    raise
                raise DuplicateVote(vote.proposal_id, vote.user_id, vote.stage) from e

    async def get_user_vote(self, proposal_id: str, user_id: int, stage: int) -> Optional[str]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT vote_type FROM votes WHERE proposal_id = ? AND user_id = ? AND stage = ?",
                (proposal_id, user_id, stage)
            )
            row = await cursor.fetchone()
            return row["vote_type"] if row else None

    async def get_vote_counts(self, proposal_id: str, stage: int) -> Dict[str, int]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT vote_type, COUNT(*) AS count FROM votes WHERE proposal_id = ? AND stage = ? GROUP BY vote_type",
                (proposal_id, stage)
            )
            rows = await cursor.fetchall()
            return {r["vote_type"]: r["count"] for r in rows}

    async def get_votes(self, proposal_id: str, stage: int) -> List[Vote]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM votes WHERE proposal_id = ? AND stage = ? ORDER BY created_at, vote_id",
                (proposal_id, stage)
            )
            rows = await cursor.fetchall()
            return [Vote.from_row(r) for r in rows]

    # ---------- Meetings ----------
    async def create_meeting(self, meeting: Meeting):
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO meetings (id, chamber, title, meeting_date, channel_id, message_id, thread_id, created_at, "
                "duration_ms, expires_at, open, quorum, total_members, status) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (meeting.id, meeting.chamber.value, meeting.title, meeting.meeting_date, meeting.channel_id,
                 meeting.message_id, meeting.thread_id, meeting.created_at, meeting.duration_ms, meeting.expires_at,
                 int(meeting.open), meeting.quorum, meeting.total_members, meeting.status.value)
            )
            await db.commit()

    async def get_meeting(self, meeting_id: str) -> Optional[Meeting]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM meetings WHERE id = ?", (meeting_id,))
            row = await cursor.fetchone()
            return Meeting.from_row(row) if row else None

    async def update_meeting(self, meeting_id: str, update: MeetingUpdate):
        changes = update.changes()
        if not changes:
            raise ValueError("No meeting fields to update.")
        unknown = set(changes) - MEETING_UPDATE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update meeting fields: {', '.join(sorted(unknown))}")

        assignments = ", ".join(f"{column} = ?" for column in changes)
        async with self._connect() as db:
            await db.execute(
                f"UPDATE meetings SET {assignments} WHERE id = ?",
                (*changes.values(), meeting_id)
            )
            await db.commit()

    async def close_meeting(self, meeting_id: str, status: MeetingStatus) -> bool:
        """Close an open meeting. Returns False when it was already closed."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE meetings SET open = 0, status = ? WHERE id = ? AND open = 1",
                (MeetingStatus(status).value, meeting_id)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_open_meetings(self) -> List[Meeting]:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM meetings WHERE open = 1")
            rows = await cursor.fetchall()
            return [Meeting.from_row(r) for r in rows]

    async def get_last_meeting_by_chamber(self, chamber: Chamber) -> Optional[Meeting]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM meetings WHERE chamber = ? ORDER BY created_at DESC LIMIT 1",
                (Chamber(chamber).value,)
            )
            row = await cursor.fetchone()
            return Meeting.from_row(row) if row else None

    # ---------- Meeting registrations ----------
    async def register_for_meeting(self, meeting_id: str, user_id: int, registered_at: int) -> bool:
        """Returns True if a new registration was stored, False if the user was already registered."""
        async with self._connect() as db:
            cursor = await db.execute(
                "INSERT INTO meeting_registrations (meeting_id, user_id, registered_at) VALUES (?, ?, ?) "
                "ON CONFLICT(meeting_id, user_id) DO NOTHING",
                (meeting_id, user_id, registered_at)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_registration_count(self, meeting_id: str) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT COUNT(*) AS count FROM meeting_registrations WHERE meeting_id = ?", (meeting_id,)
            )
            row = await cursor.fetchone()
            return row["count"]

    async def get_registrations(self, meeting_id: str) -> List[MeetingRegistration]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM meeting_registrations WHERE meeting_id = ? ORDER BY registered_at, user_id",
                (meeting_id,)
            )
            rows = await cursor.fetchall()
            return [MeetingRegistration(r["meeting_id"], r["user_id"], r["registered_at"]) for r in rows]

    # ---------- Speakers ----------
    async def upsert_speaker(self, speaker: Speaker):
        """Add a speaker, or move them to a new role at the back of the queue."""
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO speakers (proposal_id, user_id, role, display_name, registered_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(proposal_id, user_id) DO UPDATE SET "
                "role = excluded.role, display_name = excluded.display_name, registered_at = excluded.registered_at",
                (speaker.proposal_id, speaker.user_id, speaker.role.value, speaker.display_name, speaker.registered_at)
            )
            await db.commit()

    async def get_speakers(self, proposal_id: str) -> List[Speaker]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM speakers WHERE proposal_id = ? ORDER BY registered_at, user_id", (proposal_id,)
            )
            rows = await cursor.fetchall()
            return [Speaker.from_row(r) for r in rows]

    async def remove_speaker(self, proposal_id: str, user_id: int) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM speakers WHERE proposal_id = ? AND user_id = ?", (proposal_id, user_id)
            )
            await db.commit()
            return cursor.rowcount > 0
