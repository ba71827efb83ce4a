# cogs/Legislature/errors.py
from typing import List, Optional


class LegislatureError(Exception):
    """Base class for every error the voting and meeting engines raise."""

    user_message = "Something went wrong. Please try again."


class NotFound(LegislatureError):
    user_message = "Not found."


class DuplicateVote(LegislatureError):
    user_message = "You have already voted in this round."

    def __init__(self, proposal_id: str, user_id: int, stage: int):
        super().__init__(f"user {user_id} already voted on {proposal_id} (stage {stage})")
        self.proposal_id = proposal_id
        self.user_id = user_id
        self.stage = stage


class InvalidTransition(LegislatureError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.user_message = reason


class AlreadyOpen(InvalidTransition):
    pass


class NotOpen(InvalidTransition):
    pass


class InvalidChoice(LegislatureError, ValueError):
    user_message = "That option is not on this ballot."


class StorageFailure(LegislatureError):
    """A database call failed. The message is for logs, never for users."""


class StaleExpiry(LegislatureError):
    """A tick or finalize reached an entity that is already closed."""


class PartialBatchFailure(LegislatureError):
    """Some role grants in a finalize batch failed; the rest went through."""

    def __init__(self, failed_user_ids: List[int], attempted: int, cause: Optional[str] = None):
        msg = f"{len(failed_user_ids)} of {attempted} role grants failed"
        if cause:
            msg = f"{msg}: {cause}"
        super().__init__(msg)
        self.failed_user_ids = failed_user_ids
        self.attempted = attempted
