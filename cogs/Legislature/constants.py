# cogs/Legislature/constants.py
import os

# --- Discord Role IDs ---
# Read from the environment (.env is loaded by main.py before cogs are imported).
# Enable Developer Mode in Discord, right-click the role or channel and select "Copy ID".

def _snowflake(name: str) -> int:
    value = os.getenv(name)
    return int(value) if value and value.isdigit() else 0

ADMIN_ROLE_IDS = [r for r in (_snowflake("ADMIN_ROLE_SEND_ID"), _snowflake("SYSADMIN_ROLE_ID")) if r]

CHAIRMAN_ROLE_ID = _snowflake("CHAIRMAN_ROLE_ID")
VICE_CHAIRMAN_ROLE_ID = _snowflake("VICE_CHAIRMAN_ROLE_ID")
GOVERNMENT_CHAIRMAN_ROLE_ID = _snowflake("GOVERNMENT_CHAIRMAN_ROLE_ID")
PRESIDENT_USER_ID = _snowflake("PRESIDENT_USER_ID")

# Territory roles narrow the chairman check down to one Duma chamber.
TERRITORY_ROLES = {
    "gd_rublevka": _snowflake("RUBLEVKA_ROLE_ID"),
    "gd_arbat": _snowflake("ARBAT_ROLE_ID"),
    "gd_patricki": _snowflake("PATRICKI_ROLE_ID"),
    "gd_tverskoy": _snowflake("TVERSKOY_ROLE_ID"),
}

# Time-boxed role handed to members who registered for a meeting that reached quorum.
VOTER_ROLES_BY_CHAMBER = {
    "sf": _snowflake("SF_VOTER_ROLE_ID"),
    "gd_rublevka": _snowflake("GD_RUBLEVKA_VOTER_ROLE_ID"),
    "gd_arbat": _snowflake("GD_ARBAT_VOTER_ROLE_ID"),
    "gd_patricki": _snowflake("GD_PATRICKI_VOTER_ROLE_ID"),
    "gd_tverskoy": _snowflake("GD_TVERSKOY_VOTER_ROLE_ID"),
}

# --- Discord Channel IDs ---
PROPOSAL_CHANNELS = {
    "sf": _snowflake("SF_CHANNEL_ID"),
    "gd_rublevka": _snowflake("GD_RUBLEVKA_CHANNEL_ID"),
    "gd_arbat": _snowflake("GD_ARBAT_CHANNEL_ID"),
    "gd_patricki": _snowflake("GD_PATRICKI_CHANNEL_ID"),
    "gd_tverskoy": _snowflake("GD_TVERSKOY_CHANNEL_ID"),
}

MEETING_CHANNELS = {
    "sf": _snowflake("SF_MEETING_CHANNEL_ID"),
    "gd_rublevka": _snowflake("GD_RUBLEVKA_MEETING_CHANNEL_ID"),
    "gd_arbat": _snowflake("GD_ARBAT_MEETING_CHANNEL_ID"),
    "gd_patricki": _snowflake("GD_PATRICKI_MEETING_CHANNEL_ID"),
    "gd_tverskoy": _snowflake("GD_TVERSKOY_MEETING_CHANNEL_ID"),
}

# --- Timers ---
VOTE_TICK_SECONDS = float(os.getenv("VOTE_TICK_SECONDS", "10"))
MEETING_TICK_SECONDS = float(os.getenv("MEETING_TICK_SECONDS", "10"))
RUNOFF_DURATION = os.getenv("RUNOFF_DURATION", "5m")
MAX_VOTE_STAGES = int(os.getenv("MAX_VOTE_STAGES", "3"))

# Used when a chamber has never held a meeting.
DEFAULT_TOTAL_MEMBERS = int(os.getenv("DEFAULT_TOTAL_MEMBERS", "53"))
DEFAULT_VOTE_QUORUM = 1

FOOTER = os.getenv("EMBED_FOOTER", "Legislature bot")

# --- Database Path ---
DB_PATH = os.getenv("DB_PATH", "database/legislature.db")
