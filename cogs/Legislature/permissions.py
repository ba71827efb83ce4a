# cogs/Legislature/permissions.py
import discord

from . import constants
from .models import Chamber, EventType


def _role_ids(member) -> set:
    return {role.id for role in getattr(member, "roles", [])}


def is_admin(member) -> bool:
    return bool(_role_ids(member) & set(constants.ADMIN_ROLE_IDS))


def _territory_ok(roles: set, chamber: Chamber) -> bool:
    if not chamber.is_duma:
        return True
    territory = constants.TERRITORY_ROLES.get(chamber.value)
    return not territory or territory in roles


def is_chamber_chairman(member, chamber) -> bool:
    """Chairman or vice chairman; Duma chambers also require the chamber's territory role."""
    roles = _role_ids(member)
    chairs = {constants.CHAIRMAN_ROLE_ID, constants.VICE_CHAIRMAN_ROLE_ID} - {0}
    return bool(roles & chairs) and _territory_ok(roles, Chamber(chamber))


def is_government_chairman(member, chamber) -> bool:
    roles = _role_ids(member)
    chamber = Chamber(chamber)
    return (chamber.is_duma and bool(constants.GOVERNMENT_CHAIRMAN_ROLE_ID)
            and constants.GOVERNMENT_CHAIRMAN_ROLE_ID in roles and _territory_ok(roles, chamber))


def is_president(user: discord.abc.User) -> bool:
    return bool(constants.PRESIDENT_USER_ID) and user.id == constants.PRESIDENT_USER_ID


def can_manage(member, chamber) -> bool:
    return is_admin(member) or is_chamber_chairman(member, chamber)


def can_decide(member, chamber, event_type: EventType) -> bool:
    """Who may record a post-vote decision on a proposal."""
    if is_admin(member):
        return True
    if event_type in (EventType.GOVERNMENT_APPROVAL, EventType.GOVERNMENT_RETURN):
        return is_government_chairman(member, chamber)
    if event_type in (EventType.PRESIDENT_SIGN, EventType.PRESIDENT_VETO):
        return is_president(member)
    if event_type is EventType.TRANSFER:
        return is_chamber_chairman(member, chamber)
    return False
