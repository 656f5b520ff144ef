"""Role hierarchy and content scopes.

Ranks run from 1 (most powerful) to 4. Every escalation and override check
in the package compares ranks through the helpers below.
"""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    COFOUNDER = "COFOUNDER"
    REGIONAL_ORGANISER = "REGIONAL_ORGANISER"
    CITY_ORGANISER = "CITY_ORGANISER"
    ACTIVIST = "ACTIVIST"

    @property
    def rank(self) -> int:
        match self:
            case Role.COFOUNDER:
                return 1
            case Role.REGIONAL_ORGANISER:
                return 2
            case Role.CITY_ORGANISER:
                return 3
            case Role.ACTIVIST:
                return 4


class Scope(StrEnum):
    CITY = "CITY"
    REGIONAL = "REGIONAL"
    GLOBAL = "GLOBAL"


# Roles a chapter membership row may carry.
MEMBERSHIP_ROLES = frozenset({Role.ACTIVIST, Role.CITY_ORGANISER})


def parse_role(value: str | Role) -> Role:
    """Convert a stored or submitted value to a Role.

    Raises:
        ValueError: If the value names no known role.
    """
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).upper())
    except ValueError:
        raise ValueError(f"Unknown role: {value!r}") from None


def parse_scope(value: str | Scope) -> Scope:
    if isinstance(value, Scope):
        return value
    try:
        return Scope(str(value).upper())
    except ValueError:
        raise ValueError(f"Unknown scope: {value!r}") from None


def rank_of(role: Role) -> int:
    return role.rank


def outranks(a: Role, b: Role) -> bool:
    """True if ``a`` holds strictly more power than ``b``."""
    return rank_of(a) < rank_of(b)


def at_least_as_powerful(a: Role, b: Role) -> bool:
    """True if ``a`` holds the same or more power than ``b``."""
    return rank_of(a) <= rank_of(b)
