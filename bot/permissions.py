from __future__ import annotations
import enum
from typing import Iterable, Optional


class Permission(enum.IntEnum):
    ALL = 0
    SUBS = 1
    MODS = 2
    SUPER = 3

    @classmethod
    def from_string(cls, value: str) -> 'Permission':
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f'invalid permissions "{value}"') from None

    def to_string(self) -> str:
        return self.name.lower()


MOD_BADGES = frozenset({'broadcaster', 'moderator'})
SUB_BADGES = MOD_BADGES | {'subscriber'}


class PermissionGate:
    """Decides whether a caller may run a command.

    Badge based except for ``Super``, which only matches the configured
    super-user login.
    """

    def __init__(self, super_user: Optional[str] = None):
        self.super_user = (super_user or '').lower() or None

    def allows(self, permission: Permission, badges: Iterable[str], identity: str) -> bool:
        if permission is Permission.ALL:
            return True
        if permission is Permission.SUPER:
            return self.super_user is not None and (identity or '').lower() == self.super_user
        names = {badge.lower() for badge in badges}
        if permission is Permission.MODS:
            return bool(names & MOD_BADGES)
        return bool(names & SUB_BADGES)
