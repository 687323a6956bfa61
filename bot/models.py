from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Dict

from bot.permissions import Permission


class CommandKind(enum.Enum):
    CUSTOM = 'custom'
    ADD_CMD = 'addcmd'
    DEL_CMD = 'delcmd'
    SHOW_CMD = 'showcmd'
    LIST_CMD = 'listcmd'
    JOIN = 'join'
    PART = 'part'
    ADD_REDEEM = 'addredeem'
    DEL_REDEEM = 'delredeem'


@dataclass
class Command:
    trigger: str
    channel: str
    permission: Permission
    body: str = ''
    kind: CommandKind = CommandKind.CUSTOM

    @property
    def builtin(self) -> bool:
        return self.channel == ''


# Built-ins are not channel scoped, so their channel is left empty.
BUILTINS: Dict[str, Command] = {
    cmd.trigger: cmd
    for cmd in (
        Command('ping', '', Permission.ALL, '{ping}'),
        Command('addcmd', '', Permission.MODS, kind=CommandKind.ADD_CMD),
        Command('delcmd', '', Permission.MODS, kind=CommandKind.DEL_CMD),
        Command('showcmd', '', Permission.ALL, kind=CommandKind.SHOW_CMD),
        Command('commands', '', Permission.ALL, kind=CommandKind.LIST_CMD),
        Command('help', '', Permission.ALL, kind=CommandKind.LIST_CMD),
        Command('join', '', Permission.SUPER, kind=CommandKind.JOIN),
        Command('part', '', Permission.SUPER, kind=CommandKind.PART),
        Command('addredeem', '', Permission.MODS, kind=CommandKind.ADD_REDEEM),
        Command('delredeem', '', Permission.MODS, kind=CommandKind.DEL_REDEEM),
    )
}
