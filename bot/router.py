from __future__ import annotations
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from bot.backend import AlreadyExistsError, BackendError, NotFoundError
from bot.config import DEFAULT_MESSAGES, DEFAULT_PREFIX
from bot.interpreter import ExecutionError, ScriptInterpreter
from bot.models import BUILTINS, Command, CommandKind
from bot.outbound import OutboundHandle, TransportError
from bot.permissions import Permission, PermissionGate

logger = logging.getLogger(__name__)


class RouteOutcome(enum.Enum):
    IGNORED = 'ignored'
    UNKNOWN = 'unknown'
    DENIED = 'denied'
    REPLIED = 'replied'
    SILENT = 'silent'
    ERROR = 'error'


@dataclass
class RouteResult:
    outcome: RouteOutcome
    text: Optional[str] = None
    command: Optional[Command] = None


@dataclass
class ParsedLine:
    trigger: str
    args: List[str] = field(default_factory=list)
    # Everything after the trigger with the caller's spacing preserved.
    rest: str = ''


def parse_line(raw_line: str, prefix: str) -> Optional[ParsedLine]:
    line = (raw_line or '').strip()
    if not prefix or not line.startswith(prefix):
        return None
    parts = line[len(prefix):].split(None, 1)
    if not parts:
        return None
    rest = parts[1].strip() if len(parts) > 1 else ''
    return ParsedLine(parts[0], rest.split(), rest)


class CommandRouter:
    """Turns chat lines into command executions.

    The router owns the per-channel prefix cache, resolves built-in and
    stored commands, checks permissions and hands any resulting text to the
    outbound queue. Unknown triggers are dropped without a reply.
    """

    def __init__(
        self,
        *,
        store,
        interpreter: ScriptInterpreter,
        gate: PermissionGate,
        outbound: OutboundHandle,
        transport,
        messages: Optional[Dict[str, str]] = None,
    ):
        self.store = store
        self.interpreter = interpreter
        self.gate = gate
        self.outbound = outbound
        self.transport = transport
        self.messages = messages or DEFAULT_MESSAGES.copy()
        self.prefixes: Dict[str, str] = {}

    def _msg(self, key: str, **kwargs) -> str:
        template = self.messages.get(key) or DEFAULT_MESSAGES[key]
        return template.format(**kwargs)

    async def load_prefix(self, channel: str) -> str:
        prefix = self.prefixes.get(channel)
        if prefix:
            return prefix
        try:
            prefix = await self.store.get_prefix(channel)
        except BackendError as exc:
            logger.warning('could not load prefix for %s: %s', channel, exc)
            return DEFAULT_PREFIX
        self.prefixes[channel] = prefix
        return prefix

    async def resolve(self, trigger: str, channel: str) -> Optional[Command]:
        builtin = BUILTINS.get(trigger)
        if builtin:
            return builtin
        return await self.store.get_command(trigger, channel)

    async def route(
        self,
        raw_line: str,
        channel: str,
        caller: str,
        badges: Iterable[str] = (),
        original: Any = None,
    ) -> RouteResult:
        prefix = await self.load_prefix(channel)
        parsed = parse_line(raw_line, prefix)
        if parsed is None:
            return RouteResult(RouteOutcome.IGNORED)
        try:
            command = await self.resolve(parsed.trigger, channel)
        except BackendError as exc:
            logger.error('failed to resolve %s in %s: %s', parsed.trigger, channel, exc)
            text = self._msg('store_error', error=exc)
            await self._respond(channel, text, original)
            return RouteResult(RouteOutcome.ERROR, text)
        if command is None:
            logger.info('unknown command %s%s in %s', prefix, parsed.trigger, channel)
            return RouteResult(RouteOutcome.UNKNOWN)
        if not self.gate.allows(command.permission, badges, caller):
            text = self._msg('permission_denied')
            await self._respond(channel, text, original)
            return RouteResult(RouteOutcome.DENIED, text, command)

        outcome = RouteOutcome.REPLIED
        try:
            text = await self.execute(command, parsed, channel, caller)
        except ExecutionError as exc:
            logger.info('execution of %s in %s failed: %s', command.trigger, channel, exc)
            text = self._msg('execution_error', error=exc)
            outcome = RouteOutcome.ERROR
        except (BackendError, TransportError) as exc:
            logger.error('command %s in %s failed: %s', command.trigger, channel, exc)
            text = self._msg('store_error', error=exc)
            outcome = RouteOutcome.ERROR
        except Exception as exc:
            logger.exception('command %s in %s failed unexpectedly', command.trigger, channel)
            text = self._msg('execution_error', error=exc)
            outcome = RouteOutcome.ERROR
        if not text:
            return RouteResult(RouteOutcome.SILENT, None, command)
        await self._respond(channel, text, original)
        return RouteResult(outcome, text, command)

    async def run_custom(self, body: str, args: List[str], channel: str, caller: str) -> Optional[str]:
        """Run ``body`` as an unrestricted custom command and return its text."""
        command = Command('redeem', channel, Permission.ALL, body)
        rest = ' '.join(args)
        return await self.execute(command, ParsedLine(command.trigger, list(args), rest), channel, caller)

    async def execute(self, command: Command, parsed: ParsedLine, channel: str, caller: str) -> Optional[str]:
        if command.kind is CommandKind.CUSTOM:
            return await self.interpreter.interpret(command.body, parsed.args, caller, channel)
        handler = getattr(self, f'_{command.kind.value}')
        return await handler(parsed, channel)

    async def _respond(self, channel: str, text: str, original: Any) -> None:
        if original is not None:
            await self.outbound.reply(text, original)
        else:
            await self.outbound.say(channel, text)

    # ---- built-ins ----
    async def _addcmd(self, parsed: ParsedLine, channel: str) -> str:
        parts = parsed.rest.split(None, 1)
        if len(parts) < 2:
            return self._msg('missing_arguments')
        trigger, body = parts
        if trigger in BUILTINS:
            return self._msg('command_exists', trigger=trigger)
        try:
            await self.store.add_command(trigger, body, channel, Permission.ALL.to_string())
        except AlreadyExistsError:
            return self._msg('command_exists', trigger=trigger)
        logger.info('added command %s in %s', trigger, channel)
        return self._msg('command_added', trigger=trigger)

    async def _delcmd(self, parsed: ParsedLine, channel: str) -> str:
        if not parsed.args:
            return self._msg('missing_command')
        trigger = parsed.args[0]
        try:
            await self.store.del_command(trigger, channel)
        except NotFoundError:
            return self._msg('command_not_found', trigger=trigger)
        logger.info('removed command %s in %s', trigger, channel)
        return self._msg('command_removed', trigger=trigger)

    async def _showcmd(self, parsed: ParsedLine, channel: str) -> str:
        if not parsed.args:
            return self._msg('command_not_specified')
        command = await self.resolve(parsed.args[0], channel)
        if command is None:
            return self._msg('no_such_command')
        if command.builtin:
            return self._msg('builtin_command')
        return command.body

    async def _listcmd(self, parsed: ParsedLine, channel: str) -> str:
        names = sorted(await self.store.list_commands(channel))
        if not names:
            return self._msg('command_list_empty')
        return self._msg('command_list', commands=', '.join(names))

    async def _join(self, parsed: ParsedLine, channel: str) -> Optional[str]:
        if not parsed.args:
            return self._msg('missing_channel')
        target = parsed.args[0].lstrip('#').lower()
        try:
            await self.store.add_channel(target)
        except AlreadyExistsError:
            logger.info('channel %s already stored', target)
        await self.transport.join(target)
        return None

    async def _part(self, parsed: ParsedLine, channel: str) -> Optional[str]:
        target = parsed.args[0].lstrip('#').lower() if parsed.args else channel
        try:
            await self.store.remove_channel(target)
        except NotFoundError:
            logger.info('channel %s was not stored', target)
        self.prefixes.pop(target, None)
        await self.transport.part(target)
        return None

    async def _addredeem(self, parsed: ParsedLine, channel: str) -> str:
        title, sep, body = parsed.rest.partition('=')
        title, body = title.strip(), body.strip()
        if not sep or not title or not body:
            return self._msg('redeem_usage')
        try:
            await self.store.add_redeem(title, body, channel)
        except AlreadyExistsError:
            return self._msg('redeem_exists', title=title)
        return self._msg('redeem_added', title=title)

    async def _delredeem(self, parsed: ParsedLine, channel: str) -> str:
        title = parsed.rest.strip()
        if not title:
            return self._msg('redeem_usage')
        try:
            await self.store.del_redeem(title, channel)
        except NotFoundError:
            return self._msg('redeem_not_found', title=title)
        return self._msg('redeem_removed', title=title)
