import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot.backend import AlreadyExistsError, BackendError, NotFoundError
from bot.interpreter import ScriptInterpreter
from bot.models import Command
from bot.permissions import Permission, PermissionGate
from bot.router import CommandRouter, RouteOutcome, parse_line


class FakeStore:
    def __init__(self, prefix: str = "!"):
        self.prefix = prefix
        self.commands = {}
        self.redeems = {}
        self.channels = set()
        self.get_prefix_calls = 0

    async def get_prefix(self, channel):
        self.get_prefix_calls += 1
        return self.prefix

    async def get_command(self, trigger, channel):
        row = self.commands.get((trigger, channel))
        if row is None:
            return None
        body, permission = row
        return Command(trigger, channel, Permission.from_string(permission), body)

    async def add_command(self, trigger, body, channel, permission="all"):
        if (trigger, channel) in self.commands:
            raise AlreadyExistsError(409, "command already exists")
        self.commands[(trigger, channel)] = (body, permission)

    async def del_command(self, trigger, channel):
        if (trigger, channel) not in self.commands:
            raise NotFoundError(404, "command not found")
        del self.commands[(trigger, channel)]

    async def list_commands(self, channel):
        return [trigger for trigger, ch in self.commands if ch == channel]

    async def add_channel(self, channel, prefix=None):
        if channel in self.channels:
            raise AlreadyExistsError(409, "channel already exists")
        self.channels.add(channel)

    async def remove_channel(self, channel):
        if channel not in self.channels:
            raise NotFoundError(404, "channel not found")
        self.channels.discard(channel)

    async def add_redeem(self, title, action, channel):
        if (title, channel) in self.redeems:
            raise AlreadyExistsError(409, "redeem already exists")
        self.redeems[(title, channel)] = action

    async def del_redeem(self, title, channel):
        if (title, channel) not in self.redeems:
            raise NotFoundError(404, "redeem not found")
        del self.redeems[(title, channel)]


class Registry:
    def __init__(self):
        self.calls = []

    async def invoke(self, name, args, channel):
        self.calls.append((name, list(args)))
        if name == "ping":
            return "pong!"
        if name == "weather":
            return f"{args[0]}: 20°C, clear"
        return None


class ParseLineTests(unittest.TestCase):
    def test_without_prefix(self) -> None:
        self.assertIsNone(parse_line("hello !ping", "!"))

    def test_empty_trigger(self) -> None:
        self.assertIsNone(parse_line("!   ", "!"))

    def test_splits_trigger_and_args(self) -> None:
        parsed = parse_line("!addcmd hi  Hello  {ping}", "!")
        self.assertEqual(parsed.trigger, "addcmd")
        self.assertEqual(parsed.args, ["hi", "Hello", "{ping}"])
        self.assertEqual(parsed.rest, "hi  Hello  {ping}")


class CommandRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = FakeStore()
        self.registry = Registry()
        self.outbound = AsyncMock()
        self.transport = AsyncMock()
        self.router = CommandRouter(
            store=self.store,
            interpreter=ScriptInterpreter(self.registry),
            gate=PermissionGate("owner"),
            outbound=self.outbound,
            transport=self.transport,
        )
        self.original = SimpleNamespace(id="msg1", broadcaster=SimpleNamespace(name="chan"))

    async def route(self, line, caller="viewer", badges=(), original=None):
        return await self.router.route(line, "chan", caller, list(badges), original=original)

    async def test_line_without_prefix_is_ignored(self) -> None:
        result = await self.route("just chatting")
        self.assertIs(result.outcome, RouteOutcome.IGNORED)
        self.outbound.say.assert_not_awaited()

    async def test_unknown_trigger_is_silent(self) -> None:
        result = await self.route("!nothing")
        self.assertIs(result.outcome, RouteOutcome.UNKNOWN)
        self.outbound.say.assert_not_awaited()
        self.outbound.reply.assert_not_awaited()

    async def test_prefix_is_cached_per_channel(self) -> None:
        self.store.prefix = "?"
        await self.route("?ping")
        result = await self.route("!ping")
        self.assertIs(result.outcome, RouteOutcome.IGNORED)
        self.assertEqual(self.store.get_prefix_calls, 1)

    async def test_builtin_ping_replies_to_message(self) -> None:
        result = await self.route("!ping", original=self.original)
        self.assertIs(result.outcome, RouteOutcome.REPLIED)
        self.outbound.reply.assert_awaited_once_with("pong!", self.original)

    async def test_says_when_no_message_to_reply_to(self) -> None:
        await self.route("!ping")
        self.outbound.say.assert_awaited_once_with("chan", "pong!")

    async def test_custom_command_runs_body(self) -> None:
        self.store.commands[("greet", "chan")] = ("Hello {weather $0}!", "all")
        result = await self.route("!greet Paris")
        self.assertEqual(result.text, "Hello Paris: 20°C, clear!")
        self.outbound.say.assert_awaited_once_with("chan", "Hello Paris: 20°C, clear!")

    async def test_mods_command_denied_for_subscriber(self) -> None:
        result = await self.route("!addcmd hi hello", badges=["subscriber"])
        self.assertIs(result.outcome, RouteOutcome.DENIED)
        self.outbound.say.assert_awaited_once_with(
            "chan", "you do not have the permissions to use this command!"
        )
        self.assertEqual(self.store.commands, {})

    async def test_denied_custom_command_runs_no_action(self) -> None:
        self.store.commands[("secret", "chan")] = ("{ping}", "mods")
        result = await self.route("!secret")
        self.assertIs(result.outcome, RouteOutcome.DENIED)
        self.assertEqual(self.registry.calls, [])

    async def test_addcmd_stores_command(self) -> None:
        result = await self.route("!addcmd hi Hello {ping}", badges=["moderator"])
        self.assertEqual(result.text, 'successfully added command "hi"')
        self.assertEqual(self.store.commands[("hi", "chan")], ("Hello {ping}", "all"))

    async def test_addcmd_existing_keeps_body(self) -> None:
        self.store.commands[("hi", "chan")] = ("old", "all")
        result = await self.route("!addcmd hi new", badges=["moderator"])
        self.assertEqual(result.text, 'command "hi" already exists')
        self.assertEqual(self.store.commands[("hi", "chan")], ("old", "all"))

    async def test_addcmd_rejects_builtin_trigger(self) -> None:
        result = await self.route("!addcmd ping hi", badges=["moderator"])
        self.assertEqual(result.text, 'command "ping" already exists')
        self.assertEqual(self.store.commands, {})

    async def test_addcmd_missing_arguments(self) -> None:
        result = await self.route("!addcmd hi", badges=["broadcaster"])
        self.assertEqual(result.text, "missing arguments")

    async def test_delcmd(self) -> None:
        self.store.commands[("hi", "chan")] = ("old", "all")
        result = await self.route("!delcmd hi", badges=["moderator"])
        self.assertEqual(result.text, 'successfully removed command "hi"')
        result = await self.route("!delcmd hi", badges=["moderator"])
        self.assertEqual(result.text, 'command "hi" not found')
        result = await self.route("!delcmd", badges=["moderator"])
        self.assertEqual(result.text, "missing command")

    async def test_showcmd(self) -> None:
        self.store.commands[("hi", "chan")] = ("Hello {ping}", "all")
        self.assertEqual((await self.route("!showcmd hi")).text, "Hello {ping}")
        self.assertEqual((await self.route("!showcmd ping")).text, "built-in command")
        self.assertEqual((await self.route("!showcmd nope")).text, "no such command")
        self.assertEqual((await self.route("!showcmd")).text, "command not specified")

    async def test_listcmd(self) -> None:
        self.assertEqual((await self.route("!commands")).text, "no custom commands")
        self.store.commands[("b", "chan")] = ("x", "all")
        self.store.commands[("a", "chan")] = ("y", "all")
        self.assertEqual((await self.route("!help")).text, "Custom commands: a, b")

    async def test_execution_error_reply(self) -> None:
        self.store.commands[("greet", "chan")] = ("Hello {weather $0}!", "all")
        result = await self.route("!greet")
        self.assertIs(result.outcome, RouteOutcome.ERROR)
        self.assertEqual(result.text, "Execution error: missing argument index 0")
        self.assertEqual(self.registry.calls, [])

    async def test_unexpected_action_error_still_replies(self) -> None:
        self.store.commands[("song", "chan")] = ("{lastsong}", "all")
        self.registry.invoke = AsyncMock(side_effect=KeyError("name"))

        with self.assertLogs("bot.router", level="ERROR"):
            result = await self.route("!song")

        self.assertIs(result.outcome, RouteOutcome.ERROR)
        self.assertEqual(result.text, "Execution error: 'name'")
        self.outbound.say.assert_awaited_once_with("chan", "Execution error: 'name'")

    async def test_store_error_reply(self) -> None:
        self.store.get_command = AsyncMock(side_effect=BackendError(500, "boom"))
        result = await self.route("!greet")
        self.assertIs(result.outcome, RouteOutcome.ERROR)
        self.outbound.say.assert_awaited_once_with("chan", "error: boom")

    async def test_join_requires_super_user(self) -> None:
        result = await self.route("!join other", caller="viewer", badges=["broadcaster"])
        self.assertIs(result.outcome, RouteOutcome.DENIED)
        self.transport.join.assert_not_awaited()

    async def test_join_and_part(self) -> None:
        result = await self.route("!join #Other", caller="Owner")
        self.assertIs(result.outcome, RouteOutcome.SILENT)
        self.transport.join.assert_awaited_once_with("other")
        self.assertIn("other", self.store.channels)

        self.store.channels.add("chan")
        result = await self.route("!part", caller="owner")
        self.assertIs(result.outcome, RouteOutcome.SILENT)
        self.transport.part.assert_awaited_once_with("chan")
        self.assertNotIn("chan", self.store.channels)

    async def test_join_missing_channel(self) -> None:
        result = await self.route("!join", caller="owner")
        self.assertEqual(result.text, "missing channel")

    async def test_addredeem_and_delredeem(self) -> None:
        result = await self.route("!addredeem Hydrate now = {ping} drink", badges=["moderator"])
        self.assertEqual(result.text, 'successfully added redeem "Hydrate now"')
        self.assertEqual(self.store.redeems[("Hydrate now", "chan")], "{ping} drink")

        result = await self.route("!addredeem Hydrate now = again", badges=["moderator"])
        self.assertEqual(result.text, 'redeem "Hydrate now" already exists')

        result = await self.route("!addredeem no body", badges=["moderator"])
        self.assertEqual(result.text, "usage: addredeem <reward title> = <action>")

        result = await self.route("!delredeem Hydrate now", badges=["moderator"])
        self.assertEqual(result.text, 'successfully removed redeem "Hydrate now"')
        result = await self.route("!delredeem Hydrate now", badges=["moderator"])
        self.assertEqual(result.text, 'redeem "Hydrate now" not found')

    async def test_run_custom_returns_text_without_sending(self) -> None:
        text = await self.router.run_custom("Hi {weather $$}", ["New", "York"], "chan", "viewer")
        self.assertEqual(text, "Hi New York: 20°C, clear")
        self.outbound.say.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
