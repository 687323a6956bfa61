import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot.actions import ActionRegistry, build_registry
from bot.backend import NotFoundError
from bot.integrations import LocationNotFound, SpotifyError, TranslationError, WeatherError, WeatherReport, Translation
from bot.interpreter import ExecutionError, UnknownActionError


class ActionRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_unknown_action(self) -> None:
        registry = ActionRegistry()
        with self.assertRaises(UnknownActionError):
            await registry.invoke("nope", [], "chan")

    async def test_duplicate_registration(self) -> None:
        registry = ActionRegistry()

        async def handler(args, channel):
            return None

        registry.register("x", handler)
        with self.assertRaises(ValueError):
            registry.register("x", handler)


class BuiltinActionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.events = []
        self.store = MagicMock()
        self.store.add_hitman = AsyncMock(side_effect=lambda c, u: self.events.append(("add_hitman", u)))
        self.store.get_hitman_protected = AsyncMock(return_value=False)
        self.store.set_hitman_protection = AsyncMock()
        self.store.get_spotify_tokens = AsyncMock(return_value={"access_token": "tok"})
        self.outbound = MagicMock()
        self.outbound.say = AsyncMock(side_effect=lambda c, t: self.events.append(("say", t)))
        self.outbound.raw = AsyncMock(side_effect=lambda c, t: self.events.append(("raw", t)))
        self.transport = MagicMock()
        self.transport.start_commercial = AsyncMock()
        self.weather = MagicMock()
        self.translator = MagicMock()
        self.spotify = MagicMock()

        async def fake_sleep(delay):
            self.events.append(("sleep", delay))

        self.registry = build_registry(
            store=self.store,
            outbound=self.outbound,
            transport=self.transport,
            weather=self.weather,
            translator=self.translator,
            spotify=self.spotify,
            sleep=fake_sleep,
        )

    async def invoke(self, name, *args):
        return await self.registry.invoke(name, list(args), "chan")

    async def test_registered_names(self) -> None:
        self.assertEqual(
            self.registry.names(),
            ["bodyguard", "commercial", "hitman", "lastsong", "ping", "playlist", "spotify", "translate", "weather"],
        )

    async def test_ping(self) -> None:
        self.assertEqual(await self.invoke("ping"), "pong!")

    async def test_weather(self) -> None:
        self.weather.get_weather = AsyncMock(return_value=WeatherReport("Paris", "FR", 20.0, "clear sky"))
        self.assertEqual(await self.invoke("weather", "Paris"), "Paris, FR: 20°C, clear sky")

    async def test_weather_fallbacks(self) -> None:
        self.weather.get_weather = AsyncMock(side_effect=LocationNotFound("Atlantis"))
        self.assertEqual(await self.invoke("weather", "Atlantis"), "location not found")
        self.weather.get_weather = AsyncMock(side_effect=WeatherError("Invalid API key"))
        self.assertEqual(await self.invoke("weather", "Paris"), "Failed getting weather: Invalid API key")

    async def test_weather_without_location(self) -> None:
        with self.assertRaises(ExecutionError):
            await self.invoke("weather")

    async def test_translate(self) -> None:
        self.translator.translate = AsyncMock(return_value=Translation("fr", "en", "hello"))
        self.assertEqual(await self.invoke("translate", "bonjour"), "fr -> en: hello")
        self.translator.translate = AsyncMock(side_effect=TranslationError("service down"))
        self.assertEqual(await self.invoke("translate", "bonjour"), "error when translating: service down")

    async def test_spotify_not_configured(self) -> None:
        self.store.get_spotify_tokens = AsyncMock(side_effect=NotFoundError(404, "spotify not configured"))
        for name in ("spotify", "playlist", "lastsong"):
            self.assertEqual(await self.invoke(name), "not configured for this channel")

    async def test_spotify_song(self) -> None:
        self.spotify.current_song = AsyncMock(return_value="Artist - Song [1:00/3:00]")
        self.assertEqual(await self.invoke("spotify"), "Artist - Song [1:00/3:00]")
        self.spotify.current_song.assert_awaited_once_with("tok")

    async def test_spotify_empty_and_error(self) -> None:
        self.spotify.current_song = AsyncMock(return_value=None)
        self.assertEqual(await self.invoke("spotify"), "no song is currently playing")
        self.spotify.current_playlist = AsyncMock(return_value=None)
        self.assertEqual(await self.invoke("playlist"), "no playlist is currently playing")
        self.spotify.recently_played = AsyncMock(side_effect=SpotifyError("The access token expired"))
        self.assertEqual(await self.invoke("lastsong"), "error: The access token expired")

    async def test_hitman_times_out_unprotected_user(self) -> None:
        result = await self.invoke("hitman", "target")

        self.assertEqual(result, "target timed out for 10 minutes!")
        self.assertEqual(
            self.events,
            [
                ("add_hitman", "target"),
                ("say", "Timing out target in 15 seconds..."),
                ("sleep", 15.0),
                ("raw", "/timeout target 600"),
            ],
        )
        self.store.set_hitman_protection.assert_awaited_once_with("chan", "target", False, completed=True)

    async def test_hitman_blocked_by_bodyguard(self) -> None:
        self.store.get_hitman_protected = AsyncMock(return_value=True)

        result = await self.invoke("hitman", "target")

        self.assertIsNone(result)
        self.outbound.raw.assert_not_awaited()
        self.store.set_hitman_protection.assert_awaited_once_with("chan", "target", False, completed=True)

    async def test_bodyguard(self) -> None:
        self.assertIsNone(await self.invoke("bodyguard", "friend"))
        self.store.set_hitman_protection.assert_awaited_once_with("chan", "friend", True)
        self.outbound.say.assert_awaited_once_with("chan", "friend has been guarded!")

    async def test_commercial(self) -> None:
        await self.invoke("commercial", "30")
        self.transport.start_commercial.assert_awaited_once_with("chan", 30)

    async def test_commercial_invalid_length(self) -> None:
        with self.assertRaises(ExecutionError):
            await self.invoke("commercial", "soon")
        self.transport.start_commercial.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
