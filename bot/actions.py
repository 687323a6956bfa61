from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from bot.backend import NotFoundError
from bot.config import HITMAN_DELAY, HITMAN_TIMEOUT
from bot.integrations import (
    IntegrationError,
    LocationNotFound,
    SpotifyClient,
    TranslationClient,
    WeatherClient,
)
from bot.interpreter import ExecutionError, UnknownActionError
from bot.outbound import OutboundHandle

logger = logging.getLogger(__name__)

ActionHandler = Callable[[List[str], str], Awaitable[Optional[str]]]


class ActionRegistry:
    """Name to handler table used by the script interpreter.

    Every handler takes the resolved arguments and the channel the command
    runs in, and returns the text to splice into the output (or ``None``).
    """

    def __init__(self):
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler) -> None:
        if name in self._handlers:
            raise ValueError(f'action {name} already registered')
        self._handlers[name] = handler

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    async def invoke(self, name: str, args: Sequence[str], channel: str) -> Optional[str]:
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownActionError(name)
        return await handler(list(args), channel)


def _require(args: List[str], action: str) -> str:
    if not args:
        raise ExecutionError(f'missing argument for {action}')
    return args[0]


class BuiltinActions:
    def __init__(
        self,
        *,
        store,
        outbound: OutboundHandle,
        transport,
        weather: WeatherClient,
        translator: TranslationClient,
        spotify: SpotifyClient,
        hitman_delay: float = HITMAN_DELAY,
        timeout_seconds: int = HITMAN_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.outbound = outbound
        self.transport = transport
        self.weather_client = weather
        self.translator = translator
        self.spotify_client = spotify
        self.hitman_delay = hitman_delay
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep

    def register_into(self, registry: ActionRegistry) -> ActionRegistry:
        for name, handler in (
            ('ping', self.ping),
            ('weather', self.weather),
            ('translate', self.translate),
            ('spotify', self.spotify),
            ('playlist', self.playlist),
            ('lastsong', self.lastsong),
            ('hitman', self.hitman),
            ('bodyguard', self.bodyguard),
            ('commercial', self.commercial),
        ):
            registry.register(name, handler)
        return registry

    async def ping(self, args: List[str], channel: str) -> Optional[str]:
        return 'pong!'

    async def weather(self, args: List[str], channel: str) -> Optional[str]:
        location = _require(args, 'weather')
        try:
            report = await self.weather_client.get_weather(location)
        except LocationNotFound:
            return 'location not found'
        except IntegrationError as exc:
            logger.warning('weather lookup for %s failed: %s', location, exc)
            return f'Failed getting weather: {exc}'
        return report.format()

    async def translate(self, args: List[str], channel: str) -> Optional[str]:
        text = _require(args, 'translate')
        try:
            result = await self.translator.translate(text)
        except IntegrationError as exc:
            return f'error when translating: {exc}'
        return result.format()

    async def _spotify_token(self, channel: str) -> Optional[str]:
        try:
            tokens = await self.store.get_spotify_tokens(channel)
        except NotFoundError:
            return None
        return tokens.get('access_token') or None

    async def _spotify_call(self, channel: str, call, empty: str) -> str:
        token = await self._spotify_token(channel)
        if not token:
            return 'not configured for this channel'
        try:
            result = await call(token)
        except IntegrationError as exc:
            return f'error: {exc}'
        return result or empty

    async def spotify(self, args: List[str], channel: str) -> Optional[str]:
        return await self._spotify_call(
            channel, self.spotify_client.current_song, 'no song is currently playing'
        )

    async def playlist(self, args: List[str], channel: str) -> Optional[str]:
        return await self._spotify_call(
            channel, self.spotify_client.current_playlist, 'no playlist is currently playing'
        )

    async def lastsong(self, args: List[str], channel: str) -> Optional[str]:
        return await self._spotify_call(
            channel, self.spotify_client.recently_played, 'no recently played song'
        )

    async def hitman(self, args: List[str], channel: str) -> Optional[str]:
        user = _require(args, 'hitman')
        await self.store.add_hitman(channel, user)
        await self.outbound.say(channel, f'Timing out {user} in {self.hitman_delay:g} seconds...')
        await self._sleep(self.hitman_delay)
        # A bodyguard landing between this read and the reset below is lost.
        protected = await self.store.get_hitman_protected(channel, user)
        await self.store.set_hitman_protection(channel, user, False, completed=True)
        if protected:
            logger.info('hitman on %s in %s blocked by bodyguard', user, channel)
            return None
        await self.outbound.raw(channel, f'/timeout {user} {self.timeout_seconds}')
        return f'{user} timed out for {self.timeout_seconds // 60} minutes!'

    async def bodyguard(self, args: List[str], channel: str) -> Optional[str]:
        user = _require(args, 'bodyguard')
        await self.store.set_hitman_protection(channel, user, True)
        await self.outbound.say(channel, f'{user} has been guarded!')
        return None

    async def commercial(self, args: List[str], channel: str) -> Optional[str]:
        raw = _require(args, 'commercial')
        try:
            length = int(raw)
        except ValueError:
            raise ExecutionError(f'invalid commercial length "{raw}"') from None
        await self.transport.start_commercial(channel, length)
        return None


def build_registry(**kwargs) -> ActionRegistry:
    return BuiltinActions(**kwargs).register_into(ActionRegistry())

