from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from twitchio import eventsub
from twitchio.ext import commands
from twitchio.payloads import TokenRefreshedPayload

from bot.actions import build_registry
from bot.backend import Backend, BackendError, backend
from bot.config import (
    BOT_USER_ID_ENV,
    DEFAULT_MESSAGES,
    DEFAULT_PREFIX,
    LOG_LEVEL,
    MESSAGES_PATH,
    SUPER_USER_ENV,
    TWITCH_CLIENT_ID_ENV,
    TWITCH_CLIENT_SECRET_ENV,
    load_messages,
)
from bot.integrations import SpotifyClient, TranslationClient, WeatherClient
from bot.interpreter import ScriptInterpreter
from bot.jobs import RefreshScheduler
from bot.outbound import OutboundMessage, OutboundQueue, Raw, Reply, Say, TransportError
from bot.permissions import PermissionGate
from bot.pubsub import PubSubClient
from bot.router import CommandRouter

logger = logging.getLogger(__name__)


@dataclass
class BotSettings:
    token: Optional[str]
    refresh_token: Optional[str]
    login: Optional[str]
    client_id: Optional[str]
    client_secret: Optional[str]
    bot_user_id: Optional[str]
    scopes: List[str]
    enabled: bool
    super_user: Optional[str] = None
    integrations: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


# Keys of /bot/config that configure the REST integrations.
INTEGRATION_KEYS = (
    'openweathermap_api_key',
    'translate_url',
    'spotify_client_id',
    'spotify_client_secret',
)


def _format_token(token: str) -> str:
    return token.removeprefix('oauth:') if token else token


async def push_console_event(
    level: str,
    message: str,
    *,
    event: Optional[str] = None,
    metadata: Optional[Dict[str, object]] = None,
):
    meta = dict(metadata or {})
    if event:
        meta.setdefault('event', event)
    try:
        await backend.push_bot_log(level=level, message=message, metadata=meta)
    except BackendError as exc:
        # Console streaming is best-effort.
        logger.debug('could not push console event: %s', exc)


# ---- bot ----
class ChatBot(commands.Bot):
    """Twitch transport for the command router.

    Chat arrives over EventSub websocket subscriptions (one per joined
    channel) and leaves through the outbound queue, which calls ``send``.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        token: str,
        refresh_token: str,
        login: str,
        scopes: List[str],
        enabled: bool = True,
        super_user: Optional[str] = None,
        integrations: Optional[Dict[str, str]] = None,
    ):
        if not token or not refresh_token or not login or not bot_id:
            raise RuntimeError('token, refresh_token, login, and bot_id are required')
        self.messages = load_messages(MESSAGES_PATH)
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix=DEFAULT_PREFIX,
            fetch_client_user=False,
        )
        self.enabled = enabled
        self.ready_event = asyncio.Event()
        self._configured_login = login
        self.bot_user_id = str(bot_id)
        self._user_token = token
        self._refresh_token = refresh_token
        self._scopes = list(scopes or [])
        # login -> broadcaster id of every joined channel
        self.channel_ids: Dict[str, str] = {}
        self._subscription_ids: Dict[str, str] = {}
        self._join_lock = asyncio.Lock()

        options = integrations or {}
        self.weather = WeatherClient(options.get('openweathermap_api_key'))
        self.translator = TranslationClient(options.get('translate_url'))
        self.spotify = SpotifyClient(options.get('spotify_client_id'), options.get('spotify_client_secret'))
        self.outbound = OutboundQueue(self.send)
        registry = build_registry(
            store=backend,
            outbound=self.outbound.handle('actions'),
            transport=self,
            weather=self.weather,
            translator=self.translator,
            spotify=self.spotify,
        )
        self.router = CommandRouter(
            store=backend,
            interpreter=ScriptInterpreter(registry),
            gate=PermissionGate(super_user or SUPER_USER_ENV),
            outbound=self.outbound.handle('router'),
            transport=self,
            messages=self.messages,
        )
        self.scheduler = RefreshScheduler(backend, self.spotify)
        self.pubsub = PubSubClient(
            lookup=self,
            store=backend,
            router=self.router,
            outbound=self.outbound.handle('pubsub'),
            credential=lambda: self._user_token,
            channels=lambda: list(self.channel_ids),
        )

    @property
    def configured_login(self) -> Optional[str]:
        return self._configured_login

    async def load_tokens(self, path: Optional[str] = None) -> None:
        if not self._user_token or not self._refresh_token:
            raise RuntimeError('Bot credentials are unavailable')
        payload = await super().add_token(self._user_token, self._refresh_token)
        self._scopes = list(payload.scopes)
        await self._persist_tokens(
            access_token=self._user_token,
            refresh_token=self._refresh_token,
            expires_in=payload.expires_in,
            scopes=self._scopes,
        )

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens live in the backend.
        return None

    async def _persist_tokens(
        self,
        *,
        access_token: str,
        refresh_token: str,
        expires_in: Optional[int],
        scopes: List[str],
    ) -> None:
        expires_at_str: Optional[str] = None
        if expires_in is not None:
            expires_at_str = (datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))).isoformat()
        try:
            await backend.update_bot_tokens(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at_str,
                scopes=scopes,
            )
        except BackendError as exc:
            logger.warning('could not persist bot tokens: %s', exc)

    async def event_token_refreshed(self, payload: TokenRefreshedPayload) -> None:
        if str(payload.user_id) != self.bot_user_id:
            return
        self._user_token = payload.token
        self._refresh_token = payload.refresh_token
        self._scopes = list(payload.scopes)
        await self._persist_tokens(
            access_token=payload.token,
            refresh_token=payload.refresh_token,
            expires_in=payload.expires_in,
            scopes=self._scopes,
        )

    async def event_ready(self) -> None:
        self.outbound.start()
        if self.enabled:
            await self.start_services()
        self.ready_event.set()
        await push_console_event('info', self.messages.get('bot_started') or DEFAULT_MESSAGES['bot_started'], event='lifecycle')

    async def start_services(self) -> None:
        await self.sync_channels()
        try:
            await self.scheduler.start()
        except BackendError as exc:
            await push_console_event('error', f'Failed to start token refresh: {exc}', event='spotify')
        self.pubsub.start()

    async def stop_services(self) -> None:
        await self.pubsub.stop()
        await self.scheduler.stop()
        for login in list(self.channel_ids):
            await self._leave(login)

    async def sync_channels(self) -> None:
        rows = await backend.get_channels()
        for row in rows:
            login = str(row['channel_name']).lower()
            if login in self.channel_ids:
                continue
            try:
                await self.join(login)
            except TransportError as exc:
                await push_console_event(
                    'error',
                    f'Failed to join channel {login}: {exc}',
                    event='join_error',
                    metadata={'channel': login, 'error': str(exc)},
                )

    # ---- transport ----
    async def resolve_user_ids(self, logins: Iterable[str]) -> Dict[str, str]:
        wanted = [login.lower() for login in logins]
        known = {login: self.channel_ids[login] for login in wanted if login in self.channel_ids}
        missing = [login for login in wanted if login not in known]
        if missing:
            try:
                users = await self.fetch_users(logins=missing)
            except Exception as exc:
                raise TransportError(str(exc)) from exc
            known.update({user.name.lower(): str(user.id) for user in users})
        return known

    async def resolve_login(self, user_id: str) -> Optional[str]:
        for login, known_id in self.channel_ids.items():
            if known_id == str(user_id):
                return login
        try:
            users = await self.fetch_users(ids=[str(user_id)])
        except Exception as exc:
            raise TransportError(str(exc)) from exc
        return users[0].name.lower() if users else None

    async def _broadcaster_id(self, login: str) -> str:
        ids = await self.resolve_user_ids([login])
        broadcaster_id = ids.get(login.lower())
        if not broadcaster_id:
            raise TransportError(f'unknown channel {login}')
        return broadcaster_id

    async def join(self, channel: str) -> None:
        login = channel.lower()
        async with self._join_lock:
            if login in self._subscription_ids:
                return
            broadcaster_id = await self._broadcaster_id(login)
            payload = eventsub.ChatMessageSubscription(
                broadcaster_user_id=broadcaster_id,
                user_id=self.bot_user_id,
            )
            try:
                response = await self.subscribe_websocket(payload=payload, as_bot=True)
            except Exception as exc:
                raise TransportError(str(exc)) from exc
            subscription = getattr(response, 'subscription', None) or response
            self._subscription_ids[login] = str(getattr(subscription, 'id', '') or '')
            self.channel_ids[login] = broadcaster_id
        logger.info('joined %s', login)
        await push_console_event('info', f'Joined channel {login}', event='join', metadata={'channel': login})

    async def _leave(self, login: str) -> None:
        sub_id = self._subscription_ids.pop(login, None)
        self.channel_ids.pop(login, None)
        if sub_id:
            try:
                await self.delete_websocket_subscription(sub_id, force=True)
            except Exception as exc:
                raise TransportError(str(exc)) from exc

    async def part(self, channel: str) -> None:
        login = channel.lower()
        await self._leave(login)
        logger.info('parted %s', login)
        await push_console_event('info', f'Parted channel {login}', event='part', metadata={'channel': login})

    async def send(self, message: OutboundMessage) -> None:
        login = message.channel.lower()
        broadcaster_id = self.channel_ids.get(login) or await self._broadcaster_id(login)
        partial = self.create_partialuser(broadcaster_id, login)
        reply_to = None
        if isinstance(message, Reply):
            reply_to = getattr(message.original, 'id', None)
        elif isinstance(message, Raw) and message.text.startswith('/timeout '):
            await self._timeout(partial, message.text)
            return
        try:
            await partial.send_message(
                message.text,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
                reply_to_message_id=reply_to,
            )
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to send message to {login}: {exc}',
                event='message',
                metadata={'channel': login, 'error': str(exc)},
            )
            raise TransportError(str(exc)) from exc
        await push_console_event(
            'info',
            f'Sent message to {login}',
            event='message',
            metadata={'channel': login, 'sent_text': message.text},
        )

    async def _timeout(self, partial, command: str) -> None:
        # "/timeout <user> <seconds>" has no chat equivalent on Helix.
        _, user, *rest = command.split()
        duration = int(rest[0]) if rest else 600
        user_id = await self._broadcaster_id(user)
        try:
            await partial.timeout_user(
                moderator=self.bot_user_id,
                user=user_id,
                duration=duration,
            )
        except Exception as exc:
            raise TransportError(str(exc)) from exc
        await push_console_event(
            'info',
            f'Timed out {user} in {partial.name} for {duration}s',
            event='moderation',
            metadata={'channel': partial.name, 'user': user},
        )

    async def start_commercial(self, channel: str, length: int) -> None:
        login = channel.lower()
        partial = self.create_partialuser(await self._broadcaster_id(login), login)
        try:
            await partial.start_commercial(length=length)
        except Exception as exc:
            raise TransportError(str(exc)) from exc
        logger.info('started %ss commercial in %s', length, login)

    # ---- lifecycle ----
    async def update_enabled(self, enabled: bool) -> None:
        if self.enabled == enabled:
            return
        self.enabled = enabled
        await self.ready_event.wait()
        if not enabled:
            await push_console_event('info', 'Disabling bot', event='lifecycle')
            await self.stop_services()
        else:
            await push_console_event('info', 'Enabling bot', event='lifecycle')
            await self.start_services()

    async def shutdown(self) -> None:
        try:
            await self.stop_services()
        except TransportError as exc:
            logger.warning('error while leaving channels: %s', exc)
        await self.outbound.stop()
        for client in (self.weather, self.translator, self.spotify):
            await client.close()
        await super().close()
        await backend.close()

    async def event_message(self, message) -> None:
        if not self.enabled:
            return
        if getattr(message.chatter, 'id', None) == self.bot_user_id:
            return
        badges = [
            badge_id
            for badge_id in (getattr(b, 'set_id', None) for b in getattr(message.chatter, 'badges', None) or [])
            if badge_id
        ]
        await self.router.route(
            message.text or '',
            message.broadcaster.name.lower(),
            message.chatter.name,
            badges,
            original=message,
        )


class BotService:
    def __init__(
        self,
        backend_client: Backend,
        *,
        poll_interval: int = 15,
        bot_factory: Optional[Callable[..., ChatBot]] = None,
        task_factory: Optional[Callable[[Awaitable], asyncio.Task]] = None,
    ):
        self.backend = backend_client
        self.poll_interval = poll_interval
        self.bot_factory = bot_factory or (lambda **kwargs: ChatBot(**kwargs))
        self._create_task = task_factory or asyncio.create_task
        self._bot: Optional[ChatBot] = None
        self._bot_task: Optional[asyncio.Task] = None
        self._current: Optional[tuple] = None
        self._credentials_available: Optional[bool] = None
        self._last_enabled: Optional[bool] = None

    async def run(self):
        while True:
            try:
                raw_config = await self.backend.get_bot_config()
            except BackendError as exc:
                await push_console_event(
                    'error',
                    f'Failed to fetch bot configuration: {exc}',
                    event='config',
                )
                raw_config = {}
            settings = self._settings_from_config(raw_config)
            try:
                await self.apply_settings(settings)
            except (BackendError, TransportError, RuntimeError) as exc:
                await push_console_event(
                    'error',
                    f'Failed to apply bot configuration: {exc}',
                    event='config',
                )
            await asyncio.sleep(self.poll_interval)

    @staticmethod
    def _fingerprint(settings: BotSettings) -> tuple:
        return (
            _format_token(settings.token),
            settings.refresh_token or '',
            settings.login,
            settings.client_id,
            settings.client_secret,
            settings.bot_user_id,
            tuple(sorted(settings.scopes or [])),
            (settings.super_user or '').lower(),
            tuple(sorted(settings.integrations.items())),
        )

    async def apply_settings(self, settings: BotSettings):
        if settings.error or not settings.token:
            if self._credentials_available is not False:
                error_details = settings.error or 'missing access_token'
                await push_console_event(
                    'error',
                    f'Bot credentials are unavailable; idling worker ({error_details})',
                    event='startup',
                    metadata={'error': error_details},
                )
            self._credentials_available = False
            self._last_enabled = None
            await self._stop_bot(reason='missing_credentials')
            return
        if self._credentials_available is not True:
            await push_console_event('info', 'Bot credentials resolved', event='startup')
        self._credentials_available = True

        if not settings.enabled:
            if self._last_enabled is not False:
                await push_console_event('info', 'Bot disabled in backend; idling', event='lifecycle')
            self._last_enabled = False
            await self._stop_bot(reason='disabled')
            return
        if self._last_enabled is not True:
            await push_console_event('info', 'Bot enabled in backend', event='lifecycle')
        self._last_enabled = True

        fingerprint = self._fingerprint(settings)
        if self._bot is None or fingerprint != self._current:
            await self._restart_bot(settings, fingerprint)
        else:
            await self._bot.update_enabled(settings.enabled)

    async def _restart_bot(self, settings: BotSettings, fingerprint: tuple):
        await self._stop_bot(reason='restarting')
        await push_console_event('info', f'Connecting bot as {settings.login}', event='lifecycle')
        bot = self.bot_factory(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            bot_id=settings.bot_user_id,
            token=_format_token(settings.token),
            refresh_token=settings.refresh_token or '',
            login=settings.login,
            scopes=list(settings.scopes or []),
            enabled=settings.enabled,
            super_user=settings.super_user,
            integrations=dict(settings.integrations),
        )
        self._bot = bot
        self._current = fingerprint
        self._bot_task = self._create_task(bot.start())

    async def _stop_bot(self, *, reason: Optional[str] = None):
        if not self._bot:
            return
        try:
            await self._bot.shutdown()
        except (BackendError, TransportError, RuntimeError) as exc:
            await push_console_event('error', f'Error while stopping bot: {exc}', event='lifecycle')
        if self._bot_task:
            try:
                await self._bot_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning('bot task ended with %r', exc)
        self._bot = None
        self._bot_task = None
        self._current = None
        if reason:
            await push_console_event('info', f'Bot stopped ({reason})', event='lifecycle')

    def _settings_from_config(self, data: Dict[str, object]) -> BotSettings:
        config = data or {}
        if not isinstance(config, dict):
            return BotSettings(
                token=None,
                refresh_token=None,
                login=None,
                client_id=None,
                client_secret=None,
                bot_user_id=None,
                scopes=[],
                enabled=False,
                error='Backend returned invalid bot configuration payload',
            )

        token = config.get('access_token') or config.get('token')
        refresh = config.get('refresh_token')
        login = config.get('login') or config.get('bot_login')
        client_id = config.get('client_id') or TWITCH_CLIENT_ID_ENV
        client_secret = config.get('client_secret') or TWITCH_CLIENT_SECRET_ENV
        bot_user_id = config.get('bot_user_id') or config.get('bot_id') or BOT_USER_ID_ENV
        raw_scopes = config.get('scopes') or []
        if isinstance(raw_scopes, str):
            scopes = [scope for scope in raw_scopes.split() if scope]
        elif isinstance(raw_scopes, list):
            scopes = [str(scope) for scope in raw_scopes if scope]
        else:
            scopes = []

        required = {
            'access_token': token,
            'refresh_token': refresh,
            'login': login,
            'client_id': client_id,
            'client_secret': client_secret,
            'bot_user_id': bot_user_id,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            return BotSettings(
                token=None,
                refresh_token=None,
                login=None,
                client_id=None,
                client_secret=None,
                bot_user_id=None,
                scopes=[],
                enabled=False,
                error='Missing bot credentials: ' + ', '.join(missing),
            )

        integrations = {key: str(config[key]) for key in INTEGRATION_KEYS if config.get(key)}
        return BotSettings(
            token=token,
            refresh_token=refresh,
            login=login,
            client_id=client_id,
            client_secret=client_secret,
            bot_user_id=str(bot_user_id),
            scopes=scopes,
            enabled=bool(config.get('enabled')),
            super_user=config.get('super_user') or SUPER_USER_ENV,
            integrations=integrations,
        )


# ---- entry ----
async def main():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    await backend.start()
    service = BotService(backend)
    await service.run()

if __name__ == '__main__':
    asyncio.run(main())
