"""Client for the Twitch PubSub channel points stream.

The client walks ``DISCONNECTED -> CONNECTING -> SUBSCRIBED -> LISTENING``.
Any failure drops it back to ``DISCONNECTED`` and after ``reconnect_delay``
seconds the whole cycle starts again, topic lookup included, for as long as
the process runs.
"""
from __future__ import annotations
import asyncio
import enum
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import aiohttp

from bot.backend import BackendError
from bot.config import PUBSUB_HEARTBEAT_INTERVAL, PUBSUB_RECONNECT_DELAY, PUBSUB_URL
from bot.interpreter import ExecutionError
from bot.outbound import OutboundHandle, TransportError

logger = logging.getLogger(__name__)

TOPIC_PREFIX = 'community-points-channel-v1'
REDEEM_TYPE = 'reward-redeemed'


class StreamState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    SUBSCRIBED = 'subscribed'
    LISTENING = 'listening'


def channel_topic(channel_id: str) -> str:
    return f'{TOPIC_PREFIX}.{channel_id}'


def listen_request(topics: Iterable[str], token: Optional[str], nonce: Optional[str] = None) -> Dict[str, Any]:
    return {
        'type': 'LISTEN',
        'nonce': nonce or uuid.uuid4().hex,
        'data': {'topics': list(topics), 'auth_token': token or ''},
    }


class PubSubClient:
    def __init__(
        self,
        *,
        lookup,
        store,
        router,
        outbound: OutboundHandle,
        credential: Callable[[], Optional[str]],
        channels: Callable[[], Iterable[str]],
        url: str = PUBSUB_URL,
        reconnect_delay: float = PUBSUB_RECONNECT_DELAY,
        heartbeat_interval: float = PUBSUB_HEARTBEAT_INTERVAL,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.lookup = lookup
        self.store = store
        self.router = router
        self.outbound = outbound
        self.credential = credential
        self.channels = channels
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self.session = session
        self._owns_session = session is None
        self._sleep = sleep
        self.state = StreamState.DISCONNECTED
        self.running = False
        self.topics: List[str] = []
        self.channel_ids: Dict[str, str] = {}
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self.running = False
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        task = self._task
        self._task = None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for redeem in list(self._pending):
            redeem.cancel()
        if self._owns_session and self.session:
            await self.session.close()
            self.session = None

    async def run_forever(self) -> None:
        self.running = True
        while self.running:
            try:
                await self.connect_once()
            except asyncio.CancelledError:
                self.state = StreamState.DISCONNECTED
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, BackendError, TransportError, OSError) as exc:
                logger.warning('event stream connection failed: %s', exc)
            except Exception:
                logger.exception('event stream connection failed unexpectedly')
            self.state = StreamState.DISCONNECTED
            if not self.running:
                break
            logger.info('reconnecting to event stream in %ss', self.reconnect_delay)
            await self._sleep(self.reconnect_delay)

    async def _resolve_topics(self) -> List[str]:
        logins = sorted({login.lower() for login in self.channels() if login})
        ids = await self.lookup.resolve_user_ids(logins) if logins else {}
        self.channel_ids = {str(user_id): login for login, user_id in ids.items()}
        return [channel_topic(user_id) for user_id in sorted(self.channel_ids)]

    async def connect_once(self) -> None:
        self.state = StreamState.CONNECTING
        self.topics = await self._resolve_topics()
        if not self.topics:
            logger.info('no channels to listen for redemptions on')
            return
        if self.session is None:
            self.session = aiohttp.ClientSession()
        async with self.session.ws_connect(self.url) as ws:
            self._ws = ws
            await ws.send_str(json.dumps(listen_request(self.topics, self.credential())))
            self.state = StreamState.SUBSCRIBED
            logger.info('listening on %d event topics', len(self.topics))
            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                self.state = StreamState.LISTENING
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self.handle_frame(msg.data)
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
                self._ws = None
        logger.info('event stream closed')

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await ws.ping()
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                logger.warning('event stream heartbeat failed: %s', exc)
                await ws.close()
                return

    def handle_frame(self, raw: str) -> Optional[asyncio.Task]:
        try:
            frame = json.loads(raw)
            kind = frame.get('type')
        except (ValueError, AttributeError) as exc:
            logger.warning('dropping unparseable event frame: %s', exc)
            return None
        if kind == 'PONG':
            return None
        if kind == 'RESPONSE':
            if frame.get('error'):
                logger.error('event subscription rejected: %s', frame['error'])
            return None
        if kind == 'RECONNECT':
            logger.info('event stream asked for a reconnect')
            if self._ws is not None:
                return self._track(asyncio.create_task(self._ws.close()))
            return None
        if kind != 'MESSAGE':
            logger.debug('ignoring event frame of type %s', kind)
            return None
        try:
            data = frame['data']
            topic = data['topic']
            message = json.loads(data['message'])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning('dropping malformed event message: %s', exc)
            return None
        if not topic.startswith(TOPIC_PREFIX) or message.get('type') != REDEEM_TYPE:
            return None
        redemption = (message.get('data') or {}).get('redemption') or {}
        channel_id = topic.rsplit('.', 1)[-1]
        return self._track(asyncio.create_task(self.handle_redeem(channel_id, redemption)))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _channel_login(self, channel_id: str) -> Optional[str]:
        login = self.channel_ids.get(channel_id)
        if login:
            return login
        return await self.lookup.resolve_login(channel_id)

    async def handle_redeem(self, channel_id: str, redemption: Dict[str, Any]) -> None:
        reward = redemption.get('reward') or {}
        title = reward.get('title')
        user = (redemption.get('user') or {}).get('login') or ''
        if not title:
            logger.warning('redemption without reward title on %s', channel_id)
            return
        try:
            channel = await self._channel_login(channel_id)
            if not channel:
                logger.warning('no channel for id %s', channel_id)
                return
            body = await self.store.get_redeem_action(title, channel)
            if body is None:
                logger.debug('no action for reward "%s" in %s', title, channel)
                return
            args: List[str] = []
            if reward.get('is_user_input_required'):
                args = (redemption.get('user_input') or '').split()
            logger.info('%s redeemed "%s" in %s', user, title, channel)
            text = await self.router.run_custom(body, args, channel, user)
        except (BackendError, ExecutionError, TransportError) as exc:
            logger.warning('redeem "%s" on %s failed: %s', title, channel_id, exc)
            return
        except Exception:
            logger.exception('redeem "%s" on %s failed unexpectedly', title, channel_id)
            return
        if text:
            await self.outbound.say(channel, text)
