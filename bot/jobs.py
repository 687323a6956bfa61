from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from bot.backend import BackendError
from bot.config import TOKEN_EXPIRY_MARGIN, TOKEN_RETRY_DELAY
from bot.integrations import IntegrationError, SpotifyClient

logger = logging.getLogger(__name__)


@dataclass
class RefreshState:
    channel: str
    refresh_token: str
    current_token: Optional[str] = None
    expiry: Optional[datetime] = None


class RefreshScheduler:
    """Keeps each channel's Spotify access token fresh.

    Every channel gets its own loop; a failing channel only delays itself.
    """

    def __init__(
        self,
        store,
        spotify: SpotifyClient,
        *,
        retry_delay: float = TOKEN_RETRY_DELAY,
        expiry_margin: float = TOKEN_EXPIRY_MARGIN,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.spotify = spotify
        self.retry_delay = retry_delay
        self.expiry_margin = expiry_margin
        self._sleep = sleep
        self.states: Dict[str, RefreshState] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

    async def start(self) -> int:
        rows = await self.store.get_spotify_refresh_tokens()
        for row in rows:
            channel = row.get('channel')
            refresh_token = row.get('refresh_token')
            if channel and refresh_token:
                self.start_channel(channel, refresh_token)
        logger.info('started %d token refresh loops', len(self.tasks))
        return len(self.tasks)

    def start_channel(self, channel: str, refresh_token: str) -> asyncio.Task:
        task = self.tasks.get(channel)
        if task and not task.done():
            return task
        state = RefreshState(channel=channel, refresh_token=refresh_token)
        self.states[channel] = state
        task = asyncio.create_task(self.refresh_loop(state))
        self.tasks[channel] = task
        return task

    async def refresh_once(self, state: RefreshState) -> float:
        """Refresh ``state`` and return how long to wait before the next run."""
        try:
            grant = await self.spotify.refresh(state.refresh_token)
            expiry = datetime.now(timezone.utc) + timedelta(seconds=grant.expires_in)
            await self.store.update_spotify_token(
                state.channel,
                grant.access_token,
                expires_at=expiry.isoformat(),
                refresh_token=grant.refresh_token,
            )
        except (IntegrationError, BackendError, asyncio.TimeoutError) as exc:
            logger.error('token refresh for %s failed: %s', state.channel, exc)
            return self.retry_delay
        state.current_token = grant.access_token
        state.expiry = expiry
        if grant.refresh_token:
            state.refresh_token = grant.refresh_token
        logger.info('refreshed spotify token for %s', state.channel)
        return max(grant.expires_in - self.expiry_margin, 0)

    async def refresh_loop(self, state: RefreshState) -> None:
        while True:
            try:
                delay = await self.refresh_once(state)
            except Exception:
                logger.exception('token refresh for %s failed unexpectedly', state.channel)
                delay = self.retry_delay
            await self._sleep(delay)

    async def stop(self) -> None:
        tasks = list(self.tasks.values())
        self.tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
