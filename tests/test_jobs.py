import asyncio
import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot.backend import BackendError
from bot.integrations import SpotifyError, TokenGrant
from bot.jobs import RefreshScheduler, RefreshState


class RefreshSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = MagicMock()
        self.store.update_spotify_token = AsyncMock()
        self.store.get_spotify_refresh_tokens = AsyncMock(return_value=[])
        self.spotify = MagicMock()
        self.spotify.refresh = AsyncMock(return_value=TokenGrant("access-1", 3600))
        self.delays = []

        async def fake_sleep(delay):
            self.delays.append(delay)
            await asyncio.Event().wait()

        self.scheduler = RefreshScheduler(self.store, self.spotify, sleep=fake_sleep)

    async def test_success_waits_until_just_before_expiry(self) -> None:
        state = RefreshState("chan", "refresh-1")

        delay = await self.scheduler.refresh_once(state)

        self.assertEqual(delay, 3540)
        self.assertEqual(state.current_token, "access-1")
        self.assertIsNotNone(state.expiry)
        self.spotify.refresh.assert_awaited_once_with("refresh-1")
        args, kwargs = self.store.update_spotify_token.await_args
        self.assertEqual(args, ("chan", "access-1"))
        self.assertIsNone(kwargs["refresh_token"])
        self.assertTrue(kwargs["expires_at"].endswith("+00:00"))
        self.assertIsNotNone(state.expiry.tzinfo)

    async def test_rotated_refresh_token_is_kept(self) -> None:
        self.spotify.refresh = AsyncMock(return_value=TokenGrant("access-2", 120, "refresh-2"))
        state = RefreshState("chan", "refresh-1")

        delay = await self.scheduler.refresh_once(state)

        self.assertEqual(delay, 60)
        self.assertEqual(state.refresh_token, "refresh-2")
        self.assertEqual(self.store.update_spotify_token.await_args.kwargs["refresh_token"], "refresh-2")

    async def test_provider_failure_retries_after_a_minute(self) -> None:
        self.spotify.refresh = AsyncMock(side_effect=SpotifyError("invalid_grant"))
        state = RefreshState("chan", "refresh-1")

        self.assertEqual(await self.scheduler.refresh_once(state), 60)
        self.assertIsNone(state.current_token)
        self.store.update_spotify_token.assert_not_awaited()

    async def test_store_failure_retries_after_a_minute(self) -> None:
        self.store.update_spotify_token = AsyncMock(side_effect=BackendError(500, "db locked"))
        state = RefreshState("chan", "refresh-1")

        self.assertEqual(await self.scheduler.refresh_once(state), 60)
        self.assertIsNone(state.current_token)

    async def test_timeout_retries_after_a_minute(self) -> None:
        self.spotify.refresh = AsyncMock(side_effect=asyncio.TimeoutError())
        state = RefreshState("chan", "refresh-1")

        self.assertEqual(await self.scheduler.refresh_once(state), 60)
        self.store.update_spotify_token.assert_not_awaited()

    async def test_unexpected_error_keeps_loop_alive(self) -> None:
        self.spotify.refresh = AsyncMock(side_effect=RuntimeError("bad payload"))

        with self.assertLogs("bot.jobs", level="ERROR"):
            task = self.scheduler.start_channel("chan", "refresh-1")
            for _ in range(5):
                await asyncio.sleep(0)

        self.assertEqual(self.delays, [60])
        self.assertFalse(task.done())
        await self.scheduler.stop()

    async def test_start_runs_one_loop_per_channel(self) -> None:
        self.store.get_spotify_refresh_tokens = AsyncMock(
            return_value=[
                {"channel": "a", "refresh_token": "ra"},
                {"channel": "b", "refresh_token": "rb"},
                {"channel": "c", "refresh_token": ""},
            ]
        )

        count = await self.scheduler.start()
        for _ in range(5):
            await asyncio.sleep(0)

        self.assertEqual(count, 2)
        self.assertEqual(set(self.scheduler.tasks), {"a", "b"})
        self.assertEqual(self.spotify.refresh.await_count, 2)
        self.assertEqual(self.delays, [3540, 3540])

        await self.scheduler.stop()
        self.assertEqual(self.scheduler.tasks, {})

    async def test_failing_channel_does_not_block_others(self) -> None:
        async def refresh(token):
            if token == "bad":
                raise SpotifyError("revoked")
            return TokenGrant("ok", 3600)

        self.spotify.refresh = AsyncMock(side_effect=refresh)
        self.scheduler.start_channel("broken", "bad")
        self.scheduler.start_channel("fine", "good")
        for _ in range(5):
            await asyncio.sleep(0)

        self.assertEqual(sorted(self.delays), [60, 3540])
        self.assertEqual(self.scheduler.states["fine"].current_token, "ok")
        self.assertIsNone(self.scheduler.states["broken"].current_token)

        await self.scheduler.stop()

    async def test_start_channel_is_idempotent(self) -> None:
        first = self.scheduler.start_channel("chan", "r")
        second = self.scheduler.start_channel("chan", "r")
        self.assertIs(first, second)
        await self.scheduler.stop()


if __name__ == "__main__":
    unittest.main()
