from __future__ import annotations
import json
from typing import Dict, List, Optional
from urllib.parse import quote

import aiohttp

from bot.config import ADMIN_TOKEN, BACKEND_URL, DEFAULT_PREFIX
from bot.permissions import Permission
from bot.models import Command


class BackendError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class NotFoundError(BackendError):
    pass


class AlreadyExistsError(BackendError):
    pass


def _error_for_status(status: int, detail: object) -> BackendError:
    if status == 404:
        return NotFoundError(status, detail)
    if status == 409:
        return AlreadyExistsError(status, detail)
    return BackendError(status, detail)


def _seg(value: str) -> str:
    return quote(value, safe='')


class Backend:
    def __init__(self, base_url: str, admin_token: str):
        self.base = base_url.rstrip('/')
        self.headers = {'X-Admin-Token': admin_token, 'Content-Type': 'application/json'}
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        try:
            async with self.session.request(method, url, headers=self.headers, data=json.dumps(payload) if payload else None) as r:
                content_type = r.headers.get('content-type', '')
                is_json = content_type.startswith('application/json')
                if r.status >= 400:
                    detail: object = ''
                    if is_json:
                        try:
                            data = await r.json()
                        except (aiohttp.ContentTypeError, ValueError):
                            data = None
                        if isinstance(data, dict) and 'detail' in data:
                            detail = data['detail']
                        else:
                            detail = data or ''
                    if not detail:
                        detail = await r.text()
                    if isinstance(detail, list):
                        detail = ', '.join(str(item) for item in detail)
                    raise _error_for_status(r.status, detail or f"{method} {path} failed")
                if is_json:
                    return await r.json()
                return await r.text()
        except aiohttp.ClientError as exc:
            raise BackendError(0, f"{method} {path}: {exc}") from exc

    # ---- bot ----
    async def get_bot_config(self) -> Dict[str, object]:
        return await self._req('GET', "/bot/config")

    async def update_bot_tokens(
        self,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: Optional[str],
        scopes: List[str],
    ) -> Dict[str, object]:
        payload = {
            'access_token': access_token,
            'refresh_token': refresh_token,
            'expires_at': expires_at,
            'scopes': scopes,
        }
        return await self._req('POST', "/bot/config/tokens", payload)

    async def push_bot_log(
        self,
        *,
        level: str = 'info',
        message: str,
        metadata: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        payload = {
            'level': level,
            'message': message,
            'metadata': metadata or {},
            'source': 'bot',
        }
        return await self._req('POST', "/bot/logs", payload)

    # ---- channels ----
    async def get_channels(self) -> List[Dict[str, object]]:
        return await self._req('GET', "/channels")

    async def add_channel(self, channel: str, prefix: Optional[str] = None):
        payload: Dict[str, object] = {'channel_name': channel}
        if prefix:
            payload['prefix'] = prefix
        return await self._req('POST', "/channels", payload)

    async def remove_channel(self, channel: str):
        return await self._req('DELETE', f"/channels/{_seg(channel)}")

    async def get_prefix(self, channel: str) -> str:
        try:
            row = await self._req('GET', f"/channels/{_seg(channel)}")
        except NotFoundError:
            return DEFAULT_PREFIX
        return row.get('prefix') or DEFAULT_PREFIX

    # ---- commands ----
    async def get_command(self, trigger: str, channel: str) -> Optional[Command]:
        try:
            row = await self._req('GET', f"/channels/{_seg(channel)}/commands/{_seg(trigger)}")
        except NotFoundError:
            return None
        try:
            permission = Permission.from_string(row.get('permission', 'all'))
        except ValueError as exc:
            raise BackendError(500, str(exc)) from exc
        return Command(
            trigger=row['trigger'],
            channel=channel,
            permission=permission,
            body=row['body'],
        )

    async def list_commands(self, channel: str) -> List[str]:
        return await self._req('GET', f"/channels/{_seg(channel)}/commands")

    async def add_command(self, trigger: str, body: str, channel: str, permission: str = 'all'):
        return await self._req('POST', f"/channels/{_seg(channel)}/commands", {
            'trigger': trigger, 'body': body, 'permission': permission,
        })

    async def del_command(self, trigger: str, channel: str):
        return await self._req('DELETE', f"/channels/{_seg(channel)}/commands/{_seg(trigger)}")

    # ---- redeems ----
    async def get_redeem_action(self, title: str, channel: str) -> Optional[str]:
        try:
            row = await self._req('GET', f"/channels/{_seg(channel)}/redeems/{_seg(title)}")
        except NotFoundError:
            return None
        return row.get('action')

    async def add_redeem(self, title: str, action: str, channel: str):
        return await self._req('POST', f"/channels/{_seg(channel)}/redeems", {
            'title': title, 'action': action,
        })

    async def del_redeem(self, title: str, channel: str):
        return await self._req('DELETE', f"/channels/{_seg(channel)}/redeems/{_seg(title)}")

    # ---- hitman ----
    async def add_hitman(self, channel: str, user: str):
        return await self._req('POST', f"/channels/{_seg(channel)}/hitman/{_seg(user)}")

    async def get_hitman_protected(self, channel: str, user: str) -> bool:
        try:
            row = await self._req('GET', f"/channels/{_seg(channel)}/hitman/{_seg(user)}")
        except NotFoundError:
            return False
        return bool(row.get('protected'))

    async def set_hitman_protection(self, channel: str, user: str, protected: bool, *, completed: Optional[bool] = None):
        payload: Dict[str, object] = {'protected': bool(protected)}
        if completed is not None:
            payload['completed'] = completed
        return await self._req('PUT', f"/channels/{_seg(channel)}/hitman/{_seg(user)}", payload)

    # ---- spotify ----
    async def get_spotify_tokens(self, channel: str) -> Dict[str, object]:
        return await self._req('GET', f"/channels/{_seg(channel)}/spotify")

    async def get_spotify_refresh_tokens(self) -> List[Dict[str, str]]:
        return await self._req('GET', "/spotify/refresh_tokens")

    async def update_spotify_token(
        self,
        channel: str,
        access_token: str,
        *,
        expires_at: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ):
        payload: Dict[str, object] = {'access_token': access_token, 'expires_at': expires_at}
        if refresh_token:
            payload['refresh_token'] = refresh_token
        return await self._req('PUT', f"/channels/{_seg(channel)}/spotify/token", payload)


backend = Backend(BACKEND_URL, ADMIN_TOKEN)
