from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import aiohttp

logger = logging.getLogger(__name__)

OPENWEATHERMAP_URL = 'https://api.openweathermap.org/data/2.5/weather'
SPOTIFY_API_URL = 'https://api.spotify.com/v1'
SPOTIFY_TOKEN_URL = 'https://accounts.spotify.com/api/token'
DEFAULT_TRANSLATE_URL = 'http://127.0.0.1:5000'


class IntegrationError(RuntimeError):
    pass


class LocationNotFound(IntegrationError):
    pass


class WeatherError(IntegrationError):
    pass


class TranslationError(IntegrationError):
    pass


class SpotifyError(IntegrationError):
    pass


class HttpIntegration:
    """Owns an aiohttp session shared by the requests of one integration."""

    error_class = IntegrationError

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: float = 10):
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _request(self, method: str, url: str, **kwargs) -> Tuple[int, Any]:
        if not self.session:
            await self.start()
        try:
            async with self.session.request(method, url, **kwargs) as r:
                if r.status == 204:
                    return r.status, None
                content_type = r.headers.get('content-type', '')
                if 'json' in content_type:
                    return r.status, await r.json()
                return r.status, await r.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise self.error_class(str(exc) or exc.__class__.__name__) from exc


def _format_temp(value: float) -> str:
    return f'{value:g}'


@dataclass
class WeatherReport:
    name: str
    country: str
    temp: float
    description: str

    def format(self) -> str:
        return f'{self.name}, {self.country}: {_format_temp(self.temp)}°C, {self.description}'


class WeatherClient(HttpIntegration):
    error_class = WeatherError

    def __init__(self, api_key: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key or ''

    async def get_weather(self, location: str) -> WeatherReport:
        status, data = await self._request(
            'GET',
            OPENWEATHERMAP_URL,
            params={'q': location, 'appid': self.api_key, 'units': 'metric'},
        )
        if not isinstance(data, dict):
            raise WeatherError(f'unexpected response ({status})')
        code = str(data.get('cod', status))
        if code == '404':
            raise LocationNotFound(location)
        if code != '200':
            raise WeatherError(data.get('message') or f'code {code}')
        try:
            conditions = data.get('weather') or [{}]
            return WeatherReport(
                name=data['name'],
                country=(data.get('sys') or {}).get('country') or '?',
                temp=float(data['main']['temp']),
                description=conditions[0].get('description', ''),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise WeatherError(f'malformed response: {exc}') from exc


@dataclass
class Translation:
    src: str
    dest: str
    text: str

    def format(self) -> str:
        return f'{self.src} -> {self.dest}: {self.text}'


class TranslationClient(HttpIntegration):
    error_class = TranslationError

    def __init__(self, base_url: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.base = (base_url or DEFAULT_TRANSLATE_URL).rstrip('/')

    async def translate(self, text: str) -> Translation:
        status, data = await self._request('GET', f"{self.base}/{quote(text, safe='')}")
        if status >= 400 or not isinstance(data, dict):
            raise TranslationError(f'translation service returned {status}')
        try:
            return Translation(src=data['src'], dest=data['dest'], text=data['text'])
        except KeyError as exc:
            raise TranslationError(f'missing field {exc}') from exc


@dataclass
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


def _clock(ms: int) -> str:
    seconds = int(ms) // 1000
    return f'{seconds // 60}:{seconds % 60:02d}'


class SpotifyClient(HttpIntegration):
    error_class = SpotifyError

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.client_id = client_id or ''
        self.client_secret = client_secret or ''

    async def _player(self, access_token: str, path: str = '/me/player') -> Optional[Dict[str, Any]]:
        status, data = await self._request(
            'GET',
            f'{SPOTIFY_API_URL}{path}',
            headers={'Authorization': f'Bearer {access_token}'},
        )
        if isinstance(data, dict) and 'error' in data:
            error = data['error']
            message = error.get('message') if isinstance(error, dict) else error
            raise SpotifyError(str(message))
        if status >= 400:
            raise SpotifyError(f'spotify returned {status}')
        if not isinstance(data, dict):
            return None
        return data

    async def current_song(self, access_token: str) -> Optional[str]:
        player = await self._player(access_token)
        item = (player or {}).get('item')
        if not item:
            return None
        try:
            artists = ', '.join(artist['name'] for artist in item.get('artists', []))
            position = _clock(player.get('progress_ms') or 0)
            length = _clock(item.get('duration_ms') or 0)
            return f"{artists} - {item['name']} [{position}/{length}]"
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise SpotifyError(f'malformed response: {exc}') from exc

    async def current_playlist(self, access_token: str) -> Optional[str]:
        player = await self._player(access_token)
        context = (player or {}).get('context') or {}
        return (context.get('external_urls') or {}).get('spotify')

    async def recently_played(self, access_token: str) -> Optional[str]:
        data = await self._player(access_token, '/me/player/recently-played?limit=1')
        items = (data or {}).get('items') or []
        if not items:
            return None
        try:
            track = items[0]['track']
            return f"{track['artists'][0]['name']} - {track['name']}"
        except (KeyError, IndexError, TypeError) as exc:
            raise SpotifyError(f'malformed response: {exc}') from exc

    async def refresh(self, refresh_token: str) -> TokenGrant:
        status, data = await self._request(
            'POST',
            SPOTIFY_TOKEN_URL,
            data={
                'grant_type': 'refresh_token',
                'refresh_token': refresh_token,
                'client_id': self.client_id,
                'client_secret': self.client_secret,
            },
        )
        if status >= 400 or not isinstance(data, dict) or 'access_token' not in data:
            detail = data.get('error_description') or data.get('error') if isinstance(data, dict) else data
            raise SpotifyError(f'token refresh failed ({status}): {detail}')
        try:
            return TokenGrant(
                access_token=data['access_token'],
                expires_in=int(data.get('expires_in', 3600)),
                refresh_token=data.get('refresh_token'),
            )
        except (TypeError, ValueError) as exc:
            raise SpotifyError(f'malformed response: {exc}') from exc
