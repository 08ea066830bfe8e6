import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from config import config


class ProviderAPIError(Exception):
    def __init__(self, status: int, path: str, body: str):
        self.status = status
        self.path = path
        self.body = body
        super().__init__(f"Groww API error (status={status}, path={path})")

    @property
    def is_auth_failure(self) -> bool:
        return self.status == 403

    @property
    def is_unavailable(self) -> bool:
        return self.status >= 500


class ProviderUnavailable(Exception):
    """Raised when the provider cannot be reached within the client deadline."""


class GrowwRESTClient:
    def __init__(self, base_url: Optional[str] = None, timeout_s: Optional[float] = None):
        provider_cfg = config.section('provider')
        self.base_url = (base_url or provider_cfg.get('base_url', 'https://api.groww.in/v1')).rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=float(timeout_s or provider_cfg.get('request_timeout_s', 8)))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    @staticmethod
    def _headers(bearer: Optional[str]) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'X-API-VERSION': '1.0',
        }
        if bearer:
            headers['Authorization'] = f'Bearer {bearer}'
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        bearer: Optional[str] = None,
    ) -> Any:
        session = await self._get_session()
        url = path if path.startswith('http') else f"{self.base_url}{path}"
        headers = self._headers(bearer)
        if json_body is not None:
            headers['Content-Type'] = 'application/json'

        try:
            async with session.request(
                method.upper(),
                url,
                params=params,
                json=json_body,
                headers=headers,
            ) as resp:
                text = await resp.text()
                content_type = resp.headers.get('Content-Type', '')
                payload: Any
                if 'json' in content_type:
                    try:
                        payload = json.loads(text)
                    except ValueError:
                        payload = text
                else:
                    payload = text

                if resp.status >= 400:
                    raise ProviderAPIError(resp.status, path, text)

                return payload
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable(f"Timed out calling {path}") from exc
        except aiohttp.ClientError as exc:
            raise ProviderUnavailable(f"Transport error calling {path}: {exc}") from exc

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        bearer: Optional[str] = None,
    ) -> Any:
        return await self._request('GET', path, params=params, bearer=bearer)

    async def post(
        self,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        bearer: Optional[str] = None,
    ) -> Any:
        return await self._request('POST', path, json_body=json_body, bearer=bearer)

    async def get_text(self, url: str) -> str:
        """Fetch a plain-text asset (e.g. the instruments CSV) without auth headers."""
        payload = await self._request('GET', url)
        if isinstance(payload, str):
            return payload
        return json.dumps(payload)
