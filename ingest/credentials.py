import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from api.metrics import metrics
from ingest.groww_rest import GrowwRESTClient, ProviderAPIError, ProviderUnavailable


logger = logging.getLogger(__name__)

SOURCE_MANUAL = 'manual'
SOURCE_DERIVED = 'api_key_secret'
TOKEN_PATH = '/token/api/access'


class CredentialError(Exception):
    """The provider access token could not be obtained."""


@dataclass(frozen=True)
class AccessCredential:
    token: str
    acquired_at: float
    expires_at: float
    source: str

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and now < self.expires_at


def checksum(secret: str, timestamp: str) -> str:
    return hashlib.sha256(f"{secret}{timestamp}".encode('utf-8')).hexdigest()


def next_rotation_expiry(
    now: float,
    tz: ZoneInfo,
    rotation_hour: int = 6,
    margin_s: float = 60.0,
) -> float:
    """Epoch seconds of the next daily rotation boundary minus the safety margin.

    The provider rotates tokens at a fixed civil time every day, so the expiry
    depends on the wall-clock date rather than on when the token was issued.
    """
    local_now = datetime.fromtimestamp(now, tz)
    boundary = local_now.replace(hour=rotation_hour, minute=0, second=0, microsecond=0)
    if local_now.hour >= rotation_hour:
        boundary = boundary + timedelta(days=1)
    return boundary.timestamp() - margin_s


class CredentialManager:
    """Owns the provider access token and its daily expiry."""

    def __init__(
        self,
        rest: GrowwRESTClient,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timezone: str = 'Asia/Kolkata',
        rotation_hour: int = 6,
        expiry_margin_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._rest = rest
        self.api_key = api_key
        self.api_secret = api_secret
        self.tz = ZoneInfo(timezone)
        self.rotation_hour = rotation_hour
        self.expiry_margin_s = expiry_margin_s
        self._clock = clock
        self._credential: Optional[AccessCredential] = None
        self._last_source: Optional[str] = None
        self._last_set_at: Optional[float] = None
        self._last_expires_at: Optional[float] = None
        self._lock = asyncio.Lock()
        self._on_manual_token: Optional[Callable[[], None]] = None

    def on_manual_token(self, callback: Callable[[], None]) -> None:
        """Register a hook fired after an operator installs a token."""
        self._on_manual_token = callback

    def _compute_expiry(self, now: float) -> float:
        return next_rotation_expiry(now, self.tz, self.rotation_hour, self.expiry_margin_s)

    def _install(self, token: str, source: str) -> AccessCredential:
        now = self._clock()
        credential = AccessCredential(
            token=token,
            acquired_at=now,
            expires_at=self._compute_expiry(now),
            source=source,
        )
        self._credential = credential
        self._last_source = source
        self._last_set_at = credential.acquired_at
        self._last_expires_at = credential.expires_at
        metrics.record_token_acquired(source)
        return credential

    def current(self) -> Optional[AccessCredential]:
        credential = self._credential
        if credential is not None and credential.is_valid(self._clock()):
            return credential
        return None

    async def get_token(self) -> AccessCredential:
        credential = self.current()
        if credential is not None:
            return credential
        async with self._lock:
            # Another caller may have refreshed while we waited.
            credential = self.current()
            if credential is not None:
                return credential
            return await self._exchange_key_secret()

    async def _exchange_key_secret(self) -> AccessCredential:
        if not self.api_key or not self.api_secret:
            raise CredentialError(
                "Groww API key/secret not configured; install an access token via the operator override"
            )
        timestamp = str(int(self._clock()))
        body = {
            'key_type': 'approval',
            'checksum': checksum(self.api_secret, timestamp),
            'timestamp': timestamp,
        }
        logger.info("Requesting Groww access token via API key/secret")
        try:
            payload = await self._rest.post(TOKEN_PATH, json_body=body, bearer=self.api_key)
        except ProviderAPIError as exc:
            logger.error("Groww token exchange failed (status=%s): %s", exc.status, exc.body)
            raise CredentialError(f"Groww token exchange failed: {exc.status}") from exc
        except ProviderUnavailable as exc:
            logger.error("Groww token exchange unavailable: %s", exc)
            raise CredentialError("Groww token exchange unavailable") from exc

        token = payload.get('token') if isinstance(payload, dict) else None
        if not token:
            logger.error("Groww token exchange returned no token: %s", payload)
            raise CredentialError("Groww token exchange returned no token")

        credential = self._install(token, SOURCE_DERIVED)
        logger.info(
            "Groww access token obtained, expires in %.1fh",
            (credential.expires_at - credential.acquired_at) / 3600.0,
        )
        return credential

    def set_manual_token(self, token: str) -> Dict[str, Any]:
        token = (token or '').strip()
        if not token:
            raise CredentialError("Manual token must be non-empty")
        credential = self._install(token, SOURCE_MANUAL)
        hours = round((credential.expires_at - credential.acquired_at) / 3600.0)
        logger.info("Groww access token set manually, expires in %sh", hours)
        if self._on_manual_token is not None:
            self._on_manual_token()
        return {'success': True, 'expires_in': f"{hours} hours"}

    def invalidate(self) -> None:
        if self._credential is not None:
            logger.warning("Invalidating Groww access token (source=%s)", self._credential.source)
            metrics.record_token_invalidated()
        self._credential = None

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        has_token = self.current() is not None
        expires_at = self._last_expires_at
        return {
            'has_token': has_token,
            'source': self._last_source or 'none',
            'set_at': self._iso(self._last_set_at),
            'expires_at': self._iso(expires_at),
            'is_expired': expires_at is not None and now >= expires_at,
        }

    def _iso(self, ts: Optional[float]) -> Optional[str]:
        if ts is None:
            return None
        return datetime.fromtimestamp(ts, self.tz).isoformat()
