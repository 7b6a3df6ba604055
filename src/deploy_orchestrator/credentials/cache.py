"""Credential cache with single-flight async refresh.

Entries are keyed by (environment, tier) and considered stale once a fixed
fraction of their lifetime has elapsed, so a credential is never handed out
close enough to expiry to lapse mid-operation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from deploy_orchestrator.domain.models import Credential, EnvironmentName, RoleTier
from deploy_orchestrator.utils.time import ensure_aware, utc_now

DEFAULT_REFRESH_FRACTION = 0.8


@dataclass(frozen=True)
class CacheKey:
    environment: EnvironmentName
    tier: RoleTier


@dataclass
class CacheEntry:
    credential: Credential
    cached_at: datetime

    def refresh_at(self, fraction: float) -> datetime:
        issued = ensure_aware(self.credential.issued_at or self.cached_at)
        expires = ensure_aware(self.credential.expires_at)
        lifetime = max((expires - issued).total_seconds(), 0.0)
        return issued + timedelta(seconds=lifetime * fraction)

    def is_stale(self, fraction: float, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.refresh_at(fraction)

    @classmethod
    def from_credential(cls, credential: Credential) -> "CacheEntry":
        return cls(credential=credential, cached_at=utc_now())


class CredentialCache:
    """Async credential cache with single-flight refresh."""

    def __init__(self, refresh_fraction: float = DEFAULT_REFRESH_FRACTION) -> None:
        if not 0 < refresh_fraction <= 1:
            raise ValueError("refresh_fraction must be in (0, 1]")
        self._refresh_fraction = refresh_fraction
        self._cache: dict[CacheKey, CacheEntry] = {}
        self._in_flight: dict[CacheKey, asyncio.Future[Credential]] = {}
        self._lock = asyncio.Lock()

    async def get_or_refresh(
        self,
        key: CacheKey,
        refresh_fn: Callable[[], Awaitable[Credential]],
    ) -> Credential:
        async with self._lock:
            entry = self._cache.get(key)
            if entry and not entry.is_stale(self._refresh_fraction):
                return entry.credential

            in_flight = self._in_flight.get(key)
            if in_flight is None:
                in_flight = asyncio.get_running_loop().create_future()
                self._in_flight[key] = in_flight
                should_refresh = True
            else:
                should_refresh = False

        if not should_refresh:
            return await in_flight

        try:
            credential = await refresh_fn()
        except BaseException as exc:
            async with self._lock:
                self._cache.pop(key, None)
                future = self._in_flight.pop(key, None)
                if future and not future.done():
                    future.set_exception(exc)
                    future.exception()
            raise

        async with self._lock:
            self._cache[key] = CacheEntry.from_credential(credential)
            future = self._in_flight.pop(key, None)
            if future and not future.done():
                future.set_result(credential)

        return credential

    def discard(self) -> None:
        """Drop every cached credential."""
        self._cache.clear()
