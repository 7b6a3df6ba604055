"""Environment lock held while a run is in the ``run`` stage."""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType

from deploy_orchestrator.backend.store import BackendStore
from deploy_orchestrator.domain.models import BackendState
from deploy_orchestrator.errors import LockConflictError
from deploy_orchestrator.pipeline.retry import RetryPolicy

logger = logging.getLogger(__name__)


class EnvironmentLock:
    """Scoped mutual exclusion over one environment's lock record.

    Release runs on every exit path, including cancellation.
    """

    def __init__(
        self,
        store: BackendStore,
        backend: BackendState,
        owner: str,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._owner = owner
        self._retry = retry
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        holder = await self._store.acquire_lock(
            self._backend.lock_table, self._backend.lock_key, self._owner
        )
        if holder is not None:
            raise LockConflictError(
                f"Environment {self._backend.environment.value} is locked by {holder}",
                holder=holder,
            )
        self._held = True
        logger.info("Acquired %s lock for %s", self._backend.environment.value, self._owner)

    async def release(self) -> None:
        if not self._held:
            return
        await self._store.release_lock(
            self._backend.lock_table, self._backend.lock_key, self._owner
        )
        self._held = False
        logger.info("Released %s lock for %s", self._backend.environment.value, self._owner)

    async def __aenter__(self) -> "EnvironmentLock":
        if self._retry is None:
            await self.acquire()
        else:
            await self._retry.run(
                self.acquire, label=f"{self._backend.environment.value} lock"
            )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await asyncio.shield(self.release())
