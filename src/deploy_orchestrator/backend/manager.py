"""Backend bootstrap manager.

Names are a pure function of ``(project, environment, account_id)``, so a
repeated ``ensure_backend`` can only ever converge on the same resources.
Creation goes through the store's compare-and-create calls, guarded by a
per-locator lock so concurrent callers in one process never both attempt
creation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from deploy_orchestrator.backend.store import BackendStore
from deploy_orchestrator.domain.models import BackendState, Environment
from deploy_orchestrator.errors import BackendOwnershipError

logger = logging.getLogger(__name__)

MANAGED_BY = "deploy-orchestrator"


def bucket_name(project: str, environment: Environment) -> str:
    return f"{project}-state-{environment.name.value}-{environment.account_id}"


def lock_table_name(project: str, environment: Environment) -> str:
    return f"{project}-locks-{environment.name.value}"


def state_key(environment: Environment) -> str:
    return f"environments/{environment.name.value}/terraform.tfstate"


def lock_key(environment: Environment) -> str:
    # Distinct from the LockID the IaC tool writes for its own state lock.
    return f"orchestrator/{environment.name.value}"


@dataclass(frozen=True)
class BackendCheck:
    state: BackendState
    bucket_exists: bool
    lock_table_exists: bool

    @property
    def complete(self) -> bool:
        return self.bucket_exists and self.lock_table_exists


class BackendBootstrapManager:
    def __init__(self, project: str, store: BackendStore) -> None:
        self._project = project
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def handle(self, environment: Environment, exists: bool = False) -> BackendState:
        return BackendState(
            environment=environment.name,
            store_locator=bucket_name(self._project, environment),
            lock_table=lock_table_name(self._project, environment),
            lock_key=lock_key(environment),
            region=environment.region,
            exists=exists,
        )

    def _tags(self, environment: Environment) -> dict[str, str]:
        return {
            "Environment": environment.name.value,
            "Project": self._project,
            "ManagedBy": MANAGED_BY,
        }

    def _check_owner(self, environment: Environment, locator: str, tags: dict[str, str]) -> None:
        owner = tags.get("Environment")
        if owner is None:
            logger.warning("State bucket %s carries no Environment tag", locator)
            return
        if owner != environment.name.value:
            raise BackendOwnershipError(
                f"State bucket {locator} is tagged for environment '{owner}', "
                f"not '{environment.name.value}'"
            )

    async def ensure_backend(self, environment: Environment) -> BackendState:
        """Create the environment's state store if needed and return its handle.

        A partially created backend is completed rather than rebuilt. An
        existing bucket gets only the hardening settings it lacks, and a
        missing lock table is created.
        """
        state = self.handle(environment)
        wanted = self._tags(environment)
        lock = self._locks.setdefault(state.store_locator, asyncio.Lock())
        async with lock:
            tags = await self._store.bucket_tags(state.store_locator)
            created = False
            if tags is None:
                created = await self._store.create_bucket(state.store_locator, wanted)
                if not created:
                    tags = await self._store.bucket_tags(state.store_locator) or {}
            if not created:
                self._check_owner(environment, state.store_locator, tags or {})
                applied = await self._store.harden_bucket(state.store_locator, wanted)
                if applied:
                    logger.warning(
                        "Completed partially created state bucket %s: %s",
                        state.store_locator,
                        ", ".join(applied),
                    )

            if not await self._store.table_exists(state.lock_table):
                await self._store.create_table(state.lock_table, wanted)
            elif not created:
                logger.info(
                    "Backend for %s already exists: %s",
                    environment.name.value,
                    state.store_locator,
                )
        return self.handle(environment, exists=True)

    async def verify_backend(self, environment: Environment) -> BackendCheck:
        state = self.handle(environment)
        tags = await self._store.bucket_tags(state.store_locator)
        if tags is not None:
            self._check_owner(environment, state.store_locator, tags)
        table = await self._store.table_exists(state.lock_table)
        bucket = tags is not None
        return BackendCheck(
            state=self.handle(environment, exists=bucket and table),
            bucket_exists=bucket,
            lock_table_exists=table,
        )

    async def describe_backend(self, environment: Environment) -> BackendState:
        """Return the handle without creating anything."""
        return (await self.verify_backend(environment)).state

    async def decommission(self, environment: Environment) -> BackendState:
        """Delete the lock table and the versioned state bucket."""
        state = self.handle(environment)
        lock = self._locks.setdefault(state.store_locator, asyncio.Lock())
        async with lock:
            tags = await self._store.bucket_tags(state.store_locator)
            if tags is not None:
                self._check_owner(environment, state.store_locator, tags)
            await self._store.delete_table(state.lock_table)
            if tags is not None:
                await self._store.delete_bucket(state.store_locator)
        logger.warning("Decommissioned backend for %s", environment.name.value)
        return state


def render_backend_config(state: BackendState, environment: Environment) -> str:
    """Backend configuration file consumed by ``tofu init -backend-config``."""
    return (
        f'bucket         = "{state.store_locator}"\n'
        f'key            = "{state_key(environment)}"\n'
        f'region         = "{state.region}"\n'
        f'dynamodb_table = "{state.lock_table}"\n'
        "encrypt        = true\n"
    )
