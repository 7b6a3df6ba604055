from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from deploy_orchestrator.backend.manager import BackendBootstrapManager
from deploy_orchestrator.config import Settings, settings_from_mapping
from deploy_orchestrator.domain.models import (
    ArtifactRef,
    Credential,
    CredentialPurpose,
    Environment,
    Finding,
    RoleTier,
)
from deploy_orchestrator.errors import LockConflictError, TransientInfraError
from deploy_orchestrator.pipeline.retry import RetryPolicy
from deploy_orchestrator.pipeline.runner import Collaborators, PipelineRunner, StageBudget
from deploy_orchestrator.pipeline.state_machine import PipelineRun
from deploy_orchestrator.policy.gate import PolicyGate
from deploy_orchestrator.routing.resolver import EnvironmentResolver
from deploy_orchestrator.utils.time import utc_now

CENTRAL_ARN = "arn:aws:iam::999999999999:role/central"
BOOTSTRAP_ARN = "arn:aws:iam::999999999999:role/bootstrap"
ACCOUNTS = {"dev": "111111111111", "staging": "222222222222", "prod": "333333333333"}


def settings_data(history_path: str | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "project": "static-site",
        "environments": {
            "dev": {
                "account_id": ACCOUNTS["dev"],
                "budget_limit": 10,
                "enforcement_level": "info",
            },
            "staging": {
                "account_id": ACCOUNTS["staging"],
                "budget_limit": 25,
                "enforcement_level": "warning",
            },
            "prod": {
                "account_id": ACCOUNTS["prod"],
                "budget_limit": 50,
                "enforcement_level": "blocking",
                "health_check_url": "https://www.example.com/",
            },
        },
        "roles": [
            {
                "tier": "bootstrap",
                "arn": BOOTSTRAP_ARN,
                "trusted_by": [{"principal": "external", "repository": "org/site"}],
            },
            {
                "tier": "central",
                "arn": CENTRAL_ARN,
                "trusted_by": [{"principal": "external", "repository": "org/site"}],
            },
        ]
        + [
            {
                "tier": "environment",
                "environment": name,
                "arn": f"arn:aws:iam::{account}:role/deploy-{name}",
                "trusted_by": [{"principal": CENTRAL_ARN}],
            }
            for name, account in ACCOUNTS.items()
        ],
        "rollback": {"authorized_approvers": ["release-manager"]},
    }
    if history_path:
        data["storage"] = {"history_path": history_path, "sqlite_wal": False}
    return data


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return settings_from_mapping(settings_data(str(tmp_path / "history.sqlite")))


@pytest.fixture
def prod(settings: Settings) -> Environment:
    return settings.environment("prod")


@pytest.fixture
def staging(settings: Settings) -> Environment:
    return settings.environment("staging")


@pytest.fixture
def dev(settings: Settings) -> Environment:
    return settings.environment("dev")


def make_credential(
    tier: RoleTier = RoleTier.ENVIRONMENT,
    account_id: str = "333333333333",
    lifetime: timedelta = timedelta(hours=1),
    issued_ago: timedelta = timedelta(0),
) -> Credential:
    issued = utc_now() - issued_ago
    return Credential(
        role_arn=f"arn:aws:iam::{account_id}:role/{tier.value}",
        session_name="test-session",
        expires_at=issued + lifetime,
        account_id=account_id,
        tier=tier,
        access_key_id="ASIATESTKEY0000",
        secret_access_key="secret",
        session_token="token",
        issued_at=issued,
    )


class FakeChain:
    """Hands out credentials for the environment's account without STS."""

    instances: list["FakeChain"] = []

    def __init__(
        self, error: Exception | None = None, failures: list[Exception] | None = None
    ) -> None:
        self.error = error
        self.failures = list(failures or [])
        self.calls: list[tuple[str, CredentialPurpose]] = []
        self.discarded = False
        FakeChain.instances.append(self)

    async def obtain(
        self, environment: Environment, purpose: CredentialPurpose = CredentialPurpose.DEPLOY
    ) -> Credential:
        self.calls.append((environment.name.value, purpose))
        if self.error is not None:
            raise self.error
        if self.failures:
            raise self.failures.pop(0)
        tier = RoleTier.BOOTSTRAP if purpose is CredentialPurpose.BOOTSTRAP else RoleTier.ENVIRONMENT
        return make_credential(tier=tier, account_id=environment.account_id)

    def discard(self) -> None:
        self.discarded = True


class FakeBackendStore:
    """In-memory blob store plus lock table with creation-call counting."""

    def __init__(self) -> None:
        self.buckets: dict[str, dict[str, str]] = {}
        self.tables: set[str] = set()
        self.locks: dict[tuple[str, str], str] = {}
        self.create_bucket_calls = 0
        self.create_table_calls = 0
        self.harden_calls = 0
        self.fail_next_table_create = False
        self.lock_log: list[tuple[str, str]] = []

    async def bucket_tags(self, name: str) -> dict[str, str] | None:
        await asyncio.sleep(0)
        tags = self.buckets.get(name)
        return dict(tags) if tags is not None else None

    async def create_bucket(self, name: str, tags: dict[str, str]) -> bool:
        self.create_bucket_calls += 1
        await asyncio.sleep(0)
        if name in self.buckets:
            return False
        self.buckets[name] = dict(tags)
        return True

    async def harden_bucket(self, name: str, tags: dict[str, str]) -> list[str]:
        self.harden_calls += 1
        current = self.buckets[name]
        if all(current.get(key) == value for key, value in tags.items()):
            return []
        current.update(tags)
        return ["tags"]

    async def delete_bucket(self, name: str) -> bool:
        return self.buckets.pop(name, None) is not None

    async def table_exists(self, name: str) -> bool:
        await asyncio.sleep(0)
        return name in self.tables

    async def create_table(self, name: str, tags: dict[str, str]) -> bool:
        self.create_table_calls += 1
        if self.fail_next_table_create:
            self.fail_next_table_create = False
            raise TransientInfraError(f"Create table {name} throttled")
        if name in self.tables:
            return False
        self.tables.add(name)
        return True

    async def delete_table(self, name: str) -> bool:
        if name not in self.tables:
            return False
        self.tables.discard(name)
        return True

    async def acquire_lock(self, table: str, key: str, owner: str) -> str | None:
        await asyncio.sleep(0)
        holder = self.locks.get((table, key))
        if holder is not None and holder != owner:
            return holder
        self.locks[(table, key)] = owner
        self.lock_log.append(("acquire", owner))
        return None

    async def release_lock(self, table: str, key: str, owner: str) -> None:
        if self.locks.get((table, key)) == owner:
            del self.locks[(table, key)]
            self.lock_log.append(("release", owner))


class FakeBuilder:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    async def build(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ArtifactRef(
            stage="build",
            location=f"plans/{run.run_id}.tfplan",
            checksum=f"sha-{run.commit or run.run_id}",
            commit=run.commit,
        )


class FakeScanner:
    def __init__(self, findings: list[Finding] | None = None) -> None:
        self.findings = list(findings or [])

    async def scan(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> list[Finding]:
        return list(self.findings)


class FakeApplier:
    """Records concurrency so tests can assert the lock held."""

    def __init__(self, delay: float = 0.0, failures: list[Exception] | None = None) -> None:
        self.delay = delay
        self.failures = list(failures or [])
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def apply(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef:
        self.calls.append(run.run_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.failures:
                raise self.failures.pop(0)
        finally:
            self.active -= 1
        build = run.artifacts["build"]
        return ArtifactRef(stage="apply", location=build.location, checksum=build.checksum)


class FakeSyncer:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def sync(
        self, run: PipelineRun, environment: Environment, credential: Credential
    ) -> ArtifactRef:
        self.calls.append(run.run_id)
        return ArtifactRef(stage="sync", location="s3://site/", checksum="sync")


class FakeHealth:
    def __init__(self, healthy: bool = True) -> None:
        self.healthy = healthy
        self.calls = 0

    async def check(self, environment: Environment) -> bool:
        self.calls += 1
        return self.healthy


async def no_sleep(_: float) -> None:
    await asyncio.sleep(0)


async def short_sleep(_: float) -> None:
    await asyncio.sleep(0.002)


class Harness:
    """PipelineRunner wired to in-memory fakes."""

    def __init__(
        self,
        settings: Settings,
        history: Any = None,
        chain_factory: Any = None,
        timeouts: StageBudget | None = None,
        **fakes: Any,
    ) -> None:
        self.store = FakeBackendStore()
        self.builder = fakes.get("builder") or FakeBuilder()
        self.scanner = fakes.get("scanner") or FakeScanner()
        self.applier = fakes.get("applier") or FakeApplier()
        self.syncer = fakes.get("syncer") or FakeSyncer()
        self.health = fakes.get("health") or FakeHealth()
        self.chains: list[FakeChain] = []

        def default_chain() -> FakeChain:
            chain = FakeChain()
            self.chains.append(chain)
            return chain

        self.runner = PipelineRunner(
            project=settings.project,
            resolver=EnvironmentResolver.from_settings(settings),
            chain_factory=chain_factory or default_chain,
            store_factory=lambda environment, credential: self.store,
            gate=PolicyGate(),
            collaborators=self.collaborators(),
            retry=RetryPolicy(retry_on=(TransientInfraError,), sleep=no_sleep),
            lock_retry=RetryPolicy(
                max_attempts=200,
                base_delay=0.0,
                multiplier=1.0,
                retry_on=(LockConflictError, TransientInfraError),
                sleep=short_sleep,
            ),
            timeouts=timeouts,
            history=history,
        )

    def collaborators(self) -> Collaborators:
        return Collaborators(
            builder=self.builder,
            scanner=self.scanner,
            applier=self.applier,
            syncer=self.syncer,
            health=self.health,
        )

    async def provision(self, *environments: Environment) -> None:
        manager = BackendBootstrapManager("static-site", self.store)
        for environment in environments:
            await manager.ensure_backend(environment)
