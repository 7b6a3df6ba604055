"""Application context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

from deploy_orchestrator.audit.db import RunHistoryStore
from deploy_orchestrator.backend.manager import BackendBootstrapManager
from deploy_orchestrator.backend.store import AwsBackendStore, BackendStore
from deploy_orchestrator.config import Settings, load_settings
from deploy_orchestrator.credentials.cache import CredentialCache
from deploy_orchestrator.credentials.chain import CredentialDelegationChain
from deploy_orchestrator.credentials.identity import load_web_identity
from deploy_orchestrator.credentials.sts_provider import STSCredentialProvider
from deploy_orchestrator.credentials.trust import DelegationTree
from deploy_orchestrator.domain.models import (
    BackendState,
    Credential,
    CredentialPurpose,
    Environment,
)
from deploy_orchestrator.errors import LockConflictError, TransientInfraError
from deploy_orchestrator.pipeline.collaborators import (
    CommandApplier,
    CommandBuilder,
    CommandExecutor,
    CommandScanner,
    CommandSyncer,
    HttpHealthChecker,
)
from deploy_orchestrator.pipeline.retry import RetryPolicy
from deploy_orchestrator.pipeline.runner import Collaborators, PipelineRunner, StageBudget
from deploy_orchestrator.policy.gate import PolicyGate
from deploy_orchestrator.rollback.approvers import ApproverSet
from deploy_orchestrator.rollback.controller import RollbackController
from deploy_orchestrator.routing.resolver import EnvironmentResolver

logger = logging.getLogger(__name__)

ChainFactory = Callable[[], CredentialDelegationChain]
StoreFactory = Callable[[Environment, Credential], BackendStore]


@dataclass
class AppContext:
    """Process-wide dependency container, built once from ``Settings``.

    Credentials are not held here: every run and every bootstrap obtains its
    own chain from ``chain_factory``.
    """

    settings: Settings
    history: RunHistoryStore
    resolver: EnvironmentResolver
    runner: PipelineRunner
    rollback: RollbackController
    chain_factory: ChainFactory
    store_factory: StoreFactory

    async def _privileged_manager(self, environment: Environment) -> BackendBootstrapManager:
        chain = self.chain_factory()
        try:
            credential = await chain.obtain(environment, CredentialPurpose.BOOTSTRAP)
        finally:
            chain.discard()
        return BackendBootstrapManager(
            self.settings.project, self.store_factory(environment, credential)
        )

    async def bootstrap(self, environment: Environment) -> BackendState:
        manager = await self._privileged_manager(environment)
        return await manager.ensure_backend(environment)

    async def decommission(self, environment: Environment) -> BackendState:
        manager = await self._privileged_manager(environment)
        return await manager.decommission(environment)

    def close(self) -> None:
        self.history.close()


def default_collaborators(settings: Settings) -> Collaborators:
    commands = settings.commands
    executor = CommandExecutor(
        settings.project, commands.working_directory, checkout=commands.checkout
    )
    return Collaborators(
        builder=CommandBuilder(executor, commands.build, commands.plan_artifact),
        scanner=CommandScanner(executor, commands.scan),
        applier=CommandApplier(executor, commands.apply, commands.rollback_apply),
        syncer=CommandSyncer(executor, commands.sync),
        health=HttpHealthChecker(),
    )


def build_app_context(
    settings: Settings,
    chain_factory: ChainFactory | None = None,
    store_factory: StoreFactory | None = None,
    collaborators: Collaborators | None = None,
    history: RunHistoryStore | None = None,
) -> AppContext:
    """Wire every component from settings.

    The factories and collaborators default to the AWS and subprocess
    implementations; tests pass fakes.
    """
    if chain_factory is None:
        tree = DelegationTree(settings.role_records())
        provider = STSCredentialProvider(region=settings.identity.sts_region)

        def chain_factory() -> CredentialDelegationChain:
            identity = load_web_identity(settings.identity)
            return CredentialDelegationChain(
                tree, provider, identity, cache=CredentialCache(), session_prefix=settings.project
            )

    if store_factory is None:

        def store_factory(environment: Environment, credential: Credential) -> BackendStore:
            return AwsBackendStore(region=environment.region, credential=credential)

    if history is None:
        history = RunHistoryStore(settings.storage.history_path, wal=settings.storage.sqlite_wal)

    resolver = EnvironmentResolver.from_settings(settings)
    gate = PolicyGate(
        warn_ratio=settings.policy.budget_warn_ratio,
        block_ratio=settings.policy.budget_block_ratio,
    )
    retry = RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        base_delay=settings.retry.base_delay_seconds,
        max_delay=settings.retry.max_delay_seconds,
        retry_on=(TransientInfraError,),
    )
    lock_retry = RetryPolicy(
        max_attempts=settings.lock.max_attempts,
        base_delay=settings.lock.delay_seconds,
        multiplier=1.0,
        retry_on=(LockConflictError, TransientInfraError),
    )
    runner = PipelineRunner(
        project=settings.project,
        resolver=resolver,
        chain_factory=chain_factory,
        store_factory=store_factory,
        gate=gate,
        collaborators=collaborators or default_collaborators(settings),
        retry=retry,
        lock_retry=lock_retry,
        timeouts=StageBudget(
            build=settings.timeouts.build_seconds,
            test=settings.timeouts.test_seconds,
            run=settings.timeouts.run_seconds,
        ),
        history=history,
    )
    approvers = ApproverSet.load(
        settings.rollback.authorized_approvers, settings.rollback.codeowners_path
    )
    rollback = RollbackController(
        runner=runner,
        history=history,
        approvers=approvers,
        min_reason_length=settings.rollback.min_reason_length,
    )
    logger.debug(
        "Application context ready: %d environment(s), %d approver(s)",
        len(settings.environments),
        len(approvers),
    )
    return AppContext(
        settings=settings,
        history=history,
        resolver=resolver,
        runner=runner,
        rollback=rollback,
        chain_factory=chain_factory,
        store_factory=store_factory,
    )


@lru_cache(maxsize=1)
def get_app_context(config_path: str | None = None) -> AppContext:
    return build_app_context(load_settings(config_path))
