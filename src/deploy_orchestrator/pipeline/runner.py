"""Pipeline runner: drives one PipelineRun from trigger to a terminal stage.

BUILD obtains the run's credential, locates the backend and produces the
plan artifact. TEST collects findings and asks the policy gate for a
decision. RUN takes the environment lock, applies and syncs what the
ActionSet names, then health-checks. Every failure ends the run in
``failed`` with a recorded reason; cancellation does the same and
re-raises once the lock has been released.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from deploy_orchestrator.backend.lock import EnvironmentLock
from deploy_orchestrator.backend.manager import BackendBootstrapManager
from deploy_orchestrator.backend.store import BackendStore
from deploy_orchestrator.credentials.chain import CredentialDelegationChain
from deploy_orchestrator.domain.models import (
    BackendState,
    Credential,
    DecisionAction,
    Environment,
    Trigger,
)
from deploy_orchestrator.errors import (
    BudgetExceededError,
    ConfigurationError,
    LockConflictError,
    OrchestratorError,
    PolicyBlockedError,
    StageError,
    StageTimeoutError,
    TransientInfraError,
)
from deploy_orchestrator.pipeline.collaborators import (
    Applier,
    Builder,
    HealthChecker,
    Scanner,
    Syncer,
)
from deploy_orchestrator.pipeline.retry import RetryPolicy
from deploy_orchestrator.pipeline.state_machine import PipelineRun, Stage
from deploy_orchestrator.policy.gate import PolicyGate
from deploy_orchestrator.routing.resolver import EnvironmentResolver

if TYPE_CHECKING:
    from deploy_orchestrator.audit.db import RunHistoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChainFactory = Callable[[], CredentialDelegationChain]
StoreFactory = Callable[[Environment, Credential], BackendStore]


@dataclass(frozen=True)
class Collaborators:
    builder: Builder
    scanner: Scanner
    applier: Applier
    syncer: Syncer
    health: HealthChecker


@dataclass(frozen=True)
class StageBudget:
    build: float = 20.0
    test: float = 35.0
    run: float = 120.0

    def for_stage(self, stage: Stage) -> float:
        return {Stage.BUILD: self.build, Stage.TEST: self.test, Stage.RUN: self.run}[stage]


class PipelineRunner:
    def __init__(
        self,
        project: str,
        resolver: EnvironmentResolver,
        chain_factory: ChainFactory,
        store_factory: StoreFactory,
        gate: PolicyGate,
        collaborators: Collaborators,
        retry: RetryPolicy | None = None,
        lock_retry: RetryPolicy | None = None,
        timeouts: StageBudget | None = None,
        history: "RunHistoryStore | None" = None,
    ) -> None:
        self._project = project
        self._resolver = resolver
        self._chain_factory = chain_factory
        self._store_factory = store_factory
        self._gate = gate
        self._collab = collaborators
        self._retry = retry or RetryPolicy(retry_on=(TransientInfraError,))
        self._lock_retry = lock_retry or RetryPolicy(
            max_attempts=5,
            base_delay=5.0,
            multiplier=1.0,
            retry_on=(LockConflictError, TransientInfraError),
        )
        self._timeouts = timeouts or StageBudget()
        self._history = history

    @property
    def resolver(self) -> EnvironmentResolver:
        return self._resolver

    async def execute(self, trigger: Trigger, commit: str | None = None) -> PipelineRun:
        """Resolve the trigger and drive a fresh run to a terminal stage.

        Raises:
            ConfigurationError: if the trigger cannot be resolved; no run is
                created in that case.
        """
        environment, actions = self._resolver.resolve(trigger)
        if actions.is_empty:
            raise ConfigurationError("Nothing to deploy: both infra and content are disabled")
        run = PipelineRun(
            environment=environment.name,
            trigger_source=trigger.source,
            action_set=actions,
            ref=trigger.ref,
            commit=commit,
            actor=trigger.actor,
        )
        logger.info(
            "[%s] %s deploy to %s (%s) from %s %s",
            run.run_id,
            ",".join(actions.members),
            environment.name.value,
            environment.enforcement_level.value,
            trigger.source.value,
            trigger.ref or "-",
        )
        return await self._drive(run, environment)

    async def redeploy(self, run: PipelineRun, environment: Environment) -> PipelineRun:
        """Drive a rollback run, which enters ``run`` directly."""
        if not run.is_rollback or run.stage is not Stage.RUN:
            raise ConfigurationError(f"Run {run.run_id} is not a pending rollback")
        logger.info(
            "[%s] rollback of %s in %s (%s)",
            run.run_id,
            run.rollback_of,
            environment.name.value,
            ",".join(run.action_set.members),
        )
        return await self._drive(run, environment)

    async def _drive(self, run: PipelineRun, environment: Environment) -> PipelineRun:
        self._save(run)
        chain: CredentialDelegationChain | None = None
        try:
            active = chain = self._chain_factory()
            if run.stage is Stage.BUILD:
                backend = await self._timed(
                    Stage.BUILD, lambda: self._build(run, environment, active)
                )
                self._transition(run, Stage.TEST)
                await self._timed(Stage.TEST, lambda: self._test(run, environment, active))
            else:
                backend = await self._timed(
                    Stage.RUN, lambda: self._prepare(run, environment, active)
                )
                self._gate_check(run, environment)
            await self._locked_run(run, environment, active, backend)
        except PolicyBlockedError as exc:
            logger.error("[%s] %s", run.run_id, exc)
            self._fail(run, exc.reason, exc.code, exc)
        except LockConflictError as exc:
            logger.error("[%s] gave up waiting for the lock: %s", run.run_id, exc)
            self._fail(run, f"contended: {exc}", "contended", exc)
        except OrchestratorError as exc:
            logger.error("[%s] %s failed: %s", run.run_id, run.stage.value, exc)
            self._fail(run, exc.reason, exc.code, exc)
        except asyncio.CancelledError:
            self._fail(run, "Run cancelled", "cancelled", None)
            logger.warning("[%s] cancelled", run.run_id)
            raise
        except Exception as exc:
            logger.exception("[%s] unexpected error", run.run_id)
            self._fail(run, f"Unexpected error: {exc}", "internal_error", exc)
            raise
        finally:
            if chain is not None:
                chain.discard()
            self._save(run)

        logger.info("[%s] finished: %s", run.run_id, " -> ".join(s.value for s in run.history))
        return run

    async def _timed(self, stage: Stage, operation: Callable[[], Awaitable[T]]) -> T:
        budget = self._timeouts.for_stage(stage)
        try:
            return await asyncio.wait_for(operation(), timeout=budget)
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError(
                f"{stage.value} stage exceeded its {budget:.0f}s budget"
            ) from exc

    async def _credential(
        self, chain: CredentialDelegationChain, environment: Environment
    ) -> Credential:
        return await self._retry.run(
            lambda: chain.obtain(environment), label=f"{environment.name.value} credentials"
        )

    async def _prepare(
        self,
        run: PipelineRun,
        environment: Environment,
        chain: CredentialDelegationChain,
    ) -> tuple[BackendStore, BackendState]:
        credential = await self._credential(chain, environment)
        store = self._store_factory(environment, credential)
        manager = BackendBootstrapManager(self._project, store)
        backend = await self._retry.run(
            lambda: manager.describe_backend(environment), label="backend lookup"
        )
        if not backend.exists:
            raise ConfigurationError(
                f"No state backend for {environment.name.value} "
                f"({backend.store_locator}); run bootstrap first"
            )
        return store, backend

    async def _build(
        self,
        run: PipelineRun,
        environment: Environment,
        chain: CredentialDelegationChain,
    ) -> tuple[BackendStore, BackendState]:
        prepared = await self._prepare(run, environment, chain)
        credential = await self._credential(chain, environment)
        artifact = await self._retry.run(
            lambda: self._collab.builder.build(run, environment, credential), label="build"
        )
        run.add_artifact(artifact)
        return prepared

    async def _test(
        self,
        run: PipelineRun,
        environment: Environment,
        chain: CredentialDelegationChain,
    ) -> None:
        credential = await self._credential(chain, environment)
        findings = await self._retry.run(
            lambda: self._collab.scanner.scan(run, environment, credential), label="scan"
        )
        run.add_findings(findings)
        self._gate_check(run, environment)

    def _gate_check(self, run: PipelineRun, environment: Environment) -> None:
        decision = self._gate.evaluate(environment, run.findings)
        run.decision = decision
        if decision.action is DecisionAction.BLOCK:
            error_cls = BudgetExceededError if decision.budget_exceeded else PolicyBlockedError
            raise error_cls(decision, environment.name.value)
        if decision.action is DecisionAction.WARN:
            logger.warning("[%s] policy gate warning: %s", run.run_id, decision.reason)
        else:
            logger.info("[%s] policy gate: %s", run.run_id, decision.reason)

    async def _locked_run(
        self,
        run: PipelineRun,
        environment: Environment,
        chain: CredentialDelegationChain,
        backend: tuple[BackendStore, BackendState],
    ) -> None:
        store, state = backend
        async with EnvironmentLock(store, state, owner=run.run_id, retry=self._lock_retry):
            if run.stage is not Stage.RUN:
                self._transition(run, Stage.RUN)
            await self._timed(Stage.RUN, lambda: self._run(run, environment, chain))
            self._transition(run, Stage.ROLLED_BACK if run.is_rollback else Stage.RELEASED)

    async def _run(
        self,
        run: PipelineRun,
        environment: Environment,
        chain: CredentialDelegationChain,
    ) -> None:
        credential = await self._credential(chain, environment)
        if run.action_set.deploy_infrastructure:
            artifact = await self._retry.run(
                lambda: self._collab.applier.apply(run, environment, credential),
                label="apply",
            )
            run.add_artifact(artifact)
        if run.action_set.deploy_content:
            artifact = await self._retry.run(
                lambda: self._collab.syncer.sync(run, environment, credential),
                label="sync",
            )
            run.add_artifact(artifact)

        healthy = await self._retry.run(
            lambda: self._collab.health.check(environment), label="health check"
        )
        if not healthy:
            raise StageError(
                f"Post-deploy health check failed for {environment.name.value} "
                f"({environment.health_check_url})",
                "health_check_failed",
            )
        run.health_ok = True

    def _fail(
        self, run: PipelineRun, reason: str, code: str, exc: BaseException | None
    ) -> None:
        if run.is_terminal:
            logger.error(
                "[%s] error after reaching %s: %s", run.run_id, run.stage.value, reason
            )
            return
        run.fail(reason, code, exc)

    def _transition(self, run: PipelineRun, stage: Stage) -> None:
        run.advance(stage)
        logger.debug("[%s] -> %s", run.run_id, stage.value)
        self._save(run)

    def _save(self, run: PipelineRun) -> None:
        if self._history is not None:
            self._history.save_run(run)
