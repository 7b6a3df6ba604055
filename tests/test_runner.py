from __future__ import annotations

import asyncio

import pytest

from conftest import FakeApplier, FakeChain, FakeHealth, FakeScanner, Harness
from deploy_orchestrator.audit.db import RunHistoryStore
from deploy_orchestrator.backend.manager import BackendBootstrapManager
from deploy_orchestrator.domain.models import (
    ActionSet,
    ArtifactRef,
    CredentialPurpose,
    DecisionAction,
    EnvironmentName,
    Finding,
    FindingCategory,
    Severity,
    Trigger,
    TriggerSource,
)
from deploy_orchestrator.errors import (
    AuthenticationError,
    BudgetExceededError,
    ConfigurationError,
    PolicyBlockedError,
    TransientInfraError,
)
from deploy_orchestrator.pipeline.runner import StageBudget
from deploy_orchestrator.pipeline.state_machine import PipelineRun, Stage

CRITICAL = Finding(FindingCategory.SECURITY, Severity.CRITICAL, "bucket is public")
PROD_TAG = Trigger(source=TriggerSource.TAG, ref="refs/tags/v1.2.3", actor="ci")


@pytest.fixture
def history(tmp_path):
    store = RunHistoryStore(str(tmp_path / "runs.sqlite"), wal=False)
    yield store
    store.close()


@pytest.mark.asyncio
async def test_successful_deploy_walks_every_stage(settings, prod, history):
    harness = Harness(settings, history=history)
    await harness.provision(prod)

    run = await harness.runner.execute(PROD_TAG, commit="abc123")

    assert run.history == [Stage.BUILD, Stage.TEST, Stage.RUN, Stage.RELEASED]
    assert run.environment is EnvironmentName.PROD
    assert set(run.artifacts) == {"build", "apply", "sync"}
    assert run.health_ok
    assert harness.store.locks == {}
    assert harness.store.lock_log == [("acquire", run.run_id), ("release", run.run_id)]
    assert harness.chains[0].discarded

    stored = history.get_run(run.run_id)
    assert stored is not None
    assert stored.history == run.history
    assert stored.actor == "ci"


@pytest.mark.asyncio
async def test_blocking_finding_stops_before_run(settings, prod, history):
    harness = Harness(settings, history=history, scanner=FakeScanner([CRITICAL]))
    await harness.provision(prod)

    run = await harness.runner.execute(PROD_TAG)

    assert run.history == [Stage.BUILD, Stage.TEST, Stage.FAILED]
    assert run.failure_code == "policy_blocked"
    assert isinstance(run.error, PolicyBlockedError)
    assert run.error.exit_code == 2
    assert run.decision.action is DecisionAction.BLOCK
    assert harness.applier.calls == []
    assert harness.store.lock_log == []
    assert history.get_run(run.run_id).stage is Stage.FAILED


@pytest.mark.asyncio
async def test_budget_overrun_blocks_prod(settings, prod):
    harness = Harness(settings, scanner=FakeScanner([Finding.cost(55.0)]))
    await harness.provision(prod)

    run = await harness.runner.execute(PROD_TAG)

    assert run.stage is Stage.FAILED
    assert run.failure_code == "budget_exceeded"
    assert isinstance(run.error, BudgetExceededError)


@pytest.mark.asyncio
async def test_staging_warning_still_releases(settings, staging):
    harness = Harness(settings, scanner=FakeScanner([CRITICAL]))
    await harness.provision(staging)

    run = await harness.runner.execute(Trigger(source=TriggerSource.TAG, ref="v1.2.3-rc1"))

    assert run.environment is EnvironmentName.STAGING
    assert run.decision.action is DecisionAction.WARN
    assert run.stage is Stage.RELEASED


@pytest.mark.asyncio
async def test_concurrent_runs_never_overlap_in_run_stage(settings, prod):
    harness = Harness(settings, applier=FakeApplier(delay=0.02))
    await harness.provision(prod)

    first, second = await asyncio.gather(
        harness.runner.execute(PROD_TAG, commit="aaa"),
        harness.runner.execute(PROD_TAG, commit="bbb"),
    )

    assert first.stage is Stage.RELEASED
    assert second.stage is Stage.RELEASED
    assert harness.applier.max_active == 1
    log = harness.store.lock_log
    assert [event for event, _ in log] == ["acquire", "release", "acquire", "release"]
    assert log[0][1] == log[1][1]


@pytest.mark.asyncio
async def test_lock_contention_exhaustion_fails_run(settings, prod):
    harness = Harness(settings)
    await harness.provision(prod)
    state = BackendBootstrapManager("static-site", harness.store).handle(prod)
    harness.store.locks[(state.lock_table, state.lock_key)] = "someone-else"

    run = await harness.runner.execute(PROD_TAG)

    assert run.history == [Stage.BUILD, Stage.TEST, Stage.FAILED]
    assert run.failure_code == "contended"
    assert run.failure_reason.startswith("contended:")
    assert harness.applier.calls == []


@pytest.mark.asyncio
async def test_run_stage_timeout_releases_lock(settings, dev):
    harness = Harness(
        settings, applier=FakeApplier(delay=5.0), timeouts=StageBudget(run=0.05)
    )
    await harness.provision(dev)

    run = await harness.runner.execute(Trigger(source=TriggerSource.PUSH, ref="main"))

    assert run.history == [Stage.BUILD, Stage.TEST, Stage.RUN, Stage.FAILED]
    assert run.failure_code == "stage_timeout"
    assert harness.store.locks == {}


@pytest.mark.asyncio
async def test_cancellation_fails_run_and_releases_lock(settings, dev, history):
    harness = Harness(settings, history=history, applier=FakeApplier(delay=10.0))
    await harness.provision(dev)

    task = asyncio.create_task(
        harness.runner.execute(Trigger(source=TriggerSource.PUSH, ref="main"))
    )
    while harness.applier.active == 0:
        await asyncio.sleep(0.001)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert harness.store.locks == {}
    (stored,) = history.list_runs(EnvironmentName.DEV)
    assert stored.stage is Stage.FAILED
    assert stored.failure_code == "cancelled"


@pytest.mark.asyncio
async def test_transient_apply_failure_is_retried(settings, dev):
    harness = Harness(
        settings, applier=FakeApplier(failures=[TransientInfraError("Throttling")])
    )
    await harness.provision(dev)

    run = await harness.runner.execute(Trigger(source=TriggerSource.PUSH, ref="main"))

    assert run.stage is Stage.RELEASED
    assert len(harness.applier.calls) == 2


@pytest.mark.asyncio
async def test_missing_backend_fails_in_build(settings, dev):
    harness = Harness(settings)

    run = await harness.runner.execute(Trigger(source=TriggerSource.PUSH, ref="main"))

    assert run.history == [Stage.BUILD, Stage.FAILED]
    assert run.failure_code == "configuration_error"
    assert "run bootstrap first" in run.failure_reason
    assert harness.builder.calls == 0


@pytest.mark.asyncio
async def test_authentication_failure_fails_run(settings, dev):
    def rejecting_chain() -> FakeChain:
        return FakeChain(error=AuthenticationError("central role does not trust caller", "trust_rejected"))

    harness = Harness(settings, chain_factory=rejecting_chain)
    await harness.provision(dev)

    run = await harness.runner.execute(Trigger(source=TriggerSource.PUSH, ref="main"))

    assert run.history == [Stage.BUILD, Stage.FAILED]
    assert run.failure_code == "trust_rejected"
    assert run.error.exit_code == 3


@pytest.mark.asyncio
async def test_unhealthy_deploy_fails(settings, prod):
    harness = Harness(settings, health=FakeHealth(healthy=False))
    await harness.provision(prod)

    run = await harness.runner.execute(PROD_TAG)

    assert run.history == [Stage.BUILD, Stage.TEST, Stage.RUN, Stage.FAILED]
    assert run.failure_code == "health_check_failed"
    assert harness.store.locks == {}


@pytest.mark.asyncio
async def test_content_only_deploy_skips_apply(settings, dev):
    harness = Harness(settings)
    await harness.provision(dev)

    run = await harness.runner.execute(
        Trigger(source=TriggerSource.PUSH, ref="main", deploy_infrastructure=False)
    )

    assert run.stage is Stage.RELEASED
    assert harness.applier.calls == []
    assert harness.syncer.calls == [run.run_id]


@pytest.mark.asyncio
async def test_empty_action_set_creates_no_run(settings, history):
    harness = Harness(settings, history=history)
    trigger = Trigger(
        source=TriggerSource.MANUAL, deploy_infrastructure=False, deploy_content=False
    )
    with pytest.raises(ConfigurationError, match="Nothing to deploy"):
        await harness.runner.execute(trigger)
    assert history.list_runs() == []


def _throttle() -> TransientInfraError:
    return TransientInfraError("AssumeRole: Throttling: Rate exceeded", "sts_transient")


@pytest.mark.asyncio
async def test_throttled_credential_hop_is_retried(settings, dev):
    chains: list[FakeChain] = []

    def throttled_once() -> FakeChain:
        chains.append(FakeChain(failures=[_throttle()]))
        return chains[-1]

    harness = Harness(settings, chain_factory=throttled_once)
    await harness.provision(dev)

    run = await harness.runner.execute(Trigger(source=TriggerSource.PUSH, ref="main"))

    assert run.history == [Stage.BUILD, Stage.TEST, Stage.RUN, Stage.RELEASED]
    assert chains[0].calls[:2] == [
        ("dev", CredentialPurpose.DEPLOY),
        ("dev", CredentialPurpose.DEPLOY),
    ]


@pytest.mark.asyncio
async def test_persistent_credential_throttling_fails_after_retries(settings, dev):
    chains: list[FakeChain] = []

    def always_throttled() -> FakeChain:
        chains.append(FakeChain(error=_throttle()))
        return chains[-1]

    harness = Harness(settings, chain_factory=always_throttled)
    await harness.provision(dev)

    run = await harness.runner.execute(Trigger(source=TriggerSource.PUSH, ref="main"))

    assert run.history == [Stage.BUILD, Stage.FAILED]
    assert run.failure_code == "sts_transient"
    assert len(chains[0].calls) == 3
    assert harness.builder.calls == 0


class StalledChain(FakeChain):
    async def obtain(self, environment, purpose=CredentialPurpose.DEPLOY):
        await asyncio.sleep(5.0)
        return await super().obtain(environment, purpose)


@pytest.mark.asyncio
async def test_rollback_preparation_runs_under_the_run_budget(settings, prod):
    harness = Harness(settings, chain_factory=StalledChain, timeouts=StageBudget(run=0.05))
    await harness.provision(prod)
    target = PipelineRun(
        environment=EnvironmentName.PROD, trigger_source=TriggerSource.TAG, commit="aaa111"
    )
    target.add_artifact(ArtifactRef("build", "plans/aaa111.tfplan", "sha-aaa111", "aaa111"))
    rollback = PipelineRun.for_rollback(
        EnvironmentName.PROD, ActionSet(), target, "homepage returns 500"
    )

    run = await harness.runner.redeploy(rollback, prod)

    assert run.history == [Stage.RUN, Stage.FAILED]
    assert run.failure_code == "stage_timeout"
    assert harness.applier.calls == []
    assert harness.store.locks == {}
