"""Explicit pipeline stage type and transition table.

Every edge a run may take is listed in ``TRANSITIONS``; anything else raises
``InvalidTransitionError``. Guards on the forward edges hold the stage
postconditions (artifact produced, gate not blocking, health validated).
The table is checked when this module is imported.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from deploy_orchestrator.domain.models import (
    ActionSet,
    ArtifactRef,
    Decision,
    DecisionAction,
    EnvironmentName,
    Finding,
    TriggerSource,
)
from deploy_orchestrator.errors import InvalidTransitionError
from deploy_orchestrator.utils.time import utc_now


class Stage(str, Enum):
    BUILD = "build"
    TEST = "test"
    RUN = "run"
    RELEASED = "released"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({Stage.RELEASED, Stage.FAILED, Stage.ROLLED_BACK})

TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.BUILD: frozenset({Stage.TEST, Stage.FAILED, Stage.ROLLED_BACK}),
    Stage.TEST: frozenset({Stage.RUN, Stage.FAILED, Stage.ROLLED_BACK}),
    Stage.RUN: frozenset({Stage.RELEASED, Stage.FAILED, Stage.ROLLED_BACK}),
    Stage.RELEASED: frozenset(),
    Stage.FAILED: frozenset(),
    Stage.ROLLED_BACK: frozenset(),
}

ENTRY_STAGES = frozenset({Stage.BUILD, Stage.RUN})


def _validate_table() -> None:
    missing = set(Stage) - set(TRANSITIONS)
    if missing:
        raise RuntimeError(f"Stages without a transition entry: {sorted(s.value for s in missing)}")
    for stage, targets in TRANSITIONS.items():
        if stage.is_terminal and targets:
            raise RuntimeError(f"Terminal stage {stage.value} has outgoing edges")
        if not stage.is_terminal and not {Stage.FAILED, Stage.ROLLED_BACK} <= targets:
            raise RuntimeError(f"{stage.value} cannot reach failed and rolled_back")
        if Stage.BUILD in targets:
            raise RuntimeError("No stage may move back to build")

    reachable = set(ENTRY_STAGES)
    frontier = list(ENTRY_STAGES)
    while frontier:
        for target in TRANSITIONS[frontier.pop()]:
            if target not in reachable:
                reachable.add(target)
                frontier.append(target)
    if reachable != set(Stage):
        raise RuntimeError("Transition table leaves stages unreachable")


_validate_table()


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class PipelineRun:
    """One deployment attempt, owned by the stage currently executing it."""

    environment: EnvironmentName
    trigger_source: TriggerSource
    action_set: ActionSet = field(default_factory=ActionSet)
    ref: str = ""
    commit: str | None = None
    actor: str | None = None
    run_id: str = field(default_factory=_new_run_id)
    stage: Stage = Stage.BUILD
    history: list[Stage] = field(default_factory=list)
    artifacts: dict[str, ArtifactRef] = field(default_factory=dict)
    findings: list[Finding] = field(default_factory=list)
    decision: Decision | None = None
    health_ok: bool = False
    failure_reason: str | None = None
    failure_code: str | None = None
    rollback_of: str | None = None
    note: str | None = None
    error: BaseException | None = field(default=None, repr=False, compare=False)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.history:
            if self.stage not in ENTRY_STAGES:
                raise InvalidTransitionError(f"A run cannot start in {self.stage.value}")
            self.history.append(self.stage)

    @classmethod
    def for_rollback(
        cls,
        environment: EnvironmentName,
        action_set: ActionSet,
        target: "PipelineRun",
        reason: str,
        actor: str | None = None,
    ) -> "PipelineRun":
        """A fresh run entering ``run`` directly with an older run's artifacts."""
        return cls(
            environment=environment,
            trigger_source=TriggerSource.ROLLBACK,
            action_set=action_set,
            ref=target.ref,
            commit=target.commit,
            actor=actor,
            stage=Stage.RUN,
            artifacts={k: v for k, v in target.artifacts.items() if k == "build"},
            findings=list(target.findings),
            rollback_of=target.run_id,
            note=reason,
        )

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def is_rollback(self) -> bool:
        return self.trigger_source is TriggerSource.ROLLBACK

    def add_artifact(self, artifact: ArtifactRef) -> None:
        self.artifacts[artifact.stage] = artifact

    def add_findings(self, findings: list[Finding] | tuple[Finding, ...]) -> None:
        self.findings.extend(findings)

    def advance(self, target: Stage) -> None:
        if target not in TRANSITIONS[self.stage]:
            raise InvalidTransitionError(
                f"Run {self.run_id}: illegal transition {self.stage.value} -> {target.value}"
            )
        guard = _GUARDS.get((self.stage, target))
        if guard is not None:
            problem = guard(self)
            if problem:
                raise InvalidTransitionError(
                    f"Run {self.run_id}: cannot enter {target.value}: {problem}"
                )
        self.stage = target
        self.history.append(target)
        self.updated_at = utc_now()

    def fail(
        self, reason: str, code: str = "failed", error: BaseException | None = None
    ) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Run {self.run_id} is already {self.stage.value}; cannot fail it"
            )
        self.failure_reason = reason
        self.failure_code = code
        self.error = error
        self.advance(Stage.FAILED)


def _build_artifact_present(run: PipelineRun) -> str | None:
    if "build" not in run.artifacts:
        return "no build artifact was produced"
    return None


def _gate_not_blocking(run: PipelineRun) -> str | None:
    if run.decision is None:
        return "the policy gate has not been evaluated"
    if run.decision.action is DecisionAction.BLOCK:
        return f"the policy gate blocked: {run.decision.reason}"
    return None


def _deployed_and_healthy(run: PipelineRun) -> str | None:
    if run.action_set.deploy_infrastructure and "apply" not in run.artifacts:
        return "infrastructure apply did not report success"
    if run.action_set.deploy_content and "sync" not in run.artifacts:
        return "content sync did not report success"
    if not run.health_ok:
        return "the post-deploy health check has not passed"
    return None


_GUARDS: dict[tuple[Stage, Stage], Callable[[PipelineRun], str | None]] = {
    (Stage.BUILD, Stage.TEST): _build_artifact_present,
    (Stage.TEST, Stage.RUN): _gate_not_blocking,
    (Stage.RUN, Stage.RELEASED): _deployed_and_healthy,
    (Stage.RUN, Stage.ROLLED_BACK): _deployed_and_healthy,
}
