"""Emergency rollback controller.

A rollback never rewrites history. It selects an older run's artifact,
creates a new run that enters ``run`` fresh, and drives it through the same
gate, lock and health validation as a normal deploy.
"""

from __future__ import annotations

import logging

from deploy_orchestrator.audit.db import RunHistoryStore
from deploy_orchestrator.domain.models import ActionSet, Environment, RollbackMethod
from deploy_orchestrator.errors import AuthorizationError, RollbackRequestError
from deploy_orchestrator.pipeline.runner import PipelineRunner
from deploy_orchestrator.pipeline.state_machine import PipelineRun
from deploy_orchestrator.rollback.approvers import ApproverSet

logger = logging.getLogger(__name__)

DEFAULT_MIN_REASON_LENGTH = 10

_ACTIONS = {
    RollbackMethod.LAST_KNOWN_GOOD: ActionSet(True, True),
    RollbackMethod.SPECIFIC_COMMIT: ActionSet(True, True),
    RollbackMethod.INFRASTRUCTURE_ONLY: ActionSet(True, False),
    RollbackMethod.CONTENT_ONLY: ActionSet(False, True),
}


class RollbackController:
    def __init__(
        self,
        runner: PipelineRunner,
        history: RunHistoryStore,
        approvers: ApproverSet,
        min_reason_length: int = DEFAULT_MIN_REASON_LENGTH,
    ) -> None:
        self._runner = runner
        self._history = history
        self._approvers = approvers
        self._min_reason_length = min_reason_length

    def validate_reason(self, reason: str) -> str:
        text = (reason or "").strip()
        if len(text) < self._min_reason_length:
            raise RollbackRequestError(
                f"Rollback reason must be at least {self._min_reason_length} characters "
                f"(got {len(text)}); it is recorded for audit"
            )
        return text

    def authorize(self, environment: Environment, approver: str | None) -> None:
        if not environment.require_rollback_approval:
            return
        name = environment.name.value
        if not approver:
            raise AuthorizationError(
                f"Rollback of {name} requires an approver from the authorized "
                "approver set (--approver); none was given"
            )
        if approver not in self._approvers:
            raise AuthorizationError(
                f"'{approver}' is not an authorized approver for {name} rollbacks"
            )
        logger.info("Rollback of %s approved by %s", name, approver)

    def select_target(
        self,
        environment: Environment,
        method: RollbackMethod,
        commit: str | None = None,
    ) -> PipelineRun:
        if method is RollbackMethod.SPECIFIC_COMMIT and not commit:
            raise RollbackRequestError("specific_commit rollback requires --commit")

        if commit:
            target = self._history.find_by_commit(environment.name, commit)
            if target is None:
                raise RollbackRequestError(
                    f"No deployed run of commit {commit} is recorded for "
                    f"{environment.name.value}"
                )
            return target

        target = self._history.last_known_good(environment.name)
        if target is None:
            raise RollbackRequestError(
                f"No earlier released run is recorded for {environment.name.value}; "
                "nothing to roll back to"
            )
        return target

    async def rollback(
        self,
        environment: Environment,
        method: RollbackMethod,
        reason: str,
        commit: str | None = None,
        approver: str | None = None,
    ) -> PipelineRun:
        """Re-enter ``run`` for ``environment`` with an older artifact.

        Raises:
            RollbackRequestError: short reason, missing commit or no target.
            AuthorizationError: approval is required and missing or unknown.
        """
        text = self.validate_reason(reason)
        self.authorize(environment, approver)
        target = self.select_target(environment, method, commit)

        run = PipelineRun.for_rollback(
            environment=environment.name,
            action_set=_ACTIONS[method],
            target=target,
            reason=text,
            actor=approver,
        )
        logger.warning(
            "[%s] %s rollback of %s to run %s (%s): %s",
            run.run_id,
            method.value,
            environment.name.value,
            target.run_id,
            target.commit or "no commit",
            text,
        )
        return await self._runner.redeploy(run, environment)
